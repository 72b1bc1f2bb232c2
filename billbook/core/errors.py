"""
Error taxonomy for the bill pipeline.

Each error carries the HTTP status the API layer answers with, so routers
can let them propagate and the app-level handler maps them.
"""


class BillbookError(Exception):
    """Base class for all pipeline errors"""
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputValidationError(BillbookError):
    """Missing or invalid upload / manual-entry fields"""
    status_code = 400


class PostingValidationError(BillbookError):
    """Posting invariant violated (missing dimensions, unbalanced amounts)"""
    status_code = 400


class PermissionDeniedError(BillbookError):
    status_code = 403


class DocumentNotFoundError(BillbookError):
    status_code = 404

    def __init__(self, document_id: int):
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class MissingResourceError(BillbookError):
    """A referenced file, bill or line item does not exist"""
    status_code = 404


class InvalidTransitionError(BillbookError):
    status_code = 409


class UnsupportedDocumentError(BillbookError):
    """The text extractor cannot read this media type"""
    status_code = 415


class ExtractionInsufficientError(BillbookError):
    """
    Extraction could not produce a usable bill.

    The reason is human readable and ends up in the document notes when the
    document is routed to manual review.
    """
    status_code = 422

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ProviderError(BillbookError):
    """Hosted model call failed (network, HTTP status or unparseable payload)"""
    status_code = 502

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
