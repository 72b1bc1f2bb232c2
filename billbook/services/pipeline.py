"""
Per-document extraction-to-ledger pipeline.

Stages run strictly in order for one document and hand off through the
store: text extraction -> model/heuristic extraction -> normalization ->
vendor + bill upsert -> payment schedule -> ledger posting -> lifecycle
update (status, verification, audit). Manual entry joins the same tail.
"""

import hashlib
import mimetypes
import uuid
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional
import re
from loguru import logger
from .ai_orchestrator import ExtractionOrchestrator, get_orchestrator
from .bill_normalizer import NormalizedBill, normalize_bill
from .bill_types import (
    ExtractedBill,
    ExtractionResult,
    HeuristicExtraction,
    ManualExtraction,
    Amounts,
)
from .events.event_publisher import BillPostedEvent, EventPublisher, get_event_publisher
from .ledger_poster import post_bill
from .lifecycle import (
    SYSTEM_ACTOR,
    Actor,
    DocumentStatus,
    record_field_change,
    refresh_verification,
    transition,
)
from .payment_schedule import generate_payment_schedule
from .storage.store_base import BillStoreBase
from .text_extractor import OcrEngine, extract_text
from .verification import accept_model_field
from ..core.errors import (
    BillbookError,
    DocumentNotFoundError,
    ExtractionInsufficientError,
    InputValidationError,
    MissingResourceError,
    UnsupportedDocumentError,
)
from ..models.bill import ManualBillPayload

UNSPECIFIED_PAYMENT_METHOD = "UNSPECIFIED"
MANUAL_CONFIDENCE = 0.99


def derive_vendor_code(vendor_name: str) -> str:
    """Upper-case alphanumerics of the vendor name, at most 10 characters"""
    code = re.sub(r"[^A-Z0-9]", "", vendor_name.upper())[:10]
    return code or "VENDOR"


def file_sha256(file_path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def guess_media_type(file_name: str, media_type: Optional[str]) -> str:
    declared = (media_type or "").strip().lower()
    if declared and declared != "application/octet-stream":
        return declared
    return mimetypes.guess_type(file_name)[0] or "application/octet-stream"


def validate_upload_fields(category: Optional[str], payment_method: Optional[str], drop_name: Optional[str]) -> None:
    """
    Raises:
        InputValidationError: Category, drop or a real payment method is missing
    """
    missing = []
    if not (category or "").strip():
        missing.append("category")
    if not (drop_name or "").strip():
        missing.append("drop_name")
    if not (payment_method or "").strip() or payment_method.strip().upper() == UNSPECIFIED_PAYMENT_METHOD:
        missing.append("payment_method")
    if missing:
        raise InputValidationError(f"Missing required upload fields: {', '.join(missing)}")


def intake_document(
    store: BillStoreBase,
    file_name: str,
    file_path: str | Path,
    media_type: Optional[str],
    category: Optional[str],
    payment_method: Optional[str],
    drop_name: Optional[str],
    notes: Optional[str] = None,
    uploaded_by: Optional[int] = None,
) -> int:
    """
    Register an uploaded file and mark it ready for processing.

    Validation runs before anything is written.

    Returns:
        Document id
    """
    validate_upload_fields(category, payment_method, drop_name)
    path = Path(file_path)
    if not path.is_file():
        raise MissingResourceError(f"File not found: {path}")

    document_id = store.create_document(
        file_name=file_name,
        file_path=str(path),
        file_size=path.stat().st_size,
        file_type=guess_media_type(file_name, media_type),
        file_hash=file_sha256(path),
        document_category=category.strip(),
        payment_method=payment_method.strip().upper(),
        drop_name=drop_name.strip(),
        notes=notes,
        status=DocumentStatus.UPLOADED.value,
        uploaded_by=uploaded_by,
    )
    logger.info("Document uploaded", document_id=document_id, file_name=file_name, category=category)
    return document_id


def has_manual_override(document: dict, bill: Optional[dict]) -> bool:
    extracted = document.get("extracted_data") or {}
    if extracted.get("manual"):
        return True
    return bool(bill and (bill.get("confidence_score") or 0) >= MANUAL_CONFIDENCE)


def append_note(existing: Optional[str], note: str) -> str:
    if not existing:
        return note
    if note in existing:
        return existing
    return f"{existing}\n{note}"


def _apply_field_locks(normalized: NormalizedBill, document: dict, previous_bill: Optional[dict]) -> NormalizedBill:
    """Locked fields keep their stored values across re-extraction"""
    if previous_bill is None:
        return normalized
    updates = {}
    if document.get("bill_date_locked") and previous_bill.get("bill_date"):
        updates["bill_date"] = previous_bill["bill_date"]
    if document.get("total_locked") and previous_bill.get("total_amount"):
        updates["total_amount"] = previous_bill["total_amount"]
        updates["tax_amount"] = previous_bill["tax_amount"]
        updates["subtotal"] = previous_bill["subtotal"]
    if updates:
        logger.info("Keeping locked fields", document_id=document["document_id"], fields=sorted(updates))
        return NormalizedBill.model_validate({**normalized.model_dump(), **updates})
    return normalized


def _extraction_state(result: ExtractionResult, raw_text: str) -> dict:
    """Provenance snapshot used by verification"""
    bill = result.bill
    state = {
        "kind": result.kind,
        "provider": result.provider,
        "fallback": result.fallback,
        "ai_confidence": None,
        "ambiguous_date": False,
        "multiple_totals": False,
        "bill_date_accepted": False,
        "total_accepted": False,
    }
    if isinstance(result, HeuristicExtraction):
        state["ambiguous_date"] = result.hints.ambiguous_date
        state["multiple_totals"] = result.hints.multiple_totals
        state["note"] = result.note
    elif isinstance(result, ManualExtraction):
        state["bill_date_accepted"] = bill.bill_date is not None
        state["total_accepted"] = True
    else:
        state["ai_confidence"] = bill.confidence
        state["bill_date_accepted"] = accept_model_field(bill.bill_date_confidence, bill.bill_date_evidence, raw_text)
        state["total_accepted"] = accept_model_field(bill.total_confidence, bill.total_evidence, raw_text)
    return state


def _persist_bill(
    store: BillStoreBase,
    document: dict,
    result: ExtractionResult,
    normalized: NormalizedBill,
    raw_text: Optional[str],
    preprocess_meta: Optional[dict],
    actor: Actor,
    source_action: str,
    publisher: Optional[EventPublisher] = None,
) -> dict:
    """Shared pipeline tail: vendor, bill, schedule, posting, lifecycle"""
    document_id = document["document_id"]
    previous_bill = store.get_bill_by_document(document_id)
    normalized = _apply_field_locks(normalized, document, previous_bill)

    vendor_id = store.upsert_vendor(
        normalized.vendor_name, derive_vendor_code(normalized.vendor_name), normalized.vendor_gstin
    )
    drop_id = store.get_or_create_drop(normalized.drop_name) if normalized.drop_name else None

    items = []
    for item in normalized.line_items:
        row = item.model_dump()
        row["drop_id"] = row.get("drop_id") or drop_id
        items.append(row)

    bill_id = store.save_bill(
        document_id,
        {
            "vendor_id": vendor_id,
            "bill_number": normalized.bill_number,
            "bill_date": normalized.bill_date,
            "subtotal": normalized.subtotal,
            "tax_amount": normalized.tax_amount,
            "total_amount": normalized.total_amount,
            "category": normalized.category,
            "category_group": normalized.category_group,
            "drop_name": normalized.drop_name,
            "payment_method": normalized.payment_method,
            "confidence_score": normalized.confidence_score,
            "provider": normalized.provider,
        },
        items,
    )

    schedule = generate_payment_schedule(
        store, bill_id, normalized.payment_terms, normalized.total_amount, normalized.bill_date
    )
    posting = post_bill(store, bill_id, created_by=actor.actor_id)

    # Audit financial fields written by this run
    operation_id = str(uuid.uuid4())
    bill = result.bill
    previous = previous_bill or {}
    record_field_change(
        store, document_id, "bill_date", previous.get("bill_date"), normalized.bill_date, actor,
        source_action, confidence=bill.bill_date_confidence or bill.confidence,
        evidence=bill.bill_date_evidence, operation_id=operation_id, source_action=source_action,
    )
    record_field_change(
        store, document_id, "total_amount", previous.get("total_amount"), normalized.total_amount, actor,
        source_action, confidence=bill.total_confidence or bill.confidence,
        evidence=bill.total_evidence, operation_id=operation_id, source_action=source_action,
    )

    state = _extraction_state(result, raw_text or "")
    blob = result.to_blob(raw_text, preprocess_meta)
    transition(
        store,
        document_id,
        DocumentStatus.PROCESSED,
        extracted_data=blob,
        extraction_state=state,
        bill_date_locked=bool(document.get("bill_date_locked")) or state["bill_date_accepted"],
        total_locked=bool(document.get("total_locked")) or state["total_accepted"],
    )
    decision = refresh_verification(store, document_id)

    _publish_posted(
        publisher,
        BillPostedEvent(
            document_id=document_id,
            bill_id=bill_id,
            journal_id=posting.journal_id,
            vendor=normalized.vendor_name,
            bill_number=normalized.bill_number,
            total=normalized.total_amount,
            provider=normalized.provider,
            fallback=normalized.fallback,
            payment_status=store.get_bill(bill_id)["payment_status"],
            verification_status=decision.status,
        ),
    )

    return {
        "document_id": document_id,
        "status": DocumentStatus.PROCESSED.value,
        "bill_id": bill_id,
        "journal_id": posting.journal_id,
        "provider": normalized.provider,
        "fallback": normalized.fallback,
        "schedule_rows": len(schedule),
        "verification_status": decision.status,
        "verification_reason": decision.reason,
    }


def _publish_posted(publisher: Optional[EventPublisher], event: BillPostedEvent) -> None:
    try:
        (publisher or get_event_publisher()).publish_bill_posted(event)
    except Exception as e:
        # Don't fail the pipeline if event publishing fails
        logger.warning(f"Failed to publish BillPosted event: {e}")


def _load_text(store: BillStoreBase, document: dict, force_ocr: bool, ocr_engine: Optional[OcrEngine]) -> tuple[str, dict]:
    """Reuse stored text unless forced or the file changed since it was read"""
    stored_meta = (document.get("extracted_data") or {}).get("preprocess_meta") or {}
    file_path = document["file_path"]
    current_hash = file_sha256(file_path) if file_path and Path(file_path).is_file() else None

    if document.get("raw_text") and not force_ocr and (current_hash is None or current_hash == document.get("file_hash")):
        return document["raw_text"], stored_meta

    extraction = extract_text(file_path, document.get("file_type"), ocr_engine=ocr_engine)
    store.update_document(
        document["document_id"],
        raw_text=extraction.raw_text,
        raw_text_hash=hashlib.sha256(extraction.raw_text.encode("utf-8")).hexdigest(),
        file_hash=current_hash,
    )
    return extraction.raw_text, extraction.quality_meta


def process_document(
    store: BillStoreBase,
    document_id: int,
    orchestrator: Optional[ExtractionOrchestrator] = None,
    actor: Actor = SYSTEM_ACTOR,
    force_ocr: bool = False,
    ocr_engine: Optional[OcrEngine] = None,
    publisher: Optional[EventPublisher] = None,
) -> dict:
    """
    Run the full pipeline for one document.

    The document always ends in processed, manual_required or error.
    Documents carrying a manual override are left untouched.

    Returns:
        Outcome summary (status, bill_id, provider, verification, ...)
    """
    document = store.get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)

    if has_manual_override(document, store.get_bill_by_document(document_id)):
        logger.info("Skipping document with manual override", document_id=document_id)
        return {"document_id": document_id, "status": document["status"], "skipped": "manual override"}

    document = transition(store, document_id, DocumentStatus.PROCESSING)
    orchestrator = orchestrator or get_orchestrator()

    try:
        raw_text, preprocess_meta = _load_text(store, document, force_ocr, ocr_engine)
        store.record_ai_attempt(document_id, datetime.now(UTC))
        result = orchestrator.extract(raw_text)
        normalized = normalize_bill(
            result,
            document_category=document["document_category"],
            payment_method=document["payment_method"],
            drop_name=document["drop_name"],
        )
        outcome = _persist_bill(
            store, document, result, normalized, raw_text, preprocess_meta, actor, "ai_extraction", publisher
        )
        logger.info("Document processed", **outcome)
        return outcome

    except ExtractionInsufficientError as e:
        logger.warning("Document needs manual review", document_id=document_id, reason=e.reason)
        transition(
            store,
            document_id,
            DocumentStatus.MANUAL_REQUIRED,
            notes=append_note(document.get("notes"), e.reason),
            ai_last_error=e.reason,
        )
        refresh_verification(store, document_id)
        return {"document_id": document_id, "status": DocumentStatus.MANUAL_REQUIRED.value, "reason": e.reason}

    except (UnsupportedDocumentError, MissingResourceError) as e:
        logger.error("Document cannot be read", document_id=document_id, error=e.message)
        transition(store, document_id, DocumentStatus.ERROR, notes=append_note(document.get("notes"), e.message))
        return {"document_id": document_id, "status": DocumentStatus.ERROR.value, "reason": e.message}

    except Exception as e:
        logger.exception("Pipeline failed", document_id=document_id)
        transition(store, document_id, DocumentStatus.ERROR, ai_last_error=str(e))
        if not isinstance(e, BillbookError):
            raise
        return {"document_id": document_id, "status": DocumentStatus.ERROR.value, "reason": str(e)}


def validate_manual_payload(payload: ManualBillPayload) -> None:
    """
    Raises:
        InputValidationError: Vendor, positive total, payment method or category
            missing, or ADVANCE terms without percentage and due date
    """
    if not (payload.vendor_name or "").strip():
        raise InputValidationError("vendor_name is required")
    if payload.total_amount is None or payload.total_amount <= 0:
        raise InputValidationError("total_amount must be greater than zero")
    method = (payload.payment_method or "").strip().upper()
    if not method or method == UNSPECIFIED_PAYMENT_METHOD:
        raise InputValidationError("payment_method is required")
    if not (payload.category or "").strip():
        raise InputValidationError("category is required")
    terms = payload.payment_terms
    if terms is not None and terms.type == "ADVANCE":
        if not terms.advance_percentage or terms.advance_percentage <= 0 or terms.due_date is None:
            raise InputValidationError("ADVANCE terms need advance_percentage > 0 and due_date")


def process_manual(
    store: BillStoreBase,
    document_id: int,
    payload: ManualBillPayload,
    actor: Actor,
    publisher: Optional[EventPublisher] = None,
) -> dict:
    """
    Manual override: a complete human-entered bill runs the same tail.

    Confidence is fixed at 1.0, provider is "manual", and both financial
    fields are locked.
    """
    document = store.get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)
    validate_manual_payload(payload)

    category = payload.category or document["document_category"]
    payment_method = payload.payment_method.strip().upper()
    drop_name = payload.drop_name or document["drop_name"]

    result = ManualExtraction(
        bill=ExtractedBill(
            vendor_name=payload.vendor_name.strip(),
            vendor_gstin=payload.vendor_gstin,
            bill_number=payload.bill_number,
            bill_date=payload.bill_date,
            amounts=Amounts(
                subtotal=payload.subtotal,
                tax_amount=payload.tax_amount,
                total=payload.total_amount,
            ),
            line_items=payload.line_items,
            payment_terms=payload.payment_terms,
            category=category,
            confidence=1.0,
            bill_date_confidence=1.0 if payload.bill_date else None,
            total_confidence=1.0,
        )
    )
    normalized = normalize_bill(result, category, payment_method, drop_name, keep_line_items=True)

    # Manual entry is authoritative: unlock so it is not overridden by older locks
    document = {**document, "bill_date_locked": False, "total_locked": False}
    store.update_document(document_id, document_category=category, payment_method=payment_method, drop_name=drop_name)
    outcome = _persist_bill(
        store,
        document,
        result,
        normalized,
        document.get("raw_text"),
        (document.get("extracted_data") or {}).get("preprocess_meta"),
        actor,
        "manual_entry",
        publisher,
    )
    logger.info("Manual bill saved", document_id=document_id, bill_id=outcome["bill_id"])
    return outcome


def delete_document(store: BillStoreBase, document_id: int) -> None:
    """Delete a document; its bill, items, schedule and journal go with it"""
    if not store.delete_document(document_id):
        raise DocumentNotFoundError(document_id)
    logger.info("Document deleted", document_id=document_id)
