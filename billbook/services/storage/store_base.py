"""
Abstract base class for bill store implementations.

Defines the interface the pipeline stages talk to, enabling dependency
injection and easy swapping of storage backends.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional


class BillStoreBase(ABC):
    """
    Abstract relational store for documents, bills and ledger records.

    Every "replace" method (line items, payment schedule, journal entry)
    must apply its delete-and-rebuild inside a single transaction so a
    concurrent reader never sees a half-built state.
    """

    @abstractmethod
    def create_document(self, **fields) -> int:
        """
        Insert a new document row and return its id.

        Args:
            fields: Column values (file_name, file_path, category, ...)
        """
        pass

    @abstractmethod
    def get_document(self, document_id: int) -> Optional[dict]:
        """
        Get a document by id.

        Returns:
            Document dictionary with extracted_data decoded, or None if not found.
        """
        pass

    @abstractmethod
    def update_document(self, document_id: int, **fields) -> bool:
        pass

    @abstractmethod
    def delete_document(self, document_id: int) -> bool:
        """Delete a document; its bill and everything the bill owns go with it"""
        pass

    @abstractmethod
    def save_bill(self, document_id: int, bill: dict, items: list[dict]) -> int:
        """
        Upsert the bill for a document and replace its line items.

        Returns:
            Bill id
        """
        pass

    @abstractmethod
    def replace_payment_schedule(
        self, bill_id: int, terms: Optional[dict], rows: list[dict], payment_status: str
    ) -> list[int]:
        """Rebuild terms and rows, re-applying payments already recorded"""
        pass

    @abstractmethod
    def replace_journal_entry(self, bill_id: int, entry: dict, lines: list[dict]) -> int:
        """Void any posted entry for the bill and insert the new one"""
        pass

    @abstractmethod
    def add_field_history(self, document_id: int, field_name: str, old_value, new_value, **audit) -> int:
        pass

    @abstractmethod
    def record_ai_attempt(self, document_id: int, at: datetime, error: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def select_documents_for_reverify(self, scope: str, since: str, limit: int) -> list[dict]:
        pass

    @abstractmethod
    def reset_stale_processing(self, cutoff: str) -> list[int]:
        pass

    @abstractmethod
    def upsert_vendor(self, vendor_name: str, vendor_code: str, gstin: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def get_or_create_drop(self, drop_name: str) -> int:
        pass

    @abstractmethod
    def upsert_account(self, account_code: str, account_name: str, account_type: str) -> int:
        pass

    @abstractmethod
    def get_bill(self, bill_id: int) -> Optional[dict]:
        """
        Get a bill with its vendor fields joined in.

        Returns:
            Bill dictionary, or None if not found.
        """
        pass

    @abstractmethod
    def get_bill_by_document(self, document_id: int) -> Optional[dict]:
        pass

    @abstractmethod
    def update_bill(self, bill_id: int, **fields) -> bool:
        pass

    @abstractmethod
    def list_bill_items(self, bill_id: int) -> list[dict]:
        pass

    @abstractmethod
    def get_bill_item(self, item_id: int) -> Optional[dict]:
        pass

    @abstractmethod
    def update_bill_item(self, item_id: int, **fields) -> bool:
        pass

    @abstractmethod
    def get_payment_terms(self, bill_id: int) -> Optional[dict]:
        pass

    @abstractmethod
    def list_payment_schedule(self, bill_id: int) -> list[dict]:
        pass

    @abstractmethod
    def apply_payment(
        self,
        bill_id: int,
        schedule_id: int,
        amount: float,
        payment_date: str,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[dict]:
        """Add a payment to one schedule row and roll the bill's payment status up"""
        pass

    @abstractmethod
    def list_journal_entries(self, bill_id: int, include_void: bool = True) -> list[dict]:
        pass

    @abstractmethod
    def list_documents(self, status: Optional[str] = None) -> list[dict]:
        pass

    @abstractmethod
    def list_field_history(self, document_id: int) -> list[dict]:
        pass

    @abstractmethod
    def list_payments(self, bill_id: int) -> list[dict]:
        pass
