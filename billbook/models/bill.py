from datetime import date
from typing import Any, Optional
from pydantic import BaseModel, field_validator
from ..services.bill_types import LineItem, PaymentTerms, coerce_date

REPROCESS_SCOPES = ("needs_review", "missing_dates", "pending")


class ManualBillPayload(BaseModel):
    """Complete bill entered by a person; runs the same tail as extraction"""
    vendor_name: Optional[str] = None
    vendor_gstin: Optional[str] = None
    bill_number: Optional[str] = None
    bill_date: Optional[date] = None
    subtotal: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount: Optional[float] = None
    category: Optional[str] = None
    payment_method: Optional[str] = None
    drop_name: Optional[str] = None
    payment_terms: Optional[PaymentTerms] = None
    line_items: list[LineItem] = []

    @field_validator("bill_date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        return coerce_date(value)


class FieldCorrectionRequest(BaseModel):
    field: str  # bill_date | total_amount
    value: Any
    reason: str = "manual_correction"


class BillItemUpdateRequest(BaseModel):
    coa_account_id: Optional[int] = None
    department_id: Optional[int] = None
    drop_id: Optional[int] = None
    is_postable: Optional[bool] = None
    posting_status: Optional[str] = None
    go_live_eligible: Optional[bool] = None

    @field_validator("posting_status")
    @classmethod
    def _check_posting_status(cls, value):
        if value is not None and value not in ("unposted", "posted"):
            raise ValueError("posting_status must be 'unposted' or 'posted'")
        return value


class RecordPaymentRequest(BaseModel):
    bill_id: int
    amount: float
    schedule_id: Optional[int] = None
    payment_date: Optional[date] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class ReprocessRequest(BaseModel):
    scope: str = "needs_review"  # needs_review | missing_dates | pending
    limit: Optional[int] = None
    days: Optional[int] = None

    @field_validator("scope")
    @classmethod
    def _check_scope(cls, value):
        if value not in REPROCESS_SCOPES:
            raise ValueError(f"scope must be one of {', '.join(REPROCESS_SCOPES)}")
        return value

    @field_validator("limit", "days")
    @classmethod
    def _check_positive(cls, value):
        if value is not None and value <= 0:
            raise ValueError("must be greater than zero")
        return value
