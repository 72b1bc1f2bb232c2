"""
Document and bill item state bookkeeping.

Document.status: uploaded -> processing -> {processed, manual_required, error}.
processed only goes back to manual_required through an explicit request.

BillItem.posting_status: unposted -> posted. Only an admin can revert a
posted item, and doing so forces is_postable off. An item is never posted
without ledger account, department and drop dimensions.

Every field change through these paths writes an audit row first.
"""

from dataclasses import dataclass
from datetime import date, datetime, UTC
from enum import Enum
from typing import Any, Optional
import uuid
from loguru import logger
from .bill_types import coerce_amount, coerce_date
from .ledger_poster import post_bill
from .payment_schedule import generate_payment_schedule, stored_payment_terms
from .storage.store_base import BillStoreBase
from .verification import VerificationDecision, create_verification_rules
from ..core.errors import (
    DocumentNotFoundError,
    InputValidationError,
    InvalidTransitionError,
    MissingResourceError,
    PermissionDeniedError,
    PostingValidationError,
)


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    MANUAL_REQUIRED = "manual_required"
    ERROR = "error"


ALLOWED_TRANSITIONS = {
    DocumentStatus.UPLOADED: {DocumentStatus.PROCESSING, DocumentStatus.PROCESSED, DocumentStatus.ERROR},
    DocumentStatus.PROCESSING: {
        DocumentStatus.PROCESSED,
        DocumentStatus.MANUAL_REQUIRED,
        DocumentStatus.ERROR,
        DocumentStatus.UPLOADED,
    },
    DocumentStatus.PROCESSED: {DocumentStatus.PROCESSING, DocumentStatus.PROCESSED},
    DocumentStatus.MANUAL_REQUIRED: {DocumentStatus.PROCESSING, DocumentStatus.PROCESSED},
    DocumentStatus.ERROR: {DocumentStatus.PROCESSING, DocumentStatus.PROCESSED, DocumentStatus.UPLOADED},
}

# Allowed only when the caller asks for it explicitly (manual reprocess)
EXPLICIT_TRANSITIONS = {(DocumentStatus.PROCESSED, DocumentStatus.MANUAL_REQUIRED)}

CORRECTABLE_FIELDS = {"bill_date": "bill_date_locked", "total_amount": "total_locked"}
ITEM_FIELDS = {"coa_account_id", "department_id", "drop_id", "is_postable", "posting_status", "go_live_eligible"}


@dataclass(frozen=True)
class Actor:
    actor_type: str = "system"  # system | user | ai
    actor_id: Optional[int] = None
    role: str = "system"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


SYSTEM_ACTOR = Actor()


def audit_text(value: Any) -> Optional[str]:
    """Normalize a value for the audit trail"""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def record_field_change(
    store: BillStoreBase,
    document_id: int,
    field_name: str,
    old_value: Any,
    new_value: Any,
    actor: Actor,
    reason: str,
    confidence: Optional[float] = None,
    evidence: Optional[str] = None,
    operation_id: Optional[str] = None,
    source_action: Optional[str] = None,
    force: bool = False,
) -> bool:
    """
    Write an audit row when a field value actually changes.

    Manual corrections pass force=True so every write is audited, even one
    that confirms the current value.

    Returns:
        True if a row was written
    """
    old_text, new_text = audit_text(old_value), audit_text(new_value)
    if old_text == new_text and not force:
        return False
    store.add_field_history(
        document_id,
        field_name,
        old_text,
        new_text,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        reason=reason,
        confidence=confidence,
        evidence=evidence,
        operation_id=operation_id,
        source_action=source_action,
    )
    return True


def transition(
    store: BillStoreBase,
    document_id: int,
    new_status: DocumentStatus,
    explicit: bool = False,
    **fields,
) -> dict:
    """
    Move a document to a new status, validating the transition.

    Args:
        explicit: Required for processed -> manual_required
        fields: Extra document columns to update in the same write

    Raises:
        DocumentNotFoundError: Unknown document
        InvalidTransitionError: Transition not allowed
    """
    document = store.get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)

    current = DocumentStatus(document["status"])
    allowed = new_status in ALLOWED_TRANSITIONS[current] or (
        explicit and (current, new_status) in EXPLICIT_TRANSITIONS
    )
    if not allowed:
        raise InvalidTransitionError(f"Document {document_id} cannot move from {current.value} to {new_status.value}")

    if new_status == DocumentStatus.PROCESSING:
        fields.setdefault("processing_started_at", datetime.now(UTC).isoformat())
    elif current == DocumentStatus.PROCESSING:
        fields.setdefault("processing_started_at", None)

    store.update_document(document_id, status=new_status.value, **fields)
    logger.info("Document status changed", document_id=document_id, old=current.value, new=new_status.value)
    document.update(fields, status=new_status.value)
    return document


def refresh_verification(store: BillStoreBase, document_id: int) -> VerificationDecision:
    """Recompute and persist verification status, reason and quality score"""
    document = store.get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)
    bill = store.get_bill_by_document(document_id) or {}
    state = document.get("extraction_state") or {}

    decision = create_verification_rules().evaluate(
        vendor_name=bill.get("vendor_name"),
        bill_date=bill.get("bill_date"),
        total=bill.get("total_amount"),
        bill_date_locked=document["bill_date_locked"],
        total_locked=document["total_locked"],
        ai_confidence=state.get("ai_confidence"),
        ambiguous_date=state.get("ambiguous_date", False),
        multiple_totals=state.get("multiple_totals", False),
    )
    store.update_document(
        document_id,
        verification_status=decision.status,
        verification_reason=decision.reason,
        quality_score=decision.quality_score,
    )
    return decision


def correct_field(
    store: BillStoreBase,
    document_id: int,
    field_name: str,
    value: Any,
    actor: Actor,
    reason: str = "manual_correction",
) -> dict:
    """
    Manually correct a bill's date or total.

    The audit row is written before the update. The field is then locked so
    later extraction runs keep the corrected value. Every correction rebuilds
    the payment schedule, keeping recorded payments, and re-posts the
    journal entry.

    Returns:
        Updated bill
    """
    if field_name not in CORRECTABLE_FIELDS:
        raise InputValidationError(f"Field {field_name!r} cannot be corrected (allowed: {sorted(CORRECTABLE_FIELDS)})")

    document = store.get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)
    bill = store.get_bill_by_document(document_id)
    if bill is None:
        raise MissingResourceError(f"Document {document_id} has no bill to correct")

    if field_name == "bill_date":
        new_value = coerce_date(value)
        if new_value is None:
            raise InputValidationError(f"Invalid bill date: {value!r}")
    else:
        new_value = coerce_amount(value)
        if new_value is None or new_value <= 0:
            raise InputValidationError(f"Total must be a positive amount: {value!r}")
        if new_value < (bill["tax_amount"] or 0):
            raise InputValidationError("Total cannot be lower than the tax amount")

    record_field_change(
        store,
        document_id,
        field_name,
        bill[field_name],
        new_value,
        actor,
        reason,
        confidence=1.0,
        operation_id=str(uuid.uuid4()),
        source_action="manual_correction",
        force=True,
    )

    updates = {field_name: new_value}
    if field_name == "total_amount":
        updates["subtotal"] = round(new_value - (bill["tax_amount"] or 0), 2)
    store.update_bill(bill["bill_id"], **updates)
    store.update_document(document_id, **{CORRECTABLE_FIELDS[field_name]: True})

    corrected = store.get_bill(bill["bill_id"])
    generate_payment_schedule(
        store,
        corrected["bill_id"],
        stored_payment_terms(store, corrected["bill_id"]),
        corrected["total_amount"],
        coerce_date(corrected["bill_date"]),
    )
    post_bill(store, corrected["bill_id"], created_by=actor.actor_id)
    refresh_verification(store, document_id)

    logger.info("Field corrected", document_id=document_id, field=field_name, actor_id=actor.actor_id)
    return store.get_bill(corrected["bill_id"])


def update_bill_item(store: BillStoreBase, item_id: int, changes: dict, actor: Actor) -> dict:
    """
    Update posting dimensions and posting status of a bill line item.

    Rules:
    - is_postable=false forces posting_status to unposted
    - posted -> unposted requires an admin and forces is_postable=false
    - posted requires coa_account_id, department_id and drop_id

    Raises:
        MissingResourceError: Unknown item
        PermissionDeniedError: Non-admin reverting a posted item
        PostingValidationError: Posting dimensions missing
    """
    unknown = set(changes) - ITEM_FIELDS
    if unknown:
        raise InputValidationError(f"Unknown bill item fields: {sorted(unknown)}")

    item = store.get_bill_item(item_id)
    if item is None:
        raise MissingResourceError(f"Bill item {item_id} not found")

    merged = {field: item[field] for field in ITEM_FIELDS}
    merged.update(changes)

    if item["posting_status"] == "posted" and merged["posting_status"] == "unposted":
        if not actor.is_admin:
            raise PermissionDeniedError("Only an admin can revert a posted line item")
        merged["is_postable"] = False

    if not merged["is_postable"]:
        merged["posting_status"] = "unposted"

    if merged["posting_status"] == "posted":
        missing = [f for f in ("coa_account_id", "department_id", "drop_id") if merged[f] is None]
        if missing:
            raise PostingValidationError(f"Cannot post line item {item_id}: missing {', '.join(missing)}")

    updates = {field: merged[field] for field in ITEM_FIELDS if merged[field] != item[field]}
    if not updates:
        return item

    operation_id = str(uuid.uuid4())
    for field, new_value in updates.items():
        record_field_change(
            store,
            item["document_id"],
            f"bill_item.{item_id}.{field}",
            item[field],
            new_value,
            actor,
            "quality_gate",
            operation_id=operation_id,
            source_action="bill_item_update",
        )
    store.update_bill_item(item_id, **updates)
    logger.info("Bill item updated", item_id=item_id, fields=sorted(updates))
    return store.get_bill_item(item_id)
