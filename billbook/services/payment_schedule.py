"""
Payment terms to schedule rows.

Terms are evaluated in this order:
- installments: one row per dated installment
- ADVANCE: advance row (PAID at bill date) + balance row (PENDING at due date)
- NET_<n> / net_days: one PENDING row at bill_date + n days
- due date only: one PENDING row at that date
- anything else: no rows, the bill is settled now (payment_status 'paid')

A bill without a date is scheduled from today, so NET and ADVANCE payables
stay open when OCR misses the date.

Regeneration runs in one store transaction and re-applies payments already
recorded against the bill.
"""

from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta, UTC
from typing import Optional
from loguru import logger
from .bill_types import PaymentTerms
from .storage.store_base import BillStoreBase
from ..core.errors import InputValidationError, MissingResourceError

CENT = 0.01


@dataclass
class ScheduleRow:
    installment_number: int
    due_date: Optional[date]
    amount_due: float
    amount_paid: float = 0.0
    payment_status: str = "PENDING"

    def to_dict(self) -> dict:
        return asdict(self)


def _installment_rows(terms: PaymentTerms, total: float) -> list[ScheduleRow]:
    dated = [i for i in terms.installments if i.due_date is not None]
    skipped = len(terms.installments) - len(dated)
    if skipped:
        logger.warning("Skipping installments without a due date", skipped=skipped)
    if not dated:
        return []

    explicit_sum = sum(i.amount for i in dated if i.amount is not None)
    unspecified = [i for i in dated if i.amount is None]
    share = round((total - explicit_sum) / len(unspecified), 2) if unspecified else 0.0

    rows = []
    for number, installment in enumerate(dated, start=1):
        amount = installment.amount if installment.amount is not None else share
        rows.append(ScheduleRow(installment_number=number, due_date=installment.due_date, amount_due=round(amount, 2)))

    # Last row absorbs rounding so the schedule sums to the bill total
    difference = round(total - sum(r.amount_due for r in rows), 2)
    if difference:
        if abs(difference) > CENT:
            logger.warning("Installment amounts do not match bill total, adjusting last row", difference=difference)
        rows[-1].amount_due = round(rows[-1].amount_due + difference, 2)
    return rows


def _advance_rows(terms: PaymentTerms, total: float, bill_date: Optional[date]) -> list[ScheduleRow]:
    pct = terms.advance_percentage
    if not pct or pct <= 0 or terms.due_date is None:
        logger.warning(
            "ADVANCE terms missing percentage or due date, no schedule created",
            advance_percentage=pct,
            due_date=str(terms.due_date),
        )
        return []

    pct = min(pct, 100.0)
    advance = round(total * pct / 100, 2)
    balance = round(total - advance, 2)
    rows = [
        ScheduleRow(
            installment_number=1,
            due_date=bill_date,
            amount_due=advance,
            amount_paid=advance,
            payment_status="PAID",
        )
    ]
    if balance > 0:
        rows.append(ScheduleRow(installment_number=2, due_date=terms.due_date, amount_due=balance))
    return rows


def build_schedule(
    terms: Optional[PaymentTerms],
    total: float,
    bill_date: Optional[date],
    today: Optional[date] = None,
) -> list[ScheduleRow]:
    """
    Turn payment terms into schedule rows.

    Args:
        terms: Payment terms, or None
        total: Bill total
        bill_date: Bill date; today is used when it is missing
        today: Override for the current date

    Returns:
        Schedule rows; an empty list means no schedule (bill treated as paid)
    """
    if terms is None or total <= 0:
        return []

    if terms.installments:
        return _installment_rows(terms, total)

    base_date = bill_date or today or datetime.now(UTC).date()

    if terms.type == "ADVANCE":
        return _advance_rows(terms, total, base_date)

    net_days = terms.resolved_net_days()
    if net_days is not None:
        if bill_date is None and terms.due_date is not None:
            return [ScheduleRow(installment_number=1, due_date=terms.due_date, amount_due=round(total, 2))]
        if bill_date is None:
            logger.warning("NET terms without a bill date, counting from today", net_days=net_days)
        return [ScheduleRow(installment_number=1, due_date=base_date + timedelta(days=net_days), amount_due=round(total, 2))]

    if terms.due_date is not None:
        return [ScheduleRow(installment_number=1, due_date=terms.due_date, amount_due=round(total, 2))]

    return []


def _terms_row(terms: PaymentTerms, total: float) -> dict:
    return {
        "payment_type": terms.type or ("INSTALLMENT" if terms.installments else None),
        "total_amount": total,
        "advance_percentage": terms.advance_percentage,
        "due_date": terms.due_date,
        "net_days": terms.resolved_net_days(),
        "installment_count": len(terms.installments) or None,
        "terms_text": terms.terms_text,
        "terms_json": terms.model_dump(mode="json"),
    }


def generate_payment_schedule(
    store: BillStoreBase,
    bill_id: int,
    terms: Optional[PaymentTerms],
    total: float,
    bill_date: Optional[date],
) -> list[ScheduleRow]:
    """
    Rebuild payment terms and schedule for a bill.

    Existing terms and rows are rebuilt in one transaction. The bill is
    'pending' while any row is open and 'paid' otherwise (including when no
    schedule is created). Payments already recorded are re-applied to the
    new rows, so a bill with payments can also come out 'partial'.
    """
    rows = build_schedule(terms, total, bill_date)
    payment_status = "pending" if any(r.payment_status != "PAID" for r in rows) else "paid"
    store.replace_payment_schedule(
        bill_id,
        _terms_row(terms, total) if terms is not None else None,
        [r.to_dict() for r in rows],
        payment_status,
    )
    logger.info(
        "Payment schedule generated",
        bill_id=bill_id,
        rows=len(rows),
        payment_status=payment_status,
        terms_type=terms.type if terms else None,
    )
    return rows


def stored_payment_terms(store: BillStoreBase, bill_id: int) -> Optional[PaymentTerms]:
    """Rebuild the PaymentTerms a bill's schedule was generated from"""
    row = store.get_payment_terms(bill_id)
    if row is None or not row.get("terms_json"):
        return None
    return PaymentTerms.model_validate(row["terms_json"])


def record_payment(
    store: BillStoreBase,
    bill_id: int,
    amount: float,
    schedule_id: Optional[int] = None,
    payment_date: Optional[date] = None,
    payment_method: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    """
    Apply a payment to a schedule row.

    Without a schedule_id the earliest open (PENDING or PARTIAL) row is used.

    Returns:
        The updated schedule row

    Raises:
        InputValidationError: Non-positive amount or no open row
        MissingResourceError: Unknown bill or schedule row
    """
    if amount is None or amount <= 0:
        raise InputValidationError("Payment amount must be greater than zero")
    if store.get_bill(bill_id) is None:
        raise MissingResourceError(f"Bill {bill_id} not found")

    if schedule_id is None:
        open_rows = [r for r in store.list_payment_schedule(bill_id) if r["payment_status"] in ("PENDING", "PARTIAL")]
        if not open_rows:
            raise InputValidationError("No open schedule entry for this bill")
        open_rows.sort(key=lambda r: (r["due_date"] is None, r["due_date"] or "", r["installment_number"]))
        schedule_id = open_rows[0]["schedule_id"]

    paid_on = (payment_date or datetime.now(UTC).date()).isoformat()
    updated = store.apply_payment(bill_id, schedule_id, round(amount, 2), paid_on, payment_method, notes)
    if updated is None:
        raise MissingResourceError(f"Schedule entry {schedule_id} not found for bill {bill_id}")

    logger.info(
        "Payment recorded",
        bill_id=bill_id,
        schedule_id=schedule_id,
        amount=amount,
        status=updated["payment_status"],
    )
    return updated
