"""
Double-entry posting for bills.

One journal entry per bill version:
- debit the category expense account for the subtotal
- debit input tax for the tax amount (only when tax > 0)
- credit accounts payable for the total

Re-posting voids the previous entry in the same transaction, so a bill
never has more than one active entry.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Optional
from loguru import logger
from .storage.store_base import BillStoreBase
from ..core.config import settings
from ..core.errors import MissingResourceError, PostingValidationError

# category -> (account code, account name, account type)
EXPENSE_ACCOUNTS = {
    "food": ("5100", "Food & Meals Expense", "EXPENSE"),
    "travel": ("5200", "Travel Expense", "EXPENSE"),
    "vendor": ("5300", "Vendor Expense", "EXPENSE"),
    "manufacturing": ("4100", "Manufacturing Cost", "COGS"),
    "stitching": ("4200", "Stitching Cost", "COGS"),
    "packaging": ("4300", "Packaging Cost", "COGS"),
    "salary": ("5400", "Salary Expense", "EXPENSE"),
    "rent": ("5500", "Rent Expense", "EXPENSE"),
    "tech": ("5600", "Technology Expense", "EXPENSE"),
    "marketing": ("5700", "Marketing Expense", "EXPENSE"),
    "logistics": ("5800", "Logistics Expense", "EXPENSE"),
    "misc": ("5900", "Miscellaneous Expense", "EXPENSE"),
}
CATEGORY_ACCOUNT_ALIASES = {
    "food_meals": "food",
    "fabric": "manufacturing",
    "sampling": "manufacturing",
}
INPUT_TAX_ACCOUNT = ("1300", "Input Tax Credit (GST)", "ASSET")
ACCOUNTS_PAYABLE = ("2100", "Accounts Payable", "LIABILITY")


@dataclass
class JournalPosting:
    journal_id: int
    total_debit: float
    total_credit: float
    lines: list[dict]


def expense_account_for(category: Optional[str]) -> tuple[str, str, str]:
    key = (category or "misc").lower()
    key = CATEGORY_ACCOUNT_ALIASES.get(key, key)
    return EXPENSE_ACCOUNTS.get(key, EXPENSE_ACCOUNTS["misc"])


def build_journal_lines(
    subtotal: float,
    tax_amount: float,
    total: float,
    expense_account_id: int,
    tax_account_id: int,
    payable_account_id: int,
    category: str,
    vendor_name: str,
) -> list[dict]:
    """
    Balanced journal lines for one bill.

    When subtotal + tax disagrees with the total (inconsistent extraction)
    the expense line takes total - tax so debits always equal credits.

    Raises:
        PostingValidationError: Non-positive total or tax above total
    """
    if total is None or total <= 0:
        raise PostingValidationError("Cannot post a bill without a positive total")
    tax = round(tax_amount or 0.0, 2)
    if tax < 0 or tax > total:
        raise PostingValidationError(f"Tax amount {tax} is inconsistent with total {total}")

    expense = round(subtotal, 2) if subtotal is not None else None
    if expense is None or abs(expense + tax - total) > 0.005:
        if expense is not None:
            logger.warning("Subtotal + tax != total, expense line absorbs difference", subtotal=subtotal, tax=tax, total=total)
        expense = round(total - tax, 2)

    lines = [
        {
            "account_id": expense_account_id,
            "debit_amount": expense,
            "credit_amount": 0.0,
            "description": f"{category} expense",
        }
    ]
    if tax > 0:
        lines.append(
            {
                "account_id": tax_account_id,
                "debit_amount": tax,
                "credit_amount": 0.0,
                "description": "Input GST",
            }
        )
    lines.append(
        {
            "account_id": payable_account_id,
            "debit_amount": 0.0,
            "credit_amount": round(total, 2),
            "description": f"Payable to {vendor_name}",
        }
    )
    return lines


def post_bill(store: BillStoreBase, bill_id: int, created_by: Optional[int] = None) -> JournalPosting:
    """
    Create the balanced journal entry for a stored bill.

    Accounts are resolved by category and created on first use. Any
    previously posted entry for the bill is voided atomically.

    Raises:
        MissingResourceError: Unknown bill
        PostingValidationError: Amounts cannot be posted
    """
    bill = store.get_bill(bill_id)
    if bill is None:
        raise MissingResourceError(f"Bill {bill_id} not found")

    expense_account_id = store.upsert_account(*expense_account_for(bill["category"]))
    tax_account_id = store.upsert_account(*INPUT_TAX_ACCOUNT)
    payable_account_id = store.upsert_account(*ACCOUNTS_PAYABLE)

    vendor_name = bill.get("vendor_name") or "Unknown vendor"
    total = round(bill["total_amount"], 2)
    lines = build_journal_lines(
        bill["subtotal"],
        bill["tax_amount"],
        total,
        expense_account_id,
        tax_account_id,
        payable_account_id,
        bill["category"] or "misc",
        vendor_name,
    )
    total_debit = round(sum(line["debit_amount"] for line in lines), 2)
    total_credit = round(sum(line["credit_amount"] for line in lines), 2)
    if total_debit != total_credit:
        raise PostingValidationError(f"Unbalanced journal entry: debit {total_debit} != credit {total_credit}")

    entry = {
        "entry_date": bill["bill_date"] or datetime.now(UTC).date().isoformat(),
        "reference_type": "BILL",
        "description": f"{vendor_name} - {bill['bill_number'] or 'N/A'}",
        "total_debit": total_debit,
        "total_credit": total_credit,
        "created_by": created_by if created_by is not None else settings.system_user_id,
    }
    journal_id = store.replace_journal_entry(bill_id, entry, lines)

    logger.info(
        "Bill posted to ledger",
        bill_id=bill_id,
        journal_id=journal_id,
        total=total,
        lines=len(lines),
    )
    return JournalPosting(journal_id=journal_id, total_debit=total_debit, total_credit=total_credit, lines=lines)
