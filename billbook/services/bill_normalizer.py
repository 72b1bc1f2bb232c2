import re
from datetime import date
from typing import Optional
from loguru import logger
from pydantic import BaseModel
from .bill_types import ExtractionResult, LineItem, PaymentTerms
from ..core.errors import ExtractionInsufficientError

CATEGORY_TABLE = {
    # COGS
    "fabric": ("fabric", "COGS"),
    "sampling": ("sampling", "COGS"),
    "manufacturing": ("manufacturing", "COGS"),
    "stitching": ("stitching", "COGS"),
    "packaging": ("packaging", "COGS"),
    "logistics": ("logistics", "COGS"),
    "vendor": ("vendor", "COGS"),
    # OPERATING
    "rent": ("rent", "OPERATING"),
    "utilities": ("utilities", "OPERATING"),
    "travel": ("travel", "OPERATING"),
    "transportation": ("travel", "OPERATING"),
    "food": ("food_meals", "OPERATING"),
    "meals": ("food_meals", "OPERATING"),
    "food_meals": ("food_meals", "OPERATING"),
    "tech": ("tech", "OPERATING"),
    "software": ("tech", "OPERATING"),
    "office": ("office", "OPERATING"),
    "misc": ("misc", "OPERATING"),
    # ADMIN
    "admin": ("admin", "ADMIN"),
    "salary": ("salary", "ADMIN"),
    "hr": ("hr", "ADMIN"),
    # MARKETING
    "marketing": ("marketing", "MARKETING"),
    "ads": ("marketing", "MARKETING"),
}

# Checked in order for keys missing from the table
SUBSTRING_RULES = [
    (("food", "meal"), ("food_meals", "OPERATING")),
    (("travel", "flight", "cab"), ("travel", "OPERATING")),
    (("fabric", "textile"), ("fabric", "COGS")),
    (("marketing",), ("marketing", "MARKETING")),
    (("packag",), ("packaging", "COGS")),
    (("logist", "ship"), ("logistics", "COGS")),
]
AD_TOKEN = re.compile(r"(^|_)ads?(_|$)")

# Categories whose line items are kept from automated extraction
ITEM_LEVEL_CATEGORIES = {"fabric", "manufacturing"}


def normalize_category(raw: Optional[str]) -> tuple[str, str]:
    """
    Map a free-form category to (category, category_group).

    Deterministic: the same input always yields the same pair.
    """
    key = re.sub(r"[\s\-/]+", "_", (raw or "").strip().lower())
    if not key:
        return "misc", "OPERATING"
    if key in CATEGORY_TABLE:
        return CATEGORY_TABLE[key]
    for needles, mapped in SUBSTRING_RULES:
        if any(needle in key for needle in needles):
            return mapped
    if AD_TOKEN.search(key):
        return "marketing", "MARKETING"
    return key, "OPERATING"


class NormalizedBill(BaseModel):
    """Canonical bill record ready for persistence, scheduling and posting"""
    vendor_name: str
    vendor_gstin: str | None = None
    bill_number: str | None = None
    bill_date: date | None = None
    subtotal: float
    tax_amount: float
    total_amount: float
    category: str
    category_group: str
    payment_method: str | None = None
    drop_name: str | None = None
    line_items: list[LineItem] = []
    payment_terms: PaymentTerms | None = None
    confidence_score: float
    provider: str
    fallback: bool = False


def normalize_bill(
    result: ExtractionResult,
    document_category: Optional[str] = None,
    payment_method: Optional[str] = None,
    drop_name: Optional[str] = None,
    keep_line_items: bool = False,
) -> NormalizedBill:
    """
    Project an extraction result onto the canonical bill.

    The user's upload category always wins over a model-suggested one.

    Raises:
        ExtractionInsufficientError: No vendor name or no positive total
    """
    bill = result.bill
    vendor = (bill.vendor_name or "").strip()
    if not vendor:
        raise ExtractionInsufficientError("Vendor name not found")
    total = bill.amounts.total
    if total is None or total <= 0:
        raise ExtractionInsufficientError("Total amount not found")

    category, category_group = normalize_category(document_category or bill.category)

    tax = bill.amounts.tax_amount if bill.amounts.tax_amount and bill.amounts.tax_amount > 0 else 0.0
    subtotal = bill.amounts.subtotal
    if subtotal is None or subtotal <= 0:
        subtotal = round(total - tax, 2)

    items = bill.line_items if keep_line_items or category in ITEM_LEVEL_CATEGORIES else []

    normalized = NormalizedBill(
        vendor_name=vendor,
        vendor_gstin=bill.vendor_gstin,
        bill_number=bill.bill_number,
        bill_date=bill.bill_date,
        subtotal=round(subtotal, 2),
        tax_amount=round(tax, 2),
        total_amount=round(total, 2),
        category=category,
        category_group=category_group,
        payment_method=payment_method,
        drop_name=drop_name,
        line_items=items,
        payment_terms=bill.payment_terms,
        confidence_score=bill.confidence,
        provider=result.provider,
        fallback=result.fallback,
    )
    logger.debug(
        "Bill normalized",
        vendor=vendor,
        category=category,
        category_group=category_group,
        total=normalized.total_amount,
        items=len(items),
    )
    return normalized
