"""
Pattern-based bill field extraction.

Cheap and synchronous. Its result is used as a hint source for the hosted
model and as the last-resort fallback when no model answers. Confidence is
fixed at 0.3 so it always ranks below a model extraction.
"""

import re
from datetime import date
from typing import Optional
from loguru import logger
from .bill_types import (
    Amounts,
    Candidate,
    ExtractedBill,
    HeuristicExtraction,
    HeuristicHints,
    LineItem,
)

HEURISTIC_CONFIDENCE = 0.3
MIN_TEXT_LENGTH = 10
MAX_VENDOR_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 80
MAX_LINE_ITEMS = 10
MAX_CANDIDATES = 5

DATE_PATTERN = re.compile(
    r"\b(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})\b|\b(\d{1,2})[-/.](\d{1,2})[-/.](\d{2,4})\b"
)
NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?")

SUBTOTAL_LINE = re.compile(r"sub\s*-?\s*total", re.IGNORECASE)
TOTAL_LINE = re.compile(r"grand\s*total|total\s*amount|amount\s*due|net\s*payable", re.IGNORECASE)
TAX_LINE = re.compile(r"\b(tax|gst|vat|cgst|sgst|igst|utgst)\b", re.IGNORECASE)
TAX_TOTAL_LINE = re.compile(r"\btotal\s*(?:tax|gst|vat)\b|\b(?:tax|gst|vat)\s*total\b", re.IGNORECASE)
SPLIT_TAX_LINE = re.compile(r"\b(cgst|sgst|igst|utgst)\b", re.IGNORECASE)
# "GST No: 29ABCDE1234F1Z5" carries a registration number, not an amount
TAX_REGISTRATION_LINE = re.compile(
    r"\b(?:tax|gst|vat)\s*(?:no\b|number\b|reg\b|regn\b|registration\b|id\b)", re.IGNORECASE
)
PLAIN_TOTAL_LINE = re.compile(r"\btotal\b", re.IGNORECASE)
BILL_NUMBER_PATTERN = re.compile(
    r"\b(?:invoice|bill|receipt)\s*(?:no\.?|number|#)\s*[:\-]?\s*([A-Z0-9][A-Z0-9/\-]*)",
    re.IGNORECASE,
)
GSTIN_PATTERN = re.compile(r"\b\d{2}[A-Z]{5}\d{4}[A-Z][A-Z\d]Z[A-Z\d]\b")

# Receipt layouts rarely have item tables; these collapse to one synthetic item
RECEIPT_KEYWORDS = {
    "fuel": ("fuel", "petrol", "diesel", "filling station"),
    "cab": ("uber", "ola", "cab", "taxi", "rapido"),
    "flight": ("flight", "airline", "boarding pass", "pnr"),
    "food": ("restaurant", "cafe", "swiggy", "zomato", "food"),
    "tech": ("software", "subscription", "saas", "hosting", "cloud services"),
}

RECEIPT_CATEGORY = {
    "fuel": "travel",
    "cab": "travel",
    "flight": "travel",
    "food": "food_meals",
    "tech": "tech",
}


def normalize_date_match(match: re.Match) -> Optional[date]:
    """
    Turn a DATE_PATTERN match into a date.

    Year-first tokens read as Y-M-D. Otherwise the year is the last component
    (two-digit years are 20xx) and day-first is assumed unless the middle
    component cannot be a month.
    """
    try:
        if match.group(1):
            year, month, day = int(match.group(1)), int(match.group(2)), int(match.group(3))
        else:
            first, second, year = int(match.group(4)), int(match.group(5)), int(match.group(6))
            if year < 100:
                year += 2000
            if second > 12 and first <= 12:
                month, day = first, second
            else:
                day, month = first, second
        if year < 1900:
            return None
        return date(year, month, day)
    except ValueError:
        return None


def _line_amount(line: str) -> Optional[float]:
    """First number on the line; the last one when a percentage label precedes it"""
    cleaned = DATE_PATTERN.sub(" ", line).replace(",", "")
    numbers = NUMBER_PATTERN.findall(cleaned)
    if not numbers:
        return None
    value = numbers[-1] if "%" in cleaned and len(numbers) > 1 else numbers[0]
    try:
        return round(float(value), 2)
    except ValueError:
        return None


def _classify_receipt(text: str) -> Optional[str]:
    lowered = text.lower()
    for label, keywords in RECEIPT_KEYWORDS.items():
        for keyword in keywords:
            if re.search(rf"\b{re.escape(keyword)}\b", lowered):
                return label
    return None


def extract_with_rules(raw_text: Optional[str]) -> Optional[HeuristicExtraction]:
    """
    Best-effort vendor/date/total/line-item guess from raw text.

    Args:
        raw_text: OCR or native text of the bill

    Returns:
        HeuristicExtraction, or None when the text is absent or shorter than 10 characters
    """
    if not raw_text or len(raw_text.strip()) < MIN_TEXT_LENGTH:
        return None

    lines = [line.strip() for line in raw_text.splitlines()]
    non_empty = [line for line in lines if line]

    vendor_name = non_empty[0][:MAX_VENDOR_LENGTH] if non_empty else None
    vendor_candidates = [
        Candidate(value=line[:MAX_VENDOR_LENGTH], evidence=line)
        for line in non_empty
        if re.search(r"[A-Za-z]{2,}", line)
    ][:MAX_CANDIDATES]

    # Dates
    date_candidates: list[Candidate] = []
    for match in DATE_PATTERN.finditer(raw_text):
        parsed = normalize_date_match(match)
        if parsed and all(c.value != parsed for c in date_candidates):
            date_candidates.append(Candidate(value=parsed, evidence=match.group(0)))
    bill_date = date_candidates[0].value if date_candidates else None

    # Totals
    subtotal = None
    total = None
    tax_totals: list[float] = []
    split_taxes: list[float] = []
    plain_taxes: list[float] = []
    strong_totals: list[Candidate] = []
    weak_totals: list[Candidate] = []
    summary_lines = set()
    for index, line in enumerate(non_empty):
        if TAX_REGISTRATION_LINE.search(line) or GSTIN_PATTERN.search(line):
            summary_lines.add(index)
            continue
        amount = _line_amount(line)
        if amount is None:
            continue
        if SUBTOTAL_LINE.search(line):
            subtotal = amount
            summary_lines.add(index)
        elif TOTAL_LINE.search(line):
            strong_totals.append(Candidate(value=amount, evidence=line))
            summary_lines.add(index)
        elif TAX_LINE.search(line) and "invoice" not in line.lower():
            if TAX_TOTAL_LINE.search(line):
                tax_totals.append(amount)
            elif SPLIT_TAX_LINE.search(line):
                split_taxes.append(amount)
            else:
                plain_taxes.append(amount)
            summary_lines.add(index)
        elif PLAIN_TOTAL_LINE.search(line):
            weak_totals.append(Candidate(value=amount, evidence=line))
            summary_lines.add(index)

    # An aggregate tax line wins over its CGST/SGST/IGST components
    if tax_totals:
        tax = tax_totals[-1]
    elif split_taxes:
        tax = round(sum(split_taxes), 2)
    elif plain_taxes:
        tax = plain_taxes[-1]
    else:
        tax = None

    total_candidates = strong_totals or weak_totals
    if total_candidates:
        total = total_candidates[-1].value
    if subtotal is None and total is not None and tax is not None:
        subtotal = round(total - tax, 2)

    # Line items
    line_items: list[LineItem] = []
    for index, line in enumerate(non_empty):
        if index == 0 or index in summary_lines or len(line_items) >= MAX_LINE_ITEMS:
            continue
        if not re.search(r"[A-Za-z]", line) or DATE_PATTERN.search(line):
            continue
        amount = _line_amount(line)
        if amount and amount > 0:
            line_items.append(
                LineItem(
                    description=line[:MAX_DESCRIPTION_LENGTH],
                    quantity=1,
                    unit_price=amount,
                    amount=amount,
                )
            )

    receipt_hint = _classify_receipt(raw_text)
    category = None
    if receipt_hint:
        category = RECEIPT_CATEGORY[receipt_hint]
        if total:
            line_items = [LineItem(description=receipt_hint, quantity=1, unit_price=total, amount=total)]

    bill_number_match = BILL_NUMBER_PATTERN.search(raw_text)
    gstin_match = GSTIN_PATTERN.search(raw_text)

    bill = ExtractedBill(
        vendor_name=vendor_name,
        vendor_gstin=gstin_match.group(0) if gstin_match else None,
        bill_number=bill_number_match.group(1) if bill_number_match else None,
        bill_date=bill_date,
        amounts=Amounts(subtotal=subtotal, tax_amount=tax, total=total),
        line_items=line_items,
        category=category,
        confidence=HEURISTIC_CONFIDENCE,
        bill_date_evidence=date_candidates[0].evidence if date_candidates else None,
        total_evidence=total_candidates[-1].evidence if total_candidates else None,
    )
    hints = HeuristicHints(
        vendor_candidates=vendor_candidates,
        bill_date_candidates=date_candidates[:MAX_CANDIDATES],
        total_candidates=total_candidates[-MAX_CANDIDATES:],
        ambiguous_date=len(date_candidates) > 1,
        multiple_totals=len({c.value for c in strong_totals}) > 1,
        receipt_hint=receipt_hint,
    )

    logger.debug(
        "Heuristic extraction",
        vendor=vendor_name,
        bill_date=str(bill_date),
        total=total,
        items=len(line_items),
        receipt_hint=receipt_hint,
    )
    return HeuristicExtraction(bill=bill, hints=hints)
