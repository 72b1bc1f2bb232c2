"""
Tests for pattern-based bill extraction.
"""

from datetime import date
from billbook.services.heuristic_extractor import (
    HEURISTIC_CONFIDENCE,
    DATE_PATTERN,
    extract_with_rules,
    normalize_date_match,
)


def _date(text):
    return normalize_date_match(DATE_PATTERN.search(text))


def test_acme_bill_amounts():
    """Subtotal, GST and grand total lines are read into the amounts"""
    result = extract_with_rules("ACME Traders\nSubtotal: 1000\nGST: 180\nGrand Total: 1180")

    assert result is not None
    assert result.kind == "heuristic"
    assert result.provider == "rule"
    assert result.bill.vendor_name == "ACME Traders"
    assert result.bill.amounts.subtotal == 1000
    assert result.bill.amounts.tax_amount == 180
    assert result.bill.amounts.total == 1180
    assert result.bill.confidence == HEURISTIC_CONFIDENCE
    # Summary lines are not line items
    assert result.bill.line_items == []


def test_short_or_missing_text_returns_none():
    assert extract_with_rules(None) is None
    assert extract_with_rules("") is None
    assert extract_with_rules("  abc  ") is None


def test_subtotal_derived_from_total_and_tax():
    result = extract_with_rules("Blue Mills\nGST 18%: 90\nTotal Amount: 590")

    # Percentage label: the last number on the line is the amount
    assert result.bill.amounts.tax_amount == 90
    assert result.bill.amounts.total == 590
    assert result.bill.amounts.subtotal == 500


def test_thousands_separators_stripped():
    result = extract_with_rules("Northwind Fabrics\nGrand Total: Rs. 12,500.50")
    assert result.bill.amounts.total == 12500.50


def test_subtotal_line_is_not_a_total():
    result = extract_with_rules("Vendor Co\nSub Total: 800\nTotal: 944")
    assert result.bill.amounts.subtotal == 800
    assert result.bill.amounts.total == 944


def test_total_tax_line_wins_over_components():
    text = "ACME Traders\nCGST 9%: 90\nSGST 9%: 90\nTotal Tax: 180\nSubtotal: 1000\nGrand Total: 1180"
    result = extract_with_rules(text)

    assert result.bill.amounts.tax_amount == 180
    assert result.bill.amounts.subtotal == 1000
    assert result.bill.line_items == []


def test_split_gst_components_are_summed():
    result = extract_with_rules("ACME Traders\nCGST 9%: 45\nSGST 9%: 45\nGrand Total: 590")

    assert result.bill.amounts.tax_amount == 90
    assert result.bill.amounts.subtotal == 500


def test_tax_registration_lines_ignored():
    text = "ACME Traders\nGST No: 29ABCDE1234F1Z5\nVAT Reg 4411\nSubtotal: 1000\nGST: 180\nGrand Total: 1180"
    result = extract_with_rules(text)

    assert result.bill.amounts.tax_amount == 180
    assert result.bill.amounts.subtotal == 1000
    assert result.bill.vendor_gstin == "29ABCDE1234F1Z5"
    # Registration lines are not line items either
    assert result.bill.line_items == []


def test_date_formats():
    assert _date("2024-03-15") == date(2024, 3, 15)
    assert _date("15/03/2024") == date(2024, 3, 15)
    assert _date("15.03.24") == date(2024, 3, 15)
    # Middle component cannot be a month: month-first
    assert _date("03/25/2024") == date(2024, 3, 25)


def test_impossible_date_discarded():
    assert _date("2024-02-30") is None
    result = extract_with_rules("Vendor Co\nDate: 31-31-2024\nTotal: 100")
    assert result.bill.bill_date is None


def test_line_items_extracted():
    text = "Cotton House\nCotton twill 40m 2400\nButtons 300\nGrand Total: 2700"
    result = extract_with_rules(text)

    descriptions = [item.description for item in result.bill.line_items]
    assert descriptions == ["Cotton twill 40m 2400", "Buttons 300"]
    assert result.bill.line_items[1].amount == 300
    assert result.bill.line_items[1].quantity == 1
    assert result.bill.line_items[1].unit_price == 300


def test_line_items_capped_at_ten():
    lines = ["Supplier"] + [f"Item {chr(65 + i)} {100 + i}" for i in range(15)] + ["Grand Total: 5000"]
    result = extract_with_rules("\n".join(lines))
    assert len(result.bill.line_items) == 10


def test_receipt_keyword_collapses_line_items():
    text = "City Cab Services\nTrip fare 350\nToll 50\nTotal: 400"
    result = extract_with_rules(text)

    assert result.hints.receipt_hint == "cab"
    assert result.bill.category == "travel"
    assert len(result.bill.line_items) == 1
    assert result.bill.line_items[0].description == "cab"
    assert result.bill.line_items[0].amount == 400


def test_vendor_truncated_to_120_chars():
    result = extract_with_rules("V" * 200 + "\nTotal: 100")
    assert len(result.bill.vendor_name) == 120


def test_ambiguous_date_and_multiple_totals_flags():
    text = "Vendor Co\nInvoice date 01-02-2024\nDue 15-02-2024\nAmount Due: 500\nGrand Total: 550"
    result = extract_with_rules(text)

    assert result.hints.ambiguous_date is True
    assert result.hints.multiple_totals is True
    assert result.bill.bill_date == date(2024, 2, 1)
    # Last strong total wins
    assert result.bill.amounts.total == 550
    assert [c.value for c in result.hints.total_candidates] == [500, 550]


def test_bill_number_and_gstin():
    text = "Vendor Co\nInvoice No: INV-2024/017\nGSTIN 27AAPFU0939F1ZV\nTotal: 100"
    result = extract_with_rules(text)

    assert result.bill.bill_number == "INV-2024/017"
    assert result.bill.vendor_gstin == "27AAPFU0939F1ZV"


def test_hints_for_prompt_are_json_ready():
    result = extract_with_rules("ACME Traders\nDate: 2024-01-05\nGrand Total: 1180")
    hints = result.hints.for_prompt()

    assert hints["bill_date_candidates"][0]["value"] == "2024-01-05"
    assert hints["total_candidates"][0] == {"value": 1180.0, "evidence": "Grand Total: 1180"}
