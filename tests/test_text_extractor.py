"""
Tests for file-to-text extraction.

OCR is exercised through a fake engine so the tesseract binary is not
needed; real engines are covered by the integration tests.
"""

import docx
import fitz
import openpyxl
import pytest
from PIL import Image
from billbook.core.errors import MissingResourceError, UnsupportedDocumentError
from billbook.services.text_extractor import (
    detect_document_type,
    extract_text,
    text_quality_score,
)

GOOD_TEXT = (
    "ACME Traders Private Limited\n"
    "Invoice No: INV-001 Date: 2024-01-05\n"
    "Cotton fabric rolls for spring collection 1000\n"
    "Subtotal: 1000\nGST: 180\nGrand Total: 1180\n"
)


class FakeOcr:
    """Returns canned text per call and records what it was given"""
    name = "fake"

    def __init__(self, *responses):
        self.responses = list(responses)
        self.images = []

    def recognize(self, image):
        self.images.append(image)
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]


class TestQualityScore:
    def test_empty_text_scores_zero(self):
        assert text_quality_score("") == 0.0
        assert text_quality_score(None) == 0.0
        assert text_quality_score("   \n ") == 0.0

    def test_bill_text_scores_higher_than_noise(self):
        assert text_quality_score(GOOD_TEXT) > text_quality_score("~~ ## ~~ ..")

    def test_score_bounds(self):
        score = text_quality_score("a" * 1000 + "1" * 100)
        assert 0.0 <= score <= 1.0

    def test_mostly_digits_is_penalised(self):
        assert text_quality_score("1" * 400) < text_quality_score("abc1" * 100)


class TestDetectDocumentType:
    def test_declared_types(self, tmp_path):
        assert detect_document_type(tmp_path / "a.bin", "application/pdf") == "pdf"
        assert detect_document_type(tmp_path / "a.bin", "image/png") == "image"
        assert detect_document_type(tmp_path / "a.bin", "text/plain") == "text"

    def test_generic_type_uses_extension(self, tmp_path):
        assert detect_document_type(tmp_path / "bill.xlsx", "application/octet-stream") == "excel"
        assert detect_document_type(tmp_path / "bill.docx", None) == "docx"
        assert detect_document_type(tmp_path / "scan.JPG", "") == "image"

    def test_legacy_office_rejected(self, tmp_path):
        with pytest.raises(UnsupportedDocumentError):
            detect_document_type(tmp_path / "bill.xls", None)
        with pytest.raises(UnsupportedDocumentError):
            detect_document_type(tmp_path / "bill.bin", "application/msword")

    def test_unknown_type_rejected(self, tmp_path):
        with pytest.raises(UnsupportedDocumentError):
            detect_document_type(tmp_path / "bill.zip", "application/zip")


def test_missing_file(tmp_path):
    with pytest.raises(MissingResourceError):
        extract_text(tmp_path / "nope.pdf")


def test_plain_text(tmp_path):
    path = tmp_path / "bill.txt"
    path.write_text(GOOD_TEXT, encoding="utf-8")

    result = extract_text(path, "text/plain")

    assert result.raw_text == GOOD_TEXT
    assert result.quality_meta["type"] == "text"
    assert result.quality_meta["char_count"] == len(GOOD_TEXT)
    assert result.quality_meta["quality_score"] == text_quality_score(GOOD_TEXT)


def test_spreadsheet_rows_joined(tmp_path):
    path = tmp_path / "bill.xlsx"
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Invoice"
    sheet.append(["ACME Traders"])
    sheet.append(["Item", "Qty", "Amount"])
    sheet.append(["Cotton", 2, 500])
    sheet.append([None, None, None])
    sheet.append(["Grand Total", None, 1180])
    workbook.save(path)

    result = extract_text(path, "application/octet-stream")

    assert result.quality_meta["type"] == "excel"
    lines = result.raw_text.splitlines()
    assert lines[0] == "--- SHEET: Invoice ---"
    assert "Cotton | 2 | 500" in lines
    assert "Grand Total | 1180" in lines
    assert len(lines) == 5


def test_docx_paragraphs_and_tables(tmp_path):
    path = tmp_path / "bill.docx"
    document = docx.Document()
    document.add_paragraph("ACME Traders")
    document.add_paragraph("")
    table = document.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Grand Total"
    table.rows[0].cells[1].text = "1180"
    document.save(str(path))

    result = extract_text(path)

    assert result.quality_meta["type"] == "docx"
    assert result.raw_text.splitlines() == ["ACME Traders", "Grand Total | 1180"]


def test_pdf_native_text_layer(tmp_path):
    path = tmp_path / "bill.pdf"
    pdf = fitz.open()
    page = pdf.new_page()
    y = 72
    for line in GOOD_TEXT.splitlines():
        page.insert_text((72, y), line, fontsize=11)
        y += 16
    pdf.save(str(path))
    pdf.close()

    engine = FakeOcr("should not be used")
    result = extract_text(path, "application/pdf", ocr_engine=engine)

    assert result.quality_meta["type"] == "pdf"
    assert result.quality_meta["engine"] == "pdf-text"
    assert "Grand Total: 1180" in result.raw_text
    assert engine.images == []


def test_scanned_pdf_falls_back_to_ocr(tmp_path):
    path = tmp_path / "scan.pdf"
    pdf = fitz.open()
    pdf.new_page()
    pdf.new_page()
    pdf.save(str(path))
    pdf.close()

    engine = FakeOcr(GOOD_TEXT)
    result = extract_text(path, "application/pdf", ocr_engine=engine)

    assert result.quality_meta["type"] == "ocr"
    assert result.quality_meta["engine"] == "fake"
    assert result.quality_meta["pages"] == 2
    assert len(engine.images) == 2
    assert "Grand Total: 1180" in result.raw_text


def test_image_ocr(tmp_path):
    path = tmp_path / "photo.png"
    Image.new("RGB", (200, 100), "white").save(path)

    engine = FakeOcr(GOOD_TEXT)
    result = extract_text(path, "image/png", ocr_engine=engine)

    assert result.raw_text == GOOD_TEXT.strip()
    assert result.quality_meta["enhanced"] is False
    assert len(engine.images) == 1


def test_low_quality_ocr_retries_with_enhancement(tmp_path):
    path = tmp_path / "photo.png"
    Image.new("RGB", (200, 100), "white").save(path)

    # First pass is noise, the enhanced pass reads the bill
    engine = FakeOcr("~~", GOOD_TEXT)
    result = extract_text(path, "image/png", ocr_engine=engine)

    assert result.quality_meta["enhanced"] is True
    assert "Grand Total: 1180" in result.raw_text
    assert len(engine.images) == 2
    # Enhanced image is greyscale
    assert engine.images[1].mode == "L"


def test_enhancement_kept_only_when_better(tmp_path):
    path = tmp_path / "photo.png"
    Image.new("RGB", (200, 100), "white").save(path)

    engine = FakeOcr("~a", "~")
    result = extract_text(path, "image/png", ocr_engine=engine)

    assert result.quality_meta["enhanced"] is False
    assert result.raw_text == "~a"
    assert len(engine.images) == 2
