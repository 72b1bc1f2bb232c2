"""
Turn an uploaded file into plain text plus a quality score.

Spreadsheets and word-processing documents are read structurally. PDFs
try the native text layer first and fall back to rasterize-and-OCR. Images
go straight to OCR. Low-quality OCR gets one enhancement pass.
"""

import mimetypes
import re
from io import BytesIO
from pathlib import Path
from typing import Optional, Protocol
import docx
import fitz
import openpyxl
import pdfplumber
import pytesseract
from azure.ai.documentintelligence import DocumentIntelligenceClient
from azure.core.credentials import AzureKeyCredential
from loguru import logger
from PIL import Image, ImageFilter, ImageOps
from .bill_types import TextExtraction
from ..core.config import settings
from ..core.errors import MissingResourceError, UnsupportedDocumentError

SPREADSHEET_TYPES = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel.sheet.macroenabled.12",
}
DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp", ".gif"}
TEXT_EXTENSIONS = {".txt", ".csv"}
LEGACY_OFFICE_EXTENSIONS = {".xls", ".doc"}
GENERIC_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


class OcrEngine(Protocol):
    name: str

    def recognize(self, image: Image.Image) -> str:
        ...


class TesseractOcr:
    """Local OCR through the tesseract binary"""
    name = "tesseract"

    def __init__(self, lang: str = "eng"):
        self.lang = lang

    def recognize(self, image: Image.Image) -> str:
        return pytesseract.image_to_string(image, lang=self.lang)


class AzureReadOcr:
    """Hosted OCR through the Azure Document Intelligence prebuilt-read model"""
    name = "azure"

    def __init__(self, endpoint: str, api_key: str):
        self.client = DocumentIntelligenceClient(endpoint=endpoint, credential=AzureKeyCredential(api_key))

    def recognize(self, image: Image.Image) -> str:
        buffer = BytesIO()
        image.save(buffer, format="PNG")
        poller = self.client.begin_analyze_document(
            "prebuilt-read",
            body=buffer.getvalue(),
            content_type="application/octet-stream",
        )
        result = poller.result()
        return result.content or ""


def get_ocr_engine() -> OcrEngine:
    if settings.ocr_engine == "azure" and settings.az_di_endpoint and settings.az_di_api_key:
        logger.info("Using Azure Document Intelligence for OCR")
        return AzureReadOcr(settings.az_di_endpoint, settings.az_di_api_key)
    return TesseractOcr(settings.ocr_lang)


def text_quality_score(text: Optional[str]) -> float:
    """
    Estimate how trustworthy extracted text is, in [0, 1].

    Weighted blend of length (saturates at 400 non-space chars), alphabetic
    ratio (saturates at 60%) and digit ratio (bills need some digits; rewarded
    up to 10%, penalised above 50%).
    """
    if not text:
        return 0.0
    compact = re.sub(r"\s+", "", text)
    if not compact:
        return 0.0

    length = len(compact)
    alpha_ratio = sum(ch.isalpha() for ch in compact) / length
    digit_ratio = sum(ch.isdigit() for ch in compact) / length

    length_score = min(length / 400, 1.0)
    alpha_score = min(alpha_ratio / 0.6, 1.0)
    if digit_ratio <= 0.5:
        digit_score = min(digit_ratio / 0.1, 1.0)
    else:
        digit_score = max(0.0, 1.0 - (digit_ratio - 0.5) / 0.5)

    return round(0.4 * length_score + 0.4 * alpha_score + 0.2 * digit_score, 3)


def enhance_image(image: Image.Image) -> Image.Image:
    """Greyscale, contrast normalization and sharpen"""
    enhanced = ImageOps.grayscale(image)
    enhanced = ImageOps.autocontrast(enhanced)
    return enhanced.filter(ImageFilter.SHARPEN)


def detect_document_type(file_path: Path, media_type: Optional[str]) -> str:
    """
    Decide how to read a file: excel, docx, pdf, image or text.

    The declared media type wins unless it is generic, in which case the
    extension (or a guess from it) decides.
    """
    declared = (media_type or "").split(";")[0].strip().lower()
    suffix = file_path.suffix.lower()
    if declared in GENERIC_TYPES:
        declared = (mimetypes.guess_type(file_path.name)[0] or "").lower()

    if suffix in LEGACY_OFFICE_EXTENSIONS or declared in ("application/vnd.ms-excel", "application/msword"):
        raise UnsupportedDocumentError(f"Legacy office format not supported: {file_path.name}")
    if declared in SPREADSHEET_TYPES or suffix in (".xlsx", ".xlsm"):
        return "excel"
    if declared in DOCX_TYPES or suffix == ".docx":
        return "docx"
    if declared == "application/pdf" or suffix == ".pdf":
        return "pdf"
    if declared.startswith("image/") or suffix in IMAGE_EXTENSIONS:
        return "image"
    if declared.startswith("text/") or suffix in TEXT_EXTENSIONS:
        return "text"
    raise UnsupportedDocumentError(f"Unsupported media type {media_type!r} for {file_path.name}")


def _read_spreadsheet(file_path: Path) -> str:
    workbook = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    lines = []
    try:
        for sheet in workbook.worksheets:
            lines.append(f"--- SHEET: {sheet.title} ---")
            for row in sheet.iter_rows(values_only=True):
                cells = [str(cell).strip() for cell in row if cell is not None and str(cell).strip()]
                if cells:
                    lines.append(" | ".join(cells))
    finally:
        workbook.close()
    return "\n".join(lines)


def _read_docx(file_path: Path) -> str:
    document = docx.Document(str(file_path))
    lines = [paragraph.text.strip() for paragraph in document.paragraphs if paragraph.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                lines.append(" | ".join(cells))
    return "\n".join(lines)


def _read_pdf_text_layer(file_path: Path) -> str:
    with pdfplumber.open(str(file_path)) as pdf:
        pages = [page.extract_text() or "" for page in pdf.pages]
    return "\n".join(pages).strip()


def _render_pdf_pages(file_path: Path, dpi: int) -> list[Image.Image]:
    zoom = dpi / 72
    images = []
    with fitz.open(str(file_path)) as pdf:
        for page in pdf:
            pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            images.append(Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples))
    return images


def _ocr_pages(images: list[Image.Image], engine: OcrEngine) -> tuple[str, float, bool]:
    """
    OCR all pages; below the enhancement threshold retry once on enhanced images.

    Returns:
        (text, quality score, whether the enhanced pass was kept)
    """
    text = "\n".join(engine.recognize(image) for image in images).strip()
    score = text_quality_score(text)
    if score >= settings.ocr_enhance_below:
        return text, score, False

    logger.info("Low OCR quality, retrying with enhanced image", quality_score=score, pages=len(images))
    enhanced_text = "\n".join(engine.recognize(enhance_image(image)) for image in images).strip()
    enhanced_score = text_quality_score(enhanced_text)
    if enhanced_score > score:
        return enhanced_text, enhanced_score, True
    return text, score, False


def extract_text(
    file_path: str | Path,
    media_type: Optional[str] = None,
    ocr_engine: Optional[OcrEngine] = None,
) -> TextExtraction:
    """
    Extract plain text from a bill file.

    Args:
        file_path: Path of the stored upload
        media_type: Declared media type (may be generic octet-stream)
        ocr_engine: OCR engine override; defaults to the configured engine

    Returns:
        TextExtraction with raw_text and quality_meta (type, quality_score,
        engine, enhanced, pages, char_count)

    Raises:
        MissingResourceError: File does not exist
        UnsupportedDocumentError: Media type cannot be read
    """
    path = Path(file_path)
    if not path.is_file():
        raise MissingResourceError(f"File not found: {path}")

    doc_type = detect_document_type(path, media_type)
    meta = {"type": doc_type, "engine": None, "enhanced": False, "pages": 1}

    if doc_type == "excel":
        text = _read_spreadsheet(path)
    elif doc_type == "docx":
        text = _read_docx(path)
    elif doc_type == "text":
        text = path.read_text(encoding="utf-8", errors="replace")
    else:
        text = ""
        if doc_type == "pdf":
            text = _read_pdf_text_layer(path)
            native_score = text_quality_score(text)
            if len(text) >= settings.min_ocr_text_length and native_score >= settings.native_text_min_quality:
                meta["engine"] = "pdf-text"
                logger.info("Using native PDF text layer", quality_score=native_score, chars=len(text))
            else:
                logger.info("PDF text layer unusable, falling back to OCR", quality_score=native_score)
                text = ""

        if not text:
            engine = ocr_engine or get_ocr_engine()
            if doc_type == "pdf":
                images = _render_pdf_pages(path, settings.pdf_render_dpi)
            else:
                with Image.open(path) as image:
                    image.load()
                    images = [image.convert("RGB")]
            text, _, enhanced = _ocr_pages(images, engine)
            meta.update({"type": "ocr", "engine": engine.name, "enhanced": enhanced, "pages": len(images)})

    meta["quality_score"] = text_quality_score(text)
    meta["char_count"] = len(text)
    logger.info("Text extracted", file=path.name, **meta)
    return TextExtraction(raw_text=text, quality_meta=meta)
