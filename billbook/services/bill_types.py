import re
from datetime import date, datetime
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator

_AMOUNT_CLEAN = re.compile(r"[^\d.\-]")
_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d-%m-%Y", "%d/%m/%Y", "%d.%m.%Y", "%d %b %Y", "%d %B %Y", "%b %d, %Y")


def coerce_amount(value: Any) -> Optional[float]:
    """Parse a money value from a number or a string like "Rs. 1,180.00" """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return round(float(value), 2)
    cleaned = _AMOUNT_CLEAN.sub("", str(value).replace(",", ""))
    if not cleaned or cleaned in ("-", ".", "-."):
        return None
    try:
        return round(float(cleaned), 2)
    except ValueError:
        return None


def coerce_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


class Amounts(BaseModel):
    subtotal: float | None = None
    tax_amount: float | None = None
    total: float | None = None

    @field_validator("subtotal", "tax_amount", "total", mode="before")
    @classmethod
    def _parse_amount(cls, value):
        return coerce_amount(value)


class LineItem(BaseModel):
    description: str
    sku_code: str | None = None
    quantity: float = 1.0
    unit_price: float | None = None
    amount: float
    coa_account_id: int | None = None
    department_id: int | None = None
    drop_id: int | None = None
    go_live_eligible: bool = False


class Installment(BaseModel):
    due_date: date | None = None
    amount: float | None = None

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        return coerce_date(value)


class PaymentTerms(BaseModel):
    """Payment terms as extracted or entered: FULL, ADVANCE, NET_<n> or an installment plan"""
    type: str | None = None
    advance_percentage: float | None = None
    due_date: date | None = None
    net_days: int | None = None
    installments: list[Installment] = []
    terms_text: str | None = None

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        return coerce_date(value)

    @field_validator("advance_percentage", mode="before")
    @classmethod
    def _parse_percentage(cls, value):
        # "30%" from a model or a form
        return coerce_amount(value)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        if value is None:
            return None
        text = str(value).strip().upper().replace(" ", "_").replace("-", "_")
        return text or None

    def resolved_net_days(self) -> Optional[int]:
        if self.net_days is not None and self.net_days >= 0:
            return self.net_days
        if self.type:
            match = re.fullmatch(r"NET_?(\d+)", self.type)
            if match:
                return int(match.group(1))
        return None

    def is_actionable(self) -> bool:
        """Terms that produce at least one schedule row; anything else means settled now"""
        if self.installments:
            return True
        if self.type == "ADVANCE":
            return bool(self.advance_percentage and self.advance_percentage > 0 and self.due_date)
        return self.due_date is not None or self.resolved_net_days() is not None


class Candidate(BaseModel):
    value: Any
    evidence: str | None = None


class ExtractedBill(BaseModel):
    """Structured fields of one bill, whichever path produced them"""
    vendor_name: str | None = None
    vendor_gstin: str | None = None
    bill_number: str | None = None
    bill_date: date | None = None
    amounts: Amounts = Field(default_factory=Amounts)
    line_items: list[LineItem] = []
    payment_terms: PaymentTerms | None = None
    category: str | None = None
    confidence: float = 0.0
    quality_score: float | None = None
    reason: str | None = None
    bill_date_confidence: float | None = None
    bill_date_evidence: str | None = None
    total_confidence: float | None = None
    total_evidence: str | None = None

    @field_validator("bill_date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        return coerce_date(value)

    def is_usable(self) -> bool:
        return bool(self.vendor_name and self.vendor_name.strip()) and bool(
            self.amounts.total and self.amounts.total > 0
        )


class HeuristicHints(BaseModel):
    vendor_candidates: list[Candidate] = []
    bill_date_candidates: list[Candidate] = []
    total_candidates: list[Candidate] = []
    ambiguous_date: bool = False
    multiple_totals: bool = False
    receipt_hint: str | None = None

    def for_prompt(self, limit: int = 5) -> dict:
        return {
            "vendor_candidates": [c.model_dump(mode="json") for c in self.vendor_candidates[:limit]],
            "bill_date_candidates": [c.model_dump(mode="json") for c in self.bill_date_candidates[:limit]],
            "total_candidates": [c.model_dump(mode="json") for c in self.total_candidates[:limit]],
        }


class _ExtractionBase(BaseModel):
    bill: ExtractedBill
    fallback: bool = False

    def to_blob(self, raw_text: str | None = None, preprocess_meta: dict | None = None) -> dict:
        """Persisted extraction blob with provenance tags"""
        amounts = self.bill.amounts
        return {
            "raw_text": raw_text,
            "preprocess_meta": preprocess_meta or {},
            "vendor_name": self.bill.vendor_name,
            "bill_number": self.bill.bill_number,
            "bill_date": self.bill.bill_date.isoformat() if self.bill.bill_date else None,
            "amounts": {
                "subtotal": amounts.subtotal,
                "tax_amount": amounts.tax_amount,
                "total": amounts.total,
            },
            "line_items": [item.model_dump(mode="json", exclude_none=True) for item in self.bill.line_items],
            "confidence": self.bill.confidence,
            "_provider": self.provider,
            "_fallback": self.fallback,
        }


class HeuristicExtraction(_ExtractionBase):
    """Pattern-based result; provider is "rule" when served as a fallback"""
    kind: Literal["heuristic"] = "heuristic"
    provider: str = "rule"
    hints: HeuristicHints = Field(default_factory=HeuristicHints)
    note: str | None = None

    def to_blob(self, raw_text: str | None = None, preprocess_meta: dict | None = None) -> dict:
        blob = super().to_blob(raw_text, preprocess_meta)
        if self.note:
            blob["_note"] = self.note
        return blob


class ModelExtraction(_ExtractionBase):
    kind: Literal["model"] = "model"
    provider: str


class MergedExtraction(_ExtractionBase):
    """Model result with missing vendor/date/total backfilled from heuristics"""
    kind: Literal["merged"] = "merged"
    provider: str
    backfilled: list[str] = []

    def to_blob(self, raw_text: str | None = None, preprocess_meta: dict | None = None) -> dict:
        blob = super().to_blob(raw_text, preprocess_meta)
        blob["_backfilled"] = list(self.backfilled)
        return blob


class ManualExtraction(_ExtractionBase):
    """Human-entered bill; always confidence 1.0"""
    kind: Literal["manual"] = "manual"
    provider: str = "manual"

    def to_blob(self, raw_text: str | None = None, preprocess_meta: dict | None = None) -> dict:
        blob = super().to_blob(raw_text, preprocess_meta)
        blob["manual"] = True
        return blob


ExtractionResult = Annotated[
    Union[HeuristicExtraction, ModelExtraction, MergedExtraction, ManualExtraction],
    Field(discriminator="kind"),
]


class TextExtraction(BaseModel):
    raw_text: str
    quality_meta: dict = {}
