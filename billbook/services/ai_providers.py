"""
Hosted model adapters for bill field extraction.

Both providers speak the OpenAI-compatible chat completions protocol and
are asked for strict JSON. Any transport, status or parse failure is
raised as ProviderError; the orchestrator decides what to do with it.
"""

import json
import re
from typing import Any, Optional
import httpx
from loguru import logger
from pydantic import ValidationError
from .bill_types import (
    Amounts,
    ExtractedBill,
    HeuristicHints,
    LineItem,
    PaymentTerms,
    coerce_amount,
)
from ..core.config import settings
from ..core.errors import ProviderError

MAX_MODEL_LINE_ITEMS = 5
LINE_ITEM_TOTAL_TOLERANCE = 1.2

SYSTEM_PROMPT = """You extract structured fields from vendor bills.
Return ONLY a JSON object with these keys:
  vendor_name (string or null), vendor_gstin (string or null), bill_number (string or null),
  bill_date {"value": "YYYY-MM-DD" or null, "confidence": 0-1, "evidence": string},
  total_amount {"value": number or null, "confidence": 0-1, "evidence": string},
  subtotal (number or null), tax_amount (number or null),
  quality_score (0-1), reason (string),
  line_items [{"description", "quantity", "unit_price", "amount"}] (optional),
  payment_terms {"type", "advance_percentage", "due_date", "net_days", "installments"} (optional),
  category (string or null).
Evidence must be copied verbatim from the bill text.
Hints are candidates found by pattern matching. Use a hint only if the bill text supports it."""


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
    return fenced.group(1) if fenced else text


def _scored(value: Any) -> tuple[Any, Optional[float], Optional[str]]:
    """Split a {value, confidence, evidence} triple; bare values are accepted too"""
    if isinstance(value, dict):
        confidence = value.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        return value.get("value"), confidence, value.get("evidence")
    return value, None, None


def bill_from_model_payload(data: dict) -> ExtractedBill:
    """
    Map the model's JSON response onto an ExtractedBill.

    Line items larger than 1.2x the total are dropped as hallucinations and
    at most 5 are kept.
    """
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object")

    bill_date, date_confidence, date_evidence = _scored(data.get("bill_date"))
    total, total_confidence, total_evidence = _scored(data.get("total_amount"))
    total = coerce_amount(total)

    items = []
    for raw_item in data.get("line_items") or []:
        if not isinstance(raw_item, dict):
            continue
        amount = coerce_amount(raw_item.get("amount"))
        description = str(raw_item.get("description") or "").strip()
        if not description or amount is None or amount <= 0:
            continue
        if total and amount > total * LINE_ITEM_TOTAL_TOLERANCE:
            continue
        items.append(
            LineItem(
                description=description[:80],
                sku_code=raw_item.get("sku_code"),
                quantity=coerce_amount(raw_item.get("quantity")) or 1.0,
                unit_price=coerce_amount(raw_item.get("unit_price")) or amount,
                amount=amount,
            )
        )
        if len(items) >= MAX_MODEL_LINE_ITEMS:
            break

    terms = None
    if isinstance(data.get("payment_terms"), dict):
        try:
            terms = PaymentTerms.model_validate(data["payment_terms"])
        except ValidationError as e:
            # Optional block; the header fields stand on their own
            logger.warning("Ignoring unparseable payment terms", error=str(e), payment_terms=data["payment_terms"])

    confidences = [c for c in (date_confidence, total_confidence) if c is not None]
    quality = data.get("quality_score")
    try:
        quality = float(quality) if quality is not None else None
    except (TypeError, ValueError):
        quality = None

    vendor = data.get("vendor_name")
    return ExtractedBill(
        vendor_name=str(vendor).strip()[:120] if vendor else None,
        vendor_gstin=data.get("vendor_gstin") or None,
        bill_number=str(data["bill_number"]) if data.get("bill_number") else None,
        bill_date=bill_date,
        amounts=Amounts(subtotal=data.get("subtotal"), tax_amount=data.get("tax_amount"), total=total),
        line_items=items,
        payment_terms=terms,
        category=data.get("category") or None,
        confidence=min(confidences) if confidences else (quality if quality is not None else 0.7),
        quality_score=quality,
        reason=data.get("reason"),
        bill_date_confidence=date_confidence,
        bill_date_evidence=date_evidence,
        total_confidence=total_confidence,
        total_evidence=total_evidence,
    )


class ChatCompletionsProvider:
    """OpenAI-compatible chat completions extraction provider"""

    def __init__(
        self,
        name: str,
        api_key: Optional[str],
        model: str,
        base_url: str,
        timeout: float = 30.0,
    ):
        self.name = name
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _build_payload(self, text: str, hints: Optional[HeuristicHints]) -> dict:
        user_content = {"bill_text": text}
        if hints is not None:
            user_content["hints"] = hints.for_prompt()
        return {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(user_content, ensure_ascii=False)},
            ],
        }

    def extract(self, text: str, hints: Optional[HeuristicHints] = None) -> ExtractedBill:
        """
        Ask the hosted model for bill fields.

        Raises:
            ProviderError: Network/timeout failure, non-2xx status or unparseable response
        """
        if not self.available:
            raise ProviderError(self.name, "API key not configured")

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=self._build_payload(text, hints),
                )
                response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
            data = json.loads(_strip_code_fence(content or ""))
            bill = bill_from_model_payload(data)
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(self.name, f"unparseable response: {e}") from e

        logger.info(
            "Model extraction complete",
            provider=self.name,
            vendor=bill.vendor_name,
            total=bill.amounts.total,
            confidence=bill.confidence,
        )
        return bill


def build_provider_chain(provider: Optional[str] = None) -> list[ChatCompletionsProvider]:
    """
    Providers to try, in order, for the configured AI_PROVIDER.

    openai -> [openai, groq]; groq -> [groq]; heuristic -> []
    """
    provider = (provider or settings.ai_provider).lower()
    openai = ChatCompletionsProvider(
        "openai",
        settings.openai_api_key,
        settings.openai_model,
        settings.openai_base_url,
        settings.ai_request_timeout,
    )
    groq = ChatCompletionsProvider(
        "groq",
        settings.groq_api_key,
        settings.groq_model,
        settings.groq_base_url,
        settings.ai_request_timeout,
    )
    if provider == "openai":
        return [openai, groq]
    if provider == "groq":
        return [groq]
    return []
