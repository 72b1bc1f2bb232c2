"""
Choose between heuristic-only, hosted model and rule fallback per document.

Order of operations:
1. Heuristic extraction always runs first (hint source and fallback).
2. Text gates: no text fails fast, over-long text never reaches a model.
3. Call budget: an exhausted window serves the heuristic result.
4. Provider chain in order; first success is merged with heuristics.
5. Every provider failing degrades to the heuristic result, or fails.
"""

from typing import Optional
from loguru import logger
from .ai_providers import ChatCompletionsProvider, build_provider_chain
from .bill_types import (
    ExtractedBill,
    ExtractionResult,
    HeuristicExtraction,
    MergedExtraction,
    ModelExtraction,
)
from .heuristic_extractor import extract_with_rules
from .rate_limiter import CallBudget
from ..core.config import settings
from ..core.errors import ExtractionInsufficientError, ProviderError

NOTE_NO_TEXT = "No OCR text"
NOTE_TOO_LONG = "OCR too long"
NOTE_THROTTLED = "AI budget limit"
NOTE_HEURISTIC_ONLY = "heuristic sufficient"
NOTE_PROVIDERS_FAILED = "AI providers failed"
NOTE_NO_PROVIDER = "No AI provider configured"
NOTE_NO_PARSER = "No parser succeeded"


def merge_with_heuristics(bill: ExtractedBill, heuristic: Optional[HeuristicExtraction]) -> tuple[ExtractedBill, list[str]]:
    """
    Backfill missing vendor, bill date and total from the heuristic result.

    Returns:
        (merged bill, names of the backfilled fields)
    """
    if heuristic is None:
        return bill, []

    source = heuristic.bill
    updates = {}
    backfilled = []
    if not bill.vendor_name and source.vendor_name:
        updates["vendor_name"] = source.vendor_name
        backfilled.append("vendor_name")
    if bill.bill_date is None and source.bill_date is not None:
        updates["bill_date"] = source.bill_date
        updates["bill_date_confidence"] = source.confidence
        updates["bill_date_evidence"] = source.bill_date_evidence
        backfilled.append("bill_date")
    if not bill.amounts.total and source.amounts.total:
        amounts = bill.amounts.model_copy(update={"total": source.amounts.total})
        if amounts.tax_amount is None:
            amounts.tax_amount = source.amounts.tax_amount
        if amounts.subtotal is None:
            amounts.subtotal = source.amounts.subtotal
        updates["amounts"] = amounts
        updates["total_confidence"] = source.confidence
        updates["total_evidence"] = source.total_evidence
        backfilled.append("total")

    return (bill.model_copy(update=updates) if updates else bill), backfilled


class ExtractionOrchestrator:
    """
    Layered, confidence-gated bill extraction.

    Usage:
        orchestrator = ExtractionOrchestrator()
        result = orchestrator.extract(raw_text)
        blob = result.to_blob(raw_text, quality_meta)

        # Tests: injected providers and a fake clock
        budget = CallBudget(max_calls=2, clock=fake_clock)
        orchestrator = ExtractionOrchestrator(providers=[provider], budget=budget)
    """

    def __init__(
        self,
        providers: Optional[list[ChatCompletionsProvider]] = None,
        budget: Optional[CallBudget] = None,
        max_text_length: Optional[int] = None,
        text_char_cap: Optional[int] = None,
        min_text_length: Optional[int] = None,
    ):
        self.providers = build_provider_chain() if providers is None else providers
        self.budget = budget or CallBudget(settings.max_ai_calls_per_min)
        self.max_text_length = max_text_length or settings.max_ai_ocr_length
        self.text_char_cap = text_char_cap or settings.ai_text_char_cap
        self.min_text_length = min_text_length or settings.min_ocr_text_length

    def _fallback(self, heuristic: Optional[HeuristicExtraction], note: str, provider: str = "rule") -> HeuristicExtraction:
        if heuristic is None or not heuristic.bill.is_usable():
            logger.warning("No usable heuristic fallback", reason=note)
            # Too long and throttled keep their own reason for the notes
            raise ExtractionInsufficientError(note if note in (NOTE_TOO_LONG, NOTE_THROTTLED) else NOTE_NO_PARSER)
        logger.info("Serving heuristic extraction", reason=note, provider=provider)
        return heuristic.model_copy(update={"provider": provider, "fallback": provider == "rule", "note": note})

    def extract(self, raw_text: Optional[str]) -> ExtractionResult:
        """
        Extract bill fields from raw text.

        Returns:
            HeuristicExtraction, ModelExtraction or MergedExtraction, each tagged
            with provider and fallback

        Raises:
            ExtractionInsufficientError: No text, or no path produced a usable bill
        """
        heuristic = extract_with_rules(raw_text)

        text = (raw_text or "").strip()
        if len(text) < self.min_text_length:
            raise ExtractionInsufficientError(NOTE_NO_TEXT)

        if len(text) > self.max_text_length:
            logger.warning("OCR text over length cap, skipping model", chars=len(text), cap=self.max_text_length)
            return self._fallback(heuristic, NOTE_TOO_LONG)

        if not self.providers:
            return self._fallback(heuristic, NOTE_HEURISTIC_ONLY, provider="heuristic")

        request_text = text[: self.text_char_cap]
        hints = heuristic.hints if heuristic else None
        attempted = False
        for provider in self.providers:
            if not provider.available:
                logger.debug("Provider not configured, skipping", provider=provider.name)
                continue
            if not self.budget.try_acquire():
                return self._fallback(heuristic, NOTE_THROTTLED)
            # Fallback only when an earlier provider was actually called
            fallback = attempted
            attempted = True
            try:
                bill = provider.extract(request_text, hints)
            except ProviderError as e:
                logger.warning("Provider failed, trying next", provider=provider.name, error=str(e))
                continue

            merged, backfilled = merge_with_heuristics(bill, heuristic)
            if backfilled:
                logger.info("Backfilled model fields from heuristics", provider=provider.name, fields=backfilled)
                return MergedExtraction(provider=provider.name, bill=merged, backfilled=backfilled, fallback=fallback)
            return ModelExtraction(provider=provider.name, bill=merged, fallback=fallback)

        return self._fallback(heuristic, NOTE_PROVIDERS_FAILED if attempted else NOTE_NO_PROVIDER)


_default_orchestrator: Optional[ExtractionOrchestrator] = None


def get_orchestrator() -> ExtractionOrchestrator:
    """
    Get the process-wide orchestrator.

    One instance per process so every document shares the same call budget.
    """
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = ExtractionOrchestrator()
    return _default_orchestrator
