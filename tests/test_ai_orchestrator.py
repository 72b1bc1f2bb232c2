"""
Tests for the layered extraction orchestrator and hosted model adapters.

Provider HTTP calls are mocked with respx; the call budget runs on a fake
clock so throttling is tested without sleeping.
"""

import json
from datetime import date
import httpx
import pytest
import respx
from billbook.core.errors import ExtractionInsufficientError, ProviderError
from billbook.services.ai_orchestrator import (
    NOTE_HEURISTIC_ONLY,
    NOTE_NO_PROVIDER,
    NOTE_PROVIDERS_FAILED,
    NOTE_THROTTLED,
    NOTE_TOO_LONG,
    ExtractionOrchestrator,
    merge_with_heuristics,
)
from billbook.services.ai_providers import (
    ChatCompletionsProvider,
    bill_from_model_payload,
    build_provider_chain,
)
from billbook.services.bill_types import ExtractedBill
from billbook.services.heuristic_extractor import extract_with_rules
from billbook.services.rate_limiter import CallBudget

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"

BILL_TEXT = "ACME Traders\nDate: 2024-01-05\nSubtotal: 1000\nGST: 180\nGrand Total: 1180"

MODEL_PAYLOAD = {
    "vendor_name": "ACME Traders Pvt Ltd",
    "bill_number": "INV-7",
    "bill_date": {"value": "2024-01-05", "confidence": 0.95, "evidence": "Date: 2024-01-05"},
    "total_amount": {"value": 1180, "confidence": 0.9, "evidence": "Grand Total: 1180"},
    "subtotal": 1000,
    "tax_amount": 180,
    "quality_score": 0.9,
    "reason": "clear scan",
    "category": "fabric",
}


def _completion(payload: dict) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": json.dumps(payload)}}]})


def _openai(api_key="sk-test"):
    return ChatCompletionsProvider("openai", api_key, "gpt-4o-mini", "https://api.openai.com/v1")


def _groq(api_key="gsk-test"):
    return ChatCompletionsProvider("groq", api_key, "openai/gpt-oss-20b", "https://api.groq.com/openai/v1")


class TestModelPayload:
    def test_scored_fields_and_confidence(self):
        bill = bill_from_model_payload(MODEL_PAYLOAD)

        assert bill.vendor_name == "ACME Traders Pvt Ltd"
        assert bill.bill_date == date(2024, 1, 5)
        assert bill.amounts.total == 1180
        assert bill.bill_date_evidence == "Date: 2024-01-05"
        # Overall confidence is the weaker of the two key fields
        assert bill.confidence == 0.9

    def test_bare_values_accepted(self):
        bill = bill_from_model_payload({"vendor_name": "X", "bill_date": "2024-02-01", "total_amount": "1,180.00"})
        assert bill.bill_date == date(2024, 2, 1)
        assert bill.amounts.total == 1180.0
        assert bill.confidence == 0.7

    def test_oversized_line_items_dropped_and_capped(self):
        items = [{"description": f"Item {i}", "amount": 100} for i in range(8)]
        items.insert(0, {"description": "Hallucinated", "amount": 5000})
        bill = bill_from_model_payload({"vendor_name": "X", "total_amount": 1000, "line_items": items})

        assert len(bill.line_items) == 5
        assert all(item.description != "Hallucinated" for item in bill.line_items)

    def test_percentage_string_in_terms_coerced(self):
        payload = {**MODEL_PAYLOAD, "payment_terms": {"type": "ADVANCE", "advance_percentage": "30%", "due_date": "2024-02-01"}}
        bill = bill_from_model_payload(payload)

        assert bill.payment_terms.advance_percentage == 30
        assert bill.payment_terms.due_date == date(2024, 2, 1)

    def test_malformed_terms_dropped_fields_kept(self):
        bill = bill_from_model_payload({**MODEL_PAYLOAD, "payment_terms": {"type": "INSTALLMENT", "installments": 3}})

        assert bill.payment_terms is None
        assert bill.vendor_name == "ACME Traders Pvt Ltd"
        assert bill.amounts.total == 1180

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            bill_from_model_payload(["not", "an", "object"])


class TestProvider:
    @respx.mock
    def test_extract_sends_json_mode_request(self):
        route = respx.post(OPENAI_URL).mock(return_value=_completion(MODEL_PAYLOAD))

        bill = _openai().extract(BILL_TEXT)

        assert bill.vendor_name == "ACME Traders Pvt Ltd"
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["response_format"] == {"type": "json_object"}
        assert body["model"] == "gpt-4o-mini"

    @respx.mock
    def test_code_fenced_json_is_parsed(self):
        content = "```json\n" + json.dumps(MODEL_PAYLOAD) + "\n```"
        respx.post(OPENAI_URL).mock(
            return_value=httpx.Response(200, json={"choices": [{"message": {"content": content}}]})
        )
        assert _openai().extract(BILL_TEXT).amounts.total == 1180

    @respx.mock
    def test_http_error_raises_provider_error(self):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(429))
        with pytest.raises(ProviderError) as exc:
            _openai().extract(BILL_TEXT)
        assert exc.value.provider == "openai"
        assert "HTTP 429" in exc.value.message

    @respx.mock
    def test_timeout_raises_provider_error(self):
        respx.post(OPENAI_URL).mock(side_effect=httpx.ReadTimeout("timed out"))
        with pytest.raises(ProviderError):
            _openai().extract(BILL_TEXT)

    @respx.mock
    def test_garbage_content_raises_provider_error(self):
        respx.post(OPENAI_URL).mock(
            return_value=httpx.Response(200, json={"choices": [{"message": {"content": "not json"}}]})
        )
        with pytest.raises(ProviderError):
            _openai().extract(BILL_TEXT)

    def test_missing_key_is_unavailable(self):
        assert _openai(api_key=None).available is False
        with pytest.raises(ProviderError):
            _openai(api_key=None).extract(BILL_TEXT)


def test_provider_chain_order():
    assert [p.name for p in build_provider_chain("openai")] == ["openai", "groq"]
    assert [p.name for p in build_provider_chain("groq")] == ["groq"]
    assert build_provider_chain("heuristic") == []


class TestOrchestrator:
    def test_no_text_fails_fast(self, fake_clock):
        orchestrator = ExtractionOrchestrator(providers=[_openai()], budget=CallBudget(5, clock=fake_clock))
        with pytest.raises(ExtractionInsufficientError) as exc:
            orchestrator.extract("   ")
        assert exc.value.reason == "No OCR text"

    @respx.mock
    def test_primary_provider_success(self, fake_clock):
        respx.post(OPENAI_URL).mock(return_value=_completion(MODEL_PAYLOAD))
        orchestrator = ExtractionOrchestrator(providers=[_openai(), _groq()], budget=CallBudget(5, clock=fake_clock))

        result = orchestrator.extract(BILL_TEXT)

        assert result.kind == "model"
        assert result.provider == "openai"
        assert result.fallback is False

    @respx.mock
    def test_secondary_provider_marks_fallback(self, fake_clock):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(500))
        respx.post(GROQ_URL).mock(return_value=_completion(MODEL_PAYLOAD))
        orchestrator = ExtractionOrchestrator(providers=[_openai(), _groq()], budget=CallBudget(5, clock=fake_clock))

        result = orchestrator.extract(BILL_TEXT)

        assert result.provider == "groq"
        assert result.fallback is True

    @respx.mock
    def test_unconfigured_primary_is_not_a_fallback(self, fake_clock):
        openai_route = respx.post(OPENAI_URL).mock(return_value=_completion(MODEL_PAYLOAD))
        respx.post(GROQ_URL).mock(return_value=_completion(MODEL_PAYLOAD))
        orchestrator = ExtractionOrchestrator(
            providers=[_openai(api_key=None), _groq()], budget=CallBudget(5, clock=fake_clock)
        )

        result = orchestrator.extract(BILL_TEXT)

        assert result.provider == "groq"
        assert result.fallback is False
        assert not openai_route.called

    @respx.mock
    def test_all_providers_fail_uses_heuristic(self, fake_clock):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(500))
        respx.post(GROQ_URL).mock(side_effect=httpx.ConnectError("down"))
        orchestrator = ExtractionOrchestrator(providers=[_openai(), _groq()], budget=CallBudget(5, clock=fake_clock))

        result = orchestrator.extract(BILL_TEXT)

        assert result.kind == "heuristic"
        assert result.provider == "rule"
        assert result.fallback is True
        assert result.note == NOTE_PROVIDERS_FAILED
        assert result.bill.amounts.total == 1180

    @respx.mock
    def test_all_providers_fail_without_usable_heuristic(self, fake_clock):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(500))
        orchestrator = ExtractionOrchestrator(providers=[_openai()], budget=CallBudget(5, clock=fake_clock))

        with pytest.raises(ExtractionInsufficientError):
            orchestrator.extract("Some vendor letter with no amounts at all")

    @respx.mock
    def test_model_fields_backfilled_from_heuristics(self, fake_clock):
        payload = dict(MODEL_PAYLOAD, bill_date=None, total_amount=None)
        respx.post(OPENAI_URL).mock(return_value=_completion(payload))
        orchestrator = ExtractionOrchestrator(providers=[_openai()], budget=CallBudget(5, clock=fake_clock))

        result = orchestrator.extract(BILL_TEXT)

        assert result.kind == "merged"
        assert set(result.backfilled) == {"bill_date", "total"}
        assert result.bill.bill_date == date(2024, 1, 5)
        assert result.bill.amounts.total == 1180
        # Model vendor is kept
        assert result.bill.vendor_name == "ACME Traders Pvt Ltd"

    @respx.mock
    def test_budget_exhausted_serves_heuristic(self, fake_clock):
        route = respx.post(OPENAI_URL).mock(return_value=_completion(MODEL_PAYLOAD))
        orchestrator = ExtractionOrchestrator(providers=[_openai()], budget=CallBudget(2, clock=fake_clock))

        first = orchestrator.extract(BILL_TEXT)
        second = orchestrator.extract(BILL_TEXT)
        third = orchestrator.extract(BILL_TEXT)

        assert first.kind == second.kind == "model"
        assert third.kind == "heuristic"
        assert third.note == NOTE_THROTTLED
        assert third.fallback is True
        assert route.call_count == 2

        # Next window: model calls resume
        fake_clock.advance(60)
        assert orchestrator.extract(BILL_TEXT).kind == "model"
        assert route.call_count == 3

    @respx.mock
    def test_text_over_length_never_reaches_model(self, fake_clock):
        route = respx.post(OPENAI_URL).mock(return_value=_completion(MODEL_PAYLOAD))
        orchestrator = ExtractionOrchestrator(
            providers=[_openai()], budget=CallBudget(5, clock=fake_clock), max_text_length=50
        )

        result = orchestrator.extract(BILL_TEXT + "\n" + "x" * 100)

        assert route.call_count == 0
        assert result.note == NOTE_TOO_LONG
        assert result.fallback is True

    @respx.mock
    def test_request_text_is_capped(self, fake_clock):
        route = respx.post(OPENAI_URL).mock(return_value=_completion(MODEL_PAYLOAD))
        orchestrator = ExtractionOrchestrator(
            providers=[_openai()], budget=CallBudget(5, clock=fake_clock), text_char_cap=20
        )

        orchestrator.extract(BILL_TEXT)

        body = json.loads(route.calls.last.request.content)
        user_content = json.loads(body["messages"][1]["content"])
        assert user_content["bill_text"] == BILL_TEXT[:20]
        assert "hints" in user_content

    def test_heuristic_only_mode(self, fake_clock):
        orchestrator = ExtractionOrchestrator(providers=[], budget=CallBudget(5, clock=fake_clock))

        result = orchestrator.extract(BILL_TEXT)

        assert result.provider == "heuristic"
        assert result.fallback is False
        assert result.note == NOTE_HEURISTIC_ONLY

    def test_unconfigured_providers_skipped(self, fake_clock):
        orchestrator = ExtractionOrchestrator(
            providers=[_openai(api_key=None), _groq(api_key=None)], budget=CallBudget(5, clock=fake_clock)
        )

        result = orchestrator.extract(BILL_TEXT)

        assert result.provider == "rule"
        assert result.note == NOTE_NO_PROVIDER
        # Budget untouched when nothing was called
        assert orchestrator.budget.remaining() == 5


def test_merge_keeps_model_values():
    heuristic = extract_with_rules(BILL_TEXT)
    bill = ExtractedBill(vendor_name="Model Vendor", bill_date="2024-01-06", amounts={"total": 1200})

    merged, backfilled = merge_with_heuristics(bill, heuristic)

    assert backfilled == []
    assert merged.vendor_name == "Model Vendor"
    assert merged.amounts.total == 1200


def test_merge_result_round_trips_through_discriminator():
    from pydantic import TypeAdapter
    from billbook.services.bill_types import ExtractionResult

    heuristic = extract_with_rules(BILL_TEXT)
    adapter = TypeAdapter(ExtractionResult)
    restored = adapter.validate_python(heuristic.model_dump())

    assert type(restored).__name__ == "HeuristicExtraction"
    assert restored.bill.amounts.total == 1180
