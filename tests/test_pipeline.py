"""
End-to-end pipeline tests.

Documents run through text extraction, pattern extraction (no hosted
model), normalization, persistence, scheduling and posting against a
temp SQLite store.
"""

from datetime import date
from unittest.mock import Mock
import pytest
from billbook.core.errors import DocumentNotFoundError, InputValidationError
from billbook.models.bill import ManualBillPayload
from billbook.services.bill_types import LineItem, PaymentTerms
from billbook.services.events.event_publisher import BillPostedEvent, EventPublisher
from billbook.services.lifecycle import Actor
from billbook.services.pipeline import (
    derive_vendor_code,
    intake_document,
    process_document,
    process_manual,
)

ACME_TEXT = "ACME Traders\nDate: 2024-01-05\nSubtotal: 1000\nGST: 180\nGrand Total: 1180"
ADMIN = Actor(actor_type="user", actor_id=7, role="admin")


def _intake(store, path, category="rent", media_type="text/plain"):
    return intake_document(
        store,
        file_name=path.name,
        file_path=path,
        media_type=media_type,
        category=category,
        payment_method="bank",
        drop_name="Spring 24",
    )


def _manual_payload(**overrides):
    fields = {
        "vendor_name": "Blue Mills",
        "bill_number": "BM-12",
        "bill_date": "2024-02-01",
        "tax_amount": 90,
        "total_amount": 590,
        "category": "fabric",
        "payment_method": "upi",
        "payment_terms": PaymentTerms(type="NET_30"),
        "line_items": [LineItem(description="Denim", amount=500)],
    }
    fields.update(overrides)
    return ManualBillPayload(**fields)


def test_vendor_code():
    assert derive_vendor_code("ACME Traders Pvt. Ltd.") == "ACMETRADER"
    assert derive_vendor_code("***") == "VENDOR"


class TestIntake:
    def test_intake_records_file(self, store, bill_file):
        path = bill_file(ACME_TEXT)
        document_id = _intake(store, path)

        document = store.get_document(document_id)
        assert document["status"] == "uploaded"
        assert document["payment_method"] == "BANK"
        assert document["file_type"] == "text/plain"
        assert document["file_size"] == path.stat().st_size
        assert len(document["file_hash"]) == 64

    @pytest.mark.parametrize(
        "category,payment_method,drop_name",
        [(None, "BANK", "D1"), ("rent", "unspecified", "D1"), ("rent", "BANK", "  ")],
    )
    def test_missing_fields_write_nothing(self, store, bill_file, category, payment_method, drop_name):
        with pytest.raises(InputValidationError):
            intake_document(store, "bill.txt", bill_file(ACME_TEXT), "text/plain", category, payment_method, drop_name)
        assert store.list_documents() == []


class TestProcessDocument:
    def test_text_bill_end_to_end(self, store, bill_file, heuristic_orchestrator, disabled_publisher):
        document_id = _intake(store, bill_file(ACME_TEXT))

        outcome = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)

        assert outcome["status"] == "processed"
        assert outcome["provider"] == "heuristic"
        assert outcome["fallback"] is False
        assert outcome["schedule_rows"] == 0

        document = store.get_document(document_id)
        assert document["status"] == "processed"
        assert document["raw_text"] == ACME_TEXT
        assert document["extracted_data"]["_provider"] == "heuristic"
        assert document["extracted_data"]["amounts"]["total"] == 1180
        assert document["verification_status"] == "unverified"
        assert document["quality_score"] == 100
        assert document["processing_started_at"] is None

        bill = store.get_bill(outcome["bill_id"])
        assert bill["vendor_name"] == "ACME Traders"
        assert bill["vendor_code"] == "ACMETRADER"
        assert bill["bill_date"] == "2024-01-05"
        assert (bill["subtotal"], bill["tax_amount"], bill["total_amount"]) == (1000, 180, 1180)
        assert bill["category"] == "rent"
        assert bill["status"] == "posted"
        # No terms: nothing is owed on a schedule
        assert bill["payment_status"] == "paid"
        # Rent bills are posted at header level
        assert store.list_bill_items(outcome["bill_id"]) == []

        entries = store.list_journal_entries(outcome["bill_id"])
        assert len(entries) == 1
        assert entries[0]["total_debit"] == 1180

        fields = {h["field_name"]: h for h in store.list_field_history(document_id)}
        assert fields["bill_date"]["new_value"] == "2024-01-05"
        assert fields["total_amount"]["new_value"] == "1180.00"
        assert fields["total_amount"]["source_action"] == "ai_extraction"

    def test_fabric_bill_keeps_line_items(self, store, bill_file, heuristic_orchestrator, disabled_publisher):
        text = "Cotton House\nDate: 2024-01-05\nCotton twill 40m 2400\nButtons 300\nGrand Total: 2700"
        document_id = _intake(store, bill_file(text), category="fabric")

        outcome = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)

        items = store.list_bill_items(outcome["bill_id"])
        assert [i["description"] for i in items] == ["Cotton twill 40m 2400", "Buttons 300"]
        assert all(i["drop_id"] == store.get_or_create_drop("Spring 24") for i in items)
        assert all(i["posting_status"] == "unposted" for i in items)

    def test_reprocess_replaces_bill(self, store, bill_file, heuristic_orchestrator, disabled_publisher):
        document_id = _intake(store, bill_file(ACME_TEXT))
        first = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)
        second = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)

        assert first["bill_id"] == second["bill_id"]
        assert len(store.list_journal_entries(first["bill_id"], include_void=False)) == 1
        assert len(store.list_journal_entries(first["bill_id"])) == 2
        # Unchanged values are not audited twice
        assert len(store.list_field_history(document_id)) == 2

    def test_locked_total_survives_rerun(self, store, bill_file, heuristic_orchestrator, disabled_publisher):
        document_id = _intake(store, bill_file(ACME_TEXT))
        outcome = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)
        store.update_bill(outcome["bill_id"], total_amount=1200, subtotal=1020)
        store.update_document(document_id, total_locked=True)

        process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)

        bill = store.get_bill(outcome["bill_id"])
        assert bill["total_amount"] == 1200
        assert bill["subtotal"] == 1020
        assert store.get_document(document_id)["total_locked"] is True

    def test_insufficient_text_needs_manual_entry(self, store, bill_file, heuristic_orchestrator, disabled_publisher):
        document_id = _intake(store, bill_file("hello world, nothing to read here"))

        outcome = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)

        assert outcome["status"] == "manual_required"
        assert outcome["reason"] == "No parser succeeded"
        document = store.get_document(document_id)
        assert document["status"] == "manual_required"
        assert document["notes"] == "No parser succeeded"
        assert document["verification_status"] == "needs_review"
        assert document["verification_reason"] == "Missing date & total"
        assert store.get_bill_by_document(document_id) is None

    def test_unsupported_file_is_an_error(self, store, bill_file, heuristic_orchestrator, disabled_publisher):
        document_id = _intake(store, bill_file("binary", name="bill.xyz"), media_type="application/x-archive")

        outcome = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)

        assert outcome["status"] == "error"
        document = store.get_document(document_id)
        assert document["status"] == "error"
        assert "Unsupported media type" in document["notes"]

    def test_missing_file_is_an_error(self, store, bill_file, heuristic_orchestrator, disabled_publisher):
        path = bill_file(ACME_TEXT)
        document_id = _intake(store, path)
        path.unlink()

        outcome = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)

        assert outcome["status"] == "error"
        assert store.get_document(document_id)["status"] == "error"

    def test_unknown_document(self, store, heuristic_orchestrator):
        with pytest.raises(DocumentNotFoundError):
            process_document(store, 404, heuristic_orchestrator)

    def test_posted_event_published(self, store, bill_file, heuristic_orchestrator):
        publisher = Mock(spec=EventPublisher)
        document_id = _intake(store, bill_file(ACME_TEXT))

        outcome = process_document(store, document_id, heuristic_orchestrator, publisher=publisher)

        publisher.publish_bill_posted.assert_called_once()
        event = publisher.publish_bill_posted.call_args[0][0]
        assert isinstance(event, BillPostedEvent)
        assert event.bill_id == outcome["bill_id"]
        assert event.vendor == "ACME Traders"
        assert event.total == 1180
        assert event.provider == "heuristic"
        assert event.payment_status == "paid"

    def test_publish_failure_does_not_fail_pipeline(self, store, bill_file, heuristic_orchestrator):
        publisher = Mock(spec=EventPublisher)
        publisher.publish_bill_posted.side_effect = RuntimeError("Service Bus unavailable")
        document_id = _intake(store, bill_file(ACME_TEXT))

        outcome = process_document(store, document_id, heuristic_orchestrator, publisher=publisher)

        assert outcome["status"] == "processed"


class TestManualEntry:
    def test_manual_bill_is_verified_and_posted(self, store, bill_file, disabled_publisher):
        document_id = _intake(store, bill_file(ACME_TEXT), category="fabric")

        outcome = process_manual(store, document_id, _manual_payload(), ADMIN, publisher=disabled_publisher)

        assert outcome["provider"] == "manual"
        assert outcome["verification_status"] == "verified"
        assert outcome["schedule_rows"] == 1

        document = store.get_document(document_id)
        assert document["status"] == "processed"
        assert document["extracted_data"]["manual"] is True
        assert document["bill_date_locked"] is True
        assert document["total_locked"] is True
        assert document["payment_method"] == "UPI"

        bill = store.get_bill(outcome["bill_id"])
        assert bill["confidence_score"] == 1.0
        assert bill["subtotal"] == 500
        assert bill["vendor_name"] == "Blue Mills"
        items = store.list_bill_items(outcome["bill_id"])
        assert [i["description"] for i in items] == ["Denim"]

        schedule = store.list_payment_schedule(outcome["bill_id"])
        assert schedule[0]["due_date"] == date(2024, 3, 2).isoformat()

        history = store.list_field_history(document_id)
        assert {h["source_action"] for h in history} == {"manual_entry"}
        assert all(h["actor_id"] == 7 for h in history)

    def test_manual_override_blocks_automatic_reprocessing(
        self, store, bill_file, heuristic_orchestrator, disabled_publisher
    ):
        document_id = _intake(store, bill_file(ACME_TEXT), category="fabric")
        outcome = process_manual(store, document_id, _manual_payload(), ADMIN, publisher=disabled_publisher)

        rerun = process_document(store, document_id, heuristic_orchestrator, publisher=disabled_publisher)

        assert rerun["skipped"] == "manual override"
        assert store.get_bill(outcome["bill_id"])["vendor_name"] == "Blue Mills"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"vendor_name": " "},
            {"total_amount": 0},
            {"payment_method": "UNSPECIFIED"},
            {"category": None},
            {"payment_terms": PaymentTerms(type="ADVANCE", advance_percentage=30)},
        ],
    )
    def test_invalid_manual_payload(self, store, bill_file, overrides):
        document_id = _intake(store, bill_file(ACME_TEXT))
        with pytest.raises(InputValidationError):
            process_manual(store, document_id, _manual_payload(**overrides), ADMIN)
        assert store.get_bill_by_document(document_id) is None

    def test_unknown_document(self, store):
        with pytest.raises(DocumentNotFoundError):
            process_manual(store, 404, _manual_payload(), ADMIN)
