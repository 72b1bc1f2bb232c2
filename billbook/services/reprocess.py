"""
Re-verification and recovery for documents the pipeline could not settle.

- reverify_documents: re-runs extraction for documents missing a date or
  total, or still flagged for review, within the attempt cap.
- sweep_stale_processing: re-queues documents left in 'processing' by a
  crashed worker.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, UTC
from typing import Optional
from loguru import logger
from .ai_orchestrator import ExtractionOrchestrator
from .lifecycle import DocumentStatus, SYSTEM_ACTOR, Actor, transition
from .pipeline import has_manual_override, process_document, append_note
from .storage.store_base import BillStoreBase
from ..core.config import settings
from ..core.errors import InvalidTransitionError

NOTE_DATE_MISSING = "Bill date missing after AI re-run"


@dataclass
class ReprocessSummary:
    selected: int = 0
    processed: int = 0
    manual_required: int = 0
    errors: int = 0
    skipped: int = 0
    document_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def can_attempt_reprocess(document: dict, now: datetime, max_per_day: Optional[int] = None) -> bool:
    """False once a document has used its extraction attempts for the current UTC day"""
    max_per_day = settings.max_reprocess_per_doc_per_day if max_per_day is None else max_per_day
    last = document.get("ai_last_attempt_at")
    if not last or last[:10] != now.date().isoformat():
        return True
    return (document.get("ai_attempt_count") or 0) < max_per_day


def reverify_documents(
    store: BillStoreBase,
    orchestrator: Optional[ExtractionOrchestrator] = None,
    scope: str = "needs_review",
    limit: Optional[int] = None,
    days: Optional[int] = None,
    actor: Actor = SYSTEM_ACTOR,
    now: Optional[datetime] = None,
) -> ReprocessSummary:
    """
    Re-run the pipeline for documents needing verification.

    Args:
        scope: needs_review, missing_dates or pending
        limit: Maximum documents (default NIGHTLY_REVERIFY_LIMIT)
        days: Only documents uploaded in the last N days (default NIGHTLY_REVERIFY_DAYS)

    Returns:
        ReprocessSummary with per-outcome counts
    """
    now = now or datetime.now(UTC)
    limit = settings.nightly_reverify_limit if limit is None else limit
    days = settings.nightly_reverify_days if days is None else days
    since = (now - timedelta(days=days)).isoformat()

    candidates = store.select_documents_for_reverify(scope, since, limit)
    summary = ReprocessSummary(selected=len(candidates))
    logger.info("Re-verification started", scope=scope, selected=len(candidates), limit=limit, days=days)

    for document in candidates:
        document_id = document["document_id"]
        if has_manual_override(document, store.get_bill_by_document(document_id)):
            summary.skipped += 1
            continue
        if not can_attempt_reprocess(document, now):
            logger.info("Reprocess attempt cap reached", document_id=document_id)
            summary.skipped += 1
            continue

        try:
            outcome = process_document(store, document_id, orchestrator=orchestrator, actor=actor)
        except InvalidTransitionError as e:
            logger.warning("Document cannot be reprocessed", document_id=document_id, error=e.message)
            summary.skipped += 1
            continue

        summary.document_ids.append(document_id)
        status = outcome["status"]
        if status == DocumentStatus.PROCESSED.value:
            bill = store.get_bill_by_document(document_id)
            if bill is not None and not bill.get("bill_date"):
                current = store.get_document(document_id)
                transition(
                    store,
                    document_id,
                    DocumentStatus.MANUAL_REQUIRED,
                    explicit=True,
                    notes=append_note(current.get("notes"), NOTE_DATE_MISSING),
                )
                summary.manual_required += 1
            else:
                summary.processed += 1
        elif status == DocumentStatus.MANUAL_REQUIRED.value:
            summary.manual_required += 1
        else:
            summary.errors += 1

    logger.info("Re-verification finished", **{k: v for k, v in summary.to_dict().items() if k != "document_ids"})
    return summary


def sweep_stale_processing(
    store: BillStoreBase,
    lease_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[int]:
    """
    Re-queue documents stuck in 'processing' longer than the lease.

    Returns:
        Ids of documents moved back to 'uploaded'
    """
    now = now or datetime.now(UTC)
    lease_minutes = settings.stale_processing_minutes if lease_minutes is None else lease_minutes
    cutoff = (now - timedelta(minutes=lease_minutes)).isoformat()
    ids = store.reset_stale_processing(cutoff)
    if ids:
        logger.warning("Re-queued stale processing documents", count=len(ids), document_ids=ids)
    return ids
