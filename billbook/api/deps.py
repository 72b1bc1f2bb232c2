from typing import Optional
from fastapi import Header
from pydantic import BaseModel
from ..services.ai_orchestrator import ExtractionOrchestrator, get_orchestrator
from ..services.events.event_publisher import EventPublisher, get_event_publisher
from ..services.lifecycle import Actor
from ..services.storage import BillStoreBase, get_bill_store


class UploadResponse(BaseModel):
    document_id: int
    status: str
    file_name: str


class DocumentResponse(BaseModel):
    document: dict
    bill: dict | None = None
    line_items: list[dict] = []
    payment_terms: dict | None = None
    payment_schedule: list[dict] = []
    payments: list[dict] = []
    journal_entries: list[dict] = []
    field_history: list[dict] = []


class PipelineOutcome(BaseModel):
    """Summary returned by the pipeline tail (manual entry, reprocess)"""
    document_id: int
    status: str
    bill_id: int | None = None
    journal_id: int | None = None
    provider: str | None = None
    fallback: bool | None = None
    schedule_rows: int | None = None
    verification_status: str | None = None
    verification_reason: str | None = None
    reason: str | None = None


def store_dependency() -> BillStoreBase:
    return get_bill_store()


def orchestrator_dependency() -> ExtractionOrchestrator:
    return get_orchestrator()


def publisher_dependency() -> EventPublisher:
    return get_event_publisher()


def actor_dependency(
    x_user_id: Optional[int] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """
    Acting user from headers set by the upstream auth layer.

    Authentication happens before requests reach this service; the headers
    only carry who is acting and with which role.
    """
    return Actor(actor_type="user", actor_id=x_user_id, role=(x_user_role or "user").lower())
