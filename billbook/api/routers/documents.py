import uuid
from pathlib import Path
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile
from loguru import logger
from ..deps import (
    DocumentResponse,
    PipelineOutcome,
    UploadResponse,
    actor_dependency,
    orchestrator_dependency,
    publisher_dependency,
    store_dependency,
)
from ...core.config import settings
from ...core.errors import DocumentNotFoundError, InputValidationError
from ...models.bill import FieldCorrectionRequest, ManualBillPayload, ReprocessRequest
from ...services.ai_orchestrator import ExtractionOrchestrator
from ...services.events.event_publisher import EventPublisher
from ...services.lifecycle import Actor, correct_field
from ...services.pipeline import (
    delete_document,
    intake_document,
    process_document,
    process_manual,
    validate_upload_fields,
)
from ...services.reprocess import reverify_documents
from ...services.storage import BillStoreBase

router = APIRouter(prefix="/documents", tags=["documents"])


@router.post("/upload", response_model=UploadResponse, status_code=202)
async def upload_document(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    category: str | None = Form(None),
    payment_method: str | None = Form(None),
    drop_name: str | None = Form(None),
    notes: str | None = Form(None),
    store: BillStoreBase = Depends(store_dependency),
    orchestrator: ExtractionOrchestrator = Depends(orchestrator_dependency),
    actor: Actor = Depends(actor_dependency),
):
    """
    Accept a bill file and queue it for extraction.

    Form fields category, payment_method and drop_name are required and are
    checked before anything is stored. The pipeline runs as a background
    task after the response is sent; poll GET /documents/{id} for the result.
    """
    validate_upload_fields(category, payment_method, drop_name)
    content = await file.read()
    if not content:
        raise InputValidationError("Uploaded file is empty")

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_name = Path(file.filename or "upload").name
    stored_path = upload_dir / f"{uuid.uuid4().hex}_{file_name}"
    stored_path.write_bytes(content)

    document_id = intake_document(
        store,
        file_name=file_name,
        file_path=stored_path,
        media_type=file.content_type,
        category=category,
        payment_method=payment_method,
        drop_name=drop_name,
        notes=notes,
        uploaded_by=actor.actor_id,
    )
    background_tasks.add_task(process_document, store, document_id, orchestrator)
    logger.info("Queued document for processing", document_id=document_id, size=len(content))
    return UploadResponse(document_id=document_id, status="uploaded", file_name=file_name)


@router.post("/reprocess")
def reprocess_documents(
    req: ReprocessRequest,
    store: BillStoreBase = Depends(store_dependency),
    orchestrator: ExtractionOrchestrator = Depends(orchestrator_dependency),
    actor: Actor = Depends(actor_dependency),
):
    """Re-run extraction for documents that still need review"""
    summary = reverify_documents(
        store, orchestrator=orchestrator, scope=req.scope, limit=req.limit, days=req.days, actor=actor
    )
    return summary.to_dict()


@router.get("/{document_id}", response_model=DocumentResponse)
def get_document(document_id: int, store: BillStoreBase = Depends(store_dependency)):
    """Document with its bill, schedule, journal and audit trail"""
    document = store.get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)
    # Raw OCR text can be large; the extracted_data blob already carries it
    document.pop("raw_text", None)

    response = DocumentResponse(document=document, field_history=store.list_field_history(document_id))
    bill = store.get_bill_by_document(document_id)
    if bill is not None:
        bill_id = bill["bill_id"]
        response.bill = bill
        response.line_items = store.list_bill_items(bill_id)
        response.payment_terms = store.get_payment_terms(bill_id)
        response.payment_schedule = store.list_payment_schedule(bill_id)
        response.payments = store.list_payments(bill_id)
        response.journal_entries = store.list_journal_entries(bill_id)
    return response


@router.delete("/{document_id}")
def remove_document(document_id: int, store: BillStoreBase = Depends(store_dependency)):
    delete_document(store, document_id)
    return {"document_id": document_id, "deleted": True}


@router.post("/{document_id}/manual", response_model=PipelineOutcome)
def submit_manual_bill(
    document_id: int,
    payload: ManualBillPayload,
    store: BillStoreBase = Depends(store_dependency),
    publisher: EventPublisher = Depends(publisher_dependency),
    actor: Actor = Depends(actor_dependency),
):
    """Save a complete human-entered bill; it replaces any extracted bill"""
    return process_manual(store, document_id, payload, actor, publisher=publisher)


@router.post("/{document_id}/corrections")
def correct_document_field(
    document_id: int,
    req: FieldCorrectionRequest,
    store: BillStoreBase = Depends(store_dependency),
    actor: Actor = Depends(actor_dependency),
):
    """
    Correct bill_date or total_amount.

    The change is audited, the field is locked against later extraction
    runs, and the schedule and journal entry are rebuilt.
    """
    bill = correct_field(store, document_id, req.field, req.value, actor, reason=req.reason)
    return {"document_id": document_id, "field": req.field, "bill": bill}
