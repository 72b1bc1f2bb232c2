from fastapi import APIRouter, Depends
from ..deps import store_dependency
from ...models.bill import RecordPaymentRequest
from ...services.payment_schedule import record_payment
from ...services.storage import BillStoreBase

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/record")
def record_bill_payment(req: RecordPaymentRequest, store: BillStoreBase = Depends(store_dependency)):
    """Apply a payment to a schedule row (earliest open row when schedule_id is omitted)"""
    row = record_payment(
        store,
        req.bill_id,
        req.amount,
        schedule_id=req.schedule_id,
        payment_date=req.payment_date,
        payment_method=req.payment_method,
        notes=req.notes,
    )
    bill = store.get_bill(req.bill_id)
    return {"schedule_row": row, "bill_payment_status": bill["payment_status"]}
