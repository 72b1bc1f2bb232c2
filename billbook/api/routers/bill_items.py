from fastapi import APIRouter, Depends
from ..deps import actor_dependency, store_dependency
from ...models.bill import BillItemUpdateRequest
from ...services.lifecycle import Actor, update_bill_item
from ...services.storage import BillStoreBase

router = APIRouter(prefix="/bill-items", tags=["bill-items"])


@router.patch("/{item_id}")
def patch_bill_item(
    item_id: int,
    req: BillItemUpdateRequest,
    store: BillStoreBase = Depends(store_dependency),
    actor: Actor = Depends(actor_dependency),
):
    """
    Update posting dimensions or posting status of a line item.

    Only fields present in the body are applied. Reverting a posted item
    needs X-User-Role: admin.
    """
    changes = req.model_dump(exclude_unset=True)
    return update_bill_item(store, item_id, changes, actor)
