from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_billing_context, get_db
from app.schemas.attach import CustomerProductRead, StatusUpdateRequest
from app.schemas.customers import StatusChangeResponse
from app.services.attach_params import BillingContext
from app.services.subscription_changes import customer_product_changes

router = APIRouter(prefix="/customer-products", tags=["customer-products"])


@router.post("/{customer_product_id}", response_model=StatusChangeResponse)
def update_customer_product(
    customer_product_id: str,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    result = customer_product_changes.update_status(db, ctx, customer_product_id, payload.status)
    return StatusChangeResponse(
        action=result.action.value,
        customer_product=(
            CustomerProductRead.model_validate(result.customer_product)
            if result.customer_product is not None
            else None
        ),
        activated=(
            CustomerProductRead.model_validate(result.activated)
            if result.activated is not None
            else None
        ),
    )
