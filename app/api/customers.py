from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_billing_context, get_db
from app.schemas.attach import (
    AttachRequest,
    AttachResponse,
    CustomerProductRead,
    UsageRequest,
    UsageResponse,
)
from app.schemas.customers import BillingPortalResponse, CustomerDetails
from app.services import attach as attach_service
from app.services import usage as usage_service
from app.services.attach_params import BillingContext, resolve_attach_params
from app.services.customers import customers as customer_service

router = APIRouter(prefix="/customers", tags=["customers"])


@router.post("/{customer_id}/attach", response_model=AttachResponse)
def attach_product(
    customer_id: str,
    payload: AttachRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    params = resolve_attach_params(db, ctx, customer_id, payload)
    result = attach_service.attach(db, ctx, params)
    return AttachResponse(
        outcome=result.outcome,
        transition=result.transition.value,
        customer_product=(
            CustomerProductRead.model_validate(result.customer_product)
            if result.customer_product is not None
            else None
        ),
        checkout_url=result.checkout_url,
        invoice_ids=result.invoice_ids,
        mirror_failures=result.mirror_failures,
    )


@router.get("/{customer_id}", response_model=CustomerDetails)
def get_customer(
    customer_id: str,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    return customer_service.details(db, ctx, customer_id)


@router.get("/{customer_id}/billing-portal", response_model=BillingPortalResponse)
def billing_portal(
    customer_id: str,
    return_url: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    url = customer_service.billing_portal_url(db, ctx, customer_id, return_url)
    return BillingPortalResponse(url=url)


@router.post("/{customer_id}/usage", response_model=UsageResponse)
def record_usage(
    customer_id: str,
    payload: UsageRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    result = usage_service.record_metered_usage(db, ctx, customer_id, payload)
    return UsageResponse(
        feature_id=result.feature_id,
        balance=result.balance,
        overage_reported=result.overage_reported,
        replayed=result.replayed,
    )
