"""Billing context and resolved attach parameters.

``BillingContext`` carries the organization, environment and processor
gateway through every call; nothing in the attach or reconciliation code
looks them up ambiently.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from functools import cached_property

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.errors import InvalidAttachParams, MissingRequiredOption
from app.models.catalog import Entitlement, FreeTrial, Price, Product
from app.models.customer_product import CustomerProduct
from app.models.organization import AppEnv, Customer, Organization
from app.schemas.attach import AttachRequest
from app.services import checkout, pricing
from app.services.common import coerce_uuid, get_or_404, utcnow

logger = logging.getLogger(__name__)


@dataclass
class BillingContext:
    org: Organization
    env: AppEnv
    gateway: object
    # (ctx, params, reason) -> hosted payment URL
    checkout: Callable = field(default=checkout.create_checkout_url)

    @property
    def currency(self) -> str:
        return (self.org.default_currency or "usd").lower()


@dataclass
class AttachParams:
    customer: Customer
    product: Product
    prices: list[Price]
    entitlements: list[Entitlement]
    # feature id -> quantity
    quantities: dict[str, int] = field(default_factory=dict)
    free_trial: FreeTrial | None = None
    # Caller-supplied key; retries of one request reuse its processor objects.
    request_key: str | None = None
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @cached_property
    def classified(self) -> list[pricing.ClassifiedPrice]:
        return [pricing.classify(price) for price in self.prices]

    @cached_property
    def partition(self) -> pricing.PricePartition:
        return pricing.partition(self.classified)

    @property
    def is_free(self) -> bool:
        return pricing.is_free(self.classified)

    def quantity_for(self, feature_id: str | None) -> int | None:
        if feature_id is None:
            return None
        return self.quantities.get(str(feature_id))

    def trial_ends_at(self):
        if not self.free_trial:
            return None
        return utcnow() + timedelta(days=self.free_trial.length_days)

    def operation_key(self, *parts) -> tuple:
        """Seed for processor idempotency keys of this attach.

        Without a caller key every attach is its own operation, so buying the
        same product again never replays an earlier invoice or subscription.
        """
        seed = f"{self.customer.id}:{self.product.id}:{self.request_key or self.attempt_id}"
        return ("attach", seed, *parts)


def validate_attach_params(ctx: BillingContext, params: AttachParams) -> None:
    """Reject bad input before any processor call.

    Raises:
        InvalidAttachParams: wrong org/env or prices from another product.
        PriceConfigError: a price config cannot be classified.
        MissingRequiredOption: a prepaid price has no quantity option.
    """
    if params.customer.org_id != ctx.org.id or params.customer.env != ctx.env:
        raise InvalidAttachParams("Customer does not belong to this organization/environment")
    if params.product.org_id != ctx.org.id or params.product.env != ctx.env:
        raise InvalidAttachParams("Product does not belong to this organization/environment")
    if not params.product.is_active:
        raise InvalidAttachParams(f"Product {params.product.product_key} is archived")
    for price in params.prices:
        if price.product_id != params.product.id:
            raise InvalidAttachParams(
                f"Price {price.id} does not belong to product {params.product.product_key}"
            )
    for classified in params.classified:
        if not pricing.requires_quantity(classified):
            continue
        quantity = params.quantity_for(classified.feature_id)
        if quantity is None:
            raise MissingRequiredOption(
                f"Quantity for feature {classified.feature_key or classified.feature_id} is required",
                details={"feature_id": classified.feature_id},
            )
        if quantity < 0:
            raise InvalidAttachParams("Feature quantities must not be negative")


def _trial_for(db: Session, customer: Customer, product: Product, requested: bool):
    trial = product.free_trial
    if not requested or trial is None:
        return None
    used = db.query(CustomerProduct).filter(CustomerProduct.free_trial_id == trial.id)
    if trial.unique_fingerprint and customer.fingerprint:
        used = used.join(Customer, Customer.id == CustomerProduct.customer_id).filter(
            Customer.fingerprint == customer.fingerprint
        )
    else:
        used = used.filter(CustomerProduct.customer_id == customer.id)
    if used.first():
        logger.info("Customer %s already used trial for %s", customer.id, product.product_key)
        return None
    return trial


def get_customer(db: Session, ctx: BillingContext, customer_id: str) -> Customer:
    customer = get_or_404(db, Customer, customer_id, "Customer not found")
    if customer.org_id != ctx.org.id or customer.env != ctx.env:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


def resolve_attach_params(
    db: Session, ctx: BillingContext, customer_id: str, payload: AttachRequest
) -> AttachParams:
    customer = get_customer(db, ctx, customer_id)
    product = get_or_404(db, Product, payload.product_id, "Product not found")
    if product.org_id != ctx.org.id or product.env != ctx.env:
        raise HTTPException(status_code=404, detail="Product not found")
    if payload.price_ids:
        wanted = {coerce_uuid(price_id) for price_id in payload.price_ids}
        prices = db.query(Price).filter(Price.id.in_(wanted)).all()
        if len(prices) != len(wanted):
            raise InvalidAttachParams("Unknown price id in request")
    else:
        prices = list(product.prices)
    params = AttachParams(
        customer=customer,
        product=product,
        prices=prices,
        entitlements=list(product.entitlements),
        quantities={str(option.feature_id): option.quantity for option in payload.options},
        free_trial=_trial_for(db, customer, product, payload.free_trial),
        request_key=payload.idempotency_key,
    )
    validate_attach_params(ctx, params)
    return params


def params_for_product(
    customer: Customer, product: Product, quantities=None, request_key: str | None = None
) -> AttachParams:
    """Attach params for a stored product, e.g. activating a scheduled or default product."""
    return AttachParams(
        customer=customer,
        product=product,
        prices=list(product.prices),
        entitlements=list(product.entitlements),
        quantities=dict(quantities or {}),
        request_key=request_key,
    )
