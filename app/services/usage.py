"""Usage recording: local balance deduction plus metered events for overage.

Usage reports are applied once per caller identifier.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.customer_product import CustomerEntitlement, CustomerProduct
from app.schemas.attach import UsageRequest
from app.services import pricing
from app.services.attach_params import BillingContext, get_customer
from app.services.common import coerce_uuid
from app.services.entitlements import LIVE_STATUSES, customer_entitlements
from app.services.processor import idempotency_key

logger = logging.getLogger(__name__)


@dataclass
class UsageResult:
    feature_id: str
    balance: Decimal | None
    overage_reported: Decimal
    replayed: bool = False


def _live_entitlement(db: Session, customer_id, feature_id) -> CustomerEntitlement:
    entitlement = (
        db.query(CustomerEntitlement)
        .join(CustomerProduct, CustomerProduct.id == CustomerEntitlement.customer_product_id)
        .filter(CustomerEntitlement.customer_id == coerce_uuid(customer_id))
        .filter(CustomerEntitlement.feature_id == coerce_uuid(feature_id))
        .filter(CustomerProduct.status.in_(LIVE_STATUSES))
        .order_by(CustomerProduct.is_add_on, CustomerProduct.created_at)
        .first()
    )
    if not entitlement:
        raise HTTPException(status_code=404, detail="No live entitlement for feature")
    return entitlement


def _arrears_price(entitlement: CustomerEntitlement) -> pricing.UsageInArrearsPrice | None:
    feature_id = str(entitlement.feature_id)
    for customer_price in entitlement.customer_product.customer_prices:
        classified = pricing.classify(customer_price.price)
        if isinstance(classified, pricing.UsageInArrearsPrice) and classified.feature_id == feature_id:
            return classified
    return None


def overage_delta(balance: Decimal | None, value: Decimal) -> Decimal:
    """Part of ``value`` that takes the balance (further) below zero."""
    if balance is None:
        return Decimal("0")
    before = max(Decimal("0"), -balance)
    after = max(Decimal("0"), -(balance - value))
    return after - before


def record_metered_usage(
    db: Session, ctx: BillingContext, customer_id: str, payload: UsageRequest
) -> UsageResult:
    """Deduct usage and forward any overage to the processor's meter.

    Each identifier is applied once: a replay returns the current balance
    without deducting or metering again. The meter event goes first and
    carries a key derived from the identifier, so a request retried after a
    failed deduction is not billed twice either.
    """
    customer = get_customer(db, ctx, customer_id)
    entitlement = _live_entitlement(db, customer.id, payload.feature_id)
    if customer_entitlements.get_usage_record(
        db, customer.id, payload.feature_id, payload.identifier
    ):
        return _replayed(entitlement, customer, payload)

    value = Decimal(str(payload.value))
    overage = overage_delta(entitlement.balance, value) if entitlement.usage_allowed else Decimal("0")

    reported = Decimal("0")
    price = _arrears_price(entitlement) if overage > 0 else None
    if price is not None and price.processor_meter_id and customer.processor_customer_id:
        ctx.gateway.create_meter_event(
            event_name=price.processor_meter_id,
            customer_id=customer.processor_customer_id,
            value=overage,
            identifier=idempotency_key("usage", customer.id, payload.feature_id, payload.identifier),
            timestamp=payload.timestamp,
        )
        reported = overage
    elif overage > 0:
        logger.warning(
            "Overage of %s on entitlement %s is not metered; it is billed on upgrade",
            overage,
            entitlement.id,
        )

    recorded = customer_entitlements.record_usage(
        db, entitlement, payload.identifier, value, metered=reported
    )
    if not recorded:
        return _replayed(entitlement, customer, payload)
    db.refresh(entitlement)
    logger.info(
        "Recorded usage %s for customer %s feature %s", value, customer.id, payload.feature_id
    )
    return UsageResult(str(entitlement.feature_id), entitlement.balance, reported)


def _replayed(entitlement: CustomerEntitlement, customer, payload: UsageRequest) -> UsageResult:
    logger.info(
        "Usage %s for customer %s feature %s already recorded",
        payload.identifier,
        customer.id,
        payload.feature_id,
    )
    return UsageResult(
        str(entitlement.feature_id), entitlement.balance, Decimal("0"), replayed=True
    )
