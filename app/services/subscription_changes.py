"""Status changes on customer products: cancel, expire and activate successors."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import (
    BillingError,
    CardDeclined,
    InvalidStatusTransition,
    ProcessorUnavailable,
    ScheduledProductExists,
)
from app.metrics import RECONCILIATION_ALERTS
from app.models.catalog import Product
from app.models.customer_product import CustomerProduct, CustomerProductStatus
from app.models.organization import Customer
from app.services import attach as attach_service
from app.services import line_items
from app.services.attach_params import BillingContext, params_for_product
from app.services.common import utcnow
from app.services.entitlements import SubscriptionRef, customer_products
from app.services.invoices import mirror_invoices
from app.services.locks import customer_group_lock
from app.services.processor import idempotency_key

logger = logging.getLogger(__name__)


class ChangeAction(enum.Enum):
    removed_scheduled = "removed_scheduled"
    expired = "expired"
    pending_cancellation = "pending_cancellation"


@dataclass
class StatusChangeResult:
    action: ChangeAction
    customer_product: CustomerProduct | None
    activated: CustomerProduct | None = None


def _quantities_of(customer_product: CustomerProduct) -> dict[str, int]:
    return {
        str(option.get("feature_id")): int(option.get("quantity") or 0)
        for option in (customer_product.options or [])
    }


def _default_product(db: Session, expired: CustomerProduct) -> Product | None:
    return (
        db.query(Product)
        .filter(Product.org_id == expired.org_id)
        .filter(Product.env == expired.env)
        .filter(Product.group == expired.product_group)
        .filter(Product.is_default.is_(True))
        .filter(Product.is_add_on.is_(False))
        .filter(Product.is_active.is_(True))
        .filter(Product.id != expired.product_id)
        .first()
    )


class CustomerProductChanges:
    @staticmethod
    def update_status(
        db: Session,
        ctx: BillingContext,
        customer_product_id: str,
        status: CustomerProductStatus,
    ) -> StatusChangeResult:
        """Apply an explicit status change request.

        Only ``expired`` may be requested: a scheduled product is removed, an
        add-on is canceled at once, and a main product is canceled at period
        end or immediately depending on CANCEL_AT_PERIOD_END.
        """
        customer_product = customer_products.get(db, customer_product_id)
        if customer_product.org_id != ctx.org.id or customer_product.env != ctx.env:
            raise HTTPException(status_code=404, detail="Customer product not found")
        if status != CustomerProductStatus.expired:
            raise InvalidStatusTransition(
                f"Status {status.value} cannot be requested directly"
            )

        with customer_group_lock(db, customer_product.customer_id, customer_product.product_group):
            db.refresh(customer_product)
            if customer_product.status == CustomerProductStatus.scheduled:
                return CustomerProductChanges._remove_scheduled(db, ctx, customer_product)
            if customer_product.status == CustomerProductStatus.expired:
                raise InvalidStatusTransition("Customer product is already expired")
            if customer_product.is_add_on:
                CustomerProductChanges._cancel_all(db, ctx, customer_product, "add-on expired")
                customer_products.expire(db, customer_product)
                db.commit()
                return StatusChangeResult(ChangeAction.expired, customer_product)
            return CustomerProductChanges._cancel_main(db, ctx, customer_product)

    @staticmethod
    def _cancel_all(
        db: Session, ctx: BillingContext, customer_product: CustomerProduct, reason: str
    ) -> None:
        """Cancel every subscription of ``customer_product`` now.

        Subscriptions that did cancel are detached even when others fail, so a
        retry only touches the rest.

        Raises:
            ProcessorUnavailable: some subscriptions could not be canceled.
        """
        subscription_ids = customer_product.subscription_ids
        failed = attach_service._cancel_quietly(ctx.gateway, subscription_ids, reason)
        if not failed:
            return
        canceled = [sid for sid in subscription_ids if sid not in failed]
        customer_products.remove_subscriptions(db, customer_product, canceled)
        db.commit()
        raise ProcessorUnavailable(
            f"Could not cancel {len(failed)} of {len(subscription_ids)} subscriptions",
            details={"failed_subscription_ids": failed},
        )

    @staticmethod
    def _remove_scheduled(
        db: Session, ctx: BillingContext, scheduled: CustomerProduct
    ) -> StatusChangeResult:
        current = customer_products.get_active_by_group(
            db, scheduled.customer_id, scheduled.product_group
        )
        if current is not None and current.canceled_at is not None:
            for subscription_id in current.subscription_ids:
                ctx.gateway.resume_subscription(
                    subscription_id,
                    idempotency_key=idempotency_key("resume", scheduled.id, subscription_id),
                )
            customer_products.set_pending_cancellation(db, current.id, None)
        customer_products.delete_scheduled(db, scheduled)
        db.commit()
        logger.info("Removed scheduled customer product %s", scheduled.id)
        return StatusChangeResult(ChangeAction.removed_scheduled, None)

    @staticmethod
    def _cancel_main(
        db: Session, ctx: BillingContext, customer_product: CustomerProduct
    ) -> StatusChangeResult:
        scheduled = customer_products.get_scheduled_by_group(
            db, customer_product.customer_id, customer_product.product_group
        )
        if scheduled is not None:
            raise ScheduledProductExists(
                details={"scheduled_customer_product_id": str(scheduled.id)}
            )
        subscription_ids = customer_product.subscription_ids
        if settings.cancel_at_period_end and subscription_ids:
            for subscription_id in subscription_ids:
                ctx.gateway.cancel_subscription(
                    subscription_id,
                    at_period_end=True,
                    idempotency_key=idempotency_key(
                        "cancel-at-period-end", customer_product.id, subscription_id
                    ),
                )
            customer_products.set_pending_cancellation(db, customer_product.id, utcnow())
            db.commit()
            db.refresh(customer_product)
            logger.info(
                "Customer product %s will be canceled at period end", customer_product.id
            )
            return StatusChangeResult(ChangeAction.pending_cancellation, customer_product)

        CustomerProductChanges._cancel_all(db, ctx, customer_product, "main product expired")
        activated = expire_and_activate(db, ctx, customer_product)
        db.commit()
        return StatusChangeResult(ChangeAction.expired, customer_product, activated)


def activate_scheduled(
    db: Session, ctx: BillingContext, scheduled: CustomerProduct
) -> CustomerProduct:
    """Start a scheduled product, creating its subscriptions if it bills now.

    A declined charge leaves the product ``past_due``.
    """
    customer = db.get(Customer, scheduled.customer_id)
    params = params_for_product(customer, scheduled.product, _quantities_of(scheduled))
    groups = line_items.items_by_interval(
        params.product, params.classified, ctx.currency, params.quantities
    )
    if params.is_free or not params.partition.bill_now or not groups:
        customer_products.activate(
            db,
            scheduled,
            starts_at=utcnow(),
            bill_later_only=bool(params.partition.bill_later),
        )
        return scheduled

    processor_customer_id = attach_service.ensure_processor_customer(db, ctx, customer)
    created = []
    try:
        for interval, items in groups.items():
            subscription = ctx.gateway.create_subscription(
                customer_id=processor_customer_id,
                items=items,
                metadata={
                    "customer_id": str(customer.id),
                    "product_id": str(params.product.id),
                    "org": ctx.org.slug,
                    "env": ctx.env.value,
                },
                idempotency_key=idempotency_key("activate", scheduled.id, interval.value),
            )
            created.append((interval, subscription))
    except CardDeclined as exc:
        attach_service._cancel_quietly(
            ctx.gateway, [sub.id for _, sub in created], "declined activation"
        )
        customer_products.update_status(
            db, scheduled.id, CustomerProductStatus.past_due, starts_at=utcnow()
        )
        db.flush()
        db.refresh(scheduled)
        logger.warning(
            "Activation of scheduled product %s declined (%s); marked past_due",
            scheduled.id,
            exc.decline_code or exc.message,
        )
        return scheduled

    customer_products.add_subscriptions(
        db, scheduled, [SubscriptionRef(sub.id, interval.value) for interval, sub in created]
    )
    customer_products.activate(
        db,
        scheduled,
        starts_at=utcnow(),
        next_reset_at=created[0][1].current_period_end,
    )
    db.commit()
    mirror_invoices(
        db,
        ctx,
        customer_id=customer.id,
        invoice_ids=[sub.latest_invoice_id for _, sub in created if sub.latest_invoice_id],
        customer_products=[scheduled],
    )
    return scheduled


def expire_and_activate(
    db: Session, ctx: BillingContext, customer_product: CustomerProduct
) -> CustomerProduct | None:
    """Expire a product and start its group's successor.

    The successor is the scheduled product if there is one, otherwise the
    group's default product. Caller holds the group lock and commits.
    """
    customer_products.expire(db, customer_product)
    if customer_product.is_add_on:
        return None
    scheduled = customer_products.get_scheduled_by_group(
        db, customer_product.customer_id, customer_product.product_group
    )
    if scheduled is not None:
        return activate_scheduled(db, ctx, scheduled)

    default = _default_product(db, customer_product)
    if default is None:
        return None
    customer = db.get(Customer, customer_product.customer_id)
    try:
        result = attach_service.attach_locked(
            db,
            ctx,
            params_for_product(customer, default, request_key=f"default-for:{customer_product.id}"),
            attach_service.Transition.new,
        )
    except BillingError as exc:
        RECONCILIATION_ALERTS.labels(code="default_product_failed").inc()
        logger.error(
            "Could not attach default product %s for customer %s: %s",
            default.product_key,
            customer.id,
            exc.message,
        )
        return None
    return result.customer_product


customer_product_changes = CustomerProductChanges()
