"""Attach engine: new attach, add-on attach, upgrade and schedule-for-later.

Every path runs under the (customer, product group) lock from reading the
group's current product until the new status is committed.

Billing failures follow one policy on every path:

- ``CardDeclined``: undo whatever this attempt created at the processor and
  return a hosted checkout URL instead of a customer product.
- ``ProcessorUnavailable`` (timeouts included): undo the same way and raise;
  nothing is granted locally without a confirmed payment.
- a local write failing after a confirmed payment raises
  ``LocalStateWriteFailed``; the payment is left in place.
"""

from __future__ import annotations

import enum
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import (
    BillingError,
    CardDeclined,
    InvalidAttachParams,
    LocalStateWriteFailed,
    OverageBillingFailed,
    ProcessorRequestRejected,
    ProcessorUnavailable,
    ProductGroupConflict,
)
from app.metrics import ATTACH_OUTCOMES, RECONCILIATION_ALERTS
from app.models.customer_product import CustomerProduct, CustomerProductStatus
from app.models.organization import Customer
from app.schemas.attach import AttachOutcome
from app.services import line_items, pricing
from app.services.attach_params import AttachParams, BillingContext
from app.services.common import utcnow
from app.services.entitlements import (
    SubscriptionRef,
    customer_entitlements,
    customer_products,
    unmetered_overage,
)
from app.services.invoices import MirrorResult, mirror_invoices
from app.services.locks import customer_group_lock
from app.services.processor import ProcessorInvoice, idempotency_key

logger = logging.getLogger(__name__)


class AttachMode(enum.Enum):
    new = "new"
    upgrade = "upgrade"


class Transition(enum.Enum):
    new = "new"
    add_on = "add_on"
    upgrade = "upgrade"
    schedule = "schedule"


@dataclass
class AttachResult:
    outcome: AttachOutcome
    transition: Transition
    customer_product: CustomerProduct | None = None
    checkout_url: str | None = None
    invoice_ids: list[str] = field(default_factory=list)
    mirror_failures: list[str] = field(default_factory=list)

    def record_mirrors(self, results: list[MirrorResult]) -> None:
        for result in results:
            if result.ok:
                if result.invoice_id not in self.invoice_ids:
                    self.invoice_ids.append(result.invoice_id)
            else:
                self.mirror_failures.append(result.invoice_id)


# Processor customer


def ensure_processor_customer(db: Session, ctx: BillingContext, customer: Customer) -> str:
    """Create the processor customer on first paid attach (idempotent)."""
    if customer.processor_customer_id:
        return customer.processor_customer_id
    processor_id = ctx.gateway.create_customer(
        name=customer.name,
        email=customer.email,
        metadata={
            "customer_id": str(customer.id),
            "external_id": customer.external_id,
            "org": ctx.org.slug,
            "env": ctx.env.value,
        },
        idempotency_key=idempotency_key("customer", customer.id),
    )
    customer.processor_customer_id = processor_id
    db.flush()
    logger.info("Linked customer %s to processor customer %s", customer.id, processor_id)
    return processor_id


# Helpers


@contextmanager
def _post_payment_write(db: Session, description: str, processor_ids: list[str]):
    """Commit local state for a payment that already succeeded.

    Any failure here, a database error or a status transition lost to a
    concurrent change, is logged with the processor ids and surfaces as
    ``LocalStateWriteFailed``.
    """
    try:
        yield
        db.commit()
    except (SQLAlchemyError, BillingError) as exc:
        db.rollback()
        logger.exception(
            "Local write failed after processor success (%s); processor ids %s",
            description,
            processor_ids,
        )
        raise LocalStateWriteFailed(
            details={"operation": description, "processor_ids": processor_ids}
        ) from exc


def _void_quietly(gateway, invoice_id: str) -> None:
    try:
        gateway.void_invoice(invoice_id, idempotency_key=idempotency_key("void", invoice_id))
    except BillingError as exc:
        logger.error("Could not void invoice %s: %s", invoice_id, exc.message)


def _cancel_quietly(gateway, subscription_ids: list[str], reason: str) -> list[str]:
    """Cancel subscriptions immediately; returns the ids that failed."""
    failed = []
    for subscription_id in subscription_ids:
        try:
            gateway.cancel_subscription(
                subscription_id, idempotency_key=idempotency_key("cancel", subscription_id)
            )
        except BillingError as exc:
            failed.append(subscription_id)
            RECONCILIATION_ALERTS.labels(code="subscription_cancel_failed").inc()
            logger.error(
                "Could not cancel subscription %s (%s): %s", subscription_id, reason, exc.message
            )
    return failed


def _charge_invoice(
    ctx: BillingContext,
    customer_id: str,
    lines: list[tuple[str, Decimal]],
    key_parts: tuple,
    metadata: dict,
) -> ProcessorInvoice:
    """Create, finalize and pay a one-off invoice.

    On a decline or an unavailable processor the invoice is voided before the
    error propagates.
    """
    gateway = ctx.gateway
    invoice = gateway.create_invoice(
        customer_id=customer_id,
        currency=ctx.currency,
        metadata=metadata,
        idempotency_key=idempotency_key(*key_parts, "invoice"),
    )
    try:
        for index, (description, amount) in enumerate(lines):
            gateway.create_invoice_item(
                customer_id=customer_id,
                invoice_id=invoice.id,
                amount_minor=pricing.to_minor_units(amount),
                currency=ctx.currency,
                description=description,
                idempotency_key=idempotency_key(*key_parts, "item", index),
            )
        invoice = gateway.finalize_invoice(
            invoice.id, idempotency_key=idempotency_key(*key_parts, "finalize")
        )
        if invoice.is_paid:
            return invoice
        return gateway.pay_invoice(invoice.id, idempotency_key=idempotency_key(*key_parts, "pay"))
    except (CardDeclined, ProcessorUnavailable):
        _void_quietly(gateway, invoice.id)
        raise


def _checkout(ctx: BillingContext, params: AttachParams, transition: Transition, exc) -> AttachResult:
    logger.info(
        "Payment declined for customer %s product %s (%s); falling back to checkout",
        params.customer.id,
        params.product.product_key,
        getattr(exc, "decline_code", None) or exc.message,
    )
    return AttachResult(
        outcome=AttachOutcome.checkout_required,
        transition=transition,
        checkout_url=ctx.checkout(ctx, params, "card_declined"),
    )


def _metadata(ctx: BillingContext, params: AttachParams) -> dict:
    return {
        "customer_id": str(params.customer.id),
        "product_id": str(params.product.id),
        "org": ctx.org.slug,
        "env": ctx.env.value,
    }


def _mirror(db: Session, ctx, result: AttachResult, customer_id, invoice_ids, linked):
    if not invoice_ids:
        return
    results = mirror_invoices(
        db,
        ctx,
        customer_id=customer_id,
        invoice_ids=invoice_ids,
        customer_products=linked,
    )
    result.record_mirrors(results)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Could not store mirrored invoices %s", invoice_ids)
        raise LocalStateWriteFailed(
            "Invoices could not be mirrored locally", details={"invoice_ids": invoice_ids}
        ) from exc


def _retire(db: Session, replacing: CustomerProduct | None) -> list[str]:
    """Expire the product being replaced; returns its subscription ids."""
    if replacing is None:
        return []
    subscription_ids = list(replacing.subscription_ids)
    customer_products.expire(db, replacing)
    return subscription_ids


# New attach


def _attach_new(
    db: Session,
    ctx: BillingContext,
    params: AttachParams,
    transition: Transition,
    replacing: CustomerProduct | None = None,
    cancel_replaced: bool = False,
) -> AttachResult:
    partition = params.partition
    if not params.prices or params.is_free:
        return _attach_unbilled(db, ctx, params, transition, replacing, cancel_replaced)

    processor_customer_id = ensure_processor_customer(db, ctx, params.customer)
    if partition.bill_now:
        return _attach_bill_now(
            db, ctx, params, transition, processor_customer_id, replacing, cancel_replaced
        )

    invoice = None
    lines = []
    for classified in partition.one_off:
        line = pricing.line_amount(classified, params.quantity_for(classified.feature_id))
        if line.total > 0:
            lines.append((params.product.name, line.total))
    if lines:
        try:
            invoice = _charge_invoice(
                ctx,
                processor_customer_id,
                lines,
                params.operation_key("one-off"),
                _metadata(ctx, params),
            )
        except CardDeclined as exc:
            return _checkout(ctx, params, transition, exc)

    processor_ids = [invoice.id] if invoice else []
    with _post_payment_write(db, "attach one-off/bill-later", processor_ids):
        replaced_subs = _retire(db, replacing)
        customer_product = customer_products.create(
            db,
            customer=params.customer,
            product=params.product,
            env=ctx.env,
            prices=params.prices,
            entitlements=params.entitlements,
            quantities=params.quantities,
            bill_later_only=bool(partition.bill_later),
            last_invoice_id=invoice.id if invoice else None,
        )
    result = AttachResult(AttachOutcome.attached, transition, customer_product)
    if cancel_replaced and replaced_subs:
        _cancel_quietly(ctx.gateway, replaced_subs, "replaced product")
    _mirror(db, ctx, result, params.customer.id, processor_ids, [customer_product])
    return result


def _attach_unbilled(db, ctx, params, transition, replacing, cancel_replaced) -> AttachResult:
    with _post_payment_write(db, "attach free product", []):
        replaced_subs = _retire(db, replacing)
        customer_product = customer_products.create(
            db,
            customer=params.customer,
            product=params.product,
            env=ctx.env,
            prices=params.prices,
            entitlements=params.entitlements,
            quantities=params.quantities,
            bill_later_only=bool(params.partition.bill_later),
        )
    if cancel_replaced and replaced_subs:
        _cancel_quietly(ctx.gateway, replaced_subs, "replaced product")
    return AttachResult(AttachOutcome.attached, transition, customer_product)


def _attach_bill_now(
    db: Session,
    ctx: BillingContext,
    params: AttachParams,
    transition: Transition,
    processor_customer_id: str,
    replacing: CustomerProduct | None,
    cancel_replaced: bool,
) -> AttachResult:
    groups = line_items.items_by_interval(
        params.product, params.classified, ctx.currency, params.quantities
    )
    one_off_items = line_items.one_off_invoice_items(
        params.product, params.partition.one_off, ctx.currency, params.quantities
    )
    trial_end = params.trial_ends_at()
    created = []
    try:
        for position, (interval, items) in enumerate(groups.items()):
            subscription = ctx.gateway.create_subscription(
                customer_id=processor_customer_id,
                items=items,
                metadata=_metadata(ctx, params),
                trial_end=trial_end,
                add_invoice_items=one_off_items if position == 0 else None,
                idempotency_key=idempotency_key(*params.operation_key("subscription", interval.value)),
            )
            created.append((interval, subscription))
    except CardDeclined as exc:
        _cancel_quietly(ctx.gateway, [sub.id for _, sub in created], "declined attach")
        return _checkout(ctx, params, transition, exc)
    except ProcessorUnavailable:
        _cancel_quietly(ctx.gateway, [sub.id for _, sub in created], "processor unavailable")
        raise

    subscription_ids = [sub.id for _, sub in created]
    with _post_payment_write(db, "attach subscriptions", subscription_ids):
        replaced_subs = _retire(db, replacing)
        customer_product = customer_products.create(
            db,
            customer=params.customer,
            product=params.product,
            env=ctx.env,
            prices=params.prices,
            entitlements=params.entitlements,
            quantities=params.quantities,
            subscriptions=[SubscriptionRef(sub.id, interval.value) for interval, sub in created],
            free_trial_id=params.free_trial.id if params.free_trial else None,
            trial_ends_at=trial_end,
            next_reset_at=created[0][1].current_period_end if created else None,
        )
    result = AttachResult(AttachOutcome.attached, transition, customer_product)
    if cancel_replaced and replaced_subs:
        _cancel_quietly(ctx.gateway, replaced_subs, "replaced product")
    _mirror(
        db,
        ctx,
        result,
        params.customer.id,
        [sub.latest_invoice_id for _, sub in created if sub.latest_invoice_id],
        [customer_product],
    )
    return result


# Upgrade


def _is_free(customer_product: CustomerProduct) -> bool:
    return pricing.is_free_product(cp.price for cp in customer_product.customer_prices)


def _in_trial(customer_product: CustomerProduct) -> bool:
    trial_ends_at = customer_product.trial_ends_at
    if trial_ends_at is None:
        return False
    if trial_ends_at.tzinfo is None:
        return trial_ends_at > utcnow().replace(tzinfo=None)
    return trial_ends_at > utcnow()


def bill_remaining_usage(
    db: Session,
    ctx: BillingContext,
    customer: Customer,
    current: CustomerProduct,
    key_parts: tuple | None = None,
) -> ProcessorInvoice | None:
    """Bill arrears overage on ``current`` that no meter has reported, then clear it.

    Overage already sent to the processor meter is billed by the processor
    with the subscription and is left alone here. ``key_parts`` seeds the
    invoice's idempotency keys; without it every call is a new charge.

    Raises:
        OverageBillingFailed: the invoice could not be paid; balances and
            subscriptions are left untouched.
    """
    negative = customer_entitlements.list_negative_overage(db, current.id)
    if not negative:
        return None
    arrears = {}
    for customer_price in current.customer_prices:
        classified = pricing.classify(customer_price.price)
        if isinstance(classified, pricing.UsageInArrearsPrice):
            arrears[classified.feature_id] = classified

    lines = []
    settled = []
    for entitlement in negative:
        unmetered = unmetered_overage(entitlement)
        if unmetered <= 0:
            continue
        price = arrears.get(str(entitlement.feature_id))
        if price is None:
            RECONCILIATION_ALERTS.labels(code="unbilled_overage").inc()
            logger.error(
                "Negative balance on entitlement %s has no usage price to bill it",
                entitlement.id,
            )
            continue
        amount = pricing.overage_amount(price, unmetered)
        settled.append(entitlement)
        if amount > 0:
            feature = price.feature_key or price.feature_id
            lines.append((f"Remaining usage: {feature}", amount))
    if not settled:
        return None

    invoice = None
    if lines:
        processor_customer_id = ensure_processor_customer(db, ctx, customer)
        try:
            invoice = _charge_invoice(
                ctx,
                processor_customer_id,
                lines,
                key_parts or ("overage", current.id, uuid.uuid4().hex),
                {"customer_id": str(customer.id), "customer_product_id": str(current.id)},
            )
        except (CardDeclined, ProcessorUnavailable, ProcessorRequestRejected) as exc:
            logger.warning(
                "Overage billing failed for customer product %s: %s", current.id, exc.message
            )
            raise OverageBillingFailed(details={"reason": exc.code}) from exc

    with _post_payment_write(db, "settle overage balances", [invoice.id] if invoice else []):
        for entitlement in settled:
            customer_entitlements.settle_unmetered_overage(db, entitlement.id)
    logger.info("Billed remaining usage for customer product %s", current.id)
    return invoice


def _upgrade(
    db: Session, ctx: BillingContext, params: AttachParams, current: CustomerProduct
) -> AttachResult:
    transition = Transition.upgrade
    if _is_free(current):
        return _attach_new(db, ctx, params, transition, replacing=current, cancel_replaced=True)
    if _in_trial(current):
        return _attach_new(db, ctx, params, transition, replacing=current, cancel_replaced=True)

    overage_invoice = bill_remaining_usage(
        db, ctx, params.customer, current, params.operation_key("overage", current.id)
    )
    if not current.subscriptions:
        result = _attach_new(db, ctx, params, transition, replacing=current)
    else:
        result = _swap_subscriptions(db, ctx, params, current)
    if overage_invoice is not None:
        _mirror(db, ctx, result, params.customer.id, [overage_invoice.id], [current])
    return result


def _swap_subscriptions(
    db: Session, ctx: BillingContext, params: AttachParams, current: CustomerProduct
) -> AttachResult:
    """Move the current product's primary subscription onto the new items.

    Subscriptions for extra billing intervals are created before the swap,
    so a decline on any of them leaves the current product untouched.
    """
    transition = Transition.upgrade
    groups = list(
        line_items.items_by_interval(
            params.product, params.classified, ctx.currency, params.quantities
        ).items()
    )
    if not groups:
        return _attach_new(db, ctx, params, transition, replacing=current, cancel_replaced=True)

    processor_customer_id = ensure_processor_customer(db, ctx, params.customer)
    primary_id = current.primary_subscription_id
    old_extra_ids = current.subscription_ids[1:]
    (primary_interval, primary_items), extra_groups = groups[0], groups[1:]
    one_off_items = line_items.one_off_invoice_items(
        params.product, params.partition.one_off, ctx.currency, params.quantities
    )

    created = []
    try:
        for interval, items in extra_groups:
            subscription = ctx.gateway.create_subscription(
                customer_id=processor_customer_id,
                items=items,
                metadata=_metadata(ctx, params),
                idempotency_key=idempotency_key(
                    *params.operation_key("upgrade", current.id, interval.value)
                ),
            )
            created.append((interval, subscription))
        old = ctx.gateway.retrieve_subscription(primary_id)
        swap_items = [{"id": item.id, "deleted": True} for item in old.items] + primary_items
        swapped = ctx.gateway.update_subscription_items(
            primary_id,
            items=swap_items,
            metadata=_metadata(ctx, params),
            add_invoice_items=one_off_items or None,
            idempotency_key=idempotency_key(*params.operation_key("swap", current.id, primary_id)),
        )
    except CardDeclined as exc:
        _cancel_quietly(ctx.gateway, [sub.id for _, sub in created], "declined upgrade")
        return _checkout(ctx, params, transition, exc)
    except ProcessorUnavailable:
        _cancel_quietly(ctx.gateway, [sub.id for _, sub in created], "processor unavailable")
        raise

    _cancel_quietly(ctx.gateway, old_extra_ids, "upgrade replaced subscription")

    refs = [SubscriptionRef(primary_id, primary_interval.value)] + [
        SubscriptionRef(sub.id, interval.value) for interval, sub in created
    ]
    with _post_payment_write(db, "upgrade swap", [ref.processor_subscription_id for ref in refs]):
        customer_products.expire(db, current, detach_subscriptions=True)
        scheduled = customer_products.get_scheduled_by_group(
            db, params.customer.id, current.product_group
        )
        if scheduled is not None:
            # The swap cleared the period-end cancellation the downgrade relied on.
            customer_products.delete_scheduled(db, scheduled)
        customer_product = customer_products.create(
            db,
            customer=params.customer,
            product=params.product,
            env=ctx.env,
            prices=params.prices,
            entitlements=params.entitlements,
            quantities=params.quantities,
            subscriptions=refs,
            next_reset_at=swapped.current_period_end,
        )
    logger.info(
        "Upgraded customer %s from %s to %s on subscription %s",
        params.customer.id,
        current.product_id,
        params.product.product_key,
        primary_id,
    )
    result = AttachResult(AttachOutcome.attached, transition, customer_product)
    invoice_ids = [swapped.latest_invoice_id] + [sub.latest_invoice_id for _, sub in created]
    _mirror(
        db,
        ctx,
        result,
        params.customer.id,
        [invoice_id for invoice_id in invoice_ids if invoice_id],
        [customer_product],
    )
    return result


# Schedule for later (downgrade)


def schedule_product(
    db: Session, ctx: BillingContext, params: AttachParams, current: CustomerProduct
) -> AttachResult:
    """Replace ``current`` with ``params.product`` at the end of its period.

    The current subscriptions are set to cancel at period end; the
    cancellation webhook later expires ``current`` and activates the
    scheduled product.
    """
    period_end = current.next_reset_at
    pending = []
    try:
        for subscription_id in current.subscription_ids:
            subscription = ctx.gateway.cancel_subscription(
                subscription_id,
                at_period_end=True,
                idempotency_key=idempotency_key(
                    *params.operation_key("cancel-at-period-end", subscription_id)
                ),
            )
            pending.append(subscription_id)
            period_end = period_end or subscription.current_period_end
    except BillingError:
        for subscription_id in pending:
            try:
                ctx.gateway.resume_subscription(
                    subscription_id,
                    idempotency_key=idempotency_key(*params.operation_key("resume", subscription_id)),
                )
            except BillingError as exc:
                RECONCILIATION_ALERTS.labels(code="subscription_resume_failed").inc()
                logger.error("Could not resume subscription %s: %s", subscription_id, exc.message)
        raise
    starts_at = period_end or utcnow()

    with _post_payment_write(db, "schedule product", current.subscription_ids):
        existing = customer_products.get_scheduled_by_group(
            db, params.customer.id, current.product_group
        )
        if existing is not None:
            customer_products.delete_scheduled(db, existing)
        customer_products.set_pending_cancellation(db, current.id, utcnow())
        customer_product = customer_products.create(
            db,
            customer=params.customer,
            product=params.product,
            env=ctx.env,
            prices=params.prices,
            entitlements=params.entitlements,
            quantities=params.quantities,
            status=CustomerProductStatus.scheduled,
            starts_at=starts_at,
        )
    logger.info(
        "Scheduled %s for customer %s at %s",
        params.product.product_key,
        params.customer.id,
        starts_at.isoformat(),
    )
    return AttachResult(AttachOutcome.scheduled, Transition.schedule, customer_product)


# Entry points


def _quantities_of(customer_product: CustomerProduct) -> dict[str, int]:
    return {
        str(option.get("feature_id")): int(option.get("quantity") or 0)
        for option in (customer_product.options or [])
    }


def decide_transition(
    db: Session, customer: Customer, product, quantities: dict[str, int] | None = None
) -> Transition:
    if product.is_add_on:
        return Transition.add_on
    current = customer_products.get_active_by_group(db, customer.id, product.group or "")
    if current is None:
        return Transition.new
    if current.product_id == product.id:
        raise InvalidAttachParams(f"Product {product.product_key} is already active")
    current_prices = [pricing.classify(cp.price) for cp in current.customer_prices]
    if pricing.is_free(current_prices):
        return Transition.upgrade
    target = pricing.monthly_recurring_amount(
        [pricing.classify(price) for price in product.prices], quantities
    )
    existing = pricing.monthly_recurring_amount(current_prices, _quantities_of(current))
    return Transition.upgrade if target >= existing else Transition.schedule


def _record(db: Session, result: AttachResult) -> AttachResult:
    # Persists the processor customer link on checkout fallbacks.
    db.commit()
    ATTACH_OUTCOMES.labels(
        transition=result.transition.value, outcome=result.outcome.value
    ).inc()
    return result


def attach(db: Session, ctx: BillingContext, params: AttachParams) -> AttachResult:
    """Attach ``params.product``, choosing the transition from the group's state."""
    product = params.product
    with customer_group_lock(db, params.customer.id, product.group):
        transition = decide_transition(db, params.customer, product, params.quantities)
        if transition in (Transition.new, Transition.add_on):
            return _record(db, _attach_new(db, ctx, params, transition))
        current = customer_products.get_active_by_group(db, params.customer.id, product.group or "")
        if transition == Transition.upgrade:
            return _record(db, _upgrade(db, ctx, params, current))
        return _record(db, schedule_product(db, ctx, params, current))


def attach_product(
    db: Session,
    ctx: BillingContext,
    params: AttachParams,
    mode: AttachMode = AttachMode.new,
    cur_customer_product: CustomerProduct | None = None,
) -> AttachResult:
    """Attach with an explicit mode.

    ``mode=upgrade`` requires the caller's view of the group's active product;
    if another request changed the group first, ``ProductGroupConflict`` is
    raised instead of acting on stale state.
    """
    product = params.product
    with customer_group_lock(db, params.customer.id, product.group):
        current = None
        if not product.is_add_on:
            current = customer_products.get_active_by_group(
                db, params.customer.id, product.group or ""
            )
        if mode == AttachMode.upgrade:
            if cur_customer_product is None:
                raise InvalidAttachParams("Upgrade requires the current customer product")
            if current is None or current.id != cur_customer_product.id:
                raise ProductGroupConflict(
                    details={"expected": str(cur_customer_product.id)}
                )
            return _record(db, _upgrade(db, ctx, params, current))
        if current is not None:
            raise ProductGroupConflict(
                f"Customer already has an active product in group {product.group!r}"
            )
        transition = Transition.add_on if product.is_add_on else Transition.new
        return _record(db, _attach_new(db, ctx, params, transition))


def attach_locked(
    db: Session, ctx: BillingContext, params: AttachParams, transition: Transition = Transition.new
) -> AttachResult:
    """Plain attach for callers already holding the group lock."""
    return _record(db, _attach_new(db, ctx, params, transition))
