"""Processor webhook handling.

Each event is verified against the organization's webhook secret, recorded in
``processor_events`` by its processor event id, and dispatched by type. Work
for one subscription is serialized by the subscription lock; changes to a
customer product's status also take its group lock (always in that order).
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import BillingError, CustomerProductNotFound
from app.metrics import RECONCILIATION_ALERTS, WEBHOOK_EVENTS
from app.models.billing import InvoiceStatus, ProcessorEvent, ProcessorEventStatus
from app.models.customer_product import CustomerProductStatus
from app.models.organization import AppEnv, Organization
from app.services.attach_params import BillingContext
from app.services.credential_crypto import webhook_secret_for
from app.services.entitlements import customer_entitlements, customer_products, invoices
from app.services.locks import customer_group_lock, subscription_lock
from app.services.processor import ProcessorInvoice, _get, _id_of, gateway_for, verify_event
from app.services.subscription_changes import expire_and_activate

logger = logging.getLogger(__name__)


class WebhookOutcome(enum.Enum):
    processed = "processed"
    duplicate = "duplicate"
    ignored = "ignored"
    not_found = "not_found"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    error_code: str | None = None
    invoice_ids: list[str] = field(default_factory=list)


class _EventScope:
    """Organization, environment and a lazily built billing context."""

    def __init__(self, org: Organization, env: AppEnv, gateway_factory: Callable):
        self.org = org
        self.env = env
        self._gateway_factory = gateway_factory
        self._ctx = None

    @property
    def ctx(self) -> BillingContext:
        if self._ctx is None:
            self._ctx = BillingContext(self.org, self.env, self._gateway_factory(self.org, self.env))
        return self._ctx


def _resolve_org(db: Session, org_slug: str, env_value: str) -> tuple[Organization, AppEnv]:
    try:
        env = AppEnv(env_value)
    except ValueError:
        raise HTTPException(status_code=404, detail="Unknown environment")
    org = db.query(Organization).filter(Organization.slug == org_slug).first()
    if not org:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org, env


def _claim_event(db: Session, scope: _EventScope, event_id: str, event_type: str, payload):
    """Insert the event row; returns None when it was already handled."""
    existing = (
        db.query(ProcessorEvent).filter(ProcessorEvent.processor_event_id == event_id).first()
    )
    if existing is not None:
        if existing.status in (ProcessorEventStatus.processed, ProcessorEventStatus.ignored):
            return None
        existing.status = ProcessorEventStatus.received
        existing.error = None
        db.flush()
        return existing
    record = ProcessorEvent(
        org_id=scope.org.id,
        env=scope.env,
        processor_event_id=event_id,
        event_type=event_type,
        payload=payload,
    )
    try:
        with db.begin_nested():
            db.add(record)
            db.flush()
    except IntegrityError:
        # Concurrent delivery of the same event.
        return None
    return record


def _not_found(subscription_id: str, event_type: str) -> CustomerProductNotFound:
    RECONCILIATION_ALERTS.labels(code="customer_product_not_found").inc()
    logger.error(
        "No live customer product for processor subscription %s (%s)",
        subscription_id,
        event_type,
    )
    return CustomerProductNotFound(details={"subscription_id": subscription_id})


def _invoice_paid(db: Session, scope: _EventScope, result: WebhookResult, obj) -> None:
    invoice = ProcessorInvoice.from_processor(obj)
    if not invoice.subscription_id:
        result.outcome = WebhookOutcome.ignored
        return
    with subscription_lock(db, invoice.subscription_id):
        matching = customer_products.list_by_subscription_id(db, invoice.subscription_id)
        if not matching:
            raise _not_found(invoice.subscription_id, result.event_type)
        existing = invoices.get_by_processor_id(db, invoice.id)
        if existing is not None and existing.status == InvoiceStatus.paid:
            result.outcome = WebhookOutcome.duplicate
            return
        for customer_product in matching:
            if customer_product.status == CustomerProductStatus.past_due:
                with customer_group_lock(
                    db, customer_product.customer_id, customer_product.product_group
                ):
                    customer_products.activate(db, customer_product)
                    db.commit()
        if invoice.billing_reason == "subscription_cycle":
            # The cycle invoice carried the metered overage; start the new period.
            for customer_product in matching:
                if customer_product.primary_subscription_id == invoice.subscription_id:
                    customer_entitlements.reset_for_cycle(db, customer_product)
        if existing is not None:
            invoices.update_status(db, existing, invoice.status)
        else:
            invoices.insert_from_processor(
                db,
                customer_id=matching[0].customer_id,
                processor_invoice=invoice,
                customer_products=matching,
            )
        db.commit()
    result.invoice_ids.append(invoice.id)


def _invoice_payment_failed(db: Session, scope: _EventScope, result: WebhookResult, obj) -> None:
    invoice = ProcessorInvoice.from_processor(obj)
    if not invoice.subscription_id:
        result.outcome = WebhookOutcome.ignored
        return
    with subscription_lock(db, invoice.subscription_id):
        matching = customer_products.list_by_subscription_id(db, invoice.subscription_id)
        if not matching:
            raise _not_found(invoice.subscription_id, result.event_type)
        for customer_product in matching:
            if customer_product.status != CustomerProductStatus.active:
                continue
            with customer_group_lock(
                db, customer_product.customer_id, customer_product.product_group
            ):
                customer_products.update_status(
                    db, customer_product.id, CustomerProductStatus.past_due
                )
                db.commit()
        invoices.insert_from_processor(
            db,
            customer_id=matching[0].customer_id,
            processor_invoice=invoice,
            customer_products=matching,
        )
        db.commit()
    result.invoice_ids.append(invoice.id)


def _subscription_deleted(db: Session, scope: _EventScope, result: WebhookResult, obj) -> None:
    subscription_id = _id_of(_get(obj, "id"))
    if not subscription_id:
        result.outcome = WebhookOutcome.ignored
        return
    with subscription_lock(db, subscription_id):
        matching = customer_products.list_by_subscription_id(db, subscription_id)
        if not matching:
            # Subscriptions replaced by an upgrade or attach are canceled on purpose.
            logger.info("Subscription %s has no live customer product", subscription_id)
            result.outcome = WebhookOutcome.ignored
            return
        for customer_product in matching:
            with customer_group_lock(
                db, customer_product.customer_id, customer_product.product_group
            ):
                db.refresh(customer_product)
                if customer_product.status == CustomerProductStatus.expired:
                    continue
                activated = expire_and_activate(db, scope.ctx, customer_product)
                db.commit()
                logger.info(
                    "Expired customer product %s on subscription %s; activated %s",
                    customer_product.id,
                    subscription_id,
                    activated.id if activated is not None else None,
                )


HANDLERS: dict[str, Callable] = {
    "invoice.paid": _invoice_paid,
    "invoice.payment_failed": _invoice_payment_failed,
    "customer.subscription.deleted": _subscription_deleted,
}


def handle_webhook(
    db: Session,
    org_slug: str,
    env_value: str,
    payload: bytes,
    signature: str | None,
    gateway_factory: Callable | None = None,
) -> WebhookResult:
    """Verify and apply one processor event.

    Returns the handling result; a ``not_found`` result is still acknowledged.

    Raises:
        WebhookSignatureInvalid: the payload failed signature verification.
        BillingError: processing failed and the processor should redeliver.
    """
    org, env = _resolve_org(db, org_slug, env_value)
    event = verify_event(payload, signature, webhook_secret_for(org, env))
    event_id = _get(event, "id")
    event_type = _get(event, "type")
    scope = _EventScope(org, env, gateway_factory or gateway_for)
    result = WebhookResult(event_id, event_type, WebhookOutcome.processed)

    handler = HANDLERS.get(event_type)
    summary = {"type": event_type, "object_id": _get(event, "data", "object", "id")}
    record = _claim_event(db, scope, event_id, event_type, summary)
    if record is None:
        db.rollback()
        WEBHOOK_EVENTS.labels(event_type=event_type, result=WebhookOutcome.duplicate.value).inc()
        logger.info("Duplicate processor event %s (%s)", event_id, event_type)
        result.outcome = WebhookOutcome.duplicate
        return result
    record_id = record.id
    db.commit()

    try:
        if handler is None:
            result.outcome = WebhookOutcome.ignored
        else:
            handler(db, scope, result, _get(event, "data", "object"))
    except CustomerProductNotFound as exc:
        db.rollback()
        result.outcome = WebhookOutcome.not_found
        result.error_code = exc.code
    except BillingError as exc:
        db.rollback()
        _finish_event(db, record_id, ProcessorEventStatus.failed, exc.code)
        WEBHOOK_EVENTS.labels(event_type=event_type, result="failed").inc()
        logger.warning("Processor event %s (%s) failed: %s", event_id, event_type, exc.message)
        raise
    except Exception:
        db.rollback()
        _finish_event(db, record_id, ProcessorEventStatus.failed, "internal_error")
        WEBHOOK_EVENTS.labels(event_type=event_type, result="failed").inc()
        raise

    status = (
        ProcessorEventStatus.ignored
        if result.outcome == WebhookOutcome.ignored
        else ProcessorEventStatus.processed
    )
    _finish_event(db, record_id, status, result.error_code)
    WEBHOOK_EVENTS.labels(event_type=event_type, result=result.outcome.value).inc()
    logger.info("Processor event %s (%s): %s", event_id, event_type, result.outcome.value)
    return result


def _finish_event(db: Session, record_id, status: ProcessorEventStatus, error: str | None) -> None:
    record = db.get(ProcessorEvent, record_id)
    if record is None:
        return
    record.status = status
    record.error = error
    db.commit()
