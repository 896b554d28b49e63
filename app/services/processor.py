"""Payment processor gateway.

``StripeGateway`` is the only code that talks to the processor. Every call
goes through ``_translate`` which turns SDK exceptions into the typed
failures in ``app.errors``:

- declines -> ``CardDeclined``
- bad or missing credentials -> ``ConfigurationMissing``
- network errors, timeouts, rate limits, 5xx -> ``ProcessorUnavailable``
- any other rejected request -> ``ProcessorRequestRejected``

Mutating calls take an ``idempotency_key``; callers derive it with
``idempotency_key()`` from the local operation they represent.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

import stripe

from app.config import settings
from app.errors import (
    CardDeclined,
    ConfigurationMissing,
    ProcessorRequestRejected,
    ProcessorUnavailable,
    WebhookSignatureInvalid,
)
from app.metrics import PROCESSOR_ERRORS
from app.models.organization import AppEnv, Organization
from app.services.credential_crypto import secret_key_for

logger = logging.getLogger(__name__)

# InvalidRequestError codes that mean "the customer could not be charged".
PAYMENT_FAILURE_CODES = frozenset({
    "card_declined",
    "expired_card",
    "incorrect_cvc",
    "insufficient_funds",
    "invoice_payment_intent_requires_action",
    "payment_intent_authentication_failure",
    "payment_intent_payment_attempt_failed",
})
PAYMENT_METHOD_PARAMS = frozenset({"default_payment_method", "payment_method", "source"})


def idempotency_key(*parts) -> str:
    """Stable key for one local operation, e.g. ``("attach", cp_id, "sub", 0)``."""
    raw = ":".join(str(part) for part in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def from_timestamp(value) -> datetime | None:
    if value in (None, 0, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def from_minor_units(value) -> Decimal:
    return (Decimal(int(value or 0)) / 100).quantize(Decimal("0.01"))


def _get(obj, *path, default=None):
    current = obj
    for key in path:
        if current is None:
            return default
        try:
            current = current.get(key) if hasattr(current, "get") else current[key]
        except (KeyError, IndexError, TypeError):
            return default
    return default if current is None else current


def _id_of(value) -> str | None:
    """Expandable fields come back either as an id string or an object."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


@dataclass(frozen=True)
class ProcessorInvoice:
    id: str
    status: str
    total: Decimal
    currency: str
    customer_id: str | None = None
    subscription_id: str | None = None
    hosted_invoice_url: str | None = None
    # subscription_create, subscription_cycle, subscription_update, manual, ...
    billing_reason: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"

    @classmethod
    def from_processor(cls, obj) -> "ProcessorInvoice":
        # Newer API versions moved the subscription under ``parent``.
        subscription = _id_of(_get(obj, "subscription")) or _id_of(
            _get(obj, "parent", "subscription_details", "subscription")
        )
        return cls(
            id=_get(obj, "id"),
            status=_get(obj, "status", default="draft"),
            total=from_minor_units(_get(obj, "total", default=0)),
            currency=_get(obj, "currency", default="usd"),
            customer_id=_id_of(_get(obj, "customer")),
            subscription_id=subscription,
            hosted_invoice_url=_get(obj, "hosted_invoice_url"),
            billing_reason=_get(obj, "billing_reason"),
        )


@dataclass(frozen=True)
class ProcessorSubscriptionItem:
    id: str
    price_id: str | None


@dataclass(frozen=True)
class ProcessorSubscription:
    id: str
    status: str
    current_period_end: datetime | None = None
    latest_invoice_id: str | None = None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None
    items: tuple[ProcessorSubscriptionItem, ...] = field(default_factory=tuple)

    @classmethod
    def from_processor(cls, obj) -> "ProcessorSubscription":
        items = tuple(
            ProcessorSubscriptionItem(id=_get(item, "id"), price_id=_id_of(_get(item, "price")))
            for item in (_get(obj, "items", "data", default=[]) or [])
        )
        period_end = _get(obj, "current_period_end")
        if period_end is None:
            # Newer API versions report the period per item.
            period_end = _get(obj, "items", "data", 0, "current_period_end")
        return cls(
            id=_get(obj, "id"),
            status=_get(obj, "status", default="active"),
            current_period_end=from_timestamp(period_end),
            latest_invoice_id=_id_of(_get(obj, "latest_invoice")),
            cancel_at_period_end=bool(_get(obj, "cancel_at_period_end", default=False)),
            trial_end=from_timestamp(_get(obj, "trial_end")),
            items=items,
        )


def _decline_code(exc: stripe.StripeError) -> str | None:
    error = getattr(exc, "error", None)
    return getattr(error, "decline_code", None) or getattr(exc, "code", None)


@contextmanager
def _translate(operation: str):
    try:
        yield
    except stripe.CardError as exc:
        PROCESSOR_ERRORS.labels(operation=operation, code="card_declined").inc()
        raise CardDeclined(
            exc.user_message or "Card was declined", decline_code=_decline_code(exc)
        ) from exc
    except (stripe.AuthenticationError, stripe.PermissionError) as exc:
        PROCESSOR_ERRORS.labels(operation=operation, code="configuration_missing").inc()
        raise ConfigurationMissing(
            "Payment processor rejected the organization's credentials"
        ) from exc
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
        PROCESSOR_ERRORS.labels(operation=operation, code="processor_unavailable").inc()
        logger.warning("Processor call %s failed: %s", operation, exc)
        raise ProcessorUnavailable(f"Payment processor unavailable during {operation}") from exc
    except stripe.InvalidRequestError as exc:
        if exc.code in PAYMENT_FAILURE_CODES or (exc.param or "") in PAYMENT_METHOD_PARAMS:
            PROCESSOR_ERRORS.labels(operation=operation, code="card_declined").inc()
            raise CardDeclined(
                exc.user_message or str(exc), decline_code=_decline_code(exc)
            ) from exc
        PROCESSOR_ERRORS.labels(operation=operation, code="request_rejected").inc()
        raise ProcessorRequestRejected(
            f"Processor rejected {operation}: {exc.user_message or exc}",
            details={"code": exc.code, "param": exc.param},
        ) from exc
    except stripe.StripeError as exc:
        PROCESSOR_ERRORS.labels(operation=operation, code="request_rejected").inc()
        raise ProcessorRequestRejected(f"Processor rejected {operation}: {exc}") from exc


def _options(key: str | None) -> dict:
    return {"idempotency_key": key} if key else {}


class StripeGateway:
    """Thin wrapper over a ``stripe.StripeClient`` returning typed results."""

    def __init__(self, client):
        self.client = client

    def create_customer(self, *, name=None, email=None, metadata=None, idempotency_key=None) -> str:
        params = {"metadata": metadata or {}}
        if name:
            params["name"] = name
        if email:
            params["email"] = email
        with _translate("create_customer"):
            customer = self.client.customers.create(params=params, options=_options(idempotency_key))
        return _get(customer, "id")

    def create_subscription(
        self,
        *,
        customer_id: str,
        items: list[dict],
        metadata: dict | None = None,
        trial_end: datetime | None = None,
        add_invoice_items: list[dict] | None = None,
        idempotency_key: str | None = None,
    ) -> ProcessorSubscription:
        params = {
            "customer": customer_id,
            "items": items,
            "metadata": metadata or {},
            # Fail the call on a decline instead of leaving an incomplete subscription.
            "payment_behavior": "error_if_incomplete",
            "expand": ["latest_invoice"],
        }
        if trial_end is not None:
            params["trial_end"] = int(trial_end.timestamp())
        if add_invoice_items:
            params["add_invoice_items"] = add_invoice_items
        with _translate("create_subscription"):
            sub = self.client.subscriptions.create(params=params, options=_options(idempotency_key))
        return ProcessorSubscription.from_processor(sub)

    def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        with _translate("retrieve_subscription"):
            sub = self.client.subscriptions.retrieve(subscription_id)
        return ProcessorSubscription.from_processor(sub)

    def update_subscription_items(
        self,
        subscription_id: str,
        *,
        items: list[dict],
        metadata: dict | None = None,
        add_invoice_items: list[dict] | None = None,
        idempotency_key: str | None = None,
    ) -> ProcessorSubscription:
        """Replace items in one update call.

        ``items`` mixes additions with ``{"id": ..., "deleted": True}`` entries
        for removed items, so the processor applies the swap atomically.
        """
        params = {
            "items": items,
            "proration_behavior": "always_invoice",
            "payment_behavior": "error_if_incomplete",
            "cancel_at_period_end": False,
        }
        if metadata:
            params["metadata"] = metadata
        if add_invoice_items:
            params["add_invoice_items"] = add_invoice_items
        with _translate("update_subscription"):
            sub = self.client.subscriptions.update(
                subscription_id, params=params, options=_options(idempotency_key)
            )
        return ProcessorSubscription.from_processor(sub)

    def cancel_subscription(
        self, subscription_id: str, *, at_period_end: bool = False, idempotency_key=None
    ) -> ProcessorSubscription:
        options = _options(idempotency_key)
        with _translate("cancel_subscription"):
            if at_period_end:
                sub = self.client.subscriptions.update(
                    subscription_id, params={"cancel_at_period_end": True}, options=options
                )
            else:
                sub = self.client.subscriptions.cancel(subscription_id, options=options)
        return ProcessorSubscription.from_processor(sub)

    def resume_subscription(self, subscription_id: str, *, idempotency_key=None) -> ProcessorSubscription:
        """Clear a pending period-end cancellation."""
        with _translate("resume_subscription"):
            sub = self.client.subscriptions.update(
                subscription_id,
                params={"cancel_at_period_end": False},
                options=_options(idempotency_key),
            )
        return ProcessorSubscription.from_processor(sub)

    def create_invoice(
        self,
        *,
        customer_id: str,
        currency: str,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> ProcessorInvoice:
        params = {
            "customer": customer_id,
            "currency": currency,
            "auto_advance": False,
            "collection_method": "charge_automatically",
            "metadata": metadata or {},
        }
        with _translate("create_invoice"):
            invoice = self.client.invoices.create(params=params, options=_options(idempotency_key))
        return ProcessorInvoice.from_processor(invoice)

    def create_invoice_item(
        self,
        *,
        customer_id: str,
        invoice_id: str,
        amount_minor: int,
        currency: str,
        description: str,
        idempotency_key: str | None = None,
    ) -> str:
        params = {
            "customer": customer_id,
            "invoice": invoice_id,
            "amount": amount_minor,
            "currency": currency,
            "description": description,
        }
        with _translate("create_invoice_item"):
            item = self.client.invoice_items.create(params=params, options=_options(idempotency_key))
        return _get(item, "id")

    def finalize_invoice(self, invoice_id: str, *, idempotency_key=None) -> ProcessorInvoice:
        with _translate("finalize_invoice"):
            invoice = self.client.invoices.finalize_invoice(
                invoice_id, params={"auto_advance": False}, options=_options(idempotency_key)
            )
        return ProcessorInvoice.from_processor(invoice)

    def pay_invoice(self, invoice_id: str, *, idempotency_key=None) -> ProcessorInvoice:
        with _translate("pay_invoice"):
            invoice = self.client.invoices.pay(invoice_id, options=_options(idempotency_key))
        result = ProcessorInvoice.from_processor(invoice)
        if not result.is_paid:
            PROCESSOR_ERRORS.labels(operation="pay_invoice", code="card_declined").inc()
            raise CardDeclined(f"Invoice {invoice_id} was not paid (status {result.status})")
        return result

    def void_invoice(self, invoice_id: str, *, idempotency_key=None) -> ProcessorInvoice:
        with _translate("void_invoice"):
            invoice = self.client.invoices.void_invoice(
                invoice_id, options=_options(idempotency_key)
            )
        return ProcessorInvoice.from_processor(invoice)

    def retrieve_invoice(self, invoice_id: str) -> ProcessorInvoice:
        with _translate("retrieve_invoice"):
            invoice = self.client.invoices.retrieve(invoice_id)
        return ProcessorInvoice.from_processor(invoice)

    def create_meter_event(
        self,
        *,
        event_name: str,
        customer_id: str,
        value: Decimal | int,
        identifier: str,
        timestamp: datetime | None = None,
    ) -> None:
        params = {
            "event_name": event_name,
            "identifier": identifier,
            "payload": {"stripe_customer_id": customer_id, "value": str(value)},
        }
        if timestamp is not None:
            params["timestamp"] = int(timestamp.timestamp())
        with _translate("create_meter_event"):
            self.client.billing.meter_events.create(params=params)

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        mode: str,
        line_items: list[dict],
        success_url: str,
        cancel_url: str,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        params = {
            "customer": customer_id,
            "mode": mode,
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        with _translate("create_checkout_session"):
            session = self.client.checkout.sessions.create(
                params=params, options=_options(idempotency_key)
            )
        return _get(session, "url")

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> str:
        with _translate("create_billing_portal_session"):
            session = self.client.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        return _get(session, "url")


def verify_event(payload: bytes, signature: str | None, secret: str):
    """Parse a webhook payload after checking its signature.

    Raises:
        WebhookSignatureInvalid: if the signature or payload does not verify.
    """
    if not signature:
        raise WebhookSignatureInvalid("Missing processor signature header")
    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureInvalid() from exc
    except ValueError as exc:
        raise WebhookSignatureInvalid("Webhook payload is not valid JSON") from exc


def build_client(secret_key: str) -> stripe.StripeClient:
    return stripe.StripeClient(
        secret_key,
        http_client=stripe.RequestsClient(timeout=settings.processor_timeout_seconds),
        max_network_retries=settings.processor_max_network_retries,
    )


def gateway_for(org: Organization, env: AppEnv) -> StripeGateway:
    """Gateway authenticated as the organization in the given environment.

    Raises:
        ConfigurationMissing: if the organization has no usable secret key.
    """
    return StripeGateway(build_client(secret_key_for(org, env)))
