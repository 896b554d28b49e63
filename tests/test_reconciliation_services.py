from decimal import Decimal

import pytest

from app.errors import WebhookSignatureInvalid
from app.models.billing import Invoice, InvoiceStatus, ProcessorEvent, ProcessorEventStatus
from app.models.customer_product import CustomerProduct, CustomerProductStatus
from app.schemas.attach import AttachRequest, UsageRequest
from app.services import attach as attach_service
from app.services import reconciliation
from app.services import usage as usage_service
from app.services.attach_params import resolve_attach_params
from app.services.entitlements import customer_entitlements
from app.services.reconciliation import WebhookOutcome
from tests.mocks import WEBHOOK_SECRET, arrears_config, fixed_config, invoice_object, signed_event


def _attach(db, ctx, customer, product):
    params = resolve_attach_params(db, ctx, str(customer.id), AttachRequest(product_id=product.id))
    return attach_service.attach(db, ctx, params).customer_product


def _deliver(db, org, gateway, event_type, obj, event_id=None, secret=WEBHOOK_SECRET):
    payload, signature = signed_event(event_type, obj, secret, event_id)
    return reconciliation.handle_webhook(
        db,
        org.slug,
        "sandbox",
        payload,
        signature,
        gateway_factory=lambda _org, _env: gateway,
    )


def _event(db, event_id):
    return (
        db.query(ProcessorEvent).filter(ProcessorEvent.processor_event_id == event_id).one()
    )


@pytest.fixture()
def subscribed(db_session, ctx, customer, product_factory):
    product = product_factory("pro", [fixed_config("50")])
    return _attach(db_session, ctx, customer, product)


def test_invoice_paid_mirrors_renewal_once(db_session, org, gateway, subscribed):
    subscription_id = subscribed.primary_subscription_id
    obj = invoice_object("in_renewal", subscription_id)

    first = _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_renewal")
    replay = _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_renewal")

    assert first.outcome == WebhookOutcome.processed
    assert first.invoice_ids == ["in_renewal"]
    assert replay.outcome == WebhookOutcome.duplicate
    invoices = db_session.query(Invoice).filter(Invoice.processor_invoice_id == "in_renewal").all()
    assert len(invoices) == 1
    assert invoices[0].status == InvoiceStatus.paid
    assert [link.customer_product_id for link in invoices[0].customer_product_links] == [subscribed.id]
    assert _event(db_session, "evt_renewal").status == ProcessorEventStatus.processed


def test_invoice_paid_for_known_paid_invoice_is_noop(db_session, org, gateway, subscribed):
    obj = invoice_object("in_renewal", subscribed.primary_subscription_id)
    _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_a")

    again = _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_b")

    assert again.outcome == WebhookOutcome.duplicate


def test_unknown_subscription_is_acknowledged_as_not_found(db_session, org, gateway, subscribed):
    obj = invoice_object("in_orphan", "sub_unknown")

    result = _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_orphan")

    assert result.outcome == WebhookOutcome.not_found
    assert result.error_code == "customer_product_not_found"
    event = _event(db_session, "evt_orphan")
    assert event.status == ProcessorEventStatus.processed
    assert event.error == "customer_product_not_found"
    assert db_session.query(Invoice).filter(Invoice.processor_invoice_id == "in_orphan").count() == 0


def test_payment_failed_then_paid_restores_active(db_session, org, gateway, subscribed):
    subscription_id = subscribed.primary_subscription_id

    failed = _deliver(
        db_session,
        org,
        gateway,
        "invoice.payment_failed",
        invoice_object("in_retry", subscription_id, status="open"),
        event_id="evt_failed",
    )
    db_session.refresh(subscribed)
    assert failed.outcome == WebhookOutcome.processed
    assert subscribed.status == CustomerProductStatus.past_due
    invoice = db_session.query(Invoice).filter(Invoice.processor_invoice_id == "in_retry").one()
    assert invoice.status == InvoiceStatus.open

    paid = _deliver(
        db_session,
        org,
        gateway,
        "invoice.paid",
        invoice_object("in_retry", subscription_id),
        event_id="evt_paid",
    )
    db_session.refresh(subscribed)
    db_session.refresh(invoice)
    assert paid.outcome == WebhookOutcome.processed
    assert subscribed.status == CustomerProductStatus.active
    assert invoice.status == InvoiceStatus.paid


def test_subscription_deleted_activates_scheduled_product(
    db_session, ctx, org, gateway, customer, product_factory
):
    pro = product_factory("pro", [fixed_config("50")])
    basic = product_factory("basic", [fixed_config("10")])
    current = _attach(db_session, ctx, customer, pro)
    scheduled = _attach(db_session, ctx, customer, basic)

    result = _deliver(
        db_session,
        org,
        gateway,
        "customer.subscription.deleted",
        {"id": current.primary_subscription_id, "object": "subscription", "status": "canceled"},
    )

    db_session.refresh(current)
    db_session.refresh(scheduled)
    assert result.outcome == WebhookOutcome.processed
    assert current.status == CustomerProductStatus.expired
    assert scheduled.status == CustomerProductStatus.active
    assert len(scheduled.subscription_ids) == 1
    assert scheduled.subscription_ids[0] != current.primary_subscription_id
    assert (
        db_session.query(Invoice)
        .filter(Invoice.processor_subscription_id == scheduled.subscription_ids[0])
        .count()
        == 1
    )


def test_declined_scheduled_activation_leaves_product_past_due(
    db_session, ctx, org, gateway, customer, product_factory
):
    pro = product_factory("pro", [fixed_config("50")])
    basic = product_factory("basic", [fixed_config("10")])
    current = _attach(db_session, ctx, customer, pro)
    scheduled = _attach(db_session, ctx, customer, basic)
    gateway.decline.add("create_subscription")

    _deliver(
        db_session,
        org,
        gateway,
        "customer.subscription.deleted",
        {"id": current.primary_subscription_id, "object": "subscription"},
    )

    db_session.refresh(scheduled)
    assert scheduled.status == CustomerProductStatus.past_due
    assert scheduled.subscription_ids == []


def test_subscription_deleted_activates_default_product(
    db_session, ctx, org, gateway, customer, product_factory
):
    default = product_factory("free", [fixed_config("0")], is_default=True)
    pro = product_factory("pro", [fixed_config("50")])
    current = _attach(db_session, ctx, customer, pro)

    _deliver(
        db_session,
        org,
        gateway,
        "customer.subscription.deleted",
        {"id": current.primary_subscription_id, "object": "subscription"},
    )

    active = (
        db_session.query(CustomerProduct)
        .filter(CustomerProduct.customer_id == customer.id)
        .filter(CustomerProduct.status == CustomerProductStatus.active)
        .one()
    )
    assert active.product_id == default.id


def test_deleted_subscription_without_live_product_is_ignored(db_session, org, gateway, subscribed):
    result = _deliver(
        db_session,
        org,
        gateway,
        "customer.subscription.deleted",
        {"id": "sub_replaced", "object": "subscription"},
        event_id="evt_replaced",
    )

    assert result.outcome == WebhookOutcome.ignored
    assert _event(db_session, "evt_replaced").status == ProcessorEventStatus.ignored


def test_unhandled_event_type_is_ignored(db_session, org, gateway):
    result = _deliver(db_session, org, gateway, "customer.created", {"id": "cus_1"})

    assert result.outcome == WebhookOutcome.ignored


def test_bad_signature_is_rejected(db_session, org, gateway, subscribed):
    obj = invoice_object("in_forged", subscribed.primary_subscription_id)

    with pytest.raises(WebhookSignatureInvalid):
        _deliver(db_session, org, gateway, "invoice.paid", obj, secret="whsec_wrong")

    assert db_session.query(ProcessorEvent).count() == 0


def test_missing_signature_is_rejected(db_session, org):
    with pytest.raises(WebhookSignatureInvalid):
        reconciliation.handle_webhook(db_session, org.slug, "sandbox", b"{}", None)


def test_failed_event_can_be_redelivered(db_session, org, gateway, subscribed, monkeypatch):
    obj = invoice_object("in_flaky", subscribed.primary_subscription_id)
    original = reconciliation.HANDLERS["invoice.paid"]

    def _boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setitem(reconciliation.HANDLERS, "invoice.paid", _boom)
    with pytest.raises(RuntimeError):
        _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_flaky")
    assert _event(db_session, "evt_flaky").status == ProcessorEventStatus.failed

    monkeypatch.setitem(reconciliation.HANDLERS, "invoice.paid", original)
    result = _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_flaky")

    assert result.outcome == WebhookOutcome.processed
    assert _event(db_session, "evt_flaky").status == ProcessorEventStatus.processed


@pytest.fixture()
def metered_subscription(db_session, ctx, customer, product_factory, feature, metered):
    product = product_factory(
        "basic", [fixed_config("10"), arrears_config(feature, "0.10")], entitlements=[metered]
    )
    return _attach(db_session, ctx, customer, product)


def _use(db, ctx, customer, feature, value, identifier):
    usage_service.record_metered_usage(
        db,
        ctx,
        str(customer.id),
        UsageRequest(feature_id=feature.id, value=Decimal(value), identifier=identifier),
    )


def test_cycle_invoice_paid_resets_balances(
    db_session, ctx, org, gateway, customer, feature, metered_subscription
):
    _use(db_session, ctx, customer, feature, "130", "u-1")
    obj = invoice_object(
        "in_cycle",
        metered_subscription.primary_subscription_id,
        billing_reason="subscription_cycle",
    )

    result = _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_cycle")

    assert result.outcome == WebhookOutcome.processed
    entitlement = metered_subscription.customer_entitlements[0]
    db_session.refresh(entitlement)
    assert entitlement.balance == Decimal("100")
    assert entitlement.metered_overage == Decimal("0")


def test_cycle_reset_carries_unmetered_overage(
    db_session, ctx, org, gateway, customer, feature, metered_subscription
):
    _use(db_session, ctx, customer, feature, "130", "u-1")
    entitlement = metered_subscription.customer_entitlements[0]
    customer_entitlements.deduct_usage(db_session, entitlement.id, Decimal("10"))
    obj = invoice_object(
        "in_cycle",
        metered_subscription.primary_subscription_id,
        billing_reason="subscription_cycle",
    )

    _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_cycle")

    db_session.refresh(entitlement)
    assert entitlement.balance == Decimal("90")
    assert entitlement.metered_overage == Decimal("0")


def test_non_cycle_invoice_paid_keeps_balances(
    db_session, ctx, org, gateway, customer, feature, metered_subscription
):
    _use(db_session, ctx, customer, feature, "130", "u-1")
    obj = invoice_object(
        "in_update",
        metered_subscription.primary_subscription_id,
        billing_reason="subscription_update",
    )

    _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_update")

    entitlement = metered_subscription.customer_entitlements[0]
    db_session.refresh(entitlement)
    assert entitlement.balance == Decimal("-30")
    assert entitlement.metered_overage == Decimal("30")


def test_replayed_cycle_invoice_resets_once(
    db_session, ctx, org, gateway, customer, feature, metered_subscription
):
    obj = invoice_object(
        "in_cycle",
        metered_subscription.primary_subscription_id,
        billing_reason="subscription_cycle",
    )
    _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_cycle")
    _use(db_session, ctx, customer, feature, "40", "u-2")

    again = _deliver(db_session, org, gateway, "invoice.paid", obj, event_id="evt_cycle_retry")

    assert again.outcome == WebhookOutcome.duplicate
    entitlement = metered_subscription.customer_entitlements[0]
    db_session.refresh(entitlement)
    assert entitlement.balance == Decimal("60")
