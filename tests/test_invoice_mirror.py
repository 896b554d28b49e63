from app.models.billing import Invoice
from app.models.organization import AppEnv
from app.schemas.attach import AttachRequest
from app.services import checkout
from app.services.attach_params import BillingContext, resolve_attach_params
from app.services.entitlements import SubscriptionRef, customer_products
from app.services.invoices import fetch_invoices, mirror_invoices
from app.services.processor import StripeGateway
from tests.mocks import FakeStripeClient, FakeStripeResource, fixed_config, one_off_config


def _customer_product(db, customer, product):
    record = customer_products.create(
        db,
        customer=customer,
        product=product,
        env=AppEnv.sandbox,
        prices=list(product.prices),
        entitlements=[],
        subscriptions=[SubscriptionRef("sub_1", "month")],
    )
    db.commit()
    return record


def test_fetch_invoices_keeps_order_and_collects_failures(gateway):
    first = gateway.create_invoice(customer_id="cus_1", currency="usd").id
    second = gateway.create_invoice(customer_id="cus_1", currency="usd").id
    gateway.failing_invoice_retrievals.add(first)

    results = fetch_invoices(gateway, [first, second, first, None])

    assert [result.invoice_id for result in results] == [first, second]
    assert results[0].error is not None
    assert results[1].invoice.id == second


def test_mirror_isolates_failed_retrieval(
    db_session, ctx, gateway, customer, product_factory, mirror_retries
):
    record = _customer_product(db_session, customer, product_factory("basic"))
    good = gateway.create_invoice(customer_id="cus_1", currency="usd").id
    bad = gateway.create_invoice(customer_id="cus_1", currency="usd").id
    gateway.failing_invoice_retrievals.add(bad)

    results = mirror_invoices(
        db_session,
        ctx,
        customer_id=customer.id,
        invoice_ids=[bad, good],
        customer_products=[record],
    )
    db_session.commit()

    assert [result.ok for result in results] == [False, True]
    assert results[1].created
    assert mirror_retries == [bad]
    stored = db_session.query(Invoice).one()
    assert stored.processor_invoice_id == good
    assert stored.product_ids == [str(record.product_id)]


def test_mirror_without_retry_does_not_schedule(
    db_session, ctx, gateway, customer, product_factory, mirror_retries
):
    record = _customer_product(db_session, customer, product_factory("basic"))
    bad = gateway.create_invoice(customer_id="cus_1", currency="usd").id
    gateway.failing_invoice_retrievals.add(bad)

    results = mirror_invoices(
        db_session,
        ctx,
        customer_id=customer.id,
        invoice_ids=[bad],
        customer_products=[record],
        schedule_retry=False,
    )

    assert not results[0].ok
    assert mirror_retries == []


def _checkout_context(org):
    sessions = FakeStripeResource(result={"url": "https://checkout.stripe.test/cs_1"})
    gateway = StripeGateway(FakeStripeClient(checkout_sessions=sessions))
    return BillingContext(org=org, env=AppEnv.sandbox, gateway=gateway), sessions


def test_checkout_for_recurring_product_uses_subscription_mode(db_session, org, customer, product_factory):
    ctx, sessions = _checkout_context(org)
    product = product_factory("basic", [fixed_config("10")])
    params = resolve_attach_params(db_session, ctx, str(customer.id), AttachRequest(product_id=product.id))

    url = checkout.create_checkout_url(ctx, params)

    assert url == "https://checkout.stripe.test/cs_1"
    request = sessions.calls[0][2]["params"]
    assert request["mode"] == "subscription"
    assert request["success_url"] == "https://acme.test/billing"
    assert request["metadata"]["reason"] == "card_declined"
    assert request["line_items"][0]["quantity"] == 1
    assert request["line_items"][0]["price_data"]["unit_amount"] == 1000


def test_checkout_for_one_off_product_uses_payment_mode(db_session, org, customer, product_factory):
    ctx, sessions = _checkout_context(org)
    product = product_factory("setup", [one_off_config("25")])
    params = resolve_attach_params(db_session, ctx, str(customer.id), AttachRequest(product_id=product.id))

    checkout.create_checkout_url(ctx, params, reason="processor_unavailable")

    request = sessions.calls[0][2]["params"]
    assert request["mode"] == "payment"
    assert request["metadata"]["reason"] == "processor_unavailable"
