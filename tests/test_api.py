import uuid

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_billing_context
from app.db import get_db
from app.main import app
from app.models.organization import Organization
from app.services import reconciliation
from tests.mocks import (
    WEBHOOK_SECRET,
    arrears_config,
    fixed_config,
    invoice_object,
    prepaid_config,
    signed_event,
)


@pytest.fixture()
def client(db_session, ctx):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_billing_context] = lambda: ctx
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers(org):
    return {"X-Org-Id": str(org.id), "X-Env": "sandbox"}


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_attach_endpoint(client, org, customer, product_factory):
    product = product_factory("basic", [fixed_config("10")])

    response = client.post(
        f"/api/v1/customers/{customer.id}/attach",
        json={"product_id": str(product.id)},
        headers=_headers(org),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "attached"
    assert body["transition"] == "new"
    assert body["customer_product"]["status"] == "active"
    assert len(body["invoice_ids"]) == 1
    assert response.headers["X-Request-Id"]


def test_attach_decline_returns_checkout(client, org, gateway, customer, product_factory):
    product = product_factory("basic", [fixed_config("10")])
    gateway.decline.add("create_subscription")

    response = client.post(
        f"/api/v1/customers/{customer.id}/attach",
        json={"product_id": str(product.id)},
        headers=_headers(org),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "checkout_required"
    assert body["checkout_url"] == "https://checkout.test/basic"
    assert body["customer_product"] is None


def test_attach_missing_option_is_bad_request(client, org, customer, product_factory, feature):
    product = product_factory("seats", [prepaid_config(feature, "4")])

    response = client.post(
        f"/api/v1/customers/{customer.id}/attach",
        json={"product_id": str(product.id)},
        headers=_headers(org),
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "missing_required_option"
    assert body["details"] == {"feature_id": str(feature.id)}


def test_attach_unknown_customer_is_not_found(client, org, product_factory):
    product = product_factory("basic")

    response = client.post(
        f"/api/v1/customers/{uuid.uuid4()}/attach",
        json={"product_id": str(product.id)},
        headers=_headers(org),
    )

    assert response.status_code == 404


def test_usage_endpoint(client, org, customer, product_factory, feature, metered):
    product = product_factory(
        "basic", [fixed_config("10"), arrears_config(feature, "0.10")], entitlements=[metered]
    )
    client.post(
        f"/api/v1/customers/{customer.id}/attach",
        json={"product_id": str(product.id)},
        headers=_headers(org),
    )

    response = client.post(
        f"/api/v1/customers/{customer.id}/usage",
        json={"feature_id": str(feature.id), "value": "120", "identifier": "usage-1"},
        headers=_headers(org),
    )

    assert response.status_code == 200
    body = response.json()
    assert float(body["balance"]) == -20
    assert float(body["overage_reported"]) == 20


def test_customer_details_endpoint(client, org, customer, product_factory):
    product = product_factory("basic")
    client.post(
        f"/api/v1/customers/{customer.id}/attach",
        json={"product_id": str(product.id)},
        headers=_headers(org),
    )

    response = client.get(f"/api/v1/customers/{customer.id}", headers=_headers(org))

    assert response.status_code == 200
    body = response.json()
    assert body["external_id"] == customer.external_id
    assert [cp["product_id"] for cp in body["main_products"]] == [str(product.id)]
    assert len(body["invoices"]) == 1


def test_customer_product_status_endpoint(client, org, customer, product_factory):
    pro = product_factory("pro", [fixed_config("50")])
    basic = product_factory("basic", [fixed_config("10")])
    client.post(
        f"/api/v1/customers/{customer.id}/attach",
        json={"product_id": str(pro.id)},
        headers=_headers(org),
    )
    scheduled = client.post(
        f"/api/v1/customers/{customer.id}/attach",
        json={"product_id": str(basic.id)},
        headers=_headers(org),
    ).json()["customer_product"]

    response = client.post(
        f"/api/v1/customer-products/{scheduled['id']}",
        json={"status": "expired"},
        headers=_headers(org),
    )

    assert response.status_code == 200
    assert response.json()["action"] == "removed_scheduled"


def test_missing_processor_key_is_configuration_error(db_session):
    org = Organization(slug="unprovisioned", name="Unprovisioned")
    db_session.add(org)
    db_session.commit()

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        with TestClient(app) as test_client:
            response = test_client.get(
                f"/api/v1/customers/{uuid.uuid4()}", headers=_headers(org)
            )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 400
    assert response.json()["code"] == "configuration_missing"


def test_webhook_rejects_bad_signature(client, org):
    payload, signature = signed_event("invoice.paid", {"id": "in_1"}, "whsec_wrong")

    response = client.post(
        f"/webhooks/stripe/{org.slug}/sandbox",
        content=payload,
        headers={"Stripe-Signature": signature},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_signature"


def test_webhook_processes_renewal(client, org, gateway, customer, product_factory, monkeypatch):
    monkeypatch.setattr(reconciliation, "gateway_for", lambda _org, _env: gateway)
    product = product_factory("basic")
    attached = client.post(
        f"/api/v1/customers/{customer.id}/attach",
        json={"product_id": str(product.id)},
        headers=_headers(org),
    ).json()
    subscription_id = attached["customer_product"]["subscriptions"][0]["processor_subscription_id"]
    payload, signature = signed_event(
        "invoice.paid", invoice_object("in_renewal", subscription_id), WEBHOOK_SECRET, "evt_api"
    )

    response = client.post(
        f"/webhooks/stripe/{org.slug}/sandbox",
        content=payload,
        headers={"Stripe-Signature": signature},
    )

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "event_id": "evt_api",
        "outcome": "processed",
        "error_code": None,
    }
