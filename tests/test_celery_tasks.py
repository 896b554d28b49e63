"""Tests for Celery tasks."""

import uuid
from unittest.mock import patch

import pytest

from app.errors import ProcessorUnavailable
from app.models.billing import Invoice
from app.models.organization import AppEnv
from app.services.entitlements import SubscriptionRef, customer_products


# =============================================================================
# Invoice Mirror Task Tests
# =============================================================================


@pytest.fixture()
def linked_product(db_session, customer, product_factory):
    product = product_factory("basic")
    record = customer_products.create(
        db_session,
        customer=customer,
        product=product,
        env=AppEnv.sandbox,
        prices=list(product.prices),
        entitlements=[],
        subscriptions=[SubscriptionRef("sub_1", "month")],
    )
    db_session.commit()
    return record


class TestMirrorInvoiceTask:
    """Tests for billing.mirror_invoice task."""

    def _run(self, db_session, gateway, *args):
        from app.tasks.billing import mirror_invoice

        with patch("app.tasks.billing.SessionLocal", return_value=db_session), patch(
            "app.tasks.billing.gateway_for", return_value=gateway
        ), patch.object(db_session, "close"):
            return mirror_invoice(*args)

    def test_mirror_invoice_success(self, db_session, org, customer, gateway, linked_product):
        """Test a retried invoice is stored and linked."""
        invoice_id = gateway.create_invoice(customer_id="cus_1", currency="usd").id

        self._run(
            db_session,
            gateway,
            str(org.id),
            "sandbox",
            str(customer.id),
            invoice_id,
            [str(linked_product.id)],
        )

        stored = db_session.query(Invoice).one()
        assert stored.processor_invoice_id == invoice_id
        assert [link.customer_product_id for link in stored.customer_product_links] == [
            linked_product.id
        ]

    def test_mirror_invoice_retrieval_failure_raises(
        self, db_session, org, customer, gateway, linked_product
    ):
        """Test a failed retrieval surfaces for Celery's autoretry."""
        invoice_id = gateway.create_invoice(customer_id="cus_1", currency="usd").id
        gateway.failing_invoice_retrievals.add(invoice_id)

        with pytest.raises(ProcessorUnavailable):
            self._run(
                db_session,
                gateway,
                str(org.id),
                "sandbox",
                str(customer.id),
                invoice_id,
                [str(linked_product.id)],
            )

        assert db_session.query(Invoice).count() == 0

    def test_mirror_invoice_unknown_org_is_skipped(self, db_session, gateway):
        """Test an unknown organization drops the retry."""
        self._run(db_session, gateway, str(uuid.uuid4()), "sandbox", str(uuid.uuid4()), "in_1", [])

        assert gateway.calls == []


# =============================================================================
# Celery Config Tests
# =============================================================================


class TestCeleryConfig:
    def test_config_uses_json_and_late_acks(self):
        from app.celery_app import get_celery_config

        config = get_celery_config()

        assert config["task_serializer"] == "json"
        assert config["accept_content"] == ["json"]
        assert config["task_acks_late"] is True

    def test_mirror_task_is_registered(self):
        from app.celery_app import celery_app
        from app.tasks import mirror_invoice

        assert mirror_invoice.name in celery_app.tasks
