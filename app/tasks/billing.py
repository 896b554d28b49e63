"""Deferred invoice mirroring."""

import logging
from time import monotonic

from app.celery_app import celery_app
from app.db import SessionLocal
from app.errors import ProcessorUnavailable
from app.metrics import INVOICE_MIRROR_FAILURES, observe_job
from app.models.customer_product import CustomerProduct
from app.models.organization import AppEnv, Organization
from app.services.attach_params import BillingContext
from app.services.common import coerce_uuid
from app.services.invoices import mirror_invoices
from app.services.processor import gateway_for

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.tasks.billing.mirror_invoice",
    bind=True,
    max_retries=8,
    autoretry_for=(ProcessorUnavailable,),
    retry_backoff=True,
    retry_backoff_max=3600,
)
def mirror_invoice(
    self,
    org_id: str,
    env: str,
    customer_id: str,
    invoice_id: str,
    customer_product_ids: list[str],
):
    """Retry mirroring one processor invoice that failed during attach/upgrade."""
    start = monotonic()
    status = "success"
    session = SessionLocal()
    try:
        org = session.get(Organization, coerce_uuid(org_id))
        if not org:
            logger.error("Organization %s not found; dropping mirror of %s", org_id, invoice_id)
            status = "skipped"
            return
        ctx = BillingContext(org=org, env=AppEnv(env), gateway=gateway_for(org, AppEnv(env)))
        linked = (
            session.query(CustomerProduct)
            .filter(CustomerProduct.id.in_([coerce_uuid(cp_id) for cp_id in customer_product_ids]))
            .all()
            if customer_product_ids
            else []
        )
        results = mirror_invoices(
            session,
            ctx,
            customer_id=customer_id,
            invoice_ids=[invoice_id],
            customer_products=linked,
            schedule_retry=False,
        )
        failed = [result for result in results if not result.ok]
        if failed:
            raise ProcessorUnavailable(failed[0].error)
        session.commit()
        logger.info("Mirrored invoice %s on retry %s", invoice_id, self.request.retries)
    except Exception:
        status = "error"
        session.rollback()
        INVOICE_MIRROR_FAILURES.labels(stage="retry").inc()
        raise
    finally:
        session.close()
        observe_job("mirror_invoice", status, monotonic() - start)
