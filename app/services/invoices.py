"""Mirror processor invoices into the local store.

Retrieval runs concurrently (gateway calls only); every retrieval is joined
and its result or failure collected, then the local inserts run in order on
the caller's session.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import BillingError
from app.metrics import INVOICE_MIRROR_FAILURES
from app.models.billing import Invoice
from app.models.customer_product import CustomerProduct
from app.services.entitlements import invoices as invoice_store
from app.services.processor import ProcessorInvoice

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    invoice_id: str
    invoice: ProcessorInvoice | None = None
    error: BillingError | None = None


@dataclass
class MirrorResult:
    invoice_id: str
    invoice: Invoice | None = None
    created: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fetch_invoices(gateway, invoice_ids: list[str]) -> list[FetchResult]:
    """Retrieve invoices in parallel; one result per id, in input order."""
    invoice_ids = list(dict.fromkeys(i for i in invoice_ids if i))
    if not invoice_ids:
        return []
    workers = max(1, min(settings.invoice_mirror_workers, len(invoice_ids)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="invoice-mirror") as pool:
        futures = [
            (invoice_id, pool.submit(gateway.retrieve_invoice, invoice_id))
            for invoice_id in invoice_ids
        ]
        results = []
        for invoice_id, future in futures:
            try:
                results.append(FetchResult(invoice_id, invoice=future.result()))
            except BillingError as exc:
                results.append(FetchResult(invoice_id, error=exc))
    return results


def mirror_invoices(
    db: Session,
    ctx,
    *,
    customer_id,
    invoice_ids: list[str],
    customer_products: list[CustomerProduct],
    schedule_retry: bool = True,
) -> list[MirrorResult]:
    """Mirror each invoice, isolating failures per invoice.

    Failed retrievals are logged and, unless ``schedule_retry`` is False,
    handed to the ``mirror_invoice`` background task.
    """
    results = []
    for fetched in fetch_invoices(ctx.gateway, invoice_ids):
        if fetched.error is not None:
            INVOICE_MIRROR_FAILURES.labels(stage="retrieve").inc()
            logger.warning(
                "Could not retrieve invoice %s for mirroring: %s",
                fetched.invoice_id,
                fetched.error.message,
            )
            if schedule_retry:
                schedule_mirror_retry(ctx, customer_id, fetched.invoice_id, customer_products)
            results.append(MirrorResult(fetched.invoice_id, error=fetched.error.message))
            continue
        invoice, created = invoice_store.insert_from_processor(
            db,
            customer_id=customer_id,
            processor_invoice=fetched.invoice,
            customer_products=customer_products,
        )
        results.append(MirrorResult(fetched.invoice_id, invoice=invoice, created=created))
    return results


def schedule_mirror_retry(ctx, customer_id, invoice_id: str, customer_products) -> None:
    from app.tasks.billing import mirror_invoice

    try:
        mirror_invoice.delay(
            str(ctx.org.id),
            ctx.env.value,
            str(customer_id),
            invoice_id,
            [str(cp.id) for cp in customer_products],
        )
    except Exception:
        INVOICE_MIRROR_FAILURES.labels(stage="enqueue").inc()
        logger.exception("Could not enqueue mirror retry for invoice %s", invoice_id)
