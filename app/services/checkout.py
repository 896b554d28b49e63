"""Hosted checkout fallback used when a direct charge is declined."""

from __future__ import annotations

import logging

from app.config import settings
from app.services import line_items
from app.services.processor import idempotency_key

logger = logging.getLogger(__name__)


def create_checkout_url(ctx, params, reason: str = "card_declined") -> str:
    """Return a hosted payment URL that completes ``params`` on success.

    The checkout session metadata names the customer and product so the
    completed payment can be matched back to this attach.
    """
    partition = params.partition
    mode = "payment" if partition.only_one_off else "subscription"
    items = line_items.checkout_line_items(
        params.product, params.classified, ctx.currency, params.quantities
    )
    url = ctx.gateway.create_checkout_session(
        customer_id=params.customer.processor_customer_id,
        mode=mode,
        line_items=items,
        success_url=ctx.org.success_url or settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
        metadata={
            "customer_id": str(params.customer.id),
            "product_id": str(params.product.id),
            "reason": reason,
        },
        idempotency_key=idempotency_key(*params.operation_key("checkout", reason)),
    )
    logger.info(
        "Checkout fallback (%s) for customer %s product %s",
        reason,
        params.customer.id,
        params.product.product_key,
    )
    return url
