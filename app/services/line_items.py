"""Build processor line items from classified prices."""

from __future__ import annotations

from collections import OrderedDict

from app.errors import ConfigurationMissing
from app.models.catalog import Product
from app.schemas.pricing import BillingInterval
from app.services import pricing


def _processor_product_id(product: Product) -> str:
    if not product.processor_product_id:
        raise ConfigurationMissing(
            f"Product {product.product_key} is not provisioned with the payment processor"
        )
    return product.processor_product_id


def _metered_price_id(classified: pricing.UsageInArrearsPrice) -> str:
    if not classified.processor_price_id:
        raise ConfigurationMissing(
            f"Usage price {classified.price_id} has no metered processor price"
        )
    return classified.processor_price_id


def _price_data(product: Product, currency: str, unit_amount, interval=None) -> dict:
    data = {
        "currency": currency,
        "product": _processor_product_id(product),
        "unit_amount": pricing.to_minor_units(unit_amount),
    }
    if interval is not None and interval != BillingInterval.one_off:
        data["recurring"] = pricing.processor_recurring(interval)
    return data


def recurring_item(
    product: Product,
    classified: pricing.ClassifiedPrice,
    currency: str,
    quantity: int | None = None,
) -> dict | None:
    """One subscription item, or None when a prepaid quantity is zero."""
    metadata = {"price_id": classified.price_id}
    if isinstance(classified, pricing.UsageInArrearsPrice):
        return {"price": _metered_price_id(classified), "metadata": metadata}
    line = pricing.line_amount(classified, quantity)
    if line.quantity <= 0:
        return None
    return {
        "price_data": _price_data(product, currency, line.amount_per_unit, classified.interval),
        "quantity": line.quantity,
        "metadata": metadata,
    }


def items_by_interval(
    product: Product,
    classified_prices: list[pricing.ClassifiedPrice],
    currency: str,
    quantities: dict[str, int],
) -> "OrderedDict[BillingInterval, list[dict]]":
    """Group recurring items by billing interval, one group per subscription.

    Groups keep the order in which their first price appears.
    """
    groups: OrderedDict[BillingInterval, list[dict]] = OrderedDict()
    for classified in classified_prices:
        if isinstance(classified, pricing.OneOffPrice):
            continue
        item = recurring_item(
            product, classified, currency, quantities.get(getattr(classified, "feature_id", None))
        )
        if item is not None:
            groups.setdefault(classified.interval, []).append(item)
    return groups


def checkout_line_items(
    product: Product,
    classified_prices: list[pricing.ClassifiedPrice],
    currency: str,
    quantities: dict[str, int],
) -> list[dict]:
    items = []
    for classified in classified_prices:
        quantity = quantities.get(getattr(classified, "feature_id", None))
        if isinstance(classified, pricing.UsageInArrearsPrice):
            items.append({"price": _metered_price_id(classified)})
            continue
        line = pricing.line_amount(classified, quantity)
        if line.quantity <= 0:
            continue
        items.append(
            {
                "price_data": _price_data(
                    product, currency, line.amount_per_unit, classified.interval
                ),
                "quantity": line.quantity,
            }
        )
    return items


def one_off_invoice_items(
    product: Product,
    one_off_prices: list[pricing.OneOffPrice],
    currency: str,
    quantities: dict[str, int],
) -> list[dict]:
    """One-off charges added to the first invoice of a subscription."""
    items = []
    for classified in one_off_prices:
        line = pricing.line_amount(classified, quantities.get(classified.feature_id))
        if line.quantity <= 0 or line.total <= 0:
            continue
        items.append(
            {
                "price_data": _price_data(product, currency, line.amount_per_unit),
                "quantity": line.quantity,
            }
        )
    return items
