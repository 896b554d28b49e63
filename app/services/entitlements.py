"""Entitlement store: customer products, usage balances and mirrored invoices.

Status changes and balance changes are single UPDATE statements guarded by
their precondition, so a concurrent webhook and request cannot lose each
other's writes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import InsufficientBalance, InvalidStatusTransition
from app.models.billing import Invoice, InvoiceCustomerProduct, InvoiceStatus
from app.models.catalog import AllowanceType, Entitlement, Price, Product
from app.models.customer_product import (
    CustomerEntitlement,
    CustomerPrice,
    CustomerProduct,
    CustomerProductStatus,
    CustomerProductSubscription,
    UsageRecord,
)
from app.models.organization import AppEnv, Customer
from app.services import pricing
from app.services.common import coerce_uuid, get_or_404, utcnow
from app.services.processor import ProcessorInvoice

logger = logging.getLogger(__name__)

# Statuses that count as the group's current product.
LIVE_STATUSES = (CustomerProductStatus.active, CustomerProductStatus.past_due)

# target status -> statuses it may be entered from
ALLOWED_FROM = {
    CustomerProductStatus.active: (CustomerProductStatus.scheduled, CustomerProductStatus.past_due),
    CustomerProductStatus.past_due: (CustomerProductStatus.active, CustomerProductStatus.scheduled),
    CustomerProductStatus.expired: (
        CustomerProductStatus.scheduled,
        CustomerProductStatus.active,
        CustomerProductStatus.past_due,
    ),
}


@dataclass(frozen=True)
class SubscriptionRef:
    processor_subscription_id: str
    interval: str | None = None


class CustomerProducts:
    @staticmethod
    def get(db: Session, customer_product_id: str) -> CustomerProduct:
        return get_or_404(db, CustomerProduct, customer_product_id, "Customer product not found")

    @staticmethod
    def _group_query(db: Session, customer_id, group: str):
        return (
            db.query(CustomerProduct)
            .filter(CustomerProduct.customer_id == coerce_uuid(customer_id))
            .filter(CustomerProduct.product_group == group)
            .filter(CustomerProduct.is_add_on.is_(False))
        )

    @staticmethod
    def get_active_by_group(db: Session, customer_id, group: str) -> CustomerProduct | None:
        return (
            CustomerProducts._group_query(db, customer_id, group)
            .filter(CustomerProduct.status.in_(LIVE_STATUSES))
            .order_by(CustomerProduct.created_at.desc())
            .first()
        )

    @staticmethod
    def get_scheduled_by_group(db: Session, customer_id, group: str) -> CustomerProduct | None:
        return (
            CustomerProducts._group_query(db, customer_id, group)
            .filter(CustomerProduct.status == CustomerProductStatus.scheduled)
            .order_by(CustomerProduct.created_at.desc())
            .first()
        )

    @staticmethod
    def list_for_customer(db: Session, customer_id, include_expired: bool = False):
        query = db.query(CustomerProduct).filter(
            CustomerProduct.customer_id == coerce_uuid(customer_id)
        )
        if not include_expired:
            query = query.filter(CustomerProduct.status != CustomerProductStatus.expired)
        return query.order_by(CustomerProduct.created_at).all()

    @staticmethod
    def list_by_subscription_id(
        db: Session, subscription_id: str, statuses=LIVE_STATUSES
    ) -> list[CustomerProduct]:
        return (
            db.query(CustomerProduct)
            .join(
                CustomerProductSubscription,
                CustomerProductSubscription.customer_product_id == CustomerProduct.id,
            )
            .filter(CustomerProductSubscription.processor_subscription_id == subscription_id)
            .filter(CustomerProduct.status.in_(statuses))
            .order_by(CustomerProduct.created_at)
            .all()
        )

    @staticmethod
    def create(
        db: Session,
        *,
        customer: Customer,
        product: Product,
        env: AppEnv,
        prices: list[Price],
        entitlements: list[Entitlement],
        status: CustomerProductStatus = CustomerProductStatus.active,
        quantities: dict[str, int] | None = None,
        subscriptions: list[SubscriptionRef] | None = None,
        free_trial_id=None,
        trial_ends_at: datetime | None = None,
        starts_at: datetime | None = None,
        next_reset_at: datetime | None = None,
        bill_later_only: bool = False,
        last_invoice_id: str | None = None,
    ) -> CustomerProduct:
        """Insert a customer product with its prices, balances and subscriptions.

        Flushes but does not commit; the caller owns the transaction.
        """
        quantities = quantities or {}
        customer_product = CustomerProduct(
            customer_id=customer.id,
            product_id=product.id,
            org_id=customer.org_id,
            env=env,
            product_group=product.group or "",
            is_add_on=bool(product.is_add_on),
            status=status,
            options=[
                {"feature_id": feature_id, "quantity": quantity}
                for feature_id, quantity in quantities.items()
            ],
            free_trial_id=free_trial_id,
            trial_ends_at=trial_ends_at,
            starts_at=starts_at or utcnow(),
            next_reset_at=next_reset_at,
            bill_later_only=bill_later_only,
            last_invoice_id=last_invoice_id,
        )
        for position, ref in enumerate(subscriptions or []):
            customer_product.subscriptions.append(
                CustomerProductSubscription(
                    processor_subscription_id=ref.processor_subscription_id,
                    position=position,
                    interval=ref.interval,
                )
            )
        for price in prices:
            customer_product.customer_prices.append(CustomerPrice(price_id=price.id))

        classified = [pricing.classify(price) for price in prices]
        for entitlement in entitlements:
            customer_product.customer_entitlements.append(
                _initial_entitlement(customer, entitlement, classified, quantities, next_reset_at)
            )
        db.add(customer_product)
        db.flush()
        logger.info(
            "Created customer product %s (%s) for customer %s product %s",
            customer_product.id,
            status.value,
            customer.id,
            product.product_key,
        )
        return customer_product

    @staticmethod
    def update_status(
        db: Session,
        customer_product_id,
        status: CustomerProductStatus,
        **values,
    ) -> None:
        """Move a customer product to ``status`` in one guarded UPDATE.

        Raises:
            InvalidStatusTransition: if the row is not in a status ``status``
                may be entered from.
        """
        allowed = ALLOWED_FROM[status]
        result = db.execute(
            update(CustomerProduct)
            .where(CustomerProduct.id == coerce_uuid(customer_product_id))
            .where(CustomerProduct.status.in_(allowed))
            .values(status=status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise InvalidStatusTransition(
                f"Customer product {customer_product_id} cannot move to {status.value}"
            )
        logger.info("Customer product %s -> %s", customer_product_id, status.value)

    @staticmethod
    def expire(db: Session, customer_product: CustomerProduct, detach_subscriptions: bool = False):
        CustomerProducts.update_status(
            db, customer_product.id, CustomerProductStatus.expired, ended_at=utcnow()
        )
        if detach_subscriptions:
            db.execute(
                delete(CustomerProductSubscription).where(
                    CustomerProductSubscription.customer_product_id == customer_product.id
                )
            )
        db.flush()
        db.refresh(customer_product)

    @staticmethod
    def activate(db: Session, customer_product: CustomerProduct, **values):
        CustomerProducts.update_status(
            db, customer_product.id, CustomerProductStatus.active, **values
        )
        db.flush()
        db.refresh(customer_product)

    @staticmethod
    def add_subscriptions(
        db: Session, customer_product: CustomerProduct, refs: list[SubscriptionRef]
    ) -> None:
        start = len(customer_product.subscriptions)
        for offset, ref in enumerate(refs):
            customer_product.subscriptions.append(
                CustomerProductSubscription(
                    processor_subscription_id=ref.processor_subscription_id,
                    position=start + offset,
                    interval=ref.interval,
                )
            )
        db.flush()

    @staticmethod
    def remove_subscriptions(
        db: Session, customer_product: CustomerProduct, subscription_ids: list[str]
    ) -> None:
        if not subscription_ids:
            return
        db.execute(
            delete(CustomerProductSubscription)
            .where(CustomerProductSubscription.customer_product_id == customer_product.id)
            .where(CustomerProductSubscription.processor_subscription_id.in_(subscription_ids))
        )
        db.flush()
        db.refresh(customer_product)

    @staticmethod
    def delete_scheduled(db: Session, customer_product: CustomerProduct) -> None:
        locked = (
            db.query(CustomerProduct)
            .filter(CustomerProduct.id == customer_product.id)
            .with_for_update()
            .first()
        )
        if not locked or locked.status != CustomerProductStatus.scheduled:
            raise InvalidStatusTransition("Only scheduled customer products can be removed")
        db.delete(locked)
        db.flush()
        logger.info("Removed scheduled customer product %s", customer_product.id)

    @staticmethod
    def set_pending_cancellation(db: Session, customer_product_id, canceled_at: datetime | None):
        db.execute(
            update(CustomerProduct)
            .where(CustomerProduct.id == coerce_uuid(customer_product_id))
            .values(canceled_at=canceled_at, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )


_UNMETERED_RAW = -CustomerEntitlement.balance - func.coalesce(CustomerEntitlement.metered_overage, 0)
_UNMETERED_SQL = case((_UNMETERED_RAW > 0, _UNMETERED_RAW), else_=0)


def unmetered_overage(entitlement: CustomerEntitlement) -> Decimal:
    """Overage on ``entitlement`` that no processor meter has been told about."""
    if entitlement.balance is None:
        return Decimal("0")
    metered = entitlement.metered_overage or Decimal("0")
    return max(Decimal("0"), -entitlement.balance - metered)


def _starting_balance(
    entitlement: Entitlement, classified: list, quantities: dict[str, int]
) -> Decimal | None:
    """Balance at the start of a billing period; None when unlimited."""
    feature_id = str(entitlement.feature_id)
    prepaid = next(
        (
            price
            for price in classified
            if isinstance(price, pricing.UsageInAdvancePrice) and price.feature_id == feature_id
        ),
        None,
    )
    if entitlement.allowance_type == AllowanceType.unlimited:
        return None
    if prepaid is not None:
        return Decimal(quantities.get(feature_id, 0) * prepaid.billing_units)
    if entitlement.allowance_type == AllowanceType.fixed:
        return Decimal(entitlement.allowance or 0)
    return Decimal("0")


def _initial_entitlement(
    customer: Customer,
    entitlement: Entitlement,
    classified: list,
    quantities: dict[str, int],
    next_reset_at: datetime | None,
) -> CustomerEntitlement:
    feature_id = str(entitlement.feature_id)
    usage_allowed = any(
        isinstance(price, pricing.UsageInArrearsPrice) and price.feature_id == feature_id
        for price in classified
    )
    unlimited = entitlement.allowance_type == AllowanceType.unlimited
    balance = _starting_balance(entitlement, classified, quantities)
    return CustomerEntitlement(
        customer_id=customer.id,
        entitlement_id=entitlement.id,
        feature_id=entitlement.feature_id,
        unlimited=unlimited,
        balance=balance,
        usage_allowed=usage_allowed,
        metered_overage=Decimal("0"),
        next_reset_at=next_reset_at,
    )


class CustomerEntitlements:
    @staticmethod
    def get(db: Session, customer_entitlement_id) -> CustomerEntitlement:
        return get_or_404(
            db, CustomerEntitlement, customer_entitlement_id, "Customer entitlement not found"
        )

    @staticmethod
    def list_negative_overage(db: Session, customer_product_id) -> list[CustomerEntitlement]:
        return (
            db.query(CustomerEntitlement)
            .filter(CustomerEntitlement.customer_product_id == coerce_uuid(customer_product_id))
            .filter(CustomerEntitlement.usage_allowed.is_(True))
            .filter(CustomerEntitlement.balance < 0)
            .all()
        )

    @staticmethod
    def _deduct(
        db: Session, entitlement: CustomerEntitlement, amount: Decimal, metered: Decimal
    ) -> None:
        if entitlement.unlimited:
            return
        result = db.execute(
            update(CustomerEntitlement)
            .where(CustomerEntitlement.id == entitlement.id)
            .where(
                or_(
                    CustomerEntitlement.usage_allowed.is_(True),
                    CustomerEntitlement.balance >= amount,
                )
            )
            .values(
                balance=CustomerEntitlement.balance - amount,
                metered_overage=func.coalesce(CustomerEntitlement.metered_overage, 0) + metered,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise InsufficientBalance(
                f"Usage of {amount} exceeds the remaining balance for feature {entitlement.feature_id}"
            )

    @staticmethod
    def deduct_usage(
        db: Session, customer_entitlement_id, amount: Decimal | int, metered: Decimal | int = 0
    ) -> None:
        """Decrement a balance; it may only go negative when overage is allowed.

        ``metered`` is the part of the resulting overage already reported to
        the processor meter.

        Raises:
            InsufficientBalance: if the deduction would exceed a capped balance.
        """
        entitlement = CustomerEntitlements.get(db, customer_entitlement_id)
        CustomerEntitlements._deduct(
            db, entitlement, Decimal(str(amount)), Decimal(str(metered))
        )
        db.commit()

    @staticmethod
    def get_usage_record(db: Session, customer_id, feature_id, identifier: str) -> UsageRecord | None:
        return (
            db.query(UsageRecord)
            .filter(UsageRecord.customer_id == coerce_uuid(customer_id))
            .filter(UsageRecord.feature_id == coerce_uuid(feature_id))
            .filter(UsageRecord.identifier == identifier)
            .first()
        )

    @staticmethod
    def record_usage(
        db: Session,
        entitlement: CustomerEntitlement,
        identifier: str,
        amount: Decimal,
        metered: Decimal = Decimal("0"),
    ) -> bool:
        """Deduct one identified usage report; returns False for a replay.

        Raises:
            InsufficientBalance: if the deduction would exceed a capped balance.
        """
        try:
            with db.begin_nested():
                db.add(
                    UsageRecord(
                        customer_id=entitlement.customer_id,
                        feature_id=entitlement.feature_id,
                        customer_entitlement_id=entitlement.id,
                        identifier=identifier,
                        value=amount,
                        metered=metered,
                    )
                )
                db.flush()
        except IntegrityError:
            return False
        try:
            CustomerEntitlements._deduct(db, entitlement, amount, metered)
        except InsufficientBalance:
            db.rollback()
            raise
        db.commit()
        return True

    @staticmethod
    def settle_unmetered_overage(db: Session, customer_entitlement_id) -> None:
        """Clear invoiced overage, keeping the part the processor meter bills."""
        db.execute(
            update(CustomerEntitlement)
            .where(CustomerEntitlement.id == coerce_uuid(customer_entitlement_id))
            .values(
                balance=-func.coalesce(CustomerEntitlement.metered_overage, 0),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )

    @staticmethod
    def reset_for_cycle(
        db: Session, customer_product: CustomerProduct, next_reset_at: datetime | None = None
    ) -> int:
        """Start a new billing period after the processor billed the last one.

        Metered overage was on the cycle invoice and is dropped; overage the
        meter never saw is carried so a later upgrade still invoices it.
        Returns the number of balances reset.
        """
        classified = [pricing.classify(cp.price) for cp in customer_product.customer_prices]
        quantities = {
            str(option.get("feature_id")): int(option.get("quantity") or 0)
            for option in (customer_product.options or [])
        }
        reset = 0
        for customer_entitlement in customer_product.customer_entitlements:
            if customer_entitlement.unlimited:
                continue
            start = _starting_balance(customer_entitlement.entitlement, classified, quantities)
            values = {
                # Evaluated in the UPDATE so concurrent deductions are not lost.
                "balance": (start or Decimal("0")) - _UNMETERED_SQL,
                "metered_overage": Decimal("0"),
                "updated_at": utcnow(),
            }
            if next_reset_at is not None:
                values["next_reset_at"] = next_reset_at
            db.execute(
                update(CustomerEntitlement)
                .where(CustomerEntitlement.id == customer_entitlement.id)
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
            reset += 1
        return reset


class Invoices:
    @staticmethod
    def get_by_processor_id(db: Session, processor_invoice_id: str) -> Invoice | None:
        return db.scalars(
            select(Invoice).where(Invoice.processor_invoice_id == processor_invoice_id)
        ).first()

    @staticmethod
    def list_for_customer(db: Session, customer_id) -> list[Invoice]:
        return (
            db.query(Invoice)
            .filter(Invoice.customer_id == coerce_uuid(customer_id))
            .order_by(Invoice.created_at.desc())
            .all()
        )

    @staticmethod
    def insert_from_processor(
        db: Session,
        *,
        customer_id,
        processor_invoice: ProcessorInvoice,
        customer_products: list[CustomerProduct],
    ) -> tuple[Invoice, bool]:
        """Mirror a processor invoice; returns ``(invoice, created)``.

        A second insert for the same processor invoice id returns the existing
        row (and links any customer products it is missing).
        """
        existing = Invoices.get_by_processor_id(db, processor_invoice.id)
        if existing:
            Invoices._link(db, existing, customer_products)
            return existing, False
        invoice = Invoice(
            customer_id=coerce_uuid(customer_id),
            processor_invoice_id=processor_invoice.id,
            processor_subscription_id=processor_invoice.subscription_id,
            status=_invoice_status(processor_invoice.status),
            currency=processor_invoice.currency,
            total=processor_invoice.total,
            hosted_invoice_url=processor_invoice.hosted_invoice_url,
            product_ids=sorted({str(cp.product_id) for cp in customer_products}),
        )
        try:
            with db.begin_nested():
                db.add(invoice)
                db.flush()
        except IntegrityError:
            # Lost the race with a concurrent insert of the same invoice.
            existing = Invoices.get_by_processor_id(db, processor_invoice.id)
            if existing is None:
                raise
            Invoices._link(db, existing, customer_products)
            return existing, False
        Invoices._link(db, invoice, customer_products)
        logger.info(
            "Mirrored processor invoice %s (%s %s)",
            processor_invoice.id,
            processor_invoice.total,
            processor_invoice.currency,
        )
        return invoice, True

    @staticmethod
    def _link(db: Session, invoice: Invoice, customer_products: list[CustomerProduct]) -> None:
        linked = {link.customer_product_id for link in invoice.customer_product_links}
        for customer_product in customer_products:
            if customer_product.id not in linked:
                invoice.customer_product_links.append(
                    InvoiceCustomerProduct(customer_product_id=customer_product.id)
                )
                linked.add(customer_product.id)
        db.flush()

    @staticmethod
    def update_status(db: Session, invoice: Invoice, status: str) -> None:
        invoice.status = _invoice_status(status)
        db.flush()


def _invoice_status(value: str) -> InvoiceStatus:
    try:
        return InvoiceStatus(value)
    except ValueError:
        return InvoiceStatus.open


customer_products = CustomerProducts()
customer_entitlements = CustomerEntitlements()
invoices = Invoices()
