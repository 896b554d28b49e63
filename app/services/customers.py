"""Customer read model and billing portal."""

import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ConfigurationMissing
from app.models.customer_product import CustomerProductStatus
from app.schemas.attach import CustomerProductRead
from app.schemas.customers import CustomerDetails, CustomerEntitlementRead, InvoiceRead
from app.services.attach_params import BillingContext, get_customer
from app.services.entitlements import LIVE_STATUSES, customer_products, invoices

logger = logging.getLogger(__name__)


class Customers:
    @staticmethod
    def details(db: Session, ctx: BillingContext, customer_id: str) -> CustomerDetails:
        customer = get_customer(db, ctx, customer_id)
        owned = customer_products.list_for_customer(db, customer.id)
        live = [cp for cp in owned if cp.status in LIVE_STATUSES]
        return CustomerDetails(
            id=customer.id,
            external_id=customer.external_id,
            name=customer.name,
            email=customer.email,
            main_products=[
                CustomerProductRead.model_validate(cp) for cp in live if not cp.is_add_on
            ],
            add_ons=[CustomerProductRead.model_validate(cp) for cp in live if cp.is_add_on],
            scheduled=[
                CustomerProductRead.model_validate(cp)
                for cp in owned
                if cp.status == CustomerProductStatus.scheduled
            ],
            entitlements=[
                CustomerEntitlementRead.model_validate(entitlement)
                for cp in live
                for entitlement in cp.customer_entitlements
            ],
            invoices=[
                InvoiceRead.model_validate(invoice)
                for invoice in invoices.list_for_customer(db, customer.id)
            ],
        )

    @staticmethod
    def billing_portal_url(
        db: Session, ctx: BillingContext, customer_id: str, return_url: str | None = None
    ) -> str:
        customer = get_customer(db, ctx, customer_id)
        if not customer.processor_customer_id:
            raise ConfigurationMissing("Customer has no payment processor account yet")
        url = ctx.gateway.create_billing_portal_session(
            customer_id=customer.processor_customer_id,
            return_url=return_url or ctx.org.success_url or settings.checkout_success_url,
        )
        logger.info("Opened billing portal for customer %s", customer.id)
        return url


customers = Customers()
