from app.models.billing import (  # noqa: F401
    Invoice,
    InvoiceCustomerProduct,
    InvoiceStatus,
    ProcessorEvent,
    ProcessorEventStatus,
)
from app.models.catalog import (  # noqa: F401
    AllowanceType,
    Entitlement,
    Feature,
    FreeTrial,
    Price,
    Product,
)
from app.models.customer_product import (  # noqa: F401
    CustomerEntitlement,
    CustomerPrice,
    CustomerProduct,
    CustomerProductStatus,
    CustomerProductSubscription,
    UsageRecord,
)
from app.models.locks import ResourceLock  # noqa: F401
from app.models.organization import AppEnv, Customer, Organization  # noqa: F401
