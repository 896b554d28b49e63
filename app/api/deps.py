from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.organization import AppEnv, Organization
from app.services.attach_params import BillingContext
from app.services.common import get_or_404
from app.services.processor import gateway_for


def get_billing_context(
    x_org_id: str = Header(...),
    x_env: str = Header(default=AppEnv.sandbox.value),
    db: Session = Depends(get_db),
) -> BillingContext:
    """Organization and environment set by the auth layer in front of this API.

    Returns a context with a processor gateway authenticated for that pair.
    """
    try:
        env = AppEnv(x_env)
    except ValueError:
        raise HTTPException(status_code=400, detail="Unknown environment")
    org = get_or_404(db, Organization, x_org_id, "Organization not found")
    return BillingContext(org=org, env=env, gateway=gateway_for(org, env))


__all__ = [
    "get_db",
    "get_billing_context",
]
