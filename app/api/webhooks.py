from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_db
from app.services import reconciliation

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe/{org_slug}/{env}")
async def stripe_webhook(
    org_slug: str,
    env: str,
    request: Request,
    stripe_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    payload = await request.body()
    # Locks and the session block; keep them off the event loop.
    result = await run_in_threadpool(
        reconciliation.handle_webhook, db, org_slug, env, payload, stripe_signature
    )
    return {
        "received": True,
        "event_id": result.event_id,
        "outcome": result.outcome.value,
        "error_code": result.error_code,
    }
