import uuid
from contextvars import ContextVar
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def _route_path(request: Request) -> str:
    # Label by route template so ids don't blow up metric cardinality.
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        token = request_id_var.set(request.state.request_id)
        start = perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            response.headers["X-Request-Id"] = request.state.request_id
            return response
        finally:
            duration = perf_counter() - start
            path = _route_path(request)
            REQUEST_COUNT.labels(request.method, path, status).inc()
            REQUEST_LATENCY.labels(request.method, path, status).observe(duration)
            if status.startswith("5"):
                REQUEST_ERRORS.labels(request.method, path, status).inc()
            request_id_var.reset(token)
