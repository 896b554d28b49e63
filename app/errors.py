from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for failures raised by the attach / reconciliation core."""

    code = "billing_error"
    status_code = 500
    default_message = "Billing operation failed"

    def __init__(self, message: str | None = None, *, details: object = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ConfigurationMissing(BillingError):
    """Organization or product is not provisioned with the payment processor."""

    code = "configuration_missing"
    status_code = 400
    default_message = "Payment processor is not configured"


class CardDeclined(BillingError):
    code = "card_declined"
    status_code = 402
    default_message = "Card was declined"

    def __init__(
        self,
        message: str | None = None,
        *,
        decline_code: str | None = None,
        details: object = None,
    ):
        super().__init__(message, details=details)
        self.decline_code = decline_code


class ProcessorUnavailable(BillingError):
    """Network failure, timeout, rate limit or 5xx from the processor. Retryable."""

    code = "processor_unavailable"
    status_code = 503
    default_message = "Payment processor is unavailable"


class ProcessorRequestRejected(BillingError):
    code = "processor_request_rejected"
    status_code = 400
    default_message = "Payment processor rejected the request"


class MissingRequiredOption(BillingError):
    code = "missing_required_option"
    status_code = 400
    default_message = "A required feature option was not supplied"


class InvalidAttachParams(BillingError):
    code = "invalid_attach_params"
    status_code = 400
    default_message = "Invalid attach parameters"


class PriceConfigError(BillingError):
    code = "invalid_price_config"
    status_code = 400
    default_message = "Invalid price config"


class ScheduledProductExists(BillingError):
    code = "scheduled_product_exists"
    status_code = 409
    default_message = "A scheduled product already exists in this group"


class ProductGroupConflict(BillingError):
    code = "product_group_conflict"
    status_code = 409
    default_message = "Product group state changed; retry the request"


class ConcurrentModification(BillingError):
    code = "concurrent_modification"
    status_code = 409
    default_message = "Another request is modifying this customer's products"


class InvalidStatusTransition(BillingError):
    code = "invalid_status_transition"
    status_code = 400
    default_message = "Invalid customer product status transition"


class OverageBillingFailed(BillingError):
    code = "overage_billing_failed"
    status_code = 402
    default_message = "Failed to pay invoice for remaining usage"


class InsufficientBalance(BillingError):
    code = "insufficient_balance"
    status_code = 409
    default_message = "Usage exceeds the remaining balance"


class LocalStateWriteFailed(BillingError):
    """Payment succeeded at the processor but the local write did not complete."""

    code = "local_state_write_failed"
    status_code = 500
    default_message = "Payment succeeded but local state could not be saved"


class WebhookSignatureInvalid(BillingError):
    code = "invalid_signature"
    status_code = 400
    default_message = "Invalid webhook signature"


class CustomerProductNotFound(BillingError):
    # Acknowledged to the processor so the event is not redelivered forever.
    code = "customer_product_not_found"
    status_code = 200
    default_message = "No active customer product for processor subscription"


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def _sanitize_input(value):
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, UploadFile):
        return value.filename or "upload"
    if isinstance(value, dict):
        return {key: _sanitize_input(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_input(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def register_error_handlers(app) -> None:
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        if exc.status_code >= 500:
            logger.error(
                "%s on %s %s: %s",
                exc.code,
                request.method,
                request.url.path,
                exc.message,
                extra={"request_id": _request_id(request)},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details, _request_id(request)),
        )

    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            if "input" in error_copy:
                error_copy["input"] = _sanitize_input(error_copy.get("input"))
            error_copy.pop("ctx", None)
            errors.append(error_copy)
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", errors, _request_id(request)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", None, _request_id(request)
            ),
        )
