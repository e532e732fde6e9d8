"""
Error taxonomy for the settlement engine.

Every failure a caller can act on is an ``ApiError`` with a stable snake_case
code. Routes never build error bodies themselves; the handlers registered in
``install_error_handlers`` render ``{success: false, error, message, details}``.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# Validation

class ValidationFailed(ApiError):
    code = "invalid_request"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request is invalid"


class UnsupportedGateway(ValidationFailed):
    code = "unsupported_gateway"
    default_message = "Payment gateway is not supported"


# Authorization

class Unauthenticated(ApiError):
    code = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authenticated"


class SignatureVerificationFailed(ApiError):
    code = "signature_verification_failed"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Webhook signature verification failed"


class Unauthorized(ApiError):
    code = "unauthorized"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized for this tenant"


# Not found

class NotFound(ApiError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class TenantNotFound(NotFound):
    code = "tenant_not_found"
    default_message = "Tenant not found"


class OrderNotFound(NotFound):
    code = "order_not_found"
    default_message = "Order not found"


class PaymentNotFound(NotFound):
    code = "payment_not_found"
    default_message = "Payment not found"


class RefundNotFound(NotFound):
    code = "refund_not_found"
    default_message = "Refund not found"


# Conflicts

class Conflict(ApiError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Request conflicts with the current state"


class AlreadyCaptured(Conflict):
    code = "already_captured"
    default_message = "Payment has already been captured"


class AuthorizationExpired(Conflict):
    code = "authorization_expired"
    default_message = "Payment authorization has expired"


class RefundExceedsBalance(Conflict):
    code = "refund_exceeds_balance"
    default_message = "Refund amount exceeds the refundable balance"


class OrderNotPayable(Conflict):
    code = "order_not_payable"
    default_message = "Order cannot accept a new payment"


class PaymentNotRefundable(Conflict):
    code = "payment_not_refundable"
    default_message = "Only paid payments can be refunded"


class PaymentInProgress(Conflict):
    code = "payment_in_progress"
    default_message = "A payment for this order is still being processed"


class InvalidTransition(Conflict):
    code = "invalid_transition"
    default_message = "Order status transition is not allowed"


class OrderStatusConflict(Conflict):
    code = "order_status_conflict"
    default_message = "Order status changed concurrently"


# Gateway declines

class GatewayFailure(ApiError):
    code = "gateway_failed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_message = "Payment gateway declined the request"

    def __init__(self, message: Optional[str] = None, *, gateway_code: Optional[str] = None,
                 gateway_response: Optional[Dict[str, Any]] = None, details: Optional[Dict[str, Any]] = None):
        merged = {"gateway_code": gateway_code}
        if gateway_response is not None:
            merged["gateway_response"] = gateway_response
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.gateway_code = gateway_code


class AuthorizationFailed(GatewayFailure):
    code = "authorization_failed"
    default_message = "Payment authorization failed"


class CaptureFailed(GatewayFailure):
    code = "capture_failed"
    default_message = "Payment capture failed"


class ChargeFailed(GatewayFailure):
    code = "charge_failed"
    default_message = "Payment charge failed"


class RefundFailed(GatewayFailure):
    code = "refund_failed"
    default_message = "Refund failed"


# Transport / unknown

class PaymentOutcomeUnknown(ApiError):
    code = "payment_outcome_unknown"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_message = (
        "The payment gateway did not answer in time. The outcome is unknown; "
        "poll the payment or wait for the gateway webhook instead of retrying."
    )


def _http_error_code(status_code: int) -> str:
    return {
        400: "invalid_request",
        401: "unauthenticated",
        403: "unauthorized",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
    }.get(status_code, "http_error")


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "invalid_request", "message": "Request validation failed", "details": {"errors": errors}},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": _http_error_code(exc.status_code), "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "internal_error", "message": "Internal server error"},
        )
