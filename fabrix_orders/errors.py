"""
Error taxonomy for the orders service and the handlers that render it.

Every error leaves the service as
``{"success": false, "statusCode": ..., "message": ..., "errors": [...]}``.
"""
import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Base class for errors that map to an HTTP response."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class ValidationError(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidAmount(ValidationError):
    pass


class Unauthorized(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(ApiError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND


class IllegalTransition(ApiError):
    """Raised when an order status change is not allowed by the state machine."""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, current: str, requested: str, reason: Optional[str] = None):
        message = f"Invalid status transition: {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, [{"field": "status", "current": current, "requested": requested}])
        self.current = current
        self.requested = requested


class InvalidSignature(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST


class DuplicateOrderNumber(ApiError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, order_number: str):
        super().__init__(
            f"Order number {order_number} already exists",
            [{"field": "order_number", "message": "already exists"}],
        )
        self.order_number = order_number


class ConcurrentModification(ApiError):
    status_code = status.HTTP_409_CONFLICT


class PaymentProviderError(ApiError):
    status_code = status.HTTP_502_BAD_GATEWAY


def _error_body(status_code: int, message: str, errors=None, exc: Optional[BaseException] = None,
                debug: bool = False) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "statusCode": status_code, "message": message}
    if errors:
        body["errors"] = errors
    if debug and exc is not None:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return body


def register_error_handlers(app: FastAPI, debug: bool = False) -> None:
    """Install exception handlers that render the structured error body."""

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, exc.message, exc.errors, exc, debug),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
             "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(status.HTTP_400_BAD_REQUEST, "Validation Error", errors),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(500, "Server Error", exc=exc, debug=debug),
        )
