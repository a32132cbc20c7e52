"""
Error-to-response mapping.

WHAT: Turn marketplace error kinds and request validation failures into JSON responses
WHY: Clients branch on the stable `error` code and retry only what is retryable
HOW: FastAPI exception handlers; status chosen by error kind, most specific first
"""

from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..utils.clock import utcnow
from ..utils.exceptions import (
    MarketplaceError,
    ValidationError,
    AuthorizationError,
    NotFoundError,
    TransientStoreError,
    PartialWorkflowFailure,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Most specific first
_STATUS_BY_KIND = (
    (PartialWorkflowFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
)


def status_for(exc: MarketplaceError) -> int:
    for kind, status_code in _STATUS_BY_KIND:
        if isinstance(exc, kind):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def error_body(code: str, message: str, details: Any = None) -> Dict[str, Any]:
    return {
        "error": code,
        "message": message,
        "details": details,
        "timestamp": utcnow().isoformat(),
    }


def _field_errors(exc: RequestValidationError) -> list:
    fields = []
    for error in exc.errors():
        field = {key: error.get(key) for key in ("type", "loc", "msg", "input")}
        # pydantic puts the raised ValueError itself in ctx
        if "ctx" in error:
            field["ctx"] = {
                k: str(v) if isinstance(v, Exception) else v
                for k, v in error["ctx"].items()
            }
        fields.append(field)
    return fields


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed body, query or path parameter: 400 with per-field errors."""
    fields = _field_errors(exc)
    logger.warning(f"Rejected request to {request.url.path}: {len(fields)} invalid field(s)")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("VALIDATION_ERROR", "Request validation failed", fields)
    )


async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
    """
    Handle MarketplaceError and its subclasses.

    Transient store failures carry Retry-After so clients retry the same call;
    a partial accept is a 500 whose details name the failed steps, resumed via
    the accept/resume route rather than retried.
    """
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} -> {status_code} {exc.code}: {exc.message}")

    headers: Optional[Dict[str, str]] = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content=error_body(exc.code, exc.message, exc.details),
        headers=headers
    )


def register_exception_handlers(app):
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(MarketplaceError, marketplace_exception_handler)
