import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from seo_billing.core.config import settings
from seo_billing.core.database import check_db_connection, get_db
from seo_billing.routes.admin import router as admin_router
from seo_billing.routes.billing import router as billing_router
from seo_billing.routes.webhooks import router as webhooks_router
from seo_billing.services.errors import (
    BillingError,
    BillingValidationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Bulk Product SEO Billing")
logger.info(
    "Startup config: ENV=%s SHOPIFY_API_VERSION=%s RATE_LIMIT_ENABLED=%s ADMIN_ENABLED=%s",
    settings.ENV,
    settings.SHOPIFY_API_VERSION,
    settings.RATE_LIMIT_ENABLED,
    bool(settings.ADMIN_API_TOKEN),
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
}

_STATUS_BY_BILLING_ERROR: list[tuple[type[BillingError], int]] = [
    (BillingValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (UpstreamError, 502),
    (PersistenceError, 500),
]


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


def _status_for(exc: BillingError) -> int:
    for error_type, status_code in _STATUS_BY_BILLING_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    payload: dict = {"error": _error_code(exc.status_code), "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(BillingError)
def billing_exception_handler(request: Request, exc: BillingError):
    status_code = _status_for(exc)
    if status_code >= 500:
        # Webhook callers rely on a 5xx here so Shopify redelivers.
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    message = str(exc) or "Request failed"
    if isinstance(exc, PersistenceError):
        message = "Failed to save billing state"
    return JSONResponse(
        status_code=status_code,
        content={"error": _error_code(status_code), "message": message},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    if not check_db_connection(db):
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "unreachable"})
    return {"status": "ok"}
