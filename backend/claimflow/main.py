import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from claimflow.api.v1.approval import router as approval_router
from claimflow.api.v1.claims import router as claims_router
from claimflow.api.v1.email_ingest import router as email_ingest_router
from claimflow.api.v1.fund_quarantine import router as fund_quarantine_router
from claimflow.api.v1.invoices import router as invoices_router
from claimflow.core.config import get_settings
from claimflow.core.dependencies import SessionLocal
from claimflow.services.errors import PipelineError
from claimflow.services.recurring_jobs import (
    start_approval_expiry_worker,
    start_event_outbox_worker,
    start_notification_outbox_worker,
)
from claimflow.services.transition_service import SYSTEM_ENTITY_ID, create_audit_log
from claimflow.utils.rate_limit import get_client_ip, get_user_agent, rate_limiter

settings = get_settings()
_approval_expiry_task = None
_event_outbox_task = None
_notification_outbox_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="ClaimFlow API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)

APPROVAL_PREFIX = "/api/v1/public/invoice-approval"
INGEST_PREFIX = "/api/v1/email-ingest"


@app.on_event("startup")
async def _startup_jobs():
    global _approval_expiry_task, _event_outbox_task, _notification_outbox_task
    if not settings.enable_recurring_jobs:
        return
    if _approval_expiry_task is None:
        _approval_expiry_task = start_approval_expiry_worker()
    if _event_outbox_task is None and settings.enable_event_outbox:
        _event_outbox_task = start_event_outbox_worker()
    if _notification_outbox_task is None and settings.enable_notification_outbox:
        _notification_outbox_task = start_notification_outbox_worker()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _approval_expiry_task, _event_outbox_task, _notification_outbox_task
    for task in (_approval_expiry_task, _event_outbox_task, _notification_outbox_task):
        if task is not None:
            task.cancel()
    _approval_expiry_task = None
    _event_outbox_task = None
    _notification_outbox_task = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(invoices_router, prefix="/api/v1", tags=["invoices"])
app.include_router(claims_router, prefix="/api/v1", tags=["claims"])
app.include_router(fund_quarantine_router, prefix="/api/v1", tags=["fund-quarantine"])
app.include_router(email_ingest_router, prefix="/api/v1", tags=["webhooks"])
app.include_router(approval_router, prefix="/api/v1", tags=["public"])


@app.exception_handler(PipelineError)
async def _pipeline_error_handler(request: Request, exc: PipelineError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors()), "code": "VALIDATION_ERROR"},
    )


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _audit_rate_limit_block(request: Request, ip: str, key: str, limit: int, window_seconds: int) -> None:
    if SessionLocal is None:
        return
    db = SessionLocal()
    try:
        create_audit_log(
            db,
            entity_type="system",
            entity_id=SYSTEM_ENTITY_ID,
            action="RATE_LIMIT_BLOCKED",
            old_value=None,
            new_value=None,
            actor_type="SYSTEM",
            actor_id=None,
            ip_address=ip,
            user_agent=get_user_agent(request),
            metadata={"path": request.url.path, "key": key, "limit": limit, "window_seconds": window_seconds},
        )
        db.commit()
    finally:
        db.close()


@app.middleware("http")
async def public_rate_limit_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        return await call_next(request)

    path = request.url.path
    settings = get_settings()
    if not settings.rate_limit_public_enabled:
        return await call_next(request)

    ip = get_client_ip(request) or "unknown"
    window_seconds = 60
    if path.startswith(APPROVAL_PREFIX):
        key = f"approval:ip:{ip}"
        limit = settings.rate_limit_approval_ip_per_min
    elif path.startswith(INGEST_PREFIX) and request.method == "POST":
        key = f"ingest:ip:{ip}"
        limit = settings.rate_limit_ingest_ip_per_min
    else:
        return await call_next(request)

    allowed, _ = rate_limiter.allow(key, limit, window_seconds)
    if not allowed:
        _audit_rate_limit_block(request, ip, key, limit, window_seconds)
        return JSONResponse(status_code=429, content={"detail": "Too Many Requests"})

    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "no-referrer"
    if "Cache-Control" not in headers and request.url.path.startswith(APPROVAL_PREFIX):
        headers["Cache-Control"] = "no-store"
    if "Strict-Transport-Security" not in headers:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if "Content-Security-Policy" not in headers:
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
