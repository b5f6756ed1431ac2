"""Main FastAPI application."""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from ledger.api.admin import router as admin_router
from ledger.api.payments import router as payments_router
from ledger.api.webhooks import router as webhooks_router
from ledger.domain.common.errors import (
    AuthorizationError,
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    ProviderError,
    ValidationError,
    WebhookProcessingError,
    WebhookSignatureError,
)
from ledger.infra.db.base import Base
# Import all models to ensure they're registered with Base
from ledger.infra.db.models import payments as _payment_models  # noqa: F401
from ledger.infra.db.session import dispose_engine, get_engine
from ledger.settings import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, str(settings.log_level).upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    try:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except (SQLAlchemyError, OSError) as e:
        # Database might not be ready yet; requests will fail until it is.
        logger.warning("Could not prepare database during startup: %s", e)

    yield

    await dispose_engine()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its status and duration."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        logger.debug("Request %s %s query=%s", request.method, request.url.path, dict(request.query_params))
        response = await call_next(request)
        logger.info(
            "%s %s - %s (%.3fs)",
            request.method, request.url.path, response.status_code, time.time() - start_time,
        )
        return response


app.add_middleware(LoggingMiddleware)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log request validation errors before returning 422."""
    errors = exc.errors()
    logger.error("Validation error on %s %s: %s", request.method, request.url.path, errors)
    return JSONResponse(status_code=422, content={"detail": errors})


# Domain error handlers: map domain exceptions to HTTP status
@app.exception_handler(NotFoundError)
async def domain_not_found_handler(request: Request, exc: NotFoundError):
    """Return 404 when a resource is not found."""
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def domain_authorization_handler(request: Request, exc: AuthorizationError):
    """Return 403 when the user is not authorized."""
    return JSONResponse(status_code=403, content={"detail": exc.message})


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError):
    """Return 422 for domain validation errors."""
    return JSONResponse(status_code=422, content={"detail": exc.message})


@app.exception_handler(ConflictError)
async def domain_conflict_handler(request: Request, exc: ConflictError):
    """Return 409 for illegal state transitions and in-flight payouts."""
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    """Return 502 with the provider's error payload attached."""
    return JSONResponse(
        status_code=502,
        content={
            "detail": exc.message,
            "code": exc.code,
            "retryable": exc.retryable,
            "provider": exc.payload,
        },
    )


@app.exception_handler(InvariantViolationError)
async def invariant_violation_handler(request: Request, exc: InvariantViolationError):
    """Return 500; the violation was already logged at CRITICAL."""
    return JSONResponse(status_code=500, content={"detail": "Internal ledger error"})


@app.exception_handler(WebhookSignatureError)
async def webhook_signature_handler(request: Request, exc: WebhookSignatureError):
    """Return 401 for unsigned or badly signed webhooks."""
    return JSONResponse(status_code=401, content={"detail": exc.message})


@app.exception_handler(WebhookProcessingError)
async def webhook_processing_handler(request: Request, exc: WebhookProcessingError):
    """Return 500 so the provider redelivers the event."""
    return JSONResponse(status_code=500, content={"detail": exc.message, "event_type": exc.event_type})


@app.get("/health")
@app.get(f"{settings.api_v1_prefix}/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "version": settings.app_version}


@app.get("/ready")
async def readiness():
    """Readiness endpoint: 200 if required checks pass, 503 otherwise."""
    from ledger.readiness import is_ready, run_all_checks_async
    checks = await run_all_checks_async()
    ready, summary = is_ready(checks)
    if ready:
        return {"ready": True, "checks": summary}
    return JSONResponse(status_code=503, content={"ready": False, "checks": summary})


# API v1 routes
app.include_router(payments_router, prefix=settings.api_v1_prefix)
app.include_router(admin_router, prefix=settings.api_v1_prefix)
app.include_router(webhooks_router, prefix=settings.api_v1_prefix)
