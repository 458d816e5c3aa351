"""
AI Travel Planner Privacy API - FastAPI Backend Application

Serves GDPR data-subject requests (consent, erasure, export) for the travel
planner, plus the internal endpoints used by the scheduler and export worker.
"""

import asyncio
import hmac
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from prometheus_client import make_asgi_app
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
import structlog

from config.settings import settings
from config.database import db_manager
from middleware.security_headers import SecurityHeadersMiddleware

_startup_time = time.time()


# Structured logging; production uses a lighter processor chain
if settings.is_production:
    log_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ]
else:
    log_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ]

structlog.configure(
    processors=log_processors,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info("application_starting", environment=settings.environment)

    try:
        # App starts even if the database is unavailable outside production
        await db_manager.initialize()
        logger.info("database_connections_initialized")
    except Exception as e:
        logger.error("database_init_failed", error=str(e))
        if settings.is_production:
            raise
        logger.warning("continuing_without_full_db", environment=settings.environment)

    if settings.sentry_dsn:
        try:
            import sentry_sdk
            from sentry_sdk.integrations.fastapi import FastApiIntegration

            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                environment=settings.environment,
                traces_sample_rate=0.1 if settings.is_production else 0.05,
                profiles_sample_rate=0.0,
                integrations=[FastApiIntegration()],
                send_default_pii=False,
                max_breadcrumbs=30,
            )
            logger.info("sentry_initialized")
        except Exception as e:
            logger.warning("sentry_init_failed", error=str(e))

    logger.info("application_started", version=settings.app_version)

    yield

    logger.info("application_shutting_down")

    try:
        await db_manager.close()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("shutdown_error", error=str(e))

    logger.info("application_stopped")


# Interactive API docs are disabled in production
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Consent, erasure and export requests for the AI travel planner",
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    lifespan=lifespan
)


# ============================================================================
# MIDDLEWARE
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-API-Key"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(SecurityHeadersMiddleware)

# Privacy request bodies are tiny; 64 KB is generous
MAX_REQUEST_BODY_BYTES = 64 * 1024


class RequestBodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared or actual body exceeds the limit."""

    async def dispatch(self, request: Request, call_next) -> Response:
        too_large = JSONResponse(
            status_code=413,
            content={"detail": "Request body too large"},
        )

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_BODY_BYTES:
            return too_large

        # Chunked bodies carry no Content-Length
        if request.method == "POST" and not content_length:
            body = await request.body()
            if len(body) > MAX_REQUEST_BODY_BYTES:
                return too_large

        return await call_next(request)


app.add_middleware(RequestBodySizeLimitMiddleware)

# The deletion sweep may run long; it is exempt
REQUEST_TIMEOUT_SECONDS = 30


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """Enforce a per-request timeout."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path.endswith("/gdpr/process-deletions"):
            return await call_next(request)
        try:
            return await asyncio.wait_for(
                call_next(request), timeout=REQUEST_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            return JSONResponse(
                status_code=504,
                content={"detail": "Request timed out"},
            )


app.add_middleware(RequestTimeoutMiddleware)


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add request ID and processing time to response headers"""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    response = await call_next(request)

    process_time = time.time() - start_time
    response.headers["X-Request-ID"] = request_id
    if not settings.is_production:
        response.headers["X-Process-Time"] = str(process_time)

    # Production logs only slow or failed requests
    if not settings.is_production or process_time > 1.0 or response.status_code >= 400:
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=process_time
        )

    return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Malformed input is a 400.

    The submitted values are never echoed back: 'input' may hold personal
    data, and 'ctx' holds the raw exception which is not JSON-serialisable.
    """
    sanitized_errors = [
        {k: v for k, v in err.items() if k not in ("input", "ctx")}
        for err in exc.errors()
    ]

    logger.warning("validation_error", errors=sanitized_errors, path=request.url.path)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Invalid request data",
            "detail": sanitized_errors,
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors"""
    logger.error(
        "unexpected_error",
        error=str(exc),
        path=request.url.path,
        method=request.method
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )


# ============================================================================
# HEALTH CHECK ENDPOINTS
# ============================================================================

async def _database_ok() -> bool:
    try:
        return await db_manager.ping()
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False


@app.get("/health", tags=["Health"])
async def health_check():
    """Basic health check endpoint with deployment metadata"""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "uptime_seconds": round(time.time() - _startup_time, 2),
        "database_status": "connected" if await _database_ok() else "disconnected",
    }


@app.get("/health/ready", tags=["Health"])
async def readiness_check():
    """Readiness check - the database is required, Redis is optional"""
    checks = {
        "database": await _database_ok(),
        "redis": None,
    }

    redis = await db_manager.get_redis_client()
    if redis is not None:
        try:
            await redis.ping()
            checks["redis"] = True
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            checks["redis"] = False

    ready = checks["database"] and checks["redis"] is not False
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "not ready",
            "checks": checks
        }
    )


@app.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness check - verify application is running"""
    return {"status": "alive"}


# ============================================================================
# METRICS
# ============================================================================

metrics_app = make_asgi_app()


@app.middleware("http")
async def protect_metrics(request: Request, call_next):
    """Require the internal API key for /metrics"""
    if request.url.path.startswith("/metrics") and settings.internal_api_key:
        api_key = request.headers.get("X-API-Key") or ""
        if not hmac.compare_digest(api_key, settings.internal_api_key):
            return JSONResponse(status_code=403, content={"detail": "Forbidden"})
    return await call_next(request)


app.mount("/metrics", metrics_app)


# ============================================================================
# API ROUTES
# ============================================================================

@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    info = {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "health": "/health",
        "metrics": "/metrics",
    }
    if not settings.is_production:
        info["docs"] = "/docs"
    return info


from api.v1 import compliance_router, internal_router

# GDPR data-subject endpoints
app.include_router(
    compliance_router,
    prefix=f"{settings.api_prefix}/compliance",
    tags=["Compliance"]
)

# Scheduler, export worker and operator endpoints (API-key protected)
app.include_router(
    internal_router,
    prefix=f"{settings.api_prefix}/internal",
    tags=["Internal"]
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=settings.is_development,
        log_level="info"
    )
