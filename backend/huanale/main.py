import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from huanale.api.v1.ingest import router as ingest_router
from huanale.api.v1.sessions import router as sessions_router
from huanale.core.config import get_settings
from huanale.services.ingestion.errors import IngestionError
from huanale.services.ingestion.orchestrator import drain_background_tasks, pending_background_tasks
from huanale.utils.rate_limit import get_client_ip, rate_limiter

settings = get_settings()

logger = logging.getLogger(__name__)

INGEST_PREFIX = "/api/v1/ingest"
GENERIC_ERROR = "Internal server error"

app = FastAPI(
    title="Huanale API",
    version="0.1.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(ingest_router, prefix="/api/v1", tags=["ingest"])
app.include_router(sessions_router, prefix="/api/v1", tags=["sessions"])


@app.on_event("shutdown")
async def _drain_ingest_tasks():
    pending = pending_background_tasks()
    if pending:
        logger.info("Waiting for %d background ingest tasks before shutdown", pending)
    await drain_background_tasks()


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # 5xx detail is hidden unless explicitly enabled.
    if exc.status_code >= 500 and not get_settings().expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": GENERIC_ERROR})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(IngestionError)
async def _ingestion_error_handler(request: Request, exc: IngestionError):
    # Ingestion messages are written for end users; diagnostics are logged where raised.
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    if get_settings().expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR})


@app.middleware("http")
async def ingest_rate_limit_middleware(request: Request, call_next):
    if request.method != "POST" or not request.url.path.startswith(INGEST_PREFIX):
        return await call_next(request)

    current = get_settings()
    if not current.rate_limit_api_enabled:
        return await call_next(request)

    ip = get_client_ip(request) or "unknown"
    allowed, retry_after = rate_limiter.allow(f"ingest:ip:{ip}", current.rate_limit_ingest_per_min, 60)
    if not allowed:
        logger.warning("Ingest rate limit hit ip=%s path=%s", ip, request.url.path)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too Many Requests"},
            headers={"Retry-After": str(retry_after)},
        )
    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not get_settings().security_headers_enabled:
        return response

    headers = response.headers
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("X-Frame-Options", "DENY")
    headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'; base-uri 'none'")
    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
