"""
BaoGia Quote API v1.0
FastAPI backend for Vietnamese sales quotations: line pricing, quote totals
and installments, HTML / document-definition / PDF rendering, product
costing, and per-user document storage on async SQLAlchemy.
"""
import os
import logging
import time
import collections
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.db import AsyncSessionLocal, DATABASE_URL, init_db
from app.services.document_store import DocumentStore
from app.services.errors import PersistenceError, ValidationRejection
from app.services.logging_config import setup_logging
from app.services.middleware import RequestTimingMiddleware
from app.services.perf_monitor import tracker as perf_tracker

# Load .env file automatically in dev
load_dotenv()

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("baogia-api")

APP_VERSION = "1.0.0"

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

for var in ["PDF_FONT_PATH", "PDF_FONT_BOLD_PATH"]:
    if not os.getenv(var):
        logger.info(f"Optional env var not set: {var} (PDF falls back to Helvetica)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


app = FastAPI(
    title="BaoGia Quote API",
    version=APP_VERSION,
    description="Quotation pricing, document rendering and product costing",
    lifespan=lifespan,
)
app.state.store = DocumentStore(AsyncSessionLocal)


# ---------------------------------------------------------------------------
# Rate Limiting Middleware
# ---------------------------------------------------------------------------
class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding-window rate limiter, per client IP.
    Buckets:
      - upload endpoints (catalog import)  : limit / 6 per min
      - PDF rendering endpoints            : limit / 4 per min
      - everything else                    : limit per min
    A limit of 0 disables the middleware.
    """
    def __init__(self, app, per_minute: int = 120):
        super().__init__(app)
        self.per_minute = per_minute
        # {bucket_key: deque of timestamps}
        self._windows: dict = collections.defaultdict(collections.deque)

    def _get_limit(self, path: str) -> int:
        if "import" in path:
            return max(1, self.per_minute // 6)
        if path.endswith("pdf"):
            return max(1, self.per_minute // 4)
        return self.per_minute

    async def dispatch(self, request: Request, call_next):
        if self.per_minute <= 0:
            return await call_next(request)
        ip = request.client.host if request.client else "unknown"
        path = request.url.path
        limit = self._get_limit(path)
        bucket = f"{ip}:{path if limit < self.per_minute else 'general'}"
        now = time.monotonic()
        window = self._windows[bucket]
        # Remove entries older than 60 seconds
        while window and now - window[0] > 60:
            window.popleft()
        if len(window) >= limit:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please slow down."},
                headers={"Retry-After": "60"},
            )
        window.append(now)
        return await call_next(request)


# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Rendered quotes carry inline CSS and data: images
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; img-src 'self' data:; style-src 'self' 'unsafe-inline'"
        )
        return response


# ---------------------------------------------------------------------------
# CORS: restricted to allowed origins from env
# ---------------------------------------------------------------------------
_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "X-Requested-With", "X-User-Id", "X-Request-ID"],
    expose_headers=["Content-Disposition", "X-Request-ID", "X-Process-Time"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware, per_minute=int(os.getenv("RATE_LIMIT_PER_MINUTE", "120")))
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(ValidationRejection)
async def validation_rejection_handler(request: Request, exc: ValidationRejection):
    return JSONResponse(status_code=422, content={"detail": exc.message})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# Routers
from app.api.quote_routes import router as quote_router
from app.api.catalog_routes import router as catalog_router
from app.api.costing_routes import router as costing_router

app.include_router(quote_router)
app.include_router(catalog_router)
app.include_router(costing_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": APP_VERSION,
        "database": DATABASE_URL.split("://", 1)[0],
    }


@app.get("/metrics")
async def metrics():
    """
    Rendering metrics from the in-process PerformanceTracker plus uptime
    and peak memory.
    """
    import sys

    uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

    memory_mb: float = 0.0
    try:
        import resource  # Unix only
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is in kilobytes on Linux, bytes on macOS
        if sys.platform == "darwin":
            memory_mb = round(usage.ru_maxrss / (1024 * 1024), 2)
        else:
            memory_mb = round(usage.ru_maxrss / 1024, 2)
    except ImportError:
        memory_mb = 0.0

    snapshot = perf_tracker.get_metrics()
    snapshot["uptime_seconds"] = uptime_seconds
    snapshot["memory_usage_mb"] = memory_mb
    return snapshot


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
