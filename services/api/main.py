"""
Therapy Tools PDF Viewer - Backend API
FastAPI service for server-side PDF viewing and page-limited guest sharing.

Install dependencies:
pip install -e ".[test]"

Run server:
uvicorn main:app --host 0.0.0.0 --port 8000
"""

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.routing import Match
from typing import Callable
import uuid
import logging
import os
import time
import contextvars
from collections import defaultdict
from datetime import datetime, timedelta

from settings import get_settings
from core.errors import (
    FetchError,
    NotificationError,
    PersistenceError,
    RenderError,
    SessionUnavailable,
    ValidationError,
    ViewerBusyError,
)
from core.email_sender import SmtpMailer
from core.pdf_engine import ensure_engine_ready
from core.pdf_fetcher import PdfFetcher, ProxyRotation, build_proxy_services
from core.viewer import ViewerSession
from core.viewer_registry import ViewerRegistry

# ========== Request Context for Tracing ==========
request_id_var = contextvars.ContextVar('request_id', default=None)
request_start_time_var = contextvars.ContextVar('request_start_time', default=None)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============================================================================
# BACKEND CONFIGURATION
# ============================================================================
settings = get_settings()

STORAGE_BACKEND = "firestore" if settings.firebase_configured() else "memory"
logger.info(f"🔧 Session store: {STORAGE_BACKEND.upper()}")

# ============================================================================
# SESSION STORE INITIALIZATION
# ============================================================================

if STORAGE_BACKEND == "firestore":
    try:
        from adapters.firestore import FirestoreSessionStore

        logger.info("Initializing Firestore session store...")
        session_store = FirestoreSessionStore.from_settings(settings)
        logger.info("✓ Firestore session store initialized (collection: pdfSessions)")
    except Exception as e:
        logger.error(f"✗ Failed to initialize Firestore: {e}")
        raise
else:
    from adapters.memory import InMemorySessionStore

    logger.warning("Firebase credentials not found, using in-memory session store (local development only)")
    session_store = InMemorySessionStore()

mailer = SmtpMailer.from_settings(settings)
proxy_services = build_proxy_services(settings.self_hosted_proxy_url)
pdf_fetcher = PdfFetcher(
    proxies=proxy_services,
    timeout=settings.fetch_timeout,
    credentials=settings.fetch_credentials(),
)
viewer_registry = ViewerRegistry(maxsize=settings.viewer_max_sessions, ttl=settings.viewer_ttl_seconds)


def create_viewer(source_url: str, **kwargs) -> ViewerSession:
    """Each viewer gets its own proxy rotation; the fetcher is shared."""
    return ViewerSession(
        source_url,
        fetcher=pdf_fetcher,
        rotation=ProxyRotation(proxy_services),
        **kwargs,
    )


# ---- DI helpers (used by routers/*) ----
def get_session_store():
    return session_store

def get_mailer():
    return mailer

def get_pdf_fetcher() -> PdfFetcher:
    return pdf_fetcher

def get_viewer_registry() -> ViewerRegistry:
    return viewer_registry

def get_viewer_factory() -> Callable[..., ViewerSession]:
    return create_viewer

# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Therapy Tools PDF Viewer API",
    description="Server-side PDF viewing with CORS-proxy fallback and expiring guest links",
    version="1.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# ========== Request Tracing Middleware ==========
@app.middleware("http")
async def request_tracing_middleware(request, call_next):
    """Add request_id and timing to all requests."""
    request_id = str(uuid.uuid4())[:8]
    request_id_var.set(request_id)
    request_start_time_var.set(time.time())

    response = await call_next(request)

    latency = time.time() - request_start_time_var.get()
    logger.info(
        f"[{request_id}] {request.method} {request.url.path} -> "
        f"{response.status_code} ({round(latency * 1000, 2)}ms)"
    )

    response.headers["X-Request-ID"] = request_id
    return response

# ========== Rate Limiting ==========

# Rate limit storage: {ip: {endpoint: [timestamp, ...]}}
rate_limit_storage = defaultdict(lambda: defaultdict(list))

# Rate limits (requests per minute)
RATE_LIMITS = {
    "read": settings.rate_limit_read_per_minute,    # GET requests
    "write": settings.rate_limit_write_per_minute,  # POST/PUT/DELETE requests
    "default": 60,
}

RATE_LIMIT_EXEMPT = ["/health", "/healthz", "/readyz", "/docs", "/redoc", "/openapi.json"]


def _limit_for(method: str) -> int:
    if method == "GET":
        return RATE_LIMITS["read"]
    if method in ["POST", "PUT", "DELETE", "PATCH"]:
        return RATE_LIMITS["write"]
    return RATE_LIMITS["default"]


def route_template(request) -> str:
    """Route path template (e.g. /guest-view/{session_id}) so limits are per route, not per URL."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return "<unmatched>"


def check_rate_limit(ip: str, method: str, path: str) -> tuple[bool, int]:
    """
    Check if request exceeds rate limit.
    `path` is a route template; stale keys for this ip are dropped.
    Returns: (is_allowed, retry_after_seconds)
    """
    limit = _limit_for(method)

    now = datetime.now()
    one_minute_ago = now - timedelta(minutes=1)

    # Clean old entries
    key = f"{method}:{path}"
    buckets = rate_limit_storage[ip]
    for existing in list(buckets):
        buckets[existing] = [ts for ts in buckets[existing] if ts > one_minute_ago]
        if not buckets[existing]:
            del buckets[existing]

    current_count = len(buckets[key])
    if current_count >= limit:
        # Seconds until the oldest request leaves the window
        oldest = min(buckets[key])
        retry_after = int((oldest - one_minute_ago).total_seconds()) + 1
        return False, retry_after

    buckets[key].append(now)
    return True, 0


@app.middleware("http")
async def rate_limiting_middleware(request, call_next):
    """Rate limiting middleware - prevents abuse."""
    if request.url.path in RATE_LIMIT_EXEMPT:
        return await call_next(request)

    client_ip = request.client.host if request.client else "unknown"
    allowed, retry_after = check_rate_limit(client_ip, request.method, route_template(request))

    if not allowed:
        logger.warning(f"Rate limit exceeded for {client_ip} on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "detail": "Rate limit exceeded",
                "retry_after_seconds": retry_after
            },
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(_limit_for(request.method)),
                "X-RateLimit-Remaining": "0",
            }
        )

    return await call_next(request)

# ========== End of Rate Limiting ==========

ALLOWED_ORIGINS = settings.get_origins_list()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials="*" not in ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": f"{field}: {message}" if field else message},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


@app.exception_handler(SessionUnavailable)
async def session_unavailable_handler(request, exc: SessionUnavailable):
    # Same message for every reason; the code is for diagnostics only
    logger.info(f"Guest session {exc.session_id} unavailable: {exc.reason}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": exc.user_message, "code": exc.reason},
    )


@app.exception_handler(ViewerBusyError)
async def viewer_busy_handler(request, exc: ViewerBusyError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"error": str(exc)})


@app.exception_handler(FetchError)
async def fetch_error_handler(request, exc: FetchError):
    logger.error(f"Fetch failed ({exc.kind}): {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": exc.user_message, "retryable": True},
    )


@app.exception_handler(RenderError)
async def render_error_handler(request, exc: RenderError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": str(exc), "page": exc.page_number},
    )


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request, exc: PersistenceError):
    logger.error(f"Persistence failure: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": f"Failed to store selection data: {exc}"},
    )


@app.exception_handler(NotificationError)
async def notification_error_handler(request, exc: NotificationError):
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": str(exc),
            "kind": exc.kind,
            "sessionId": exc.session_id,
            "viewingUrl": exc.viewing_url,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )

# ============================================================================
# ENDPOINTS
# ============================================================================
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    try:
        # Plain read of a key that never exists; exercises credentials and network
        get_session_store().get_session("__healthcheck__")
        return {
            "status": "healthy",
            "backend": STORAGE_BACKEND,
            "open_viewers": len(viewer_registry),
            "version": "1.0"
        }
    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "backend": STORAGE_BACKEND, "error": str(e)}
        )


@app.get("/healthz")
async def healthz():
    """
    Kubernetes-style liveness check.
    Returns 200 if the application is running.
    """
    return {
        "status": "ok",
        "timestamp": time.time(),
        "version": "1.0"
    }


@app.get("/readyz")
async def readyz():
    """
    Kubernetes-style readiness check.
    Checks the rendering engine loads and the session store answers.
    Returns 200 if ready, 503 if not ready.
    """
    try:
        await ensure_engine_ready()
        get_session_store().get_session("__healthcheck__")
        return {
            "status": "ready",
            "backend": STORAGE_BACKEND,
            "open_viewers": len(viewer_registry),
            "timestamp": time.time()
        }
    except Exception as e:
        logger.error(f"Readiness check failed: {str(e)}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "backend": STORAGE_BACKEND,
                "error": str(e),
                "timestamp": time.time()
            }
        )


@app.get("/")
async def root():
    """API root endpoint"""
    return {
        "message": "Therapy Tools PDF Viewer API",
        "version": "1.0",
        "backend": STORAGE_BACKEND,
        "status": "running",
        "docs": "/docs"
    }


from routers import proxy as proxy_router
app.include_router(proxy_router.router)

from routers import send_pdf_pages as send_pdf_pages_router
app.include_router(send_pdf_pages_router.router)

from routers import guest_view as guest_view_router
app.include_router(guest_view_router.router)

from routers import viewer as viewer_router
app.include_router(viewer_router.router)

startup_time = time.time()

@app.on_event("startup")
async def startup_event():
    global startup_time
    startup_time = time.time()
    logger.info("PDF Viewer API starting up...")
    logger.info(f"Session store: {STORAGE_BACKEND.upper()}")
    logger.info(f"Proxy rotation: {[p.id for p in proxy_services]}")
    logger.info(f"Allowed origins: {ALLOWED_ORIGINS}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("PDF Viewer API shutting down...")
    viewer_registry.close_all()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
