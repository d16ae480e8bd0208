"""
Course Payment Ledger — FastAPI Application Entry Point

Aggregates all routers, configures middleware and error rendering, and
initializes logging and the database on startup.
"""
import logging
import time
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coursepay.config import get_settings
from coursepay.database import init_db, ping_db
from coursepay.routes import payment_router, webhook_router, admin_router, reconciliation_router, monitoring_router
from coursepay.services.gateway_service import gateway_clients
from coursepay.services.scheduled_jobs import register_jobs
from coursepay.utils.errors import PaymentServiceError, RateLimitExceeded
from coursepay.utils.logger import configure_logging
from coursepay.utils.scheduler import Scheduler

settings = get_settings()
logger = logging.getLogger("coursepay.main")

# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Payment ledger for paid course enrollments: gateway checkout, webhook-driven "
        "transaction lifecycle, refunds, reconciliation against settlement reports, "
        "and payment monitoring."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

# ─── Startup ─────────────────────────────────────────────────────────
BOOT_TIME = time.time()


@app.on_event("startup")
def on_startup():
    """Configure logging, initialize database tables and log boot info."""
    configure_logging()
    init_db()
    logger.info(
        "%s v%s started at %s (database=%s, gateway=%s, counters=%s, debug=%s)",
        settings.APP_NAME,
        settings.APP_VERSION,
        datetime.now().isoformat(),
        settings.DATABASE_URL.split("@")[-1],
        "live" if settings.GATEWAY_MERCHANT_ID and settings.GATEWAY_API_SECRET else "mock",
        "redis" if settings.REDIS_URL else "in-process",
        settings.DEBUG,
    )


scheduler = Scheduler()


@app.on_event("startup")
async def start_jobs():
    """Start background jobs (session expiry, daily reconciliation, alerts)."""
    if settings.SCHEDULER_ENABLED:
        register_jobs(scheduler)


@app.on_event("shutdown")
async def on_shutdown():
    await scheduler.cancel_all()
    gateway_clients.close()


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every API request with timing."""
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith("/api"):
        logger.info("%s %s -> %s (%sms)", request.method, request.url.path, response.status_code, duration)

    return response


# ─── Error Rendering ─────────────────────────────────────────────────
@app.exception_handler(PaymentServiceError)
async def payment_service_error_handler(request: Request, exc: PaymentServiceError):
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body", "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "code": "VALIDATION_ERROR", "message": "Validation failed", "errors": errors},
    )


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(reconciliation_router)
app.include_router(monitoring_router)


@app.get("/health", tags=["Health"])
def deep_health():
    """Liveness with database connectivity."""
    db_ok = True
    try:
        ping_db()
    except Exception as e:
        logger.warning("Health check: database unreachable: %s", e)
        db_ok = False

    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "uptime_seconds": round(time.time() - BOOT_TIME, 1),
        "version": settings.APP_VERSION,
    }
