"""
Smart Ajo Payments: FastAPI Application Entry Point

Aggregates all routers, configures middleware and error rendering,
and initializes logging and the database on startup.
"""
import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from ajo import __version__
from ajo.config import get_settings
from ajo.database import SessionLocal, init_db
from ajo.errors import AjoError
from ajo.routes import payment_router, webhook_router, group_router, admin_router
from ajo.schemas.schemas import HealthResponse
from ajo.utils.logging import configure_logging

settings = get_settings()
logger = structlog.get_logger(__name__)

BOOT_TIME = time.time()


# ─── Startup ─────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging, create tables, log boot info."""
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    init_db()
    logger.info(
        "app.started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        paystack_key="loaded" if settings.PAYSTACK_SECRET_KEY else "missing",
        debug=settings.DEBUG,
    )
    yield
    logger.info("app.stopped")


# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Payment confirmation API for Smart Ajo rotating savings groups. "
        "Covers payment initialization, Paystack verification, webhook intake "
        "and exactly-once group membership activation."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


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
        logger.info(
            "http.request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration,
        )

    return response


# ─── Errors ──────────────────────────────────────────────────────────
@app.exception_handler(AjoError)
async def ajo_error_handler(request: Request, exc: AjoError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(group_router)
app.include_router(admin_router)


@app.get("/health", tags=["Health"], response_model=HealthResponse)
def deep_health():
    """Health check including database connectivity."""
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.exception("health.database_unreachable")
    finally:
        db.close()

    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        database="connected" if db_ok else "disconnected",
        version=__version__,
        uptime_seconds=round(time.time() - BOOT_TIME, 1),
    )
