"""
Restaurant Payments Core - API server

Assembles the FastAPI app: logging and Sentry first, then the routers,
CORS, the request-context middleware and the fallback error handler.
The Casso poller runs inside the app process when CASSO_POLL_ENABLED is set.
"""

import asyncio
import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent / '.env')

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from config import get_settings, get_cors_config, validate_environment
from logging_config import setup_logging, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception, set_tag
from database import init_db, dispose_engine
from routers import health_router
from reconciliation.endpoints.casso_api import router as casso_router
from reconciliation.clients.notification_gateway import get_notification_gateway
from reconciliation.dependencies import get_poller

SERVICE_NAME = "restaurant-payments"

settings = get_settings()

setup_logging(level=settings.LOG_LEVEL, json_format=settings.is_production, service_name=SERVICE_NAME)
logger = logging.getLogger(__name__)

if init_sentry(
    dsn=settings.SENTRY_DSN,
    environment=settings.ENVIRONMENT,
    traces_sample_rate=0.1 if settings.is_production else 0.0,
):
    set_tag("service", SERVICE_NAME)


def _check_configuration():
    env_status = validate_environment()
    for warning in env_status["warnings"]:
        logger.warning(f"Configuration Warning: {warning}")
    for error in env_status["errors"]:
        logger.error(f"Configuration Error: {error}")
    if not env_status["valid"] and settings.is_production:
        raise RuntimeError("Cannot start in production with invalid configuration")


def _start_poller():
    if not settings.CASSO_POLL_ENABLED:
        return None
    if not settings.casso_configured:
        logger.warning("CASSO_POLL_ENABLED is set but CASSO_API_KEY is missing; poller not started")
        return None
    return asyncio.create_task(get_poller().run_continuous())


async def _stop_poller(task):
    if task is None:
        return
    get_poller().stop()
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.API_TITLE} ({settings.ENVIRONMENT}, debug={settings.debug_enabled})")
    _check_configuration()

    await init_db()
    poller_task = _start_poller()

    yield

    logger.info("Shutting down...")
    await _stop_poller(poller_task)
    await get_notification_gateway().drain()
    await dispose_engine()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Bank-transfer payment reconciliation for restaurant orders.

    ### Casso Payments (/api/casso)
    - Webhook receiver and background poller for Casso transactions
    - Automatic matching by order number and amount, with pricing verification
    - Idempotent settlement and realtime notifications
    - Operator queue and manual matching

    ### Health (/api/health)
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

api_router = APIRouter(prefix="/api")
api_router.include_router(health_router)
api_router.include_router(casso_router)
app.include_router(api_router)

app.add_middleware(CORSMiddleware, **get_cors_config())


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind a request id (and operator, when sent) to every log line."""
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
    set_request_context(request_id=request_id, operator_id=request.headers.get("X-Operator-Id"))

    try:
        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}"

        if response.status_code >= 400 or settings.debug_enabled:
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)")
        return response
    finally:
        clear_request_context()


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}")
    capture_exception(exc, path=request.url.path)

    content = {"detail": "Internal server error"}
    if not settings.is_production:
        content.update(detail=str(exc), type=type(exc).__name__)
        if settings.debug_enabled:
            content["traceback"] = traceback.format_exc()
    return JSONResponse(status_code=500, content=content)
