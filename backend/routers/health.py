"""
Health and deployment probes.

/api/health reports on the database, the Casso integration and the last
poll cycle; /health/ready and /health/live are the orchestrator probes.
"""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text

from config import Settings, get_settings, validate_environment
from database import get_engine
from reconciliation.dependencies import get_poller

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _ping_database() -> dict:
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return {"status": "connected", "type": engine.dialect.name}


def _casso_check(settings: Settings) -> dict:
    check = {
        "api_configured": settings.casso_configured,
        "webhook_auth": bool(settings.CASSO_WEBHOOK_TOKEN),
        "poller_enabled": settings.CASSO_POLL_ENABLED,
    }
    if settings.CASSO_POLL_ENABLED and settings.casso_configured:
        last_run = get_poller().last_run
        check["last_poll"] = None if last_run is None else {
            "timestamp": last_run["timestamp"],
            "fetched": last_run["fetched"],
            "error": last_run["error"],
        }
    return check


@router.get("/")
async def root(settings: Settings = Depends(get_settings)):
    return {
        "message": "Restaurant Payments Core API",
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@router.get("/health")
async def health_check(settings: Settings = Depends(get_settings)):
    """
    Detailed health check for load balancers and uptime monitors.

    503 when the database is unreachable. A failed Casso poll is reported
    but does not fail the check, since webhooks still settle orders.
    """
    checks = {}
    healthy = True

    try:
        checks["database"] = await _ping_database()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = {"status": "disconnected", "error": str(e)}
        healthy = False

    checks["casso"] = _casso_check(settings)

    env_status = validate_environment()
    checks["configuration"] = {
        "status": "valid" if env_status["valid"] else "invalid",
        "warnings": len(env_status["warnings"]),
        "errors": len(env_status["errors"]),
    }

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": _now(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": checks,
    }
    if not healthy:
        raise HTTPException(status_code=503, detail=body)
    return body


@router.get("/health/ready")
async def readiness_check():
    """Readiness probe: the database must answer."""
    try:
        await _ping_database()
    except Exception as e:
        raise HTTPException(status_code=503, detail={"status": "not_ready", "error": str(e)})
    return {"status": "ready", "timestamp": _now()}


@router.get("/health/live")
async def liveness_check():
    return {"status": "alive", "timestamp": _now()}


@router.get("/config/status")
async def config_status(settings: Settings = Depends(get_settings)):
    """Non-sensitive configuration summary for deployment debugging."""
    env_status = validate_environment()
    return {
        "environment": settings.ENVIRONMENT,
        "debug": settings.debug_enabled,
        "cors_origins_count": len(settings.cors_origins_list),
        "casso_configured": settings.casso_configured,
        "configuration_valid": env_status["valid"],
        "warnings": env_status["warnings"],
        "variables": env_status["variables"],
        "errors": ["Hidden in production"] if settings.is_production else env_status["errors"],
    }
