from fastapi import APIRouter

from settlement.config import settings
from settlement.core.observability import uptime_seconds, utc_now_iso

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Healthcheck")
def healthcheck():
    """Liveness probe; keep the payload stable for monitoring."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
        "version": getattr(settings, "build_version", None),
    }
