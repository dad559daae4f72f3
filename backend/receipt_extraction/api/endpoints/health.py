"""Health check endpoints for monitoring."""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from receipt_extraction.core.config import settings
from receipt_extraction.core.database import get_db

router = APIRouter()


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check() -> Dict[str, Any]:
    """Basic health check endpoint (supports GET & HEAD)."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": "1.0.0",
    }


@router.get("/health/detailed")
async def detailed_health_check(request: Request, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    """Detailed health check with service status."""
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "services": {},
    }

    def _mark(name: str, ok: bool, detail: str = "") -> None:
        health_status["services"][name] = "healthy" if ok else f"unhealthy{': ' + detail if detail else ''}"
        if not ok:
            health_status["status"] = "degraded"

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        _mark("database", True)
    except Exception as e:
        _mark("database", False, str(e))

    services = getattr(request.app.state, "services", None)
    if services is None:
        _mark("redis", False, "not initialised")
        _mark("storage", False, "not initialised")
        return health_status

    # Check Redis
    _mark("redis", await services.cache.ping())

    # Check object storage
    _mark("storage", await services.storage.ping())

    return health_status
