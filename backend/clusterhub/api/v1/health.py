"""Health check endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.config import get_settings
from clusterhub.db.session import get_db_session

router = APIRouter()


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, str]:
    """Liveness plus database connectivity."""
    settings = get_settings()
    try:
        await db.execute(text("SELECT 1"))
        database = "healthy"
    except DBAPIError as e:
        database = f"unhealthy: {e.orig}"

    return {
        "status": "healthy" if database == "healthy" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": database,
    }
