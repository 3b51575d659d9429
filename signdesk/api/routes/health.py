from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.api.dependencies.database import get_db
from signdesk.api.dependencies.orchestrator import get_orchestrator
from signdesk.core.logging import get_logger
from signdesk.services.signing_orchestrator import SigningOrchestrator

logger = get_logger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    session: AsyncSession = Depends(get_db),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    checks: Dict[str, str] = {}
    try:
        await session.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except DBAPIError as exc:
        logger.error("health.database_failed", error=str(exc))
        checks["database"] = "unhealthy"

    checks["signing_provider"] = "healthy" if await orchestrator.provider.health_check() else "unhealthy"
    overall = "healthy" if all(value == "healthy" for value in checks.values()) else "degraded"
    return {"status": overall, "checks": checks}
