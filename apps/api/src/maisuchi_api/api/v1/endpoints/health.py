from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maisuchi_api.core.settings import settings
from maisuchi_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: dict[str, ComponentStatus] = {}
    overall: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail="Database unreachable")
        overall = "error"

    worker = getattr(request.app.state, "loyalty_reconciliation_worker", None)
    if settings.loyalty_reconciliation_worker_enabled and worker is not None:
        running = bool(getattr(worker, "is_running", False))
        components["loyalty_reconciliation"] = ComponentStatus(
            status="ready" if running else "starting",
            detail=None if running else "Loyalty reconciliation worker not running",
        )
        if not running and overall == "ready":
            overall = "degraded"
    else:
        components["loyalty_reconciliation"] = ComponentStatus(
            status="disabled",
            detail="Loyalty reconciliation worker disabled via settings",
        )

    return ReadinessPayload(status=overall, components=components)
