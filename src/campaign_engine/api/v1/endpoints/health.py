"""Liveness and readiness probes."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.core.settings import settings
from campaign_engine.db.session import get_session
from campaign_engine.models.campaign import Campaign
from campaign_engine.models.promo import PromoCode


router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error", "degraded"]
OverallState = Literal["ready", "degraded", "error"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = Field(default=None, description="Human readable status detail")
    lastRunAt: datetime | None = None
    lastSummary: Dict[str, int] | None = None


class ReadinessPayload(BaseModel):
    status: OverallState
    components: Dict[str, ComponentStatus]


async def _database_status(session: AsyncSession) -> ComponentStatus:
    # Touching both core tables also catches an unmigrated database.
    try:
        await session.execute(select(Campaign.id).limit(1))
        await session.execute(select(PromoCode.id).limit(1))
    except SQLAlchemyError as error:
        logger.error("Database readiness probe failed", error=str(error))
        return ComponentStatus(status="error", detail="Database unreachable or schema missing")
    return ComponentStatus(status="ready")


def _dispatch_status(request: Request) -> ComponentStatus:
    worker = getattr(request.app.state, "campaign_dispatch_worker", None)
    if not settings.campaign_dispatch_worker_enabled or worker is None:
        return ComponentStatus(status="disabled", detail="Campaign dispatch worker disabled via settings")
    if not worker.is_running:
        return ComponentStatus(status="starting", detail="Campaign dispatch worker not running")
    summary = worker.last_summary
    status: ComponentState = "degraded" if summary and summary.get("failed") else "ready"
    return ComponentStatus(status=status, lastRunAt=worker.last_run_at, lastSummary=summary)


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components = {
        "database": await _database_status(session),
        "campaign_dispatch": _dispatch_status(request),
    }
    states = {component.status for component in components.values()}
    overall: OverallState = "ready"
    if "error" in states:
        overall = "error"
    elif states & {"degraded", "starting"}:
        overall = "degraded"
    return ReadinessPayload(status=overall, components=components)
