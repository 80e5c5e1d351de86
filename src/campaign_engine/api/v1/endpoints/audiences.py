"""Audience size estimation for campaign builders."""

from __future__ import annotations

from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.core.settings import settings
from campaign_engine.db.session import get_session
from campaign_engine.domain.audience import AudienceSpecError, audience_from_filter
from campaign_engine.models.campaign import CampaignChannelEnum
from campaign_engine.services.audience import AudienceResolver


router = APIRouter(prefix="/audiences", tags=["audiences"])


class AudienceEstimateRequest(BaseModel):
    restaurantId: UUID
    audienceType: str = Field("all", description="all, tagged, last_order_date, wallet_status, ...")
    audienceFilter: dict[str, Any] = Field(default_factory=dict)
    channel: Optional[CampaignChannelEnum] = Field(None, description="Only count customers consenting to this channel")
    includeMemberIds: bool = False
    limit: int = Field(100, ge=1, le=5000)


class AudienceEstimateResponse(BaseModel):
    audienceType: str
    count: int
    memberIds: Optional[List[UUID]] = None


@router.post("/estimate", response_model=AudienceEstimateResponse)
async def estimate_audience(
    payload: AudienceEstimateRequest,
    db: AsyncSession = Depends(get_session),
) -> AudienceEstimateResponse:
    """Count the customers an audience definition currently matches."""

    try:
        spec = audience_from_filter(
            payload.audienceType,
            payload.audienceFilter,
            default_inactive_days=settings.audience_default_inactive_days,
        )
    except AudienceSpecError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error

    resolver = AudienceResolver(db)
    count = await resolver.count(payload.restaurantId, spec, channel=payload.channel)
    member_ids = None
    if payload.includeMemberIds:
        members = await resolver.members(
            payload.restaurantId,
            spec,
            channel=payload.channel,
            limit=min(payload.limit, settings.audience_member_page_limit),
        )
        member_ids = [member.id for member in members]
    return AudienceEstimateResponse(
        audienceType=payload.audienceType,
        count=count,
        memberIds=member_ids,
    )
