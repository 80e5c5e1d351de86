"""Send ledger endpoints used by the delivery collaborator."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.api.errors import to_http_exception
from campaign_engine.db.session import get_session
from campaign_engine.errors import CampaignEngineError
from campaign_engine.models.campaign import CampaignChannelEnum, CampaignSend, CampaignSendStatusEnum
from campaign_engine.services.campaigns import CampaignSendLedger
from campaign_engine.services.campaigns.send_ledger import ENGAGEMENT_EVENTS


router = APIRouter(tags=["campaign-sends"])


class CampaignSendCreateRequest(BaseModel):
    customerId: UUID
    channel: CampaignChannelEnum
    promoCode: Optional[str] = None
    abVariant: Optional[str] = Field(None, max_length=1)


class CampaignSendUpdateRequest(BaseModel):
    status: str = Field(..., description="pending, sent, delivered, failed, bounced, opened, or clicked")
    timestamp: Optional[datetime] = None
    errorMessage: Optional[str] = None


class CampaignSendResponse(BaseModel):
    id: UUID
    campaignId: UUID
    customerId: UUID
    channelUsed: CampaignChannelEnum
    status: CampaignSendStatusEnum
    sentAt: Optional[datetime]
    deliveredAt: Optional[datetime]
    openedAt: Optional[datetime]
    clickedAt: Optional[datetime]
    errorMessage: Optional[str]
    promoCodeAssigned: Optional[str]
    abVariant: Optional[str]


@router.post(
    "/campaigns/{campaign_id}/sends",
    response_model=CampaignSendResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_campaign_send(
    campaign_id: UUID,
    payload: CampaignSendCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> CampaignSendResponse:
    """Record an outbound attempt; repeats for the same customer return the existing row."""

    try:
        send = await CampaignSendLedger(db).create_send(
            campaign_id,
            payload.customerId,
            payload.channel,
            promo_code=payload.promoCode,
            ab_variant=payload.abVariant,
        )
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_send(send)


@router.get("/campaigns/{campaign_id}/sends", response_model=List[CampaignSendResponse])
async def list_campaign_sends(
    campaign_id: UUID,
    status_filter: Optional[CampaignSendStatusEnum] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_session),
) -> List[CampaignSendResponse]:
    sends = await CampaignSendLedger(db).list_sends(campaign_id, status=status_filter)
    return [_serialize_send(send) for send in sends]


@router.patch("/sends/{send_id}", response_model=CampaignSendResponse)
async def update_campaign_send(
    send_id: UUID,
    payload: CampaignSendUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> CampaignSendResponse:
    value = payload.status.strip().lower()
    allowed = {item.value for item in CampaignSendStatusEnum} | ENGAGEMENT_EVENTS
    if value not in allowed:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported send status: {value}")
    try:
        send = await CampaignSendLedger(db).update_status(
            send_id,
            value,
            timestamp=payload.timestamp,
            error_message=payload.errorMessage,
        )
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_send(send)


def _serialize_send(send: CampaignSend) -> CampaignSendResponse:
    return CampaignSendResponse(
        id=send.id,
        campaignId=send.campaign_id,
        customerId=send.customer_id,
        channelUsed=send.channel_used,
        status=send.status,
        sentAt=send.sent_at,
        deliveredAt=send.delivered_at,
        openedAt=send.opened_at,
        clickedAt=send.clicked_at,
        errorMessage=send.error_message,
        promoCodeAssigned=send.promo_code_assigned,
        abVariant=send.ab_variant,
    )
