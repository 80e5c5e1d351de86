"""Campaign authoring, lifecycle, audit log, and metrics endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.api.errors import to_http_exception
from campaign_engine.db.session import get_session
from campaign_engine.domain.audience import AudienceSpecError
from campaign_engine.errors import CampaignEngineError
from campaign_engine.models.campaign import (
    Campaign,
    CampaignAuditLogEntry,
    CampaignChannelEnum,
    CampaignStatusEnum,
    CampaignTypeEnum,
)
from campaign_engine.services.campaigns import (
    CampaignMetricsAggregator,
    CampaignOrchestrator,
    CampaignTransitionResult,
    metrics_payload,
)


router = APIRouter(prefix="/campaigns", tags=["campaigns"])


class CampaignMessageRequest(BaseModel):
    channel: Optional[CampaignChannelEnum] = None
    subject: Optional[str] = None
    messageTemplate: str = Field(..., min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)
    abVariant: Optional[str] = Field(None, max_length=1)


class CampaignCreateRequest(BaseModel):
    restaurantId: UUID
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    type: CampaignTypeEnum = CampaignTypeEnum.ONE_TIME
    primaryChannel: CampaignChannelEnum
    fallbackChannel: Optional[CampaignChannelEnum] = None
    audienceType: str = "all"
    audienceFilter: dict[str, Any] = Field(default_factory=dict)
    scheduledAt: Optional[datetime] = None
    abTestConfig: Optional[dict[str, Any]] = None
    recurringConfig: Optional[dict[str, Any]] = None
    messages: List[CampaignMessageRequest] = Field(default_factory=list)
    promoCodeId: Optional[UUID] = Field(None, description="Existing promo code to attach as the recipient template")
    actor: Optional[str] = None


class CampaignUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[CampaignTypeEnum] = None
    primaryChannel: Optional[CampaignChannelEnum] = None
    fallbackChannel: Optional[CampaignChannelEnum] = None
    audienceType: Optional[str] = None
    audienceFilter: Optional[dict[str, Any]] = None
    abTestConfig: Optional[dict[str, Any]] = None
    recurringConfig: Optional[dict[str, Any]] = None
    actor: Optional[str] = None


class CampaignActionRequest(BaseModel):
    actor: Optional[str] = None


class CampaignScheduleRequest(BaseModel):
    scheduledAt: datetime
    actor: Optional[str] = None


class CampaignResponse(BaseModel):
    id: UUID
    restaurantId: UUID
    name: str
    description: Optional[str]
    type: CampaignTypeEnum
    status: CampaignStatusEnum
    primaryChannel: CampaignChannelEnum
    fallbackChannel: Optional[CampaignChannelEnum]
    audienceType: str
    audienceFilter: dict[str, Any]
    estimatedAudienceSize: int
    scheduledAt: Optional[datetime]
    sentAt: Optional[datetime]
    createdBy: Optional[str]


class CampaignTransitionResponse(BaseModel):
    campaign: CampaignResponse
    auditEntryId: UUID


class CampaignDispatchResponse(CampaignTransitionResponse):
    estimatedAudienceSize: int
    recipients: int
    skipped: int
    promoCodesIssued: int
    channels: dict[str, int]


class AudiencePreviewResponse(BaseModel):
    campaignId: UUID
    count: int
    customerIds: List[UUID]


class AuditLogEntryResponse(BaseModel):
    id: UUID
    action: str
    performedBy: Optional[str]
    fromStatus: Optional[str]
    toStatus: Optional[str]
    changes: dict[str, Any]
    createdAt: datetime


class CampaignMetricsResponse(BaseModel):
    campaignId: UUID
    metrics: dict[str, Any]


_UPDATE_FIELD_MAP = {
    "name": "name",
    "description": "description",
    "type": "campaign_type",
    "primaryChannel": "primary_channel",
    "fallbackChannel": "fallback_channel",
    "audienceType": "audience_type",
    "audienceFilter": "audience_filter",
    "abTestConfig": "ab_test_config",
    "recurringConfig": "recurring_config",
}


@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    payload: CampaignCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> CampaignResponse:
    orchestrator = CampaignOrchestrator(db)
    try:
        campaign = await orchestrator.create_campaign(
            payload.restaurantId,
            name=payload.name,
            description=payload.description,
            campaign_type=payload.type,
            primary_channel=payload.primaryChannel,
            fallback_channel=payload.fallbackChannel,
            audience_type=payload.audienceType,
            audience_filter=payload.audienceFilter,
            scheduled_at=payload.scheduledAt,
            ab_test_config=payload.abTestConfig,
            recurring_config=payload.recurringConfig,
            messages=[
                {
                    "channel": message.channel or payload.primaryChannel,
                    "subject": message.subject,
                    "message_template": message.messageTemplate,
                    "variables": message.variables,
                    "ab_variant": message.abVariant,
                }
                for message in payload.messages
            ],
            promo_code_id=payload.promoCodeId,
            actor=payload.actor,
        )
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_campaign(campaign)


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> CampaignResponse:
    try:
        campaign = await CampaignOrchestrator(db).get_campaign(campaign_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_campaign(campaign)


@router.patch("/{campaign_id}", response_model=CampaignResponse)
async def update_campaign(
    campaign_id: UUID,
    payload: CampaignUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> CampaignResponse:
    """Edit a draft campaign; only supplied fields change."""

    supplied = payload.model_dump(exclude_unset=True)
    actor = supplied.pop("actor", None)
    changes = {_UPDATE_FIELD_MAP[key]: value for key, value in supplied.items()}
    try:
        campaign = await CampaignOrchestrator(db).update_campaign(campaign_id, actor=actor, **changes)
    except (ValueError, AudienceSpecError) as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_campaign(campaign)


@router.post("/{campaign_id}/estimate", response_model=CampaignResponse)
async def refresh_campaign_estimate(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> CampaignResponse:
    orchestrator = CampaignOrchestrator(db)
    try:
        await orchestrator.refresh_estimate(campaign_id)
        campaign = await orchestrator.get_campaign(campaign_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_campaign(campaign)


@router.post("/{campaign_id}/preview", response_model=AudiencePreviewResponse)
async def preview_campaign_audience(
    campaign_id: UUID,
    payload: CampaignActionRequest | None = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
) -> AudiencePreviewResponse:
    try:
        preview = await CampaignOrchestrator(db).preview_audience(
            campaign_id, actor=payload.actor if payload else None, limit=limit
        )
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return AudiencePreviewResponse(
        campaignId=preview.campaign_id,
        count=preview.count,
        customerIds=[customer.id for customer in preview.customers],
    )


@router.post("/{campaign_id}/schedule", response_model=CampaignTransitionResponse)
async def schedule_campaign(
    campaign_id: UUID,
    payload: CampaignScheduleRequest,
    db: AsyncSession = Depends(get_session),
) -> CampaignTransitionResponse:
    try:
        result = await CampaignOrchestrator(db).schedule(campaign_id, payload.scheduledAt, payload.actor)
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_transition(result)


@router.post("/{campaign_id}/unschedule", response_model=CampaignTransitionResponse)
async def unschedule_campaign(
    campaign_id: UUID,
    payload: CampaignActionRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> CampaignTransitionResponse:
    try:
        result = await CampaignOrchestrator(db).unschedule(campaign_id, payload.actor if payload else None)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_transition(result)


@router.post("/{campaign_id}/dispatch", response_model=CampaignDispatchResponse)
async def dispatch_campaign(
    campaign_id: UUID,
    payload: CampaignActionRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> CampaignDispatchResponse:
    """Start sending: scheduled campaigns once due, one-time drafts immediately."""

    try:
        outcome = await CampaignOrchestrator(db).dispatch(campaign_id, payload.actor if payload else None)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return CampaignDispatchResponse(
        campaign=_serialize_campaign(outcome.campaign),
        auditEntryId=outcome.entry.id,
        estimatedAudienceSize=outcome.estimated_audience_size,
        recipients=outcome.recipients,
        skipped=outcome.skipped,
        promoCodesIssued=outcome.promo_codes_issued,
        channels=outcome.channels,
    )


@router.post("/{campaign_id}/pause", response_model=CampaignTransitionResponse)
async def pause_campaign(
    campaign_id: UUID,
    payload: CampaignActionRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> CampaignTransitionResponse:
    try:
        result = await CampaignOrchestrator(db).pause(campaign_id, payload.actor if payload else None)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_transition(result)


@router.post("/{campaign_id}/resume", response_model=CampaignTransitionResponse)
async def resume_campaign(
    campaign_id: UUID,
    payload: CampaignActionRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> CampaignTransitionResponse:
    try:
        result = await CampaignOrchestrator(db).resume(campaign_id, payload.actor if payload else None)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_transition(result)


@router.post("/{campaign_id}/cancel", response_model=CampaignTransitionResponse)
async def cancel_campaign(
    campaign_id: UUID,
    payload: CampaignActionRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> CampaignTransitionResponse:
    try:
        result = await CampaignOrchestrator(db).cancel(campaign_id, payload.actor if payload else None)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_transition(result)


@router.post("/{campaign_id}/complete", response_model=CampaignResponse)
async def complete_campaign(
    campaign_id: UUID,
    payload: CampaignActionRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> CampaignResponse:
    """Close the campaign if every send has reached a terminal status."""

    orchestrator = CampaignOrchestrator(db)
    try:
        await orchestrator.complete_if_finished(campaign_id, payload.actor if payload else None)
        campaign = await orchestrator.get_campaign(campaign_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_campaign(campaign)


@router.get("/{campaign_id}/audit-log", response_model=List[AuditLogEntryResponse])
async def list_campaign_audit_log(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[AuditLogEntryResponse]:
    try:
        entries = await CampaignOrchestrator(db).list_audit_log(campaign_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return [_serialize_audit_entry(entry) for entry in entries]


@router.get("/{campaign_id}/metrics", response_model=CampaignMetricsResponse)
async def get_campaign_metrics(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> CampaignMetricsResponse:
    aggregator = CampaignMetricsAggregator(db)
    try:
        metrics = await aggregator.get_metrics(campaign_id)
        if metrics is None:
            metrics = await aggregator.recompute(campaign_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return CampaignMetricsResponse(campaignId=campaign_id, metrics=metrics_payload(metrics))


@router.post("/{campaign_id}/metrics", response_model=CampaignMetricsResponse)
async def recompute_campaign_metrics(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> CampaignMetricsResponse:
    try:
        metrics = await CampaignMetricsAggregator(db).recompute(campaign_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return CampaignMetricsResponse(campaignId=campaign_id, metrics=metrics_payload(metrics))


def _serialize_campaign(campaign: Campaign) -> CampaignResponse:
    return CampaignResponse(
        id=campaign.id,
        restaurantId=campaign.restaurant_id,
        name=campaign.name,
        description=campaign.description,
        type=campaign.campaign_type,
        status=campaign.status,
        primaryChannel=campaign.primary_channel,
        fallbackChannel=campaign.fallback_channel,
        audienceType=campaign.audience_type,
        audienceFilter=campaign.audience_filter or {},
        estimatedAudienceSize=campaign.estimated_audience_size or 0,
        scheduledAt=campaign.scheduled_at,
        sentAt=campaign.sent_at,
        createdBy=campaign.created_by,
    )


def _serialize_transition(result: CampaignTransitionResult) -> CampaignTransitionResponse:
    return CampaignTransitionResponse(
        campaign=_serialize_campaign(result.campaign),
        auditEntryId=result.entry.id,
    )


def _serialize_audit_entry(entry: CampaignAuditLogEntry) -> AuditLogEntryResponse:
    return AuditLogEntryResponse(
        id=entry.id,
        action=entry.action.value,
        performedBy=entry.performed_by,
        fromStatus=entry.from_status,
        toStatus=entry.to_status,
        changes=entry.changes or {},
        createdAt=entry.created_at,
    )
