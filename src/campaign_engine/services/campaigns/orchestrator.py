"""Campaign lifecycle state machine, dispatch, and audit logging."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.core.settings import settings
from campaign_engine.domain.audience import AudienceSpec, audience_from_filter
from campaign_engine.models.campaign import (
    Campaign,
    CampaignAuditActionEnum,
    CampaignAuditLogEntry,
    CampaignChannelEnum,
    CampaignMessage,
    CampaignStatusEnum,
    CampaignTypeEnum,
)
from campaign_engine.models.customer import Customer
from campaign_engine.models.promo import PromoCode
from campaign_engine.observability.campaigns import get_campaign_store
from campaign_engine.observability.tracing import campaign_span
from campaign_engine.services.audience import AudienceResolver, resolve_audience_ids
from campaign_engine.services.campaigns.errors import (
    CampaignNotDueError,
    CampaignNotEditableError,
    CampaignNotFoundError,
    InvalidCampaignTransitionError,
)
from campaign_engine.services.campaigns.metrics import CampaignMetricsAggregator
from campaign_engine.services.campaigns.send_ledger import CampaignSendLedger
from campaign_engine.services.promotions.errors import PromoCodeNotFoundError
from campaign_engine.services.promotions.generator import PromoCodeGenerator


EDITABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "campaign_type",
        "primary_channel",
        "fallback_channel",
        "audience_type",
        "audience_filter",
        "ab_test_config",
        "recurring_config",
    }
)
_AUDIENCE_FIELDS = frozenset({"audience_type", "audience_filter"})


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return value


@dataclass(slots=True)
class CampaignTransitionResult:
    """Campaign after a lifecycle change together with its audit entry."""

    campaign: Campaign
    entry: CampaignAuditLogEntry


@dataclass(slots=True)
class DispatchOutcome:
    campaign: Campaign
    entry: CampaignAuditLogEntry
    estimated_audience_size: int
    recipients: int
    skipped: int
    promo_codes_issued: int
    channels: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class AudiencePreview:
    campaign_id: UUID
    count: int
    customers: list[Customer]


class CampaignOrchestrator:
    """Owns campaign status and drives resolution, sends, and aggregation."""

    _ALLOWED_TRANSITIONS: dict[CampaignStatusEnum, set[CampaignStatusEnum]] = {
        CampaignStatusEnum.DRAFT: {
            CampaignStatusEnum.SCHEDULED,
            CampaignStatusEnum.SENDING,
            CampaignStatusEnum.CANCELLED,
        },
        CampaignStatusEnum.SCHEDULED: {
            CampaignStatusEnum.SENDING,
            CampaignStatusEnum.CANCELLED,
            CampaignStatusEnum.DRAFT,
        },
        CampaignStatusEnum.SENDING: {
            CampaignStatusEnum.SENT,
            CampaignStatusEnum.PAUSED,
            CampaignStatusEnum.CANCELLED,
        },
        CampaignStatusEnum.PAUSED: {
            CampaignStatusEnum.SENDING,
            CampaignStatusEnum.CANCELLED,
        },
        CampaignStatusEnum.SENT: set(),
        CampaignStatusEnum.CANCELLED: set(),
    }

    def __init__(self, session: AsyncSession, *, now: datetime | None = None) -> None:
        self._session = session
        self._now = now
        self._ledger = CampaignSendLedger(session)
        self._metrics = CampaignMetricsAggregator(session)

    @classmethod
    def allowed_transitions(cls, status: CampaignStatusEnum) -> set[CampaignStatusEnum]:
        return set(cls._ALLOWED_TRANSITIONS.get(status, set()))

    async def create_campaign(
        self,
        restaurant_id: UUID,
        *,
        name: str,
        primary_channel: CampaignChannelEnum,
        campaign_type: CampaignTypeEnum = CampaignTypeEnum.ONE_TIME,
        audience_type: str = "all",
        audience_filter: Mapping[str, Any] | None = None,
        fallback_channel: CampaignChannelEnum | None = None,
        description: str | None = None,
        scheduled_at: datetime | None = None,
        ab_test_config: Mapping[str, Any] | None = None,
        recurring_config: Mapping[str, Any] | None = None,
        messages: Sequence[Mapping[str, Any]] = (),
        promo_code_id: UUID | None = None,
        actor: str | None = None,
    ) -> Campaign:
        """Create a draft campaign and record its initial audience estimate."""

        if not name or not name.strip():
            raise ValueError("Campaign name is required")

        campaign = Campaign(
            restaurant_id=restaurant_id,
            name=name.strip(),
            description=description,
            campaign_type=CampaignTypeEnum(campaign_type),
            status=CampaignStatusEnum.DRAFT,
            primary_channel=CampaignChannelEnum(primary_channel),
            fallback_channel=CampaignChannelEnum(fallback_channel) if fallback_channel else None,
            audience_type=(audience_type or "all").strip().lower(),
            audience_filter=_jsonable(dict(audience_filter or {})),
            scheduled_at=_as_utc(scheduled_at),
            ab_test_config=_jsonable(dict(ab_test_config)) if ab_test_config is not None else None,
            recurring_config=_jsonable(dict(recurring_config)) if recurring_config is not None else None,
            created_by=actor,
        )
        spec = self._audience_spec(campaign)
        campaign.estimated_audience_size = await self._resolver().count(restaurant_id, spec)
        self._session.add(campaign)
        await self._session.flush()

        for message in messages:
            self._session.add(
                CampaignMessage(
                    campaign_id=campaign.id,
                    channel=CampaignChannelEnum(message.get("channel", campaign.primary_channel)),
                    subject=message.get("subject"),
                    message_template=message["message_template"],
                    variables=_jsonable(dict(message.get("variables") or {})),
                    ab_variant=message.get("ab_variant"),
                )
            )

        if promo_code_id is not None:
            await self._attach_promo(campaign, promo_code_id)

        entry = self._audit(
            campaign,
            CampaignAuditActionEnum.CREATED,
            actor,
            to_status=CampaignStatusEnum.DRAFT,
            changes={
                "name": campaign.name,
                "audience_type": campaign.audience_type,
                "estimated_audience_size": campaign.estimated_audience_size,
            },
        )
        await self._session.commit()
        await self._session.refresh(campaign)
        logger.info(
            "Created campaign",
            campaign_id=str(campaign.id),
            restaurant_id=str(restaurant_id),
            campaign_type=campaign.campaign_type.value,
            estimated_audience_size=campaign.estimated_audience_size,
            audit_entry_id=str(entry.id),
        )
        return campaign

    async def update_campaign(
        self,
        campaign_id: UUID,
        *,
        actor: str | None = None,
        **changes: Any,
    ) -> Campaign:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported campaign fields: {', '.join(sorted(unknown))}")

        campaign = await self._lock_campaign(campaign_id)
        if campaign.status != CampaignStatusEnum.DRAFT:
            raise CampaignNotEditableError(campaign_id, campaign.status)

        applied: dict[str, dict[str, Any]] = {}
        for field_name, value in changes.items():
            value = self._coerce_field(field_name, value)
            previous = getattr(campaign, field_name)
            if previous == value:
                continue
            setattr(campaign, field_name, value)
            applied[field_name] = {"from": _jsonable(previous), "to": _jsonable(value)}

        if not applied:
            await self._session.commit()
            return campaign

        if _AUDIENCE_FIELDS & set(applied):
            spec = self._audience_spec(campaign)
            campaign.estimated_audience_size = await self._resolver().count(campaign.restaurant_id, spec)

        self._audit(campaign, CampaignAuditActionEnum.EDITED, actor, changes=applied)
        await self._session.commit()
        await self._session.refresh(campaign)
        logger.info("Updated campaign", campaign_id=str(campaign.id), fields=sorted(applied))
        return campaign

    async def get_campaign(self, campaign_id: UUID) -> Campaign:
        campaign = await self._session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def refresh_estimate(self, campaign_id: UUID) -> int:
        campaign = await self.get_campaign(campaign_id)
        estimate = await self._resolver().count(campaign.restaurant_id, self._audience_spec(campaign))
        campaign.estimated_audience_size = estimate
        await self._session.commit()
        return estimate

    async def preview_audience(
        self,
        campaign_id: UUID,
        *,
        actor: str | None = None,
        limit: int = 50,
    ) -> AudiencePreview:
        campaign = await self.get_campaign(campaign_id)
        spec = self._audience_spec(campaign)
        resolver = self._resolver()
        count = await resolver.count(campaign.restaurant_id, spec)
        customers = await resolver.members(campaign.restaurant_id, spec, limit=limit)
        self._audit(campaign, CampaignAuditActionEnum.PREVIEW, actor, changes={"count": count})
        await self._session.commit()
        return AudiencePreview(campaign_id=campaign.id, count=count, customers=customers)

    async def schedule(
        self,
        campaign_id: UUID,
        scheduled_at: datetime,
        actor: str | None = None,
    ) -> CampaignTransitionResult:
        when = _as_utc(scheduled_at)
        if when is None or when <= self._current_time():
            raise ValueError("scheduled_at must be in the future")

        campaign = await self._lock_campaign(campaign_id)
        previous = campaign.status
        entry = self._transition(
            campaign,
            CampaignStatusEnum.SCHEDULED,
            action=CampaignAuditActionEnum.SCHEDULED,
            actor=actor,
            changes={"scheduled_at": when.isoformat()},
        )
        campaign.scheduled_at = when
        return await self._finish(campaign, entry, previous)

    async def unschedule(self, campaign_id: UUID, actor: str | None = None) -> CampaignTransitionResult:
        campaign = await self._lock_campaign(campaign_id)
        previous = campaign.status
        if previous != CampaignStatusEnum.SCHEDULED:
            raise InvalidCampaignTransitionError(previous, CampaignStatusEnum.DRAFT)
        entry = self._transition(
            campaign,
            CampaignStatusEnum.DRAFT,
            action=CampaignAuditActionEnum.UNSCHEDULED,
            actor=actor,
        )
        return await self._finish(campaign, entry, previous)

    async def dispatch(
        self,
        campaign_id: UUID,
        actor: str | None = None,
        *,
        now: datetime | None = None,
    ) -> DispatchOutcome:
        """Move a due campaign to ``sending`` and write its send ledger rows."""

        with campaign_span("campaign.dispatch", campaign_id=campaign_id, actor=actor) as span:
            outcome = await self._dispatch(campaign_id, actor, _as_utc(now) or self._current_time())
            span.set_attribute("campaign_engine.recipients", outcome.recipients)
            span.set_attribute("campaign_engine.skipped", outcome.skipped)
        return outcome

    async def _dispatch(
        self,
        campaign_id: UUID,
        actor: str | None,
        current_time: datetime,
    ) -> DispatchOutcome:
        campaign = await self._lock_campaign(campaign_id)
        previous = campaign.status

        if previous == CampaignStatusEnum.SCHEDULED:
            scheduled_at = _as_utc(campaign.scheduled_at)
            if scheduled_at is not None and scheduled_at > current_time:
                raise CampaignNotDueError(campaign_id, scheduled_at)
        elif previous == CampaignStatusEnum.PAUSED:
            raise InvalidCampaignTransitionError(previous, CampaignStatusEnum.SENDING, hint="use resume")
        elif previous == CampaignStatusEnum.DRAFT and campaign.campaign_type != CampaignTypeEnum.ONE_TIME:
            raise InvalidCampaignTransitionError(previous, CampaignStatusEnum.SENDING)

        entry = self._transition(
            campaign,
            CampaignStatusEnum.SENDING,
            action=CampaignAuditActionEnum.SENDING,
            actor=actor,
        )
        try:
            spec = self._audience_spec(campaign)
            estimate = await self._resolver(current_time).count(campaign.restaurant_id, spec)
            campaign.estimated_audience_size = estimate

            channels = [campaign.primary_channel]
            if campaign.fallback_channel and campaign.fallback_channel != campaign.primary_channel:
                channels.append(campaign.fallback_channel)
            assignments = await resolve_audience_ids(
                self._session, campaign.restaurant_id, spec, channels=channels, now=current_time
            )

            already_sent = await self._ledger.customer_ids(campaign.id)
            variants = await self._ab_variants(campaign)
            template = await self._promo_template(campaign)
            generator = PromoCodeGenerator(self._session) if template is not None else None

            recipients = 0
            issued = 0
            per_channel: dict[str, int] = {}
            queued = [
                (customer_id, channel)
                for customer_id, channel in assignments.items()
                if customer_id not in already_sent
            ]
            for index, (customer_id, channel) in enumerate(queued):
                promo_text = None
                if template is not None:
                    promo_text = await self._issue_recipient_code(generator, template)
                    issued += 1
                await self._ledger.create_send(
                    campaign.id,
                    customer_id,
                    channel,
                    promo_code=promo_text,
                    ab_variant=variants[index % len(variants)] if variants else None,
                    commit=False,
                )
                recipients += 1
                per_channel[channel.value] = per_channel.get(channel.value, 0) + 1

            skipped = max(0, estimate - len(assignments))
            entry.changes = _jsonable(
                {
                    "estimated_audience_size": estimate,
                    "recipients": recipients,
                    "skipped_without_consent": skipped,
                    "promo_codes_issued": issued,
                    "channels": per_channel,
                }
            )
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            logger.exception("Campaign dispatch failed", campaign_id=str(campaign_id))
            raise

        await self._session.refresh(campaign)
        get_campaign_store().record_transition(previous.value, CampaignStatusEnum.SENDING.value)
        get_campaign_store().record_dispatch(recipients=recipients, skipped=skipped)
        logger.info(
            "Campaign dispatched",
            campaign_id=str(campaign.id),
            from_status=previous.value,
            recipients=recipients,
            skipped=skipped,
            promo_codes_issued=issued,
            actor=actor,
        )
        await self._metrics.recompute(campaign.id)
        return DispatchOutcome(
            campaign=campaign,
            entry=entry,
            estimated_audience_size=estimate,
            recipients=recipients,
            skipped=skipped,
            promo_codes_issued=issued,
            channels=per_channel,
        )

    async def pause(self, campaign_id: UUID, actor: str | None = None) -> CampaignTransitionResult:
        return await self._operator_transition(
            campaign_id, CampaignStatusEnum.PAUSED, CampaignAuditActionEnum.PAUSED, actor
        )

    async def resume(self, campaign_id: UUID, actor: str | None = None) -> CampaignTransitionResult:
        campaign = await self._lock_campaign(campaign_id)
        if campaign.status != CampaignStatusEnum.PAUSED:
            raise InvalidCampaignTransitionError(campaign.status, CampaignStatusEnum.SENDING)
        previous = campaign.status
        entry = self._transition(
            campaign,
            CampaignStatusEnum.SENDING,
            action=CampaignAuditActionEnum.RESUMED,
            actor=actor,
        )
        return await self._finish(campaign, entry, previous)

    async def cancel(self, campaign_id: UUID, actor: str | None = None) -> CampaignTransitionResult:
        """Stop the campaign; redemptions already made stay valid."""

        return await self._operator_transition(
            campaign_id, CampaignStatusEnum.CANCELLED, CampaignAuditActionEnum.CANCELLED, actor
        )

    async def complete_if_finished(
        self,
        campaign_id: UUID,
        actor: str | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Mark a ``sending`` campaign as sent once no send is left pending."""

        campaign = await self._lock_campaign(campaign_id)
        if campaign.status != CampaignStatusEnum.SENDING:
            await self._session.commit()
            return False
        pending = await self._ledger.pending_count(campaign.id)
        if pending:
            await self._session.commit()
            logger.debug("Campaign still has pending sends", campaign_id=str(campaign.id), pending=pending)
            return False

        previous = campaign.status
        entry = self._transition(
            campaign,
            CampaignStatusEnum.SENT,
            action=CampaignAuditActionEnum.SENT,
            actor=actor,
        )
        campaign.sent_at = _as_utc(now) or self._current_time()
        await self._finish(campaign, entry, previous)
        await self._metrics.recompute(campaign.id)
        return True

    async def due_campaigns(self, now: datetime | None = None, *, limit: int | None = None) -> list[Campaign]:
        current_time = _as_utc(now) or self._current_time()
        stmt = (
            select(Campaign)
            .where(
                Campaign.status == CampaignStatusEnum.SCHEDULED,
                Campaign.scheduled_at.is_not(None),
                Campaign.scheduled_at <= current_time,
            )
            .order_by(Campaign.scheduled_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def sending_campaigns(self, *, limit: int | None = None) -> list[Campaign]:
        stmt = select(Campaign).where(Campaign.status == CampaignStatusEnum.SENDING).order_by(
            Campaign.updated_at.asc()
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_audit_log(self, campaign_id: UUID) -> list[CampaignAuditLogEntry]:
        await self.get_campaign(campaign_id)
        stmt = (
            select(CampaignAuditLogEntry)
            .where(CampaignAuditLogEntry.campaign_id == campaign_id)
            .order_by(CampaignAuditLogEntry.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _operator_transition(
        self,
        campaign_id: UUID,
        target: CampaignStatusEnum,
        action: CampaignAuditActionEnum,
        actor: str | None,
    ) -> CampaignTransitionResult:
        campaign = await self._lock_campaign(campaign_id)
        previous = campaign.status
        entry = self._transition(campaign, target, action=action, actor=actor)
        return await self._finish(campaign, entry, previous)

    def _transition(
        self,
        campaign: Campaign,
        target: CampaignStatusEnum,
        *,
        action: CampaignAuditActionEnum,
        actor: str | None,
        changes: Mapping[str, Any] | None = None,
    ) -> CampaignAuditLogEntry:
        current = campaign.status
        if target == current or target not in self._ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidCampaignTransitionError(current, target)
        campaign.status = target
        return self._audit(
            campaign,
            action,
            actor,
            from_status=current,
            to_status=target,
            changes=changes,
        )

    async def _finish(
        self,
        campaign: Campaign,
        entry: CampaignAuditLogEntry,
        previous: CampaignStatusEnum,
    ) -> CampaignTransitionResult:
        await self._session.commit()
        await self._session.refresh(campaign)
        get_campaign_store().record_transition(previous.value, campaign.status.value)
        logger.info(
            "Campaign status transitioned",
            campaign_id=str(campaign.id),
            from_status=previous.value,
            to_status=campaign.status.value,
            actor=entry.performed_by,
        )
        return CampaignTransitionResult(campaign=campaign, entry=entry)

    def _audit(
        self,
        campaign: Campaign,
        action: CampaignAuditActionEnum,
        actor: str | None,
        *,
        from_status: CampaignStatusEnum | None = None,
        to_status: CampaignStatusEnum | None = None,
        changes: Mapping[str, Any] | None = None,
    ) -> CampaignAuditLogEntry:
        entry = CampaignAuditLogEntry(
            campaign_id=campaign.id,
            action=action,
            performed_by=actor,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value if to_status else None,
            changes=_jsonable(dict(changes or {})),
        )
        self._session.add(entry)
        return entry

    async def _lock_campaign(self, campaign_id: UUID) -> Campaign:
        stmt = (
            select(Campaign)
            .where(Campaign.id == campaign_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        campaign = (await self._session.execute(stmt)).scalar_one_or_none()
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def _attach_promo(self, campaign: Campaign, promo_code_id: UUID) -> None:
        stmt = select(PromoCode).where(
            PromoCode.id == promo_code_id,
            PromoCode.restaurant_id == campaign.restaurant_id,
        )
        promo = (await self._session.execute(stmt)).scalar_one_or_none()
        if promo is None:
            await self._session.rollback()
            raise PromoCodeNotFoundError(f"Promo code {promo_code_id} not found")
        promo.campaign_id = campaign.id

    async def _promo_template(self, campaign: Campaign) -> PromoCode | None:
        """Return the earliest active code attached to the campaign before dispatch."""

        stmt = (
            select(PromoCode)
            .where(PromoCode.campaign_id == campaign.id, PromoCode.is_active.is_(True))
            .order_by(PromoCode.created_at.asc(), PromoCode.valid_from.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _issue_recipient_code(self, generator: PromoCodeGenerator, template: PromoCode) -> str:
        prefix = template.code.split("-", 1)[0] if "-" in template.code else template.code
        text = await generator.generate(template.restaurant_id, prefix)
        self._session.add(
            PromoCode(
                restaurant_id=template.restaurant_id,
                campaign_id=template.campaign_id,
                code=text,
                discount_type=template.discount_type,
                discount_value=template.discount_value,
                min_spend=template.min_spend,
                max_uses=1,
                max_uses_per_customer=1,
                total_uses=0,
                order_type=template.order_type,
                valid_from=template.valid_from,
                valid_until=template.valid_until,
                is_active=True,
            )
        )
        return text

    async def _ab_variants(self, campaign: Campaign) -> list[str]:
        if campaign.campaign_type != CampaignTypeEnum.AB_TEST:
            return []
        configured = (campaign.ab_test_config or {}).get("variants")
        if configured:
            return [str(variant) for variant in configured]
        stmt = (
            select(CampaignMessage.ab_variant)
            .where(CampaignMessage.campaign_id == campaign.id, CampaignMessage.ab_variant.is_not(None))
            .distinct()
            .order_by(CampaignMessage.ab_variant.asc())
        )
        result = await self._session.execute(stmt)
        from_messages = [variant for variant in result.scalars().all() if variant]
        return from_messages or list(settings.campaign_ab_variants)

    def _coerce_field(self, field_name: str, value: Any) -> Any:
        if field_name == "campaign_type":
            return CampaignTypeEnum(value)
        if field_name == "primary_channel":
            return CampaignChannelEnum(value)
        if field_name == "fallback_channel":
            return CampaignChannelEnum(value) if value else None
        if field_name == "audience_type":
            return (value or "all").strip().lower()
        if field_name in {"audience_filter", "ab_test_config", "recurring_config"}:
            return _jsonable(dict(value)) if value is not None else ({} if field_name == "audience_filter" else None)
        if field_name == "name":
            if not value or not str(value).strip():
                raise ValueError("Campaign name is required")
            return str(value).strip()
        return value

    def _audience_spec(self, campaign: Campaign) -> AudienceSpec:
        return audience_from_filter(
            campaign.audience_type,
            campaign.audience_filter,
            default_inactive_days=settings.audience_default_inactive_days,
        )

    def _resolver(self, now: datetime | None = None) -> AudienceResolver:
        return AudienceResolver(self._session, now=now or self._now)

    def _current_time(self) -> datetime:
        return _as_utc(self._now) or datetime.now(timezone.utc)


__all__ = [
    "AudiencePreview",
    "CampaignOrchestrator",
    "CampaignTransitionResult",
    "DispatchOutcome",
    "EDITABLE_FIELDS",
]
