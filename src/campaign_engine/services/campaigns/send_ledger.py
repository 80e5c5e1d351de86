"""Per-recipient send records written during dispatch and updated by delivery."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.models.campaign import (
    Campaign,
    CampaignChannelEnum,
    CampaignSend,
    CampaignSendStatusEnum,
    CampaignStatusEnum,
    TERMINAL_SEND_STATUSES,
)
from campaign_engine.services.campaigns.errors import (
    CampaignDispatchHaltedError,
    CampaignNotFoundError,
    CampaignSendNotFoundError,
)
from campaign_engine.services.customers import require_customer


EngagementEvent = Literal["opened", "clicked"]
ENGAGEMENT_EVENTS: frozenset[str] = frozenset({"opened", "clicked"})

HALTED_CAMPAIGN_STATUSES = frozenset({CampaignStatusEnum.CANCELLED, CampaignStatusEnum.SENT})

# Delivery callbacks can arrive out of order; a send never moves back down this ladder.
_STATUS_RANK: dict[CampaignSendStatusEnum, int] = {
    CampaignSendStatusEnum.PENDING: 0,
    CampaignSendStatusEnum.SENT: 1,
    CampaignSendStatusEnum.DELIVERED: 2,
    CampaignSendStatusEnum.FAILED: 3,
    CampaignSendStatusEnum.BOUNCED: 3,
}


class CampaignSendLedger:
    """Create and mutate ``CampaignSend`` rows, one per (campaign, customer)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_send(
        self,
        campaign_id: UUID,
        customer_id: UUID,
        channel: CampaignChannelEnum,
        *,
        promo_code: str | None = None,
        ab_variant: str | None = None,
        commit: bool = True,
    ) -> CampaignSend:
        """Record the outbound attempt, returning the existing row on repeats."""

        campaign = await self._session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status in HALTED_CAMPAIGN_STATUSES:
            raise CampaignDispatchHaltedError(campaign_id, campaign.status)
        await require_customer(self._session, campaign.restaurant_id, customer_id)

        existing = await self.get_for_customer(campaign_id, customer_id)
        if existing is not None:
            return existing

        send = CampaignSend(
            campaign_id=campaign_id,
            customer_id=customer_id,
            channel_used=CampaignChannelEnum(channel),
            status=CampaignSendStatusEnum.PENDING,
            promo_code_assigned=promo_code,
            ab_variant=ab_variant,
        )
        self._session.add(send)
        if not commit:
            await self._session.flush()
            return send

        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            existing = await self.get_for_customer(campaign_id, customer_id)
            if existing is None:
                raise
            logger.debug(
                "Campaign send already recorded by a concurrent writer",
                campaign_id=str(campaign_id),
                customer_id=str(customer_id),
            )
            return existing
        return send

    async def update_status(
        self,
        send_id: UUID,
        status: CampaignSendStatusEnum | EngagementEvent | str,
        *,
        timestamp: datetime | None = None,
        error_message: str | None = None,
    ) -> CampaignSend:
        """Apply a delivery outcome or an engagement event to a send row."""

        send = await self._session.get(CampaignSend, send_id)
        if send is None:
            raise CampaignSendNotFoundError(f"Campaign send {send_id} not found")

        occurred_at = timestamp or datetime.now(timezone.utc)
        raw_status = status.value if isinstance(status, CampaignSendStatusEnum) else str(status)

        if raw_status in ENGAGEMENT_EVENTS:
            self._apply_engagement(send, raw_status, occurred_at)
        else:
            self._apply_status(send, CampaignSendStatusEnum(raw_status), occurred_at, error_message)

        await self._session.commit()
        logger.info(
            "Campaign send updated",
            send_id=str(send.id),
            campaign_id=str(send.campaign_id),
            event=raw_status,
            status=send.status.value,
        )
        return send

    async def get_for_customer(self, campaign_id: UUID, customer_id: UUID) -> CampaignSend | None:
        stmt = select(CampaignSend).where(
            CampaignSend.campaign_id == campaign_id,
            CampaignSend.customer_id == customer_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_sends(
        self,
        campaign_id: UUID,
        status: CampaignSendStatusEnum | None = None,
    ) -> Sequence[CampaignSend]:
        stmt = select(CampaignSend).where(CampaignSend.campaign_id == campaign_id)
        if status is not None:
            stmt = stmt.where(CampaignSend.status == status)
        stmt = stmt.order_by(CampaignSend.created_at.asc(), CampaignSend.id.asc())
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def customer_ids(self, campaign_id: UUID) -> set[UUID]:
        stmt = select(CampaignSend.customer_id).where(CampaignSend.campaign_id == campaign_id)
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def pending_count(self, campaign_id: UUID) -> int:
        stmt = select(func.count(CampaignSend.id)).where(
            CampaignSend.campaign_id == campaign_id,
            CampaignSend.status.not_in(TERMINAL_SEND_STATUSES),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    def _apply_engagement(send: CampaignSend, event: str, occurred_at: datetime) -> None:
        if event == "opened":
            if send.opened_at is None:
                send.opened_at = occurred_at
            return
        if send.clicked_at is None:
            send.clicked_at = occurred_at
        # A click implies the message was opened.
        if send.opened_at is None:
            send.opened_at = occurred_at

    @staticmethod
    def _apply_status(
        send: CampaignSend,
        status: CampaignSendStatusEnum,
        occurred_at: datetime,
        error_message: str | None,
    ) -> None:
        current = send.status or CampaignSendStatusEnum.PENDING
        if _STATUS_RANK[status] < _STATUS_RANK[current] or (
            _STATUS_RANK[current] == 3 and status != current
        ):
            logger.debug(
                "Ignoring stale campaign send status",
                send_id=str(send.id),
                current=current.value,
                requested=status.value,
            )
            return

        send.status = status
        if status in (CampaignSendStatusEnum.SENT, CampaignSendStatusEnum.DELIVERED) and send.sent_at is None:
            send.sent_at = occurred_at
        if status == CampaignSendStatusEnum.DELIVERED and send.delivered_at is None:
            send.delivered_at = occurred_at
        if status in (CampaignSendStatusEnum.FAILED, CampaignSendStatusEnum.BOUNCED):
            send.error_message = error_message or send.error_message


__all__ = ["CampaignSendLedger", "ENGAGEMENT_EVENTS", "HALTED_CAMPAIGN_STATUSES"]
