"""Campaign metrics recomputed from the send ledger and promo redemptions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.models.campaign import (
    Campaign,
    CampaignMetrics,
    CampaignSend,
    CampaignSendStatusEnum,
)
from campaign_engine.models.promo import PromoCode, PromoRedemption
from campaign_engine.observability.campaigns import get_campaign_store
from campaign_engine.services.campaigns.errors import CampaignNotFoundError


_CENT = Decimal("0.01")


@dataclass(slots=True)
class CampaignMetricsValues:
    """Counters for one campaign at one snapshot."""

    total_targeted: int = 0
    total_sent: int = 0
    total_delivered: int = 0
    total_failed: int = 0
    total_bounced: int = 0
    total_opened: int = 0
    total_clicked: int = 0
    total_redemptions: int = 0
    total_discount_given: Decimal = Decimal("0.00")
    total_revenue_generated: Decimal = Decimal("0.00")
    delivery_rate: float = 0.0
    open_rate: float = 0.0
    click_rate: float = 0.0
    last_activity_at: datetime | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "total_targeted": self.total_targeted,
            "total_sent": self.total_sent,
            "total_delivered": self.total_delivered,
            "total_failed": self.total_failed,
            "total_bounced": self.total_bounced,
            "total_opened": self.total_opened,
            "total_clicked": self.total_clicked,
            "total_redemptions": self.total_redemptions,
            "total_discount_given": str(self.total_discount_given),
            "total_revenue_generated": str(self.total_revenue_generated),
            "delivery_rate": self.delivery_rate,
            "open_rate": self.open_rate,
            "click_rate": self.click_rate,
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


def _count_where(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def _ratio(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, 4)


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(_CENT)


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CampaignMetricsAggregator:
    """Overwrite the single metrics row of a campaign from source rows.

    Every counter is recomputed from scratch, so calling ``recompute`` again
    with unchanged sends produces an identical row.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def recompute(self, campaign_id: UUID) -> CampaignMetrics:
        campaign = await self._session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")

        values = await self.compute(campaign_id)
        metrics = await self._write(campaign_id, values)
        get_campaign_store().record_metrics_recompute()
        logger.info(
            "Recomputed campaign metrics",
            campaign_id=str(campaign_id),
            targeted=values.total_targeted,
            sent=values.total_sent,
            delivered=values.total_delivered,
            redemptions=values.total_redemptions,
        )
        return metrics

    async def compute(self, campaign_id: UUID) -> CampaignMetricsValues:
        """Aggregate the current sends and redemptions without writing."""

        status = CampaignSend.status
        send_stmt = select(
            func.count(CampaignSend.id),
            _count_where(status.in_([CampaignSendStatusEnum.SENT, CampaignSendStatusEnum.DELIVERED])),
            _count_where(status == CampaignSendStatusEnum.DELIVERED),
            _count_where(status == CampaignSendStatusEnum.FAILED),
            _count_where(status == CampaignSendStatusEnum.BOUNCED),
            _count_where(CampaignSend.opened_at.is_not(None)),
            _count_where(CampaignSend.clicked_at.is_not(None)),
            func.max(CampaignSend.sent_at),
            func.max(CampaignSend.delivered_at),
            func.max(CampaignSend.opened_at),
            func.max(CampaignSend.clicked_at),
        ).where(CampaignSend.campaign_id == campaign_id)
        row = tuple((await self._session.execute(send_stmt)).one())
        targeted, sent, delivered, failed, bounced, opened, clicked = (int(value or 0) for value in row[:7])

        redemption_stmt = (
            select(
                func.count(PromoRedemption.id),
                func.sum(PromoRedemption.discount_applied),
                func.sum(PromoRedemption.order_amount),
                func.max(PromoRedemption.redeemed_at),
            )
            .join(PromoCode, PromoCode.id == PromoRedemption.promo_code_id)
            .where(PromoCode.campaign_id == campaign_id)
        )
        redemptions, discount_total, revenue_total, last_redeemed_at = (
            await self._session.execute(redemption_stmt)
        ).one()

        activity = [_aware(value) for value in (*row[7:], last_redeemed_at) if value is not None]

        return CampaignMetricsValues(
            total_targeted=targeted,
            total_sent=sent,
            total_delivered=delivered,
            total_failed=failed,
            total_bounced=bounced,
            total_opened=opened,
            total_clicked=clicked,
            total_redemptions=int(redemptions or 0),
            total_discount_given=_money(discount_total),
            total_revenue_generated=_money(revenue_total),
            delivery_rate=_ratio(delivered, sent),
            open_rate=_ratio(opened, delivered),
            click_rate=_ratio(clicked, delivered),
            last_activity_at=max(activity) if activity else None,
        )

    async def get_metrics(self, campaign_id: UUID) -> CampaignMetrics | None:
        campaign = await self._session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        stmt = select(CampaignMetrics).where(CampaignMetrics.campaign_id == campaign_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _write(self, campaign_id: UUID, values: CampaignMetricsValues) -> CampaignMetrics:
        metrics = await self._load_row(campaign_id)
        if metrics is None:
            metrics = CampaignMetrics(campaign_id=campaign_id)
            self._session.add(metrics)
        self._apply(metrics, values)
        try:
            await self._session.commit()
        except IntegrityError:
            # Another recompute inserted the row first; overwrite it instead.
            await self._session.rollback()
            metrics = await self._load_row(campaign_id)
            if metrics is None:
                raise
            self._apply(metrics, values)
            await self._session.commit()
        return metrics

    async def _load_row(self, campaign_id: UUID) -> CampaignMetrics | None:
        stmt = (
            select(CampaignMetrics)
            .where(CampaignMetrics.campaign_id == campaign_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _apply(metrics: CampaignMetrics, values: CampaignMetricsValues) -> None:
        metrics.total_targeted = values.total_targeted
        metrics.total_sent = values.total_sent
        metrics.total_delivered = values.total_delivered
        metrics.total_failed = values.total_failed
        metrics.total_bounced = values.total_bounced
        metrics.total_opened = values.total_opened
        metrics.total_clicked = values.total_clicked
        metrics.total_redemptions = values.total_redemptions
        metrics.total_discount_given = values.total_discount_given
        metrics.total_revenue_generated = values.total_revenue_generated
        metrics.delivery_rate = values.delivery_rate
        metrics.open_rate = values.open_rate
        metrics.click_rate = values.click_rate
        metrics.last_activity_at = values.last_activity_at


def metrics_payload(metrics: CampaignMetrics) -> dict[str, object]:
    """Serialise a stored metrics row in the same shape as ``CampaignMetricsValues``."""

    return CampaignMetricsValues(
        total_targeted=metrics.total_targeted or 0,
        total_sent=metrics.total_sent or 0,
        total_delivered=metrics.total_delivered or 0,
        total_failed=metrics.total_failed or 0,
        total_bounced=metrics.total_bounced or 0,
        total_opened=metrics.total_opened or 0,
        total_clicked=metrics.total_clicked or 0,
        total_redemptions=metrics.total_redemptions or 0,
        total_discount_given=_money(metrics.total_discount_given),
        total_revenue_generated=_money(metrics.total_revenue_generated),
        delivery_rate=float(metrics.delivery_rate or 0.0),
        open_rate=float(metrics.open_rate or 0.0),
        click_rate=float(metrics.click_rate or 0.0),
        last_activity_at=_aware(metrics.last_activity_at),
    ).as_dict()


__all__ = ["CampaignMetricsAggregator", "CampaignMetricsValues", "metrics_payload"]
