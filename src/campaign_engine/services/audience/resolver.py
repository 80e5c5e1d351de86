"""Audience resolution against the live customer population."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from campaign_engine.domain.audience import (
    AllCustomers,
    AudienceSpec,
    CustomFilter,
    InactiveSince,
    LocationRadius,
    Tagged,
    UnsupportedAudience,
    WalletRange,
)
from campaign_engine.models.campaign import CampaignChannelEnum
from campaign_engine.models.customer import Customer, CustomerTag, CustomerTagAssignment


_CONSENT_COLUMNS = {
    CampaignChannelEnum.PUSH: Customer.consent_push,
    CampaignChannelEnum.WHATSAPP: Customer.consent_whatsapp,
    CampaignChannelEnum.EMAIL: Customer.consent_email,
    CampaignChannelEnum.SMS: Customer.consent_sms,
}


def consent_clause(channel: CampaignChannelEnum) -> ColumnElement[bool]:
    """Return the consent predicate for ``channel``."""

    return _CONSENT_COLUMNS[CampaignChannelEnum(channel)].is_(True)


class AudienceResolver:
    """Count or list the customers of a restaurant matching an audience spec.

    Read-only: every call reflects the population at call time.
    """

    def __init__(self, session: AsyncSession, *, now: datetime | None = None) -> None:
        self._session = session
        self._now = now

    async def count(
        self,
        restaurant_id: UUID,
        spec: AudienceSpec,
        *,
        channel: CampaignChannelEnum | None = None,
    ) -> int:
        if not await self._has_customers(restaurant_id):
            return 0

        criteria = self._criteria(restaurant_id, spec)
        if criteria is None:
            return 0
        if channel is not None:
            criteria = and_(criteria, consent_clause(channel))

        stmt = select(func.count(func.distinct(Customer.id))).where(criteria)
        result = await self._session.execute(stmt)
        count = int(result.scalar_one() or 0)
        logger.debug(
            "Resolved audience size",
            restaurant_id=str(restaurant_id),
            audience=type(spec).__name__,
            channel=channel.value if channel else None,
            count=count,
        )
        return count

    async def members(
        self,
        restaurant_id: UUID,
        spec: AudienceSpec,
        *,
        channel: CampaignChannelEnum | None = None,
        limit: int | None = None,
    ) -> list[Customer]:
        if not await self._has_customers(restaurant_id):
            return []

        stmt = self._member_query(restaurant_id, spec, channel=channel)
        if stmt is None:
            return []
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def member_ids(
        self,
        restaurant_id: UUID,
        spec: AudienceSpec,
        *,
        channel: CampaignChannelEnum | None = None,
    ) -> list[UUID]:
        members = await self.members(restaurant_id, spec, channel=channel)
        return [member.id for member in members]

    def _member_query(
        self,
        restaurant_id: UUID,
        spec: AudienceSpec,
        *,
        channel: CampaignChannelEnum | None,
    ) -> Select | None:
        criteria = self._criteria(restaurant_id, spec)
        if criteria is None:
            return None
        if channel is not None:
            criteria = and_(criteria, consent_clause(channel))
        return select(Customer).where(criteria).order_by(Customer.created_at.asc(), Customer.id.asc())

    def _criteria(self, restaurant_id: UUID, spec: AudienceSpec) -> ColumnElement[bool] | None:
        """Build the WHERE clause for ``spec``; ``None`` means the audience is empty."""

        in_scope = Customer.restaurant_id == restaurant_id

        if isinstance(spec, AllCustomers):
            return in_scope

        if isinstance(spec, Tagged):
            if not spec.tag_ids:
                return None
            tagged_customers = (
                select(CustomerTagAssignment.customer_id)
                .join(CustomerTag, CustomerTag.id == CustomerTagAssignment.tag_id)
                .where(
                    CustomerTagAssignment.tag_id.in_(tuple(spec.tag_ids)),
                    CustomerTag.restaurant_id == restaurant_id,
                )
            )
            return and_(in_scope, Customer.id.in_(tagged_customers))

        if isinstance(spec, InactiveSince):
            cutoff = self._current_time() - timedelta(days=spec.days)
            return and_(
                in_scope,
                or_(Customer.last_visit_at.is_(None), Customer.last_visit_at < cutoff),
            )

        if isinstance(spec, WalletRange):
            clauses = [in_scope, Customer.total_points >= spec.min_points]
            if spec.max_points is not None:
                clauses.append(Customer.total_points <= spec.max_points)
            return and_(*clauses)

        if isinstance(spec, CustomFilter):
            predicate = spec.predicate
            if predicate is None:
                return None
            if callable(predicate) and not isinstance(predicate, ColumnElement):
                predicate = predicate(Customer)
            return and_(in_scope, predicate)

        if isinstance(spec, LocationRadius):
            logger.warning(
                "Location radius audiences are not supported yet",
                restaurant_id=str(restaurant_id),
            )
            return None

        if isinstance(spec, UnsupportedAudience):
            return None

        raise TypeError(f"Unhandled audience spec: {spec!r}")

    async def _has_customers(self, restaurant_id: UUID) -> bool:
        stmt = select(Customer.id).where(Customer.restaurant_id == restaurant_id).limit(1)
        result = await self._session.execute(stmt)
        return result.first() is not None

    def _current_time(self) -> datetime:
        return self._now or datetime.now(timezone.utc)


async def resolve_audience_ids(
    session: AsyncSession,
    restaurant_id: UUID,
    spec: AudienceSpec,
    *,
    channels: Sequence[CampaignChannelEnum] = (),
    now: datetime | None = None,
) -> dict[UUID, CampaignChannelEnum | None]:
    """Map each member to the first channel in ``channels`` they consent to.

    Members consenting to none of the channels are omitted. With no channels
    every member is returned mapped to ``None``.
    """

    resolver = AudienceResolver(session, now=now)
    if not channels:
        return {customer_id: None for customer_id in await resolver.member_ids(restaurant_id, spec)}

    assigned: dict[UUID, CampaignChannelEnum | None] = {}
    for channel in channels:
        for customer_id in await resolver.member_ids(restaurant_id, spec, channel=channel):
            assigned.setdefault(customer_id, channel)
    return assigned


__all__ = ["AudienceResolver", "consent_clause", "resolve_audience_ids"]
