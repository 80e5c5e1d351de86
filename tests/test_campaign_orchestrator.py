from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from campaign_engine.models import (
    CampaignAuditActionEnum,
    CampaignChannelEnum,
    CampaignSendStatusEnum,
    CampaignStatusEnum,
    CampaignTypeEnum,
    PromoCode,
    PromoDiscountTypeEnum,
)
from campaign_engine.services.campaigns import (
    CampaignDispatchHaltedError,
    CampaignMetricsAggregator,
    CampaignNotDueError,
    CampaignNotEditableError,
    CampaignNotFoundError,
    CampaignOrchestrator,
    CampaignSendLedger,
    InvalidCampaignTransitionError,
)
from campaign_engine.services.promotions import PromoCodeService


NOW = datetime(2026, 7, 1, 10, 0, tzinfo=timezone.utc)


async def _create(orchestrator, restaurant_id, **overrides):
    values = dict(
        name="Happy hour",
        primary_channel=CampaignChannelEnum.PUSH,
        actor="owner@example.com",
    )
    values.update(overrides)
    return await orchestrator.create_campaign(restaurant_id, **values)


def test_transition_table_matches_lifecycle() -> None:
    allowed = CampaignOrchestrator.allowed_transitions

    assert allowed(CampaignStatusEnum.DRAFT) == {
        CampaignStatusEnum.SCHEDULED,
        CampaignStatusEnum.SENDING,
        CampaignStatusEnum.CANCELLED,
    }
    assert CampaignStatusEnum.DRAFT in allowed(CampaignStatusEnum.SCHEDULED)
    assert allowed(CampaignStatusEnum.PAUSED) == {CampaignStatusEnum.SENDING, CampaignStatusEnum.CANCELLED}
    assert allowed(CampaignStatusEnum.SENT) == set()
    assert allowed(CampaignStatusEnum.CANCELLED) == set()


@pytest.mark.asyncio
async def test_create_campaign_records_estimate_and_audit_entry(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add_all([make_customer(restaurant_id, total_points=points) for points in (0, 40, 400)])
        await session.commit()

        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(
            orchestrator,
            restaurant_id,
            audience_type="wallet_status",
            audience_filter={"min_points": 10},
            messages=[{"message_template": "Double points tonight!"}],
        )

        assert campaign.status == CampaignStatusEnum.DRAFT
        assert campaign.estimated_audience_size == 2
        assert campaign.created_by == "owner@example.com"

        entries = await orchestrator.list_audit_log(campaign.id)
        assert [entry.action for entry in entries] == [CampaignAuditActionEnum.CREATED]
        assert entries[0].to_status == "draft"
        assert entries[0].performed_by == "owner@example.com"


@pytest.mark.asyncio
async def test_update_campaign_only_allowed_for_drafts(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add_all([make_customer(restaurant_id), make_customer(restaurant_id, total_points=500)])
        await session.commit()

        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, restaurant_id)
        campaign_id = campaign.id
        assert campaign.estimated_audience_size == 2

        updated = await orchestrator.update_campaign(
            campaign_id,
            actor="manager",
            name="VIP happy hour",
            audience_type="wallet_status",
            audience_filter={"min_points": 100},
        )
        assert updated.name == "VIP happy hour"
        assert updated.estimated_audience_size == 1

        entries = await orchestrator.list_audit_log(campaign_id)
        edited = entries[-1]
        assert edited.action == CampaignAuditActionEnum.EDITED
        assert edited.changes["name"] == {"from": "Happy hour", "to": "VIP happy hour"}

        await orchestrator.schedule(campaign_id, NOW + timedelta(hours=1), actor="manager")
        with pytest.raises(CampaignNotEditableError):
            await orchestrator.update_campaign(campaign_id, name="Too late")


@pytest.mark.asyncio
async def test_schedule_requires_future_time_and_unschedule_returns_to_draft(session_factory) -> None:
    async with session_factory() as session:
        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, uuid4(), campaign_type=CampaignTypeEnum.SCHEDULED)

        with pytest.raises(ValueError):
            await orchestrator.schedule(campaign.id, NOW - timedelta(minutes=1))

        scheduled = await orchestrator.schedule(campaign.id, NOW + timedelta(days=1), actor="owner")
        assert scheduled.campaign.status == CampaignStatusEnum.SCHEDULED
        assert scheduled.entry.from_status == "draft"
        assert scheduled.entry.to_status == "scheduled"

        unscheduled = await orchestrator.unschedule(campaign.id, actor="owner")
        assert unscheduled.campaign.status == CampaignStatusEnum.DRAFT
        assert unscheduled.entry.action == CampaignAuditActionEnum.UNSCHEDULED


@pytest.mark.asyncio
async def test_dispatch_honours_consent_with_fallback_channel(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        push_fan = make_customer(restaurant_id)
        email_only = make_customer(restaurant_id, consent_push=False)
        unreachable = make_customer(restaurant_id, consent_push=False, consent_email=False)
        session.add_all([push_fan, email_only, unreachable])
        await session.commit()

        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, restaurant_id, fallback_channel=CampaignChannelEnum.EMAIL)

        outcome = await orchestrator.dispatch(campaign.id, actor="owner")

        assert outcome.campaign.status == CampaignStatusEnum.SENDING
        assert outcome.estimated_audience_size == 3
        assert outcome.recipients == 2
        assert outcome.skipped == 1
        assert outcome.channels == {"push": 1, "email": 1}
        assert outcome.entry.action == CampaignAuditActionEnum.SENDING
        assert outcome.entry.changes["recipients"] == 2

        sends = await CampaignSendLedger(session).list_sends(campaign.id)
        channels = {send.customer_id: send.channel_used for send in sends}
        assert channels == {push_fan.id: CampaignChannelEnum.PUSH, email_only.id: CampaignChannelEnum.EMAIL}
        assert all(send.status == CampaignSendStatusEnum.PENDING for send in sends)

        metrics = await CampaignMetricsAggregator(session).get_metrics(campaign.id)
        assert metrics is not None
        assert metrics.total_targeted == 2


@pytest.mark.asyncio
async def test_dispatch_issues_single_use_codes_per_recipient(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add_all([make_customer(restaurant_id) for _ in range(3)])
        await session.commit()

        template = await PromoCodeService(session).create_code(
            restaurant_id,
            code="WELCOME-BACK0001",
            discount_type=PromoDiscountTypeEnum.PERCENTAGE,
            discount_value=Decimal("15"),
            min_spend=Decimal("20"),
            max_uses=100,
            valid_until=NOW + timedelta(days=14),
            valid_from=NOW - timedelta(days=1),
        )
        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, restaurant_id, promo_code_id=template.id)

        outcome = await orchestrator.dispatch(campaign.id)
        assert outcome.promo_codes_issued == 3

        sends = await CampaignSendLedger(session).list_sends(campaign.id)
        assigned = [send.promo_code_assigned for send in sends]
        assert len(set(assigned)) == 3
        assert all(code.startswith("WELCOME-") for code in assigned)

        issued = (
            await session.execute(select(PromoCode).where(PromoCode.code.in_(assigned)))
        ).scalars().all()
        assert len(issued) == 3
        for promo in issued:
            assert promo.campaign_id == campaign.id
            assert promo.max_uses == 1
            assert promo.max_uses_per_customer == 1
            assert promo.discount_value == Decimal("15")
            assert promo.min_spend == Decimal("20")


@pytest.mark.asyncio
async def test_ab_test_dispatch_alternates_variants_once_due(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add_all([make_customer(restaurant_id) for _ in range(4)])
        await session.commit()

        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(
            orchestrator,
            restaurant_id,
            campaign_type=CampaignTypeEnum.AB_TEST,
            ab_test_config={"variants": ["A", "B"], "split": 50},
        )

        with pytest.raises(InvalidCampaignTransitionError):
            await orchestrator.dispatch(campaign.id)

        await orchestrator.schedule(campaign.id, NOW + timedelta(hours=2))
        with pytest.raises(CampaignNotDueError):
            await orchestrator.dispatch(campaign.id, now=NOW + timedelta(hours=1))

        outcome = await orchestrator.dispatch(campaign.id, now=NOW + timedelta(hours=2))
        assert outcome.recipients == 4

        sends = await CampaignSendLedger(session).list_sends(campaign.id)
        variants = [send.ab_variant for send in sends]
        assert variants.count("A") == 2
        assert variants.count("B") == 2


@pytest.mark.asyncio
async def test_invalid_transitions_are_rejected(session_factory) -> None:
    async with session_factory() as session:
        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, uuid4())
        campaign_id = campaign.id

        with pytest.raises(InvalidCampaignTransitionError) as excinfo:
            await orchestrator.pause(campaign_id)
        assert str(excinfo.value) == "Cannot transition campaign from draft to paused"

        with pytest.raises(InvalidCampaignTransitionError):
            await orchestrator.resume(campaign_id)

        await orchestrator.cancel(campaign_id, actor="owner")
        for operation in (orchestrator.pause, orchestrator.cancel, orchestrator.dispatch):
            with pytest.raises(InvalidCampaignTransitionError):
                await operation(campaign_id)

        with pytest.raises(CampaignNotFoundError):
            await orchestrator.cancel(uuid4())


@pytest.mark.asyncio
async def test_dispatch_refuses_paused_campaign(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add(make_customer(restaurant_id))
        await session.commit()

        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, restaurant_id)
        campaign_id = campaign.id
        await orchestrator.dispatch(campaign_id)
        await orchestrator.pause(campaign_id, actor="owner")

        with pytest.raises(InvalidCampaignTransitionError) as excinfo:
            await orchestrator.dispatch(campaign_id, actor="scheduler")
        assert str(excinfo.value) == "Cannot transition campaign from paused to sending; use resume"
        await session.rollback()

        stored = await orchestrator.get_campaign(campaign_id)
        assert stored.status == CampaignStatusEnum.PAUSED
        actions = [entry.action for entry in await orchestrator.list_audit_log(campaign_id)]
        assert actions == [
            CampaignAuditActionEnum.CREATED,
            CampaignAuditActionEnum.SENDING,
            CampaignAuditActionEnum.PAUSED,
        ]


@pytest.mark.asyncio
async def test_pause_resume_and_cancel_halt_new_sends(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        first = make_customer(restaurant_id)
        session.add(first)
        await session.commit()
        late_arrival = make_customer(restaurant_id)

        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, restaurant_id)
        campaign_id = campaign.id
        await orchestrator.dispatch(campaign_id)

        paused = await orchestrator.pause(campaign_id, actor="owner")
        assert paused.campaign.status == CampaignStatusEnum.PAUSED
        resumed = await orchestrator.resume(campaign_id, actor="owner")
        assert resumed.campaign.status == CampaignStatusEnum.SENDING
        assert resumed.entry.action == CampaignAuditActionEnum.RESUMED

        cancelled = await orchestrator.cancel(campaign_id, actor="owner")
        assert cancelled.campaign.status == CampaignStatusEnum.CANCELLED

        session.add(late_arrival)
        await session.commit()
        with pytest.raises(CampaignDispatchHaltedError):
            await CampaignSendLedger(session).create_send(campaign_id, late_arrival.id, CampaignChannelEnum.PUSH)

        actions = [entry.action for entry in await orchestrator.list_audit_log(campaign_id)]
        assert actions == [
            CampaignAuditActionEnum.CREATED,
            CampaignAuditActionEnum.SENDING,
            CampaignAuditActionEnum.PAUSED,
            CampaignAuditActionEnum.RESUMED,
            CampaignAuditActionEnum.CANCELLED,
        ]


@pytest.mark.asyncio
async def test_complete_if_finished_waits_for_terminal_sends(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add_all([make_customer(restaurant_id), make_customer(restaurant_id)])
        await session.commit()

        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, restaurant_id)
        campaign_id = campaign.id
        await orchestrator.dispatch(campaign_id)

        assert await orchestrator.complete_if_finished(campaign_id) is False

        ledger = CampaignSendLedger(session)
        sends = await ledger.list_sends(campaign_id)
        await ledger.update_status(sends[0].id, "delivered", timestamp=NOW)
        assert await orchestrator.complete_if_finished(campaign_id) is False

        await ledger.update_status(sends[1].id, "bounced", timestamp=NOW, error_message="mailbox full")
        assert await orchestrator.complete_if_finished(campaign_id, actor="scheduler") is True

        finished = await orchestrator.get_campaign(campaign_id)
        assert finished.status == CampaignStatusEnum.SENT
        assert finished.sent_at is not None

        metrics = await CampaignMetricsAggregator(session).get_metrics(campaign_id)
        assert metrics.total_delivered == 1
        assert metrics.total_bounced == 1
        assert metrics.delivery_rate == 1.0

        assert await orchestrator.complete_if_finished(campaign_id) is False


@pytest.mark.asyncio
async def test_preview_audience_is_audited(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add_all([make_customer(restaurant_id) for _ in range(3)])
        await session.commit()

        orchestrator = CampaignOrchestrator(session, now=NOW)
        campaign = await _create(orchestrator, restaurant_id)

        preview = await orchestrator.preview_audience(campaign.id, actor="owner", limit=2)

        assert preview.count == 3
        assert len(preview.customers) == 2
        entries = await orchestrator.list_audit_log(campaign.id)
        assert entries[-1].action == CampaignAuditActionEnum.PREVIEW
        assert entries[-1].changes == {"count": 3}


@pytest.mark.asyncio
async def test_due_campaigns_lists_only_scheduled_and_due(session_factory) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        orchestrator = CampaignOrchestrator(session, now=NOW)
        soon = await _create(orchestrator, restaurant_id, name="Soon", campaign_type=CampaignTypeEnum.SCHEDULED)
        later = await _create(orchestrator, restaurant_id, name="Later", campaign_type=CampaignTypeEnum.SCHEDULED)
        await _create(orchestrator, restaurant_id, name="Draft")
        await orchestrator.schedule(soon.id, NOW + timedelta(minutes=30))
        await orchestrator.schedule(later.id, NOW + timedelta(days=2))

        due = await orchestrator.due_campaigns(NOW + timedelta(hours=1))

    assert [campaign.id for campaign in due] == [soon.id]
