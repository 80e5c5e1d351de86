from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from campaign_engine.models import (
    Campaign,
    CampaignAuditLogEntry,
    CampaignChannelEnum,
    CampaignSend,
    CampaignStatusEnum,
    CampaignTypeEnum,
)
from campaign_engine.services.campaigns import CampaignOrchestrator
from campaign_engine.workers.campaign_dispatch import CampaignDispatchWorker


NOW = datetime(2026, 8, 14, 8, 30, tzinfo=timezone.utc)


async def _scheduled_campaign(session, restaurant_id, *, name: str, at: datetime):
    orchestrator = CampaignOrchestrator(session, now=NOW)
    campaign = await orchestrator.create_campaign(
        restaurant_id,
        name=name,
        campaign_type=CampaignTypeEnum.SCHEDULED,
        primary_channel=CampaignChannelEnum.EMAIL,
    )
    await orchestrator.schedule(campaign.id, at, actor="owner")
    return campaign.id


@pytest.mark.asyncio
async def test_worker_dispatches_due_campaigns_and_refreshes_metrics(session_factory, make_customer):
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add_all([make_customer(restaurant_id), make_customer(restaurant_id)])
        await session.commit()
        due_id = await _scheduled_campaign(session, restaurant_id, name="Breakfast", at=NOW + timedelta(minutes=5))
        future_id = await _scheduled_campaign(session, restaurant_id, name="Dinner", at=NOW + timedelta(hours=9))

    worker = CampaignDispatchWorker(
        session_factory,
        interval_seconds=1,
        batch_size=10,
        trigger_label="unit-default",
    )

    summary = await worker.run_once(now=NOW + timedelta(minutes=10), triggered_by="unit-test")
    assert summary == {"dispatched": 1, "failed": 0, "completed": 0, "refreshed": 1}

    async with session_factory() as session:
        due = await session.get(Campaign, due_id)
        future = await session.get(Campaign, future_id)
        assert due.status == CampaignStatusEnum.SENDING
        assert future.status == CampaignStatusEnum.SCHEDULED

        sends = (
            await session.execute(select(CampaignSend).where(CampaignSend.campaign_id == due_id))
        ).scalars().all()
        assert len(sends) == 2

        entry = (
            await session.execute(
                select(CampaignAuditLogEntry).where(
                    CampaignAuditLogEntry.campaign_id == due_id,
                    CampaignAuditLogEntry.to_status == "sending",
                )
            )
        ).scalar_one()
        assert entry.performed_by == "unit-test"


@pytest.mark.asyncio
async def test_worker_completes_campaign_without_pending_sends(session_factory):
    async with session_factory() as session:
        campaign_id = await _scheduled_campaign(session, uuid4(), name="Empty room", at=NOW + timedelta(minutes=1))

    worker = CampaignDispatchWorker(session_factory, interval_seconds=1, batch_size=10)

    summary = await worker.run_once(now=NOW + timedelta(minutes=2))
    assert summary["dispatched"] == 1
    assert summary["completed"] == 1

    async with session_factory() as session:
        campaign = await session.get(Campaign, campaign_id)
        assert campaign.status == CampaignStatusEnum.SENT
        assert campaign.sent_at is not None

    second = await worker.run_once(now=NOW + timedelta(minutes=3))
    assert second == {"dispatched": 0, "failed": 0, "completed": 0, "refreshed": 0}


@pytest.mark.asyncio
async def test_worker_counts_malformed_audience_and_keeps_sweeping(session_factory, make_customer):
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add(make_customer(restaurant_id))
        await session.commit()
        broken_id = await _scheduled_campaign(session, restaurant_id, name="Broken", at=NOW + timedelta(minutes=1))
        healthy_id = await _scheduled_campaign(session, restaurant_id, name="Healthy", at=NOW + timedelta(minutes=2))
        await session.execute(
            update(Campaign)
            .where(Campaign.id == broken_id)
            .values(audience_type="wallet_status", audience_filter={"min_points": "lots"})
        )
        await session.commit()

    worker = CampaignDispatchWorker(session_factory, interval_seconds=1, batch_size=10)

    summary = await worker.run_once(now=NOW + timedelta(minutes=5))
    assert summary["dispatched"] == 1
    assert summary["failed"] == 1

    async with session_factory() as session:
        broken = await session.get(Campaign, broken_id)
        healthy = await session.get(Campaign, healthy_id)
        assert broken.status == CampaignStatusEnum.SCHEDULED
        assert healthy.status == CampaignStatusEnum.SENDING

    second = await worker.run_once(now=NOW + timedelta(minutes=6))
    assert second["failed"] == 1
    assert second["dispatched"] == 0


@pytest.mark.asyncio
async def test_worker_start_and_stop(session_factory):
    worker = CampaignDispatchWorker(session_factory, interval_seconds=60, batch_size=5)

    worker.start()
    assert worker.is_running is True

    await worker.stop()
    assert worker.is_running is False
