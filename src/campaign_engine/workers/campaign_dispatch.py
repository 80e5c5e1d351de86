"""Worker that dispatches due campaigns and closes finished ones."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.core.settings import settings
from campaign_engine.domain.audience import AudienceSpecError
from campaign_engine.errors import CampaignEngineError
from campaign_engine.services.campaigns import CampaignMetricsAggregator, CampaignOrchestrator

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class CampaignDispatchWorker:
    """Periodically dispatches scheduled campaigns and completes drained ones."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.campaign_dispatch_interval_seconds
        self._batch_size = batch_size or settings.campaign_dispatch_batch_size
        self._trigger_label = trigger_label or settings.campaign_dispatch_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_run_at: datetime | None = None
        self.last_summary: Dict[str, int] | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Campaign dispatch worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Campaign dispatch worker stopped")

    async def run_once(self, *, now: datetime | None = None, triggered_by: str | None = None) -> Dict[str, int]:
        """Run one sweep: dispatch what is due, then close or refresh sending campaigns."""

        current_time = now or datetime.now(timezone.utc)
        trigger = triggered_by or self._trigger_label
        summary: Dict[str, int] = {"dispatched": 0, "failed": 0, "completed": 0, "refreshed": 0}

        session = await self._ensure_session()
        async with session as managed_session:
            orchestrator = CampaignOrchestrator(managed_session, now=current_time)
            due_ids = [campaign.id for campaign in await orchestrator.due_campaigns(limit=self._batch_size)]
            await managed_session.commit()

            for campaign_id in due_ids:
                try:
                    await orchestrator.dispatch(campaign_id, actor=trigger, now=current_time)
                except (CampaignEngineError, AudienceSpecError) as exc:
                    summary["failed"] += 1
                    logger.warning(
                        "Scheduled campaign dispatch skipped",
                        campaign_id=str(campaign_id),
                        error=str(exc),
                    )
                    await managed_session.rollback()
                    continue
                summary["dispatched"] += 1

            sending_ids = [
                campaign.id for campaign in await orchestrator.sending_campaigns(limit=self._batch_size)
            ]
            await managed_session.commit()

            aggregator = CampaignMetricsAggregator(managed_session)
            for campaign_id in sending_ids:
                if await orchestrator.complete_if_finished(campaign_id, actor=trigger, now=current_time):
                    summary["completed"] += 1
                    continue
                await aggregator.recompute(campaign_id)
                summary["refreshed"] += 1

        self.last_run_at = current_time
        self.last_summary = dict(summary)
        logger.info("Campaign dispatch sweep completed", trigger=trigger, **summary)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - loop must survive a failed sweep
                logger.exception("Campaign dispatch iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["CampaignDispatchWorker"]
