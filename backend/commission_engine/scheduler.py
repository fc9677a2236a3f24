"""
Settlement Scheduler

Recurring availability and payout passes on an AsyncIOScheduler owned by
the app lifespan:

- availability: manual-split settlements past the hold period → available
- payout: automated-split settlements past the hold period → transferred

Both jobs run every SCHEDULER_INTERVAL_SECONDS (hourly by default), first
fire SCHEDULER_FIRST_RUN_DELAY_SECONDS after start, and never overlap
themselves.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from commission_engine.config import (
    SCHEDULER_FIRST_RUN_DELAY_SECONDS,
    SCHEDULER_INTERVAL_SECONDS,
)
from commission_engine.services.settlement_pipeline import BatchReport, SettlementPipeline

logger = logging.getLogger(__name__)

AVAILABILITY_JOB_ID = "availability"
PAYOUT_JOB_ID = "payout"


class SettlementScheduler:
    def __init__(
        self,
        pipeline: SettlementPipeline,
        interval_seconds: int = SCHEDULER_INTERVAL_SECONDS,
        first_run_delay_seconds: int = SCHEDULER_FIRST_RUN_DELAY_SECONDS,
    ):
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.first_run_delay_seconds = first_run_delay_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def start(self) -> None:
        """Schedule both jobs. Must be called from a running event loop."""
        if self.is_running:
            logger.warning("Settlement scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        first_run = datetime.now(timezone.utc) + timedelta(seconds=self.first_run_delay_seconds)

        for job_id, func in (
            (AVAILABILITY_JOB_ID, self.run_availability),
            (PAYOUT_JOB_ID, self.run_payouts),
        ):
            self._scheduler.add_job(
                func,
                "interval",
                seconds=self.interval_seconds,
                next_run_time=first_run,
                id=job_id,
                max_instances=1,
                coalesce=True,
            )

        self._scheduler.start()
        logger.info(
            f"Settlement scheduler started: every {self.interval_seconds // 60} min, "
            f"first run in {self.first_run_delay_seconds}s"
        )

    def stop(self) -> None:
        if self.is_running:
            self._scheduler.shutdown(wait=False)
            logger.info("Settlement scheduler stopped")
        self._scheduler = None

    async def run_availability(self) -> BatchReport:
        logger.info("Scheduled availability run starting")
        return await self.pipeline.run_availability_batch()

    async def run_payouts(self) -> BatchReport:
        logger.info("Scheduled payout run starting")
        return await self.pipeline.run_payout_batch()

    def status(self) -> Dict[str, Any]:
        jobs: List[Dict[str, Any]] = []
        next_run_in: Optional[int] = None

        if self._scheduler:
            now = datetime.now(timezone.utc)
            for job in self._scheduler.get_jobs():
                next_run = job.next_run_time
                jobs.append({
                    "id": job.id,
                    "next_run_time": next_run.isoformat() if next_run else None,
                })
                if next_run:
                    seconds = max(0, int((next_run - now).total_seconds()))
                    next_run_in = seconds if next_run_in is None else min(next_run_in, seconds)

        return {
            "is_running": self.is_running,
            "interval_minutes": self.interval_seconds // 60,
            "next_run_in": next_run_in,
            "jobs": jobs,
        }
