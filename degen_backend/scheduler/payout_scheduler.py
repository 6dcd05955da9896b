"""
Daily payout scheduler.

Runs one payout cycle per day at the configured UTC hour and keeps run
statistics for monitoring. Cycles can also be triggered manually.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from degen_backend.core.config import Settings, settings
from degen_backend.core.exceptions import InsufficientPool
from degen_backend.models.base import utcnow
from degen_backend.services.payout_service import PayoutCycleResult, PayoutService


logger = structlog.get_logger(__name__)


class SchedulerStatus(Enum):
    """Status of the payout scheduler."""
    STOPPED = "stopped"
    WAITING = "waiting"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass
class SchedulerStats:
    """Statistics for scheduler operations."""
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    total_runs: int = 0
    successful_runs: int = 0
    skipped_runs: int = 0
    failed_runs: int = 0
    last_cycle_id: Optional[int] = None
    last_skip_reason: Optional[str] = None
    uptime_start: Optional[datetime] = None


class PayoutScheduler:
    """Runs the payout cycle once a day at ``payout_schedule_utc_hour``."""

    def __init__(self, payout_service: PayoutService, config: Optional[Settings] = None):
        config = config or settings
        self.payout_service = payout_service
        self.enabled = config.scheduler_enabled
        self.utc_hour = config.payout_schedule_utc_hour
        self.check_interval = config.scheduler_check_interval

        self.status = SchedulerStatus.STOPPED
        self.stats = SchedulerStats(uptime_start=utcnow())
        self._should_stop = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._run_lock = asyncio.Lock()

        self.logger = logger.bind(service="payout_scheduler")

    def calculate_next_run_time(self, now: Optional[datetime] = None) -> datetime:
        """Next occurrence of the scheduled hour (naive UTC)."""
        now = now or utcnow()
        next_run = now.replace(hour=self.utc_hour, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return next_run

    def should_run(self, now: Optional[datetime] = None) -> bool:
        """True inside the scheduled hour if no cycle has run today."""
        now = now or utcnow()
        if now.hour != self.utc_hour:
            return False
        if self.stats.last_run is None:
            return True
        return self.stats.last_run.date() < now.date()

    async def start(self) -> None:
        """Start the payout scheduler."""
        if not self.enabled:
            self.logger.info("Payout scheduler is disabled")
            return

        if self.status != SchedulerStatus.STOPPED:
            self.logger.warning("Scheduler already running", current_status=self.status.value)
            return

        await self._restore_last_run()

        self._should_stop = False
        self.status = SchedulerStatus.WAITING
        self.stats.next_run = self.calculate_next_run_time()
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())

        self.logger.info("Payout scheduler started", next_run=self.stats.next_run.isoformat())

    async def _restore_last_run(self) -> None:
        """Seed last_run from the latest scheduled cycle in the database."""
        last_cycle = await self.payout_service.last_cycle_at(triggered_by="scheduler")
        if last_cycle and (self.stats.last_run is None or last_cycle > self.stats.last_run):
            self.stats.last_run = last_cycle
            self.logger.info("Restored last scheduled run", last_run=last_cycle.isoformat())

    async def stop(self) -> None:
        """Stop the payout scheduler."""
        if self.status == SchedulerStatus.STOPPED:
            return

        self._should_stop = True
        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass

        self.status = SchedulerStatus.STOPPED
        self.logger.info("Payout scheduler stopped")

    async def _scheduler_loop(self) -> None:
        while not self._should_stop:
            try:
                if self.should_run():
                    await self._run_cycle("scheduler")
                self.stats.next_run = self.calculate_next_run_time()
                await asyncio.sleep(self.check_interval)

            except asyncio.CancelledError:
                self.logger.info("Scheduler loop cancelled")
                break

            except Exception as e:
                self.logger.error("Error in scheduler loop", error=str(e))
                self.status = SchedulerStatus.ERROR
                await asyncio.sleep(self.check_interval)
                self.status = SchedulerStatus.WAITING

    async def _run_cycle(self, triggered_by: str) -> Optional[PayoutCycleResult]:
        """Run one cycle and record the outcome. Skips are not failures."""
        async with self._run_lock:
            previous_status = self.status
            self.status = SchedulerStatus.PROCESSING
            self.stats.total_runs += 1

            try:
                result = await self.payout_service.run_payout_cycle(triggered_by=triggered_by)
            except InsufficientPool as e:
                self.stats.last_run = utcnow()
                self.stats.skipped_runs += 1
                self.stats.last_skip_reason = e.reason
                self.logger.info("Payout cycle skipped", reason=e.reason, triggered_by=triggered_by)
                return None
            except Exception as e:
                self.stats.failed_runs += 1
                self.logger.error("Payout cycle failed", error=str(e), triggered_by=triggered_by)
                raise
            finally:
                self.status = previous_status

            self.stats.last_run = utcnow()
            self.stats.successful_runs += 1
            self.stats.last_cycle_id = result.cycle_id
            return result

    async def trigger_manual_run(self, triggered_by: str = "admin") -> Optional[PayoutCycleResult]:
        """
        Manually trigger a payout cycle.

        Returns:
            The cycle result, or None when there was nothing to distribute.
        """
        if self._run_lock.locked():
            raise RuntimeError("Payout cycle already in progress")

        self.logger.info("Manual payout cycle triggered", triggered_by=triggered_by)
        return await self._run_cycle(triggered_by)

    async def health_check(self) -> Dict[str, Any]:
        """Report scheduler health."""
        healthy = not self.enabled or self.status in (SchedulerStatus.WAITING, SchedulerStatus.PROCESSING)
        return {
            "healthy": healthy,
            "status": self.status.value,
            "enabled": self.enabled,
            "failed_runs": self.stats.failed_runs,
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "enabled": self.enabled,
            "utc_hour": self.utc_hour,
            "last_run": self.stats.last_run.isoformat() if self.stats.last_run else None,
            "next_run": self.stats.next_run.isoformat() if self.stats.next_run else None,
            "total_runs": self.stats.total_runs,
            "successful_runs": self.stats.successful_runs,
            "skipped_runs": self.stats.skipped_runs,
            "failed_runs": self.stats.failed_runs,
            "last_cycle_id": self.stats.last_cycle_id,
            "last_skip_reason": self.stats.last_skip_reason,
        }
