"""
Main entry point for the background worker.
Runs the fee watcher, the settlement worker and the daily payout scheduler.
"""

import asyncio
import signal
from typing import Optional

import structlog

from degen_backend.core.container import ServiceContainer
from degen_backend.core.logging import setup_logging


logger = structlog.get_logger(__name__)

HEALTH_CHECK_INTERVAL = 300  # seconds


class SchedulerMain:
    """Background service coordinator."""

    def __init__(self, container: Optional[ServiceContainer] = None):
        self.container = container
        self.running = False
        self._stop_event = asyncio.Event()
        self._health_task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        """Build and initialize the service container."""
        logger.info("Initializing background worker")
        if self.container is None:
            self.container = ServiceContainer()
        await self.container.init()
        logger.info("Background worker initialized")

    async def start(self) -> None:
        """Start every background service and block until stop() is called."""
        logger.info("Starting background worker")
        self.running = True
        await self.container.start_background()
        self._health_task = asyncio.create_task(self._periodic_health_check())
        logger.info("Background worker started")

        await self._stop_event.wait()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop background services and release resources."""
        if self.container is None:
            return

        logger.info("Stopping background worker")
        self.running = False
        self._stop_event.set()

        if self._health_task and not self._health_task.done():
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass

        await self.container.close()
        self.container = None
        logger.info("Background worker stopped")

    async def _periodic_health_check(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(HEALTH_CHECK_INTERVAL)

                database_ok = await self.container.database.health_check()
                ledger_ok = await self.container.ledger.get_health()
                scheduler_health = await self.container.payout_scheduler.health_check()

                logger.info(
                    "Worker health check",
                    database="healthy" if database_ok else "unhealthy",
                    ledger="healthy" if ledger_ok else "unhealthy",
                    payout_scheduler=scheduler_health,
                    fee_watcher=self.container.fee_watcher.get_status(),
                    settlement=self.container.settlement_worker.get_status()
                )

                if not scheduler_health["healthy"]:
                    logger.warning("Restarting payout scheduler after failed health check")
                    await self.container.payout_scheduler.stop()
                    await self.container.payout_scheduler.start()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))


async def main() -> None:
    """Run the background worker until interrupted."""
    setup_logging()

    worker = SchedulerMain()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
        except NotImplementedError:
            pass  # Windows event loops

    try:
        await worker.initialize()
        await worker.start()
    except Exception as e:
        logger.error("Background worker failed", error=str(e))
        raise
    finally:
        await worker.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
