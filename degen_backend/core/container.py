"""
Service container.

Builds every process-scoped resource once (database, ledger client, price
oracle and the services that use them) and hands them to the API, the
background runner and the CLI.
"""

from typing import Optional

import structlog

from degen_backend.core.config import Settings, settings
from degen_backend.core.database import Database
from degen_backend.scheduler.payout_scheduler import PayoutScheduler
from degen_backend.services.fee_watcher import FeeWatcher
from degen_backend.services.game_state_service import GameStateService
from degen_backend.services.payout_service import PayoutService
from degen_backend.services.price_oracle import PriceOracle
from degen_backend.services.score_service import ScoreService
from degen_backend.services.solana_client import SolanaClient
from degen_backend.services.settlement_worker import SettlementWorker
from degen_backend.services.threshold_engine import ThresholdEventEngine


logger = structlog.get_logger(__name__)


class ServiceContainer:
    """Owns the lifecycle of shared resources."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        database: Optional[Database] = None,
        ledger=None,
        price_oracle: Optional[PriceOracle] = None
    ):
        self.config = config or settings
        self.database = database or Database(self.config.database_url)
        self.ledger = ledger or SolanaClient(self.config)
        self.price_oracle = price_oracle or PriceOracle(self.config)
        self.threshold_engine = ThresholdEventEngine(self.database, self.config)
        self.fee_watcher = FeeWatcher(
            self.database,
            self.ledger,
            self.price_oracle,
            self.threshold_engine,
            self.config
        )
        self.settlement_worker = SettlementWorker(self.database, self.ledger, self.config)
        self.payout_service = PayoutService(
            self.database,
            self.price_oracle,
            self.settlement_worker,
            self.config
        )
        self.payout_scheduler = PayoutScheduler(self.payout_service, self.config)
        self.score_service = ScoreService(self.database)
        self.game_state = GameStateService(self.database, self.config)

        self._background_started = False

    async def init(self) -> None:
        """Open database connections and make sure the tracked wallet exists."""
        await self.database.init()
        await self.fee_watcher.ensure_aggregate()
        logger.info("Service container initialized", tracked_wallet=self.fee_watcher.address)

    async def start_background(self) -> None:
        """Start the fee watcher, the settlement worker and the payout scheduler."""
        if self.config.watcher_enabled:
            await self.fee_watcher.start()
        await self.settlement_worker.start()
        await self.payout_scheduler.start()
        self._background_started = True

    async def close(self) -> None:
        """Stop background work and release connections."""
        if self._background_started:
            await self.payout_scheduler.stop()
            await self.fee_watcher.stop()
            await self.settlement_worker.stop()
            self._background_started = False

        close = getattr(self.ledger, "close", None)
        if close is not None:
            await close()
        await self.database.close()
        logger.info("Service container closed")
