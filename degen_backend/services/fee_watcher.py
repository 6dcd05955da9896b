"""
Deposit ingestion watcher.

Polls the tracked wallet's recent transactions, records each incoming
transfer exactly once as a FeeDeposit, adds its USD value to the aggregate
and hands the aggregate to the threshold engine.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Set

import structlog
from sqlalchemy import select, update

from degen_backend.core.config import Settings, settings
from degen_backend.core.database import Database, dialect_insert
from degen_backend.core.exceptions import DatabaseError, DuplicateIgnored
from degen_backend.models.base import utcnow
from degen_backend.models.fee import FeeAggregate, FeeDeposit, TrackedWallet
from degen_backend.services.price_oracle import PriceOracle
from degen_backend.services.threshold_engine import ThresholdEventEngine


logger = structlog.get_logger(__name__)

USD_QUANTUM = Decimal("0.00000001")


@dataclass
class IngestionStats:
    """Outcome of one ingestion cycle."""
    signatures_seen: int = 0
    deposits_recorded: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: int = 0
    events_triggered: int = 0
    usd_ingested: Decimal = Decimal("0")
    aborted: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signatures_seen": self.signatures_seen,
            "deposits_recorded": self.deposits_recorded,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "errors": self.errors,
            "events_triggered": self.events_triggered,
            "usd_ingested": str(self.usd_ingested),
            "aborted": self.aborted,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class FeeWatcher:
    """
    Watches one tracked address for incoming fee transfers.

    Checks are single-flight: a request arriving while a cycle runs is folded
    into one follow-up cycle and the caller returns at once.
    """

    def __init__(
        self,
        database: Database,
        ledger,
        price_oracle: PriceOracle,
        threshold_engine: ThresholdEventEngine,
        config: Optional[Settings] = None,
        address: Optional[str] = None
    ):
        config = config or settings
        self.database = database
        self.ledger = ledger
        self.price_oracle = price_oracle
        self.threshold_engine = threshold_engine

        self.address = address or config.tracked_wallet_address
        self.currency = config.tracked_wallet_currency
        self.decimals = config.tracked_wallet_decimals
        self.poll_interval = config.watcher_poll_interval
        self.signature_limit = config.watcher_signature_limit
        self.inter_tx_delay = config.watcher_inter_tx_delay
        self.subscribe_enabled = config.watcher_subscribe_enabled

        self.wallet_id: Optional[int] = None
        self.aggregate_id: Optional[int] = None

        self._lock = asyncio.Lock()
        self._pending = False
        self._should_stop = False
        self._is_running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._subscribe_task: Optional[asyncio.Task] = None
        self._check_tasks: Set[asyncio.Task] = set()

        self.cycles_completed = 0
        self.last_stats: Optional[IngestionStats] = None

        self.logger = logger.bind(service="fee_watcher", address=self.address)

    async def ensure_aggregate(self) -> int:
        """Make sure the tracked wallet and its aggregate rows exist. Returns the aggregate id."""
        async with self.database.session() as session:
            await session.execute(
                dialect_insert(session, TrackedWallet)
                .values(address=self.address, currency=self.currency, decimals=self.decimals)
                .on_conflict_do_nothing(index_elements=["address"])
            )
            wallet_id = await session.scalar(
                select(TrackedWallet.id).where(TrackedWallet.address == self.address)
            )

            await session.execute(
                dialect_insert(session, FeeAggregate)
                .values(tracked_wallet_id=wallet_id, cumulative_usd=Decimal("0"))
                .on_conflict_do_nothing(index_elements=["tracked_wallet_id"])
            )
            aggregate_id = await session.scalar(
                select(FeeAggregate.id).where(FeeAggregate.tracked_wallet_id == wallet_id)
            )

        self.wallet_id = wallet_id
        self.aggregate_id = aggregate_id
        return aggregate_id

    async def start(self) -> None:
        """Run an initial check, then start polling and the push subscription."""
        if self._is_running:
            self.logger.warning("Fee watcher already running")
            return

        self._should_stop = False
        self._is_running = True
        await self.ensure_aggregate()

        self.logger.info(
            "🚀 Starting fee watcher",
            poll_interval=self.poll_interval,
            subscribe=self.subscribe_enabled
        )

        await self.request_check()

        self._poll_task = asyncio.create_task(self._poll_loop())
        if self.subscribe_enabled:
            self._subscribe_task = asyncio.create_task(self._subscription_loop())

    async def stop(self) -> None:
        """Stop polling and the subscription."""
        self._should_stop = True
        tasks = [t for t in (self._poll_task, self._subscribe_task, *self._check_tasks) if t]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self.logger.error("Watcher task ended with error", error=str(e))

        self._poll_task = None
        self._subscribe_task = None
        self._check_tasks.clear()
        self._is_running = False
        self.logger.info("Fee watcher stopped", cycles_completed=self.cycles_completed)

    async def request_check(self) -> Optional[IngestionStats]:
        """
        Run an ingestion cycle unless one is in flight.

        Returns the stats of the last cycle run, or None when the request was
        coalesced into the running cycle.
        """
        if self._lock.locked():
            self._pending = True
            self.logger.debug("Check already in flight, coalescing request")
            return None

        async with self._lock:
            stats = await self.run_cycle()
            while self._pending and not self._should_stop:
                self._pending = False
                stats = await self.run_cycle()
        return stats

    async def run_cycle(self) -> IngestionStats:
        """Fetch recent signatures and ingest every new incoming transfer."""
        stats = IngestionStats()

        if self.aggregate_id is None:
            await self.ensure_aggregate()

        try:
            signatures = await self.ledger.get_recent_signatures(self.address, limit=self.signature_limit)
        except Exception as e:
            stats.aborted = True
            stats.finished_at = utcnow()
            self.last_stats = stats
            self.logger.error("Failed to fetch signatures, cycle aborted", error=str(e))
            await self._check_threshold(stats)
            return stats

        stats.signatures_seen = len(signatures)

        # Ledger returns newest first; ingest in chronological order
        fetched = 0
        for signature in reversed(signatures):
            if self._should_stop:
                break
            try:
                if not await self._deposit_exists(signature):
                    if fetched and self.inter_tx_delay > 0:
                        await asyncio.sleep(self.inter_tx_delay)
                    fetched += 1
                    await self._process_signature(signature, stats)
                else:
                    stats.duplicates += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                stats.errors += 1
                self.logger.error(
                    "Failed to process transaction",
                    signature=signature,
                    error=str(e),
                    error_type=type(e).__name__
                )

        # Checked every cycle, not only after a new deposit
        await self._check_threshold(stats)

        stats.finished_at = utcnow()
        self.cycles_completed += 1
        self.last_stats = stats

        if stats.deposits_recorded or stats.errors:
            self.logger.info("✅ Ingestion cycle completed", **stats.to_dict())
        else:
            self.logger.debug("Ingestion cycle completed, nothing new", signatures_seen=stats.signatures_seen)

        return stats

    async def _deposit_exists(self, signature: str) -> bool:
        async with self.database.session() as session:
            existing = await session.scalar(
                select(FeeDeposit.id).where(FeeDeposit.chain_tx_id == signature)
            )
        return existing is not None

    async def _process_signature(self, signature: str, stats: IngestionStats) -> None:
        detail = await self.ledger.get_transaction_detail(signature)
        if detail is None or not detail.success:
            stats.skipped += 1
            return

        delta = detail.balance_delta(self.address)
        if delta <= 0:
            stats.skipped += 1
            return

        # USD value uses the rate at processing time, not at the transfer's block time
        price = await self.price_oracle.get_price()
        native_amount = Decimal(delta) / (Decimal(10) ** self.decimals)
        usd_amount = (native_amount * price).quantize(USD_QUANTUM)

        try:
            await self._record_deposit(signature, delta, native_amount, usd_amount, price)
        except DuplicateIgnored:
            stats.duplicates += 1
            self.logger.debug("Deposit recorded concurrently, skipping", signature=signature)
            return

        stats.deposits_recorded += 1
        stats.usd_ingested += usd_amount
        self.logger.info(
            "💰 Fee deposit recorded",
            signature=signature,
            lamports=delta,
            native_amount=str(native_amount),
            usd_amount=str(usd_amount),
            price_usd=str(price)
        )

    async def _check_threshold(self, stats: IngestionStats) -> None:
        try:
            events = await self.threshold_engine.check_threshold(self.aggregate_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            stats.errors += 1
            self.logger.error(
                "Threshold check failed, retrying next cycle",
                aggregate_id=self.aggregate_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return
        stats.events_triggered += len(events)

    async def _record_deposit(
        self,
        signature: str,
        raw_amount: int,
        native_amount: Decimal,
        usd_amount: Decimal,
        price: Decimal
    ) -> None:
        """Insert the deposit and increment the aggregate in one transaction."""
        async with self.database.session() as session:
            result = await session.execute(
                dialect_insert(session, FeeDeposit)
                .values(
                    chain_tx_id=signature,
                    tracked_wallet_id=self.wallet_id,
                    raw_amount=raw_amount,
                    native_amount=native_amount,
                    usd_amount=usd_amount,
                    price_usd=price
                )
                .on_conflict_do_nothing(index_elements=["chain_tx_id"])
            )
            if result.rowcount == 0:
                raise DuplicateIgnored(signature)

            result = await session.execute(
                update(FeeAggregate)
                .where(FeeAggregate.id == self.aggregate_id)
                .values(cumulative_usd=FeeAggregate.cumulative_usd + usd_amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise DatabaseError(
                    "Fee aggregate missing",
                    {"aggregate_id": self.aggregate_id, "signature": signature}
                )

    async def _poll_loop(self) -> None:
        while not self._should_stop:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.request_check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in polling loop", error=str(e))

    async def _subscription_loop(self) -> None:
        try:
            await self.ledger.subscribe_account_changes(self.address, self._on_account_change)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("Account subscription stopped, relying on polling", error=str(e))

    async def _on_account_change(self) -> None:
        """Push notification: schedule a check without blocking the stream reader."""
        if self._should_stop:
            return
        task = asyncio.create_task(self.request_check())
        self._check_tasks.add(task)
        task.add_done_callback(self._check_tasks.discard)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._is_running,
            "address": self.address,
            "aggregate_id": self.aggregate_id,
            "check_in_flight": self._lock.locked(),
            "cycles_completed": self.cycles_completed,
            "last_cycle": self.last_stats.to_dict() if self.last_stats else None,
            "subscription_active": bool(self._subscribe_task and not self._subscribe_task.done()),
        }
