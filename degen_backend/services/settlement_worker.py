"""
Payout settlement worker.

Drains payout ids from an in-memory queue and transfers each PENDING payout
on chain. The payouts table is the durable queue: the periodic sweep
re-enqueues anything PENDING after a restart, retries FAILED payouts with
exponential backoff and flags the ones that need an operator.
"""

import asyncio
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import structlog
from sqlalchemy import select, update

from degen_backend.core.config import Settings, settings
from degen_backend.core.database import Database
from degen_backend.core.exceptions import PayoutNotFoundError, SettlementFailure, ValidationError
from degen_backend.models.base import utcnow
from degen_backend.models.payout import Payout, PayoutStatus


logger = structlog.get_logger(__name__)

INTERRUPTED_ERROR = "Settlement interrupted; transfer state unknown"


@dataclass
class SettlementStats:
    """Counters since worker start."""
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    flagged_for_review: int = 0
    sweeps: int = 0
    last_sweep: Optional[datetime] = None


@dataclass
class SweepResult:
    """What one sweep changed."""
    enqueued: List[int] = field(default_factory=list)
    retried: List[int] = field(default_factory=list)
    flagged: List[int] = field(default_factory=list)
    stale_claims: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SettlementWorker:
    """Settles payouts with bounded concurrency and durable retry."""

    def __init__(self, database: Database, ledger, config: Optional[Settings] = None):
        config = config or settings
        self.database = database
        self.ledger = ledger

        self.max_workers = config.settlement_max_workers
        self.max_attempts = config.settlement_max_attempts
        self.backoff_base = config.settlement_backoff_base
        self.backoff_max = config.settlement_backoff_max
        self.sweep_interval = config.settlement_sweep_interval
        self.claim_timeout = config.settlement_claim_timeout

        self.queue: asyncio.Queue = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(self.max_workers)
        self._inflight: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._should_stop = False

        self.stats = SettlementStats()
        self.logger = logger.bind(service="settlement_worker")

    # ------------------------------------------------------------------
    # Settlement of a single payout
    # ------------------------------------------------------------------

    async def settle(self, payout_id: int) -> PayoutStatus:
        """
        Transfer one payout.

        Returns the payout's status. A payout that is not PENDING, or that
        another worker has claimed, is returned untouched.

        Raises:
            PayoutNotFoundError: No such payout.
            SettlementFailure: Transfer failed; payout is now FAILED.
        """
        async with self.database.session() as session:
            payout = await session.get(Payout, payout_id)
            if payout is None:
                raise PayoutNotFoundError(payout_id)
            status = payout.status
            wallet = payout.player.wallet_address
            lamports = payout.amount_lamports
            previous_signature = payout.chain_tx_id

        if status != PayoutStatus.PENDING:
            self.stats.skipped += 1
            self.logger.debug("Payout not pending, skipping", payout_id=payout_id, status=status.value)
            return status

        if not await self._claim(payout_id):
            self.stats.skipped += 1
            self.logger.debug("Payout claimed elsewhere", payout_id=payout_id)
            return await self._current_status(payout_id)

        log = self.logger.bind(payout_id=payout_id, wallet=wallet, lamports=lamports)

        # A transfer from an earlier attempt may have landed after its confirmation timed out
        if previous_signature and await self._is_confirmed(previous_signature, log):
            return await self._complete(
                payout_id, previous_signature, log, "✅ Earlier transfer confirmed, payout settled"
            )

        signature = None
        try:
            signature = await self.ledger.submit_transfer(wallet, lamports)
            await self._record_signature(payout_id, signature)
            await self.ledger.confirm_transfer(signature)
        except Exception as e:
            reason = getattr(e, "message", None) or str(e) or type(e).__name__
            attempts = await self._mark_failed(payout_id, reason)
            self.stats.failed += 1
            log.warning(
                "❌ Settlement failed",
                signature=signature,
                attempt_count=attempts,
                error=reason
            )
            raise SettlementFailure(payout_id, reason, attempts) from e

        return await self._complete(payout_id, signature, log, "✅ Payout settled")

    async def _complete(self, payout_id: int, signature: str, log, message: str) -> PayoutStatus:
        if await self._mark_sent(payout_id, signature):
            self.stats.sent += 1
            log.info(message, signature=signature)
            return PayoutStatus.SENT

        # The sweep took the claim away while the transfer was in flight
        await self._record_late_transfer(payout_id, signature)
        status = await self._current_status(payout_id)
        log.error(
            "🚨 Transfer confirmed after payout left PENDING, manual review needed",
            signature=signature,
            status=status.value
        )
        return status

    async def _claim(self, payout_id: int) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(Payout)
                .where(
                    Payout.id == payout_id,
                    Payout.status == PayoutStatus.PENDING,
                    Payout.claimed_at.is_(None)
                )
                .values(claimed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _current_status(self, payout_id: int) -> PayoutStatus:
        async with self.database.session() as session:
            return await session.scalar(select(Payout.status).where(Payout.id == payout_id))

    async def _is_confirmed(self, signature: str, log) -> bool:
        try:
            await self.ledger.confirm_transfer(signature)
            return True
        except Exception as e:
            log.info("Earlier transfer not confirmed, sending again", signature=signature, error=str(e))
            return False

    async def _record_signature(self, payout_id: int, signature: str) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == PayoutStatus.PENDING)
                .values(chain_tx_id=signature)
                .execution_options(synchronize_session=False)
            )

    async def _mark_sent(self, payout_id: int, signature: str) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == PayoutStatus.PENDING)
                .values(
                    status=PayoutStatus.SENT,
                    chain_tx_id=signature,
                    claimed_at=None,
                    last_error=None
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _record_late_transfer(self, payout_id: int, signature: str) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == PayoutStatus.FAILED)
                .values(
                    chain_tx_id=signature,
                    needs_review=True,
                    last_error=f"Transfer {signature} confirmed after claim expired"
                )
                .execution_options(synchronize_session=False)
            )

    async def _mark_failed(self, payout_id: int, reason: str) -> int:
        async with self.database.session() as session:
            await session.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == PayoutStatus.PENDING)
                .values(
                    status=PayoutStatus.FAILED,
                    attempt_count=Payout.attempt_count + 1,
                    last_error=reason[:1000],
                    claimed_at=None
                )
                .execution_options(synchronize_session=False)
            )
            return await session.scalar(select(Payout.attempt_count).where(Payout.id == payout_id))

    # ------------------------------------------------------------------
    # Queue and workers
    # ------------------------------------------------------------------

    def enqueue(self, payout_id: int) -> None:
        """Schedule a payout for settlement. Never blocks."""
        self.queue.put_nowait(payout_id)

    async def start(self) -> None:
        """Start the dispatcher and the periodic sweep."""
        if self._dispatcher_task is not None:
            self.logger.warning("Settlement worker already running")
            return

        self._should_stop = False
        self._dispatcher_task = asyncio.create_task(self._dispatch_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info(
            "🚀 Settlement worker started",
            max_workers=self.max_workers,
            sweep_interval=self.sweep_interval
        )

    async def stop(self) -> None:
        """Stop accepting work and cancel in-flight settlements."""
        self._should_stop = True
        tasks = [t for t in (self._dispatcher_task, self._sweep_task, *self._tasks) if t]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self.logger.error("Settlement task ended with error", error=str(e))

        self._dispatcher_task = None
        self._sweep_task = None
        self._tasks.clear()
        self.logger.info("Settlement worker stopped", **asdict(self.stats))

    async def join(self) -> None:
        """Wait until every queued payout has been processed."""
        await self.queue.join()

    async def _dispatch_loop(self) -> None:
        while not self._should_stop:
            try:
                payout_id = await self.queue.get()
                await self._semaphore.acquire()
            except asyncio.CancelledError:
                break

            task = asyncio.create_task(self._run_one(payout_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_one(self, payout_id: int) -> None:
        try:
            if payout_id in self._inflight:
                return
            self._inflight.add(payout_id)
            try:
                await self.settle(payout_id)
            finally:
                self._inflight.discard(payout_id)
        except SettlementFailure:
            pass  # recorded on the payout row, retried by the sweep
        except Exception as e:
            self.logger.error("Unexpected settlement error", payout_id=payout_id, error=str(e))
        finally:
            self._semaphore.release()
            self.queue.task_done()

    async def _sweep_loop(self) -> None:
        while not self._should_stop:
            try:
                await self.sweep()
                await asyncio.sleep(self.sweep_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in settlement sweep", error=str(e))
                await asyncio.sleep(self.sweep_interval)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def backoff_seconds(self, attempt_count: int) -> int:
        """Delay before retry number ``attempt_count``."""
        return min(self.backoff_base * 2 ** max(attempt_count - 1, 0), self.backoff_max)

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Recover payouts from the table.

        - Claims older than the claim timeout become FAILED and need review,
          since their transfer may already be on chain.
        - FAILED payouts at the attempt ceiling are flagged for review.
        - FAILED payouts whose backoff has elapsed go back to PENDING.
        - Every unclaimed PENDING payout is enqueued.
        """
        now = now or utcnow()
        result = SweepResult()

        async with self.database.session() as session:
            stale_cutoff = now - timedelta(seconds=self.claim_timeout)
            result.stale_claims = list((await session.scalars(
                select(Payout.id).where(
                    Payout.status == PayoutStatus.PENDING,
                    Payout.claimed_at.is_not(None),
                    Payout.claimed_at < stale_cutoff
                )
            )).all())
            if result.stale_claims:
                await session.execute(
                    update(Payout)
                    .where(
                        Payout.id.in_(result.stale_claims),
                        Payout.status == PayoutStatus.PENDING,
                        Payout.claimed_at < stale_cutoff
                    )
                    .values(
                        status=PayoutStatus.FAILED,
                        attempt_count=Payout.attempt_count + 1,
                        last_error=INTERRUPTED_ERROR,
                        needs_review=True,
                        claimed_at=None
                    )
                    .execution_options(synchronize_session=False)
                )

            result.flagged = list((await session.scalars(
                select(Payout.id).where(
                    Payout.status == PayoutStatus.FAILED,
                    Payout.needs_review.is_(False),
                    Payout.attempt_count >= self.max_attempts
                )
            )).all())
            if result.flagged:
                await session.execute(
                    update(Payout)
                    .where(Payout.id.in_(result.flagged), Payout.status == PayoutStatus.FAILED)
                    .values(needs_review=True)
                    .execution_options(synchronize_session=False)
                )

            candidates = (await session.execute(
                select(Payout.id, Payout.attempt_count, Payout.updated_at).where(
                    Payout.status == PayoutStatus.FAILED,
                    Payout.needs_review.is_(False),
                    Payout.attempt_count < self.max_attempts
                )
            )).all()
            for payout_id, attempt_count, failed_at in candidates:
                if failed_at and now - failed_at < timedelta(seconds=self.backoff_seconds(attempt_count)):
                    continue
                moved = await session.execute(
                    update(Payout)
                    .where(
                        Payout.id == payout_id,
                        Payout.status == PayoutStatus.FAILED,
                        Payout.needs_review.is_(False)
                    )
                    .values(status=PayoutStatus.PENDING, claimed_at=None)
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount == 1:
                    result.retried.append(payout_id)

            pending = (await session.scalars(
                select(Payout.id)
                .where(Payout.status == PayoutStatus.PENDING, Payout.claimed_at.is_(None))
                .order_by(Payout.id)
            )).all()

        for payout_id in result.stale_claims:
            self.logger.error(
                "🚨 Settlement interrupted mid-transfer, manual review needed",
                payout_id=payout_id
            )
        for payout_id in result.flagged:
            self.logger.error(
                "🚨 Payout exhausted retries, manual review needed",
                payout_id=payout_id,
                max_attempts=self.max_attempts
            )

        for payout_id in pending:
            if payout_id not in self._inflight:
                self.enqueue(payout_id)
                result.enqueued.append(payout_id)

        self.stats.sweeps += 1
        self.stats.last_sweep = now
        self.stats.retried += len(result.retried)
        self.stats.flagged_for_review += len(result.flagged) + len(result.stale_claims)

        if result.retried or result.flagged or result.stale_claims or result.enqueued:
            self.logger.info(
                "Settlement sweep completed",
                enqueued=len(result.enqueued),
                retried=len(result.retried),
                flagged=len(result.flagged),
                stale_claims=len(result.stale_claims)
            )

        return result

    async def settle_pending(self) -> Dict[str, int]:
        """Settle every unclaimed PENDING payout in this task, one at a time."""
        async with self.database.session() as session:
            payout_ids = (await session.scalars(
                select(Payout.id)
                .where(Payout.status == PayoutStatus.PENDING, Payout.claimed_at.is_(None))
                .order_by(Payout.id)
            )).all()

        summary = {"sent": 0, "failed": 0, "skipped": 0}
        for payout_id in payout_ids:
            try:
                status = await self.settle(payout_id)
            except SettlementFailure:
                summary["failed"] += 1
                continue
            if status == PayoutStatus.SENT:
                summary["sent"] += 1
            else:
                summary["skipped"] += 1
        return summary

    async def list_needing_review(self, limit: int = 100) -> List[Payout]:
        """Payouts excluded from automatic retry."""
        async with self.database.session() as session:
            result = await session.scalars(
                select(Payout)
                .where(Payout.needs_review.is_(True), Payout.status != PayoutStatus.SENT)
                .order_by(Payout.updated_at.desc())
                .limit(limit)
            )
            return list(result.unique().all())

    async def requeue(self, payout_id: int) -> Payout:
        """
        Operator retry of a FAILED payout. Clears needs_review, keeps
        attempt_count, and enqueues the payout.
        """
        async with self.database.session() as session:
            result = await session.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == PayoutStatus.FAILED)
                .values(status=PayoutStatus.PENDING, needs_review=False, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            payout = await session.get(Payout, payout_id, populate_existing=True)
            if payout is None:
                raise PayoutNotFoundError(payout_id)
            if result.rowcount != 1:
                raise ValidationError(
                    "Only FAILED payouts can be requeued",
                    {"payout_id": payout_id, "status": payout.status.value}
                )

        self.logger.info("Payout requeued by operator", payout_id=payout_id, attempt_count=payout.attempt_count)
        self.enqueue(payout_id)
        return payout

    def get_status(self) -> Dict[str, Any]:
        stats = asdict(self.stats)
        if stats["last_sweep"]:
            stats["last_sweep"] = stats["last_sweep"].isoformat()
        return {
            "is_running": self._dispatcher_task is not None and not self._dispatcher_task.done(),
            "queue_size": self.queue.qsize(),
            "in_flight": len(self._inflight),
            "max_workers": self.max_workers,
            **stats,
        }
