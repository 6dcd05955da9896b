"""
Payout pool computation.

Takes a fraction of the fee aggregate, splits it among the top players of
the trailing window in proportion to their best scores and records one
PENDING payout per player. Settlement happens in the settlement worker.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import and_, func, select, update

from degen_backend.core.config import Settings, settings
from degen_backend.core.database import Database
from degen_backend.core.exceptions import InsufficientPool
from degen_backend.models.base import utcnow
from degen_backend.models.fee import FeeAggregate, TrackedWallet
from degen_backend.models.payout import Payout, PayoutCycle, PayoutStatus
from degen_backend.models.player import Player, Score
from degen_backend.services.price_oracle import PriceOracle


logger = structlog.get_logger(__name__)

USD_QUANTUM = Decimal("0.00000001")
NATIVE_QUANTUM = Decimal("0.000000001")


@dataclass
class RankedPlayer:
    """Player eligible for a payout with the best score of the window."""
    player_id: int
    wallet_address: str
    best_score: int


@dataclass
class PayoutCycleResult:
    """Result of one payout cycle."""
    cycle_id: int
    triggered_by: str
    aggregate_before_usd: Decimal
    pool_usd: Decimal
    price_usd: Decimal
    payout_ids: List[int] = field(default_factory=list)
    shares: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "triggered_by": self.triggered_by,
            "aggregate_before_usd": str(self.aggregate_before_usd),
            "pool_usd": str(self.pool_usd),
            "price_usd": str(self.price_usd),
            "payout_ids": self.payout_ids,
            "shares": self.shares,
            "created_at": self.created_at.isoformat(),
        }


def split_pool(pool: Decimal, scores: Sequence[int]) -> List[Decimal]:
    """
    Split ``pool`` proportionally to ``scores``.

    Shares are rounded down to 8 decimals and the last share absorbs the
    rounding residue, so the shares always sum to exactly ``pool``.

    >>> split_pool(Decimal("200"), [100, 50, 50])
    [Decimal('100.00000000'), Decimal('50.00000000'), Decimal('50.00000000')]
    """
    if not scores:
        return []

    total = sum(scores)
    if total <= 0:
        return [Decimal("0")] * len(scores)

    shares = []
    allocated = Decimal("0")
    for score in scores[:-1]:
        share = (pool * score / total).quantize(USD_QUANTUM, rounding=ROUND_DOWN)
        shares.append(share)
        allocated += share
    shares.append((pool - allocated).quantize(USD_QUANTUM, rounding=ROUND_DOWN))
    return shares


class PayoutService:
    """Computes and records payout cycles for one tracked wallet's aggregate."""

    def __init__(
        self,
        database: Database,
        price_oracle: PriceOracle,
        settlement_worker=None,
        config: Optional[Settings] = None,
        address: Optional[str] = None
    ):
        config = config or settings
        self.database = database
        self.price_oracle = price_oracle
        self.settlement_worker = settlement_worker

        self.address = address or config.tracked_wallet_address
        self.decimals = config.tracked_wallet_decimals
        self.pool_fraction: Decimal = config.payout_pool_fraction
        self.top_players = config.payout_top_players
        self.window_hours = config.payout_window_hours

        self.logger = logger.bind(service="payout_service")

    async def get_ranked_players(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[RankedPlayer]:
        """
        Top players by best score since ``since``.

        Ties on the best score go to the player who reached it first, then to
        the lowest player id.
        """
        since = since or utcnow() - timedelta(hours=self.window_hours)
        limit = limit or self.top_players

        best = (
            select(Score.player_id, func.max(Score.value).label("best"))
            .where(Score.created_at >= since)
            .group_by(Score.player_id)
            .subquery()
        )
        achieved = (
            select(
                Score.player_id,
                best.c.best,
                func.min(Score.created_at).label("achieved_at")
            )
            .join(best, and_(Score.player_id == best.c.player_id, Score.value == best.c.best))
            .where(Score.created_at >= since)
            .group_by(Score.player_id, best.c.best)
            .subquery()
        )
        query = (
            select(Player.id, Player.wallet_address, achieved.c.best)
            .join(achieved, Player.id == achieved.c.player_id)
            .order_by(achieved.c.best.desc(), achieved.c.achieved_at.asc(), Player.id.asc())
            .limit(limit)
        )

        async with self.database.session() as session:
            rows = (await session.execute(query)).all()

        return [
            RankedPlayer(player_id=row[0], wallet_address=row[1], best_score=int(row[2]))
            for row in rows
        ]

    async def last_cycle_at(self, triggered_by: Optional[str] = None) -> Optional[datetime]:
        """Creation time of the latest payout cycle, optionally by trigger source."""
        query = select(func.max(PayoutCycle.created_at))
        if triggered_by:
            query = query.where(PayoutCycle.triggered_by == triggered_by)
        async with self.database.session() as session:
            return await session.scalar(query)

    async def _get_aggregate(self, session, lock: bool = False):
        query = (
            select(FeeAggregate.id, FeeAggregate.cumulative_usd)
            .join(TrackedWallet, TrackedWallet.id == FeeAggregate.tracked_wallet_id)
            .where(TrackedWallet.address == self.address)
        )
        if lock:
            query = query.with_for_update(of=FeeAggregate)
        return (await session.execute(query)).first()

    async def run_payout_cycle(self, triggered_by: str = "scheduler") -> PayoutCycleResult:
        """
        Deduct the pool from the aggregate and create PENDING payouts.

        Raises:
            InsufficientPool: Nothing to distribute or nobody to pay. No state changes.
            PriceUnavailable: No fresh exchange rate. No state changes.
        """
        self.logger.info("Starting payout cycle", triggered_by=triggered_by)

        async with self.database.session() as session:
            aggregate = await self._get_aggregate(session)
        if aggregate is None:
            raise InsufficientPool("no fee aggregate for tracked wallet")
        if aggregate.cumulative_usd <= 0:
            raise InsufficientPool("aggregate is empty", aggregate.cumulative_usd)

        ranked = await self.get_ranked_players()
        if not ranked:
            raise InsufficientPool("no eligible players in window", aggregate.cumulative_usd)

        # Rate is locked in on each payout and never re-derived at settlement
        price = await self.price_oracle.get_price(allow_stale=False)

        async with self.database.session() as session:
            locked = await self._get_aggregate(session, lock=True)
            aggregate_before = Decimal(locked.cumulative_usd)
            pool = (aggregate_before * self.pool_fraction).quantize(USD_QUANTUM, rounding=ROUND_DOWN)
            if pool <= 0:
                raise InsufficientPool("pool rounds to zero", aggregate_before)

            result = await session.execute(
                update(FeeAggregate)
                .where(FeeAggregate.id == locked.id, FeeAggregate.cumulative_usd >= pool)
                .values(cumulative_usd=FeeAggregate.cumulative_usd - pool)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientPool("aggregate changed during cycle", aggregate_before)

            cycle = PayoutCycle(
                aggregate_id=locked.id,
                aggregate_before_usd=aggregate_before,
                pool_usd=pool,
                price_usd=price,
                player_count=len(ranked),
                triggered_by=triggered_by
            )
            session.add(cycle)
            await session.flush()

            shares = split_pool(pool, [player.best_score for player in ranked])
            payouts = []
            for player, share in zip(ranked, shares):
                payouts.append(self._build_payout(cycle.id, player, share, price))
            session.add_all(payouts)
            await session.flush()

            cycle_result = PayoutCycleResult(
                cycle_id=cycle.id,
                triggered_by=triggered_by,
                aggregate_before_usd=aggregate_before,
                pool_usd=pool,
                price_usd=price,
                payout_ids=[p.id for p in payouts],
                shares=[
                    {
                        "payout_id": p.id,
                        "player_id": p.player_id,
                        "score": p.score,
                        "amount_usd": str(p.amount_usd),
                        "amount_native": str(p.amount_native),
                        "status": p.status.value,
                    }
                    for p in payouts
                ]
            )
            settleable = [p.id for p in payouts if p.status == PayoutStatus.PENDING]

        self.logger.info(
            "🏆 Payout cycle recorded",
            cycle_id=cycle_result.cycle_id,
            pool_usd=str(pool),
            aggregate_before_usd=str(aggregate_before),
            price_usd=str(price),
            players=len(ranked)
        )

        if self.settlement_worker is not None:
            for payout_id in settleable:
                self.settlement_worker.enqueue(payout_id)

        return cycle_result

    def _build_payout(self, cycle_id: int, player: RankedPlayer, share: Decimal, price: Decimal) -> Payout:
        native_exact = share / price
        amount_native = native_exact.quantize(NATIVE_QUANTUM, rounding=ROUND_DOWN)
        amount_lamports = int((native_exact * (Decimal(10) ** self.decimals)).to_integral_value(rounding=ROUND_DOWN))

        payout = Payout(
            cycle_id=cycle_id,
            player_id=player.player_id,
            score=player.best_score,
            amount_usd=share,
            amount_native=amount_native,
            amount_lamports=amount_lamports,
            status=PayoutStatus.PENDING,
            attempt_count=0,
            needs_review=False
        )

        if amount_lamports <= 0:
            # Below one lamport: nothing transferable, left for an operator
            payout.status = PayoutStatus.FAILED
            payout.needs_review = True
            payout.last_error = "Amount below one lamport"
            self.logger.warning(
                "Payout share below transferable minimum",
                player_id=player.player_id,
                amount_usd=str(share)
            )

        return payout
