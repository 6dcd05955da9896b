"""
Test payout pool computation, ranking and cycle recording.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from degen_backend.core.exceptions import InsufficientPool, PriceUnavailable
from degen_backend.models.base import utcnow
from degen_backend.models.payout import Payout, PayoutCycle, PayoutStatus
from degen_backend.services.payout_service import split_pool

from conftest import PLAYER_A, PLAYER_B, PLAYER_C, PLAYER_D


async def load_payouts(database):
    async with database.session() as session:
        return list((await session.scalars(select(Payout).order_by(Payout.id))).unique().all())


async def count_cycles(database) -> int:
    async with database.session() as session:
        return await session.scalar(select(func.count(PayoutCycle.id)))


def test_split_pool_proportional():
    shares = split_pool(Decimal("200"), [100, 50, 50])
    assert shares == [Decimal("100"), Decimal("50"), Decimal("50")]


def test_split_pool_residue_goes_to_last_share():
    shares = split_pool(Decimal("100"), [1, 1, 1])

    assert shares[:2] == [Decimal("33.33333333"), Decimal("33.33333333")]
    assert shares[2] == Decimal("33.33333334")
    assert sum(shares) == Decimal("100")


def test_split_pool_empty():
    assert split_pool(Decimal("100"), []) == []


@pytest.mark.asyncio
async def test_ranking_uses_best_score_in_window(container, add_score):
    now = utcnow()
    a = await add_score(PLAYER_A, 10)
    await add_score(PLAYER_A, 90)
    b = await add_score(PLAYER_B, 50)
    # Outside the 24 hour window
    await add_score(PLAYER_C, 1000, created_at=now - timedelta(hours=25))

    ranked = await container.payout_service.get_ranked_players()

    assert [(p.player_id, p.best_score) for p in ranked] == [(a, 90), (b, 50)]


@pytest.mark.asyncio
async def test_ranking_tie_goes_to_earliest_achiever(container, add_score):
    now = utcnow()
    a = await add_score(PLAYER_A, 100, created_at=now - timedelta(hours=2))
    b = await add_score(PLAYER_B, 100, created_at=now - timedelta(hours=3))
    await add_score(PLAYER_B, 40, created_at=now - timedelta(hours=4))

    ranked = await container.payout_service.get_ranked_players()
    assert [p.player_id for p in ranked] == [b, a]

    top = await container.payout_service.get_ranked_players(limit=1)
    assert [p.player_id for p in top] == [b]


@pytest.mark.asyncio
async def test_ranking_tie_at_same_instant_goes_to_lowest_id(container, add_score):
    at = utcnow() - timedelta(hours=1)
    c = await add_score(PLAYER_C, 70, created_at=at)
    d = await add_score(PLAYER_D, 70, created_at=at)

    ranked = await container.payout_service.get_ranked_players()
    assert [p.player_id for p in ranked] == sorted([c, d])


@pytest.mark.asyncio
async def test_ranking_limited_to_top_players(container, add_score):
    wallets = [PLAYER_A, PLAYER_B, PLAYER_C, PLAYER_D]
    for value, wallet in enumerate(wallets, start=1):
        await add_score(wallet, value * 10)

    ranked = await container.payout_service.get_ranked_players(limit=2)
    assert [p.best_score for p in ranked] == [40, 30]


@pytest.mark.asyncio
async def test_payout_cycle_distributes_pool(
    container, database, add_score, set_cumulative, get_cumulative
):
    """30% of 1000 USD split 2:1:1 at 100 USD per SOL."""
    a = await add_score(PLAYER_A, 100)
    b = await add_score(PLAYER_B, 50)
    c = await add_score(PLAYER_C, 50)
    await set_cumulative(Decimal("1000"))

    result = await container.payout_service.run_payout_cycle(triggered_by="test")

    assert result.pool_usd == Decimal("300")
    assert result.aggregate_before_usd == Decimal("1000")
    assert result.price_usd == Decimal("100")
    assert await get_cumulative() == Decimal("700")

    payouts = await load_payouts(database)
    assert [p.player_id for p in payouts] == [a, b, c]
    assert [Decimal(p.amount_usd) for p in payouts] == [Decimal("150"), Decimal("75"), Decimal("75")]
    assert [p.amount_lamports for p in payouts] == [1_500_000_000, 750_000_000, 750_000_000]
    assert [Decimal(p.amount_native) for p in payouts] == [Decimal("1.5"), Decimal("0.75"), Decimal("0.75")]
    assert all(p.status == PayoutStatus.PENDING for p in payouts)
    assert all(p.attempt_count == 0 and p.chain_tx_id is None for p in payouts)
    assert all(p.cycle_id == result.cycle_id for p in payouts)

    async with database.session() as session:
        cycle = await session.get(PayoutCycle, result.cycle_id)
    assert cycle.player_count == 3
    assert cycle.triggered_by == "test"


@pytest.mark.asyncio
async def test_payout_cycle_enqueues_pending_payouts(container, add_score, set_cumulative):
    await add_score(PLAYER_A, 10)
    await add_score(PLAYER_B, 20)
    await set_cumulative(Decimal("100"))

    result = await container.payout_service.run_payout_cycle()

    queue = container.settlement_worker.queue
    queued = [queue.get_nowait() for _ in range(queue.qsize())]
    assert sorted(queued) == sorted(result.payout_ids)


@pytest.mark.asyncio
async def test_no_eligible_players_leaves_aggregate(container, database, set_cumulative, get_cumulative):
    await set_cumulative(Decimal("250"))

    with pytest.raises(InsufficientPool):
        await container.payout_service.run_payout_cycle()

    assert await get_cumulative() == Decimal("250")
    assert await count_cycles(database) == 0


@pytest.mark.asyncio
async def test_empty_aggregate_is_skipped(container, database, add_score, price_oracle):
    await add_score(PLAYER_A, 10)

    with pytest.raises(InsufficientPool) as exc_info:
        await container.payout_service.run_payout_cycle()

    assert "empty" in exc_info.value.reason
    assert await count_cycles(database) == 0
    assert price_oracle.fetch_count == 0


@pytest.mark.asyncio
async def test_price_unavailable_leaves_aggregate(
    container, database, add_score, set_cumulative, get_cumulative, price_oracle
):
    await add_score(PLAYER_A, 10)
    await set_cumulative(Decimal("100"))
    price_oracle.error = "upstream down"

    with pytest.raises(PriceUnavailable):
        await container.payout_service.run_payout_cycle()

    assert await get_cumulative() == Decimal("100")
    assert await count_cycles(database) == 0
    assert await load_payouts(database) == []


@pytest.mark.asyncio
async def test_sub_lamport_share_flagged_for_review(
    container, database, add_score, set_cumulative, price_oracle
):
    """A share worth less than one lamport is recorded as FAILED for an operator."""
    price_oracle.price = Decimal("1000000000000")
    await add_score(PLAYER_A, 10)
    await set_cumulative(Decimal("100"))

    await container.payout_service.run_payout_cycle()

    [payout] = await load_payouts(database)
    assert payout.amount_lamports == 0
    assert payout.status == PayoutStatus.FAILED
    assert payout.needs_review is True
    assert payout.last_error == "Amount below one lamport"
    assert container.settlement_worker.queue.qsize() == 0
