"""
Test deposit ingestion: idempotence, skipping, event triggering and coalescing.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from degen_backend.models.fee import FeeDeposit
from degen_backend.models.game_event import GameEvent

from conftest import LAMPORTS_PER_SOL, PLAYER_A


async def count_rows(database, model) -> int:
    async with database.session() as session:
        return await session.scalar(select(func.count(model.id)))


@pytest.mark.asyncio
async def test_ensure_aggregate_is_idempotent(container):
    first = await container.fee_watcher.ensure_aggregate()
    second = await container.fee_watcher.ensure_aggregate()

    assert first == second
    assert container.fee_watcher.wallet_id is not None


@pytest.mark.asyncio
async def test_deposit_recorded_once(container, database, ledger, get_cumulative):
    """The same signature seen in two cycles is stored and counted once."""
    ledger.add_transfer_in("sig-1", 2 * LAMPORTS_PER_SOL)

    first = await container.fee_watcher.run_cycle()
    second = await container.fee_watcher.run_cycle()

    assert first.deposits_recorded == 1
    assert first.usd_ingested == Decimal("200")
    assert second.deposits_recorded == 0
    assert second.duplicates == 1
    assert ledger.detail_calls == ["sig-1"]
    assert await count_rows(database, FeeDeposit) == 1
    assert await get_cumulative() == Decimal("200")


@pytest.mark.asyncio
async def test_deposit_row_contents(container, database, ledger):
    ledger.add_transfer_in("sig-1", 1_500_000_000)

    await container.fee_watcher.run_cycle()

    async with database.session() as session:
        deposit = await session.scalar(select(FeeDeposit))
    assert deposit.chain_tx_id == "sig-1"
    assert deposit.raw_amount == 1_500_000_000
    assert Decimal(deposit.native_amount) == Decimal("1.5")
    assert Decimal(deposit.usd_amount) == Decimal("150")
    assert Decimal(deposit.price_usd) == Decimal("100")
    assert deposit.tracked_wallet_id == container.fee_watcher.wallet_id


@pytest.mark.asyncio
async def test_failed_and_outgoing_transactions_skipped(container, database, ledger, get_cumulative):
    ledger.add_transfer_in("sig-failed", LAMPORTS_PER_SOL, success=False)
    ledger.add_transfer_out("sig-out", LAMPORTS_PER_SOL)
    ledger.signatures.insert(0, "sig-unknown")

    stats = await container.fee_watcher.run_cycle()

    assert stats.skipped == 3
    assert stats.deposits_recorded == 0
    assert await count_rows(database, FeeDeposit) == 0
    assert await get_cumulative() == Decimal("0")


@pytest.mark.asyncio
async def test_signature_fetch_failure_aborts_cycle(container, database, ledger, get_cumulative):
    ledger.add_transfer_in("sig-1", LAMPORTS_PER_SOL)
    ledger.signature_error = "429 Too Many Requests"

    stats = await container.fee_watcher.run_cycle()

    assert stats.aborted is True
    assert ledger.detail_calls == []
    assert await count_rows(database, FeeDeposit) == 0
    assert await get_cumulative() == Decimal("0")


@pytest.mark.asyncio
async def test_transaction_error_does_not_stop_cycle(container, database, ledger, get_cumulative):
    """A failing transaction is counted and the rest of the batch is still ingested."""
    ledger.add_transfer_in("sig-bad", LAMPORTS_PER_SOL)
    ledger.add_transfer_in("sig-good", LAMPORTS_PER_SOL)
    ledger.detail_errors.add("sig-bad")

    stats = await container.fee_watcher.run_cycle()

    assert stats.errors == 1
    assert stats.deposits_recorded == 1
    assert await get_cumulative() == Decimal("100")

    # Next cycle retries the failed one
    ledger.detail_errors.clear()
    stats = await container.fee_watcher.run_cycle()
    assert stats.deposits_recorded == 1
    assert stats.duplicates == 1
    assert await get_cumulative() == Decimal("200")


@pytest.mark.asyncio
async def test_price_failure_leaves_deposit_for_next_cycle(
    container, database, ledger, price_oracle, get_cumulative
):
    price_oracle.error = "upstream down"
    ledger.add_transfer_in("sig-1", LAMPORTS_PER_SOL)

    stats = await container.fee_watcher.run_cycle()

    assert stats.errors == 1
    assert await count_rows(database, FeeDeposit) == 0

    price_oracle.error = None
    stats = await container.fee_watcher.run_cycle()
    assert stats.deposits_recorded == 1
    assert await get_cumulative() == Decimal("100")


@pytest.mark.asyncio
async def test_ingested_in_chronological_order(container, database, ledger):
    ledger.add_transfer_in("sig-old", LAMPORTS_PER_SOL)
    ledger.add_transfer_in("sig-new", LAMPORTS_PER_SOL)

    await container.fee_watcher.run_cycle()

    assert ledger.detail_calls == ["sig-old", "sig-new"]


@pytest.mark.asyncio
async def test_crossing_threshold_triggers_event(container, database, ledger, get_cumulative):
    """480 USD then 30 USD: one event, 10 USD carried over."""
    ledger.add_transfer_in("sig-1", 4_800_000_000)
    stats = await container.fee_watcher.run_cycle()
    assert stats.events_triggered == 0
    assert await get_cumulative() == Decimal("480")

    ledger.add_transfer_in("sig-2", 300_000_000)
    stats = await container.fee_watcher.run_cycle()

    assert stats.events_triggered == 1
    assert await count_rows(database, GameEvent) == 1
    assert await get_cumulative() == Decimal("10")


@pytest.mark.asyncio
async def test_single_large_deposit_triggers_multiple_events(container, database, ledger, get_cumulative):
    ledger.add_transfer_in("sig-whale", 10_500_000_000)

    stats = await container.fee_watcher.run_cycle()

    assert stats.events_triggered == 2
    assert await count_rows(database, GameEvent) == 2
    assert await get_cumulative() == Decimal("50")


@pytest.mark.asyncio
async def test_concurrent_requests_coalesce(container, ledger):
    """Requests during a running cycle fold into a single follow-up cycle."""
    watcher = container.fee_watcher
    gate = asyncio.Event()
    calls = 0
    original = ledger.get_recent_signatures

    async def gated(address, limit=10):
        nonlocal calls
        calls += 1
        await gate.wait()
        return await original(address, limit)

    ledger.get_recent_signatures = gated
    ledger.add_transfer_in("sig-1", LAMPORTS_PER_SOL)

    first = asyncio.create_task(watcher.request_check())
    await asyncio.sleep(0)

    assert await watcher.request_check() is None
    assert await watcher.request_check() is None
    assert watcher.get_status()["check_in_flight"] is True

    gate.set()
    stats = await first

    assert calls == 2
    assert stats.duplicates == 1
    assert watcher.cycles_completed == 2


@pytest.mark.asyncio
async def test_account_change_schedules_check(container, ledger, get_cumulative):
    ledger.add_transfer_in("sig-1", LAMPORTS_PER_SOL)

    await container.fee_watcher._on_account_change()
    await asyncio.gather(*container.fee_watcher._check_tasks)

    assert await get_cumulative() == Decimal("100")


@pytest.mark.asyncio
async def test_fee_value_is_conserved(container, ledger, add_score, ledger_totals):
    """Deposits equal what events consumed plus payout pools plus what remains."""
    await add_score(PLAYER_A, 100)
    ledger.add_transfer_in("sig-1", 4_800_000_000)
    ledger.add_transfer_in("sig-2", 6_000_000_000)
    await container.fee_watcher.run_cycle()

    await container.payout_service.run_payout_cycle(triggered_by="test")

    ledger.add_transfer_in("sig-3", 3_700_000_000)
    await container.fee_watcher.run_cycle()

    totals = await ledger_totals()
    assert totals["deposits"] == Decimal("1450")
    assert totals["consumed"] == Decimal("1000")
    assert totals["deposits"] == totals["consumed"] + totals["pools"] + totals["cumulative"]


@pytest.mark.asyncio
async def test_failed_threshold_check_retried_next_cycle(container, database, ledger, get_cumulative):
    """A deposit committed before the engine failed still becomes an event on the next tick."""
    engine = container.fee_watcher.threshold_engine
    original = engine.check_threshold
    calls = 0

    async def flaky(aggregate_id):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database is locked")
        return await original(aggregate_id)

    engine.check_threshold = flaky
    ledger.add_transfer_in("sig-1", 6 * LAMPORTS_PER_SOL)

    first = await container.fee_watcher.run_cycle()

    assert first.deposits_recorded == 1
    assert first.errors == 1
    assert first.events_triggered == 0
    assert await get_cumulative() == Decimal("600")

    second = await container.fee_watcher.run_cycle()

    assert second.deposits_recorded == 0
    assert second.events_triggered == 1
    assert calls == 2
    assert await count_rows(database, GameEvent) == 1
    assert await get_cumulative() == Decimal("100")


@pytest.mark.asyncio
async def test_threshold_checked_when_signature_fetch_fails(container, database, ledger, set_cumulative):
    await set_cumulative(Decimal("500"))
    ledger.signature_error = "429 Too Many Requests"

    stats = await container.fee_watcher.run_cycle()

    assert stats.aborted is True
    assert stats.events_triggered == 1
    assert await count_rows(database, GameEvent) == 1
