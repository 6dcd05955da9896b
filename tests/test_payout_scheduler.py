"""
Test the daily payout scheduler.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from degen_backend.core.exceptions import PriceUnavailable
from degen_backend.models.base import utcnow
from degen_backend.scheduler.payout_scheduler import PayoutScheduler, SchedulerStatus

from conftest import PLAYER_A


@pytest.fixture
def scheduler(container, test_settings):
    return PayoutScheduler(container.payout_service, test_settings.model_copy(update={"scheduler_enabled": True}))


@pytest.mark.asyncio
async def test_next_run_time(scheduler):
    assert scheduler.calculate_next_run_time(datetime(2024, 5, 1, 13, 30)) == datetime(2024, 5, 2, 0, 0)
    assert scheduler.calculate_next_run_time(datetime(2024, 5, 1, 0, 0)) == datetime(2024, 5, 2, 0, 0)

    scheduler.utc_hour = 18
    assert scheduler.calculate_next_run_time(datetime(2024, 5, 1, 13, 30)) == datetime(2024, 5, 1, 18, 0)


@pytest.mark.asyncio
async def test_should_run_once_per_day(scheduler):
    assert scheduler.should_run(datetime(2024, 5, 1, 0, 10)) is True
    assert scheduler.should_run(datetime(2024, 5, 1, 1, 10)) is False

    scheduler.stats.last_run = datetime(2024, 5, 1, 0, 5)
    assert scheduler.should_run(datetime(2024, 5, 1, 0, 30)) is False
    assert scheduler.should_run(datetime(2024, 5, 2, 0, 1)) is True


@pytest.mark.asyncio
async def test_manual_run_records_cycle(scheduler, add_score, set_cumulative):
    await add_score(PLAYER_A, 10)
    await set_cumulative(Decimal("100"))

    result = await scheduler.trigger_manual_run()

    assert result is not None
    assert scheduler.stats.successful_runs == 1
    assert scheduler.stats.last_cycle_id == result.cycle_id
    assert scheduler.stats.last_run is not None


@pytest.mark.asyncio
async def test_manual_run_skip_is_not_failure(scheduler):
    result = await scheduler.trigger_manual_run()

    assert result is None
    assert scheduler.stats.skipped_runs == 1
    assert scheduler.stats.failed_runs == 0
    assert scheduler.stats.last_skip_reason


@pytest.mark.asyncio
async def test_failed_run_is_retried(scheduler, add_score, set_cumulative, price_oracle):
    """A failed cycle leaves last_run unset so the same day is attempted again."""
    await add_score(PLAYER_A, 10)
    await set_cumulative(Decimal("100"))
    price_oracle.error = "upstream down"

    with pytest.raises(PriceUnavailable):
        await scheduler.trigger_manual_run()

    assert scheduler.stats.failed_runs == 1
    assert scheduler.stats.last_run is None
    assert scheduler.status == SchedulerStatus.STOPPED


@pytest.mark.asyncio
async def test_start_and_stop(scheduler):
    await scheduler.start()
    assert scheduler.status == SchedulerStatus.WAITING
    assert (await scheduler.health_check())["healthy"] is True
    assert scheduler.get_status()["next_run"] is not None

    await scheduler.stop()
    assert scheduler.status == SchedulerStatus.STOPPED


@pytest.mark.asyncio
async def test_restart_does_not_rerun_todays_cycle(container, test_settings, add_score, set_cumulative, get_cumulative):
    """A scheduler started after today's scheduled cycle picks up last_run from the database."""
    # Off-hour so the background loop stays idle
    off_hour = (utcnow().hour + 12) % 24
    config = test_settings.model_copy(update={"scheduler_enabled": True, "payout_schedule_utc_hour": off_hour})
    await add_score(PLAYER_A, 10)
    await set_cumulative(Decimal("1000"))

    first = PayoutScheduler(container.payout_service, config)
    await first.trigger_manual_run(triggered_by="scheduler")
    assert await get_cumulative() == Decimal("700")

    restarted = PayoutScheduler(container.payout_service, config)
    await restarted.start()

    today = utcnow().replace(hour=restarted.utc_hour, minute=10, second=0, microsecond=0)
    assert restarted.stats.last_run is not None
    assert restarted.should_run(today) is False
    assert restarted.should_run(today + timedelta(days=1)) is True

    await restarted.stop()
    assert await get_cumulative() == Decimal("700")


@pytest.mark.asyncio
async def test_admin_cycle_does_not_block_scheduled_run(container, test_settings, add_score, set_cumulative):
    # Off-hour so the background loop stays idle
    off_hour = (utcnow().hour + 12) % 24
    config = test_settings.model_copy(update={"scheduler_enabled": True, "payout_schedule_utc_hour": off_hour})
    await add_score(PLAYER_A, 10)
    await set_cumulative(Decimal("1000"))
    await container.payout_service.run_payout_cycle(triggered_by="admin")

    restarted = PayoutScheduler(container.payout_service, config)
    await restarted.start()

    assert restarted.stats.last_run is None

    await restarted.stop()
