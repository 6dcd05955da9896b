"""
Operator command line for the Flappy Degen backend.
"""

import asyncio
import sys
from typing import Awaitable, Callable, TypeVar

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy import func, select

from degen_backend.core.container import ServiceContainer
from degen_backend.core.exceptions import InsufficientPool, DegenBackendException
from degen_backend.core.logging import setup_logging, get_logger
from degen_backend.models.fee import FeeAggregate, FeeDeposit
from degen_backend.models.game_event import GameEvent
from degen_backend.models.payout import Payout, PayoutStatus

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Flappy Degen backend management commands")

T = TypeVar("T")


def _with_container(action: Callable[[ServiceContainer], Awaitable[T]]) -> T:
    """Run ``action`` against an initialized container, then release it."""
    async def _main():
        setup_logging()
        container = ServiceContainer()
        await container.database.init()
        try:
            return await action(container)
        finally:
            await container.close()

    return asyncio.run(_main())


@app.command()
def init():
    """Create tables and the tracked wallet aggregate."""
    async def _init(container: ServiceContainer):
        await container.database.create_tables()
        aggregate_id = await container.fee_watcher.ensure_aggregate()
        console.print(f"✅ Database initialized (aggregate id {aggregate_id})")

    _with_container(_init)


@app.command()
def reset():
    """Reset database (drop all tables)."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _reset(container: ServiceContainer):
        await container.database.drop_tables()
        console.print("🗑️ All tables dropped!")

    _with_container(_reset)


@app.command()
def health():
    """Check database and Solana RPC health."""
    async def _health(container: ServiceContainer):
        return await container.database.health_check(), await container.ledger.get_health()

    database_ok, ledger_ok = _with_container(_health)
    console.print("✅ Database is healthy!" if database_ok else "❌ Database health check failed!")
    console.print("✅ Solana RPC is healthy!" if ledger_ok else "❌ Solana RPC health check failed!")
    if not (database_ok and ledger_ok):
        sys.exit(1)


@app.command()
def seed():
    """Register the configured tracked wallet and its empty aggregate."""
    async def _seed(container: ServiceContainer):
        aggregate_id = await container.fee_watcher.ensure_aggregate()
        console.print(
            f"🌱 Tracked wallet {container.fee_watcher.address} ready (aggregate id {aggregate_id})"
        )

    _with_container(_seed)


@app.command()
def status():
    """Show fee aggregate and payout status."""
    async def _status(container: ServiceContainer):
        table = Table(title="Flappy Degen Status")
        table.add_column("Component", style="cyan")
        table.add_column("Value", style="green")

        is_healthy = await container.database.health_check()
        table.add_row("Database", "✅ Connected" if is_healthy else "❌ Disconnected")
        if not is_healthy:
            console.print(table)
            return

        async with container.database.session() as session:
            cumulative = await session.scalar(select(func.sum(FeeAggregate.cumulative_usd)))
            deposits = await session.scalar(select(func.count(FeeDeposit.id)))
            events = await session.scalar(select(func.count(GameEvent.id)))
            by_status = dict((await session.execute(
                select(Payout.status, func.count(Payout.id)).group_by(Payout.status)
            )).all())
            review = await session.scalar(
                select(func.count(Payout.id)).where(Payout.needs_review.is_(True))
            )

        table.add_row("Tracked wallet", container.fee_watcher.address)
        table.add_row("Cumulative USD", f"${cumulative or 0:.2f}")
        table.add_row("Deposits", str(deposits))
        table.add_row("Events", str(events))
        for payout_status in PayoutStatus:
            table.add_row(f"Payouts {payout_status.value}", str(by_status.get(payout_status, 0)))
        table.add_row("Needs review", str(review))
        console.print(table)

    _with_container(_status)


@app.command("check-fees")
def check_fees():
    """Run one fee ingestion cycle now."""
    async def _check(container: ServiceContainer):
        return await container.fee_watcher.run_cycle()

    stats = _with_container(_check)
    if stats.aborted:
        console.print("❌ Ingestion cycle aborted, see logs")
        sys.exit(1)
    console.print(
        f"✅ {stats.deposits_recorded} deposits (${stats.usd_ingested}), "
        f"{stats.events_triggered} events, {stats.duplicates} duplicates, {stats.errors} errors"
    )


@app.command("trigger-payout")
def trigger_payout():
    """Run a payout cycle now. Payouts stay PENDING until settled."""
    async def _trigger(container: ServiceContainer):
        return await container.payout_service.run_payout_cycle(triggered_by="cli")

    try:
        result = _with_container(_trigger)
    except InsufficientPool as e:
        console.print(f"⏭️ Payout cycle skipped: {e.reason}")
        return
    except DegenBackendException as e:
        console.print(f"❌ {e.message}")
        sys.exit(1)

    table = Table(title=f"Payout cycle {result.cycle_id} (pool ${result.pool_usd})")
    table.add_column("Payout", style="cyan")
    table.add_column("Player")
    table.add_column("Score")
    table.add_column("USD", style="green")
    table.add_column("SOL", style="green")
    for share in result.shares:
        table.add_row(
            str(share["payout_id"]),
            str(share["player_id"]),
            str(share["score"]),
            share["amount_usd"],
            share["amount_native"]
        )
    console.print(table)


@app.command("settle-pending")
def settle_pending():
    """Settle every PENDING payout in this process."""
    async def _settle(container: ServiceContainer):
        return await container.settlement_worker.settle_pending()

    summary = _with_container(_settle)
    console.print(
        f"✅ Settlement run: {summary['sent']} sent, {summary['failed']} failed, {summary['skipped']} skipped"
    )


@app.command()
def sweep():
    """Run the settlement recovery sweep once and settle what it requeues."""
    async def _sweep(container: ServiceContainer):
        result = await container.settlement_worker.sweep()
        summary = await container.settlement_worker.settle_pending()
        return result, summary

    result, summary = _with_container(_sweep)
    console.print(
        f"🔄 Retried {len(result.retried)}, flagged {len(result.flagged)}, "
        f"stale claims {len(result.stale_claims)}; sent {summary['sent']}, failed {summary['failed']}"
    )


@app.command()
def review():
    """List payouts that need manual review."""
    async def _review(container: ServiceContainer):
        return await container.settlement_worker.list_needing_review()

    payouts = _with_container(_review)
    if not payouts:
        console.print("✅ Nothing needs review")
        return

    table = Table(title="Payouts needing review")
    table.add_column("Payout", style="cyan")
    table.add_column("Wallet")
    table.add_column("Lamports")
    table.add_column("Attempts")
    table.add_column("Tx")
    table.add_column("Last error", style="red")
    for payout in payouts:
        table.add_row(
            str(payout.id),
            payout.player.wallet_address,
            str(payout.amount_lamports),
            str(payout.attempt_count),
            payout.chain_tx_id or "-",
            payout.last_error or "-"
        )
    console.print(table)


@app.command()
def requeue(payout_id: int):
    """Move a FAILED payout back to PENDING."""
    async def _requeue(container: ServiceContainer):
        return await container.settlement_worker.requeue(payout_id)

    try:
        payout = _with_container(_requeue)
    except DegenBackendException as e:
        console.print(f"❌ {e.message}")
        sys.exit(1)
    console.print(f"🔁 Payout {payout.id} requeued (attempts so far: {payout.attempt_count})")


if __name__ == "__main__":
    app()
