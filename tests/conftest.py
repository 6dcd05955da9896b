"""
Shared fixtures: in-memory SQLite database, fake ledger and fake price feed.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from degen_backend.core.config import Settings
from degen_backend.core.container import ServiceContainer
from degen_backend.core.database import Database
from degen_backend.core.exceptions import PriceUnavailable, SolanaRPCError
from degen_backend.models.fee import FeeAggregate, FeeDeposit
from degen_backend.models.game_event import GameEvent
from degen_backend.models.payout import PayoutCycle
from degen_backend.models.player import Player, Score
from degen_backend.services.price_oracle import PriceOracle
from degen_backend.services.solana_client import TransactionDetail


TRACKED_WALLET = "Vote111111111111111111111111111111111111111"
SENDER_WALLET = "Stake11111111111111111111111111111111111111"
PLAYER_A = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
PLAYER_B = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
PLAYER_C = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
PLAYER_D = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"

ADMIN_KEY = "test-admin-key"
LAMPORTS_PER_SOL = 1_000_000_000


class FakeLedger:
    """In-memory stand-in for the Solana client."""

    def __init__(self, address: str = TRACKED_WALLET):
        self.address = address
        self.signatures: List[str] = []
        self.transactions: Dict[str, TransactionDetail] = {}
        self.signature_error: Optional[str] = None
        self.transfer_error: Optional[str] = None
        self.confirm_error: Optional[str] = None
        self.transfers: List[tuple] = []
        self.confirmed = set()
        self.detail_calls: List[str] = []
        self.detail_errors = set()

    def add_transfer_in(self, signature: str, lamports: int, success: bool = True) -> None:
        """Record an incoming transfer to the tracked address (newest first)."""
        self.signatures.insert(0, signature)
        self.transactions[signature] = TransactionDetail(
            signature=signature,
            slot=len(self.signatures),
            block_time=None,
            success=success,
            account_keys=[SENDER_WALLET, self.address],
            pre_balances=[1000 * LAMPORTS_PER_SOL, 5_000_000],
            post_balances=[1000 * LAMPORTS_PER_SOL - lamports, 5_000_000 + lamports],
        )

    def add_transfer_out(self, signature: str, lamports: int) -> None:
        self.signatures.insert(0, signature)
        self.transactions[signature] = TransactionDetail(
            signature=signature,
            slot=len(self.signatures),
            block_time=None,
            success=True,
            account_keys=[self.address, SENDER_WALLET],
            pre_balances=[10 * LAMPORTS_PER_SOL, 0],
            post_balances=[10 * LAMPORTS_PER_SOL - lamports, lamports],
        )

    async def get_recent_signatures(self, address: str, limit: int = 10) -> List[str]:
        if self.signature_error:
            raise SolanaRPCError(self.signature_error)
        return self.signatures[:limit]

    async def get_transaction_detail(self, signature: str) -> Optional[TransactionDetail]:
        self.detail_calls.append(signature)
        if signature in self.detail_errors:
            raise SolanaRPCError(f"Failed to get transaction: {signature}")
        return self.transactions.get(signature)

    async def submit_transfer(self, to_address: str, lamports: int) -> str:
        if self.transfer_error:
            raise SolanaRPCError(self.transfer_error)
        signature = f"payout-tx-{len(self.transfers) + 1}"
        self.transfers.append((to_address, lamports, signature))
        if not self.confirm_error:
            self.confirmed.add(signature)
        return signature

    async def confirm_transfer(self, signature: str) -> None:
        if signature not in self.confirmed:
            raise SolanaRPCError(self.confirm_error or "Transaction not confirmed")

    async def subscribe_account_changes(self, address, callback) -> None:
        await asyncio.Event().wait()

    async def close(self) -> None:
        pass


class StaticPriceOracle(PriceOracle):
    """Price oracle whose upstream is a settable value."""

    def __init__(self, price: Decimal = Decimal("100"), config: Optional[Settings] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.price = price
        self.error: Optional[str] = None
        self.fetch_count = 0

    async def _fetch_price(self) -> Decimal:
        self.fetch_count += 1
        if self.error:
            raise PriceUnavailable(self.error)
        return self.price


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        environment="development",
        admin_api_key=ADMIN_KEY,
        tracked_wallet_address=TRACKED_WALLET,
        watcher_inter_tx_delay=0,
        watcher_subscribe_enabled=False,
        settlement_backoff_base=30,
        settlement_backoff_max=3600,
        settlement_max_attempts=3,
        settlement_claim_timeout=300,
        scheduler_enabled=False,
        background_services_enabled=False,
    )


@pytest_asyncio.fixture
async def database(test_settings):
    db = Database(test_settings.database_url, echo=False)
    await db.init()
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def price_oracle(test_settings) -> StaticPriceOracle:
    return StaticPriceOracle(Decimal("100"), test_settings)


@pytest.fixture
def make_price_oracle(test_settings):
    def _make(price: Decimal = Decimal("100"), clock=None) -> StaticPriceOracle:
        kwargs = {"clock": clock} if clock is not None else {}
        return StaticPriceOracle(price, test_settings, **kwargs)

    return _make


@pytest_asyncio.fixture
async def container(test_settings, database, ledger, price_oracle):
    services = ServiceContainer(
        config=test_settings,
        database=database,
        ledger=ledger,
        price_oracle=price_oracle
    )
    await services.fee_watcher.ensure_aggregate()
    yield services
    await services.fee_watcher.stop()
    await services.settlement_worker.stop()


@pytest.fixture
def add_score(database):
    """Insert a score directly, with an optional timestamp."""
    async def _add_score(wallet: str, value: int, created_at: Optional[datetime] = None) -> int:
        async with database.session() as session:
            player_id = await session.scalar(select(Player.id).where(Player.wallet_address == wallet))
            if player_id is None:
                player = Player(wallet_address=wallet)
                session.add(player)
                await session.flush()
                player_id = player.id
            score = Score(player_id=player_id, value=value)
            if created_at is not None:
                score.created_at = created_at
            session.add(score)
        return player_id

    return _add_score


@pytest.fixture
def set_cumulative(database, container):
    """Overwrite the aggregate value (test setup only)."""
    async def _set(value: Decimal) -> None:
        async with database.session() as session:
            aggregate = await session.get(FeeAggregate, container.fee_watcher.aggregate_id)
            aggregate.cumulative_usd = Decimal(value)

    return _set


@pytest.fixture
def get_cumulative(database, container):
    async def _get() -> Decimal:
        async with database.session() as session:
            value = await session.scalar(
                select(FeeAggregate.cumulative_usd)
                .where(FeeAggregate.id == container.fee_watcher.aggregate_id)
            )
        return Decimal(value)

    return _get


@pytest.fixture
def ledger_totals(database):
    """Sums used to check that every ingested dollar is accounted for."""
    async def _totals() -> Dict[str, Decimal]:
        async with database.session() as session:
            deposits = await session.scalar(select(func.coalesce(func.sum(FeeDeposit.usd_amount), 0)))
            consumed = await session.scalar(select(func.coalesce(func.sum(GameEvent.usd_consumed), 0)))
            pools = await session.scalar(select(func.coalesce(func.sum(PayoutCycle.pool_usd), 0)))
            cumulative = await session.scalar(select(func.coalesce(func.sum(FeeAggregate.cumulative_usd), 0)))
        return {
            "deposits": Decimal(str(deposits)),
            "consumed": Decimal(str(consumed)),
            "pools": Decimal(str(pools)),
            "cumulative": Decimal(str(cumulative)),
        }

    return _totals
