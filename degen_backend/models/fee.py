"""
Fee models - tracked creator wallets, their running USD aggregate and the
deposits that feed it.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String, Integer, BigInteger, Numeric, DateTime, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, utcnow


class TrackedWallet(BaseModel, TimestampMixin):
    """Wallet whose incoming transfers count as creator fee revenue."""

    __tablename__ = "tracked_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    address: Mapped[str] = mapped_column(
        String(44),
        unique=True,
        comment="Wallet public key"
    )

    currency: Mapped[str] = mapped_column(
        String(10),
        default="SOL",
        comment="Native currency symbol"
    )

    decimals: Mapped[int] = mapped_column(
        Integer,
        default=9,
        comment="Decimals of the smallest native unit"
    )

    def __repr__(self) -> str:
        return f"<TrackedWallet(id={self.id}, address={self.address})>"


class FeeAggregate(BaseModel, TimestampMixin):
    """Running total of unclaimed USD-equivalent fee revenue, one row per wallet."""

    __tablename__ = "fee_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tracked_wallet_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("tracked_wallets.id", ondelete="CASCADE"),
        unique=True,
        comment="Owning tracked wallet"
    )

    cumulative_usd: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        default=Decimal("0"),
        comment="Unclaimed USD value"
    )

    __table_args__ = (
        CheckConstraint("cumulative_usd >= 0", name="ck_fee_aggregates_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<FeeAggregate(id={self.id}, cumulative_usd={self.cumulative_usd})>"


class FeeDeposit(BaseModel):
    """Immutable record of one incoming transfer to a tracked wallet."""

    __tablename__ = "fee_deposits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    chain_tx_id: Mapped[str] = mapped_column(
        String(88),
        unique=True,
        comment="Transaction signature; the deduplication key"
    )

    tracked_wallet_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("tracked_wallets.id", ondelete="CASCADE"),
        comment="Receiving tracked wallet"
    )

    raw_amount: Mapped[int] = mapped_column(
        BigInteger,
        comment="Amount in the smallest native unit (lamports)"
    )

    native_amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 9),
        comment="Amount in native units (SOL)"
    )

    usd_amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        comment="USD value at processing time"
    )

    price_usd: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        comment="Exchange rate used for the conversion"
    )

    observed_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        comment="When the watcher recorded the deposit"
    )

    __table_args__ = (
        Index("idx_fee_deposits_wallet_observed", "tracked_wallet_id", "observed_at"),
    )

    def __repr__(self) -> str:
        return f"<FeeDeposit(tx={self.chain_tx_id}, usd={self.usd_amount})>"
