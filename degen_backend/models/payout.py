"""
Payout models - pool deductions per cycle and the per-player obligations
settled on chain.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Numeric, DateTime, Text, ForeignKey, Index,
    Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin, utcnow
from .player import Player


class PayoutStatus(Enum):
    """Payout settlement status. SENT is terminal."""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class PayoutCycle(BaseModel):
    """One pool deduction from the aggregate and the payouts it funded."""

    __tablename__ = "payout_cycles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    aggregate_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("fee_aggregates.id", ondelete="CASCADE")
    )

    aggregate_before_usd: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        comment="Aggregate value the pool was computed from"
    )

    pool_usd: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        comment="USD deducted from the aggregate"
    )

    price_usd: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        comment="Exchange rate locked in for every payout of the cycle"
    )

    player_count: Mapped[int] = mapped_column(Integer, default=0)

    triggered_by: Mapped[str] = mapped_column(
        String(20),
        default="scheduler",
        comment="scheduler, admin or cli"
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Payout(BaseModel, TimestampMixin):
    """Obligation to transfer a player's share of a pool."""

    __tablename__ = "payouts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    cycle_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("payout_cycles.id", ondelete="CASCADE")
    )

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE")
    )

    score: Mapped[int] = mapped_column(
        BigInteger,
        comment="Best score the share was computed from"
    )

    amount_usd: Mapped[Decimal] = mapped_column(Numeric(20, 8))

    amount_native: Mapped[Decimal] = mapped_column(Numeric(20, 9))

    amount_lamports: Mapped[int] = mapped_column(
        BigInteger,
        comment="Exact amount transferred on settlement"
    )

    status: Mapped[PayoutStatus] = mapped_column(
        SQLEnum(PayoutStatus),
        default=PayoutStatus.PENDING
    )

    chain_tx_id: Mapped[Optional[str]] = mapped_column(
        String(88),
        comment="Transfer signature"
    )

    attempt_count: Mapped[int] = mapped_column(Integer, default=0)

    last_error: Mapped[Optional[str]] = mapped_column(Text)

    needs_review: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Excluded from automatic retries until an operator requeues it"
    )

    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="Set while a worker is settling this payout"
    )

    player: Mapped[Player] = relationship(Player, lazy="joined")

    __table_args__ = (
        Index("idx_payouts_status_updated", "status", "updated_at"),
        Index("idx_payouts_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Payout(id={self.id}, status={self.status.value}, usd={self.amount_usd})>"
