"""
Player and Score models.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, BigInteger, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, utcnow


class Player(BaseModel):
    """Player identified by wallet address, created on first score submission."""

    __tablename__ = "players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    wallet_address: Mapped[str] = mapped_column(
        String(44),
        unique=True,
        comment="Player's wallet public key"
    )

    display_name: Mapped[Optional[str]] = mapped_column(
        String(32),
        comment="Optional name shown on the leaderboard"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Player(id={self.id}, wallet={self.wallet_address})>"


class Score(BaseModel):
    """Append-only record of one finished game session."""

    __tablename__ = "scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE")
    )

    value: Mapped[int] = mapped_column(
        BigInteger,
        comment="Score achieved (positive)"
    )

    session_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        comment="Client game session identifier"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow
    )

    __table_args__ = (
        CheckConstraint("value > 0", name="ck_scores_positive"),
        Index("idx_scores_created_value", "created_at", "value"),
        Index("idx_scores_player", "player_id"),
    )
