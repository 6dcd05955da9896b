"""
GameEvent model - append-only log of threshold-triggered in-game effects.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import Integer, Numeric, DateTime, ForeignKey, Index, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, utcnow


class GameEventType(Enum):
    """In-game effects that can be triggered by fee thresholds."""
    MEGA_GREEN_CANDLE = "MEGA_GREEN_CANDLE"


class GameEvent(BaseModel):
    """A triggered in-game event and the USD value it consumed."""

    __tablename__ = "game_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    event_type: Mapped[GameEventType] = mapped_column(
        "type",
        SQLEnum(GameEventType),
        comment="Type of event"
    )

    parameters: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        comment="Effect parameters (multiplier, duration, trigger)"
    )

    usd_consumed: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        comment="USD deducted from the aggregate for this event"
    )

    aggregate_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("fee_aggregates.id", ondelete="CASCADE"),
        comment="Aggregate the value was consumed from"
    )

    triggered_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        comment="Trigger time (UTC)"
    )

    __table_args__ = (
        Index("idx_game_events_triggered_at", "triggered_at"),
    )

    def __repr__(self) -> str:
        return f"<GameEvent(id={self.id}, type={self.event_type.value}, usd={self.usd_consumed})>"
