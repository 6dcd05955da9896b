"""
Database models for the Flappy Degen backend.
"""

from .base import Base, BaseModel, TimestampMixin, utcnow
from .fee import TrackedWallet, FeeAggregate, FeeDeposit
from .game_event import GameEvent, GameEventType
from .player import Player, Score
from .payout import Payout, PayoutCycle, PayoutStatus

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    "TrackedWallet",
    "FeeAggregate",
    "FeeDeposit",
    "GameEvent",
    "GameEventType",
    "Player",
    "Score",
    "Payout",
    "PayoutCycle",
    "PayoutStatus",
]
