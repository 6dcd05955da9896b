"""
Schemas for the game client endpoints: scores, state, leaderboard, payouts.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import WalletField


class ScoreSubmitRequest(BaseModel):
    """Finished game session."""
    player_wallet: str = WalletField
    score: int = Field(..., gt=0, strict=True, description="Score achieved (positive integer)")
    session_id: Optional[str] = Field(default=None, max_length=64)
    display_name: Optional[str] = Field(default=None, max_length=32)


class ScoreSubmitResponse(BaseModel):
    success: bool = True
    player_id: int


class GameEventInfo(BaseModel):
    id: int
    type: str
    parameters: Dict[str, Any]
    usd_consumed: float
    triggered_at: datetime


class GameStateResponse(BaseModel):
    """Fee progress toward the next in-game event."""
    cumulative_usd: float
    next_threshold_usd: float
    last_events: List[GameEventInfo] = Field(default_factory=list)
    degraded: bool = False


class LeaderboardEntryResponse(BaseModel):
    wallet_address: str
    display_name: Optional[str] = None
    high_score: int


class PayoutInfo(BaseModel):
    """Recent payout as shown to players. amount_sol and tx_sig mirror the native fields."""
    id: int
    amount_usd: float
    amount_native: float
    amount_sol: float
    tx_id: Optional[str] = None
    tx_sig: Optional[str] = None
    status: str
    created_at: datetime
    wallet_address: str
    display_name: Optional[str] = None


class PayoutReviewInfo(BaseModel):
    """Payout details for operators."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    cycle_id: int
    player_id: int
    amount_usd: float
    amount_lamports: int
    status: str
    attempt_count: int
    last_error: Optional[str] = None
    chain_tx_id: Optional[str] = None
    needs_review: bool
    updated_at: datetime
