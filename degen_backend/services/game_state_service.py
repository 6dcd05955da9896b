"""
Read models for the game client: fee progress toward the next event and the
recent payout feed.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select

from degen_backend.core.config import Settings, settings
from degen_backend.core.database import Database
from degen_backend.models.fee import FeeAggregate, TrackedWallet
from degen_backend.models.game_event import GameEvent
from degen_backend.models.payout import Payout
from degen_backend.models.player import Player


logger = structlog.get_logger(__name__)


class GameStateService:
    """Assembles the state and payout views served by the API."""

    def __init__(
        self,
        database: Database,
        config: Optional[Settings] = None,
        address: Optional[str] = None
    ):
        config = config or settings
        self.database = database
        self.address = address or config.tracked_wallet_address
        self.threshold: Decimal = config.fee_threshold_usd
        self.logger = logger.bind(service="game_state")

    def default_state(self) -> Dict[str, Any]:
        return {
            "cumulative_usd": Decimal("0"),
            "next_threshold_usd": self.threshold,
            "last_events": [],
            "degraded": True,
        }

    async def get_state(self, event_limit: int = 5) -> Dict[str, Any]:
        """
        Current aggregate, USD left until the next event and the latest events.

        Falls back to a zeroed, degraded state when the store is unreachable.
        """
        try:
            async with self.database.session() as session:
                cumulative = await session.scalar(
                    select(FeeAggregate.cumulative_usd)
                    .join(TrackedWallet, TrackedWallet.id == FeeAggregate.tracked_wallet_id)
                    .where(TrackedWallet.address == self.address)
                )
                events = (await session.scalars(
                    select(GameEvent)
                    .order_by(GameEvent.triggered_at.desc(), GameEvent.id.desc())
                    .limit(event_limit)
                )).all()
        except Exception as e:
            self.logger.error("Failed to load game state, serving default", error=str(e))
            return self.default_state()

        cumulative = Decimal(cumulative) if cumulative is not None else Decimal("0")
        return {
            "cumulative_usd": cumulative,
            "next_threshold_usd": self.threshold - (cumulative % self.threshold),
            "last_events": [
                {
                    "id": event.id,
                    "type": event.event_type.value,
                    "parameters": event.parameters,
                    "usd_consumed": event.usd_consumed,
                    "triggered_at": event.triggered_at,
                }
                for event in events
            ],
            "degraded": False,
        }

    async def get_recent_payouts(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent payouts with the receiving player."""
        query = (
            select(Payout, Player.wallet_address, Player.display_name)
            .join(Player, Player.id == Payout.player_id)
            .order_by(Payout.created_at.desc(), Payout.id.desc())
            .limit(limit)
        )
        async with self.database.session() as session:
            rows = (await session.execute(query)).unique().all()

        return [
            {
                "id": payout.id,
                "amount_usd": payout.amount_usd,
                "amount_native": payout.amount_native,
                "tx_id": payout.chain_tx_id,
                "status": payout.status.value,
                "created_at": payout.created_at,
                "wallet_address": wallet_address,
                "display_name": display_name,
            }
            for payout, wallet_address, display_name in rows
        ]
