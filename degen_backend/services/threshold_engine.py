"""
Threshold event engine.

Converts accumulated fee value into in-game events: every full threshold of
USD in the aggregate is consumed and produces one MEGA_GREEN_CANDLE event.
"""

from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import update

from degen_backend.core.config import Settings, settings
from degen_backend.core.database import Database
from degen_backend.models.fee import FeeAggregate
from degen_backend.models.game_event import GameEvent, GameEventType


logger = structlog.get_logger(__name__)


class ThresholdEventEngine:
    """Consumes threshold-sized chunks of the aggregate and records events."""

    def __init__(self, database: Database, config: Optional[Settings] = None):
        config = config or settings
        self.database = database
        self.threshold: Decimal = config.fee_threshold_usd
        self.multiplier = config.event_multiplier
        self.duration_seconds = config.event_duration_seconds
        self.logger = logger.bind(service="threshold_engine")

    def event_parameters(self) -> dict:
        return {
            "multiplier": self.multiplier,
            "duration_seconds": self.duration_seconds,
            "triggered_by": "THRESHOLD",
            "threshold": float(self.threshold),
        }

    async def check_threshold(self, aggregate_id: int) -> List[GameEvent]:
        """
        Trigger one event per full threshold held by the aggregate.

        Each iteration is its own transaction: a guarded decrement that only
        matches while the aggregate still holds at least one threshold,
        followed by the event insert. Stops when the decrement matches no row,
        which also covers a missing aggregate.
        """
        events: List[GameEvent] = []

        while True:
            async with self.database.session() as session:
                result = await session.execute(
                    update(FeeAggregate)
                    .where(
                        FeeAggregate.id == aggregate_id,
                        FeeAggregate.cumulative_usd >= self.threshold
                    )
                    .values(cumulative_usd=FeeAggregate.cumulative_usd - self.threshold)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    break

                event = GameEvent(
                    event_type=GameEventType.MEGA_GREEN_CANDLE,
                    parameters=self.event_parameters(),
                    usd_consumed=self.threshold,
                    aggregate_id=aggregate_id
                )
                session.add(event)
                await session.flush()

            events.append(event)
            self.logger.info(
                "🕯️ Threshold reached, event triggered",
                event_id=event.id,
                event_type=event.event_type.value,
                aggregate_id=aggregate_id,
                usd_consumed=str(self.threshold)
            )

        return events
