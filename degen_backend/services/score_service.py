"""
Score submission and leaderboard queries.
"""

from dataclasses import dataclass
from typing import List, Optional

import structlog
from sqlalchemy import func, select, update

from degen_backend.core.database import Database, dialect_insert
from degen_backend.models.player import Player, Score
from degen_backend.utils.validation import validate_score_value, validate_wallet_address


logger = structlog.get_logger(__name__)


@dataclass
class SubmittedScore:
    player_id: int
    score_id: int
    value: int


@dataclass
class LeaderboardEntry:
    wallet_address: str
    display_name: Optional[str]
    high_score: int


class ScoreService:
    """Records finished game sessions and ranks players."""

    def __init__(self, database: Database):
        self.database = database
        self.logger = logger.bind(service="score_service")

    async def submit_score(
        self,
        player_wallet: Optional[str],
        score,
        session_id: Optional[str] = None,
        display_name: Optional[str] = None
    ) -> SubmittedScore:
        """
        Record a score, creating the player on first submission.

        Raises:
            ValidationError: Missing or invalid wallet, or a non-positive score.
        """
        wallet = validate_wallet_address(player_wallet)
        value = validate_score_value(score)
        display_name = (display_name or "").strip()[:32] or None

        async with self.database.session() as session:
            await session.execute(
                dialect_insert(session, Player)
                .values(wallet_address=wallet, display_name=display_name)
                .on_conflict_do_nothing(index_elements=["wallet_address"])
            )
            player_id = await session.scalar(
                select(Player.id).where(Player.wallet_address == wallet)
            )
            if display_name:
                await session.execute(
                    update(Player)
                    .where(Player.id == player_id)
                    .values(display_name=display_name)
                    .execution_options(synchronize_session=False)
                )

            record = Score(player_id=player_id, value=value, session_id=session_id)
            session.add(record)
            await session.flush()
            score_id = record.id

        self.logger.info("Score submitted", player_id=player_id, wallet=wallet, score=value)
        return SubmittedScore(player_id=player_id, score_id=score_id, value=value)

    async def get_leaderboard(self, limit: int = 10) -> List[LeaderboardEntry]:
        """All-time best score per player, highest first."""
        high_score = func.max(Score.value).label("high_score")
        query = (
            select(Player.wallet_address, Player.display_name, high_score)
            .join(Score, Score.player_id == Player.id)
            .group_by(Player.id, Player.wallet_address, Player.display_name)
            .order_by(high_score.desc(), Player.id.asc())
            .limit(limit)
        )

        async with self.database.session() as session:
            rows = (await session.execute(query)).all()

        return [
            LeaderboardEntry(wallet_address=row[0], display_name=row[1], high_score=int(row[2]))
            for row in rows
        ]
