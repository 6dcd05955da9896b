"""
Leaderboard route.
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from degen_backend.api.dependencies import get_container
from degen_backend.api.schemas.game import LeaderboardEntryResponse
from degen_backend.core.container import ServiceContainer


router = APIRouter(tags=["Leaderboard"])


@router.get(
    "",
    response_model=List[LeaderboardEntryResponse],
    summary="Get Leaderboard",
    description="Players ranked by all-time best score"
)
async def get_leaderboard(
    limit: int = Query(10, ge=1, le=100, description="Number of entries to return"),
    container: ServiceContainer = Depends(get_container)
):
    entries = await container.score_service.get_leaderboard(limit=limit)
    return [
        LeaderboardEntryResponse(
            wallet_address=entry.wallet_address,
            display_name=entry.display_name,
            high_score=entry.high_score
        )
        for entry in entries
    ]
