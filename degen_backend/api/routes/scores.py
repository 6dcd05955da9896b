"""
Score submission route.
"""

from fastapi import APIRouter, Depends, status

import structlog

from degen_backend.api.dependencies import get_container
from degen_backend.api.schemas.game import ScoreSubmitRequest, ScoreSubmitResponse
from degen_backend.core.container import ServiceContainer


router = APIRouter(tags=["Scores"])
logger = structlog.get_logger(__name__)


@router.post(
    "",
    response_model=ScoreSubmitResponse,
    status_code=status.HTTP_200_OK,
    summary="Submit Score",
    description="Record a finished game session; the player is created on first submission"
)
async def submit_score(
    request: ScoreSubmitRequest,
    container: ServiceContainer = Depends(get_container)
):
    submitted = await container.score_service.submit_score(
        player_wallet=request.player_wallet,
        score=request.score,
        session_id=request.session_id,
        display_name=request.display_name
    )
    return ScoreSubmitResponse(player_id=submitted.player_id)
