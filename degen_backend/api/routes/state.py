"""
Game state route: fee progress and recent in-game events.
"""

from fastapi import APIRouter, Depends

from degen_backend.api.dependencies import get_container
from degen_backend.api.schemas.game import GameStateResponse
from degen_backend.core.container import ServiceContainer


router = APIRouter(tags=["State"])


@router.get(
    "",
    response_model=GameStateResponse,
    summary="Get Game State",
    description="Cumulative fee value, USD left until the next event and the five latest events"
)
async def get_state(container: ServiceContainer = Depends(get_container)):
    return GameStateResponse(**await container.game_state.get_state())
