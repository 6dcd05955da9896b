"""
Recent payouts route.
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from degen_backend.api.dependencies import get_container
from degen_backend.api.schemas.game import PayoutInfo
from degen_backend.core.container import ServiceContainer


router = APIRouter(tags=["Payouts"])


@router.get(
    "",
    response_model=List[PayoutInfo],
    summary="Get Recent Payouts",
    description="Most recent payouts, newest first"
)
async def get_recent_payouts(
    limit: int = Query(20, ge=1, le=100, description="Number of payouts to return"),
    container: ServiceContainer = Depends(get_container)
):
    payouts = await container.game_state.get_recent_payouts(limit=limit)
    return [
        PayoutInfo(
            amount_sol=payout["amount_native"],
            tx_sig=payout["tx_id"],
            **payout
        )
        for payout in payouts
    ]
