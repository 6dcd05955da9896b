"""
Admin routes: manual payout trigger and settlement review.
All routes require the admin API key.
"""

from fastapi import APIRouter, Depends, Path, Query

import structlog

from degen_backend.api.dependencies import get_container, require_admin
from degen_backend.api.schemas.common import SuccessResponse, create_success_response
from degen_backend.api.schemas.game import PayoutReviewInfo
from degen_backend.core.container import ServiceContainer
from degen_backend.core.exceptions import InsufficientPool


router = APIRouter(tags=["Admin"], dependencies=[Depends(require_admin)])
logger = structlog.get_logger(__name__)


def _review_info(payout) -> PayoutReviewInfo:
    return PayoutReviewInfo(
        id=payout.id,
        cycle_id=payout.cycle_id,
        player_id=payout.player_id,
        amount_usd=payout.amount_usd,
        amount_lamports=payout.amount_lamports,
        status=payout.status.value,
        attempt_count=payout.attempt_count,
        last_error=payout.last_error,
        chain_tx_id=payout.chain_tx_id,
        needs_review=payout.needs_review,
        updated_at=payout.updated_at
    )


@router.post(
    "/trigger-payout",
    response_model=SuccessResponse,
    summary="Trigger Payout Cycle",
    description="Run a payout cycle now. A cycle with nothing to distribute is reported as skipped."
)
async def trigger_payout(container: ServiceContainer = Depends(get_container)):
    logger.info("Manual payout cycle requested via API")
    try:
        result = await container.payout_service.run_payout_cycle(triggered_by="admin")
    except InsufficientPool as e:
        return create_success_response(
            data={"skipped": True, "reason": e.reason},
            message="Payout cycle skipped"
        )

    return create_success_response(
        data={"skipped": False, **result.to_dict()},
        message=f"Payout cycle {result.cycle_id} created"
    )


@router.get(
    "/payouts/review",
    response_model=SuccessResponse,
    summary="List Payouts Needing Review",
    description="Payouts excluded from automatic retry"
)
async def list_review_payouts(
    limit: int = Query(100, ge=1, le=500),
    container: ServiceContainer = Depends(get_container)
):
    payouts = await container.settlement_worker.list_needing_review(limit=limit)
    return create_success_response(data=[_review_info(p).model_dump(mode="json") for p in payouts])


@router.post(
    "/payouts/{payout_id}/requeue",
    response_model=SuccessResponse,
    summary="Requeue Failed Payout",
    description="Move a FAILED payout back to PENDING and schedule settlement"
)
async def requeue_payout(
    payout_id: int = Path(..., ge=1),
    container: ServiceContainer = Depends(get_container)
):
    payout = await container.settlement_worker.requeue(payout_id)
    return create_success_response(
        data=_review_info(payout).model_dump(mode="json"),
        message=f"Payout {payout_id} requeued"
    )
