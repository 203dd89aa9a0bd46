from fastapi import APIRouter, Depends, HTTPException, status

from ..models.contract import CreditsInfo, PurchaseRequest
from ..services.pipeline import ContractPipeline
from .deps import get_current_user_id, get_pipeline

router = APIRouter()


@router.get("", response_model=CreditsInfo)
async def get_credits(
    user_id: str = Depends(get_current_user_id),
    pipeline: ContractPipeline = Depends(get_pipeline),
):
    """Credit balance and usage for the caller."""
    return pipeline.ledger.get_credits_info(user_id, pipeline.clock().date())


@router.post("/purchase", response_model=CreditsInfo)
async def purchase_credits(
    request: PurchaseRequest,
    user_id: str = Depends(get_current_user_id),
    pipeline: ContractPipeline = Depends(get_pipeline),
):
    """Add purchased credits; payment is handled upstream."""
    today = pipeline.clock().date()
    try:
        pipeline.ledger.purchase(user_id, request.credits, today)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return pipeline.ledger.get_credits_info(user_id, today)
