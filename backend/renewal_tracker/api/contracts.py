from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile, status
from loguru import logger

from ..config import settings
from ..exceptions import AIErrorKind, AIServiceError, ContractNotFoundError, InsufficientCreditsError
from ..models.contract import (
    AlertResponse,
    AnalysisResponse,
    ContractResponse,
    ContractStatusResponse,
    ProcessingResponse,
)
from ..models.models import ProcessingStatus
from ..services.pipeline import ContractPipeline
from ..utils.file_handlers import read_validated_upload
from .deps import get_current_user_id, get_pipeline

router = APIRouter()


def _not_found(e: ContractNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/upload", response_model=ContractResponse, status_code=201)
async def upload_contract(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user_id),
    pipeline: ContractPipeline = Depends(get_pipeline),
):
    """Upload a contract file and queue it for processing."""
    original_file_name = file.filename
    content, _ = await read_validated_upload(file)
    try:
        contract = pipeline.create_contract(
            user_id=user_id,
            title=title or Path(original_file_name).stem,
            filename=original_file_name,
            content=content,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error uploading contract '{original_file_name}': {str(e)}")
        raise HTTPException(status_code=500, detail=f"Internal server error during contract upload: {str(e)}")

    background_tasks.add_task(pipeline.process_contract, contract.id, settings.AUTO_AI_AFTER_OCR)
    logger.info(f"Contract uploaded and queued for processing: {contract.id}")
    return contract


@router.get("/{contract_id}", response_model=ContractResponse)
async def get_contract(contract_id: str, pipeline: ContractPipeline = Depends(get_pipeline)):
    """Get a specific contract by ID."""
    try:
        return pipeline.get_contract(contract_id)
    except ContractNotFoundError as e:
        raise _not_found(e)


@router.get("/{contract_id}/status", response_model=ContractStatusResponse)
async def get_contract_status(contract_id: str, pipeline: ContractPipeline = Depends(get_pipeline)):
    try:
        return pipeline.get_status(contract_id)
    except ContractNotFoundError as e:
        raise _not_found(e)


@router.post("/{contract_id}/reprocess", response_model=ProcessingResponse, status_code=202)
async def reprocess_contract(
    contract_id: str,
    background_tasks: BackgroundTasks,
    pipeline: ContractPipeline = Depends(get_pipeline),
):
    """Queue a fresh extraction and analysis of the contract."""
    try:
        current = pipeline.get_status(contract_id)
    except ContractNotFoundError as e:
        raise _not_found(e)

    if current.ocr_status == ProcessingStatus.PROCESSING.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Contract is already being processed")

    background_tasks.add_task(pipeline.reprocess, contract_id)
    return ProcessingResponse(id=contract_id, accepted=True, message="Reprocessing queued")


@router.post("/{contract_id}/reanalyze", response_model=AnalysisResponse)
async def reanalyze_contract(
    contract_id: str,
    force: bool = False,
    user_id: str = Depends(get_current_user_id),
    pipeline: ContractPipeline = Depends(get_pipeline),
):
    """Run the AI analysis, serving a recent cached result unless forced."""
    try:
        outcome = await pipeline.reanalyze(contract_id, user_id, force=force)
    except ContractNotFoundError as e:
        raise _not_found(e)
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
    except AIServiceError as e:
        unavailable = e.kind == AIErrorKind.UNAVAILABLE
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE if unavailable else status.HTTP_502_BAD_GATEWAY,
            detail=f"AI analysis failed ({e.kind.value}): {str(e)}",
        )

    if outcome.status != ProcessingStatus.COMPLETED.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=outcome.error)

    return AnalysisResponse(
        status=outcome.status,
        from_cache=outcome.from_cache,
        has_cached_analysis=outcome.has_cached_analysis,
        credits_remaining=outcome.credits_remaining,
        analysis=outcome.analysis,
    )


@router.get("/{contract_id}/alerts", response_model=List[AlertResponse])
async def get_contract_alerts(contract_id: str, pipeline: ContractPipeline = Depends(get_pipeline)):
    try:
        return pipeline.list_alerts(contract_id)
    except ContractNotFoundError as e:
        raise _not_found(e)


@router.get("/{contract_id}/tacit-renewal")
async def get_tacit_renewal(contract_id: str, pipeline: ContractPipeline = Depends(get_pipeline)):
    """Tacit renewal verdict, from the AI analysis when a recent one exists."""
    try:
        return pipeline.get_tacit_renewal_info(contract_id)
    except ContractNotFoundError as e:
        raise _not_found(e)
