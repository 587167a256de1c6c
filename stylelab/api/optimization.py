"""
Optimization endpoints - start a style optimization and follow its progress.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from stylelab.database import get_db
from stylelab.errors import NotFoundError, ValidationError
from stylelab.schemas.api_responses import (
    ProcessStatusResponse,
    ProcessTreeResponse,
    StartProcessResponse,
)
from stylelab.schemas.optimization import OptimizationConfig
from stylelab.services.optimization import (
    get_process_status,
    get_process_tree,
    start_optimization_process,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/optimizations", tags=["optimizations"])


@router.post("", status_code=202, response_model=StartProcessResponse)
async def start_process(config: OptimizationConfig):
    """Create an optimization process. Round 1 starts in the background."""
    try:
        process_id = await start_optimization_process(config)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return StartProcessResponse(process_id=process_id, status="processing")


@router.get("/{process_id}/status", response_model=ProcessStatusResponse)
async def process_status(
    process_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_process_status(db, process_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{process_id}/tree", response_model=ProcessTreeResponse)
async def process_tree(
    process_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Every round of the process with its segments and metrics."""
    try:
        return await get_process_tree(db, process_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
