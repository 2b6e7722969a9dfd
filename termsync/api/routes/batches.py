from fastapi import APIRouter, Depends, HTTPException, Query, status

from termsync.core.security import get_api_principal
from termsync.schemas.sync import (
    BatchCleanupResponse,
    BatchIdRequest,
    BatchInitRequest,
    BatchInitResponse,
    BatchStatusOut,
)
from termsync.services.batches import BatchStatus
from termsync.services.context import SyncContext, get_context
from termsync.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


def _status_out(batch: BatchStatus, *, with_message: bool = True) -> BatchStatusOut:
    return BatchStatusOut(
        batch_id=batch.batch_id,
        complete=batch.complete,
        processed=batch.processed,
        total=batch.total,
        synced=batch.synced,
        errors=batch.errors,
        percentage=batch.percentage,
        message=batch.message if with_message else None,
    )


@router.post("/init", response_model=BatchInitResponse)
async def init_batch(
    payload: BatchInitRequest,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> BatchInitResponse:
    try:
        principal.require_scopes({"sync:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        pair = context.resolve_pair(payload.post_type, payload.taxonomy)
        batch = await context.batches.init(pair, payload.operation, chunk_size=payload.chunk_size)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return BatchInitResponse(batch_id=batch.batch_id, total=batch.total, message=batch.message)


@router.post("/process", response_model=BatchStatusOut)
async def process_batch(
    payload: BatchIdRequest,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> BatchStatusOut:
    try:
        principal.require_scopes({"sync:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        batch = await context.batches.process(payload.batch_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return _status_out(batch)


@router.get("/progress", response_model=BatchStatusOut)
async def batch_progress(
    batch_id: str = Query(min_length=1),
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> BatchStatusOut:
    try:
        principal.require_scopes({"sync:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        batch = await context.batches.progress(batch_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return _status_out(batch, with_message=False)


@router.post("/cleanup", response_model=BatchCleanupResponse)
async def cleanup_batch(
    payload: BatchIdRequest,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> BatchCleanupResponse:
    try:
        principal.require_scopes({"sync:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        removed = await context.batches.cleanup(payload.batch_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return BatchCleanupResponse(removed=removed)
