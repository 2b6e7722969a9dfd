from fastapi import APIRouter, Depends, HTTPException, status

from termsync.core.security import get_api_principal
from termsync.schemas.sync import VerifyRequest, VerifyResponse
from termsync.services.context import SyncContext, get_context
from termsync.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.post("/verify", response_model=VerifyResponse)
async def verify_integrity(
    payload: VerifyRequest | None = None,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> VerifyResponse:
    try:
        principal.require_scopes({"sync:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    request = payload or VerifyRequest()
    try:
        pair = context.resolve_pair(request.post_type, request.taxonomy)
        report = await context.integrity.verify(pair, fix=request.fix)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return VerifyResponse(
        success=report.ok,
        pair=report.pair_key,
        posts_without_terms=report.primaries_without_link,
        terms_without_posts=report.categories_without_link,
        broken_links=report.broken_links,
        fixed=report.fixed,
        message=report.message,
    )
