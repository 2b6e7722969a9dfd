from fastapi import APIRouter, Depends, HTTPException, Response, status

from termsync.core.security import get_api_principal
from termsync.schemas.sync import (
    BulkSyncResponse,
    CreatePostRequest,
    CreatePostResponse,
    CreateTermRequest,
    CreateTermResponse,
    PairSelector,
    PostOut,
    TermOut,
)
from termsync.services.batches import plural
from termsync.services.context import SyncContext, get_context
from termsync.services.repository import (
    RepositoryCreateError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.post("/create-term", response_model=CreateTermResponse, status_code=status.HTTP_201_CREATED)
async def create_term(
    payload: CreateTermRequest,
    response: Response,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> CreateTermResponse:
    try:
        principal.require_scopes({"content:edit"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        pair = context.resolve_pair(payload.post_type, payload.taxonomy)
        existing = await context.repository.find_category_by_exact_name(pair.taxonomy, payload.name.strip())
        if existing is not None:
            response.status_code = status.HTTP_200_OK
            return CreateTermResponse(
                success=False,
                message="A term with this name already exists.",
                term=TermOut.from_record(existing),
                linked_post_id=await context.relationships.linked_primary_id(existing, pair.type),
            )

        created = await context.repository.create_category(
            taxonomy=pair.taxonomy,
            name=payload.name,
            description=payload.description,
        )
        category = await context.repository.get_category(created.id) or created
        linked_post_id = await context.relationships.linked_primary_id(category, pair.type)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryCreateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return CreateTermResponse(
        success=True,
        message="Term created and synced successfully.",
        term=TermOut.from_record(category),
        linked_post_id=linked_post_id,
    )


@router.post("/create-post", response_model=CreatePostResponse, status_code=status.HTTP_201_CREATED)
async def create_post(
    payload: CreatePostRequest,
    response: Response,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> CreatePostResponse:
    try:
        principal.require_scopes({"content:edit"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        pair = context.resolve_pair(payload.post_type, payload.taxonomy)
        existing = await context.repository.find_primary_by_exact_name(
            pair.type,
            payload.title.strip(),
            payload.status,
        )
        if existing is not None:
            response.status_code = status.HTTP_200_OK
            return CreatePostResponse(
                success=False,
                message="A post with this title already exists.",
                post=PostOut.from_record(existing),
                linked_term_id=await context.relationships.linked_category_id(existing, pair.taxonomy),
            )

        primary = await context.repository.create_primary(
            primary_type=pair.type,
            name=payload.title,
            body=payload.content,
            status=payload.status,
        )
        linked_term_id = await context.relationships.linked_category_id(primary, pair.taxonomy)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryCreateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return CreatePostResponse(
        success=True,
        message="Post created and synced successfully.",
        post=PostOut.from_record(primary),
        linked_term_id=linked_term_id,
    )


@router.post("/sync-posts-to-terms", response_model=BulkSyncResponse)
async def sync_posts_to_terms(
    payload: PairSelector | None = None,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> BulkSyncResponse:
    try:
        principal.require_scopes({"sync:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    selector = payload or PairSelector()
    try:
        pair = context.resolve_pair(selector.post_type, selector.taxonomy)
        result = await context.reconciler.reconcile_primaries_to_categories(pair)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    target = "term" if result.synced == 1 else "terms"
    return BulkSyncResponse(
        message=f"Synced {plural(result.synced, 'post')} to {target} with {plural(result.errors, 'error')}.",
        synced=result.synced,
        errors=result.errors,
    )


@router.post("/sync-terms-to-posts", response_model=BulkSyncResponse)
async def sync_terms_to_posts(
    payload: PairSelector | None = None,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> BulkSyncResponse:
    try:
        principal.require_scopes({"sync:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    selector = payload or PairSelector()
    try:
        pair = context.resolve_pair(selector.post_type, selector.taxonomy)
        result = await context.reconciler.reconcile_categories_to_primaries(pair)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    target = "post" if result.synced == 1 else "posts"
    return BulkSyncResponse(
        message=f"Synced {plural(result.synced, 'term')} to {target} with {plural(result.errors, 'error')}.",
        synced=result.synced,
        errors=result.errors,
    )
