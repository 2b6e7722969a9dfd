from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from termsync.core.security import get_api_principal
from termsync.schemas.relationships import (
    AdjacentPostOut,
    PostTypeRelationshipListOut,
    PostTypeRelationshipOut,
    RedirectTargetOut,
    RelatedPostOut,
    RelatedPostsOut,
    RelationshipListOut,
    RelationshipOrderRequest,
    RelationshipOrderResponse,
    RelationshipOut,
    TermRefOut,
)
from termsync.services.context import SyncContext, get_context
from termsync.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.get("/relationships", response_model=RelationshipListOut)
async def list_relationships(
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
    post_type: str | None = Query(default=None),
    taxonomy: str | None = Query(default=None),
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
) -> RelationshipListOut:
    try:
        principal.require_scopes({"sync:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await context.resolver.list_relationships(
            primary_type=post_type,
            taxonomy=taxonomy,
            search=search,
            page=page,
            per_page=per_page,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RelationshipListOut(
        relationships=[
            RelationshipOut(
                id=f"{row.primary.id}_{row.category.id}",
                post_id=row.primary.id,
                post_title=row.primary.name,
                post_type=row.primary.type,
                post_status=row.primary.status,
                term_id=row.category.id,
                term_name=row.category.name,
                term_slug=row.category.slug,
                taxonomy=row.category.taxonomy,
                term_count=row.category.count,
            )
            for row in result.items
        ],
        total=result.total,
        pages=result.pages,
        page=result.page,
        per_page=result.per_page,
    )


@router.get("/post-type-relationships", response_model=PostTypeRelationshipListOut)
async def post_type_relationships(
    post_type: str = Query(min_length=1),
    taxonomy: str = Query(min_length=1),
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
    related_type: str | None = Query(default=None),
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
) -> PostTypeRelationshipListOut:
    try:
        principal.require_scopes({"content:edit"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await context.resolver.post_type_relationships(
            post_type,
            taxonomy,
            search=search,
            page=page,
            per_page=per_page,
            related_type=related_type,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return PostTypeRelationshipListOut(
        relationships=[
            PostTypeRelationshipOut(
                post=RelatedPostOut.from_record(row.primary),
                term=TermRefOut(id=row.category.id, name=row.category.name, slug=row.category.slug),
                related_posts=[RelatedPostOut.from_record(related) for related in row.related],
                related_count=len(row.related),
            )
            for row in result.items
        ],
        total=result.total,
        pages=result.pages,
        page=result.page,
        per_page=result.per_page,
    )


@router.post("/relationship-order", response_model=RelationshipOrderResponse)
async def update_relationship_order(
    payload: RelationshipOrderRequest,
    principal=Depends(get_api_principal),
    context: SyncContext = Depends(get_context),
) -> RelationshipOrderResponse:
    try:
        principal.require_scopes({"content:edit"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        order = await context.relationships.write_order(payload.parent_post_id, payload.taxonomy, payload.order)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return RelationshipOrderResponse(order=order)


@router.get("/related-posts", response_model=RelatedPostsOut)
async def related_posts(
    post_id: str = Query(min_length=1),
    context: SyncContext = Depends(get_context),
    target_type: str | None = Query(default=None),
    taxonomy: str | None = Query(default=None),
    use_custom_order: bool = Query(default=False),
) -> RelatedPostsOut:
    try:
        primary = await context.repository.get_primary(post_id)
        if primary is None:
            raise RepositoryNotFoundError("primary not found")
        siblings = await context.resolver.siblings_for_primary(
            primary,
            target_type or primary.type,
            use_custom_order,
            taxonomy=taxonomy,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return RelatedPostsOut(
        post_id=primary.id,
        target_type=target_type or primary.type,
        posts=[RelatedPostOut.from_record(sibling) for sibling in siblings],
    )


@router.get("/adjacent-post", response_model=AdjacentPostOut)
async def adjacent_post(
    post_id: str = Query(min_length=1),
    taxonomy: str = Query(min_length=1),
    direction: Literal["previous", "next"] = Query(default="next"),
    context: SyncContext = Depends(get_context),
    parent_type: str | None = Query(default=None),
    use_custom_order: bool = Query(default=True),
) -> AdjacentPostOut:
    try:
        primary = await context.repository.get_primary(post_id)
        if primary is None:
            raise RepositoryNotFoundError("primary not found")
        adjacent = await context.resolver.adjacent_sibling(
            primary,
            taxonomy,
            direction,
            use_custom_order=use_custom_order,
            parent_type=parent_type,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return AdjacentPostOut(
        post_id=primary.id,
        direction=direction,
        adjacent=RelatedPostOut.from_record(adjacent) if adjacent else None,
    )


@router.get("/redirect-target", response_model=RedirectTargetOut)
async def redirect_target(
    taxonomy: str = Query(min_length=1),
    term_id: str = Query(min_length=1),
    context: SyncContext = Depends(get_context),
) -> RedirectTargetOut:
    try:
        primary = await context.resolver.redirect_target(taxonomy, term_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    if primary is None:
        return RedirectTargetOut(redirect=False, term_id=term_id)
    return RedirectTargetOut(redirect=True, term_id=term_id, post_id=primary.id, post_title=primary.name)
