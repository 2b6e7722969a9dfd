from typing import Any

from pydantic import BaseModel, Field

from termsync.services.repository import Primary


class RelationshipOut(BaseModel):
    id: str
    post_id: str
    post_title: str
    post_type: str
    post_status: str
    term_id: str
    term_name: str
    term_slug: str
    taxonomy: str
    term_count: int


class RelationshipListOut(BaseModel):
    relationships: list[RelationshipOut] = Field(default_factory=list)
    total: int
    pages: int
    page: int
    per_page: int


class RelatedPostOut(BaseModel):
    id: str
    title: str
    post_type: str
    post_status: str
    menu_order: int = 0

    @classmethod
    def from_record(cls, primary: Primary) -> "RelatedPostOut":
        return cls(
            id=primary.id,
            title=primary.name,
            post_type=primary.type,
            post_status=primary.status,
            menu_order=primary.menu_order,
        )


class TermRefOut(BaseModel):
    id: str
    name: str
    slug: str


class PostTypeRelationshipOut(BaseModel):
    post: RelatedPostOut
    term: TermRefOut
    related_posts: list[RelatedPostOut] = Field(default_factory=list)
    related_count: int


class PostTypeRelationshipListOut(BaseModel):
    relationships: list[PostTypeRelationshipOut] = Field(default_factory=list)
    total: int
    pages: int
    page: int
    per_page: int


class RelationshipOrderRequest(BaseModel):
    parent_post_id: str = Field(min_length=1)
    taxonomy: str = Field(min_length=1)
    order: list[Any]


class RelationshipOrderResponse(BaseModel):
    success: bool = True
    message: str = "Relationship order updated successfully."
    order: list[str]


class RelatedPostsOut(BaseModel):
    post_id: str
    target_type: str
    posts: list[RelatedPostOut] = Field(default_factory=list)


class AdjacentPostOut(BaseModel):
    post_id: str
    direction: str
    adjacent: RelatedPostOut | None = None


class RedirectTargetOut(BaseModel):
    redirect: bool
    term_id: str
    post_id: str | None = None
    post_title: str | None = None
