from typing import Literal

from pydantic import BaseModel, Field

from termsync.services.repository import Category, Primary, PrimaryStatus


class PairSelector(BaseModel):
    post_type: str | None = None
    taxonomy: str | None = None


class TermOut(BaseModel):
    id: str
    name: str
    slug: str
    taxonomy: str
    count: int = 0
    description: str = ""

    @classmethod
    def from_record(cls, category: Category) -> "TermOut":
        return cls(
            id=category.id,
            name=category.name,
            slug=category.slug,
            taxonomy=category.taxonomy,
            count=category.count,
            description=category.description,
        )


class PostOut(BaseModel):
    id: str
    title: str
    content: str = ""
    status: str
    type: str
    menu_order: int = 0

    @classmethod
    def from_record(cls, primary: Primary) -> "PostOut":
        return cls(
            id=primary.id,
            title=primary.name,
            content=primary.body,
            status=primary.status,
            type=primary.type,
            menu_order=primary.menu_order,
        )


class CreateTermRequest(PairSelector):
    name: str = Field(min_length=1)
    description: str = ""


class CreatePostRequest(PairSelector):
    title: str = Field(min_length=1)
    content: str = ""
    status: PrimaryStatus = "published"


class CreateTermResponse(BaseModel):
    success: bool
    message: str
    term: TermOut
    linked_post_id: str | None = None


class CreatePostResponse(BaseModel):
    success: bool
    message: str
    post: PostOut
    linked_term_id: str | None = None


class BulkSyncResponse(BaseModel):
    success: bool = True
    message: str
    synced: int
    errors: int


class BatchInitRequest(PairSelector):
    operation: Literal["posts-to-terms", "terms-to-posts"]
    chunk_size: int | None = Field(default=None, ge=1, le=1000)


class BatchInitResponse(BaseModel):
    success: bool = True
    batch_id: str
    total: int
    message: str


class BatchIdRequest(BaseModel):
    batch_id: str = Field(min_length=1)


class BatchStatusOut(BaseModel):
    success: bool = True
    batch_id: str
    complete: bool
    processed: int
    total: int
    synced: int
    errors: int
    percentage: float
    message: str | None = None


class BatchCleanupResponse(BaseModel):
    success: bool = True
    removed: bool
    message: str = "Batch data cleaned up."


class VerifyRequest(PairSelector):
    fix: bool = False


class VerifyResponse(BaseModel):
    success: bool
    pair: str
    posts_without_terms: int
    terms_without_posts: int
    broken_links: int
    fixed: int
    message: str
