from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, Union


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the storage backend is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity, pair or batch does not exist."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before any write."""


class RepositoryCreateError(RepositoryError):
    """Raised when the backend refuses to create a record (e.g. duplicate name)."""


class LinkWriteError(RepositoryError):
    """Raised when a link pointer pair could not be written; nothing is left behind."""


PrimaryStatus = Literal["draft", "published", "trashed", "deleted"]
PRIMARY_STATUSES = {"draft", "published", "trashed", "deleted"}
PRIMARY_ORDERINGS = {"created", "menu_order"}
DEFAULT_PRIMARY_STATUS: PrimaryStatus = "published"


@dataclass(slots=True)
class Primary:
    id: str
    type: str
    name: str
    body: str = ""
    status: str = DEFAULT_PRIMARY_STATUS
    slug: str = ""
    menu_order: int = 0
    is_revision: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    categories: dict[str, list[str]] = field(default_factory=dict)

    def category_ids(self, taxonomy: str) -> list[str]:
        return list(self.categories.get(taxonomy, []))


@dataclass(slots=True)
class Category:
    id: str
    taxonomy: str
    name: str
    slug: str = ""
    description: str = ""
    count: int = 0
    metadata: dict[str, str] = field(default_factory=dict)


Entity = Union[Primary, Category]


class LifecycleListener(Protocol):
    async def primary_created(self, primary: Primary) -> None: ...

    async def primary_updated(self, before: Primary, after: Primary) -> None: ...

    async def primary_before_delete(self, primary: Primary) -> None: ...

    async def category_created(self, category: Category) -> None: ...

    async def category_updated(self, before: Category, after: Category) -> None: ...

    async def category_before_delete(self, category: Category) -> None: ...


class Repository(Protocol):
    """Storage contract the sync core calls through.

    Lifecycle hooks fire synchronously from inside the mutating call:
    ``category_created`` fires after the row exists but before the caller
    gets a chance to write link pointers, and the ``*_before_delete`` hooks
    fire while the record and its metadata are still readable.
    """

    def bind_listener(self, listener: LifecycleListener | None) -> None: ...

    async def close(self) -> None: ...

    async def create_primary(
        self,
        *,
        primary_type: str,
        name: str,
        body: str = "",
        status: str = DEFAULT_PRIMARY_STATUS,
        slug: str | None = None,
        menu_order: int = 0,
        is_revision: bool = False,
    ) -> Primary: ...

    async def get_primary(self, primary_id: str) -> Primary | None: ...

    async def update_primary(self, primary_id: str, **fields: Any) -> Primary: ...

    async def delete_primary(self, primary_id: str, *, hard: bool = True) -> None: ...

    async def find_primary_by_exact_name(
        self, primary_type: str, name: str, status: str = DEFAULT_PRIMARY_STATUS
    ) -> Primary | None: ...

    async def query_primaries(
        self,
        primary_type: str,
        *,
        status: str | None = DEFAULT_PRIMARY_STATUS,
        tax_filter: tuple[str, str] | None = None,
        order: str = "created",
        limit: int | None = None,
        offset: int = 0,
        include_revisions: bool = False,
    ) -> list[Primary]: ...

    async def count_primaries(
        self,
        primary_type: str,
        *,
        status: str | None = DEFAULT_PRIMARY_STATUS,
        include_revisions: bool = False,
    ) -> int: ...

    async def create_category(self, *, taxonomy: str, name: str, description: str = "") -> Category: ...

    async def get_category(self, category_id: str) -> Category | None: ...

    async def find_category_by_exact_name(self, taxonomy: str, name: str) -> Category | None: ...

    async def update_category(self, category_id: str, **fields: Any) -> Category: ...

    async def delete_category(self, category_id: str) -> None: ...

    async def query_categories(
        self,
        taxonomy: str,
        *,
        include_empty: bool = True,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Category]: ...

    async def count_categories(self, taxonomy: str) -> int: ...

    async def get_meta(self, entity: Entity, key: str) -> str | None: ...

    async def set_meta(self, entity: Entity, key: str, value: str) -> None: ...

    async def delete_meta(self, entity: Entity, key: str) -> None: ...

    async def get_batch_progress(self, batch_id: str) -> dict[str, Any] | None: ...

    async def save_batch_progress(self, batch_id: str, payload: dict[str, Any], *, ttl_seconds: int) -> None: ...

    async def delete_batch_progress(self, batch_id: str) -> bool: ...


class HookedRepository:
    """Lifecycle hook plumbing shared by the concrete repositories."""

    def __init__(self) -> None:
        self._listener: LifecycleListener | None = None

    def bind_listener(self, listener: LifecycleListener | None) -> None:
        self._listener = listener

    async def _emit(self, event: str, *args: Any) -> None:
        if self._listener is None:
            return
        handler = getattr(self._listener, event)
        await handler(*args)

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _validate_status(status: str) -> str:
        if status not in PRIMARY_STATUSES:
            raise RepositoryValidationError(
                "status must be one of: draft, published, trashed, deleted",
            )
        return status

    @staticmethod
    def _validate_ordering(order: str) -> str:
        if order not in PRIMARY_ORDERINGS:
            raise RepositoryValidationError("order must be one of: created, menu_order")
        return order
