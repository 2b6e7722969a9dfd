from __future__ import annotations

import itertools
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from termsync.core.slugs import id_sort_key, slugify
from termsync.services.repository import (
    DEFAULT_PRIMARY_STATUS,
    Category,
    Entity,
    HookedRepository,
    Primary,
    RepositoryCreateError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)

PRIMARY_UPDATABLE_FIELDS = {"name", "body", "status", "slug", "menu_order", "categories"}
CATEGORY_UPDATABLE_FIELDS = {"name", "description", "slug"}


class InMemoryRepository(HookedRepository):
    """Process-local repository used for development and tests.

    Records are stored internally and handed out as copies, so callers never
    alias repository state. ``set_meta``/``delete_meta`` also update the
    metadata of the snapshot passed in, which keeps the caller's view fresh.
    """

    def __init__(
        self,
        *,
        progress_capacity: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self.primaries: dict[str, Primary] = {}
        self.categories: dict[str, Category] = {}
        self._primary_ids = itertools.count(1)
        self._category_ids = itertools.count(1)
        self._progress: dict[str, tuple[float, dict[str, Any]]] = {}
        self._progress_capacity = max(1, progress_capacity)
        self._clock = clock

    async def close(self) -> None:
        return None

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
    ) -> Primary:
        normalized_name = self._coerce_text(name)
        if not normalized_name:
            raise RepositoryCreateError("primary name must be a non-empty string")
        self._validate_status(status)

        primary_id = str(next(self._primary_ids))
        record = Primary(
            id=primary_id,
            type=primary_type,
            name=normalized_name,
            body=body or "",
            status=status,
            slug=slug if slug is not None else slugify(normalized_name),
            menu_order=menu_order,
            is_revision=is_revision,
        )
        self.primaries[primary_id] = record
        await self._emit("primary_created", self._copy_primary(record))
        return self._copy_primary(record)

    async def get_primary(self, primary_id: str) -> Primary | None:
        record = self.primaries.get(primary_id)
        return self._copy_primary(record) if record else None

    async def update_primary(self, primary_id: str, **fields: Any) -> Primary:
        record = self.primaries.get(primary_id)
        if not record:
            raise RepositoryNotFoundError("primary not found")
        unknown = set(fields) - PRIMARY_UPDATABLE_FIELDS
        if unknown:
            raise RepositoryValidationError(f"unknown primary fields: {sorted(unknown)}")
        if "name" in fields and not self._coerce_text(fields["name"]):
            raise RepositoryValidationError("primary name must be a non-empty string")
        if "status" in fields:
            self._validate_status(fields["status"])

        before = self._copy_primary(record)
        for key, value in fields.items():
            if key == "name":
                value = self._coerce_text(value)
            elif key == "categories":
                value = {taxonomy: _unique(ids) for taxonomy, ids in dict(value).items()}
            setattr(record, key, value)
        await self._emit("primary_updated", before, self._copy_primary(record))
        return self._copy_primary(record)

    async def delete_primary(self, primary_id: str, *, hard: bool = True) -> None:
        record = self.primaries.get(primary_id)
        if not record:
            raise RepositoryNotFoundError("primary not found")
        if not hard:
            await self.update_primary(primary_id, status="trashed")
            return

        await self._emit("primary_before_delete", self._copy_primary(record))
        self.primaries.pop(primary_id, None)

    async def find_primary_by_exact_name(
        self, primary_type: str, name: str, status: str = DEFAULT_PRIMARY_STATUS
    ) -> Primary | None:
        for record in self._sorted_primaries():
            if record.name == name and self._primary_matches(record, primary_type, status, include_revisions=False):
                return self._copy_primary(record)
        return None

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
    ) -> list[Primary]:
        self._validate_ordering(order)
        rows = [
            record
            for record in self._sorted_primaries()
            if self._primary_matches(record, primary_type, status, include_revisions)
        ]
        if tax_filter is not None:
            taxonomy, category_id = tax_filter
            rows = [record for record in rows if category_id in record.categories.get(taxonomy, [])]
        if order == "menu_order":
            rows.sort(key=lambda record: (record.menu_order, id_sort_key(record.id)))
        window = rows[offset:] if limit is None else rows[offset : offset + limit]
        return [self._copy_primary(record) for record in window]

    async def count_primaries(
        self,
        primary_type: str,
        *,
        status: str | None = DEFAULT_PRIMARY_STATUS,
        include_revisions: bool = False,
    ) -> int:
        return sum(
            1
            for record in self.primaries.values()
            if self._primary_matches(record, primary_type, status, include_revisions)
        )

    async def create_category(self, *, taxonomy: str, name: str, description: str = "") -> Category:
        normalized_name = self._coerce_text(name)
        if not normalized_name:
            raise RepositoryCreateError("category name must be a non-empty string")
        if self._category_name_taken(taxonomy, normalized_name):
            raise RepositoryCreateError("a category with this name already exists")

        category_id = str(next(self._category_ids))
        record = Category(
            id=category_id,
            taxonomy=taxonomy,
            name=normalized_name,
            slug=self._unique_category_slug(taxonomy, normalized_name, category_id),
            description=description or "",
        )
        self.categories[category_id] = record
        await self._emit("category_created", self._copy_category(record))
        return self._copy_category(record)

    async def get_category(self, category_id: str) -> Category | None:
        record = self.categories.get(category_id)
        return self._copy_category(record) if record else None

    async def find_category_by_exact_name(self, taxonomy: str, name: str) -> Category | None:
        for record in self._sorted_categories(taxonomy):
            if record.name == name:
                return self._copy_category(record)
        return None

    async def update_category(self, category_id: str, **fields: Any) -> Category:
        record = self.categories.get(category_id)
        if not record:
            raise RepositoryNotFoundError("category not found")
        unknown = set(fields) - CATEGORY_UPDATABLE_FIELDS
        if unknown:
            raise RepositoryValidationError(f"unknown category fields: {sorted(unknown)}")
        if "name" in fields:
            new_name = self._coerce_text(fields["name"])
            if not new_name:
                raise RepositoryValidationError("category name must be a non-empty string")
            if self._category_name_taken(record.taxonomy, new_name, exclude_id=category_id):
                raise RepositoryValidationError("a category with this name already exists")
            fields["name"] = new_name
            if "slug" not in fields:
                fields["slug"] = self._unique_category_slug(record.taxonomy, new_name, category_id)

        before = self._copy_category(record)
        for key, value in fields.items():
            setattr(record, key, value)
        await self._emit("category_updated", before, self._copy_category(record))
        return self._copy_category(record)

    async def delete_category(self, category_id: str) -> None:
        record = self.categories.get(category_id)
        if not record:
            raise RepositoryNotFoundError("category not found")

        await self._emit("category_before_delete", self._copy_category(record))
        self.categories.pop(category_id, None)
        for primary in self.primaries.values():
            members = primary.categories.get(record.taxonomy)
            if members and category_id in members:
                members.remove(category_id)

    async def query_categories(
        self,
        taxonomy: str,
        *,
        include_empty: bool = True,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Category]:
        rows = [self._copy_category(record) for record in self._sorted_categories(taxonomy)]
        if not include_empty:
            rows = [row for row in rows if row.count > 0]
        return rows[offset:] if limit is None else rows[offset : offset + limit]

    async def count_categories(self, taxonomy: str) -> int:
        return sum(1 for record in self.categories.values() if record.taxonomy == taxonomy)

    async def get_meta(self, entity: Entity, key: str) -> str | None:
        record = self._stored(entity)
        return record.metadata.get(key) if record else None

    async def set_meta(self, entity: Entity, key: str, value: str) -> None:
        record = self._stored(entity)
        if not record:
            raise RepositoryNotFoundError(f"{_kind(entity)} not found")
        record.metadata[key] = value
        entity.metadata[key] = value

    async def delete_meta(self, entity: Entity, key: str) -> None:
        record = self._stored(entity)
        if record:
            record.metadata.pop(key, None)
        entity.metadata.pop(key, None)

    async def get_batch_progress(self, batch_id: str) -> dict[str, Any] | None:
        entry = self._progress.get(batch_id)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= self._clock():
            self._progress.pop(batch_id, None)
            return None
        return dict(payload)

    async def save_batch_progress(self, batch_id: str, payload: dict[str, Any], *, ttl_seconds: int) -> None:
        now = self._clock()
        if batch_id not in self._progress and len(self._progress) >= self._progress_capacity:
            self._evict_progress(now)
        self._progress[batch_id] = (now + ttl_seconds, dict(payload))

    async def delete_batch_progress(self, batch_id: str) -> bool:
        return self._progress.pop(batch_id, None) is not None

    def _evict_progress(self, now: float) -> None:
        for batch_id, (expires_at, _) in list(self._progress.items()):
            if expires_at <= now:
                del self._progress[batch_id]
        while len(self._progress) >= self._progress_capacity:
            oldest = min(self._progress, key=lambda batch_id: self._progress[batch_id][0])
            del self._progress[oldest]

    def _stored(self, entity: Entity) -> Primary | Category | None:
        if isinstance(entity, Primary):
            return self.primaries.get(entity.id)
        return self.categories.get(entity.id)

    def _sorted_primaries(self) -> list[Primary]:
        return sorted(self.primaries.values(), key=lambda record: id_sort_key(record.id))

    @staticmethod
    def _primary_matches(record: Primary, primary_type: str, status: str | None, include_revisions: bool) -> bool:
        if record.type != primary_type or (record.is_revision and not include_revisions):
            return False
        return status is None or record.status == status

    def _sorted_categories(self, taxonomy: str) -> list[Category]:
        return sorted(
            (record for record in self.categories.values() if record.taxonomy == taxonomy),
            key=lambda record: id_sort_key(record.id),
        )

    def _category_name_taken(self, taxonomy: str, name: str, *, exclude_id: str | None = None) -> bool:
        folded = name.casefold()
        return any(
            record.taxonomy == taxonomy and record.id != exclude_id and record.name.casefold() == folded
            for record in self.categories.values()
        )

    def _unique_category_slug(self, taxonomy: str, name: str, category_id: str) -> str:
        base = slugify(name) or f"category-{category_id}"
        taken = {
            record.slug
            for record in self.categories.values()
            if record.taxonomy == taxonomy and record.id != category_id
        }
        candidate = base
        suffix = 2
        while candidate in taken:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _member_count(self, category: Category) -> int:
        return sum(
            1
            for record in self.primaries.values()
            if category.id in record.categories.get(category.taxonomy, [])
        )

    @staticmethod
    def _copy_primary(record: Primary) -> Primary:
        return replace(
            record,
            metadata=dict(record.metadata),
            categories={taxonomy: list(ids) for taxonomy, ids in record.categories.items()},
        )

    def _copy_category(self, record: Category) -> Category:
        return replace(record, metadata=dict(record.metadata), count=self._member_count(record))


def _unique(ids: list[str]) -> list[str]:
    return list(dict.fromkeys(str(item) for item in ids))


def _kind(entity: Entity) -> str:
    return "primary" if isinstance(entity, Primary) else "category"
