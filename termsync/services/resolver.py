from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Generic, Literal, TypeVar

from termsync.core.slugs import id_sort_key
from termsync.services.dispatch import SyncRegistry
from termsync.services.relationships import RelationshipStore, category_link_key
from termsync.services.repository import (
    DEFAULT_PRIMARY_STATUS,
    Category,
    Primary,
    Repository,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from termsync.services.sync_engine import INACTIVE_PRIMARY_STATUSES, SyncEngine

Direction = Literal["previous", "next"]
DIRECTIONS = {"previous", "next"}

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.per_page) if self.per_page else 0


@dataclass(slots=True)
class RelationshipRow:
    primary: Primary
    category: Category


@dataclass(slots=True)
class PrimaryRelationships:
    primary: Primary
    category: Category
    related: list[Primary] = field(default_factory=list)


def fallback_sort_key(primary: Primary) -> tuple[int, tuple[int, int, str]]:
    return (primary.menu_order, id_sort_key(primary.id))


def apply_order(candidates: list[Primary], order: list[str]) -> list[Primary]:
    """Saved order first (unknown ids skipped), then the rest by fallback order."""
    remaining = {primary.id: primary for primary in candidates}
    ordered: list[Primary] = []
    for primary_id in order:
        primary = remaining.pop(primary_id, None)
        if primary is not None:
            ordered.append(primary)
    ordered.extend(sorted(remaining.values(), key=fallback_sort_key))
    return ordered


def _paginate(rows: list[T], page: int, per_page: int) -> Page[T]:
    if page < 1 or per_page < 1:
        raise RepositoryValidationError("page and per_page must be positive integers")
    offset = (page - 1) * per_page
    return Page(items=rows[offset : offset + per_page], total=len(rows), page=page, per_page=per_page)


def _matches(search: str | None, *values: str) -> bool:
    if not search:
        return True
    needle = search.casefold()
    return any(needle in value.casefold() for value in values)


class RelationshipQueryResolver:
    """Read side of the relationship graph.

    Pointer reads go through the pair's engine, so a stale or crossed
    pointer met here is dropped the same way the lifecycle handlers drop it.
    """

    def __init__(self, repository: Repository, registry: SyncRegistry, relationships: RelationshipStore) -> None:
        self.repository = repository
        self.registry = registry
        self.relationships = relationships

    async def category_for_primary(self, primary: Primary, taxonomy: str | None = None) -> Category | None:
        engine = self._engine_for_primary(primary.type, taxonomy)
        if engine is None:
            return None
        return await engine.linked_category(primary)

    async def primary_for_category(self, category: Category, primary_type: str | None = None) -> Primary | None:
        engine = self._engine_for_category(category.taxonomy, primary_type)
        if engine is None:
            return None
        return await engine.linked_primary(category)

    async def siblings_for_primary(
        self,
        primary: Primary,
        target_type: str,
        use_custom_order: bool,
        taxonomy: str | None = None,
    ) -> list[Primary]:
        engine = self._engine_for_primary(primary.type, taxonomy)
        if engine is None:
            return []
        category = await engine.linked_category(primary)
        if category is None:
            return []

        members = await self.repository.query_primaries(
            target_type,
            status=DEFAULT_PRIMARY_STATUS,
            tax_filter=(category.taxonomy, category.id),
        )
        if target_type == primary.type:
            members = [member for member in members if member.id != primary.id]
        if not use_custom_order:
            return sorted(members, key=fallback_sort_key)

        parent = await engine.linked_primary(category) or primary
        order = await self.relationships.read_order(parent, category.taxonomy)
        return apply_order(members, order)

    async def adjacent_sibling(
        self,
        primary: Primary,
        taxonomy: str,
        direction: str,
        use_custom_order: bool = True,
        parent_type: str | None = None,
    ) -> Primary | None:
        if direction not in DIRECTIONS:
            raise RepositoryValidationError("direction must be one of: previous, next")
        engine = self._engine_for_category(taxonomy, parent_type)
        if engine is None:
            raise RepositoryNotFoundError(f"no sync pair configured for taxonomy: {taxonomy}")

        category_ids = primary.category_ids(taxonomy)
        if not category_ids:
            linked_id = primary.metadata.get(category_link_key(taxonomy))
            category_ids = [linked_id] if linked_id else []
        if not category_ids:
            return None

        # (position of primary, -order length, category id, order)
        candidates: list[tuple[int, int, str, list[str]]] = []
        for category_id in category_ids:
            category = await self.repository.get_category(category_id)
            if category is None:
                continue
            parent = await engine.linked_primary(category)
            if parent is None or parent.status != DEFAULT_PRIMARY_STATUS:
                continue
            order = await self.relationships.read_order(parent, taxonomy)
            if primary.id in order:
                candidates.append((order.index(primary.id), -len(order), category_id, order))

        if use_custom_order and candidates:
            candidates.sort(key=lambda candidate: (candidate[0], candidate[1]))
            _, _, category_id, order = candidates[0]
            members = await self.repository.query_primaries(
                primary.type,
                status=DEFAULT_PRIMARY_STATUS,
                tax_filter=(taxonomy, category_id),
            )
            ordered = apply_order(members, order)
        else:
            members = await self.repository.query_primaries(
                primary.type,
                status=DEFAULT_PRIMARY_STATUS,
                tax_filter=(taxonomy, category_ids[0]),
            )
            ordered = sorted(members, key=fallback_sort_key)

        position = next((index for index, item in enumerate(ordered) if item.id == primary.id), None)
        if position is None:
            return None
        target = position - 1 if direction == "previous" else position + 1
        if target < 0 or target >= len(ordered):
            return None
        return ordered[target]

    async def list_relationships(
        self,
        primary_type: str | None = None,
        taxonomy: str | None = None,
        search: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page[RelationshipRow]:
        rows: list[RelationshipRow] = []
        for engine in self.registry:
            pair = engine.pair
            if primary_type and pair.type != primary_type:
                continue
            if taxonomy and pair.taxonomy != taxonomy:
                continue

            categories = {
                category.id: category
                for category in await self.repository.query_categories(pair.taxonomy, include_empty=True)
            }
            for primary in await self.repository.query_primaries(pair.type, status=None):
                if primary.status in INACTIVE_PRIMARY_STATUSES:
                    continue
                category = categories.get(primary.metadata.get(category_link_key(pair.taxonomy), ""))
                if category is None:
                    continue
                if not _matches(search, primary.name, category.name, pair.type, pair.taxonomy):
                    continue
                rows.append(RelationshipRow(primary=primary, category=category))
        return _paginate(rows, page, per_page)

    async def post_type_relationships(
        self,
        primary_type: str,
        taxonomy: str,
        search: str | None = None,
        page: int = 1,
        per_page: int = 20,
        related_type: str | None = None,
    ) -> Page[PrimaryRelationships]:
        try:
            self.registry.get(primary_type, taxonomy)
        except RepositoryNotFoundError as exc:
            raise RepositoryValidationError("invalid post type or taxonomy") from exc

        categories = {
            category.id: category
            for category in await self.repository.query_categories(taxonomy, include_empty=True)
        }
        rows: list[PrimaryRelationships] = []
        for primary in await self.repository.query_primaries(primary_type, status=None):
            if primary.status in INACTIVE_PRIMARY_STATUSES or not _matches(search, primary.name):
                continue
            category = categories.get(primary.metadata.get(category_link_key(taxonomy), ""))
            if category is None:
                continue
            rows.append(PrimaryRelationships(primary=primary, category=category))

        result = _paginate(rows, page, per_page)
        for row in result.items:
            members = await self.repository.query_primaries(
                related_type or primary_type,
                status=None,
                tax_filter=(taxonomy, row.category.id),
            )
            members = [
                member
                for member in members
                if member.id != row.primary.id and member.status not in INACTIVE_PRIMARY_STATUSES
            ]
            row.related = apply_order(members, await self.relationships.read_order(row.primary, taxonomy))
        return result

    async def redirect_target(self, taxonomy: str, category_id: str) -> Primary | None:
        engines = [engine for engine in self.registry.for_taxonomy(taxonomy) if engine.pair.redirect_enabled]
        if not engines:
            return None
        category = await self.repository.get_category(category_id)
        if category is None or category.taxonomy != taxonomy:
            raise RepositoryNotFoundError("category not found")
        for engine in engines:
            primary = await engine.linked_primary(category)
            if primary is not None and primary.status == DEFAULT_PRIMARY_STATUS:
                return primary
        return None

    def _engine_for_primary(self, primary_type: str, taxonomy: str | None) -> SyncEngine | None:
        for engine in self.registry.for_type(primary_type):
            if taxonomy is None or engine.pair.taxonomy == taxonomy:
                return engine
        return None

    def _engine_for_category(self, taxonomy: str, primary_type: str | None) -> SyncEngine | None:
        for engine in self.registry.for_taxonomy(taxonomy):
            if primary_type is None or engine.pair.type == primary_type:
                return engine
        return None
