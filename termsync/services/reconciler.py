from __future__ import annotations

import logging
from dataclasses import dataclass

from opentelemetry import trace

from termsync.core.pairs import SyncPair
from termsync.services.dispatch import SyncRegistry
from termsync.services.relationships import category_link_key, primary_link_key
from termsync.services.repository import (
    DEFAULT_PRIMARY_STATUS,
    Category,
    Primary,
    Repository,
    RepositoryError,
)
from termsync.services.sync_engine import SyncEngine, disambiguated_category_name

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class ReconcileResult:
    synced: int = 0
    errors: int = 0

    @property
    def examined(self) -> int:
        return self.synced + self.errors


class BulkReconciler:
    """Links whole collections of a pair, one page at a time.

    Each call reads one page of the source collection and the entire target
    collection once, so a page costs O(page + target) repository reads rather
    than one lookup per item. Every examined item lands in exactly one of
    ``synced`` or ``errors``.
    """

    def __init__(self, repository: Repository, registry: SyncRegistry) -> None:
        self.repository = repository
        self.registry = registry

    async def reconcile_primaries_to_categories(
        self,
        pair: SyncPair,
        offset: int = 0,
        limit: int | None = None,
    ) -> ReconcileResult:
        engine = self.registry.get(pair.type, pair.taxonomy)
        with tracer.start_as_current_span("reconcile.posts_to_terms") as span:
            span.set_attribute("sync.pair", pair.key)
            span.set_attribute("reconcile.offset", offset)
            page = await self.repository.query_primaries(
                pair.type,
                status=DEFAULT_PRIMARY_STATUS,
                order="created",
                limit=limit,
                offset=offset,
            )
            categories = await self.repository.query_categories(pair.taxonomy, include_empty=True)
            index = _CategoryIndex(categories, pair.type)

            result = ReconcileResult()
            for primary in page:
                try:
                    await self._link_primary(engine, index, primary)
                except RepositoryError as exc:
                    result.errors += 1
                    logger.warning(
                        "posts-to-terms item failed pair=%s primary_id=%s error=%s",
                        pair.key,
                        primary.id,
                        exc,
                    )
                else:
                    result.synced += 1

            span.set_attribute("reconcile.synced", result.synced)
            span.set_attribute("reconcile.errors", result.errors)
        logger.info(
            "posts-to-terms page done pair=%s offset=%s synced=%s errors=%s",
            pair.key,
            offset,
            result.synced,
            result.errors,
        )
        return result

    async def reconcile_categories_to_primaries(
        self,
        pair: SyncPair,
        offset: int = 0,
        limit: int | None = None,
    ) -> ReconcileResult:
        engine = self.registry.get(pair.type, pair.taxonomy)
        with tracer.start_as_current_span("reconcile.terms_to_posts") as span:
            span.set_attribute("sync.pair", pair.key)
            span.set_attribute("reconcile.offset", offset)
            page = await self.repository.query_categories(
                pair.taxonomy,
                include_empty=True,
                limit=limit,
                offset=offset,
            )
            primaries = await self.repository.query_primaries(
                pair.type,
                status=DEFAULT_PRIMARY_STATUS,
                order="created",
            )
            index = _PrimaryIndex(primaries, pair.taxonomy)

            result = ReconcileResult()
            for category in page:
                try:
                    await self._link_category(engine, index, category)
                except RepositoryError as exc:
                    result.errors += 1
                    logger.warning(
                        "terms-to-posts item failed pair=%s category_id=%s error=%s",
                        pair.key,
                        category.id,
                        exc,
                    )
                else:
                    result.synced += 1

            span.set_attribute("reconcile.synced", result.synced)
            span.set_attribute("reconcile.errors", result.errors)
        logger.info(
            "terms-to-posts page done pair=%s offset=%s synced=%s errors=%s",
            pair.key,
            offset,
            result.synced,
            result.errors,
        )
        return result

    async def _link_primary(self, engine: SyncEngine, index: _CategoryIndex, primary: Primary) -> None:
        name = primary.name
        target = index.pointed_by(primary, engine.pair.taxonomy)
        if target is None:
            target = index.by_name.get(name)
            if target is None:
                # Names are unique regardless of letter case; "rock" cannot be created next to "Rock".
                clash = name.casefold() in index.folded_names
            else:
                clash = await self._claimed_elsewhere(engine, index, target, primary)
            if clash:
                name = disambiguated_category_name(primary)
                target = index.by_name.get(name)
                if target is not None and await self._claimed_elsewhere(engine, index, target, primary):
                    target = None

        if target is None:
            created = await engine.create_category_for(primary, name)
            index.add(created, primary.id)
            return

        if (
            primary.metadata.get(category_link_key(engine.pair.taxonomy)) != target.id
            or index.owners.get(target.id) != primary.id
        ):
            await engine.relationships.link(primary, target)
            index.owners[target.id] = primary.id

    async def _link_category(self, engine: SyncEngine, index: _PrimaryIndex, category: Category) -> None:
        target = index.pointed_by(category, engine.pair.type)
        if target is None:
            target = index.by_name.get(category.name)
            if target is None:
                target = await self.repository.find_primary_by_exact_name(engine.pair.type, category.name)
            if target is not None:
                linked_id = index.links.get(target.id)
                if linked_id and linked_id != category.id and await engine.linked_category(target) is not None:
                    target = None

        if target is None:
            created = await engine.create_primary_for(category)
            index.add(created, category.id)
            return

        if (
            category.metadata.get(primary_link_key(engine.pair.type)) != target.id
            or index.links.get(target.id) != category.id
        ):
            await engine.relationships.link(target, category)
            index.links[target.id] = category.id

    @staticmethod
    async def _claimed_elsewhere(
        engine: SyncEngine,
        index: _CategoryIndex,
        category: Category,
        primary: Primary,
    ) -> bool:
        owner_id = index.owners.get(category.id)
        if not owner_id or owner_id == primary.id:
            return False
        return await engine.live_primary(owner_id) is not None


class _CategoryIndex:
    def __init__(self, categories: list[Category], primary_type: str) -> None:
        self.by_id: dict[str, Category] = {}
        self.by_name: dict[str, Category] = {}
        self.folded_names: set[str] = set()
        self.owners: dict[str, str] = {}
        self._owner_key = primary_link_key(primary_type)
        for category in categories:
            self.add(category, category.metadata.get(self._owner_key))

    def add(self, category: Category, owner_id: str | None) -> None:
        self.by_id[category.id] = category
        self.by_name.setdefault(category.name, category)
        self.folded_names.add(category.name.casefold())
        if owner_id:
            self.owners[category.id] = owner_id

    def pointed_by(self, primary: Primary, taxonomy: str) -> Category | None:
        category_id = primary.metadata.get(category_link_key(taxonomy))
        if not category_id or category_id not in self.by_id:
            return None
        if self.owners.get(category_id) not in (None, primary.id):
            return None
        return self.by_id[category_id]


class _PrimaryIndex:
    def __init__(self, primaries: list[Primary], taxonomy: str) -> None:
        self.by_id: dict[str, Primary] = {}
        self.by_name: dict[str, Primary] = {}
        self.links: dict[str, str] = {}
        self._link_key = category_link_key(taxonomy)
        for primary in primaries:
            self.add(primary, primary.metadata.get(self._link_key))

    def add(self, primary: Primary, category_id: str | None) -> None:
        self.by_id[primary.id] = primary
        self.by_name.setdefault(primary.name, primary)
        if category_id:
            self.links[primary.id] = category_id

    def pointed_by(self, category: Category, primary_type: str) -> Primary | None:
        primary_id = category.metadata.get(primary_link_key(primary_type))
        if not primary_id or primary_id not in self.by_id:
            return None
        if self.links.get(primary_id) not in (None, category.id):
            return None
        return self.by_id[primary_id]
