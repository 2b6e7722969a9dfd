from __future__ import annotations

import logging
from collections.abc import Awaitable, Iterable

from termsync.core.pairs import SyncPair
from termsync.services.repository import DEFAULT_PRIMARY_STATUS, Category, Primary, RepositoryNotFoundError
from termsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncRegistry:
    """One engine per configured pair, keyed by ``(type, taxonomy)``."""

    def __init__(self, engines: Iterable[SyncEngine] = ()) -> None:
        self._engines: dict[tuple[str, str], SyncEngine] = {}
        for engine in engines:
            self.add(engine)

    def add(self, engine: SyncEngine) -> None:
        if engine.pair.identity in self._engines:
            raise ValueError(f"duplicate sync pair: {engine.pair.type}/{engine.pair.taxonomy}")
        self._engines[engine.pair.identity] = engine

    def __iter__(self):
        return iter(self._engines.values())

    def __len__(self) -> int:
        return len(self._engines)

    @property
    def pairs(self) -> list[SyncPair]:
        return [engine.pair for engine in self._engines.values()]

    def get(self, primary_type: str, taxonomy: str) -> SyncEngine:
        engine = self._engines.get((primary_type, taxonomy))
        if engine is None:
            raise RepositoryNotFoundError(f"sync pair not configured: {primary_type}/{taxonomy}")
        return engine

    def for_type(self, primary_type: str) -> list[SyncEngine]:
        return [engine for engine in self._engines.values() if engine.pair.type == primary_type]

    def for_taxonomy(self, taxonomy: str) -> list[SyncEngine]:
        return [engine for engine in self._engines.values() if engine.pair.taxonomy == taxonomy]


class LifecycleDispatcher:
    """Repository listener that fans lifecycle events out to matching engines."""

    def __init__(self, registry: SyncRegistry) -> None:
        self.registry = registry

    async def primary_created(self, primary: Primary) -> None:
        for engine in self.registry.for_type(primary.type):
            await self._run(engine.on_primary_created(primary), engine, "primary_created")

    async def primary_updated(self, before: Primary, after: Primary) -> None:
        published = before.status != DEFAULT_PRIMARY_STATUS and after.status == DEFAULT_PRIMARY_STATUS
        for engine in self.registry.for_type(after.type):
            if published:
                await self._run(engine.on_primary_created(after), engine, "primary_published")
                # An already-linked primary keeps its category; carry a title change made in the same write.
                if before.name != after.name:
                    await self._run(engine.on_primary_renamed(before, after), engine, "primary_renamed")
            elif before.name != after.name:
                await self._run(engine.on_primary_renamed(before, after), engine, "primary_renamed")

    async def primary_before_delete(self, primary: Primary) -> None:
        for engine in self.registry.for_type(primary.type):
            await self._run(engine.on_primary_deleted(primary), engine, "primary_before_delete")

    async def category_created(self, category: Category) -> None:
        for engine in self.registry.for_taxonomy(category.taxonomy):
            await self._run(engine.on_category_created(category), engine, "category_created")

    async def category_updated(self, before: Category, after: Category) -> None:
        for engine in self.registry.for_taxonomy(after.taxonomy):
            await self._run(engine.on_category_renamed(before, after), engine, "category_updated")

    async def category_before_delete(self, category: Category) -> None:
        for engine in self.registry.for_taxonomy(category.taxonomy):
            await self._run(engine.on_category_deleted(category), engine, "category_before_delete")

    @staticmethod
    async def _run(call: Awaitable[None], engine: SyncEngine, event: str) -> None:
        try:
            await call
        except Exception:  # pragma: no cover - hooks must not break the triggering write
            logger.exception("sync hook failed event=%s pair=%s", event, engine.key)
