from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from termsync.core.config import Settings, get_settings
from termsync.core.pairs import SyncPair, parse_sync_pairs
from termsync.services.batches import BatchCoordinator
from termsync.services.dispatch import LifecycleDispatcher, SyncRegistry
from termsync.services.guards import RecursionGuard
from termsync.services.integrity import IntegrityChecker
from termsync.services.postgres import PostgresRepository
from termsync.services.reconciler import BulkReconciler
from termsync.services.relationships import RelationshipStore
from termsync.services.repository import Repository, RepositoryNotFoundError, RepositoryValidationError
from termsync.services.resolver import RelationshipQueryResolver
from termsync.services.store import InMemoryRepository
from termsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncContext:
    """Everything a request or lifecycle hook needs, wired once per process."""

    settings: Settings
    repository: Repository
    relationships: RelationshipStore
    registry: SyncRegistry
    dispatcher: LifecycleDispatcher
    reconciler: BulkReconciler
    batches: BatchCoordinator
    resolver: RelationshipQueryResolver
    integrity: IntegrityChecker

    @property
    def pairs(self) -> list[SyncPair]:
        return self.registry.pairs

    def resolve_pair(self, primary_type: str | None, taxonomy: str | None) -> SyncPair:
        """Pick a configured pair; both names may be omitted when exactly one pair exists."""
        if primary_type is None and taxonomy is None:
            if len(self.registry) == 1:
                return self.pairs[0]
            if not len(self.registry):
                raise RepositoryNotFoundError("no sync pairs configured")
            raise RepositoryValidationError("post_type and taxonomy are required when several pairs are configured")

        matches = [
            pair
            for pair in self.pairs
            if (primary_type is None or pair.type == primary_type)
            and (taxonomy is None or pair.taxonomy == taxonomy)
        ]
        if not matches:
            known_types = {pair.type for pair in self.pairs}
            known_taxonomies = {pair.taxonomy for pair in self.pairs}
            if (primary_type is not None and primary_type not in known_types) or (
                taxonomy is not None and taxonomy not in known_taxonomies
            ):
                raise RepositoryValidationError("invalid post type or taxonomy")
            raise RepositoryNotFoundError(f"sync pair not configured: {primary_type}/{taxonomy}")
        if len(matches) > 1:
            raise RepositoryValidationError("post_type and taxonomy are ambiguous; pass both")
        return matches[0]

    async def close(self) -> None:
        self.repository.bind_listener(None)
        await self.repository.close()


def build_repository(settings: Settings) -> Repository:
    if settings.database_url:
        return PostgresRepository(
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )
    return InMemoryRepository(progress_capacity=settings.progress_store_capacity)


def build_context(settings: Settings, repository: Repository | None = None) -> SyncContext:
    repository = repository or build_repository(settings)
    pairs = parse_sync_pairs(settings.sync_pairs_json)
    if not pairs:
        logger.warning("no sync pairs configured; set TERMSYNC_SYNC_PAIRS_JSON")

    relationships = RelationshipStore(repository, pairs)
    guard = RecursionGuard()
    registry = SyncRegistry(SyncEngine(pair, repository, relationships, guard) for pair in pairs)
    dispatcher = LifecycleDispatcher(registry)
    repository.bind_listener(dispatcher)

    reconciler = BulkReconciler(repository, registry)
    return SyncContext(
        settings=settings,
        repository=repository,
        relationships=relationships,
        registry=registry,
        dispatcher=dispatcher,
        reconciler=reconciler,
        batches=BatchCoordinator(
            repository,
            registry,
            reconciler,
            chunk_size=settings.batch_chunk_size,
            ttl_seconds=settings.batch_ttl_seconds,
        ),
        resolver=RelationshipQueryResolver(repository, registry, relationships),
        integrity=IntegrityChecker(repository, registry, relationships),
    )


@lru_cache
def get_context() -> SyncContext:
    return build_context(get_settings())
