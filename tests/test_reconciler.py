from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from termsync.core.pairs import SyncPair
from termsync.services.context import SyncContext
from termsync.services.relationships import category_link_key, primary_link_key
from termsync.services.repository import Category, Entity, RepositoryCreateError, RepositoryNotFoundError
from termsync.services.store import InMemoryRepository

GENRE = SyncPair(type="genre", taxonomy="genre_tax")


class CountingRepository(InMemoryRepository):
    """Counts metadata writes and refuses to create a category called "Bad"."""

    def __init__(self) -> None:
        super().__init__()
        self.meta_writes = 0

    async def set_meta(self, entity: Entity, key: str, value: str) -> None:
        self.meta_writes += 1
        await super().set_meta(entity, key, value)

    async def create_category(self, *, taxonomy: str, name: str, description: str = "") -> Category:
        if name == "Bad":
            raise RepositoryCreateError("category rejected by backend")
        return await super().create_category(taxonomy=taxonomy, name=name, description=description)


def test_posts_to_terms_links_existing_creates_missing_and_counts_failures(
    context_factory: Callable[..., SyncContext],
) -> None:
    repository = CountingRepository()
    context = context_factory(repository=repository)

    async def scenario() -> None:
        repository.bind_listener(None)
        alpha = await repository.create_primary(primary_type="genre", name="Alpha")
        beta = await repository.create_primary(primary_type="genre", name="Beta")
        await repository.create_primary(primary_type="genre", name="Bad")
        await repository.create_primary(primary_type="genre", name="Gamma", status="draft")
        existing = await repository.create_category(taxonomy="genre_tax", name="Alpha")
        repository.bind_listener(context.dispatcher)

        result = await context.reconciler.reconcile_primaries_to_categories(GENRE)
        assert (result.synced, result.errors) == (2, 1)

        alpha_after = await repository.get_primary(alpha.id)
        beta_after = await repository.get_primary(beta.id)
        assert alpha_after is not None and beta_after is not None
        assert alpha_after.metadata[category_link_key("genre_tax")] == existing.id
        beta_category = await repository.get_category(beta_after.metadata[category_link_key("genre_tax")])
        assert beta_category is not None
        assert beta_category.name == "Beta"
        assert beta_category.metadata[primary_link_key("genre")] == beta.id
        assert await repository.count_categories("genre_tax") == 2

        writes_before = repository.meta_writes
        again = await context.reconciler.reconcile_primaries_to_categories(GENRE)
        assert (again.synced, again.errors) == (2, 1)
        assert repository.meta_writes == writes_before
        assert await repository.count_categories("genre_tax") == 2

    asyncio.run(scenario())


def test_posts_to_terms_disambiguates_a_claimed_name(context: SyncContext) -> None:
    async def scenario() -> None:
        repository = context.repository
        owner = await repository.create_primary(primary_type="genre", name="Rock")
        repository.bind_listener(None)
        late = await repository.create_primary(primary_type="genre", name="Rock")
        repository.bind_listener(context.dispatcher)

        result = await context.reconciler.reconcile_primaries_to_categories(GENRE)
        assert (result.synced, result.errors) == (2, 0)

        names = sorted(category.name for category in await repository.query_categories("genre_tax"))
        assert names == ["Rock", f"Rock (ID: {late.id})"]
        owner_after = await repository.get_primary(owner.id)
        assert owner_after is not None
        assert owner_after.metadata == owner.metadata

        again = await context.reconciler.reconcile_primaries_to_categories(GENRE)
        assert (again.synced, again.errors) == (2, 0)
        assert await repository.count_categories("genre_tax") == 2

    asyncio.run(scenario())


def test_terms_to_posts_links_by_name_and_creates_missing(context: SyncContext) -> None:
    async def scenario() -> None:
        repository = context.repository
        repository.bind_listener(None)
        existing = await repository.create_primary(primary_type="genre", name="Soul")
        soul = await repository.create_category(taxonomy="genre_tax", name="Soul")
        disco = await repository.create_category(taxonomy="genre_tax", name="Disco", description="Four on the floor")
        repository.bind_listener(context.dispatcher)

        result = await context.reconciler.reconcile_categories_to_primaries(GENRE)
        assert (result.synced, result.errors) == (2, 0)

        soul_after = await repository.get_category(soul.id)
        assert soul_after is not None
        assert soul_after.metadata[primary_link_key("genre")] == existing.id

        created = await repository.find_primary_by_exact_name("genre", "Disco")
        assert created is not None
        assert created.body == "Four on the floor"
        assert created.metadata[category_link_key("genre_tax")] == disco.id
        assert await repository.count_categories("genre_tax") == 2
        assert await repository.count_primaries("genre") == 2

    asyncio.run(scenario())


def test_reconcile_pages_through_the_source_collection(context: SyncContext) -> None:
    async def scenario() -> None:
        repository = context.repository
        repository.bind_listener(None)
        for name in ["A", "B", "C", "D", "E"]:
            await repository.create_primary(primary_type="genre", name=name)
        repository.bind_listener(context.dispatcher)

        first = await context.reconciler.reconcile_primaries_to_categories(GENRE, offset=0, limit=2)
        last = await context.reconciler.reconcile_primaries_to_categories(GENRE, offset=4, limit=2)
        assert first.examined == 2
        assert last.examined == 1
        names = [category.name for category in await repository.query_categories("genre_tax")]
        assert names == ["A", "B", "E"]

    asyncio.run(scenario())


def test_revisions_stay_out_of_bulk_runs_and_batch_totals(context: SyncContext) -> None:
    async def scenario() -> None:
        repository = context.repository
        repository.bind_listener(None)
        await repository.create_primary(primary_type="genre", name="Jazz")
        await repository.create_primary(primary_type="genre", name="Jazz autosave", is_revision=True)
        blues_revision = await repository.create_primary(primary_type="genre", name="Blues", is_revision=True)
        blues = await repository.create_category(taxonomy="genre_tax", name="Blues")
        repository.bind_listener(context.dispatcher)

        started = await context.batches.init(GENRE, "posts-to-terms")
        assert started.total == 1

        result = await context.reconciler.reconcile_primaries_to_categories(GENRE)
        assert (result.synced, result.errors) == (1, 0)
        names = sorted(category.name for category in await repository.query_categories("genre_tax"))
        assert names == ["Blues", "Jazz"]

        result = await context.reconciler.reconcile_categories_to_primaries(GENRE)
        assert (result.synced, result.errors) == (2, 0)
        blues_after = await repository.get_category(blues.id)
        assert blues_after is not None
        linked_id = blues_after.metadata[primary_link_key("genre")]
        assert linked_id != blues_revision.id
        revision_after = await repository.get_primary(blues_revision.id)
        assert revision_after is not None
        assert revision_after.metadata == {}

    asyncio.run(scenario())


def test_case_variant_names_are_disambiguated_and_stay_clean(context: SyncContext) -> None:
    async def scenario() -> None:
        repository = context.repository
        repository.bind_listener(None)
        upper = await repository.create_primary(primary_type="genre", name="Rock")
        lower = await repository.create_primary(primary_type="genre", name="rock")
        legacy = await repository.create_category(taxonomy="genre_tax", name="Rock")
        repository.bind_listener(context.dispatcher)

        first = await context.reconciler.reconcile_primaries_to_categories(GENRE)
        assert (first.synced, first.errors) == (2, 0)
        names = sorted(category.name for category in await repository.query_categories("genre_tax"))
        assert names == ["Rock", f"rock (ID: {lower.id})"]

        upper_after = await repository.get_primary(upper.id)
        assert upper_after is not None
        assert upper_after.metadata[category_link_key("genre_tax")] == legacy.id

        second = await context.reconciler.reconcile_primaries_to_categories(GENRE)
        assert (second.synced, second.errors) == (2, 0)

    asyncio.run(scenario())


def test_unknown_pair_is_rejected(context: SyncContext) -> None:
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(context.reconciler.reconcile_primaries_to_categories(SyncPair(type="mood", taxonomy="genre_tax")))
