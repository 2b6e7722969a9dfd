from __future__ import annotations

import asyncio
import os
from collections.abc import Callable

import asyncpg  # type: ignore[import-untyped]
import pytest

from termsync.core.pairs import SyncPair
from termsync.services.context import SyncContext
from termsync.services.postgres import PostgresRepository
from termsync.services.relationships import category_link_key, primary_link_key

GENRE = SyncPair(type="genre", taxonomy="genre_tax")
TABLES = "primary_categories, primary_meta, category_meta, primaries, categories, batch_progress"


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("TERMSYNC_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require TERMSYNC_DATABASE_URL")
    return url


async def _fresh_context(make: Callable[..., SyncContext], database_url: str) -> SyncContext:
    repository = PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=2)
    context = make(repository=repository, database_url=database_url)
    # First call creates the schema.
    await repository.count_categories(GENRE.taxonomy)
    connection = await asyncpg.connect(database_url)
    try:
        await connection.execute(f"truncate table {TABLES} restart identity cascade")
    finally:
        await connection.close()
    return context


def test_primary_lifecycle_round_trips_through_postgres(
    context_factory: Callable[..., SyncContext],
    database_url: str,
) -> None:
    async def scenario() -> None:
        context = await _fresh_context(context_factory, database_url)
        repository = context.repository
        try:
            primary = await repository.create_primary(primary_type="genre", name="Jazz")
            category_id = primary.metadata[category_link_key("genre_tax")]
            category = await repository.get_category(category_id)
            assert category is not None
            assert category.name == "Jazz"
            assert category.metadata[primary_link_key("genre")] == primary.id

            await repository.update_primary(primary.id, name="Bebop")
            renamed = await repository.get_category(category_id)
            assert renamed is not None
            assert renamed.name == "Bebop"

            await repository.delete_primary(primary.id)
            assert await repository.get_category(category_id) is None
        finally:
            await context.close()

    asyncio.run(scenario())


def test_batch_progress_is_persisted(context_factory: Callable[..., SyncContext], database_url: str) -> None:
    async def scenario() -> None:
        context = await _fresh_context(context_factory, database_url)
        repository = context.repository
        try:
            repository.bind_listener(None)
            for name in ["A", "B", "C"]:
                await repository.create_primary(primary_type="genre", name=name)
            repository.bind_listener(context.dispatcher)

            started = await context.batches.init(GENRE, "posts-to-terms", chunk_size=2)
            status = await context.batches.process(started.batch_id)
            assert (status.processed, status.total) == (2, 3)
            status = await context.batches.process(started.batch_id)
            assert status.complete is True
            assert await repository.count_categories("genre_tax") == 3

            assert await context.batches.cleanup(started.batch_id) is True
            assert await repository.get_batch_progress(started.batch_id) is None
        finally:
            await context.close()

    asyncio.run(scenario())
