from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from termsync.core.pairs import SyncPair
from termsync.services.batches import BatchStatus, plural
from termsync.services.context import SyncContext
from termsync.services.repository import RepositoryNotFoundError, RepositoryValidationError
from termsync.services.store import InMemoryRepository

GENRE = SyncPair(type="genre", taxonomy="genre_tax")


class FakeClock:
    def __init__(self) -> None:
        self.now = 50.0

    def __call__(self) -> float:
        return self.now


async def seed_unlinked_primaries(context: SyncContext, names: list[str]) -> None:
    context.repository.bind_listener(None)
    for name in names:
        await context.repository.create_primary(primary_type="genre", name=name)
    context.repository.bind_listener(context.dispatcher)


def test_batch_runs_in_ceil_total_over_chunk_calls(context: SyncContext) -> None:
    async def scenario() -> list[BatchStatus]:
        await seed_unlinked_primaries(context, ["A", "B", "C", "D", "E"])
        started = await context.batches.init(GENRE, "posts-to-terms", chunk_size=2)
        assert started.total == 5
        assert started.message == "Batch sync initialized. Total items: 5"
        assert started.batch_id.startswith("batch_genre_genre_tax_posts-to-terms_")

        statuses = []
        status = await context.batches.progress(started.batch_id)
        while not status.complete:
            status = await context.batches.process(started.batch_id)
            statuses.append(status)
        assert await context.repository.count_categories("genre_tax") == 5
        return statuses

    statuses = asyncio.run(scenario())
    assert [status.processed for status in statuses] == [2, 4, 5]
    assert [status.percentage for status in statuses] == [40.0, 80.0, 100.0]
    assert statuses[0].message == "Processed 2 of 5 items..."
    assert statuses[-1].message == "Batch sync complete! Synced 5 items with 0 errors."
    assert (statuses[-1].synced, statuses[-1].errors) == (5, 0)


def test_progress_is_read_only_and_cleanup_forgets_the_batch(context: SyncContext) -> None:
    async def scenario() -> None:
        await seed_unlinked_primaries(context, ["A", "B", "C"])
        started = await context.batches.init(GENRE, "posts-to-terms", chunk_size=2)
        await context.batches.process(started.batch_id)

        first = await context.batches.progress(started.batch_id)
        second = await context.batches.progress(started.batch_id)
        assert first == second
        assert (first.processed, first.total, first.percentage) == (2, 3, 66.67)

        assert await context.batches.cleanup(started.batch_id) is True
        assert await context.batches.cleanup(started.batch_id) is False
        with pytest.raises(RepositoryNotFoundError):
            await context.batches.progress(started.batch_id)
        with pytest.raises(RepositoryNotFoundError):
            await context.batches.process(started.batch_id)

    asyncio.run(scenario())


def test_progress_record_expires(context_factory: Callable[..., SyncContext]) -> None:
    clock = FakeClock()
    context = context_factory(repository=InMemoryRepository(clock=clock), batch_ttl_seconds=30)

    async def scenario() -> None:
        started = await context.batches.init(GENRE, "terms-to-posts")
        clock.now += 31
        with pytest.raises(RepositoryNotFoundError):
            await context.batches.process(started.batch_id)

    asyncio.run(scenario())


def test_empty_collection_completes_immediately(context: SyncContext) -> None:
    async def scenario() -> BatchStatus:
        started = await context.batches.init(GENRE, "terms-to-posts")
        assert started.total == 0
        return await context.batches.process(started.batch_id)

    status = asyncio.run(scenario())
    assert status.complete is True
    assert status.percentage == 0
    assert status.message == "Batch sync complete! Synced 0 items with 0 errors."


def test_total_shrinks_when_the_source_shrinks_mid_batch(context: SyncContext) -> None:
    async def scenario() -> BatchStatus:
        await seed_unlinked_primaries(context, ["A", "B", "C", "D", "E"])
        started = await context.batches.init(GENRE, "posts-to-terms", chunk_size=2)
        for primary in await context.repository.query_primaries("genre", limit=2):
            await context.repository.delete_primary(primary.id)

        status = await context.batches.process(started.batch_id)
        assert (status.processed, status.total, status.complete) == (2, 5, False)
        return await context.batches.process(started.batch_id)

    status = asyncio.run(scenario())
    assert (status.processed, status.total, status.complete) == (3, 3, True)


def test_invalid_requests_are_rejected(context: SyncContext) -> None:
    async def scenario() -> None:
        with pytest.raises(RepositoryValidationError):
            await context.batches.init(GENRE, "sideways")
        with pytest.raises(RepositoryValidationError):
            await context.batches.init(GENRE, "posts-to-terms", chunk_size=0)
        with pytest.raises(RepositoryNotFoundError):
            await context.batches.init(SyncPair(type="mood", taxonomy="mood_tax"), "posts-to-terms")
        with pytest.raises(RepositoryValidationError):
            await context.batches.process("")
        with pytest.raises(RepositoryNotFoundError):
            await context.batches.progress("batch_genre_genre_tax_posts-to-terms_missing")

    asyncio.run(scenario())


def test_concurrent_batches_keep_separate_progress(context: SyncContext) -> None:
    async def scenario() -> None:
        await seed_unlinked_primaries(context, ["A", "B", "C"])
        left = await context.batches.init(GENRE, "posts-to-terms", chunk_size=1)
        right = await context.batches.init(GENRE, "posts-to-terms", chunk_size=3)
        assert left.batch_id != right.batch_id

        await context.batches.process(left.batch_id)
        assert (await context.batches.progress(left.batch_id)).processed == 1
        assert (await context.batches.progress(right.batch_id)).processed == 0

    asyncio.run(scenario())


def test_plural() -> None:
    assert plural(1, "item") == "1 item"
    assert plural(0, "error") == "0 errors"
    assert plural(2, "entry", "entries") == "2 entries"
