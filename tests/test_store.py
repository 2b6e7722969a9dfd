from __future__ import annotations

import asyncio
from typing import Any

import pytest

from termsync.services.repository import (
    Category,
    Primary,
    RepositoryCreateError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from termsync.services.store import InMemoryRepository


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def primary_created(self, primary: Primary) -> None:
        self.events.append(("primary_created", primary.name))

    async def primary_updated(self, before: Primary, after: Primary) -> None:
        self.events.append(("primary_updated", (before.name, after.name)))

    async def primary_before_delete(self, primary: Primary) -> None:
        self.events.append(("primary_before_delete", primary.name))

    async def category_created(self, category: Category) -> None:
        self.events.append(("category_created", category.name))

    async def category_updated(self, before: Category, after: Category) -> None:
        self.events.append(("category_updated", (before.name, after.name)))

    async def category_before_delete(self, category: Category) -> None:
        self.events.append(("category_before_delete", category.name))


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_records_are_copies_and_ids_are_sequential() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        first = await repository.create_primary(primary_type="genre", name="  Jazz ")
        second = await repository.create_primary(primary_type="genre", name="Blues", status="draft")

        assert (first.id, second.id) == ("1", "2")
        assert first.name == "Jazz"
        assert first.slug == "jazz"

        first.metadata["local"] = "only"
        stored = await repository.get_primary(first.id)
        assert stored is not None
        assert stored.metadata == {}

        published = await repository.query_primaries("genre")
        assert [primary.id for primary in published] == ["1"]
        assert await repository.count_primaries("genre", status=None) == 2

    asyncio.run(scenario())


def test_category_names_are_unique_case_insensitively_and_slugs_are_deduplicated() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        rock = await repository.create_category(taxonomy="genre_tax", name="Rock")
        with pytest.raises(RepositoryCreateError):
            await repository.create_category(taxonomy="genre_tax", name="ROCK")

        loud = await repository.create_category(taxonomy="genre_tax", name="Rock!")
        assert rock.slug == "rock"
        assert loud.slug == "rock-2"

        other = await repository.create_category(taxonomy="mood_tax", name="Rock")
        assert other.slug == "rock"

        with pytest.raises(RepositoryValidationError):
            await repository.update_category(loud.id, name="rock")

    asyncio.run(scenario())


def test_membership_counts_and_tax_filter() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        category = await repository.create_category(taxonomy="genre_tax", name="Jazz")
        song = await repository.create_primary(primary_type="song", name="So What")
        await repository.update_primary(song.id, categories={"genre_tax": [category.id, category.id]})

        refreshed = await repository.get_category(category.id)
        assert refreshed is not None
        assert refreshed.count == 1
        members = await repository.query_primaries("song", tax_filter=("genre_tax", category.id))
        assert [member.id for member in members] == [song.id]

        await repository.delete_category(category.id)
        orphan = await repository.get_primary(song.id)
        assert orphan is not None
        assert orphan.category_ids("genre_tax") == []

    asyncio.run(scenario())


def test_validation_errors() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        with pytest.raises(RepositoryCreateError):
            await repository.create_primary(primary_type="genre", name="   ")
        with pytest.raises(RepositoryValidationError):
            await repository.create_primary(primary_type="genre", name="Jazz", status="archived")

        primary = await repository.create_primary(primary_type="genre", name="Jazz")
        with pytest.raises(RepositoryValidationError):
            await repository.update_primary(primary.id, colour="blue")
        with pytest.raises(RepositoryValidationError):
            await repository.query_primaries("genre", order="random")
        with pytest.raises(RepositoryNotFoundError):
            await repository.update_primary("404", name="Missing")
        with pytest.raises(RepositoryNotFoundError):
            await repository.delete_category("404")

        ghost = Primary(id="404", type="genre", name="Ghost")
        with pytest.raises(RepositoryNotFoundError):
            await repository.set_meta(ghost, "key", "value")

    asyncio.run(scenario())


def test_set_meta_refreshes_the_passed_snapshot() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        primary = await repository.create_primary(primary_type="genre", name="Jazz")

        await repository.set_meta(primary, "link_to_taxonomy:genre_tax", "7")
        assert primary.metadata == {"link_to_taxonomy:genre_tax": "7"}
        assert await repository.get_meta(primary, "link_to_taxonomy:genre_tax") == "7"

        await repository.delete_meta(primary, "link_to_taxonomy:genre_tax")
        assert primary.metadata == {}
        assert await repository.get_meta(primary, "link_to_taxonomy:genre_tax") is None

    asyncio.run(scenario())


def test_lifecycle_hooks_fire_in_order() -> None:
    async def scenario() -> list[tuple[str, Any]]:
        repository = InMemoryRepository()
        listener = RecordingListener()
        repository.bind_listener(listener)

        primary = await repository.create_primary(primary_type="genre", name="Jazz")
        await repository.update_primary(primary.id, name="Bebop")
        await repository.delete_primary(primary.id, hard=False)
        await repository.delete_primary(primary.id)
        category = await repository.create_category(taxonomy="genre_tax", name="Rock")
        await repository.update_category(category.id, name="Punk")
        await repository.delete_category(category.id)
        return listener.events

    assert asyncio.run(scenario()) == [
        ("primary_created", "Jazz"),
        ("primary_updated", ("Jazz", "Bebop")),
        ("primary_updated", ("Bebop", "Bebop")),
        ("primary_before_delete", "Bebop"),
        ("category_created", "Rock"),
        ("category_updated", ("Rock", "Punk")),
        ("category_before_delete", "Punk"),
    ]


def test_progress_records_expire_after_ttl() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        repository = InMemoryRepository(clock=clock)
        await repository.save_batch_progress("batch_a", {"processed": 1}, ttl_seconds=60)

        clock.now += 59
        assert await repository.get_batch_progress("batch_a") == {"processed": 1}

        clock.now += 1
        assert await repository.get_batch_progress("batch_a") is None
        assert await repository.delete_batch_progress("batch_a") is False

    asyncio.run(scenario())


def test_progress_store_evicts_oldest_at_capacity() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        repository = InMemoryRepository(progress_capacity=2, clock=clock)
        await repository.save_batch_progress("batch_a", {"n": 1}, ttl_seconds=60)
        clock.now += 1
        await repository.save_batch_progress("batch_b", {"n": 2}, ttl_seconds=60)
        clock.now += 1
        await repository.save_batch_progress("batch_c", {"n": 3}, ttl_seconds=60)

        assert await repository.get_batch_progress("batch_a") is None
        assert await repository.get_batch_progress("batch_b") == {"n": 2}
        assert await repository.get_batch_progress("batch_c") == {"n": 3}

        # Rewriting an existing id never evicts.
        await repository.save_batch_progress("batch_b", {"n": 4}, ttl_seconds=60)
        assert await repository.get_batch_progress("batch_c") == {"n": 3}

    asyncio.run(scenario())
