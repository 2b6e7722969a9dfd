from __future__ import annotations

import asyncio
import json

import pytest

from termsync.core.pairs import SyncPair
from termsync.services.relationships import (
    RelationshipStore,
    category_link_key,
    normalize_order,
    order_key,
    parse_order,
    primary_link_key,
)
from termsync.services.repository import (
    Category,
    Entity,
    LinkWriteError,
    RepositoryCreateError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from termsync.services.store import InMemoryRepository

GENRE = SyncPair(type="genre", taxonomy="genre_tax")


class CategoryMetaFailingRepository(InMemoryRepository):
    async def set_meta(self, entity: Entity, key: str, value: str) -> None:
        if isinstance(entity, Category):
            raise RepositoryCreateError("category metadata is read-only")
        await super().set_meta(entity, key, value)


def test_normalize_order_keeps_first_occurrence_and_drops_blanks() -> None:
    assert normalize_order(["3", 2, " 5 ", "", "0", 0, "3"]) == ["3", "2", "5"]
    assert normalize_order(()) == []


@pytest.mark.parametrize("payload", ["1,2,3", {"0": "1"}, None, [True], [None], [["1"]], [1.5]])
def test_normalize_order_rejects_malformed_payloads(payload: object) -> None:
    with pytest.raises(RepositoryValidationError):
        normalize_order(payload)


def test_parse_order_is_lenient() -> None:
    assert parse_order('["9", 4, "9"]') == ["9", "4"]
    assert parse_order(None) == []
    assert parse_order("not json") == []
    assert parse_order('{"a": 1}') == []
    assert parse_order("[false]") == []


def test_link_writes_both_pointers() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        relationships = RelationshipStore(repository, [GENRE])
        primary = await repository.create_primary(primary_type="genre", name="Jazz")
        category = await repository.create_category(taxonomy="genre_tax", name="Jazz")

        await relationships.link(primary, category)

        assert await relationships.linked_category_id(primary, "genre_tax") == category.id
        assert await relationships.linked_primary_id(category, "genre") == primary.id
        stored = await repository.get_category(category.id)
        assert stored is not None
        assert stored.metadata == {primary_link_key("genre"): primary.id}

    asyncio.run(scenario())


def test_link_rolls_back_the_first_pointer_when_the_second_write_fails() -> None:
    async def scenario() -> None:
        repository = CategoryMetaFailingRepository()
        relationships = RelationshipStore(repository, [GENRE])
        primary = await repository.create_primary(primary_type="genre", name="Jazz")
        category = await repository.create_category(taxonomy="genre_tax", name="Jazz")
        await repository.set_meta(primary, category_link_key("genre_tax"), "previous")

        with pytest.raises(LinkWriteError):
            await relationships.link(primary, category)

        stored = await repository.get_primary(primary.id)
        assert stored is not None
        assert stored.metadata == {category_link_key("genre_tax"): "previous"}

        fresh = await repository.create_primary(primary_type="genre", name="Blues")
        with pytest.raises(LinkWriteError):
            await relationships.link(fresh, category)
        stored = await repository.get_primary(fresh.id)
        assert stored is not None
        assert stored.metadata == {}

    asyncio.run(scenario())


def test_write_order_validates_before_writing() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        relationships = RelationshipStore(repository, [GENRE])
        primary = await repository.create_primary(primary_type="genre", name="Jazz")

        with pytest.raises(RepositoryValidationError):
            await relationships.write_order(primary.id, "mood_tax", ["1"])
        with pytest.raises(RepositoryValidationError):
            await relationships.write_order(primary.id, "genre_tax", "1,2")
        with pytest.raises(RepositoryNotFoundError):
            await relationships.write_order("404", "genre_tax", ["1"])

        stored = await repository.get_primary(primary.id)
        assert stored is not None
        assert stored.metadata == {}

        assert await relationships.write_order(primary.id, "genre_tax", [12, "11", 12]) == ["12", "11"]
        assert await repository.get_meta(primary, order_key("genre_tax")) == json.dumps(["12", "11"])
        assert await relationships.read_order(primary, "genre_tax") == ["12", "11"]

    asyncio.run(scenario())
