from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from termsync.core.pairs import SyncPair
from termsync.services.repository import (
    Category,
    Entity,
    LinkWriteError,
    Primary,
    Repository,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)

CATEGORY_LINK_PREFIX = "link_to_taxonomy:"
PRIMARY_LINK_PREFIX = "link_to_type:"
ORDER_PREFIX = "order_for_taxonomy:"


def category_link_key(taxonomy: str) -> str:
    return f"{CATEGORY_LINK_PREFIX}{taxonomy}"


def primary_link_key(primary_type: str) -> str:
    return f"{PRIMARY_LINK_PREFIX}{primary_type}"


def order_key(taxonomy: str) -> str:
    return f"{ORDER_PREFIX}{taxonomy}"


def normalize_order(order: Any) -> list[str]:
    """Validate an order payload and return unique ids in first-seen order."""
    if not isinstance(order, (list, tuple)):
        raise RepositoryValidationError("order must be a list of primary ids")
    normalized: list[str] = []
    for item in order:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise RepositoryValidationError("order entries must be primary ids")
        value = str(item).strip()
        if not value or value == "0":
            continue
        normalized.append(value)
    return list(dict.fromkeys(normalized))


def parse_order(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return []
    try:
        return normalize_order(decoded)
    except RepositoryValidationError:
        return []


class RelationshipStore:
    """Link pointers and order records kept in Repository metadata."""

    def __init__(self, repository: Repository, pairs: Iterable[SyncPair] = ()) -> None:
        self.repository = repository
        self.taxonomies = {pair.taxonomy for pair in pairs}

    async def linked_category_id(self, primary: Primary, taxonomy: str) -> str | None:
        value = await self.repository.get_meta(primary, category_link_key(taxonomy))
        return value or None

    async def linked_primary_id(self, category: Category, primary_type: str) -> str | None:
        value = await self.repository.get_meta(category, primary_link_key(primary_type))
        return value or None

    async def link(self, primary: Primary, category: Category) -> None:
        """Point ``primary`` and ``category`` at each other, or at nothing new."""
        category_key = category_link_key(category.taxonomy)
        previous = await self.repository.get_meta(primary, category_key)
        try:
            await self.repository.set_meta(primary, category_key, category.id)
        except RepositoryError as exc:
            raise LinkWriteError(
                f"failed to link primary {primary.id} to category {category.id}: {exc}"
            ) from exc

        try:
            await self.repository.set_meta(category, primary_link_key(primary.type), primary.id)
        except RepositoryError as exc:
            await self._restore(primary, category_key, previous)
            raise LinkWriteError(
                f"failed to link category {category.id} to primary {primary.id}: {exc}"
            ) from exc

    async def unlink_primary(self, primary: Primary, taxonomy: str) -> None:
        await self.repository.delete_meta(primary, category_link_key(taxonomy))

    async def unlink_category(self, category: Category, primary_type: str) -> None:
        await self.repository.delete_meta(category, primary_link_key(primary_type))

    async def read_order(self, primary: Primary, taxonomy: str) -> list[str]:
        return parse_order(await self.repository.get_meta(primary, order_key(taxonomy)))

    async def write_order(self, primary_id: str, taxonomy: str, order: Any) -> list[str]:
        if taxonomy not in self.taxonomies:
            raise RepositoryValidationError(f"unknown taxonomy: {taxonomy}")
        normalized = normalize_order(order)
        primary = await self.repository.get_primary(primary_id)
        if primary is None:
            raise RepositoryNotFoundError("primary not found")
        await self.repository.set_meta(primary, order_key(taxonomy), json.dumps(normalized))
        return normalized

    async def _restore(self, entity: Entity, key: str, previous: str | None) -> None:
        try:
            if previous is None:
                await self.repository.delete_meta(entity, key)
            else:
                await self.repository.set_meta(entity, key, previous)
        except RepositoryError:
            logger.exception("link rollback failed entity_id=%s key=%s", entity.id, key)
            raise
