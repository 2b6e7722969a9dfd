from __future__ import annotations

import logging

from opentelemetry import trace

from termsync.core.pairs import SyncPair
from termsync.core.slugs import slugify
from termsync.services.guards import RecursionGuard
from termsync.services.relationships import RelationshipStore
from termsync.services.repository import (
    DEFAULT_PRIMARY_STATUS,
    Category,
    LinkWriteError,
    Primary,
    Repository,
    RepositoryCreateError,
    RepositoryError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

INACTIVE_PRIMARY_STATUSES = {"trashed", "deleted"}


def disambiguated_category_name(primary: Primary) -> str:
    slug = (primary.slug or "").strip()
    if not slug or slug == slugify(primary.name):
        return f"{primary.name} (ID: {primary.id})"
    return f"{primary.name} ({slug})"


class SyncEngine:
    """Keeps one configured (type, taxonomy) pair linked 1:1.

    The ``on_*`` handlers are lifecycle hook targets: they log and swallow
    repository errors. ``create_category_for``, ``create_primary_for`` and
    ``ensure_link`` raise, and are shared with the bulk reconciler.
    """

    def __init__(
        self,
        pair: SyncPair,
        repository: Repository,
        relationships: RelationshipStore,
        guard: RecursionGuard,
    ) -> None:
        self.pair = pair
        self.repository = repository
        self.relationships = relationships
        self.guard = guard
        # primary id -> category name being created for it; the category id
        # is unknown until the create call returns.
        self._pending_category_names: dict[str, str] = {}
        self._categories_from_primary: set[str] = set()

    @property
    def key(self) -> str:
        return self.pair.key

    def is_syncable(self, primary: Primary) -> bool:
        return (
            primary.type == self.pair.type
            and primary.status == DEFAULT_PRIMARY_STATUS
            and not primary.is_revision
        )

    async def on_primary_created(self, primary: Primary) -> None:
        if not self.is_syncable(primary):
            return
        if self.guard.is_active(self.pair.identity, "create_primary"):
            return

        with tracer.start_as_current_span("sync.primary_created") as span:
            span.set_attribute("sync.pair", self.key)
            span.set_attribute("primary.id", primary.id)
            try:
                await self._sync_primary(primary)
            except RepositoryError:
                logger.exception("primary sync failed pair=%s primary_id=%s", self.key, primary.id)

    async def on_category_created(self, category: Category) -> None:
        if category.taxonomy != self.pair.taxonomy:
            return
        if category.id in self._categories_from_primary:
            if await self.relationships.linked_primary_id(category, self.pair.type):
                self._categories_from_primary.discard(category.id)
            return
        if category.name in self._pending_category_names.values():
            return
        if self.guard.is_active(self.pair.identity, "update"):
            return

        with tracer.start_as_current_span("sync.category_created") as span:
            span.set_attribute("sync.pair", self.key)
            span.set_attribute("category.id", category.id)
            try:
                await self._sync_category(category)
            except RepositoryError:
                logger.exception("category sync failed pair=%s category_id=%s", self.key, category.id)

    async def on_primary_renamed(self, before: Primary, after: Primary) -> None:
        if after.type != self.pair.type or before.name == after.name:
            return
        if not self.is_syncable(after) or self.guard.is_active(self.pair.identity, "update"):
            return

        with tracer.start_as_current_span("sync.primary_renamed") as span:
            span.set_attribute("sync.pair", self.key)
            span.set_attribute("primary.id", after.id)
            try:
                renamed = await self._rename_category(before, after)
                if not renamed:
                    await self._sync_primary(after)
            except RepositoryError:
                logger.exception("primary rename sync failed pair=%s primary_id=%s", self.key, after.id)

    async def on_category_renamed(self, before: Category, after: Category) -> None:
        if after.taxonomy != self.pair.taxonomy:
            return
        if before.name == after.name and before.description == after.description:
            return
        if self.guard.is_active(self.pair.identity, "update"):
            return

        with tracer.start_as_current_span("sync.category_renamed") as span:
            span.set_attribute("sync.pair", self.key)
            span.set_attribute("category.id", after.id)
            try:
                updated = await self._update_primary_from(before, after)
                if not updated:
                    await self._sync_category(after)
            except RepositoryError:
                logger.exception("category rename sync failed pair=%s category_id=%s", self.key, after.id)

    async def on_primary_deleted(self, primary: Primary) -> None:
        if primary.type != self.pair.type or primary.is_revision:
            return
        if self.guard.is_active(self.pair.identity, "delete"):
            return

        with tracer.start_as_current_span("sync.primary_deleted") as span:
            span.set_attribute("sync.pair", self.key)
            span.set_attribute("primary.id", primary.id)
            try:
                async with self.guard.hold(self.pair.identity, "delete"):
                    await self._delete_category_of(primary)
            except RepositoryError:
                logger.exception("primary delete sync failed pair=%s primary_id=%s", self.key, primary.id)

    async def on_category_deleted(self, category: Category) -> None:
        if category.taxonomy != self.pair.taxonomy:
            return
        if self.guard.is_active(self.pair.identity, "delete"):
            return

        with tracer.start_as_current_span("sync.category_deleted") as span:
            span.set_attribute("sync.pair", self.key)
            span.set_attribute("category.id", category.id)
            try:
                async with self.guard.hold(self.pair.identity, "delete"):
                    await self._delete_primary_of(category)
            except RepositoryError:
                logger.exception("category delete sync failed pair=%s category_id=%s", self.key, category.id)

    async def create_category_for(self, primary: Primary, name: str | None = None) -> Category:
        """Create a category for ``primary`` and link both ways, or leave nothing."""
        category_name = name or primary.name
        self._pending_category_names[primary.id] = category_name
        try:
            category = await self.repository.create_category(
                taxonomy=self.pair.taxonomy,
                name=category_name,
            )
            self._categories_from_primary.add(category.id)
            try:
                await self.relationships.link(primary, category)
            except LinkWriteError:
                self._categories_from_primary.discard(category.id)
                async with self.guard.hold(self.pair.identity, "delete"):
                    await self.repository.delete_category(category.id)
                raise
        finally:
            self._pending_category_names.pop(primary.id, None)

        self._categories_from_primary.discard(category.id)
        logger.info(
            "category created for primary pair=%s primary_id=%s category_id=%s",
            self.key,
            primary.id,
            category.id,
        )
        return category

    async def create_primary_for(self, category: Category) -> Primary:
        """Create a published primary for ``category`` and link both ways, or leave nothing."""
        async with self.guard.hold(self.pair.identity, "create_primary"):
            primary = await self.repository.create_primary(
                primary_type=self.pair.type,
                name=category.name,
                body=category.description,
                status=DEFAULT_PRIMARY_STATUS,
            )
            try:
                await self.relationships.link(primary, category)
            except LinkWriteError:
                async with self.guard.hold(self.pair.identity, "delete"):
                    await self.repository.delete_primary(primary.id, hard=True)
                raise

        logger.info(
            "primary created for category pair=%s category_id=%s primary_id=%s",
            self.key,
            category.id,
            primary.id,
        )
        return primary

    async def ensure_link(self, primary: Primary, category: Category) -> bool:
        """Write the pointer pair unless it is already in place. Returns True on write."""
        category_id = await self.relationships.linked_category_id(primary, self.pair.taxonomy)
        primary_id = await self.relationships.linked_primary_id(category, self.pair.type)
        if category_id == category.id and primary_id == primary.id:
            return False
        await self.relationships.link(primary, category)
        return True

    async def linked_category(self, primary: Primary) -> Category | None:
        """Follow the primary's pointer, dropping it when it is stale or crossed."""
        category_id = await self.relationships.linked_category_id(primary, self.pair.taxonomy)
        if not category_id:
            return None
        category = await self.repository.get_category(category_id)
        if category is None or category.taxonomy != self.pair.taxonomy:
            logger.warning(
                "removing stale category pointer pair=%s primary_id=%s category_id=%s",
                self.key,
                primary.id,
                category_id,
            )
            await self.relationships.unlink_primary(primary, self.pair.taxonomy)
            return None

        reverse_id = await self.relationships.linked_primary_id(category, self.pair.type)
        if reverse_id and reverse_id != primary.id and await self.live_primary(reverse_id) is not None:
            logger.warning(
                "removing crossed category pointer pair=%s primary_id=%s category_id=%s owner_id=%s",
                self.key,
                primary.id,
                category.id,
                reverse_id,
            )
            await self.relationships.unlink_primary(primary, self.pair.taxonomy)
            return None
        return category

    async def linked_primary(self, category: Category) -> Primary | None:
        """Follow the category's pointer, dropping it when it is stale or crossed."""
        primary_id = await self.relationships.linked_primary_id(category, self.pair.type)
        if not primary_id:
            return None
        primary = await self.live_primary(primary_id)
        if primary is None:
            logger.warning(
                "removing stale primary pointer pair=%s category_id=%s primary_id=%s",
                self.key,
                category.id,
                primary_id,
            )
            await self.relationships.unlink_category(category, self.pair.type)
            return None

        reverse_id = await self.relationships.linked_category_id(primary, self.pair.taxonomy)
        if reverse_id and reverse_id != category.id:
            other = await self.repository.get_category(reverse_id)
            if other is not None and other.taxonomy == self.pair.taxonomy:
                logger.warning(
                    "removing crossed primary pointer pair=%s category_id=%s primary_id=%s owner_id=%s",
                    self.key,
                    category.id,
                    primary.id,
                    reverse_id,
                )
                await self.relationships.unlink_category(category, self.pair.type)
                return None
        return primary

    async def live_primary(self, primary_id: str) -> Primary | None:
        primary = await self.repository.get_primary(primary_id)
        if primary is None or primary.type != self.pair.type:
            return None
        if primary.status in INACTIVE_PRIMARY_STATUSES:
            return None
        return primary

    async def _sync_primary(self, primary: Primary) -> None:
        category = await self.linked_category(primary)
        if category is not None:
            await self.ensure_link(primary, category)
            return

        existing = await self.repository.find_category_by_exact_name(self.pair.taxonomy, primary.name)
        if existing is not None:
            owner = await self.linked_primary(existing)
            if owner is None or owner.id == primary.id:
                await self.ensure_link(primary, existing)
                return
            await self._create_disambiguated(primary, owner.id)
            return

        try:
            await self.create_category_for(primary)
        except RepositoryCreateError:
            # Category names are unique regardless of letter case, so "rock" collides with "Rock".
            await self._create_disambiguated(primary, None)

    async def _create_disambiguated(self, primary: Primary, owner_id: str | None) -> None:
        name = disambiguated_category_name(primary)
        logger.info(
            "category name taken pair=%s name=%s owner_id=%s using=%s",
            self.key,
            primary.name,
            owner_id,
            name,
        )
        taken = await self.repository.find_category_by_exact_name(self.pair.taxonomy, name)
        if taken is not None and await self.linked_primary(taken) is None:
            await self.ensure_link(primary, taken)
            return
        await self.create_category_for(primary, name)

    async def _sync_category(self, category: Category) -> None:
        primary = await self.linked_primary(category)
        if primary is not None:
            await self.ensure_link(primary, category)
            return

        existing = await self.repository.find_primary_by_exact_name(self.pair.type, category.name)
        if existing is not None and await self.linked_category(existing) is None:
            await self.ensure_link(existing, category)
            return

        await self.create_primary_for(category)

    async def _rename_category(self, before: Primary, after: Primary) -> bool:
        async with self.guard.hold(self.pair.identity, "update"):
            category = await self.linked_category(after)
            if category is None:
                candidate = await self.repository.find_category_by_exact_name(self.pair.taxonomy, before.name)
                if candidate is not None:
                    owner = await self.linked_primary(candidate)
                    if owner is None or owner.id == after.id:
                        category = candidate
            if category is None:
                return False

            if category.name != after.name:
                category = await self.repository.update_category(category.id, name=after.name)
            await self.ensure_link(after, category)
        logger.info(
            "category renamed pair=%s primary_id=%s category_id=%s name=%s",
            self.key,
            after.id,
            category.id,
            after.name,
        )
        return True

    async def _update_primary_from(self, before: Category, after: Category) -> bool:
        async with self.guard.hold(self.pair.identity, "update"):
            primary = await self.linked_primary(after)
            if primary is None:
                return False

            fields: dict[str, str] = {}
            if primary.name != after.name:
                fields["name"] = after.name
            if before.description != after.description and primary.body != after.description:
                fields["body"] = after.description
            if fields:
                primary = await self.repository.update_primary(primary.id, **fields)
            await self.ensure_link(primary, after)
        return True

    async def _delete_category_of(self, primary: Primary) -> None:
        category_id = await self.relationships.linked_category_id(primary, self.pair.taxonomy)
        if category_id:
            category = await self.repository.get_category(category_id)
            if category is None or category.taxonomy != self.pair.taxonomy:
                return
        else:
            # Unlinked legacy data: fall back to the name.
            category = await self.repository.find_category_by_exact_name(self.pair.taxonomy, primary.name)
            if category is None:
                return

        reverse_id = await self.relationships.linked_primary_id(category, self.pair.type)
        if reverse_id and reverse_id != primary.id:
            logger.info(
                "category relinked elsewhere, keeping pair=%s category_id=%s owner_id=%s",
                self.key,
                category.id,
                reverse_id,
            )
            return

        await self.repository.delete_category(category.id)
        logger.info(
            "category deleted with primary pair=%s primary_id=%s category_id=%s",
            self.key,
            primary.id,
            category.id,
        )

    async def _delete_primary_of(self, category: Category) -> None:
        primary_id = await self.relationships.linked_primary_id(category, self.pair.type)
        if not primary_id:
            return
        primary = await self.repository.get_primary(primary_id)
        if primary is None or primary.type != self.pair.type:
            return

        reverse_id = await self.relationships.linked_category_id(primary, self.pair.taxonomy)
        if reverse_id and reverse_id != category.id:
            logger.info(
                "primary relinked elsewhere, keeping pair=%s primary_id=%s owner_id=%s",
                self.key,
                primary.id,
                reverse_id,
            )
            return

        await self.repository.delete_primary(primary.id, hard=True)
        logger.info(
            "primary deleted with category pair=%s category_id=%s primary_id=%s",
            self.key,
            category.id,
            primary.id,
        )
