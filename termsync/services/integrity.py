from __future__ import annotations

import logging
from dataclasses import dataclass

from termsync.core.pairs import SyncPair
from termsync.services.dispatch import SyncRegistry
from termsync.services.relationships import RelationshipStore, category_link_key, primary_link_key
from termsync.services.repository import DEFAULT_PRIMARY_STATUS, Repository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IntegrityReport:
    pair_key: str
    primaries_without_link: int = 0
    categories_without_link: int = 0
    broken_links: int = 0
    fixed: int = 0

    @property
    def ok(self) -> bool:
        return not (self.primaries_without_link or self.categories_without_link or self.broken_links)

    @property
    def message(self) -> str:
        if self.ok:
            return "Sync integrity verified! All relationships are correct."
        if self.fixed:
            return "Found issues and attempted fixes. Run verify again to confirm."
        return "Found issues. Use fix to attempt automatic fixes."


class IntegrityChecker:
    def __init__(self, repository: Repository, registry: SyncRegistry, relationships: RelationshipStore) -> None:
        self.repository = repository
        self.registry = registry
        self.relationships = relationships

    async def verify(self, pair: SyncPair, fix: bool = False) -> IntegrityReport:
        """Count unlinked records and broken pointers; drop broken pointers when ``fix``."""
        self.registry.get(pair.type, pair.taxonomy)
        report = IntegrityReport(pair_key=pair.key)

        primaries = await self.repository.query_primaries(pair.type, status=DEFAULT_PRIMARY_STATUS)
        categories = await self.repository.query_categories(pair.taxonomy, include_empty=True)
        category_ids = {category.id for category in categories}

        for primary in primaries:
            category_id = primary.metadata.get(category_link_key(pair.taxonomy))
            if not category_id:
                report.primaries_without_link += 1
                continue
            if category_id in category_ids:
                continue
            report.broken_links += 1
            if fix:
                await self.relationships.unlink_primary(primary, pair.taxonomy)
                report.fixed += 1
                logger.info(
                    "removed broken link pair=%s primary_id=%s category_id=%s",
                    pair.key,
                    primary.id,
                    category_id,
                )

        for category in categories:
            primary_id = category.metadata.get(primary_link_key(pair.type))
            if not primary_id:
                report.categories_without_link += 1
                continue
            primary = await self.repository.get_primary(primary_id)
            if primary is not None and primary.type == pair.type:
                continue
            report.broken_links += 1
            if fix:
                await self.relationships.unlink_category(category, pair.type)
                report.fixed += 1
                logger.info(
                    "removed broken link pair=%s category_id=%s primary_id=%s",
                    pair.key,
                    category.id,
                    primary_id,
                )

        logger.info(
            "integrity verified pair=%s primaries_without_link=%s categories_without_link=%s broken_links=%s",
            pair.key,
            report.primaries_without_link,
            report.categories_without_link,
            report.broken_links,
        )
        return report
