from __future__ import annotations

import asyncio

from termsync.core.pairs import SyncPair
from termsync.services.context import SyncContext
from termsync.services.relationships import category_link_key

GENRE = SyncPair(type="genre", taxonomy="genre_tax")


def test_verify_counts_issues_and_fix_drops_broken_pointers(context: SyncContext) -> None:
    async def scenario() -> None:
        repository = context.repository
        await repository.create_primary(primary_type="genre", name="Jazz")

        repository.bind_listener(None)
        await repository.create_primary(primary_type="genre", name="Lonely")
        broken = await repository.create_primary(primary_type="genre", name="Broken")
        await repository.set_meta(broken, category_link_key("genre_tax"), "999")
        await repository.create_category(taxonomy="genre_tax", name="Orphan")
        repository.bind_listener(context.dispatcher)

        report = await context.integrity.verify(GENRE)
        assert (report.primaries_without_link, report.categories_without_link, report.broken_links) == (1, 1, 1)
        assert report.fixed == 0
        assert report.ok is False
        assert report.message == "Found issues. Use fix to attempt automatic fixes."

        fixed = await context.integrity.verify(GENRE, fix=True)
        assert fixed.fixed == 1
        assert fixed.message == "Found issues and attempted fixes. Run verify again to confirm."
        stored = await repository.get_primary(broken.id)
        assert stored is not None
        assert category_link_key("genre_tax") not in stored.metadata

        again = await context.integrity.verify(GENRE)
        assert (again.primaries_without_link, again.broken_links) == (2, 0)

    asyncio.run(scenario())


def test_verify_reports_clean_pair(context: SyncContext) -> None:
    async def scenario() -> None:
        await context.repository.create_primary(primary_type="genre", name="Jazz")
        await context.repository.create_category(taxonomy="genre_tax", name="Blues")
        report = await context.integrity.verify(GENRE)
        assert report.ok is True
        assert report.message == "Sync integrity verified! All relationships are correct."

    asyncio.run(scenario())
