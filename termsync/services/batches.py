from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal
from uuid import uuid4

from opentelemetry import trace

from termsync.core.pairs import SyncPair
from termsync.services.dispatch import SyncRegistry
from termsync.services.reconciler import BulkReconciler, ReconcileResult
from termsync.services.repository import (
    DEFAULT_PRIMARY_STATUS,
    Repository,
    RepositoryNotFoundError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

BatchOperation = Literal["posts-to-terms", "terms-to-posts"]
BATCH_OPERATIONS = {"posts-to-terms", "terms-to-posts"}


def plural(count: int, singular: str, plural_form: str | None = None) -> str:
    word = singular if count == 1 else (plural_form or f"{singular}s")
    return f"{count} {word}"


@dataclass(slots=True)
class BatchInit:
    batch_id: str
    total: int

    @property
    def message(self) -> str:
        return f"Batch sync initialized. Total items: {self.total}"


@dataclass(slots=True)
class BatchStatus:
    batch_id: str
    operation: str
    processed: int
    total: int
    synced: int
    errors: int

    @property
    def complete(self) -> bool:
        return self.processed >= self.total

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0
        return min(100.0, round(self.processed / self.total * 100, 2))

    @property
    def message(self) -> str:
        if self.complete:
            return (
                f"Batch sync complete! Synced {plural(self.synced, 'item')} "
                f"with {plural(self.errors, 'error')}."
            )
        return f"Processed {self.processed} of {self.total} items..."


class BatchCoordinator:
    """Chunked reconciliation with server-side progress records.

    ``process`` calls for one batch id must be strictly sequential: the
    progress record is read, advanced and written back without any
    compare-and-swap. Separate ``init`` calls mint independent ids.
    """

    def __init__(
        self,
        repository: Repository,
        registry: SyncRegistry,
        reconciler: BulkReconciler,
        *,
        chunk_size: int = 100,
        ttl_seconds: int = 3600,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.reconciler = reconciler
        self.chunk_size = max(1, chunk_size)
        self.ttl_seconds = ttl_seconds

    async def init(self, pair: SyncPair, operation: str, chunk_size: int | None = None) -> BatchInit:
        if operation not in BATCH_OPERATIONS:
            raise RepositoryValidationError('operation must be "posts-to-terms" or "terms-to-posts"')
        if chunk_size is not None and chunk_size < 1:
            raise RepositoryValidationError("chunk_size must be a positive integer")
        self.registry.get(pair.type, pair.taxonomy)

        if operation == "posts-to-terms":
            total = await self.repository.count_primaries(pair.type, status=DEFAULT_PRIMARY_STATUS)
        else:
            total = await self.repository.count_categories(pair.taxonomy)

        batch_id = f"batch_{pair.type}_{pair.taxonomy}_{operation}_{uuid4().hex}"
        record = {
            "batch_id": batch_id,
            "type": pair.type,
            "taxonomy": pair.taxonomy,
            "operation": operation,
            "total": total,
            "processed": 0,
            "synced": 0,
            "errors": 0,
            "chunk_size": chunk_size or self.chunk_size,
        }
        await self.repository.save_batch_progress(batch_id, record, ttl_seconds=self.ttl_seconds)
        logger.info(
            "batch initialized batch_id=%s pair=%s operation=%s total=%s",
            batch_id,
            pair.key,
            operation,
            total,
        )
        return BatchInit(batch_id=batch_id, total=total)

    async def process(self, batch_id: str) -> BatchStatus:
        record = await self._load(batch_id)
        pair = self.registry.get(record["type"], record["taxonomy"]).pair
        chunk_size = int(record["chunk_size"])
        offset = int(record["processed"])

        with tracer.start_as_current_span("batch.process") as span:
            span.set_attribute("batch.id", batch_id)
            span.set_attribute("batch.offset", offset)
            result = await self._run_chunk(pair, record["operation"], offset, chunk_size)

        record["processed"] = offset + result.examined
        record["synced"] = int(record["synced"]) + result.synced
        record["errors"] = int(record["errors"]) + result.errors
        if result.examined < chunk_size and record["processed"] < int(record["total"]):
            # Source collection shrank since init; the last page is exhausted.
            record["total"] = record["processed"]
        await self.repository.save_batch_progress(batch_id, record, ttl_seconds=self.ttl_seconds)

        status = self._status(record)
        logger.info(
            "batch chunk processed batch_id=%s processed=%s total=%s synced=%s errors=%s",
            batch_id,
            status.processed,
            status.total,
            status.synced,
            status.errors,
        )
        return status

    async def progress(self, batch_id: str) -> BatchStatus:
        return self._status(await self._load(batch_id))

    async def cleanup(self, batch_id: str) -> bool:
        removed = await self.repository.delete_batch_progress(batch_id)
        logger.info("batch cleaned up batch_id=%s removed=%s", batch_id, removed)
        return removed

    async def _run_chunk(self, pair: SyncPair, operation: str, offset: int, limit: int) -> ReconcileResult:
        if operation == "posts-to-terms":
            return await self.reconciler.reconcile_primaries_to_categories(pair, offset=offset, limit=limit)
        return await self.reconciler.reconcile_categories_to_primaries(pair, offset=offset, limit=limit)

    async def _load(self, batch_id: str) -> dict[str, Any]:
        if not batch_id:
            raise RepositoryValidationError("batch_id is required")
        record = await self.repository.get_batch_progress(batch_id)
        if record is None:
            raise RepositoryNotFoundError("batch not found or expired")
        if record.get("operation") not in BATCH_OPERATIONS:
            raise RepositoryNotFoundError("batch not found or expired")
        return record

    @staticmethod
    def _status(record: dict[str, Any]) -> BatchStatus:
        return BatchStatus(
            batch_id=str(record["batch_id"]),
            operation=str(record["operation"]),
            processed=int(record["processed"]),
            total=int(record["total"]),
            synced=int(record["synced"]),
            errors=int(record["errors"]),
        )
