from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any

import httpx
from opentelemetry import trace

from termsync.core.config import get_settings
from termsync.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class BatchSyncClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)

    async def init(
        self,
        operation: str,
        *,
        post_type: str | None = None,
        taxonomy: str | None = None,
        chunk_size: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"operation": operation}
        if post_type is not None:
            payload["post_type"] = post_type
        if taxonomy is not None:
            payload["taxonomy"] = taxonomy
        if chunk_size is not None:
            payload["chunk_size"] = chunk_size
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/batch-sync/init", json=payload, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def process(self, batch_id: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/batch-sync/process",
                json={"batch_id": batch_id},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def progress(self, batch_id: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}/batch-sync/progress",
                params={"batch_id": batch_id},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def cleanup(self, batch_id: str) -> bool:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/batch-sync/cleanup",
                json={"batch_id": batch_id},
                headers=self.headers,
            )
            response.raise_for_status()
            return bool(response.json().get("removed", False))


async def run_batch(
    client: BatchSyncClient,
    operation: str,
    *,
    post_type: str | None = None,
    taxonomy: str | None = None,
    chunk_size: int | None = None,
    max_chunks: int | None = None,
) -> dict[str, Any]:
    """Drive one batch to completion: init, then process calls one at a time, then cleanup.

    ``process`` is never issued before the previous response arrived; the
    server keeps no lock on the progress record.
    """
    with tracer.start_as_current_span("batch_client.run") as span:
        span.set_attribute("batch.operation", operation)
        started = await client.init(operation, post_type=post_type, taxonomy=taxonomy, chunk_size=chunk_size)
        batch_id = started["batch_id"]
        logger.info("batch started batch_id=%s total=%s", batch_id, started["total"])

        status: dict[str, Any] = {
            "batch_id": batch_id,
            "complete": int(started["total"]) == 0,
            "processed": 0,
            "total": started["total"],
            "synced": 0,
            "errors": 0,
            "percentage": 0,
        }
        chunks = 0
        try:
            while not status["complete"]:
                if max_chunks is not None and chunks >= max_chunks:
                    logger.warning("batch abandoned batch_id=%s after chunks=%s", batch_id, chunks)
                    break
                status = await client.process(batch_id)
                chunks += 1
                logger.info(
                    "batch progress batch_id=%s processed=%s total=%s percentage=%s",
                    batch_id,
                    status["processed"],
                    status["total"],
                    status["percentage"],
                )
        finally:
            await client.cleanup(batch_id)

        span.set_attribute("batch.chunks", chunks)
        return status


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a chunked sync batch against a termsync API.")
    parser.add_argument("operation", choices=["posts-to-terms", "terms-to-posts"])
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--post-type")
    parser.add_argument("--taxonomy")
    parser.add_argument("--chunk-size", type=int)
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)
    runtime = setup_telemetry(settings)
    client = BatchSyncClient(args.base_url, args.api_key)
    try:
        status = asyncio.run(
            run_batch(
                client,
                args.operation,
                post_type=args.post_type,
                taxonomy=args.taxonomy,
                chunk_size=args.chunk_size,
            )
        )
    finally:
        shutdown_telemetry(runtime)
    print(status.get("message") or f"processed {status['processed']} of {status['total']}")


if __name__ == "__main__":
    main()
