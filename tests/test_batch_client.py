from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from termsync.services.batch_client import BatchSyncClient, run_batch


class FakeBatchServer:
    def __init__(self, total: int, chunk: int, fail_on_process: int | None = None) -> None:
        self.total = total
        self.chunk = chunk
        self.fail_on_process = fail_on_process
        self.processed = 0
        self.calls: list[str] = []
        self.api_keys: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.api_keys.add(request.headers.get("X-API-Key", ""))
        path = request.url.path
        self.calls.append(path)
        if path == "/batch-sync/init":
            payload = json.loads(request.content)
            assert payload["operation"] == "posts-to-terms"
            return httpx.Response(200, json={"batch_id": "batch_1", "total": self.total, "message": "ok"})
        if path == "/batch-sync/process":
            if self.fail_on_process is not None and self.calls.count(path) == self.fail_on_process:
                return httpx.Response(503, json={"detail": "database unavailable"})
            self.processed = min(self.total, self.processed + self.chunk)
            return httpx.Response(
                200,
                json={
                    "batch_id": "batch_1",
                    "complete": self.processed >= self.total,
                    "processed": self.processed,
                    "total": self.total,
                    "synced": self.processed,
                    "errors": 0,
                    "percentage": round(self.processed / self.total * 100, 2),
                },
            )
        if path == "/batch-sync/cleanup":
            return httpx.Response(200, json={"success": True, "removed": True})
        return httpx.Response(404)


def _client(server: FakeBatchServer) -> BatchSyncClient:
    return BatchSyncClient("http://termsync.test/", "admin-key", transport=httpx.MockTransport(server))


def test_run_batch_processes_sequentially_then_cleans_up() -> None:
    server = FakeBatchServer(total=5, chunk=2)
    status = asyncio.run(run_batch(_client(server), "posts-to-terms", chunk_size=2))

    assert status["complete"] is True
    assert status["processed"] == 5
    assert server.calls == [
        "/batch-sync/init",
        "/batch-sync/process",
        "/batch-sync/process",
        "/batch-sync/process",
        "/batch-sync/cleanup",
    ]
    assert server.api_keys == {"admin-key"}


def test_run_batch_cleans_up_after_a_failed_chunk() -> None:
    server = FakeBatchServer(total=5, chunk=2, fail_on_process=2)
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(run_batch(_client(server), "posts-to-terms"))

    assert server.calls[-1] == "/batch-sync/cleanup"
    assert server.calls.count("/batch-sync/process") == 2


def test_run_batch_stops_after_max_chunks() -> None:
    server = FakeBatchServer(total=10, chunk=1)
    status = asyncio.run(run_batch(_client(server), "posts-to-terms", max_chunks=2))

    assert status["complete"] is False
    assert status["processed"] == 2
    assert server.calls.count("/batch-sync/process") == 2
    assert server.calls[-1] == "/batch-sync/cleanup"


def test_empty_batch_skips_processing() -> None:
    server = FakeBatchServer(total=0, chunk=1)
    status = asyncio.run(run_batch(_client(server), "posts-to-terms"))

    assert status["complete"] is True
    assert server.calls == ["/batch-sync/init", "/batch-sync/cleanup"]
