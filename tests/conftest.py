from __future__ import annotations

import json
import os

import pytest

# The app module configures telemetry at import time.
os.environ.setdefault("TERMSYNC_OTEL_ENABLED", "false")

from termsync.core.config import Settings  # noqa: E402
from termsync.services.context import SyncContext, build_context  # noqa: E402
from termsync.services.repository import Repository  # noqa: E402
from termsync.services.store import InMemoryRepository  # noqa: E402

GENRE_PAIRS = [{"type": "genre", "taxonomy": "genre_tax"}]


def make_context(
    pairs: list[dict[str, object]] | None = None,
    repository: Repository | None = None,
    **overrides: object,
) -> SyncContext:
    settings = Settings(
        sync_pairs_json=json.dumps(GENRE_PAIRS if pairs is None else pairs),
        otel_enabled=False,
        **overrides,
    )
    return build_context(settings, repository=repository or InMemoryRepository())


@pytest.fixture
def context() -> SyncContext:
    return make_context()


@pytest.fixture
def context_factory():
    return make_context
