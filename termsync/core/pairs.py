from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_SLUG_TOKEN_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


@dataclass(frozen=True, slots=True)
class SyncPair:
    type: str
    taxonomy: str
    redirect_enabled: bool = False

    @property
    def key(self) -> str:
        return f"{self.type}_{self.taxonomy}"

    @property
    def identity(self) -> tuple[str, str]:
        # ``key`` is ambiguous once names carry underscores: (a_b, c) and (a, b_c).
        return (self.type, self.taxonomy)


def parse_sync_pairs(raw: str | None) -> list[SyncPair]:
    """Parse the configured pairs list, skipping malformed and duplicate entries."""
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(decoded, list):
        return []

    pairs: list[SyncPair] = []
    seen: set[tuple[str, str]] = set()
    for item in decoded:
        if not isinstance(item, dict):
            continue
        type_name = _coerce_slug(item.get("type"))
        taxonomy = _coerce_slug(item.get("taxonomy"))
        if not type_name or not taxonomy or type_name == taxonomy:
            continue
        pair = SyncPair(
            type=type_name,
            taxonomy=taxonomy,
            redirect_enabled=_coerce_bool(item.get("redirect_enabled")),
        )
        if pair.identity in seen:
            continue
        seen.add(pair.identity)
        pairs.append(pair)
    return pairs


def _coerce_slug(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip().lower()
    if not stripped or not _SLUG_TOKEN_RE.match(stripped):
        return None
    return stripped


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False
