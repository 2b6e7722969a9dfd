from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Literal

GuardOperation = Literal["create_primary", "update", "delete"]
GUARD_OPERATIONS = {"create_primary", "update", "delete"}


class RecursionGuard:
    """Per ``(pair_key, operation)`` re-entrancy token plus mutex.

    Hooks fired by the engine's own writes run in the same task as the write,
    so they see the token through the context variable and return early.
    Unrelated tasks touching the same key wait on the key's lock instead.
    """

    def __init__(self) -> None:
        self._active: ContextVar[frozenset[tuple[Hashable, str]]] = ContextVar(
            f"termsync_guard_{id(self)}",
            default=frozenset(),
        )
        self._locks: dict[tuple[Hashable, str], asyncio.Lock] = {}

    def is_active(self, pair_key: Hashable, operation: GuardOperation) -> bool:
        return (pair_key, operation) in self._active.get()

    @asynccontextmanager
    async def hold(self, pair_key: Hashable, operation: GuardOperation) -> AsyncIterator[None]:
        if operation not in GUARD_OPERATIONS:
            raise ValueError(f"unknown guard operation: {operation}")
        key = (pair_key, operation)
        active = self._active.get()
        if key in active:
            yield
            return

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            token = self._active.set(active | {key})
            try:
                yield
            finally:
                self._active.reset(token)
