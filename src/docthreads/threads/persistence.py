"""Ordered, best-effort persistence of thread histories."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Tuple

from ..services.workspace_state import WorkspaceState
from .errors import PersistenceError
from .models import history_key, thread_key_from_history_key

__all__ = ["HistoryWriter", "Snapshot"]

LOGGER = logging.getLogger(__name__)

Snapshot = Callable[[], "List[Dict[str, Any]] | None"]


class HistoryWriter:
    """Writes ``thread-history-<key>`` entries one at a time per thread key.

    :meth:`save` takes a snapshot *callable* and invokes it only once the
    key's lock is held, so the value written is the in-memory history at
    write time. A write queued behind another can therefore never put an
    older snapshot on top of a newer one.

    Reads queue behind the same lock, so a load issued while a delete is in
    flight sees the deleted state. A key's lock is dropped once nobody holds
    or waits for it.

    Store failures are logged and reported through the boolean return value;
    they never propagate to the caller.
    """

    def __init__(self, state: WorkspaceState) -> None:
        self._state = state
        # key -> (lock, number of holders and waiters)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @property
    def state(self) -> WorkspaceState:
        return self._state

    async def save(self, thread_key: str, snapshot: Snapshot) -> bool:
        """Persist ``snapshot()``; a ``None`` snapshot skips the write."""

        async with self._exclusive(thread_key):
            value = snapshot()
            if value is None:
                LOGGER.debug("Skipping history write for %s: thread no longer current", thread_key)
                return False
            return await self._guarded(self._state.set(history_key(thread_key), value), thread_key, "write")

    async def clear(self, thread_key: str) -> bool:
        """Overwrite the stored history with an empty sequence."""

        async with self._exclusive(thread_key):
            return await self._guarded(self._state.set(history_key(thread_key), []), thread_key, "clear")

    async def delete(self, thread_key: str) -> bool:
        async with self._exclusive(thread_key):
            return await self._guarded(self._state.delete(history_key(thread_key)), thread_key, "delete")

    async def load(self, thread_key: str) -> List[Any] | None:
        """Return the stored history list, or ``None`` when absent or unreadable."""

        try:
            async with self._exclusive(thread_key):
                value = await self._state.get(history_key(thread_key))
        except Exception as exc:
            self._report(PersistenceError(f"read failed: {exc}", key=thread_key))
            return None
        if value is None:
            return None
        if not isinstance(value, list):
            LOGGER.warning("Ignoring non-list history stored for %s", thread_key)
            return None
        return value

    async def thread_keys(self) -> List[str]:
        """Every thread key with a stored history, sorted lexicographically."""

        try:
            keys = await self._state.list_keys()
        except Exception as exc:
            self._report(PersistenceError(f"key listing failed: {exc}"))
            return []
        found = {thread_key_from_history_key(key) for key in keys}
        return sorted(key for key in found if key)

    def tracked_keys(self) -> List[str]:
        """Keys that currently have a lock (held or awaited)."""

        return sorted(self._locks)

    @asynccontextmanager
    async def _exclusive(self, thread_key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(thread_key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[thread_key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[thread_key]
            if users <= 1:
                del self._locks[thread_key]
            else:
                self._locks[thread_key] = (lock, users - 1)

    async def _guarded(self, operation: Any, thread_key: str, action: str) -> bool:
        try:
            await operation
        except Exception as exc:
            self._report(PersistenceError(f"{action} failed: {exc}", key=thread_key))
            return False
        return True

    @staticmethod
    def _report(error: PersistenceError) -> None:
        LOGGER.warning("Thread history persistence error (key=%s): %s", error.key, error)
