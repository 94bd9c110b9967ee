"""Bookkeeping for the thread currently focused in the chat panel."""

from __future__ import annotations

import logging

from .events import ActiveThreadChanged, EventBus
from .models import GENERAL_THREAD_KEY
from .registry import SessionRegistry

__all__ = ["ActiveThreadSelector"]

LOGGER = logging.getLogger(__name__)


class ActiveThreadSelector:
    """Holds the active thread key; it always names a registered thread or is unset."""

    def __init__(self, registry: SessionRegistry, bus: EventBus | None = None) -> None:
        self._registry = registry
        self._bus = bus or registry.bus
        self._active_key: str | None = None
        registry.set_active_key_provider(lambda: self.active_key)

    @property
    def active_key(self) -> str | None:
        key = self._active_key
        if key is None or self._registry.has_thread(key):
            return key
        # the thread went away without a reassignment; the general thread is never removed
        if self._registry.has_thread(GENERAL_THREAD_KEY):
            return GENERAL_THREAD_KEY
        return None

    def is_active(self, key: str) -> bool:
        return self.active_key == key

    async def set_active(self, key: str) -> bool:
        """Focus ``key`` and announce it; unregistered keys are ignored.

        Publishes a thread-list refresh followed by :class:`ActiveThreadChanged`
        carrying the thread's persisted history. Returns ``False`` without
        publishing when a later ``set_active`` took over while the history was
        loading. If the thread was removed meanwhile, focus moves to the
        general thread instead.
        """

        if not self._registry.has_thread(key):
            LOGGER.debug("set_active(%s): not a registered thread; ignoring", key)
            return False
        self._active_key = key
        history = await self._registry.load_persisted_history(key)
        if self._active_key != key:
            LOGGER.debug("set_active(%s): superseded by %s", key, self._active_key)
            return False
        if not self._registry.has_thread(key):
            LOGGER.debug("set_active(%s): thread removed during activation", key)
            if key != GENERAL_THREAD_KEY:
                await self.reassign_to_general()
            return False
        self._bus.publish(self._registry.thread_list())
        self._bus.publish(ActiveThreadChanged(key=key, history=history))
        LOGGER.debug("Active thread is now %s", key)
        return True

    async def reassign_to_general(self) -> bool:
        return await self.set_active(GENERAL_THREAD_KEY)

    def clear(self) -> None:
        self._active_key = None
