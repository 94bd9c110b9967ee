"""UI-facing entry point for every thread operation and document event."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, Iterable, List, Set

from .suggestions import DocSuggestion, DocumentSuggestionService
from .threads.active import ActiveThreadSelector
from .threads.errors import BackendUnavailableError
from .threads.events import (
    ActiveThreadChanged,
    DocumentDeleted,
    DocumentOpened,
    Event,
    EventBus,
    NoticePosted,
    ThreadStateReset,
)
from .threads.lifecycle import ThreadLifecycleCoordinator
from .threads.models import GENERAL_THREAD_KEY, Thread, ThreadMode
from .threads.registry import SessionRegistry

__all__ = ["ThreadDispatcher"]

LOGGER = logging.getLogger(__name__)


class ThreadDispatcher:
    """Routes user actions and document events to the coordination core.

    Every call is a coroutine on the shared event loop. Inbound document
    events consumed through :meth:`run` are dispatched concurrently, so the
    registry's per-key creation and write ordering rules apply to them as
    they do to direct calls.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        selector: ActiveThreadSelector,
        lifecycle: ThreadLifecycleCoordinator,
        *,
        bus: EventBus | None = None,
        suggestions: DocumentSuggestionService | None = None,
    ) -> None:
        self._registry = registry
        self._selector = selector
        self._lifecycle = lifecycle
        self._bus = bus or registry.bus
        self._suggestions = suggestions

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def active_key(self) -> str | None:
        return self._selector.active_key

    async def start(self) -> List[str]:
        """Create the general thread and restore every persisted thread."""

        return await self._lifecycle.start()

    # ------------------------------------------------------------------
    # Thread operations
    # ------------------------------------------------------------------

    async def create_thread(self, key: str, initial_context: str = "", title: str | None = None) -> Thread | None:
        if title is None:
            return await self._lifecycle.handle_opened(key, initial_context)
        return await self._registry.create_thread(key, initial_context, title)

    async def set_active_thread(self, key: str) -> bool:
        return await self._selector.set_active(key)

    async def reset_thread(self, key: str) -> bool:
        if not await self._registry.reset_thread(key):
            return False
        self._bus.publish(NoticePosted(message="Conversation reset.", key=key))
        self._bus.publish(ThreadStateReset(reason="thread-reset", key=key))
        return True

    async def send_message_to_thread(self, key: str, prompt: str) -> str | None:
        """Send ``prompt`` to ``key`` and return the reply.

        Backend failures come back as an ``"Error: ..."`` string and a
        :class:`NoticePosted` event. An unknown key yields ``None``.
        """

        try:
            return await self._registry.chat(key, prompt)
        except BackendUnavailableError as exc:
            LOGGER.warning("Chat on thread %s failed: %s", key, exc)
            message = f"Error: {exc}"
            self._bus.publish(NoticePosted(message=message, key=key, sender="Bot"))
            return message

    async def send_message(self, prompt: str) -> str | None:
        """Send ``prompt`` to the active thread, or the general thread when none is active."""

        key = self._selector.active_key or GENERAL_THREAD_KEY
        return await self.send_message_to_thread(key, prompt)

    async def set_thread_mode(self, key: str, mode: ThreadMode | str) -> bool:
        thread = self._registry.get_thread(key)
        if thread is None or thread.is_general:
            return False
        context = await self._lifecycle.resolve_text(key)
        return self._registry.set_thread_mode(key, mode, context)

    async def reset_all(self) -> None:
        """Forget every document thread and stored history; focus the general thread."""

        await self._registry.reset_all()
        self._selector.clear()
        await self._selector.reassign_to_general()
        self._bus.publish(ThreadStateReset(reason="reset-all"))

    async def on_view_ready(self) -> None:
        """Re-announce the thread list and the active history for a re-shown panel."""

        self._bus.publish(self._registry.thread_list())
        key = self._selector.active_key
        if key is None:
            return
        history = await self._registry.load_persisted_history(key)
        self._bus.publish(ActiveThreadChanged(key=key, history=history))

    async def suggest_missing_docs(self) -> List[DocSuggestion]:
        if self._suggestions is None:
            raise RuntimeError("Document suggestions are not configured")
        return await self._suggestions.suggest()

    # ------------------------------------------------------------------
    # Document events
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        if isinstance(event, DocumentOpened):
            await self._lifecycle.handle_opened(event.uri, event.text)
        elif isinstance(event, DocumentDeleted):
            await self._lifecycle.handle_deleted(event.uri)
        else:
            LOGGER.debug("Dispatcher ignoring event %s", type(event).__name__)

    async def run(self, events: AsyncIterable[Event] | Iterable[Event]) -> None:
        """Consume an event stream, handling each event in its own task.

        Returns once the stream is exhausted and every spawned task finished.
        """

        tasks: Set[asyncio.Task[None]] = set()

        def _spawn(event: Event) -> None:
            task = asyncio.create_task(self.handle_event(event))
            tasks.add(task)
            task.add_done_callback(_finished)

        def _finished(task: asyncio.Task[None]) -> None:
            tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                LOGGER.error("Event handler failed: %s", exc, exc_info=exc)

        if hasattr(events, "__aiter__"):
            async for event in events:  # type: ignore[union-attr]
                _spawn(event)
        else:
            for event in events:  # type: ignore[union-attr]
                _spawn(event)
        while tasks:
            await asyncio.gather(*list(tasks), return_exceptions=True)
