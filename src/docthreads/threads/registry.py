"""Session registry: the single source of truth for which threads exist.

Creation is atomic from the caller's point of view: a thread key appears in
the registry only once its session exists and any persisted history has been
loaded into it. Concurrent ``create_thread`` calls for one key share a single
creation future, and a removal that arrives mid-creation is applied as soon
as that creation finishes. A creation that arrives while a removal is still
deleting the stored history waits for that delete, so it starts empty.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterator, List

from ..ai import prompts
from ..ai.factory import SessionFactory
from ..ai.session import ChatSession
from ..services.workspace_state import WorkspaceState
from .errors import BackendUnavailableError
from .events import EventBus, ThreadListChanged
from .models import (
    GENERAL_THREAD_KEY,
    GENERAL_THREAD_TITLE,
    Thread,
    ThreadMode,
    ThreadSummary,
)
from .persistence import HistoryWriter

__all__ = ["SessionRegistry"]

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """Creates, looks up, persists, resets and removes threads."""

    def __init__(
        self,
        factory: SessionFactory,
        state: WorkspaceState,
        *,
        fallback_factory: SessionFactory | None = None,
        bus: EventBus | None = None,
        default_mode: ThreadMode | str = ThreadMode.DEVELOPER,
    ) -> None:
        self._factory = factory
        self._fallback_factory = fallback_factory
        self._writer = HistoryWriter(state)
        self._bus = bus or EventBus()
        self._default_mode = ThreadMode.coerce(default_mode)
        self._threads: Dict[str, Thread] = {}
        self._pending: Dict[str, asyncio.Future[Thread | None]] = {}
        self._removal_requested: set[str] = set()
        self._removing: Dict[str, asyncio.Future[None]] = {}
        self._active_key_provider: Callable[[], str | None] = lambda: None

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def writer(self) -> HistoryWriter:
        return self._writer

    def set_active_key_provider(self, provider: Callable[[], str | None]) -> None:
        """Let the active-thread selector report its key in thread-list notifications."""

        self._active_key_provider = provider

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_thread(self, key: str) -> Thread | None:
        return self._threads.get(key)

    def has_thread(self, key: str) -> bool:
        return key in self._threads

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def iter_threads(self) -> Iterator[Thread]:
        return iter(list(self._threads.values()))

    def __len__(self) -> int:
        return len(self._threads)

    def thread_list(self) -> ThreadListChanged:
        """Snapshot of the thread list, general thread first then creation order."""

        ordered = sorted(self._threads.values(), key=lambda thread: not thread.is_general)
        summaries = tuple(ThreadSummary(key=thread.key, title=thread.title) for thread in ordered)
        return ThreadListChanged(threads=summaries, active_key=self._active_key_provider())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_thread(
        self,
        key: str,
        initial_context: str,
        title: str,
        *,
        mode: ThreadMode | str | None = None,
    ) -> Thread | None:
        """Create the thread for ``key`` unless it already exists.

        Returns the live thread, or ``None`` when a removal for ``key`` arrived
        while the session was being built.

        Raises:
            BackendUnavailableError: Neither the primary nor the fallback
                factory could open a session.
        """

        existing = self._threads.get(key)
        if existing is not None:
            return existing
        pending = self._pending.get(key)
        if pending is not None:
            LOGGER.debug("create_thread(%s): awaiting in-flight creation", key)
            return await asyncio.shield(pending)

        future: asyncio.Future[Thread | None] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            removing = self._removing.get(key)
            if removing is not None:
                LOGGER.debug("create_thread(%s): waiting for removal to finish", key)
                await asyncio.shield(removing)
            thread = await self._build_thread(key, initial_context, title, mode)
        except BaseException as exc:
            self._pending.pop(key, None)
            self._removal_requested.discard(key)
            if isinstance(exc, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(exc)
                # mark retrieved so an unawaited failure is not reported twice
                future.exception()
            raise

        self._pending.pop(key, None)
        if key in self._removal_requested:
            self._removal_requested.discard(key)
            LOGGER.debug("create_thread(%s): removal arrived during creation; discarding", key)
            await self._writer.delete(key)
            future.set_result(None)
            return None

        self._threads[key] = thread
        future.set_result(thread)
        LOGGER.debug("Thread created: key=%s, provider=%s", key, thread.session.provider)
        self._publish_thread_list()
        return thread

    async def initialize_general_thread(self) -> Thread | None:
        """Create (or return) the general-purpose thread, hydrated from storage."""

        return await self.create_thread(GENERAL_THREAD_KEY, "", GENERAL_THREAD_TITLE)

    async def _build_thread(
        self,
        key: str,
        initial_context: str,
        title: str,
        mode: ThreadMode | str | None,
    ) -> Thread:
        thread_mode = ThreadMode.coerce(mode) if mode is not None else self._default_mode
        if key == GENERAL_THREAD_KEY:
            system_message = prompts.GENERAL_PURPOSE
            thread_mode = ThreadMode.DEVELOPER
        else:
            system_message = prompts.document_system_message(title, initial_context, thread_mode)
        session = await self._open_session(system_message)
        saved = await self._writer.load(key)
        if saved:
            session.set_history(saved)
            LOGGER.debug("Restored %d message(s) into thread %s", len(session.get_history()), key)
        return Thread(key=key, title=title, session=session, mode=thread_mode)

    async def _open_session(self, system_message: str) -> ChatSession:
        try:
            return await self._factory.create_session(system_message)
        except Exception as exc:
            if self._fallback_factory is None:
                raise _as_backend_error(exc, self._factory.name) from exc
            LOGGER.warning(
                "Session creation via %s failed (%s); falling back to %s",
                self._factory.name,
                exc,
                self._fallback_factory.name,
            )
        try:
            return await self._fallback_factory.create_session(system_message)
        except Exception as exc:
            raise _as_backend_error(exc, self._fallback_factory.name) from exc

    # ------------------------------------------------------------------
    # Removal and reset
    # ------------------------------------------------------------------

    async def remove_thread(self, key: str) -> None:
        """Drop ``key`` and its persisted history; absent keys are a no-op.

        The general-purpose thread is never removed.
        """

        if key == GENERAL_THREAD_KEY:
            LOGGER.debug("remove_thread: ignoring request to remove the general thread")
            return
        pending = self._pending.get(key)
        if pending is not None:
            self._removal_requested.add(key)
            LOGGER.debug("remove_thread(%s): queued behind in-flight creation", key)
            await asyncio.wait({pending})
            return
        thread = self._threads.pop(key, None)
        if thread is None:
            return
        LOGGER.debug("Thread removed: key=%s", key)
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._removing[key] = done
        try:
            self._publish_thread_list()
            await self._writer.delete(key)
        finally:
            del self._removing[key]
            done.set_result(None)

    async def reset_thread(self, key: str) -> bool:
        """Clear the session history (system message kept) and store an empty history."""

        thread = self._threads.get(key)
        if thread is None:
            return False
        thread.session.reset()
        await self._writer.clear(key)
        return True

    async def reset_all(self) -> None:
        """Delete every stored history, empty the general thread and drop all other threads."""

        for thread_key in await self._writer.thread_keys():
            await self._writer.delete(thread_key)
        self._removal_requested = {key for key in self._pending if key != GENERAL_THREAD_KEY}
        general = self._threads.get(GENERAL_THREAD_KEY)
        if general is not None:
            general.session.reset()
        self._threads = {GENERAL_THREAD_KEY: general} if general is not None else {}
        LOGGER.debug("reset_all: kept %d thread(s)", len(self._threads))
        self._publish_thread_list()

    # ------------------------------------------------------------------
    # Session mutation
    # ------------------------------------------------------------------

    async def chat(self, key: str, prompt: str) -> str | None:
        """Run one exchange on ``key``'s session and persist the result.

        Returns ``None`` for an unknown key. Persistence is best-effort and
        completes before this method returns.

        Raises:
            BackendUnavailableError: The chat call failed.
        """

        thread = self._threads.get(key)
        if thread is None:
            LOGGER.debug("chat: unknown thread key %s", key)
            return None
        response = await thread.session.chat(prompt)
        await self._persist(key, thread)
        return response

    async def save_history(self, key: str) -> bool:
        thread = self._threads.get(key)
        if thread is None:
            return False
        return await self._persist(key, thread)

    async def load_persisted_history(self, key: str) -> List[Dict[str, Any]]:
        """Return the stored history for ``key``, falling back to the live session."""

        stored = await self._writer.load(key)
        if stored is not None:
            return [dict(item) for item in stored if isinstance(item, dict)]
        thread = self._threads.get(key)
        return thread.session.serialize_history() if thread is not None else []

    def set_system_message(self, key: str, text: str) -> bool:
        """Replace the session's system message; history is untouched."""

        thread = self._threads.get(key)
        if thread is None:
            return False
        thread.session.set_custom_system_message(text)
        return True

    def set_thread_mode(self, key: str, mode: ThreadMode | str, context: str = "") -> bool:
        """Switch a document thread's audience, rebuilding its system message from ``context``."""

        thread = self._threads.get(key)
        if thread is None or thread.is_general:
            return False
        thread_mode = ThreadMode.coerce(mode)
        thread.mode = thread_mode
        thread.session.set_custom_system_message(
            prompts.document_system_message(thread.title, context, thread_mode)
        )
        LOGGER.debug("Thread %s switched to %s mode", key, thread_mode.value)
        return True

    async def replace_factory(
        self,
        factory: SessionFactory,
        *,
        fallback_factory: SessionFactory | None = None,
    ) -> None:
        """Swap the session factories and move the general thread onto the new one.

        The general thread keeps its history. Failures propagate to the caller.
        """

        general = self._threads.get(GENERAL_THREAD_KEY)
        session = None
        if general is not None:
            session = await factory.create_session(prompts.GENERAL_PURPOSE)
        self._factory = factory
        if fallback_factory is not None:
            self._fallback_factory = fallback_factory
        if general is None or session is None:
            return
        session.set_history(general.session.get_history())
        general.session = session
        LOGGER.debug("General thread moved to provider %s", factory.name)
        self._publish_thread_list()

    async def _persist(self, key: str, thread: Thread) -> bool:
        def snapshot() -> List[Dict[str, Any]] | None:
            if self._threads.get(key) is not thread:
                return None
            return thread.session.serialize_history()

        return await self._writer.save(key, snapshot)

    def _publish_thread_list(self) -> None:
        self._bus.publish(self.thread_list())


def _as_backend_error(exc: Exception, provider: str) -> BackendUnavailableError:
    if isinstance(exc, BackendUnavailableError):
        return exc
    return BackendUnavailableError(str(exc) or type(exc).__name__, provider=provider)
