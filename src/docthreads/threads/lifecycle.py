"""Keeps the thread set in step with the documents that back it."""

from __future__ import annotations

import logging
from typing import Iterable, List

from ..services.workspace_files import WorkspaceFiles, uri_to_path
from ..utils.file_io import DEFAULT_DOCUMENT_EXTENSIONS, is_supported_document
from .active import ActiveThreadSelector
from .errors import BackendUnavailableError
from .events import EventBus, ThreadStateReset
from .models import GENERAL_THREAD_KEY, Thread, title_for_key
from .registry import SessionRegistry

__all__ = ["ThreadLifecycleCoordinator"]

LOGGER = logging.getLogger(__name__)


class ThreadLifecycleCoordinator:
    """Creates threads for opened documents, tears them down on deletion, restores them on start."""

    def __init__(
        self,
        registry: SessionRegistry,
        selector: ActiveThreadSelector,
        *,
        bus: EventBus | None = None,
        files: WorkspaceFiles | None = None,
        supported_extensions: Iterable[str] = DEFAULT_DOCUMENT_EXTENSIONS,
    ) -> None:
        self._registry = registry
        self._selector = selector
        self._bus = bus or registry.bus
        self._files = files
        self._extensions = tuple(ext.lower() for ext in supported_extensions)

    def is_supported(self, uri: str) -> bool:
        path = uri_to_path(uri)
        return path is not None and is_supported_document(path, self._extensions)

    async def handle_opened(self, uri: str, text: str = "") -> Thread | None:
        """Create the thread for an opened document; repeat opens return the existing thread."""

        if not self.is_supported(uri):
            LOGGER.debug("Ignoring open of unsupported document %s", uri)
            return None
        return await self._registry.create_thread(uri, text, title_for_key(uri))

    async def handle_deleted(self, uri: str) -> bool:
        """Remove the thread for a deleted document and move focus off it if needed."""

        if uri == GENERAL_THREAD_KEY:
            return False
        if not (self._registry.has_thread(uri) or self._registry.is_pending(uri)):
            LOGGER.debug("Delete for %s: no thread", uri)
            return False
        was_active = self._selector.is_active(uri)
        await self._registry.remove_thread(uri)
        if was_active or self._selector.active_key is None:
            await self._selector.reassign_to_general()
        LOGGER.debug("Thread for deleted document %s removed (was_active=%s)", uri, was_active)
        self._bus.publish(ThreadStateReset(reason="document-deleted", key=uri))
        return True

    async def restore(self) -> List[str]:
        """Recreate a thread for every persisted history, in lexicographic key order.

        Returns the keys that were restored. A key whose session cannot be opened
        is logged and skipped.
        """

        restored: List[str] = []
        for key in await self._registry.writer.thread_keys():
            if key == GENERAL_THREAD_KEY:
                continue
            context = await self._resolve_text(key)
            try:
                thread = await self._registry.create_thread(key, context, title_for_key(key))
            except BackendUnavailableError as exc:
                LOGGER.warning("Could not restore thread %s: %s", key, exc)
                continue
            if thread is not None:
                restored.append(key)
        LOGGER.debug("Restored %d document thread(s)", len(restored))
        return restored

    async def start(self) -> List[str]:
        """Bring up the general thread, restore persisted threads and focus the general thread."""

        await self._registry.initialize_general_thread()
        restored = await self.restore()
        if self._selector.active_key is None:
            await self._selector.reassign_to_general()
        return restored

    async def resolve_text(self, key: str) -> str:
        return await self._resolve_text(key)

    async def _resolve_text(self, key: str) -> str:
        if self._files is None:
            return ""
        return await self._files.resolve_document_text(key)
