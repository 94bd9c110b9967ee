"""Session factories: the primary provider path and the direct fallback.

The registry receives both at construction time and tries the primary first;
which implementation backs each slot is decided by whoever wires the runtime.
"""

from __future__ import annotations

import functools
import logging
from abc import ABC, abstractmethod

from ..threads.errors import BackendUnavailableError
from .client import AIClient
from .session import ChatSession

__all__ = ["SessionFactory", "ProviderSessionFactory", "DirectSessionFactory"]

LOGGER = logging.getLogger(__name__)


class SessionFactory(ABC):
    """Capability to open a :class:`ChatSession` for a system message."""

    name: str = "unknown"

    @abstractmethod
    async def create_session(self, system_message: str) -> ChatSession:
        """Return a new session seeded with ``system_message``.

        Raises:
            BackendUnavailableError: The backend cannot host a session right now.
        """


class ProviderSessionFactory(SessionFactory):
    """Sessions backed by the configured provider and model."""

    def __init__(
        self,
        client: AIClient,
        *,
        model: str | None = None,
        temperature: float | None = 0.0,
        max_history_messages: int = 40,
        require_api_key: bool = True,
        name: str = "provider",
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_history = max_history_messages
        self._require_api_key = require_api_key
        self.name = name

    async def create_session(self, system_message: str) -> ChatSession:
        if self._require_api_key and not self._client.settings.api_key:
            raise BackendUnavailableError("Provider requires an API key to be configured", provider=self.name)
        completer = functools.partial(
            self._client.complete,
            model=self._model,
            temperature=self._temperature,
        )
        LOGGER.debug("Opening %s session (model=%s)", self.name, self._model or self._client.settings.model)
        return ChatSession(
            completer,
            system_message=system_message,
            max_history_messages=self._max_history,
            provider=self.name,
        )


class DirectSessionFactory(SessionFactory):
    """Plain client sessions used when the provider path is unavailable.

    System-message support is degraded by default: the preamble is folded into
    the first user turn instead of being sent with the ``system`` role.
    """

    def __init__(
        self,
        client: AIClient,
        *,
        model: str | None = None,
        temperature: float | None = 0.0,
        max_history_messages: int = 40,
        system_role_supported: bool = False,
        name: str = "direct",
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_history = max_history_messages
        self._system_role_supported = system_role_supported
        self.name = name

    async def create_session(self, system_message: str) -> ChatSession:
        completer = functools.partial(
            self._client.complete,
            model=self._model,
            temperature=self._temperature,
        )
        return ChatSession(
            completer,
            system_message=system_message,
            max_history_messages=self._max_history,
            system_role_supported=self._system_role_supported,
            provider=self.name,
        )
