"""Shared test helpers and stub classes.

Fakes here stand in for the chat backend so no test touches the network.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Mapping, Sequence

from docthreads.ai.factory import SessionFactory
from docthreads.ai.session import ChatSession
from docthreads.services.workspace_state import MemoryWorkspaceState
from docthreads.threads.errors import BackendUnavailableError


class EchoCompleter:
    """Completer that answers ``"echo: <last user turn>"`` and records every payload."""

    def __init__(self, *, reply: Callable[[str], str] | None = None, gate: asyncio.Event | None = None) -> None:
        self.calls: List[List[dict[str, str]]] = []
        self._reply = reply or (lambda prompt: f"echo: {prompt}")
        self._gate = gate

    async def __call__(self, messages: Sequence[Mapping[str, str]]) -> str:
        self.calls.append([dict(message) for message in messages])
        if self._gate is not None:
            await self._gate.wait()
        last_user = next(m["content"] for m in reversed(messages) if m["role"] == "user")
        return self._reply(last_user)


class FailingCompleter:
    def __init__(self, message: str = "backend down") -> None:
        self.calls = 0
        self._message = message

    async def __call__(self, messages: Sequence[Mapping[str, str]]) -> str:
        self.calls += 1
        raise ConnectionError(self._message)


class FakeSessionFactory(SessionFactory):
    """Session factory backed by an in-process completer.

    ``gate`` (when given) holds every ``create_session`` call until it is set,
    which lets tests interleave other operations with thread creation.
    """

    def __init__(
        self,
        completer: Any | None = None,
        *,
        name: str = "fake",
        gate: asyncio.Event | None = None,
        system_role_supported: bool = True,
        max_history_messages: int = 40,
    ) -> None:
        self.completer = completer or EchoCompleter()
        self.name = name
        self.gate = gate
        self.system_role_supported = system_role_supported
        self.max_history_messages = max_history_messages
        self.created: List[ChatSession] = []
        self.system_messages: List[str] = []

    async def create_session(self, system_message: str) -> ChatSession:
        self.system_messages.append(system_message)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        session = ChatSession(
            self.completer,
            system_message=system_message,
            max_history_messages=self.max_history_messages,
            system_role_supported=self.system_role_supported,
            provider=self.name,
        )
        self.created.append(session)
        return session


class FailingSessionFactory(SessionFactory):
    def __init__(self, *, name: str = "broken") -> None:
        self.name = name
        self.calls = 0

    async def create_session(self, system_message: str) -> ChatSession:
        self.calls += 1
        await asyncio.sleep(0)
        raise BackendUnavailableError("no provider configured", provider=self.name)


class RecordingHandler:
    """Bus subscriber collecting every event it receives."""

    def __init__(self) -> None:
        self.events: List[Any] = []

    def __call__(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> List[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


class BrokenWorkspaceState:
    """Workspace state whose writes always fail."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}

    async def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        raise OSError("disk full")

    async def delete(self, key: str) -> None:
        raise OSError("disk full")

    async def list_keys(self) -> List[str]:
        return list(self.values)


class SlowWorkspaceState(MemoryWorkspaceState):
    """Memory state whose reads and deletes yield to the loop several times first."""

    def __init__(self, initial: dict[str, Any] | None = None, *, turns: int = 5) -> None:
        super().__init__(initial)
        self.turns = turns

    async def _yield(self) -> None:
        for _ in range(self.turns):
            await asyncio.sleep(0)

    async def get(self, key: str, default: Any = None) -> Any:
        await self._yield()
        return await super().get(key, default)

    async def delete(self, key: str) -> None:
        await self._yield()
        await super().delete(key)
