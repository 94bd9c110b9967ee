"""Conversation state for a single thread."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Mapping, Sequence

from ..threads.errors import BackendUnavailableError

__all__ = ["ChatMessage", "ChatRole", "ChatSession", "Completer", "coerce_history"]

LOGGER = logging.getLogger(__name__)

ChatRole = Literal["human", "assistant"]
Completer = Callable[[Sequence[Mapping[str, str]]], Awaitable[str]]

_ROLE_ALIASES: Mapping[str, ChatRole] = {
    "human": "human",
    "user": "human",
    "assistant": "assistant",
    "ai": "assistant",
}
_API_ROLES: Mapping[str, str] = {"human": "user", "assistant": "assistant"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ChatMessage:
    """One role-tagged entry in a session's history."""

    role: ChatRole
    text: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for workspace-state persistence."""

        return {"role": self.role, "text": self.text}

    @classmethod
    def from_value(cls, value: "ChatMessage | Mapping[str, Any]") -> "ChatMessage | None":
        """Build a message from a stored payload.

        Accepts ``{"role", "text"}`` as written by :meth:`to_dict` and the older
        ``{"type": "human"|"ai", "text"}`` / ``{"role", "content"}`` shapes.
        Returns ``None`` for system messages and unrecognised payloads.
        """

        if isinstance(value, ChatMessage):
            return cls(role=value.role, text=value.text, created_at=value.created_at)
        if not isinstance(value, Mapping):
            return None
        raw_role = value.get("role") or value.get("type")
        role = _ROLE_ALIASES.get(str(raw_role or "").strip().lower())
        if role is None:
            return None
        text = value.get("text")
        if text is None:
            text = value.get("content", "")
        return cls(role=role, text=str(text))


def coerce_history(values: Iterable[ChatMessage | Mapping[str, Any]] | None) -> List[ChatMessage]:
    """Normalize a stored history payload, skipping entries that are not human/assistant turns."""

    messages: List[ChatMessage] = []
    for value in values or ():
        message = ChatMessage.from_value(value)
        if message is not None:
            messages.append(message)
    return messages


class ChatSession:
    """Message history plus a mutable system message, answered by a completer.

    The history holds at most ``max_history_messages`` human/assistant turns;
    older turns are evicted first. The system message lives outside that list
    and is never evicted.
    """

    def __init__(
        self,
        completer: Completer,
        *,
        system_message: str = "",
        max_history_messages: int = 40,
        system_role_supported: bool = True,
        provider: str = "unknown",
    ) -> None:
        self._completer = completer
        self._system_message = system_message
        self._max_history = max(1, int(max_history_messages))
        self._system_role_supported = system_role_supported
        self._provider = provider
        self._history: List[ChatMessage] = []
        # bumped whenever the history is replaced wholesale
        self._generation = 0

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def system_message(self) -> str:
        return self._system_message

    @property
    def max_history_messages(self) -> int:
        return self._max_history

    async def chat(self, prompt: str) -> str:
        """Send ``prompt`` with the current history and record the exchange.

        Raises:
            BackendUnavailableError: The completer failed. The pending human
                message is withdrawn so history only holds completed exchanges.

        If the history is reset or replaced while the reply is outstanding,
        the reply is still returned but not recorded.
        """

        generation = self._generation
        human = ChatMessage(role="human", text=prompt)
        self._history.append(human)
        self._prune()
        payload = self._build_payload()
        try:
            response = await self._completer(payload)
        except Exception as exc:
            self._withdraw(human)
            LOGGER.debug("Chat completion failed via %s: %s", self._provider, exc)
            raise BackendUnavailableError(str(exc) or type(exc).__name__, provider=self._provider) from exc
        text = response or ""
        if generation != self._generation:
            LOGGER.debug("Dropping reply for an exchange that predates a history reset")
            return text
        self._history.append(ChatMessage(role="assistant", text=text))
        self._prune()
        return text

    def get_history(self) -> List[ChatMessage]:
        """Return a copy of the human/assistant turns, oldest first."""

        return list(self._history)

    def serialize_history(self) -> List[Dict[str, Any]]:
        return [message.to_dict() for message in self._history]

    def set_history(self, history: Iterable[ChatMessage | Mapping[str, Any]]) -> None:
        """Replace the history; the system message is left untouched."""

        self._history = coerce_history(history)
        self._generation += 1
        self._prune()

    def reset(self) -> None:
        """Drop every turn while keeping the system message."""

        self._history = []
        self._generation += 1

    def set_custom_system_message(self, text: str) -> None:
        self._system_message = text or ""

    def _build_payload(self) -> List[Dict[str, str]]:
        turns = [{"role": _API_ROLES[m.role], "content": m.text} for m in self._history]
        if not self._system_message:
            return turns
        if self._system_role_supported:
            return [{"role": "system", "content": self._system_message}, *turns]
        # No system role: prefix the preamble to the first user turn instead.
        for index, turn in enumerate(turns):
            if turn["role"] == "user":
                turns[index] = {"role": "user", "content": f"{self._system_message}\n\n{turn['content']}"}
                break
        return turns

    def _prune(self) -> None:
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    def _withdraw(self, message: ChatMessage) -> None:
        for index in range(len(self._history) - 1, -1, -1):
            if self._history[index] is message:
                del self._history[index]
                return
