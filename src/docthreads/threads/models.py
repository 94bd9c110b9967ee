"""Thread records and the persisted-key scheme shared by the coordination core."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from urllib.parse import unquote

if TYPE_CHECKING:  # pragma: no cover
    from ..ai.session import ChatSession

__all__ = [
    "GENERAL_THREAD_KEY",
    "GENERAL_THREAD_TITLE",
    "HISTORY_KEY_PREFIX",
    "Thread",
    "ThreadMode",
    "ThreadSummary",
    "history_key",
    "thread_key_from_history_key",
    "title_for_key",
]

GENERAL_THREAD_KEY = "docthreads-general-thread"
GENERAL_THREAD_TITLE = "General Purpose"
HISTORY_KEY_PREFIX = "thread-history-"


class ThreadMode(str, Enum):
    """Audience a document thread answers for."""

    DEVELOPER = "developer"
    BEGINNER = "beginner"

    @classmethod
    def coerce(cls, value: "ThreadMode | str") -> "ThreadMode":
        if isinstance(value, ThreadMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown thread mode: {value!r}") from exc


@dataclass(slots=True)
class Thread:
    """A conversational context bound to a document or to the general thread.

    Only :class:`~docthreads.threads.registry.SessionRegistry` mutates these
    fields; everyone else treats a ``Thread`` as read-only.
    """

    key: str
    title: str
    session: ChatSession
    mode: ThreadMode = ThreadMode.DEVELOPER

    @property
    def is_general(self) -> bool:
        return self.key == GENERAL_THREAD_KEY


@dataclass(slots=True, frozen=True)
class ThreadSummary:
    """Key/title pair used for thread list notifications."""

    key: str
    title: str


def history_key(thread_key: str) -> str:
    """Return the workspace-state key holding ``thread_key``'s history."""

    return f"{HISTORY_KEY_PREFIX}{thread_key}"


def thread_key_from_history_key(key: str) -> str | None:
    """Invert :func:`history_key`; ``None`` for keys outside the history namespace."""

    if not key.startswith(HISTORY_KEY_PREFIX):
        return None
    thread_key = key[len(HISTORY_KEY_PREFIX):]
    return thread_key or None


def title_for_key(thread_key: str) -> str:
    """Derive a display title from a document URI or path."""

    if thread_key == GENERAL_THREAD_KEY:
        return GENERAL_THREAD_TITLE
    trimmed = thread_key.rstrip("/\\")
    name = trimmed.replace("\\", "/").rsplit("/", 1)[-1]
    return unquote(name) or thread_key
