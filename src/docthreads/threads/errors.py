"""Error types raised inside the thread coordination core.

Only :class:`BackendUnavailableError` from a chat exchange ever reaches the
user, and then as a chat-style message rather than an exception. The other
errors are caught at the component boundary and degrade to a fallback.
"""

from __future__ import annotations

__all__ = [
    "DocThreadsError",
    "BackendUnavailableError",
    "MalformedAIOutputError",
    "PersistenceError",
]


class DocThreadsError(Exception):
    """Base class for docthreads errors."""


class BackendUnavailableError(DocThreadsError):
    """The chat backend could not create a session or answer a prompt."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class MalformedAIOutputError(DocThreadsError):
    """A model reply that should carry structured data could not be parsed."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class PersistenceError(DocThreadsError):
    """Reading or writing workspace state failed."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key
