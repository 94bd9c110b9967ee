"""Event types and the synchronous bus that carries them.

Document lifecycle events flow *in* from the editor; thread-list and
active-thread notifications flow *out* to UI-facing subscribers.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar
from weakref import WeakMethod

from .models import ThreadSummary

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all bus events."""


# =============================================================================
# Inbound document events
# =============================================================================


@dataclass(slots=True)
class DocumentOpened(Event):
    """A document was opened in the editor.

    Attributes:
        uri: Canonical URI string of the document; becomes the thread key.
        text: Document text at open time, used as the thread's initial context.
    """

    uri: str
    text: str = ""


@dataclass(slots=True)
class DocumentDeleted(Event):
    """A document was deleted (or closed for good) and its thread should go."""

    uri: str


# =============================================================================
# Outbound thread notifications
# =============================================================================


@dataclass(slots=True)
class ThreadListChanged(Event):
    """The set of threads or the active thread changed.

    Attributes:
        threads: Every live thread, general thread first, then creation order.
        active_key: The active thread key, or ``None`` when unset.
    """

    threads: tuple[ThreadSummary, ...]
    active_key: str | None


@dataclass(slots=True)
class ActiveThreadChanged(Event):
    """Focus moved to another thread; carries that thread's persisted history."""

    key: str
    history: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class ThreadStateReset(Event):
    """Threads were removed or reset; observers should refresh their view."""

    reason: str
    key: str | None = None


@dataclass(slots=True)
class NoticePosted(Event):
    """A chat-style message for the user (errors, confirmations)."""

    message: str
    key: str | None = None
    sender: str = "System"


class EventBus(Generic[E]):
    """Typed publish/subscribe bus.

    Bound-method handlers are held through :class:`weakref.WeakMethod` so a
    collected subscriber drops out on its own; plain functions are held
    strongly. Handlers run synchronously in subscription order and a failing
    handler is logged without stopping the rest.

    Not thread-safe: publish from the event-loop thread only.
    """

    __slots__ = ("_subscriptions",)

    def __init__(self) -> None:
        self._subscriptions: Dict[type[Event], List[_Resolver]] = {}

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        self._subscriptions.setdefault(event_type, []).append(_resolver_for(handler))
        logger.debug("Subscribed %s to %s", _describe(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        resolvers = self._subscriptions.get(event_type, [])
        for resolver in resolvers:
            if resolver() == handler:
                resolvers.remove(resolver)
                return

    def publish(self, event: E) -> None:
        event_type = type(event)
        resolvers = self._subscriptions.get(event_type)
        if not resolvers:
            return
        logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(resolvers))
        for resolver in list(resolvers):
            handler = resolver()
            if handler is None:
                resolvers.remove(resolver)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %s failed on %s", _describe(handler), event_type.__name__)

    def clear(self) -> None:
        self._subscriptions.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is None:
            return sum(len(resolvers) for resolvers in self._subscriptions.values())
        return len(self._subscriptions.get(event_type, []))


_Resolver = Callable[[], Optional[Callable[[Any], None]]]


def _resolver_for(handler: Handler) -> _Resolver:
    if inspect.ismethod(handler):
        return WeakMethod(handler)
    return lambda: handler


def _describe(handler: Handler) -> str:
    if inspect.ismethod(handler):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__qualname__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "DocumentOpened",
    "DocumentDeleted",
    "ThreadListChanged",
    "ActiveThreadChanged",
    "ThreadStateReset",
    "NoticePosted",
]
