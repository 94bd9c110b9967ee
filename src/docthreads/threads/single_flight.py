"""Coalesce concurrent runs of an expensive computation into one.

Callers that arrive while a computation for the same key is in flight attach
to it instead of starting another. Failures and empty results never reach
the callers: they receive the last good result for the key, or a fixed
default when nothing has succeeded yet.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, TypeVar

__all__ = ["SingleFlightComputation"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class _Flight(Generic[T]):
    in_flight: "asyncio.Future[T] | None" = None
    call_count: int = 0
    last_good: T | None = None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    try:
        return len(value) == 0
    except TypeError:
        return False


class SingleFlightComputation(Generic[T]):
    """At most one in-flight computation per key, with last-known-good fallback.

    Args:
        default: Value (or zero-argument factory) returned when a computation
            fails and no earlier call has succeeded. Must not be empty.
        is_empty: Predicate deciding whether a result counts as empty.
        name: Label used in log messages.
    """

    def __init__(
        self,
        default: T | Callable[[], T],
        *,
        is_empty: Callable[[Any], bool] = _is_empty,
        name: str = "computation",
    ) -> None:
        self._default = default
        self._is_empty = is_empty
        self._name = name
        self._flights: Dict[str, _Flight[T]] = {}

    @property
    def name(self) -> str:
        return self._name

    def call_count(self, key: str = "default") -> int:
        """Number of computations started for ``key``."""

        flight = self._flights.get(key)
        return flight.call_count if flight is not None else 0

    def last_result(self, key: str = "default") -> T | None:
        flight = self._flights.get(key)
        return flight.last_good if flight is not None else None

    def in_flight(self, key: str = "default") -> bool:
        flight = self._flights.get(key)
        return flight is not None and flight.in_flight is not None

    async def invoke(self, compute: Callable[[], Awaitable[T]], *, key: str = "default") -> T:
        flight = self._flights.setdefault(key, _Flight())
        if flight.in_flight is not None:
            LOGGER.debug("%s[%s]: attaching to in-flight computation", self._name, key)
            return await asyncio.shield(flight.in_flight)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        flight.in_flight = future
        flight.call_count += 1
        call_number = flight.call_count
        try:
            result = await self._run(compute, flight, key, call_number)
        except asyncio.CancelledError:
            flight.in_flight = None
            future.set_result(self._fallback(flight))
            raise
        flight.in_flight = None
        future.set_result(result)
        return result

    async def _run(
        self,
        compute: Callable[[], Awaitable[T]],
        flight: _Flight[T],
        key: str,
        call_number: int,
    ) -> T:
        try:
            result = await compute()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("%s[%s] call #%d failed: %s; using fallback", self._name, key, call_number, exc)
            return self._fallback(flight)
        if self._is_empty(result):
            LOGGER.warning("%s[%s] call #%d returned nothing; using fallback", self._name, key, call_number)
            return self._fallback(flight)
        flight.last_good = result
        LOGGER.debug("%s[%s] call #%d succeeded", self._name, key, call_number)
        return result

    def _fallback(self, flight: _Flight[T]) -> T:
        if flight.last_good is not None:
            return flight.last_good
        if callable(self._default):
            return self._default()
        return copy.deepcopy(self._default)
