"""Project-scoped key/value state that survives restarts."""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Protocol, runtime_checkable

from ..utils.file_io import write_text
from .settings import SETTINGS_DIR

__all__ = [
    "WorkspaceState",
    "MemoryWorkspaceState",
    "JsonWorkspaceState",
    "default_state_path",
]

LOGGER = logging.getLogger(__name__)
_STATE_VERSION = 1


@runtime_checkable
class WorkspaceState(Protocol):
    """Durable mapping from string keys to JSON-serializable values."""

    async def get(self, key: str, default: Any = None) -> Any:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def list_keys(self) -> List[str]:
        ...


def default_state_path(project_root: Path | str) -> Path:
    """Return the per-project state file under ``~/.docthreads/workspaces``."""

    resolved = str(Path(project_root).expanduser().resolve())
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]
    return SETTINGS_DIR / "workspaces" / f"{digest}.json"


class MemoryWorkspaceState:
    """In-process state, used by tests and ephemeral runs."""

    def __init__(self, initial: Dict[str, Any] | None = None) -> None:
        self._values: Dict[str, Any] = copy.deepcopy(dict(initial or {}))

    async def get(self, key: str, default: Any = None) -> Any:
        if key not in self._values:
            return default
        return copy.deepcopy(self._values[key])

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            self._values.pop(key, None)
            return
        self._values[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    async def list_keys(self) -> List[str]:
        return list(self._values)


class JsonWorkspaceState:
    """State stored as one JSON document, rewritten atomically on every change."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._values: Dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def get(self, key: str, default: Any = None) -> Any:
        values = await self._ensure_loaded()
        if key not in values:
            return default
        return copy.deepcopy(values[key])

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            await self.delete(key)
            return
        async with self._lock:
            values = await self._ensure_loaded()
            values[key] = copy.deepcopy(value)
            await self._flush(values)

    async def delete(self, key: str) -> None:
        async with self._lock:
            values = await self._ensure_loaded()
            if key not in values:
                return
            del values[key]
            await self._flush(values)

    async def list_keys(self) -> List[str]:
        values = await self._ensure_loaded()
        return list(values)

    async def _ensure_loaded(self) -> Dict[str, Any]:
        if self._values is None:
            loaded = await asyncio.to_thread(self._read_payload)
            # another caller may have loaded (and mutated) the values meanwhile
            if self._values is None:
                self._values = loaded
        return self._values

    async def _flush(self, values: Dict[str, Any]) -> None:
        body = json.dumps({"version": _STATE_VERSION, "values": values}, indent=2, sort_keys=True)
        await asyncio.to_thread(write_text, self._path, body)

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Workspace state %s is not valid JSON: %s", self._path, exc)
            return {}
        values = data.get("values") if isinstance(data, dict) else None
        if not isinstance(values, dict):
            return {}
        return {str(key): value for key, value in values.items()}
