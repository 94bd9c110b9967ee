"""File listing and reading for the open project, injected where needed."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import List
from urllib.parse import unquote, urlparse

from ..utils import file_io

__all__ = ["WorkspaceFiles", "uri_to_path"]

LOGGER = logging.getLogger(__name__)
_IGNORED_DIRS = frozenset(
    {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache", ".tox"}
)


def uri_to_path(key: str) -> Path | None:
    """Return the filesystem path behind a ``file://`` URI or plain path, if any."""

    if not key:
        return None
    parsed = urlparse(key)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme and len(parsed.scheme) > 1:
        # other URI schemes (untitled:, vscode-remote:) have no local file
        return None
    return Path(key)


class WorkspaceFiles:
    """Read-only view of the files under a project root."""

    def __init__(self, root: Path | str, *, max_files: int = 500) -> None:
        self._root = Path(root).expanduser().resolve()
        self._max_files = max(1, int(max_files))

    @property
    def root(self) -> Path:
        return self._root

    async def list_files(self) -> List[str]:
        """Return project-relative POSIX paths, sorted, skipping tool and VCS directories."""

        return await asyncio.to_thread(self._walk)

    async def read_file(self, relative_path: str) -> str:
        target = (self._root / relative_path).resolve()
        if self._root not in target.parents and target != self._root:
            raise ValueError(f"Path escapes the workspace: {relative_path}")
        return await asyncio.to_thread(file_io.read_text, target, errors="replace")

    async def resolve_document_text(self, key: str) -> str:
        """Best-effort current text of the document named by ``key``; empty when unresolvable."""

        path = uri_to_path(key)
        if path is None:
            return ""
        if not path.is_absolute():
            path = self._root / path
        try:
            return await asyncio.to_thread(file_io.read_text, path, errors="replace")
        except OSError as exc:
            LOGGER.debug("Could not resolve document text for %s: %s", key, exc)
            return ""

    def _walk(self) -> List[str]:
        found: List[str] = []
        for dirpath, dirnames, filenames in os.walk(self._root):
            dirnames[:] = sorted(name for name in dirnames if name not in _IGNORED_DIRS)
            for filename in sorted(filenames):
                relative = Path(dirpath, filename).relative_to(self._root)
                found.append(relative.as_posix())
                if len(found) >= self._max_files:
                    return sorted(found)
        return sorted(found)
