"""Suggestions for documentation files a project is missing."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Tuple

from .ai import prompts
from .ai.factory import SessionFactory
from .services.workspace_files import WorkspaceFiles
from .threads.errors import MalformedAIOutputError
from .threads.single_flight import SingleFlightComputation

__all__ = [
    "DEFAULT_SUGGESTIONS",
    "DocSuggestion",
    "DocumentSuggestionService",
    "parse_suggestions",
]

LOGGER = logging.getLogger(__name__)

SUGGESTION_KEY = "missing-docs"
_JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)
_CONTEXT_EXTENSIONS = frozenset({".md", ".markdown", ".rst", ".txt", ".toml", ".cfg", ".json", ".yaml", ".yml"})


@dataclass(slots=True, frozen=True)
class DocSuggestion:
    display_name: str
    file_name: str
    description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "displayName": self.display_name,
            "fileName": self.file_name,
            "description": self.description,
        }


DEFAULT_SUGGESTIONS: Tuple[DocSuggestion, ...] = (
    DocSuggestion("README", "README.md", "Project overview and usage."),
    DocSuggestion("API Reference", "API_REFERENCE.md", "Document your API endpoints."),
    DocSuggestion("Getting Started", "GETTING_STARTED.md", "How to get started with the project."),
)


def parse_suggestions(reply: str, *, existing: Iterable[str] = ()) -> List[DocSuggestion]:
    """Extract suggestions from a model reply.

    The first ``[...]`` span is decoded as JSON. Entries without a display name
    or a ``.md`` file name are dropped, as are files already in ``existing``.

    Raises:
        MalformedAIOutputError: No JSON array could be decoded from ``reply``.
    """

    match = _JSON_ARRAY.search(reply or "")
    if match is None:
        raise MalformedAIOutputError("No JSON array found in model reply", raw=reply)
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise MalformedAIOutputError(f"Model reply is not valid JSON: {exc}", raw=reply) from exc
    if not isinstance(payload, list):
        raise MalformedAIOutputError("Model reply is not a JSON array", raw=reply)

    present = {PurePosixPath(name).name.lower() for name in existing}
    suggestions: List[DocSuggestion] = []
    for entry in payload:
        suggestion = _coerce_entry(entry)
        if suggestion is None or suggestion.file_name.lower() in present:
            continue
        suggestions.append(suggestion)
    return suggestions


def _coerce_entry(entry: Any) -> DocSuggestion | None:
    if not isinstance(entry, dict):
        return None
    display_name = str(entry.get("displayName") or "").strip()
    file_name = str(entry.get("fileName") or "").strip()
    if not display_name or not file_name.lower().endswith(".md"):
        return None
    return DocSuggestion(display_name, file_name, str(entry.get("description") or "").strip())


class DocumentSuggestionService:
    """Asks the model which documentation files the project lacks.

    Concurrent requests share one model call; a failed or empty call yields the
    last good suggestions, or :data:`DEFAULT_SUGGESTIONS`.
    """

    def __init__(
        self,
        factory: SessionFactory,
        files: WorkspaceFiles,
        *,
        flight: SingleFlightComputation[List[DocSuggestion]] | None = None,
        max_context_files: int = 20,
    ) -> None:
        self._factory = factory
        self._files = files
        self._flight = flight or SingleFlightComputation(
            lambda: list(DEFAULT_SUGGESTIONS),
            name="doc-suggestions",
        )
        self._max_context_files = max(0, int(max_context_files))

    @property
    def flight(self) -> SingleFlightComputation[List[DocSuggestion]]:
        return self._flight

    def set_factory(self, factory: SessionFactory) -> None:
        self._factory = factory

    async def suggest(self) -> List[DocSuggestion]:
        return await self._flight.invoke(self._compute, key=SUGGESTION_KEY)

    async def _compute(self) -> List[DocSuggestion]:
        listing = await self._files.list_files()
        context = await self._collect_context(listing)
        session = await self._factory.create_session(prompts.GENERAL_PURPOSE)
        reply = await session.chat(prompts.missing_docs_prompt(context))
        suggestions = parse_suggestions(reply, existing=listing)
        LOGGER.debug("Model suggested %d missing document(s)", len(suggestions))
        return suggestions

    async def _collect_context(self, listing: List[str]) -> List[Tuple[str, str]]:
        context: List[Tuple[str, str]] = []
        excerpts = 0
        for path in listing:
            content = ""
            if excerpts < self._max_context_files and PurePosixPath(path).suffix.lower() in _CONTEXT_EXTENSIONS:
                try:
                    content = await self._files.read_file(path)
                except (OSError, ValueError) as exc:
                    LOGGER.debug("Skipping excerpt for %s: %s", path, exc)
                else:
                    excerpts += 1
            context.append((path, content))
        return context
