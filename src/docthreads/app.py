"""Application bootstrap and the ``docthreads`` command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient, ClientSettings
from .ai.factory import DirectSessionFactory, ProviderSessionFactory
from .dispatcher import ThreadDispatcher
from .services.settings import Settings, SettingsStore, redact_secret
from .services.workspace_files import WorkspaceFiles
from .services.workspace_state import JsonWorkspaceState, WorkspaceState, default_state_path
from .suggestions import DocumentSuggestionService
from .threads.active import ActiveThreadSelector
from .threads.events import EventBus
from .threads.lifecycle import ThreadLifecycleCoordinator
from .threads.models import GENERAL_THREAD_KEY
from .threads.registry import SessionRegistry
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Everything :func:`build_runtime` wires together."""

    settings: Settings
    bus: EventBus
    state: WorkspaceState
    files: WorkspaceFiles
    registry: SessionRegistry
    selector: ActiveThreadSelector
    lifecycle: ThreadLifecycleCoordinator
    dispatcher: ThreadDispatcher
    suggestions: DocumentSuggestionService
    clients: tuple[AIClient, ...] = ()

    async def aclose(self) -> None:
        """Close the chat clients to release network resources."""

        for client in self.clients:
            try:
                await client.aclose()
            except Exception as exc:  # pragma: no cover - best-effort shutdown
                _LOGGER.debug("AI client shutdown failed: %s", exc)


def configure_logging(debug: bool = False, *, force: bool = False, console: bool = True) -> None:
    """Configure structured logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force, console=console)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - unreadable settings
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_client_settings(settings: Settings, *, model: str | None = None) -> ClientSettings:
    return ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=model or settings.model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        default_headers=settings.default_headers,
        metadata={str(key): str(value) for key, value in settings.metadata.items()} or None,
        debug_logging=settings.debug_logging,
    )


def build_runtime(
    settings: Settings,
    project_root: Path | str,
    *,
    state: WorkspaceState | None = None,
    bus: EventBus | None = None,
    clients: tuple[AIClient, AIClient] | None = None,
) -> Runtime:
    """Wire settings, clients, factories, storage and the coordination core."""

    if clients is None:
        primary_client = AIClient(build_client_settings(settings))
        fallback_client = AIClient(build_client_settings(settings, model=settings.fallback_model))
    else:
        primary_client, fallback_client = clients
    primary = ProviderSessionFactory(
        primary_client,
        model=settings.model,
        temperature=settings.temperature,
        max_history_messages=settings.max_history_messages,
    )
    fallback = DirectSessionFactory(
        fallback_client,
        model=settings.fallback_model or settings.model,
        temperature=settings.temperature,
        max_history_messages=settings.max_history_messages,
    )

    if state is None:
        state_path = (
            Path(settings.workspace_state_path).expanduser()
            if settings.workspace_state_path
            else default_state_path(project_root)
        )
        state = JsonWorkspaceState(state_path)
        _LOGGER.debug("Workspace state at %s", state_path)

    event_bus = bus or EventBus()
    files = WorkspaceFiles(project_root)
    registry = SessionRegistry(
        primary,
        state,
        fallback_factory=fallback,
        bus=event_bus,
        default_mode=settings.default_mode,
    )
    selector = ActiveThreadSelector(registry, event_bus)
    lifecycle = ThreadLifecycleCoordinator(
        registry,
        selector,
        bus=event_bus,
        files=files,
        supported_extensions=settings.supported_extensions,
    )
    suggestions = DocumentSuggestionService(primary, files)
    dispatcher = ThreadDispatcher(registry, selector, lifecycle, bus=event_bus, suggestions=suggestions)
    return Runtime(
        settings=settings,
        bus=event_bus,
        state=state,
        files=files,
        registry=registry,
        selector=selector,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        suggestions=suggestions,
        clients=(primary_client, fallback_client),
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``docthreads`` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)

    debug = args.debug or _env_flag("DOCTHREADS_DEBUG", default=False)
    configure_logging(debug, console=debug)

    settings_path = args.settings_path or os.environ.get("DOCTHREADS_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    if args.model:
        cli_overrides["model"] = args.model
    if args.base_url:
        cli_overrides["base_url"] = args.base_url

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    if settings.debug_logging and not debug:
        configure_logging(True, force=True, console=False)

    if args.command == "dump-settings":
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0
    if args.command is None:
        parser.print_help()
        return 1

    project_root = Path(args.project).expanduser().resolve()
    try:
        return asyncio.run(_run_command(args, settings, project_root))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130


async def _run_command(args: argparse.Namespace, settings: Settings, project_root: Path) -> int:
    runtime = build_runtime(settings, project_root)
    try:
        await runtime.dispatcher.start()
        handler = _COMMANDS[args.command]
        return await handler(runtime, args)
    finally:
        await runtime.aclose()


async def _cmd_threads(runtime: Runtime, args: argparse.Namespace, *, stream: TextIO | None = None) -> int:
    destination = stream or sys.stdout
    listing = runtime.registry.thread_list()
    for summary in listing.threads:
        marker = "*" if summary.key == listing.active_key else " "
        history = await runtime.registry.load_persisted_history(summary.key)
        destination.write(f"{marker} {summary.title}\t{summary.key}\t{len(history)} message(s)\n")
    return 0


async def _cmd_ask(runtime: Runtime, args: argparse.Namespace, *, stream: TextIO | None = None) -> int:
    destination = stream or sys.stdout
    key = GENERAL_THREAD_KEY
    if args.document:
        document = Path(args.document).expanduser().resolve()
        key = document.as_uri()
        text = await runtime.files.resolve_document_text(key)
        thread = await runtime.dispatcher.create_thread(key, text)
        if thread is None:
            print(f"Unsupported document: {document}", file=sys.stderr)
            return 2
    await runtime.dispatcher.set_active_thread(key)
    reply = await runtime.dispatcher.send_message_to_thread(key, args.prompt)
    destination.write(f"{reply or ''}\n")
    return 1 if (reply or "").startswith("Error: ") else 0


async def _cmd_suggest(runtime: Runtime, args: argparse.Namespace, *, stream: TextIO | None = None) -> int:
    destination = stream or sys.stdout
    suggestions = await runtime.dispatcher.suggest_missing_docs()
    json.dump([item.to_dict() for item in suggestions], destination, indent=2)
    destination.write("\n")
    return 0


async def _cmd_reset(runtime: Runtime, args: argparse.Namespace, *, stream: TextIO | None = None) -> int:
    destination = stream or sys.stdout
    if args.all:
        await runtime.dispatcher.reset_all()
        destination.write("All threads reset.\n")
        return 0
    key = args.key or GENERAL_THREAD_KEY
    if not await runtime.dispatcher.reset_thread(key):
        print(f"No thread named {key}", file=sys.stderr)
        return 1
    destination.write(f"Thread {key} reset.\n")
    return 0


_COMMANDS = {
    "threads": _cmd_threads,
    "ask": _cmd_ask,
    "suggest": _cmd_suggest,
    "reset": _cmd_reset,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docthreads",
        description="Per-document assistant threads for the project in the current directory.",
    )
    parser.add_argument("--project", default=".", metavar="PATH", help="Project root (default: current directory).")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on the console.")
    parser.add_argument(
        "--settings",
        dest="settings_path",
        metavar="PATH",
        help="Override the default ~/.docthreads/settings.json path.",
    )
    parser.add_argument("--model", help="Model to use for this run.")
    parser.add_argument("--base-url", dest="base_url", help="OpenAI-compatible endpoint for this run.")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("threads", help="List threads restored from workspace state.")
    ask = commands.add_parser("ask", help="Send a prompt to the general thread or a document thread.")
    ask.add_argument("prompt")
    ask.add_argument("--document", metavar="PATH", help="Ask in the thread of this document.")
    commands.add_parser("suggest", help="Suggest documentation files the project is missing.")
    reset = commands.add_parser("reset", help="Clear one thread's history, or everything with --all.")
    reset.add_argument("key", nargs="?", help="Thread key (default: the general thread).")
    reset.add_argument("--all", action="store_true", help="Drop every document thread and stored history.")
    commands.add_parser("dump-settings", help="Print the effective settings with secrets redacted.")
    return parser


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    """Turn ``--set KEY=VALUE`` entries into typed ``Settings`` overrides.

    Raises:
        ValueError: Malformed entry, unknown field, the API key, or a value
            that does not fit the field's type.
    """

    hints = get_type_hints(Settings)
    overrides: Dict[str, Any] = {}
    for entry in items:
        name, sep, raw = entry.partition("=")
        name = name.strip()
        if not sep:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        if not name:
            raise ValueError("Override is missing a field name.")
        if name not in hints:
            raise ValueError(f"Unknown setting '{name}'.")
        if name == "api_key":
            raise ValueError("Set the API key through DOCTHREADS_API_KEY, not the command line.")
        overrides[name] = _coerce_value(hints[name], raw.strip())
    return overrides


def _coerce_value(annotation: Any, text: str) -> Any:
    if type(None) in get_args(annotation) and text.lower() in {"none", "null"}:
        return None
    target = _base_type(annotation)
    if target is bool:
        return _parse_bool(text)
    if target in (int, float):
        return int(text, 10) if target is int else float(text)
    if target is list:
        try:
            value = json.loads(text or "[]")
        except json.JSONDecodeError:
            value = [part.strip() for part in text.split(",") if part.strip()]
        if isinstance(value, list):
            return value
        raise ValueError("List overrides must be JSON arrays or comma-separated values")
    if target is dict:
        try:
            value = json.loads(text or "{}")
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        raise ValueError("Dict overrides must be valid JSON objects")
    return text


def _base_type(annotation: Any) -> Any:
    """``list[str]`` -> ``list``, ``str | None`` -> ``str``; plain types pass through."""

    origin = get_origin(annotation)
    if origin is None or origin in (list, dict):
        return origin or annotation
    members = [arg for arg in get_args(annotation) if arg is not type(None)]
    return _base_type(members[0]) if members else origin


def _parse_bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUE_VALUES or lowered in _FALSE_VALUES:
        return lowered in _TRUE_VALUES
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key") or "")
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("DOCTHREADS_"))
