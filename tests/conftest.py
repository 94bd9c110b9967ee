"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from docthreads.dispatcher import ThreadDispatcher
from docthreads.services.workspace_files import WorkspaceFiles
from docthreads.services.workspace_state import MemoryWorkspaceState
from docthreads.threads.active import ActiveThreadSelector
from docthreads.threads.events import EventBus
from docthreads.threads.lifecycle import ThreadLifecycleCoordinator
from docthreads.threads.registry import SessionRegistry

from tests.helpers import FakeSessionFactory, RecordingHandler


@pytest.fixture
def state() -> MemoryWorkspaceState:
    return MemoryWorkspaceState()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def factory() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def registry(factory: FakeSessionFactory, state: MemoryWorkspaceState, bus: EventBus) -> SessionRegistry:
    return SessionRegistry(factory, state, bus=bus)


@pytest.fixture
def selector(registry: SessionRegistry, bus: EventBus) -> ActiveThreadSelector:
    return ActiveThreadSelector(registry, bus)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "docs").mkdir(parents=True)
    (root / "docs" / "guide.md").write_text("# Guide\n\nHow to use it.\n", encoding="utf-8")
    (root / "notes.txt").write_text("scratch notes\n", encoding="utf-8")
    (root / "main.py").write_text("print('hi')\n", encoding="utf-8")
    return root


@pytest.fixture
def files(project: Path) -> WorkspaceFiles:
    return WorkspaceFiles(project)


@pytest.fixture
def lifecycle(
    registry: SessionRegistry,
    selector: ActiveThreadSelector,
    bus: EventBus,
    files: WorkspaceFiles,
) -> ThreadLifecycleCoordinator:
    return ThreadLifecycleCoordinator(registry, selector, bus=bus, files=files)


@pytest.fixture
def dispatcher(
    registry: SessionRegistry,
    selector: ActiveThreadSelector,
    lifecycle: ThreadLifecycleCoordinator,
    bus: EventBus,
) -> ThreadDispatcher:
    return ThreadDispatcher(registry, selector, lifecycle, bus=bus)


@pytest.fixture
def recorder(bus: EventBus) -> RecordingHandler:
    from docthreads.threads.events import (
        ActiveThreadChanged,
        NoticePosted,
        ThreadListChanged,
        ThreadStateReset,
    )

    handler = RecordingHandler()
    for event_type in (ThreadListChanged, ActiveThreadChanged, ThreadStateReset, NoticePosted):
        bus.subscribe(event_type, handler)
    return handler
