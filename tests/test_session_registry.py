"""Tests for :mod:`docthreads.threads.registry`."""

from __future__ import annotations

import asyncio

import pytest

from docthreads.ai import prompts
from docthreads.services.workspace_state import MemoryWorkspaceState
from docthreads.threads.errors import BackendUnavailableError
from docthreads.threads.events import EventBus, ThreadListChanged
from docthreads.threads.models import GENERAL_THREAD_KEY, GENERAL_THREAD_TITLE, ThreadMode
from docthreads.threads.registry import SessionRegistry

from tests.helpers import (
    BrokenWorkspaceState,
    EchoCompleter,
    FailingCompleter,
    FailingSessionFactory,
    FakeSessionFactory,
    RecordingHandler,
    SlowWorkspaceState,
)

DOC = "file:///project/docs/guide.md"


class TestCreateThread:
    @pytest.mark.asyncio
    async def test_creates_thread_with_document_system_message(
        self, registry: SessionRegistry, factory: FakeSessionFactory
    ) -> None:
        thread = await registry.create_thread(DOC, "# Guide", "guide.md")

        assert thread is not None
        assert registry.get_thread(DOC) is thread
        assert thread.mode is ThreadMode.DEVELOPER
        assert thread.session.system_message == prompts.document_system_message("guide.md", "# Guide")
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_existing_key_is_a_noop(self, registry: SessionRegistry, factory: FakeSessionFactory) -> None:
        first = await registry.create_thread(DOC, "one", "guide.md")
        second = await registry.create_thread(DOC, "two", "other")

        assert first is second
        assert len(factory.created) == 1
        assert second is not None and second.title == "guide.md"

    @pytest.mark.asyncio
    async def test_concurrent_creation_builds_one_session(self, state: MemoryWorkspaceState) -> None:
        gate = asyncio.Event()
        factory = FakeSessionFactory(gate=gate)
        registry = SessionRegistry(factory, state)

        first = asyncio.create_task(registry.create_thread(DOC, "ctx", "guide.md"))
        second = asyncio.create_task(registry.create_thread(DOC, "ctx", "guide.md"))
        await asyncio.sleep(0)
        assert registry.is_pending(DOC)
        assert not registry.has_thread(DOC)

        gate.set()
        a, b = await asyncio.gather(first, second)

        assert a is b
        assert len(factory.created) == 1
        assert registry.has_thread(DOC)
        assert not registry.is_pending(DOC)

    @pytest.mark.asyncio
    async def test_persisted_history_loaded_before_thread_is_visible(self, factory: FakeSessionFactory) -> None:
        stored = [{"role": "human", "text": "hi"}, {"role": "assistant", "text": "hello"}]
        state = MemoryWorkspaceState({f"thread-history-{DOC}": stored})
        registry = SessionRegistry(factory, state)
        seen: list[list[dict]] = []

        def on_list(event: ThreadListChanged) -> None:
            thread = registry.get_thread(DOC)
            assert thread is not None
            seen.append(thread.session.serialize_history())

        registry.bus.subscribe(ThreadListChanged, on_list)
        await registry.create_thread(DOC, "", "guide.md")

        assert seen == [stored]

    @pytest.mark.asyncio
    async def test_legacy_history_shape_is_accepted(self, factory: FakeSessionFactory) -> None:
        state = MemoryWorkspaceState(
            {f"thread-history-{DOC}": [{"type": "human", "text": "q"}, {"type": "ai", "text": "a"}]}
        )
        registry = SessionRegistry(factory, state)

        thread = await registry.create_thread(DOC, "", "guide.md")

        assert thread is not None
        assert thread.session.serialize_history() == [
            {"role": "human", "text": "q"},
            {"role": "assistant", "text": "a"},
        ]

    @pytest.mark.asyncio
    async def test_falls_back_to_secondary_factory(self, state: MemoryWorkspaceState, caplog) -> None:
        fallback = FakeSessionFactory(name="direct", system_role_supported=False)
        registry = SessionRegistry(FailingSessionFactory(), state, fallback_factory=fallback)

        with caplog.at_level("WARNING", logger="docthreads.threads.registry"):
            thread = await registry.create_thread(DOC, "ctx", "guide.md")

        assert thread is not None
        assert thread.session.provider == "direct"
        assert "falling back" in caplog.text

    @pytest.mark.asyncio
    async def test_both_factories_failing_raises_and_leaves_no_trace(self, state: MemoryWorkspaceState) -> None:
        registry = SessionRegistry(FailingSessionFactory(), state, fallback_factory=FailingSessionFactory(name="b"))

        with pytest.raises(BackendUnavailableError):
            await registry.create_thread(DOC, "ctx", "guide.md")

        assert not registry.has_thread(DOC)
        assert not registry.is_pending(DOC)

    @pytest.mark.asyncio
    async def test_publishes_thread_list_general_first(self, registry: SessionRegistry, bus: EventBus) -> None:
        handler = RecordingHandler()
        bus.subscribe(ThreadListChanged, handler)

        await registry.create_thread(DOC, "", "guide.md")
        await registry.initialize_general_thread()

        latest = handler.events[-1]
        assert [summary.key for summary in latest.threads] == [GENERAL_THREAD_KEY, DOC]
        assert latest.threads[0].title == GENERAL_THREAD_TITLE

    @pytest.mark.asyncio
    async def test_general_thread_uses_general_prompt(self, registry: SessionRegistry) -> None:
        general = await registry.initialize_general_thread()
        again = await registry.initialize_general_thread()

        assert general is again
        assert general is not None
        assert general.session.system_message == prompts.GENERAL_PURPOSE


class TestRemoveThread:
    @pytest.mark.asyncio
    async def test_remove_drops_thread_and_history(
        self, registry: SessionRegistry, state: MemoryWorkspaceState
    ) -> None:
        await registry.create_thread(DOC, "", "guide.md")
        await registry.chat(DOC, "hello")
        assert await state.get(f"thread-history-{DOC}") is not None

        await registry.remove_thread(DOC)

        assert registry.get_thread(DOC) is None
        assert await state.get(f"thread-history-{DOC}") is None

    @pytest.mark.asyncio
    async def test_remove_unknown_key_is_noop(self, registry: SessionRegistry) -> None:
        await registry.remove_thread("file:///missing.md")

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_general_thread_is_never_removed(self, registry: SessionRegistry) -> None:
        await registry.initialize_general_thread()

        await registry.remove_thread(GENERAL_THREAD_KEY)

        assert registry.has_thread(GENERAL_THREAD_KEY)

    @pytest.mark.asyncio
    async def test_removal_during_creation_wins(self) -> None:
        gate = asyncio.Event()
        state = MemoryWorkspaceState({f"thread-history-{DOC}": [{"role": "human", "text": "old"}]})
        registry = SessionRegistry(FakeSessionFactory(gate=gate), state)

        creating = asyncio.create_task(registry.create_thread(DOC, "", "guide.md"))
        await asyncio.sleep(0)
        removing = asyncio.create_task(registry.remove_thread(DOC))
        await asyncio.sleep(0)
        gate.set()

        created, _ = await asyncio.gather(creating, removing)

        assert created is None
        assert not registry.has_thread(DOC)
        assert await state.get(f"thread-history-{DOC}") is None

    @pytest.mark.asyncio
    async def test_reopen_during_removal_starts_with_empty_history(self) -> None:
        state = SlowWorkspaceState({f"thread-history-{DOC}": [{"role": "human", "text": "old"}]})
        registry = SessionRegistry(FakeSessionFactory(), state)
        await registry.create_thread(DOC, "", "guide.md")
        await registry.chat(DOC, "x")

        _, reopened = await asyncio.gather(
            registry.remove_thread(DOC),
            registry.create_thread(DOC, "", "guide.md"),
        )

        assert reopened is not None
        assert registry.get_thread(DOC) is reopened
        assert reopened.session.get_history() == []
        assert await state.get(f"thread-history-{DOC}") is None

    @pytest.mark.asyncio
    async def test_remove_reopen_remove_leaves_nothing_behind(self) -> None:
        state = SlowWorkspaceState({f"thread-history-{DOC}": [{"role": "human", "text": "old"}]})
        registry = SessionRegistry(FakeSessionFactory(), state)
        await registry.create_thread(DOC, "", "guide.md")

        await asyncio.gather(
            registry.remove_thread(DOC),
            registry.create_thread(DOC, "", "guide.md"),
        )
        await registry.remove_thread(DOC)

        assert not registry.has_thread(DOC)
        assert await state.list_keys() == []


class TestChatAndPersistence:
    @pytest.mark.asyncio
    async def test_exchange_is_persisted_before_returning(
        self, registry: SessionRegistry, state: MemoryWorkspaceState
    ) -> None:
        await registry.create_thread(DOC, "", "guide.md")

        reply = await registry.chat(DOC, "What is this?")

        stored = await state.get(f"thread-history-{DOC}")
        assert reply == "echo: What is this?"
        assert stored[-2:] == [
            {"role": "human", "text": "What is this?"},
            {"role": "assistant", "text": reply},
        ]

    @pytest.mark.asyncio
    async def test_chat_unknown_key_returns_none(self, registry: SessionRegistry) -> None:
        assert await registry.chat("file:///nope.md", "hi") is None

    @pytest.mark.asyncio
    async def test_failed_chat_raises_and_keeps_history_clean(self, state: MemoryWorkspaceState) -> None:
        registry = SessionRegistry(FakeSessionFactory(FailingCompleter()), state)
        await registry.create_thread(DOC, "", "guide.md")

        with pytest.raises(BackendUnavailableError):
            await registry.chat(DOC, "hello")

        thread = registry.get_thread(DOC)
        assert thread is not None
        assert thread.session.get_history() == []
        assert await state.get(f"thread-history-{DOC}") is None

    @pytest.mark.asyncio
    async def test_overlapping_exchanges_persist_latest_snapshot(self, state: MemoryWorkspaceState) -> None:
        gate = asyncio.Event()
        registry = SessionRegistry(FakeSessionFactory(EchoCompleter(gate=gate)), state)
        await registry.create_thread(DOC, "", "guide.md")

        first = asyncio.create_task(registry.chat(DOC, "one"))
        second = asyncio.create_task(registry.chat(DOC, "two"))
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, second)

        thread = registry.get_thread(DOC)
        assert thread is not None
        stored = await state.get(f"thread-history-{DOC}")
        assert stored == thread.session.serialize_history()
        assert len(stored) == 4

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_exchange(self, caplog) -> None:
        registry = SessionRegistry(FakeSessionFactory(), BrokenWorkspaceState())
        await registry.create_thread(DOC, "", "guide.md")

        with caplog.at_level("WARNING"):
            reply = await registry.chat(DOC, "hi")

        assert reply == "echo: hi"
        assert "persistence error" in caplog.text

    @pytest.mark.asyncio
    async def test_removed_thread_is_not_resurrected_by_late_write(self, state: MemoryWorkspaceState) -> None:
        gate = asyncio.Event()
        registry = SessionRegistry(FakeSessionFactory(EchoCompleter(gate=gate)), state)
        await registry.create_thread(DOC, "", "guide.md")

        chatting = asyncio.create_task(registry.chat(DOC, "hi"))
        await asyncio.sleep(0)
        await registry.remove_thread(DOC)
        gate.set()
        await chatting

        assert await state.get(f"thread-history-{DOC}") is None

    @pytest.mark.asyncio
    async def test_save_history_writes_snapshot(self, registry: SessionRegistry, state: MemoryWorkspaceState) -> None:
        thread = await registry.create_thread(DOC, "", "guide.md")
        assert thread is not None
        thread.session.set_history([{"role": "human", "text": "draft"}])

        assert await registry.save_history(DOC) is True
        assert await registry.save_history("file:///other.md") is False
        assert await state.get(f"thread-history-{DOC}") == [{"role": "human", "text": "draft"}]


class TestResetAndModes:
    @pytest.mark.asyncio
    async def test_reset_clears_history_but_keeps_thread(
        self, registry: SessionRegistry, state: MemoryWorkspaceState
    ) -> None:
        await registry.create_thread(DOC, "", "guide.md")
        await registry.chat(DOC, "hi")
        thread = registry.get_thread(DOC)
        assert thread is not None
        system_message = thread.session.system_message

        assert await registry.reset_thread(DOC) is True

        assert registry.get_thread(DOC) is thread
        assert thread.session.get_history() == []
        assert thread.session.system_message == system_message
        assert await state.get(f"thread-history-{DOC}") == []

    @pytest.mark.asyncio
    async def test_reset_during_exchange_drops_the_late_reply(self, state: MemoryWorkspaceState) -> None:
        gate = asyncio.Event()
        registry = SessionRegistry(FakeSessionFactory(EchoCompleter(gate=gate)), state)
        thread = await registry.create_thread(DOC, "", "guide.md")
        assert thread is not None

        chatting = asyncio.create_task(registry.chat(DOC, "hi"))
        await asyncio.sleep(0)
        assert await registry.reset_thread(DOC) is True
        gate.set()

        assert await chatting == "echo: hi"
        assert thread.session.get_history() == []
        assert await state.get(f"thread-history-{DOC}") == []

    @pytest.mark.asyncio
    async def test_reset_unknown_key_is_noop(self, registry: SessionRegistry) -> None:
        assert await registry.reset_thread("file:///nope.md") is False

    @pytest.mark.asyncio
    async def test_mode_switch_preserves_history(self, registry: SessionRegistry) -> None:
        await registry.create_thread(DOC, "ctx", "guide.md")
        await registry.chat(DOC, "hi")
        thread = registry.get_thread(DOC)
        assert thread is not None
        before = thread.session.serialize_history()
        old_system = thread.session.system_message

        assert registry.set_thread_mode(DOC, "beginner", "ctx") is True

        assert thread.mode is ThreadMode.BEGINNER
        assert thread.session.serialize_history() == before
        assert thread.session.system_message != old_system
        assert "beginner" in thread.session.system_message.lower()

    @pytest.mark.asyncio
    async def test_general_thread_ignores_mode_switch(self, registry: SessionRegistry) -> None:
        await registry.initialize_general_thread()

        assert registry.set_thread_mode(GENERAL_THREAD_KEY, ThreadMode.BEGINNER) is False

    @pytest.mark.asyncio
    async def test_set_system_message_keeps_history(self, registry: SessionRegistry) -> None:
        await registry.create_thread(DOC, "", "guide.md")
        await registry.chat(DOC, "hi")

        assert registry.set_system_message(DOC, "Be terse.") is True
        assert registry.set_system_message("file:///nope.md", "x") is False

        thread = registry.get_thread(DOC)
        assert thread is not None
        assert thread.session.system_message == "Be terse."
        assert len(thread.session.get_history()) == 2

    @pytest.mark.asyncio
    async def test_reset_all_keeps_only_general_thread(
        self, registry: SessionRegistry, state: MemoryWorkspaceState
    ) -> None:
        await registry.initialize_general_thread()
        await registry.create_thread(DOC, "", "guide.md")
        await registry.chat(DOC, "hi")
        await registry.chat(GENERAL_THREAD_KEY, "hello")

        await registry.reset_all()

        assert [thread.key for thread in registry.iter_threads()] == [GENERAL_THREAD_KEY]
        assert await state.list_keys() == []

    @pytest.mark.asyncio
    async def test_replace_factory_moves_general_history(self, registry: SessionRegistry) -> None:
        await registry.initialize_general_thread()
        await registry.chat(GENERAL_THREAD_KEY, "hi")
        replacement = FakeSessionFactory(name="replacement")

        await registry.replace_factory(replacement)

        general = registry.get_thread(GENERAL_THREAD_KEY)
        assert general is not None
        assert general.session.provider == "replacement"
        assert [m.text for m in general.session.get_history()] == ["hi", "echo: hi"]

    @pytest.mark.asyncio
    async def test_replace_factory_failure_propagates(self, registry: SessionRegistry) -> None:
        await registry.initialize_general_thread()

        with pytest.raises(BackendUnavailableError):
            await registry.replace_factory(FailingSessionFactory())
