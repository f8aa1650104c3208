"""Tests for the session orchestrator, driven by fake shells."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from termrelay.config.settings import Settings
from termrelay.domain.errors import (
    SessionLimitReached,
    SessionNotFound,
    ShellUnavailable,
    ShellWriteError,
    SpawnError,
)
from termrelay.domain.models import (
    ChunkKind,
    OutputChunk,
    Session,
    SessionConfig,
    SessionStatus,
    ShellKind,
)
from termrelay.sessions.orchestrator import SessionOrchestrator
from termrelay.sessions.registry import MAX_PENDING_COMMANDS
from termrelay.storage.memory import InMemorySessionStore
from termrelay.streaming.pipeline import Subscription

BASH = SessionConfig(shell_kind=ShellKind.BASH)


async def collect_until(
    subscription: Subscription, kind: ChunkKind, timeout: float = 2.0
) -> list[OutputChunk]:
    async def _collect() -> list[OutputChunk]:
        chunks = []
        async for chunk in subscription:
            chunks.append(chunk)
            if chunk.kind is kind:
                break
        return chunks

    return await asyncio.wait_for(_collect(), timeout)


class TestCreateSession:
    """Tests for session creation."""

    @pytest.mark.asyncio
    async def test_creates_and_registers(self, orchestrator: SessionOrchestrator, fake_spawner, tmp_path) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            assert session.status is SessionStatus.ACTIVE
            assert session.shell_kind is ShellKind.BASH
            assert session.working_directory == str(tmp_path)
            assert session.name.startswith("bash-")
            assert orchestrator.get_session(session.session_id) is session
            assert orchestrator.is_alive(session.session_id)
            assert len(fake_spawner.processes) == 1
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_session_is_persisted(self, orchestrator: SessionOrchestrator, store: InMemorySessionStore) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            assert store.get_session(session.session_id) is not None
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_geometry_and_environment_reach_process(
        self, orchestrator: SessionOrchestrator, fake_spawner
    ) -> None:
        try:
            await orchestrator.create_session(
                SessionConfig(shell_kind=ShellKind.ZSH, rows=50, cols=132, environment={"A": "1"})
            )
            process = fake_spawner.last
            assert (process.rows, process.cols) == (50, 132)
            assert process.environment == {"A": "1"}
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_unavailable_shell_falls_back(
        self, orchestrator: SessionOrchestrator, fake_spawner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "termrelay.sessions.orchestrator.default_shell_kind",
            lambda preferred=None: ShellKind.BASH,
        )
        fake_spawner.unavailable.add(ShellKind.FISH)
        try:
            session = await orchestrator.create_session(SessionConfig(shell_kind=ShellKind.FISH))
            assert session.shell_kind is ShellKind.BASH
            assert session.requested_shell_kind is ShellKind.FISH
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_unavailable_shell_without_fallback(self, fake_spawner, tmp_path) -> None:
        orchestrator = SessionOrchestrator(
            default_working_directory=str(tmp_path),
            fallback_to_default_shell=False,
            spawner=fake_spawner,
        )
        fake_spawner.unavailable.add(ShellKind.FISH)
        try:
            with pytest.raises(ShellUnavailable):
                await orchestrator.create_session(SessionConfig(shell_kind=ShellKind.FISH))
            assert len(orchestrator.registry) == 0
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_spawn_failure_registers_nothing(self, orchestrator: SessionOrchestrator, fake_spawner) -> None:
        fake_spawner.fail = True
        try:
            with pytest.raises(SpawnError):
                await orchestrator.create_session(BASH)
            assert orchestrator.list_active_sessions() == []
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_session_limit(self, fake_spawner, tmp_path) -> None:
        orchestrator = SessionOrchestrator(
            default_working_directory=str(tmp_path), max_sessions=2, spawner=fake_spawner
        )
        try:
            await asyncio.gather(
                orchestrator.create_session(BASH), orchestrator.create_session(BASH)
            )
            with pytest.raises(SessionLimitReached):
                await orchestrator.create_session(BASH)
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_many_concurrent_sessions(self, fake_spawner, tmp_path) -> None:
        orchestrator = SessionOrchestrator(
            default_working_directory=str(tmp_path), max_sessions=200, spawner=fake_spawner
        )
        try:
            sessions = await asyncio.gather(
                *(orchestrator.create_session(BASH) for _ in range(100))
            )
            assert len({s.session_id for s in sessions}) == 100
            await asyncio.gather(
                *(orchestrator.execute_command(s.session_id, "true") for s in sessions)
            )
            assert all(s.command_sequence == 1 for s in sessions)
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_many_sessions_stream_past_stalled_subscriber(self, fake_spawner, tmp_path) -> None:
        orchestrator = SessionOrchestrator(
            default_working_directory=str(tmp_path),
            max_sessions=200,
            flush_interval=0.001,
            subscriber_queue_size=2,
            spawner=fake_spawner,
        )
        try:
            sessions = await asyncio.gather(
                *(orchestrator.create_session(BASH) for _ in range(100))
            )
            stalled = orchestrator.subscribe(sessions[0].session_id)
            readers = [orchestrator.subscribe(s.session_id) for s in sessions]

            async def read_lines(n: int, subscription: Subscription) -> str:
                seen = ""
                async for chunk in subscription:
                    seen += chunk.data
                    if f"line-{n}-19\n" in seen:
                        return seen
                return seen

            tasks = [
                asyncio.create_task(read_lines(n, r)) for n, r in enumerate(readers)
            ]
            for i in range(20):
                for n, s in enumerate(sessions):
                    orchestrator.registry.get(s.session_id).process.emit(f"line-{n}-{i}\n")
                await asyncio.sleep(0.005)
            outputs = await asyncio.wait_for(asyncio.gather(*tasks), 5.0)

            for n, text in enumerate(outputs):
                assert text == "".join(f"line-{n}-{i}\n" for i in range(20))
            assert stalled.overflows > 0
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_create_after_shutdown(self, orchestrator: SessionOrchestrator) -> None:
        await orchestrator.shutdown()
        with pytest.raises(SpawnError):
            await orchestrator.create_session(BASH)


class TestInput:
    """Tests for commands, raw input and resize."""

    @pytest.mark.asyncio
    async def test_unanswered_commands_are_bounded(self, orchestrator: SessionOrchestrator) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            total = MAX_PENDING_COMMANDS + 10
            for i in range(total):
                await orchestrator.execute_command(session.session_id, f"sleep {i}")
            pending = orchestrator.registry.get(session.session_id).pending_commands
            assert len(pending) == MAX_PENDING_COMMANDS
            assert pending[0].sequence == 11
            assert pending[-1].sequence == total
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_command_written_with_newline(self, orchestrator: SessionOrchestrator, fake_spawner) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            record = await orchestrator.execute_command(session.session_id, "ls -la")
            assert bytes(fake_spawner.last.written) == b"ls -la\n"
            assert record.sequence == 1
            assert record.text == "ls -la"
            assert not record.completed
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_windows_shells_get_crlf(self, orchestrator: SessionOrchestrator, fake_spawner) -> None:
        try:
            session = await orchestrator.create_session(SessionConfig(shell_kind=ShellKind.CMD))
            await orchestrator.execute_command(session.session_id, "dir")
            assert bytes(fake_spawner.last.written) == b"dir\r\n"
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_command_sequences_gap_free_under_concurrency(
        self, orchestrator: SessionOrchestrator
    ) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            records = await asyncio.gather(
                *(orchestrator.execute_command(session.session_id, f"echo {i}") for i in range(50))
            )
            assert sorted(r.sequence for r in records) == list(range(1, 51))
            assert session.command_sequence == 50
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_command_record_is_redacted(
        self, orchestrator: SessionOrchestrator, fake_spawner, store: InMemorySessionStore
    ) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            record = await orchestrator.execute_command(session.session_id, "export PASSWORD=hunter2")
            assert record.text == "export PASSWORD=[REDACTED]"
            assert record.redacted
            assert b"hunter2" in bytes(fake_spawner.last.written)
            stored = await store.load_commands(session.session_id)
            assert stored[0].text == "export PASSWORD=[REDACTED]"
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_output_reaches_subscribers_in_order(self, orchestrator: SessionOrchestrator) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            subscription = orchestrator.subscribe(session.session_id)
            await orchestrator.execute_command(session.session_id, "echo one")
            chunks = []

            async def _read() -> None:
                async for chunk in subscription:
                    chunks.append(chunk)
                    if "echo one" in "".join(c.data for c in chunks):
                        return

            await asyncio.wait_for(_read(), 2.0)
            assert [c.sequence for c in chunks] == list(range(1, len(chunks) + 1))
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_prompt_marks_command_complete(
        self, orchestrator: SessionOrchestrator, fake_spawner
    ) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            await orchestrator.execute_command(session.session_id, "ls")
            fake_spawner.last.emit("file.txt\r\nuser@host:~$ ")
            completed: list[bool] = []

            async def check() -> None:
                records = await orchestrator.get_commands(session.session_id)
                completed[:] = [r.completed for r in records]

            for _ in range(200):
                await check()
                if completed == [True]:
                    break
                await asyncio.sleep(0.01)
            assert completed == [True]
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_send_input_writes_raw(self, orchestrator: SessionOrchestrator, fake_spawner) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            await orchestrator.send_input(session.session_id, "\x03")
            await orchestrator.send_input(session.session_id, b"")
            assert bytes(fake_spawner.last.written) == b"\x03"
            assert session.command_sequence == 0
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_resize(self, orchestrator: SessionOrchestrator, fake_spawner) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            await orchestrator.resize(session.session_id, 30, 100)
            assert (session.rows, session.cols) == (30, 100)
            assert (fake_spawner.last.rows, fake_spawner.last.cols) == (30, 100)
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_session(self, orchestrator: SessionOrchestrator) -> None:
        with pytest.raises(SessionNotFound):
            await orchestrator.execute_command("nope", "ls")
        with pytest.raises(SessionNotFound):
            orchestrator.get_session("nope")
        await orchestrator.shutdown()


class TestWriteFailures:
    """Tests for recovery when a write hits a dead process."""

    @pytest.mark.asyncio
    async def test_dead_process_is_respawned_and_write_retried(
        self, orchestrator: SessionOrchestrator, fake_spawner
    ) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            first = fake_spawner.last
            first.die_silently()
            record = await orchestrator.execute_command(session.session_id, "pwd")
            assert len(fake_spawner.processes) == 2
            assert bytes(fake_spawner.last.written) == b"pwd\n"
            assert record.sequence == 1
            assert session.restart_count == 1
            assert first.terminate_calls == 1
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_unrecoverable_write_terminates_session(
        self, orchestrator: SessionOrchestrator, fake_spawner
    ) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            fake_spawner.last.die_silently()
            fake_spawner.fail = True
            with pytest.raises(ShellWriteError):
                await orchestrator.execute_command(session.session_id, "pwd")
            assert session.status is SessionStatus.TERMINATED
            assert session.session_id not in orchestrator.registry
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_failed_write_does_not_consume_sequence(
        self, orchestrator: SessionOrchestrator, fake_spawner
    ) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            fake_spawner.last.fail_writes = True
            with pytest.raises(ShellWriteError):
                await orchestrator.execute_command(session.session_id, "pwd")
            assert session.command_sequence == 0
        finally:
            await orchestrator.shutdown()


class TestTermination:
    """Tests for the single teardown path."""

    @pytest.mark.asyncio
    async def test_terminate_emits_process_ended(self, orchestrator: SessionOrchestrator) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            subscription = orchestrator.subscribe(session.session_id)
            await orchestrator.terminate_session(session.session_id)
            chunks = await collect_until(subscription, ChunkKind.PROCESS_ENDED)
            assert chunks[-1].kind is ChunkKind.PROCESS_ENDED
            assert [c async for c in subscription] == []
            assert session.status is SessionStatus.TERMINATED
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_terminate_is_idempotent(
        self, orchestrator: SessionOrchestrator, fake_spawner, store: InMemorySessionStore
    ) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            await asyncio.gather(
                *(orchestrator.terminate_session(session.session_id) for _ in range(5))
            )
            await orchestrator.terminate_session(session.session_id)
            assert fake_spawner.last.terminate_calls == 1
            ended = [
                c for c in await store.load_output_since(session.session_id, 0)
                if c.kind is ChunkKind.PROCESS_ENDED
            ]
            assert len(ended) == 1
            assert store.get_session(session.session_id).status is SessionStatus.TERMINATED
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_terminated_session_rejects_commands(self, orchestrator: SessionOrchestrator) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            await orchestrator.terminate_session(session.session_id)
            with pytest.raises(SessionNotFound):
                await orchestrator.execute_command(session.session_id, "ls")
            assert orchestrator.list_active_sessions() == []
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_process_exit_without_handler_terminates(
        self, orchestrator: SessionOrchestrator, fake_spawner, eventually
    ) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            fake_spawner.last.crash()
            await eventually(lambda: session.session_id not in orchestrator.registry)
            assert session.status is SessionStatus.TERMINATED
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_process_exit_calls_handler(
        self, orchestrator: SessionOrchestrator, fake_spawner, eventually
    ) -> None:
        exited: list[str] = []

        async def handler(session_id: str) -> None:
            exited.append(session_id)

        orchestrator.set_exit_handler(handler)
        try:
            session = await orchestrator.create_session(BASH)
            fake_spawner.last.crash()
            await eventually(lambda: exited == [session.session_id])
            assert session.session_id in orchestrator.registry
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_failing_exit_handler_falls_back_to_terminate(
        self, orchestrator: SessionOrchestrator, fake_spawner, eventually
    ) -> None:
        handler = AsyncMock(side_effect=RuntimeError("handler bug"))
        orchestrator.set_exit_handler(handler)
        try:
            session = await orchestrator.create_session(BASH)
            fake_spawner.last.crash()
            await eventually(lambda: session.session_id not in orchestrator.registry)
            handler.assert_awaited_once_with(session.session_id)
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_pauses_sessions(
        self, orchestrator: SessionOrchestrator, store: InMemorySessionStore
    ) -> None:
        session = await orchestrator.create_session(BASH)
        await orchestrator.shutdown()
        assert store.get_session(session.session_id).status is SessionStatus.PAUSED
        assert len(orchestrator.registry) == 0

    @pytest.mark.asyncio
    async def test_idle_sessions_are_terminated(self, fake_spawner, tmp_path, eventually) -> None:
        orchestrator = SessionOrchestrator(
            default_working_directory=str(tmp_path), idle_timeout=0.05, spawner=fake_spawner
        )
        await orchestrator.start()
        try:
            session = await orchestrator.create_session(BASH)
            await eventually(lambda: session.session_id not in orchestrator.registry, timeout=5.0)
            assert session.status is SessionStatus.TERMINATED
        finally:
            await orchestrator.shutdown()


class TestRecovery:
    """Tests for respawning and restoring sessions."""

    @pytest.mark.asyncio
    async def test_recover_keeps_id_and_continues_sequence(
        self, orchestrator: SessionOrchestrator, fake_spawner
    ) -> None:
        orchestrator.set_exit_handler(lambda session_id: asyncio.sleep(0))
        try:
            session = await orchestrator.create_session(BASH)
            subscription = orchestrator.subscribe(session.session_id, after_sequence=0)
            fake_spawner.last.crash()
            await collect_until(subscription, ChunkKind.PROCESS_ENDED)
            recovered = await orchestrator.recover_session(session.session_id)
            assert recovered.session_id == session.session_id
            assert recovered.restart_count == 1
            chunks = await collect_until(subscription, ChunkKind.PROCESS_RESTARTED)
            assert chunks[-1].sequence == orchestrator.last_sequence(session.session_id)
            assert orchestrator.is_alive(session.session_id)
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_recover_live_process_is_noop(self, orchestrator: SessionOrchestrator, fake_spawner) -> None:
        try:
            session = await orchestrator.create_session(BASH)
            await orchestrator.recover_session(session.session_id)
            assert len(fake_spawner.processes) == 1
            assert session.restart_count == 0
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_restore_sessions_after_restart(
        self, store: InMemorySessionStore, fake_spawner, tmp_path
    ) -> None:
        first = SessionOrchestrator(
            store=store, default_working_directory=str(tmp_path), spawner=fake_spawner
        )
        session = await first.create_session(BASH)
        await first.execute_command(session.session_id, "echo hi")
        await first.shutdown()
        stored_last = (await store.load_output_since(session.session_id, 0))[-1].sequence

        second = SessionOrchestrator(
            store=store, default_working_directory=str(tmp_path), spawner=fake_spawner
        )
        try:
            restored = await second.restore_sessions()
            assert [s.session_id for s in restored] == [session.session_id]
            assert restored[0].status is SessionStatus.ACTIVE
            assert restored[0].command_sequence == 1
            assert second.last_sequence(session.session_id) == stored_last + 1
            record = await second.execute_command(session.session_id, "echo again")
            assert record.sequence == 2
        finally:
            await second.shutdown()

    @pytest.mark.asyncio
    async def test_restore_failure_terminates_session(
        self, store: InMemorySessionStore, fake_spawner, tmp_path
    ) -> None:
        await store.save_session(
            Session(session_id="old", shell_kind=ShellKind.BASH, working_directory=str(tmp_path),
                    status=SessionStatus.PAUSED)
        )
        fake_spawner.fail = True
        orchestrator = SessionOrchestrator(store=store, spawner=fake_spawner)
        try:
            assert await orchestrator.restore_sessions() == []
            assert store.get_session("old").status is SessionStatus.TERMINATED
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_terminated_sessions_not_restored(
        self, store: InMemorySessionStore, fake_spawner, tmp_path
    ) -> None:
        await store.save_session(
            Session(session_id="gone", shell_kind=ShellKind.BASH, working_directory=str(tmp_path),
                    status=SessionStatus.TERMINATED)
        )
        orchestrator = SessionOrchestrator(store=store, spawner=fake_spawner)
        try:
            assert await orchestrator.restore_sessions() == []
            assert fake_spawner.processes == []
        finally:
            await orchestrator.shutdown()


class TestFromSettings:
    def test_reads_settings(self, tmp_path) -> None:
        settings = Settings(
            shell={"default_kind": "zsh", "working_directory": str(tmp_path)},
            sessions={"max_sessions": 3, "idle_timeout": 60},
        )
        orchestrator = SessionOrchestrator.from_settings(settings, max_sessions=5)
        assert orchestrator._default_shell is ShellKind.ZSH
        assert orchestrator._max_sessions == 5
        assert orchestrator._idle_timeout == 60
