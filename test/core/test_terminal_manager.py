"""Tests for the terminal manager, using /bin/sh as the shell."""

import asyncio
import re
from unittest.mock import patch

import psutil
import pytest

from bump_bridge.core.events import EventBus
from bump_bridge.core.terminal_manager import TerminalManager
from bump_bridge.errors import SpawnFailure, UnknownTarget
from bump_bridge.models.terminal import TerminalStatus
from bump_bridge.utils.process import is_alive


async def wait_for_event(queue, predicate, timeout=5.0):
    """Consume events until one matches, returning everything consumed."""
    seen = []
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise AssertionError(f"no matching event, saw {[e.type for e in seen]}")
        event = await asyncio.wait_for(queue.get(), remaining)
        seen.append(event)
        if predicate(event):
            return seen


def output_of(events, terminal_id):
    return "".join(e.data for e in events if e.type == "terminal.data" and e.terminal_id == terminal_id)


async def wait_for_output(queue, terminal_id, needle, timeout=5.0):
    """Consume data events until the accumulated output contains needle."""
    output = ""
    deadline = asyncio.get_running_loop().time() + timeout
    while needle not in output:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise AssertionError(f"{needle!r} not in output {output!r}")
        event = await asyncio.wait_for(queue.get(), remaining)
        output += output_of([event], terminal_id)
    return output


async def wait_for_pattern(queue, terminal_id, pattern, timeout=5.0):
    """Consume data events until the accumulated output matches pattern."""
    output = ""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        match = re.search(pattern, output)
        if match:
            return match
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise AssertionError(f"{pattern!r} not in output {output!r}")
        event = await asyncio.wait_for(queue.get(), remaining)
        output += output_of([event], terminal_id)


def process_running(pid):
    try:
        return is_alive(psutil.Process(pid))
    except psutil.NoSuchProcess:
        return False


@pytest.fixture
def manager(tmp_path):
    return TerminalManager(event_bus=EventBus(), log_dir=tmp_path / "terminals", shell="/bin/sh")


class TestTerminalManager:
    @pytest.mark.asyncio
    async def test_echo_reaches_events_and_snapshot(self, manager, tmp_path):
        queue = manager.event_bus.subscribe()
        try:
            terminal_id = await manager.open(str(tmp_path))
            manager.write(terminal_id, "echo hi-$((1+1))\n")

            output = await wait_for_output(queue, terminal_id, "hi-2")

            assert "hi-2" in output
            assert "hi-2" in manager.snapshot(terminal_id)
            info = manager.get(terminal_id).info()
            assert info.alive is True
            assert info.status == TerminalStatus.RUNNING.value
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_output_is_logged(self, manager, tmp_path):
        manager.keep_logs = True
        queue = manager.event_bus.subscribe()
        terminal_id = await manager.open(str(tmp_path))
        log_path = manager.get(terminal_id).log.path

        manager.write(terminal_id, "echo logged-$((2*3))\n")
        await wait_for_output(queue, terminal_id, "logged-6")
        await manager.close(terminal_id)

        assert log_path.exists()
        assert "logged-6" in log_path.read_text(errors="replace")

    @pytest.mark.asyncio
    async def test_log_removed_on_close_by_default(self, manager, tmp_path):
        terminal_id = await manager.open(str(tmp_path))
        log_path = manager.get(terminal_id).log.path
        assert log_path.exists()

        await manager.close(terminal_id)

        assert not log_path.exists()

    @pytest.mark.asyncio
    async def test_ids_are_never_reused(self, manager, tmp_path):
        first = await manager.open(str(tmp_path))
        await manager.close(first)
        second = await manager.open(str(tmp_path))
        try:
            assert first == "term-1"
            assert second == "term-2"
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_write_resize_close_after_close_are_noops(self, manager, tmp_path):
        terminal_id = await manager.open(str(tmp_path))
        await manager.close(terminal_id)

        manager.write(terminal_id, "echo nope\n")
        manager.resize(terminal_id, 100, 40)
        await manager.close(terminal_id)

        assert manager.list_terminals() == []

    @pytest.mark.asyncio
    async def test_snapshot_and_cwd_of_unknown_terminal(self, manager):
        with pytest.raises(UnknownTarget):
            manager.snapshot("term-99")
        with pytest.raises(UnknownTarget):
            await manager.cwd("term-99")

    @pytest.mark.asyncio
    async def test_resize_is_clamped(self, manager, tmp_path):
        terminal_id = await manager.open(str(tmp_path))
        try:
            manager.resize(terminal_id, 0, -5)

            session = manager.get(terminal_id)
            assert (session.cols, session.rows) == (1, 1)
            assert (session.process.cols, session.process.rows) == (1, 1)
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_cwd_reports_shell_directory(self, manager, tmp_path):
        terminal_id = await manager.open(str(tmp_path))
        try:
            cwd = await manager.cwd(terminal_id)
            assert cwd == str(tmp_path.resolve())
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_cwd_falls_back_to_last_known(self, manager, tmp_path):
        terminal_id = await manager.open(str(tmp_path))
        try:
            with patch("bump_bridge.core.terminal_manager.get_process_cwd", return_value=None):
                assert await manager.cwd(terminal_id) == str(tmp_path)
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_branch_inside_repository(self, manager, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/feature/pty\n")
        terminal_id = await manager.open(str(tmp_path))
        try:
            assert await manager.branch(terminal_id) == "feature/pty"
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_sole_session_respawns_on_exit(self, manager, tmp_path):
        queue = manager.event_bus.subscribe()
        terminal_id = await manager.open(str(tmp_path))
        first_pid = manager.get(terminal_id).process.pid
        try:
            manager.write(terminal_id, "exit 7\n")
            events = await wait_for_event(queue, lambda e: e.type == "terminal.exit")

            exit_event = events[-1]
            assert exit_event.terminal_id == terminal_id
            assert exit_event.code == 7
            assert exit_event.respawned is True

            for _ in range(100):
                session = manager.terminals.get(terminal_id)
                if session and session.alive and session.process.pid != first_pid:
                    break
                await asyncio.sleep(0.05)
            assert manager.get(terminal_id).alive
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_exit_reported_while_background_job_holds_pty(self, manager, tmp_path):
        queue = manager.event_bus.subscribe()
        terminal_id = await manager.open(str(tmp_path))
        try:
            manager.write(terminal_id, "sleep 20 & echo bg-pid=$!\n")
            match = await wait_for_pattern(queue, terminal_id, r"bg-pid=(\d+)\r?\n")
            background_pid = int(match.group(1))
            assert process_running(background_pid)

            manager.write(terminal_id, "exit 0\n")
            events = await wait_for_event(queue, lambda e: e.type == "terminal.exit")

            assert events[-1].terminal_id == terminal_id
            assert events[-1].code == 0
            assert events[-1].respawned is True
            for _ in range(100):
                if not process_running(background_pid):
                    break
                await asyncio.sleep(0.05)
            assert not process_running(background_pid)
            for _ in range(100):
                session = manager.terminals.get(terminal_id)
                if session and session.alive:
                    break
                await asyncio.sleep(0.05)
            assert manager.get(terminal_id).alive
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_background_job_exit_with_other_sessions_removes_terminal(self, manager, tmp_path):
        queue = manager.event_bus.subscribe()
        first = await manager.open(str(tmp_path))
        second = await manager.open(str(tmp_path))
        try:
            manager.write(first, "sleep 20 &\nexit\n")
            events = await wait_for_event(queue, lambda e: e.type == "terminal.exit")

            assert events[-1].terminal_id == first
            assert events[-1].respawned is False
            for _ in range(100):
                if first not in manager.terminals:
                    break
                await asyncio.sleep(0.05)
            assert [(t.id, t.alive) for t in manager.list_terminals()] == [(second, True)]
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_exit_with_other_sessions_removes_terminal(self, manager, tmp_path):
        queue = manager.event_bus.subscribe()
        first = await manager.open(str(tmp_path))
        second = await manager.open(str(tmp_path))
        try:
            manager.write(first, "exit 0\n")
            events = await wait_for_event(queue, lambda e: e.type == "terminal.exit")

            assert events[-1].terminal_id == first
            assert events[-1].respawned is False
            for _ in range(100):
                if first not in manager.terminals:
                    break
                await asyncio.sleep(0.05)
            assert [t.id for t in manager.list_terminals()] == [second]
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_writes_before_spawn_are_queued(self, manager, tmp_path):
        queue = manager.event_bus.subscribe()
        real_spawn = manager._spawn

        async def delayed_spawn(session):
            manager.write(session.id, "echo queued-$((20+22))\n")
            await real_spawn(session)

        with patch.object(manager, "_spawn", side_effect=delayed_spawn):
            terminal_id = await manager.open(str(tmp_path))
        try:
            output = await wait_for_output(queue, terminal_id, "queued-42")
            assert "queued-42" in output
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_open_with_missing_directory_fails(self, manager, tmp_path):
        with pytest.raises(SpawnFailure):
            await manager.open(str(tmp_path / "does-not-exist"))

        assert manager.list_terminals() == []

    @pytest.mark.asyncio
    async def test_title_event_from_osc_sequence(self, manager, tmp_path):
        queue = manager.event_bus.subscribe()
        terminal_id = await manager.open(str(tmp_path))
        try:
            manager.write(terminal_id, "printf '\\033]0;build-window\\007'\n")
            await wait_for_event(queue, lambda e: e.type == "terminal.title" and e.title == "build-window")
            assert manager.get(terminal_id).info().title == "build-window"
        finally:
            await manager.close_all()

    @pytest.mark.asyncio
    async def test_close_all_disables_respawn(self, manager, tmp_path):
        await manager.open(str(tmp_path))

        await manager.close_all()

        assert manager.list_terminals() == []
        assert manager._shutting_down is True
