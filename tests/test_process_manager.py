"""Tests for the OpenCode process manager."""

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from opencode_controller.errors import DirectoryError, ReadinessTimeout, SpawnError
from opencode_controller.instance import InstanceState
from opencode_controller.port_allocator import PortAllocator
from opencode_controller.process_manager import (
    OPENCODE_CONFIG,
    OUTPUT_PREVIEW_CHARS,
    ProcessManager,
    RestartPolicy,
)
from opencode_controller.settings import ServerSettings


async def wait_until(predicate, timeout: float = 20.0, interval: float = 0.05):
    """Poll a predicate until it is truthy or fail after timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    pytest.fail("condition not met in time")


def read_records(record_dir: Path) -> list[dict]:
    return [json.loads(p.read_text()) for p in sorted(record_dir.glob("*.json"))]


def process_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


class TestRestartPolicy:
    """Tests for RestartPolicy."""

    def test_default_is_unbounded(self):
        policy = RestartPolicy()
        assert policy.allows(1)
        assert policy.allows(10_000)
        assert policy.delay(5) == 0.0

    def test_max_restarts(self):
        policy = RestartPolicy(max_restarts=2)
        assert policy.allows(2)
        assert not policy.allows(3)

    def test_exponential_backoff_capped(self):
        policy = RestartPolicy(backoff=1.0, backoff_factor=2.0, max_backoff=5.0)
        assert policy.delay(1) == 1.0
        assert policy.delay(2) == 2.0
        assert policy.delay(3) == 4.0
        assert policy.delay(4) == 5.0

    def test_failed_restart_waits_at_least_retry_delay(self):
        policy = RestartPolicy(retry_delay=0.5)
        assert policy.delay(3) == 0.0
        assert policy.delay(3, retry=True) == 0.5

        backoff = RestartPolicy(backoff=2.0, retry_delay=0.5)
        assert backoff.delay(2, retry=True) == 4.0

    def test_resets_after_stable_uptime(self):
        policy = RestartPolicy(reset_after=30.0)
        assert not policy.resets(29.9)
        assert policy.resets(30.0)


class TestStart:
    """Tests for ProcessManager.start."""

    @pytest.mark.asyncio
    async def test_start_returns_ready_instance(self, manager, project_dir):
        instance = await manager.start(project_dir)

        assert instance.directory == project_dir
        assert instance.state == InstanceState.READY
        assert instance.is_alive
        assert instance.url == f"http://127.0.0.1:{instance.port}"
        assert manager.current() is instance

        # Clients are bound to the confirmed base URL
        assert await instance.client.list_sessions() == []
        assert instance.client_v2.base_url == instance.url
        assert instance.client.client is instance.client_v2.client

    @pytest.mark.asyncio
    async def test_spawn_command_and_injected_config(self, manager, project_dir, record_dir):
        instance = await manager.start(project_dir)

        records = read_records(record_dir)
        assert len(records) == 1
        assert records[0]["argv"] == ["serve", "--port", str(instance.port)]
        assert Path(records[0]["cwd"]).resolve() == project_dir.resolve()
        assert records[0]["config"] == OPENCODE_CONFIG
        assert records[0]["config"]["permission"] == {
            "edit": "allow",
            "bash": "allow",
            "webfetch": "allow",
        }

    @pytest.mark.asyncio
    async def test_start_twice_reuses_instance(self, manager, project_dir, tmp_path, record_dir):
        other_dir = tmp_path / "other"
        other_dir.mkdir()

        first = await manager.start(project_dir)
        second = await manager.start(other_dir)

        assert second is first
        assert second.directory == project_dir
        assert len(read_records(record_dir)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_spawn_once(self, manager, project_dir, record_dir):
        first, second = await asyncio.gather(
            manager.start(project_dir),
            manager.start(project_dir),
        )

        assert first is second
        assert len(read_records(record_dir)) == 1

    @pytest.mark.asyncio
    async def test_env_port_override_skips_allocation(self, fake_opencode, project_dir):
        port = PortAllocator().allocate()
        allocator = MagicMock(spec=PortAllocator)
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode), port=port),
            port_allocator=allocator,
            startup_attempts=100,
            startup_interval=0.1,
        )
        try:
            instance = await pm.start(project_dir)
            assert instance.port == port
            allocator.allocate.assert_not_called()
        finally:
            await pm.shutdown()

    @pytest.mark.asyncio
    async def test_on_instance_change_called_when_ready(self, fake_opencode, project_dir):
        changes = []
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode)),
            on_instance_change=lambda inst: changes.append(inst.state),
            startup_attempts=100,
            startup_interval=0.1,
        )
        try:
            await pm.start(project_dir)
            assert changes == [InstanceState.READY]
        finally:
            await pm.shutdown()

    @pytest.mark.asyncio
    async def test_caller_giving_up_does_not_abort_start(self, manager, project_dir, record_dir):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(manager.start(project_dir), timeout=0.05)

        await wait_until(lambda: manager.current() is not None)
        instance = manager.current()

        assert instance.state == InstanceState.READY
        assert instance.is_alive
        assert len(read_records(record_dir)) == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_start_in_flight(self, manager, project_dir, record_dir, monkeypatch):
        # Never answers, so the start is still probing when shutdown runs
        monkeypatch.setenv("FAKE_OPENCODE_MODE", "error")
        caller = asyncio.create_task(manager.start(project_dir))
        await wait_until(lambda: list(record_dir.glob("*.json")))
        pid = int(next(record_dir.glob("*.json")).stem)

        await manager.shutdown()

        with pytest.raises(asyncio.CancelledError):
            await caller
        assert manager.current() is None
        await wait_until(lambda: process_gone(pid))

    @pytest.mark.asyncio
    async def test_child_output_logged_at_debug(self, manager, project_dir, monkeypatch, caplog):
        monkeypatch.setenv("FAKE_OPENCODE_STDERR", "x" * 500)

        with caplog.at_level(logging.DEBUG, logger="opencode_controller.process_manager"):
            instance = await manager.start(project_dir)
            await wait_until(lambda: "opencode stdout: " in caplog.text)
            await wait_until(lambda: "opencode stderr: x" in caplog.text)

        assert f"opencode stdout: opencode server listening on {instance.url}" in caplog.text
        assert "opencode stderr: " + "x" * OUTPUT_PREVIEW_CHARS in caplog.text
        assert "x" * (OUTPUT_PREVIEW_CHARS + 1) not in caplog.text

        output = [r for r in caplog.records if r.getMessage().startswith("opencode std")]
        assert output
        assert all(r.levelno == logging.DEBUG for r in output)


class TestStartFailures:
    """Tests for failures surfaced by ProcessManager.start."""

    @pytest.mark.asyncio
    async def test_missing_directory_fails_before_allocation(self, fake_opencode, tmp_path):
        allocator = MagicMock(spec=PortAllocator)
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode)),
            port_allocator=allocator,
        )

        with pytest.raises(DirectoryError) as exc_info:
            await pm.start(tmp_path / "missing")

        assert "missing" in str(exc_info.value)
        allocator.allocate.assert_not_called()
        assert pm.current() is None

    @pytest.mark.asyncio
    async def test_file_is_not_a_directory(self, manager, tmp_path):
        not_a_dir = tmp_path / "file.txt"
        not_a_dir.write_text("x")

        with pytest.raises(DirectoryError):
            await manager.start(not_a_dir)

    @pytest.mark.asyncio
    async def test_missing_binary_is_spawn_error(self, project_dir, tmp_path):
        pm = ProcessManager(settings=ServerSettings(path=str(tmp_path / "no-such-opencode")))

        with pytest.raises(SpawnError) as exc_info:
            await pm.start(project_dir)

        assert str(project_dir) in str(exc_info.value)
        assert pm.current() is None
        await pm.shutdown()

    @pytest.mark.asyncio
    async def test_immediate_exit_is_readiness_timeout(self, fake_opencode, project_dir, monkeypatch):
        monkeypatch.setenv("FAKE_OPENCODE_MODE", "exit")
        monkeypatch.setenv("FAKE_OPENCODE_EXIT_CODE", "1")
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode)),
            startup_attempts=5,
            startup_interval=0.2,
            probe_timeout=0.5,
        )
        try:
            with pytest.raises(ReadinessTimeout) as exc_info:
                await pm.start(project_dir)

            assert exc_info.value.attempts == 5
            assert exc_info.value.port > 0

            # An instance that never became ready is not restarted
            await asyncio.sleep(0.3)
            assert pm.current() is None
            assert pm.consecutive_restarts == 0
        finally:
            await pm.shutdown()

    @pytest.mark.asyncio
    async def test_exit_while_port_answers_is_readiness_timeout(
        self, fake_opencode, project_dir, monkeypatch
    ):
        async def answers_after_exit(port, **kwargs):
            # Another listener answers once the child is already gone
            await asyncio.sleep(2.0)
            return True

        monkeypatch.setattr(
            "opencode_controller.process_manager.wait_until_ready", answers_after_exit
        )
        monkeypatch.setenv("FAKE_OPENCODE_MODE", "exit")
        pm = ProcessManager(settings=ServerSettings(path=str(fake_opencode)), startup_attempts=7)
        try:
            with pytest.raises(ReadinessTimeout) as exc_info:
                await pm.start(project_dir)

            assert exc_info.value.attempts == 7
            assert pm.current() is None
        finally:
            await pm.shutdown()

    @pytest.mark.asyncio
    async def test_server_errors_never_count_as_ready(self, fake_opencode, project_dir, monkeypatch):
        monkeypatch.setenv("FAKE_OPENCODE_MODE", "error")
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode)),
            startup_attempts=10,
            startup_interval=0.2,
        )
        try:
            with pytest.raises(ReadinessTimeout):
                await pm.start(project_dir)
            assert pm.current() is None
        finally:
            await pm.shutdown()


class TestExitHandling:
    """Tests for stop, crash restarts and clean exits."""

    @pytest.mark.asyncio
    async def test_stop_kills_and_clears(self, manager, project_dir):
        instance = await manager.start(project_dir)

        await manager.stop()

        assert manager.current() is None
        assert instance.process.returncode is not None
        assert instance.client.client.is_closed

        # A stopped server is never restarted
        await asyncio.sleep(0.5)
        assert manager.current() is None

    @pytest.mark.asyncio
    async def test_stop_without_instance_is_noop(self, manager):
        await manager.stop()
        assert manager.current() is None

    @pytest.mark.asyncio
    async def test_crash_triggers_restart_for_same_directory(self, manager, project_dir):
        old = await manager.start(project_dir)

        old.process.send_signal(signal.SIGKILL)

        await wait_until(lambda: manager.current() is not None and manager.current() is not old)
        new = manager.current()

        assert new.directory == project_dir
        assert new.state == InstanceState.READY
        assert old.state == InstanceState.EXITED
        assert old.exit_code != 0
        assert manager.consecutive_restarts == 1

    @pytest.mark.asyncio
    async def test_nonzero_exit_restarts(self, manager, project_dir):
        old = await manager.start(project_dir)

        async with httpx.AsyncClient() as client:
            await client.post(f"{old.url}/_exit", params={"code": 3})

        await wait_until(lambda: manager.current() is not None and manager.current() is not old)
        assert old.exit_code == 3

    @pytest.mark.asyncio
    async def test_zero_exit_does_not_restart(self, manager, project_dir):
        old = await manager.start(project_dir)

        async with httpx.AsyncClient() as client:
            await client.post(f"{old.url}/_exit", params={"code": 0})

        await wait_until(lambda: old.state == InstanceState.EXITED)
        assert manager.current() is None

        await asyncio.sleep(0.5)
        assert manager.current() is None
        assert manager.consecutive_restarts == 0

    @pytest.mark.asyncio
    async def test_explicit_start_after_stop(self, manager, project_dir):
        first = await manager.start(project_dir)
        await manager.stop()

        second = await manager.start(project_dir)

        assert second is not first
        assert manager.current() is second

    @pytest.mark.asyncio
    async def test_restart_policy_limits_restarts(self, fake_opencode, project_dir):
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode)),
            restart_policy=RestartPolicy(max_restarts=0),
            startup_attempts=100,
            startup_interval=0.1,
        )
        try:
            instance = await pm.start(project_dir)
            instance.process.send_signal(signal.SIGKILL)

            await wait_until(lambda: instance.state == InstanceState.EXITED)
            await asyncio.sleep(0.5)
            assert pm.current() is None
        finally:
            await pm.shutdown()

    @pytest.mark.asyncio
    async def test_failed_restart_is_logged_not_raised(self, manager, project_dir, caplog):
        old = await manager.start(project_dir)
        # Make the restart fail on the directory check
        project_dir.rename(project_dir.with_name("moved"))

        with caplog.at_level("ERROR", logger="opencode_controller.process_manager"):
            old.process.send_signal(signal.SIGKILL)
            await wait_until(lambda: "Failed to restart server" in caplog.text)

        assert manager.current() is None

    @pytest.mark.asyncio
    async def test_failed_restart_is_retried_until_success(
        self, fake_opencode, project_dir, record_dir, monkeypatch, caplog
    ):
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode)),
            restart_policy=RestartPolicy(retry_delay=0.1),
            startup_attempts=30,
            startup_interval=0.1,
            probe_timeout=0.5,
        )
        try:
            old = await pm.start(project_dir)

            # Restarted processes exit before answering
            monkeypatch.setenv("FAKE_OPENCODE_MODE", "exit")
            with caplog.at_level(logging.ERROR, logger="opencode_controller.process_manager"):
                old.process.send_signal(signal.SIGKILL)
                await wait_until(lambda: "Failed to restart server" in caplog.text)

            monkeypatch.setenv("FAKE_OPENCODE_MODE", "serve")
            await wait_until(lambda: pm.current() is not None)

            new = pm.current()
            assert new is not old
            assert new.state == InstanceState.READY
            assert new.directory == project_dir
            assert pm.consecutive_restarts >= 2
            assert len(read_records(record_dir)) >= 3
        finally:
            await pm.shutdown()

    @pytest.mark.asyncio
    async def test_stable_server_resets_restart_count(self, fake_opencode, project_dir):
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode)),
            restart_policy=RestartPolicy(max_restarts=1, reset_after=0.0),
            startup_attempts=100,
            startup_interval=0.1,
        )
        try:
            first = await pm.start(project_dir)
            first.process.send_signal(signal.SIGKILL)
            await wait_until(lambda: pm.current() is not None and pm.current() is not first)

            second = pm.current()
            second.process.send_signal(signal.SIGKILL)
            await wait_until(lambda: pm.current() is not None and pm.current() is not second)

            assert pm.current().state == InstanceState.READY
            assert pm.consecutive_restarts == 1
        finally:
            await pm.shutdown()

    @pytest.mark.asyncio
    async def test_quick_crashes_count_against_limit(self, fake_opencode, project_dir):
        pm = ProcessManager(
            settings=ServerSettings(path=str(fake_opencode)),
            restart_policy=RestartPolicy(max_restarts=1, reset_after=3600.0),
            startup_attempts=100,
            startup_interval=0.1,
        )
        try:
            first = await pm.start(project_dir)
            first.process.send_signal(signal.SIGKILL)
            await wait_until(lambda: pm.current() is not None and pm.current() is not first)

            second = pm.current()
            second.process.send_signal(signal.SIGKILL)
            await wait_until(lambda: second.state == InstanceState.EXITED)
            await asyncio.sleep(0.5)

            assert pm.current() is None
            assert pm.consecutive_restarts == 2
        finally:
            await pm.shutdown()
