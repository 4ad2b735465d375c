"""Process manager for the OpenCode server.

Spawns `opencode serve`, waits for its HTTP API to answer and restarts it
when it crashes. At most one server is managed at a time.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from opencode_bridge.opencode_client import build_clients

from .errors import DirectoryError, ReadinessTimeout, SpawnError
from .instance import InstanceState, ServerInstance
from .port_allocator import PortAllocator
from .readiness import (
    DEFAULT_INTERVAL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REQUEST_TIMEOUT,
    wait_until_ready,
)
from .settings import ServerSettings, get_settings

logger = logging.getLogger("opencode_controller.process_manager")


# Child output forwarding
OUTPUT_READ_SIZE = 4096
OUTPUT_PREVIEW_CHARS = 200

# Seconds to wait for the process to be reaped after SIGKILL
KILL_WAIT_TIMEOUT = 5.0

# Injected through OPENCODE_CONFIG_CONTENT
OPENCODE_CONFIG = {
    "$schema": "https://opencode.ai/config.json",
    "lsp": False,
    "formatter": False,
    "permission": {
        "edit": "allow",
        "bash": "allow",
        "webfetch": "allow",
    },
}


@dataclass
class RestartPolicy:
    """Limits applied to crash-triggered restarts.

    The defaults restart forever with no delay. A restart that itself fails
    is retried after at least `retry_delay` seconds. A server that stayed up
    for `reset_after` seconds before crashing starts a fresh count.
    """

    max_restarts: Optional[int] = None
    backoff: float = 0.0
    backoff_factor: float = 2.0
    max_backoff: float = 60.0
    retry_delay: float = 1.0
    reset_after: float = 60.0

    def allows(self, attempt: int) -> bool:
        return self.max_restarts is None or attempt <= self.max_restarts

    def delay(self, attempt: int, retry: bool = False) -> float:
        delay = 0.0
        if self.backoff > 0:
            delay = min(self.backoff * self.backoff_factor ** (attempt - 1), self.max_backoff)
        if retry:
            delay = max(delay, self.retry_delay)
        return delay

    def resets(self, uptime: float) -> bool:
        """Whether a crash after `uptime` seconds starts a new restart count."""
        return uptime >= self.reset_after


class ProcessManager:
    """Manages the OpenCode server subprocess.

    Responsibilities:
    - Spawn `opencode serve` for a directory on a free port
    - Block callers until the HTTP API answers
    - Hand out the running instance and its API clients
    - Restart the server when it exits with a non-zero code
    """

    def __init__(
        self,
        settings: ServerSettings | None = None,
        port_allocator: PortAllocator | None = None,
        restart_policy: RestartPolicy | None = None,
        on_instance_change: Callable[[ServerInstance], None] | None = None,
        startup_attempts: int = DEFAULT_MAX_ATTEMPTS,
        startup_interval: float = DEFAULT_INTERVAL,
        probe_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        """Initialize the process manager.

        Args:
            settings: Server settings (read from the environment if None)
            port_allocator: Source of ephemeral ports
            restart_policy: Limits for crash restarts (unbounded if None)
            on_instance_change: Callback when the instance becomes ready or exits
            startup_attempts: Readiness probes before giving up
            startup_interval: Seconds between readiness probes
            probe_timeout: Timeout of a single readiness probe
        """
        self.settings = settings or get_settings()
        self._port_allocator = port_allocator or PortAllocator()
        self.restart_policy = restart_policy or RestartPolicy()
        self.on_instance_change = on_instance_change

        self.startup_attempts = startup_attempts
        self.startup_interval = startup_interval
        self.probe_timeout = probe_timeout

        # The one live server, set only after it answered a probe
        self._instance: ServerInstance | None = None
        self._consecutive_restarts = 0

        # Created lazily so the manager can be built outside a running loop
        self._start_lock: asyncio.Lock | None = None
        self._restart_queue: asyncio.Queue | None = None
        self._restart_task: asyncio.Task | None = None

        # Start sequences in flight, owned here so callers cannot abort them
        self._start_tasks: set[asyncio.Task] = set()

        # Exit watchers and output readers
        self._background: set[asyncio.Task] = set()

    def current(self) -> ServerInstance | None:
        """Get the running instance, if any."""
        return self._instance

    @property
    def consecutive_restarts(self) -> int:
        return self._consecutive_restarts

    async def start(self, directory: Union[str, Path]) -> ServerInstance:
        """Start the server for a directory, or return the one already running.

        A running server is reused whatever directory is requested. A caller
        that stops waiting does not abort the start; the server still becomes
        current once it answers.

        Raises:
            DirectoryError: If the directory is not readable and searchable
            PortError: If no port could be obtained
            SpawnError: If the process could not be created
            ReadinessTimeout: If the server never answered
        """
        return await self._start(Path(directory).expanduser(), explicit=True)

    async def stop(self) -> None:
        """Kill the running server. Does nothing if none is running."""
        instance = self._instance
        if instance is None:
            return

        self._instance = None
        instance.state = InstanceState.STOPPING
        self._kill(instance)

        try:
            await asyncio.wait_for(instance.process.wait(), timeout=KILL_WAIT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Server PID {instance.pid} did not exit after kill")

        await self._close_clients(instance)
        logger.info(f"Server stopped ({instance.directory})")

    async def shutdown(self) -> None:
        """Stop the server and all background tasks."""
        # Cancel pending restarts and starts first so none can finish after stop()
        pending = list(self._start_tasks)
        if self._restart_task:
            pending.append(self._restart_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.stop()

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._restart_task = None
        self._restart_queue = None
        logger.info("Process manager stopped")

    def _get_lock(self) -> asyncio.Lock:
        if self._start_lock is None:
            self._start_lock = asyncio.Lock()
        return self._start_lock

    async def _start(self, directory: Path, explicit: bool) -> ServerInstance:
        task = asyncio.create_task(self._start_locked(directory, explicit))
        self._start_tasks.add(task)
        task.add_done_callback(self._start_done)
        return await asyncio.shield(task)

    def _start_done(self, task: asyncio.Task) -> None:
        self._start_tasks.discard(task)
        # Mark the result retrieved when the caller is gone; failures are logged in _spawn
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Start sequence failed: {task.exception()}")

    async def _start_locked(self, directory: Path, explicit: bool) -> ServerInstance:
        async with self._get_lock():
            current = self._instance
            if current is not None and current.is_alive:
                logger.info(f"Reusing existing server on port {current.port} (requested {directory})")
                return current

            instance = await self._spawn(directory)
            self._instance = instance
            if explicit:
                self._consecutive_restarts = 0

        self._notify(instance)
        return instance

    @staticmethod
    def _check_directory(directory: Path) -> None:
        if not directory.is_dir() or not os.access(directory, os.R_OK | os.X_OK):
            raise DirectoryError(directory)

    def _resolve_port(self) -> int:
        if self.settings.port:
            port = self.settings.port
            if not PortAllocator.is_port_available(port):
                logger.warning(f"OPENCODE_PORT {port} is already in use")
            return port
        return self._port_allocator.allocate()

    async def _spawn(self, directory: Path) -> ServerInstance:
        """Run one start sequence: check, allocate, spawn, probe, build clients."""
        self._check_directory(directory)
        port = self._resolve_port()
        binary = self.settings.opencode_binary

        cmd = [binary, "serve", "--port", str(port)]
        env = os.environ.copy()
        env["OPENCODE_CONFIG_CONTENT"] = json.dumps(OPENCODE_CONFIG)

        logger.info(f"Starting opencode serve in {directory} on port {port}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(directory),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(binary, directory, str(e)) from e

        instance = ServerInstance(process=process, port=port, directory=directory)
        logger.debug(f"Spawned PID {process.pid}: {' '.join(cmd)}")

        self._watch(self._forward_output(process.stdout, "stdout"))
        self._watch(self._forward_output(process.stderr, "stderr"))
        self._watch(self._wait_for_exit(instance))

        try:
            await wait_until_ready(
                port,
                max_attempts=self.startup_attempts,
                interval=self.startup_interval,
                request_timeout=self.probe_timeout,
            )
        except ReadinessTimeout:
            logger.error(f"Server in {directory} did not become ready on port {port}")
            self._kill(instance)
            raise
        except asyncio.CancelledError:
            # Only shutdown() cancels a start sequence
            self._kill(instance)
            raise

        if not instance.is_alive:
            # Something else answered on the port
            logger.error(
                f"Server in {directory} exited with code {instance.exit_code} "
                f"but port {port} answered"
            )
            raise ReadinessTimeout(port, self.startup_attempts)

        instance.client, instance.client_v2 = build_clients(instance.url)
        instance.state = InstanceState.READY
        logger.info(f"Server ready in {directory} on port {port}")
        return instance

    async def _wait_for_exit(self, instance: ServerInstance) -> None:
        """Track one process until it exits, then clear or restart."""
        code = await instance.process.wait()
        previous = instance.state
        instance.state = InstanceState.EXITED
        instance.exit_code = code

        if previous == InstanceState.STARTING:
            logger.warning(f"Server in {instance.directory} exited with code {code} before becoming ready")
            return

        logger.info(f"Server exited in {instance.directory} with code {code}")
        if self._instance is instance:
            self._instance = None

        await self._close_clients(instance)
        self._notify(instance)

        if previous == InstanceState.READY and code != 0:
            if self.restart_policy.resets(instance.uptime_seconds):
                self._consecutive_restarts = 0
            self._request_restart(instance.directory)

    def _request_restart(self, directory: Path, retry: bool = False) -> None:
        self._consecutive_restarts += 1
        attempt = self._consecutive_restarts
        if not self.restart_policy.allows(attempt):
            logger.error(
                f"Not restarting server in {directory}: "
                f"{self.restart_policy.max_restarts} consecutive restarts already attempted"
            )
            return

        if self._restart_queue is None:
            self._restart_queue = asyncio.Queue()
        if self._restart_task is None or self._restart_task.done():
            self._restart_task = asyncio.create_task(self._restart_loop(self._restart_queue))

        logger.info(f"Restarting server in {directory} (attempt {attempt})")
        self._restart_queue.put_nowait((directory, attempt, retry))

    async def _restart_loop(self, queue: asyncio.Queue) -> None:
        """Process restart requests; failures are logged and retried, never raised."""
        while True:
            directory, attempt, retry = await queue.get()
            try:
                delay = self.restart_policy.delay(attempt, retry=retry)
                if delay > 0:
                    logger.info(f"Waiting {delay:.1f}s before restarting server in {directory}")
                    await asyncio.sleep(delay)
                await self._start(directory, explicit=False)
            except Exception as e:
                logger.error(f"Failed to restart server in {directory}: {e}")
                # Nothing is left to crash, so queue the next attempt here
                self._request_restart(directory, retry=True)
            finally:
                queue.task_done()

    async def _forward_output(self, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(OUTPUT_READ_SIZE)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug(f"opencode {name}: {text[:OUTPUT_PREVIEW_CHARS]}")

    def _watch(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _kill(instance: ServerInstance) -> None:
        if instance.process.returncode is not None:
            return
        try:
            instance.process.kill()
        except ProcessLookupError:
            pass

    @staticmethod
    async def _close_clients(instance: ServerInstance) -> None:
        # Both clients share one transport
        if instance.client:
            await instance.client.close()

    def _notify(self, instance: ServerInstance) -> None:
        if self.on_instance_change:
            self.on_instance_change(instance)
