"""rclone daemon lifecycle manager.

Manages the long-lived ``rclone rcd`` child process that serves the remote
control API used for mounts and syncs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from enum import StrEnum
from typing import TYPE_CHECKING

import httpx

from rclonetray.daemon import endpoints
from rclonetray.exceptions import DaemonStartupError

if TYPE_CHECKING:
    from collections.abc import Callable

    from rclonetray.config import Settings

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_LINES = 20


class DaemonState(StrEnum):
    """Lifecycle state of the daemon process."""

    STOPPED = "stopped"
    STARTING = "starting"
    POLLING = "polling"
    READY = "ready"


class DaemonSupervisor:
    """Manages the lifecycle of an ``rclone rcd`` child process.

    Args:
        settings: Application settings supplying the binary, address,
            credentials, and startup/stop timings.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._process: asyncio.subprocess.Process | None = None
        self._state = DaemonState.STOPPED
        self._lock = asyncio.Lock()
        self._stopping = False
        self._exit_listeners: list[Callable[[], None]] = []
        self._output_tail: deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)
        self._output_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def base_url(self) -> str:
        """HTTP base URL of the daemon."""
        return self._settings.rc_base_url

    @property
    def is_running(self) -> bool:
        """Whether the subprocess is alive."""
        return self._process is not None and self._process.returncode is None

    @property
    def is_ready(self) -> bool:
        """Whether the daemon is alive and answered the readiness probe."""
        return self._state is DaemonState.READY and self.is_running

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def add_exit_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback fired when the daemon exits unexpectedly."""
        self._exit_listeners.append(callback)

    def build_args(self) -> list[str]:
        """Command line for the daemon. Deterministic for given settings."""
        s = self._settings
        args = [
            s.rclone_executable,
            "rcd",
            f"--rc-addr={s.rc_host}:{s.rc_port}",
            f"--rc-user={s.rc_user}",
            f"--rc-pass={s.rc_pass}",
            f"--config={s.rclone_config}",
            f"--rc-allow-origin={s.rc_allow_origin}",
            f"--cache-dir={s.cache_dir}",
            "--rc-enable-metrics",
        ]
        if s.debug:
            args.append("--verbose")
        return args

    async def _spawn(self) -> None:
        """Spawn the ``rclone rcd`` subprocess."""
        args = self.build_args()
        self._settings.cache_dir.mkdir(parents=True, exist_ok=True)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise DaemonStartupError(
                f"rclone binary not found: {args[0]}. "
                "Install rclone or set RCLONETRAY_RCLONE_BINARY."
            ) from None
        except OSError as exc:
            raise DaemonStartupError(f"Failed to spawn rclone daemon: {exc}") from None

        logger.info(
            "Spawned rclone daemon (pid=%s, addr=%s:%d)",
            self._process.pid,
            self._settings.rc_host,
            self._settings.rc_port,
        )

    async def _pump_output(self, process: asyncio.subprocess.Process) -> None:
        """Forward daemon output to the log, keeping the last lines for errors."""
        if process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            self._output_tail.append(text)
            logger.debug("rclone: %s", text)

    def _startup_output(self) -> str:
        return "\n".join(self._output_tail)[-500:]

    async def _probe(self, client: httpx.AsyncClient) -> bool:
        try:
            response = await client.post(
                f"{self.base_url}/{endpoints.READINESS_PROBE}",
                json={},
                auth=(self._settings.rc_user, self._settings.rc_pass),
            )
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def _wait_for_ready(self) -> None:
        """Wait until the daemon answers the readiness probe.

        Sleeps for the startup grace period, then probes every poll interval
        until the startup deadline.

        Raises:
            DaemonStartupError: If the daemon exits prematurely or does not
                answer within the deadline.
        """
        s = self._settings
        loop = asyncio.get_running_loop()
        deadline = loop.time() + s.daemon_startup_deadline
        await asyncio.sleep(s.daemon_startup_grace)

        async with httpx.AsyncClient(timeout=s.daemon_poll_interval * 2) as client:
            attempt = 0
            while True:
                attempt += 1
                if self._process is not None and self._process.returncode is not None:
                    raise DaemonStartupError(
                        f"rclone daemon exited during startup "
                        f"(exit code {self._process.returncode}): {self._startup_output()}"
                    )

                if await self._probe(client):
                    logger.info("rclone daemon ready on %s (attempt %d)", self.base_url, attempt)
                    return

                if loop.time() >= deadline:
                    break
                await asyncio.sleep(s.daemon_poll_interval)

        raise DaemonStartupError(
            f"rclone daemon did not become ready within {s.daemon_startup_deadline:.0f}s "
            f"on {self.base_url}"
        )

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        """Mark the daemon stopped and notify listeners if it exits on its own."""
        returncode = await process.wait()
        if self._stopping or process is not self._process:
            return
        logger.error(
            "rclone daemon exited unexpectedly (exit code %s): %s",
            returncode,
            self._startup_output(),
        )
        self._process = None
        self._state = DaemonState.STOPPED
        for callback in list(self._exit_listeners):
            try:
                callback()
            except Exception:
                logger.exception("Daemon exit listener %r failed", callback)

    async def start(self) -> None:
        """Start (or restart) the daemon and wait until it is ready.

        Raises:
            DaemonStartupError: If the binary is missing or the daemon fails
                to become ready.
        """
        async with self._lock:
            await self._start_locked()

    async def _start_locked(self) -> None:
        if self.is_running:
            await self.stop()

        self._output_tail.clear()
        self._state = DaemonState.STARTING
        try:
            await self._spawn()
        except DaemonStartupError:
            self._state = DaemonState.STOPPED
            raise

        if self._process is not None:
            self._output_task = asyncio.create_task(self._pump_output(self._process))

        self._state = DaemonState.POLLING
        try:
            await self._wait_for_ready()
        except BaseException:
            await self.stop()
            raise

        self._state = DaemonState.READY
        if self._process is not None:
            self._watch_task = asyncio.create_task(self._watch_exit(self._process))
        logger.info("rclone daemon started on %s", self.base_url)

    async def stop(self) -> None:
        """Stop the daemon process. Idempotent.

        Sends SIGTERM and waits up to ``daemon_stop_timeout`` seconds. If the
        process does not exit in time, sends SIGKILL.
        """
        self._stopping = True
        try:
            await self._terminate()
        finally:
            await self._cancel_background_tasks()
            self._process = None
            self._state = DaemonState.STOPPED
            self._stopping = False

    async def _terminate(self) -> None:
        if self._process is None or self._process.returncode is not None:
            return

        timeout = self._settings.daemon_stop_timeout
        logger.info("Stopping rclone daemon (pid=%s)", self._process.pid)
        self._process.terminate()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("rclone daemon did not exit after %.1fs, killing", timeout)
            self._process.kill()
            await self._process.wait()

    async def _cancel_background_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._watch_task, self._output_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._watch_task = None
        self._output_task = None

    async def ensure_ready(self) -> None:
        """Start the daemon unless it is already ready.

        Uses an asyncio lock so concurrent callers trigger a single start.
        """
        if self.is_ready:
            return

        async with self._lock:
            # Another coroutine may have started it while we waited.
            if self.is_ready:
                return

            logger.warning("rclone daemon not ready, starting")
            await self._start_locked()
