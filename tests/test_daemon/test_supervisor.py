"""Tests for the rclone daemon lifecycle manager."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from rclonetray.config import Settings
from rclonetray.daemon.supervisor import DaemonState, DaemonSupervisor
from rclonetray.exceptions import DaemonStartupError

if TYPE_CHECKING:
    from pathlib import Path


def _settings(tmp_path: Path, **overrides: object) -> Settings:
    values: dict[str, object] = {
        "rclone_config": tmp_path / "rclone.conf",
        "data_dir": tmp_path / "data",
        "daemon_startup_grace": 0,
        "daemon_poll_interval": 0.01,
        "daemon_startup_deadline": 0.05,
        "daemon_stop_timeout": 0.5,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[arg-type]


def _mock_process(returncode: int | None = None) -> MagicMock:
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = returncode
    proc.stderr = None
    proc.wait = AsyncMock(return_value=0)
    return proc


def _mock_http_client(mock_client_cls: MagicMock) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client


class TestDaemonSupervisorInit:
    def test_initial_state(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        assert supervisor.state is DaemonState.STOPPED
        assert supervisor.is_running is False
        assert supervisor.is_ready is False
        assert supervisor.pid is None

    def test_base_url(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path, rc_port=6000))
        assert supervisor.base_url == "http://127.0.0.1:6000"


class TestBuildArgs:
    def test_args_are_deterministic(self, tmp_path: Path) -> None:
        settings = _settings(tmp_path)
        supervisor = DaemonSupervisor(settings)
        assert supervisor.build_args() == [
            "rclone",
            "rcd",
            "--rc-addr=127.0.0.1:5572",
            "--rc-user=user",
            "--rc-pass=pass",
            f"--config={tmp_path / 'rclone.conf'}",
            "--rc-allow-origin=*",
            f"--cache-dir={tmp_path / 'data' / 'cache'}",
            "--rc-enable-metrics",
        ]
        assert supervisor.build_args() == supervisor.build_args()

    def test_debug_adds_verbose(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path, debug=True))
        assert supervisor.build_args()[-1] == "--verbose"

    def test_bundled_binary_preferred_when_present(self, tmp_path: Path) -> None:
        bundled = tmp_path / "bin" / "rclone"
        bundled.parent.mkdir()
        bundled.write_text("", encoding="utf-8")
        supervisor = DaemonSupervisor(
            _settings(tmp_path, rclone_use_bundled=True, rclone_bundled_path=bundled)
        )
        assert supervisor.build_args()[0] == str(bundled)

    def test_missing_bundled_binary_falls_back_to_path(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(
            _settings(
                tmp_path, rclone_use_bundled=True, rclone_bundled_path=tmp_path / "missing"
            )
        )
        assert supervisor.build_args()[0] == "rclone"


class TestSpawn:
    async def test_spawn_creates_subprocess(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as mock_exec:
            mock_proc = _mock_process()
            mock_exec.return_value = mock_proc
            await supervisor._spawn()

            mock_exec.assert_called_once_with(
                *supervisor.build_args(),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            assert supervisor._process is mock_proc
        assert (tmp_path / "data" / "cache").is_dir()

    async def test_missing_binary_raises_startup_error(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        with (
            patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("rclone")),
            pytest.raises(DaemonStartupError, match="rclone binary not found"),
        ):
            await supervisor._spawn()


class TestWaitForReady:
    async def test_succeeds_when_probe_answers(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        supervisor._process = _mock_process()
        response = MagicMock()
        response.status_code = 200

        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_http_client(mock_client_cls)
            mock_client.post.return_value = response
            await supervisor._wait_for_ready()

        url = mock_client.post.call_args.args[0]
        assert url == "http://127.0.0.1:5572/config/listremotes"
        assert mock_client.post.call_args.kwargs["auth"] == ("user", "pass")

    async def test_retries_on_connection_error(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path, daemon_startup_deadline=60))
        supervisor._process = _mock_process()
        response = MagicMock()
        response.status_code = 200

        with (
            patch("httpx.AsyncClient") as mock_client_cls,
            patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            mock_client = _mock_http_client(mock_client_cls)
            mock_client.post.side_effect = [
                httpx.ConnectError("refused"),
                httpx.ConnectError("refused"),
                response,
            ]
            await supervisor._wait_for_ready()

        # Grace period plus one pause after each failed probe.
        assert mock_sleep.call_count == 3

    async def test_auth_failure_is_not_ready(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        supervisor._process = _mock_process()
        response = MagicMock()
        response.status_code = 401

        with (
            patch("httpx.AsyncClient") as mock_client_cls,
            patch("asyncio.sleep", new_callable=AsyncMock),
        ):
            mock_client = _mock_http_client(mock_client_cls)
            mock_client.post.return_value = response
            with pytest.raises(DaemonStartupError, match="did not become ready"):
                await supervisor._wait_for_ready()

    async def test_raises_when_process_exits_during_startup(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        supervisor._process = _mock_process(returncode=1)
        supervisor._output_tail.append("Failed to start remote control: address in use")

        with (
            patch("httpx.AsyncClient") as mock_client_cls,
            patch("asyncio.sleep", new_callable=AsyncMock),
        ):
            _mock_http_client(mock_client_cls)
            with pytest.raises(DaemonStartupError, match="exited during startup") as exc_info:
                await supervisor._wait_for_ready()
        assert "address in use" in str(exc_info.value)

    async def test_raises_after_deadline(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        supervisor._process = _mock_process()

        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_http_client(mock_client_cls)
            mock_client.post.side_effect = httpx.ConnectError("refused")
            with pytest.raises(DaemonStartupError, match="did not become ready"):
                await supervisor._wait_for_ready()


class TestStartStop:
    async def test_start_reaches_ready(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        proc = _mock_process()
        exited = asyncio.Event()

        async def wait() -> int:
            await exited.wait()
            return 0

        proc.wait = AsyncMock(side_effect=wait)

        async def spawn() -> None:
            supervisor._process = proc

        with (
            patch.object(supervisor, "_spawn", side_effect=spawn),
            patch.object(supervisor, "_wait_for_ready", new_callable=AsyncMock),
        ):
            await supervisor.start()

        assert supervisor.state is DaemonState.READY
        assert supervisor.is_ready is True
        assert supervisor.pid == 4242

        def terminate() -> None:
            proc.returncode = 0
            exited.set()

        proc.terminate.side_effect = terminate
        await supervisor.stop()
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()
        assert supervisor.state is DaemonState.STOPPED
        assert supervisor.is_running is False

    async def test_startup_failure_stops_process(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        proc = _mock_process()

        async def spawn() -> None:
            supervisor._process = proc

        with (
            patch.object(supervisor, "_spawn", side_effect=spawn),
            patch.object(
                supervisor,
                "_wait_for_ready",
                new_callable=AsyncMock,
                side_effect=DaemonStartupError("did not become ready"),
            ),
            pytest.raises(DaemonStartupError),
        ):
            await supervisor.start()

        proc.terminate.assert_called_once()
        assert supervisor.state is DaemonState.STOPPED
        assert supervisor._process is None

    async def test_spawn_failure_leaves_stopped(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        with (
            patch.object(
                supervisor, "_spawn", side_effect=DaemonStartupError("rclone binary not found")
            ),
            pytest.raises(DaemonStartupError),
        ):
            await supervisor.start()
        assert supervisor.state is DaemonState.STOPPED

    async def test_stop_kills_after_timeout(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path, daemon_stop_timeout=0.01))
        proc = _mock_process()
        hang = asyncio.Event()
        calls = 0

        async def wait() -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                await hang.wait()
            return -9

        proc.wait = AsyncMock(side_effect=wait)
        supervisor._process = proc
        supervisor._state = DaemonState.READY

        await supervisor.stop()

        proc.terminate.assert_called_once()
        proc.kill.assert_called_once()
        assert supervisor.state is DaemonState.STOPPED

    async def test_stop_when_not_running_is_noop(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        await supervisor.stop()
        await supervisor.stop()
        assert supervisor.state is DaemonState.STOPPED


class TestEnsureReady:
    async def test_concurrent_callers_start_once(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        proc = _mock_process()

        async def start_locked() -> None:
            await asyncio.sleep(0)
            supervisor._process = proc
            supervisor._state = DaemonState.READY

        with patch.object(supervisor, "_start_locked", side_effect=start_locked) as mock_start:
            await asyncio.gather(*(supervisor.ensure_ready() for _ in range(5)))

        assert mock_start.call_count == 1
        assert supervisor.is_ready is True

    async def test_ready_daemon_is_left_alone(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        supervisor._process = _mock_process()
        supervisor._state = DaemonState.READY
        with patch.object(supervisor, "_start_locked", new_callable=AsyncMock) as mock_start:
            await supervisor.ensure_ready()
        mock_start.assert_not_called()


class TestUnexpectedExit:
    async def test_exit_listeners_fire_and_state_resets(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        proc = _mock_process()
        proc.wait = AsyncMock(return_value=1)
        supervisor._process = proc
        supervisor._state = DaemonState.READY
        fired: list[str] = []

        def failing() -> None:
            raise RuntimeError("listener bug")

        supervisor.add_exit_listener(failing)
        supervisor.add_exit_listener(lambda: fired.append("exit"))

        await supervisor._watch_exit(proc)

        assert fired == ["exit"]
        assert supervisor.state is DaemonState.STOPPED
        assert supervisor._process is None

    async def test_requested_stop_does_not_fire_listeners(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        proc = _mock_process()
        supervisor._process = proc
        supervisor._stopping = True
        listener = MagicMock()
        supervisor.add_exit_listener(listener)

        await supervisor._watch_exit(proc)

        listener.assert_not_called()


class TestOutputPump:
    async def test_output_lines_are_kept_for_errors(self, tmp_path: Path) -> None:
        supervisor = DaemonSupervisor(_settings(tmp_path))
        proc = _mock_process()
        proc.stderr = MagicMock()
        proc.stderr.readline = AsyncMock(side_effect=[b"NOTICE: serving\n", b"ERROR: boom\n", b""])

        await supervisor._pump_output(proc)

        assert list(supervisor._output_tail) == ["NOTICE: serving", "ERROR: boom"]
