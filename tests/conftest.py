"""Shared test fixtures for rclonetray."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, PropertyMock, patch

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from rclonetray.config import Settings
from rclonetray.daemon.router import CliTransport, RequestRouter, RpcTransport
from rclonetray.daemon.rpc_client import RpcClient
from rclonetray.daemon.supervisor import DaemonSupervisor
from rclonetray.main import create_app
from rclonetray.services.manager import RcloneManager
from rclonetray.services.notifications import NotificationLog, UpdateBus
from rclonetray.store.ini_store import BookmarkStore
from rclonetray.store.slots import SlotRepository

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable
    from pathlib import Path

SAMPLE_CONFIG = """\
[remote1]
type = sftp
host = files.example.com
user = alice

[archive]
type = s3
provider = AWS
"""


class FakeDaemonError(Exception):
    """Raised by a scripted handler to produce a daemon error response."""


@dataclass
class HeldResponse:
    """A daemon response kept back until the test releases it.

    The request has already taken effect daemon-side when ``reached`` is set.
    """

    reached: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)


class FakeDaemon:
    """Scripted stand-in for ``rclone rcd`` served through ``httpx.MockTransport``.

    Mounts and jobs are kept in memory. Jobs start running unless their kind
    (``copy``, ``resync``, ``bisync`` or ``sync``) has an entry in
    ``launch_outcomes``, in which case they are created already finished with
    that error (``None`` for success). Handlers raise ``Error`` to produce a
    daemon error response.
    """

    Error = FakeDaemonError

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.mounts: list[dict[str, Any]] = []
        self.jobs: dict[int, dict[str, Any]] = {}
        self.launched: list[tuple[int, str]] = []
        self.launch_outcomes: dict[str, str | None] = {}
        self.handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {}
        self.list_visible = True
        self._held: dict[str, HeldResponse] = {}
        self._next_job = 1

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle_async)

    def hold(self, endpoint: str) -> HeldResponse:
        """Keep back the response to the next call of *endpoint*."""
        held = self._held[endpoint] = HeldResponse()
        return held

    async def _handle_async(self, request: httpx.Request) -> httpx.Response:
        response = self.handle(request)
        held = self._held.pop(request.url.path.lstrip("/"), None)
        if held is not None:
            held.reached.set()
            await held.release.wait()
        return response

    def handle(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.lstrip("/")
        params = json.loads(request.content) if request.content else {}
        self.calls.append((endpoint, params))
        try:
            if endpoint in self.handlers:
                payload = self.handlers[endpoint](params)
            else:
                payload = self._default(endpoint, params)
        except FakeDaemonError as exc:
            return httpx.Response(
                500, json={"error": str(exc), "input": params, "path": endpoint, "status": 500}
            )
        return httpx.Response(200, json=payload)

    def calls_to(self, endpoint: str) -> list[dict[str, Any]]:
        return [params for called, params in self.calls if called == endpoint]

    def finish(self, job_id: int, error: str = "", output: Any = None) -> None:
        self.jobs[job_id].update(finished=True, success=not error, error=error, output=output)

    def _launch(self, kind: str) -> dict[str, Any]:
        job_id = self._next_job
        self._next_job += 1
        self.jobs[job_id] = {"finished": False, "success": False, "error": "", "output": None}
        if kind in self.launch_outcomes:
            self.finish(job_id, self.launch_outcomes[kind] or "")
        self.launched.append((job_id, kind))
        return {"jobid": job_id}

    def _default(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        if endpoint == "core/version":
            return {"version": "v1.65.0", "os": "linux", "arch": "amd64"}
        if endpoint == "config/providers":
            return {"providers": []}
        if endpoint == "config/dump":
            return {}
        if endpoint == "mount/mount":
            if self.list_visible:
                self.mounts.append({"Fs": params["fs"], "MountPoint": params["mountPoint"]})
            return {}
        if endpoint == "mount/unmount":
            before = len(self.mounts)
            self.mounts = [m for m in self.mounts if m["MountPoint"] != params["mountPoint"]]
            if len(self.mounts) == before:
                raise FakeDaemonError(f"mount not found: {params['mountPoint']}")
            return {}
        if endpoint == "mount/listmounts":
            return {"mountPoints": list(self.mounts)}
        if endpoint == "sync/copy":
            return self._launch("copy")
        if endpoint == "sync/sync":
            return self._launch("sync")
        if endpoint == "core/command":
            return self._launch("resync" if "--resync" in params.get("arg", []) else "bisync")
        if endpoint == "job/status":
            job = self.jobs.get(params["jobid"])
            if job is None:
                raise FakeDaemonError("job not found")
            return {"id": params["jobid"], **job}
        if endpoint == "job/stop":
            job = self.jobs.get(params["jobid"])
            if job is None:
                raise FakeDaemonError("job not found")
            job.update(finished=True, success=False, error="context canceled")
            return {}
        return {}


@asynccontextmanager
async def create_test_client(
    settings: Settings, daemon: FakeDaemon
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with an initialized manager.

    Manually performs the work of the application lifespan because
    ASGITransport does not trigger it. The daemon process is replaced by
    *daemon*, served over the RPC client's transport.
    """
    app = create_app(settings)
    settings.validate_runtime_security()

    with (
        patch.object(DaemonSupervisor, "start", new_callable=AsyncMock),
        patch.object(DaemonSupervisor, "is_ready", new_callable=PropertyMock, return_value=True),
    ):
        manager = RcloneManager(settings, rpc_transport=daemon.transport())
        app.state.manager = manager
        await manager.init()

        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac

        await manager.shutdown()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings rooted in tmp_path with timings short enough for tests."""
    config_path = tmp_path / "rclone.conf"
    config_path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    return Settings(
        _env_file=None,
        rclone_config=config_path,
        data_dir=tmp_path / "data",
        mount_dir=tmp_path / "mounts",
        rpc_retry_delay=0,
        mount_retry_delay=0,
        sync_job_poll_interval=0.001,
        sync_health_check_interval=3600,
        sync_cleanup_timeout=2,
    )


@pytest.fixture
def store(test_settings: Settings) -> BookmarkStore:
    return BookmarkStore(test_settings.rclone_config)


@pytest.fixture
def slots(store: BookmarkStore) -> SlotRepository:
    return SlotRepository(store)


@pytest.fixture
def fake_daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def supervisor_stub() -> MagicMock:
    """Supervisor double reporting a ready daemon; flip ``is_ready`` to go offline."""
    supervisor = MagicMock()
    supervisor.is_ready = True
    return supervisor


@pytest.fixture
def cli_executor() -> MagicMock:
    executor = MagicMock()
    executor.supports.return_value = False
    return executor


@pytest.fixture
async def rpc_client(fake_daemon: FakeDaemon) -> AsyncGenerator[RpcClient]:
    client = RpcClient(
        "http://127.0.0.1:5572", "user", "pass", retry_delay=0, transport=fake_daemon.transport()
    )
    yield client
    await client.close()


@pytest.fixture
def router(
    supervisor_stub: MagicMock, rpc_client: RpcClient, cli_executor: MagicMock
) -> RequestRouter:
    return RequestRouter(supervisor_stub, RpcTransport(rpc_client), CliTransport(cli_executor))


@pytest.fixture
def bus() -> UpdateBus:
    return UpdateBus()


@pytest.fixture
def notifier() -> NotificationLog:
    return NotificationLog()
