"""Tests for the control API endpoints and their error mapping."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, PropertyMock, patch

import httpx
import pytest

from rclonetray.daemon.supervisor import DaemonSupervisor
from rclonetray.exceptions import DaemonStartupError
from rclonetray.store.ini_store import BookmarkStore
from tests.conftest import create_test_client

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from httpx import AsyncClient

    from rclonetray.config import Settings
    from tests.conftest import FakeDaemon


@pytest.fixture
async def client(test_settings: Settings, fake_daemon: FakeDaemon) -> AsyncGenerator[AsyncClient]:
    """Create test HTTP client backed by the scripted daemon."""
    store = BookmarkStore(test_settings.rclone_config)
    fake_daemon.handlers["config/dump"] = lambda params: store.dump()
    async with create_test_client(test_settings, fake_daemon) as ac:
        yield ac


def _offline() -> Any:
    return patch.object(
        DaemonSupervisor, "is_ready", new_callable=PropertyMock, return_value=False
    )


class TestHealth:
    async def test_health_reports_rpc_mode(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["mode"] == "rpc"
        assert data["version"] == "v1.65.0"

    async def test_health_degraded_without_daemon(self, client: AsyncClient) -> None:
        with _offline():
            resp = await client.get("/api/health")
        assert resp.json()["status"] == "degraded"
        assert resp.json()["mode"] == "cli"


class TestDaemon:
    async def test_start_daemon(self, client: AsyncClient) -> None:
        with patch.object(DaemonSupervisor, "ensure_ready", new_callable=AsyncMock):
            resp = await client.post("/api/daemon/start")
        assert resp.status_code == 200
        assert resp.json()["mode"] == "rpc"

    async def test_start_failure_returns_503(self, client: AsyncClient) -> None:
        with patch.object(
            DaemonSupervisor,
            "ensure_ready",
            new_callable=AsyncMock,
            side_effect=DaemonStartupError("rclone binary not found: rclone"),
        ):
            resp = await client.post("/api/daemon/start")
        assert resp.status_code == 503
        assert resp.json()["detail"] == "rclone daemon failed to start"

    async def test_providers(self, client: AsyncClient) -> None:
        resp = await client.get("/api/providers")
        assert resp.status_code == 200
        assert resp.json() == []

    async def test_notifications_record_failures(
        self, client: AsyncClient, fake_daemon: FakeDaemon
    ) -> None:
        fake_daemon.list_visible = False
        await client.post("/api/bookmarks/remote1/mounts/default/mount")

        resp = await client.get("/api/notifications", params={"limit": 1})
        assert resp.status_code == 200
        [entry] = resp.json()["notifications"]
        assert entry["level"] == "error"
        assert entry["message"].startswith("Failed to mount remote1")


class TestBookmarks:
    async def test_list(self, client: AsyncClient) -> None:
        resp = await client.get("/api/bookmarks")
        assert resp.status_code == 200
        assert [b["name"] for b in resp.json()] == ["archive", "remote1"]

    async def test_create_get_update_delete(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/bookmarks", json={"name": "photos", "type": "s3", "options": {"region": "eu"}}
        )
        assert resp.status_code == 201
        assert resp.json()["options"] == {"region": "eu"}

        resp = await client.put("/api/bookmarks/photos", json={"options": {"region": "us"}})
        assert resp.status_code == 200
        assert resp.json()["type"] == "s3"
        assert resp.json()["options"] == {"region": "us"}

        resp = await client.delete("/api/bookmarks/photos")
        assert resp.status_code == 204

        resp = await client.get("/api/bookmarks/photos")
        assert resp.status_code == 404

    async def test_duplicate_is_conflict(self, client: AsyncClient) -> None:
        resp = await client.post("/api/bookmarks", json={"name": "remote1", "type": "sftp"})
        assert resp.status_code == 409

    async def test_unsupported_type_is_unprocessable(self, client: AsyncClient) -> None:
        resp = await client.post("/api/bookmarks", json={"name": "joined", "type": "union"})
        assert resp.status_code == 422
        assert "not supported" in resp.json()["detail"]

    async def test_invalid_name_reports_field(self, client: AsyncClient) -> None:
        resp = await client.post("/api/bookmarks", json={"name": "a/b", "type": "sftp"})
        assert resp.status_code == 422
        assert resp.json()["detail"][0]["field"] == "name"

    async def test_delete_while_mounted_is_conflict(self, client: AsyncClient) -> None:
        await client.post("/api/bookmarks/remote1/mounts/default/mount")
        resp = await client.delete("/api/bookmarks/remote1")
        assert resp.status_code == 409

        resp = await client.get("/api/bookmarks/remote1")
        assert resp.json()["mounted"] is True


class TestMounts:
    async def test_slot_lifecycle(self, client: AsyncClient, test_settings: Settings) -> None:
        base = "/api/bookmarks/remote1/mounts"
        resp = await client.post(base, json={"slot": "docs", "remote_path": "documents"})
        assert resp.status_code == 201
        assert resp.json()["options"]["--vfs-cache-mode"] == "writes"

        resp = await client.get(base)
        assert [s["slot"] for s in resp.json()] == ["default", "docs"]

        resp = await client.post(f"{base}/docs/mount")
        assert resp.status_code == 200
        assert resp.json()["mounted"] is True
        assert resp.json()["mount_path"] == str(test_settings.mount_base_dir / "remote1@@docs")

        resp = await client.delete(f"{base}/docs")
        assert resp.status_code == 409

        resp = await client.post(f"{base}/docs/unmount")
        assert resp.json()["mounted"] is False

        resp = await client.delete(f"{base}/docs")
        assert resp.status_code == 204

    async def test_update_normalizes_option_names(self, client: AsyncClient) -> None:
        resp = await client.put(
            "/api/bookmarks/remote1/mounts/default",
            json={"options": {"read-only": "true"}},
        )
        assert resp.status_code == 200
        assert resp.json()["options"]["--read-only"] == "true"

    async def test_unknown_slot_is_not_found(self, client: AsyncClient) -> None:
        resp = await client.get("/api/bookmarks/remote1/mounts/nope")
        assert resp.status_code == 404

    async def test_daemon_refusal_is_bad_gateway(
        self, client: AsyncClient, fake_daemon: FakeDaemon
    ) -> None:
        def refuse(params: dict[str, Any]) -> dict[str, Any]:
            raise fake_daemon.Error("fusermount: permission denied")

        fake_daemon.handlers["mount/mount"] = refuse
        resp = await client.post("/api/bookmarks/remote1/mounts/default/mount")
        assert resp.status_code == 502
        assert "permission denied" in resp.json()["detail"]

    async def test_daemon_timeout_is_gateway_timeout(
        self, client: AsyncClient, fake_daemon: FakeDaemon
    ) -> None:
        def hang(params: dict[str, Any]) -> dict[str, Any]:
            raise httpx.ReadTimeout("timed out")

        fake_daemon.handlers["mount/mount"] = hang
        resp = await client.post("/api/bookmarks/remote1/mounts/default/mount")
        assert resp.status_code == 504

    async def test_mount_without_daemon_is_unavailable(
        self, client: AsyncClient, fake_daemon: FakeDaemon
    ) -> None:
        with _offline():
            resp = await client.post("/api/bookmarks/remote1/mounts/default/mount")
        assert resp.status_code == 503
        assert resp.json()["detail"] == "mount requires active RPC channel"
        assert fake_daemon.calls_to("mount/mount") == []


class TestSyncs:
    async def test_create_start_stop(
        self, client: AsyncClient, fake_daemon: FakeDaemon, tmp_path: Path
    ) -> None:
        base = "/api/bookmarks/remote1/syncs"
        fake_daemon.launch_outcomes = {"copy": None, "resync": None}

        resp = await client.post(
            base,
            json={"slot": "work", "local_path": str(tmp_path / "work"), "remote_path": "backup"},
        )
        assert resp.status_code == 201
        assert resp.json()["transfers"] == 4
        assert resp.json()["checkers"] == 8
        assert resp.json()["initialized"] is False

        resp = await client.post(f"{base}/work/start")
        assert resp.status_code == 200
        data = resp.json()
        assert data["phase"] == "active"
        assert data["initialized"] is True
        assert data["enabled"] is True
        assert data["job"]["kind"] == "bisync"

        resp = await client.post(f"{base}/work/start")
        assert resp.status_code == 409

        resp = await client.put(
            f"{base}/work", json={"local_path": str(tmp_path), "remote_path": "other"}
        )
        assert resp.status_code == 409

        resp = await client.post(f"{base}/work/stop")
        assert resp.json() == {"stopped": True}
        resp = await client.post(f"{base}/work/stop")
        assert resp.json() == {"stopped": False}

    async def test_failed_bootstrap_is_bad_gateway(
        self, client: AsyncClient, fake_daemon: FakeDaemon, tmp_path: Path
    ) -> None:
        base = "/api/bookmarks/remote1/syncs"
        fake_daemon.launch_outcomes = {"copy": "directory not found"}
        await client.post(
            base, json={"slot": "work", "local_path": str(tmp_path), "remote_path": "backup"}
        )

        resp = await client.post(f"{base}/work/start")
        assert resp.status_code == 502
        assert "directory not found" in resp.json()["detail"]

        resp = await client.get(f"{base}/work")
        assert resp.json()["phase"] == "idle"
        assert resp.json()["initialized"] is False

    async def test_unknown_slot_is_not_found(self, client: AsyncClient) -> None:
        resp = await client.get("/api/bookmarks/remote1/syncs/nope")
        assert resp.status_code == 404

    async def test_invalid_body(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/bookmarks/remote1/syncs",
            json={"slot": "work", "local_path": "/w", "remote_path": "", "max_delete": -5},
        )
        assert resp.status_code == 422
        fields = {error["field"] for error in resp.json()["detail"]}
        assert fields == {"remote_path", "max_delete"}
