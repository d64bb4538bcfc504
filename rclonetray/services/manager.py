"""Top-level wiring of the daemon, routing and orchestration services."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rclonetray.daemon import endpoints
from rclonetray.daemon.cli_fallback import CliFallbackExecutor
from rclonetray.daemon.router import CliTransport, RequestRouter, RpcTransport
from rclonetray.daemon.rpc_client import RpcClient
from rclonetray.daemon.supervisor import DaemonSupervisor
from rclonetray.exceptions import DaemonStartupError
from rclonetray.services.bookmark_service import BookmarkService
from rclonetray.services.mount_service import MountService
from rclonetray.services.notifications import NotificationLog, UpdateBus
from rclonetray.services.sync_service import SyncService
from rclonetray.store.ini_store import BookmarkStore
from rclonetray.store.slots import SlotRepository

if TYPE_CHECKING:
    import httpx

    from rclonetray.config import Settings

logger = logging.getLogger(__name__)

_DAEMON_START_ATTEMPTS = 2


class RcloneManager:
    """Owns every long-lived object of the application.

    Args:
        settings: Application settings.
        rpc_transport: Optional httpx transport for the RPC client, used by tests.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        rpc_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.supervisor = DaemonSupervisor(settings)
        self.rpc_client = RpcClient(
            settings.rc_base_url,
            settings.rc_user,
            settings.rc_pass,
            timeout=settings.rpc_timeout,
            retry_delay=settings.rpc_retry_delay,
            transport=rpc_transport,
        )
        self.cli = CliFallbackExecutor(
            settings.rclone_executable, settings.rclone_config, timeout=settings.cli_timeout
        )
        self.router = RequestRouter(
            self.supervisor,
            RpcTransport(self.rpc_client),
            CliTransport(self.cli),
            rpc_enabled=settings.rc_enabled,
        )
        self.store = BookmarkStore(settings.rclone_config)
        self.slots = SlotRepository(self.store)
        self.bus = UpdateBus()
        self.notifications = NotificationLog()
        self.mounts = MountService(
            self.router, self.slots, self.bus, self.notifications, settings
        )
        self.syncs = SyncService(self.router, self.slots, self.bus, self.notifications, settings)
        self.bookmarks = BookmarkService(
            self.router, self.store, self.slots, self.bus, self.mounts, self.syncs
        )
        self.version: str | None = None
        self.supervisor.add_exit_listener(self._on_daemon_exit)

    @property
    def mode(self) -> str:
        """``"rpc"`` or ``"cli"``."""
        return self.router.mode

    async def init(self) -> None:
        """Start the daemon if enabled and load version, providers and bookmarks.

        A daemon that cannot be started leaves the application in CLI mode;
        failing to load the catalogues propagates.
        """
        if self.settings.rc_enabled:
            await self._start_daemon()
        else:
            logger.info("RPC channel disabled, running in CLI mode")

        version = await self.router.request(endpoints.VERSION)
        self.version = version.get("version")
        logger.info("rclone version %s (%s mode)", self.version, self.mode)
        logger.info("Using config file %s", self.settings.rclone_config)

        await self.bookmarks.refresh_providers()
        await self.bookmarks.refresh()
        if self.router.rpc_available:
            await self.mounts.refresh_from_daemon()

    async def _start_daemon(self) -> bool:
        for attempt in range(1, _DAEMON_START_ATTEMPTS + 1):
            try:
                await self.supervisor.start()
            except DaemonStartupError as exc:
                logger.warning(
                    "rclone daemon failed to start (attempt %d/%d): %s",
                    attempt,
                    _DAEMON_START_ATTEMPTS,
                    exc,
                )
            else:
                return True

        self.notifications.error("rclone daemon could not be started, running in CLI mode")
        return False

    async def ensure_daemon(self) -> None:
        """Bring the daemon up if it is down and resync the mount cache.

        Raises:
            DaemonStartupError: The daemon could not be started.
        """
        was_ready = self.supervisor.is_ready
        await self.supervisor.ensure_ready()
        if not was_ready:
            self.notifications.info("rclone daemon started")
            await self.mounts.refresh_from_daemon()
            self.bus.notify()

    async def restore_enabled_slots(self) -> tuple[int, int]:
        """Mount enabled mount slots, then start enabled sync slots."""
        if not self.router.rpc_available:
            logger.info("Skipping mount/sync restore in CLI mode")
            return (0, 0)
        mounted = await self.mounts.restore_enabled_mounts()
        synced = await self.syncs.restore_enabled_syncs()
        logger.info("Restored %d mounts and %d syncs", mounted, synced)
        return (mounted, synced)

    def _on_daemon_exit(self) -> None:
        self.mounts.reset()
        self.syncs.reset()
        self.notifications.error("rclone daemon exited unexpectedly; mounts and syncs stopped")
        self.bus.notify()

    async def shutdown(self) -> None:
        """Stop syncs, unmount, close the RPC client and stop the daemon.

        Each step runs even if an earlier one failed.
        """
        try:
            await self.syncs.cleanup()
        except Exception as exc:
            logger.error("Error during sync cleanup: %s", exc, exc_info=True)

        try:
            await self.mounts.shutdown()
        except Exception as exc:
            logger.error("Error during mount shutdown: %s", exc, exc_info=True)

        try:
            await self.rpc_client.close()
        except Exception as exc:
            logger.error("Error closing RPC client: %s", exc, exc_info=True)

        try:
            await self.supervisor.stop()
        except Exception as exc:
            logger.error("Error during daemon shutdown: %s", exc, exc_info=True)
