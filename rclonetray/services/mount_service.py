"""Mount orchestration: one daemon mount per (bookmark, slot)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rclonetray.daemon import endpoints
from rclonetray.exceptions import (
    ActiveResourceError,
    BookmarkNotFoundError,
    DaemonError,
    SlotNotFoundError,
)
from rclonetray.store.slots import DEFAULT_SLOT, MountSlot, remote_spec

if TYPE_CHECKING:
    from rclonetray.config import Settings
    from rclonetray.daemon.router import RequestRouter
    from rclonetray.services.notifications import Notifier, UpdateBus
    from rclonetray.store.slots import SlotRepository

logger = logging.getLogger(__name__)

MountKey = tuple[str, str]

# CLI flag (without "--") -> field of the daemon's vfsOpt / mountOpt / _config objects.
_VFS_OPTIONS = {
    "vfs-cache-mode": "CacheMode",
    "vfs-cache-max-age": "CacheMaxAge",
    "vfs-cache-max-size": "CacheMaxSize",
    "vfs-cache-poll-interval": "CachePollInterval",
    "vfs-read-ahead": "ReadAhead",
    "vfs-write-back": "WriteBack",
    "dir-cache-time": "DirCacheTime",
    "poll-interval": "PollInterval",
    "read-only": "ReadOnly",
    "no-modtime": "NoModTime",
}
_GLOBAL_OPTIONS = {
    "buffer-size": "BufferSize",
    "transfers": "Transfers",
    "checkers": "Checkers",
    "timeout": "Timeout",
}


@dataclass
class ActiveMount:
    """A mount confirmed by the daemon."""

    bookmark: str
    slot: str
    path: str
    remote: str
    options: dict[str, str] = field(default_factory=dict)
    mounted_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def _coerce(value: str) -> str | bool:
    lowered = value.strip().lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    return value


def build_mount_params(fs: str, mount_point: str, options: dict[str, str]) -> dict[str, Any]:
    """Translate CLI-style mount flags into ``mount/mount`` parameters."""
    vfs_opt: dict[str, Any] = {}
    mount_opt: dict[str, Any] = {}
    config: dict[str, Any] = {}
    for flag, value in options.items():
        name = flag.lstrip("-")
        if name in _VFS_OPTIONS:
            vfs_opt[_VFS_OPTIONS[name]] = _coerce(value)
        elif name in _GLOBAL_OPTIONS:
            config[_GLOBAL_OPTIONS[name]] = _coerce(value)
        else:
            mount_opt["".join(part.capitalize() for part in name.split("-"))] = _coerce(value)

    params: dict[str, Any] = {"fs": fs, "mountPoint": mount_point}
    if mount_opt:
        params["mountOpt"] = mount_opt
    if vfs_opt:
        params["vfsOpt"] = vfs_opt
    if config:
        params["_config"] = config
    return params


def _listed_mount_point(entry: dict[str, Any]) -> str | None:
    value = entry.get("MountPoint") or entry.get("mountPoint")
    return str(value) if value else None


class MountService:
    """Owns the active-mount cache and drives mount/unmount through the daemon.

    The cache is the single source of truth for "is this slot mounted" and is
    only changed after the daemon confirms a change. The config file records
    the desired ``enabled`` state for the startup restore sweep.
    """

    def __init__(
        self,
        router: RequestRouter,
        slots: SlotRepository,
        bus: UpdateBus,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self._router = router
        self._slots = slots
        self._bus = bus
        self._notifier = notifier
        self._settings = settings
        self._mounts: dict[MountKey, ActiveMount] = {}
        self._locks: dict[MountKey, asyncio.Lock] = {}

    def _lock_for(self, key: MountKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ── Status ──

    def get_mount_status(self, bookmark: str, slot: str = DEFAULT_SLOT) -> str | None:
        """Mount path of the slot, or None if it is not mounted."""
        active = self._mounts.get((bookmark, slot))
        return active.path if active is not None else None

    def is_active(self, bookmark: str) -> bool:
        """Whether any slot of *bookmark* is mounted."""
        return any(key[0] == bookmark for key in self._mounts)

    def active_mounts(self) -> list[ActiveMount]:
        return list(self._mounts.values())

    def resolve_mount_path(self, bookmark: str, slot: str, config: MountSlot) -> Path:
        """Explicit slot path, else a generated path under the mount base directory."""
        if config.path:
            return Path(config.path).expanduser()
        name = bookmark if slot == DEFAULT_SLOT else f"{bookmark}@@{slot}"
        return self._settings.mount_base_dir / name

    # ── Mount / unmount ──

    async def mount(self, bookmark: str, slot: str = DEFAULT_SLOT) -> ActiveMount:
        """Mount the slot. Idempotent: an existing mount is returned as is.

        Raises:
            RpcUnavailableError: The RPC channel is not ready.
            DaemonError: The daemon refused the mount or it never became visible.
        """
        key = (bookmark, slot)
        async with self._lock_for(key):
            existing = self._mounts.get(key)
            if existing is not None:
                logger.info("Already mounted: %s/%s at %s", bookmark, slot, existing.path)
                return existing

            try:
                self._router.require_rpc("mount", endpoints.MOUNT)
                self._require_slot(bookmark, slot)
                active = await self._mount_verified(bookmark, slot)
            except Exception as exc:
                self._notifier.error(f"Failed to mount {bookmark}: {exc}")
                raise

            self._mounts[key] = active
            self._slots.set_mount_enabled(bookmark, slot, True)

        logger.info("Mounted %s at %s", active.remote, active.path)
        self._bus.notify()
        self._notifier.info(f"Mounted {bookmark} at {active.path}")
        return active

    async def _mount_verified(self, bookmark: str, slot: str) -> ActiveMount:
        config = self._slots.get_mount_config(bookmark, slot)
        mount_point = self.resolve_mount_path(bookmark, slot, config)
        mount_point.mkdir(parents=True, exist_ok=True)
        fs = remote_spec(bookmark, config.remote_path)
        params = build_mount_params(fs, str(mount_point), config.options)

        attempts = self._settings.mount_verify_attempts
        for attempt in range(1, attempts + 1):
            logger.info("Mounting %s at %s (attempt %d/%d)", fs, mount_point, attempt, attempts)
            await self._router.call_rpc(endpoints.MOUNT, params, operation="mount")
            if await self._is_listed(str(mount_point)):
                return ActiveMount(
                    bookmark=bookmark,
                    slot=slot,
                    path=str(mount_point),
                    remote=fs,
                    options=dict(config.options),
                )

            logger.warning("Mount of %s not listed by the daemon (attempt %d)", fs, attempt)
            self._mounts.pop((bookmark, slot), None)
            await self._discard_stale(str(mount_point))
            if attempt < attempts:
                await asyncio.sleep(self._settings.mount_retry_delay * attempt)

        raise DaemonError(
            endpoints.MOUNT,
            f"{fs} did not appear in the daemon mount list after {attempts} attempts",
        )

    async def _list_mounts(self) -> list[dict[str, Any]]:
        result = await self._router.call_rpc(endpoints.LIST_MOUNTS, operation="list mounts")
        entries = result.get("mountPoints") or []
        return [entry for entry in entries if isinstance(entry, dict)]

    async def _is_listed(self, mount_point: str) -> bool:
        return any(_listed_mount_point(entry) == mount_point for entry in await self._list_mounts())

    async def _discard_stale(self, mount_point: str) -> None:
        try:
            await self._router.call_rpc(
                endpoints.UNMOUNT, {"mountPoint": mount_point}, operation="unmount"
            )
        except DaemonError as exc:
            logger.debug("No stale mount to discard at %s: %s", mount_point, exc.message)

    async def unmount(self, bookmark: str, slot: str = DEFAULT_SLOT) -> bool:
        """Unmount the slot. Returns True once the slot is not mounted.

        Raises:
            RpcUnavailableError: The RPC channel is not ready.
            DaemonError: The daemon refused the unmount.
        """
        key = (bookmark, slot)
        async with self._lock_for(key):
            active = self._mounts.get(key)
            if active is None:
                logger.info("Not mounted: %s/%s", bookmark, slot)
                return True

            try:
                await self._router.call_rpc(
                    endpoints.UNMOUNT, {"mountPoint": active.path}, operation="unmount"
                )
            except DaemonError as exc:
                if "not found" not in exc.message.lower():
                    self._notifier.error(f"Failed to unmount {bookmark}: {exc}")
                    raise
                logger.warning("Daemon no longer knows mount %s, clearing it", active.path)
            except Exception as exc:
                self._notifier.error(f"Failed to unmount {bookmark}: {exc}")
                raise

            del self._mounts[key]
            self._slots.set_mount_enabled(bookmark, slot, False)

        logger.info("Unmounted %s from %s", active.remote, active.path)
        self._bus.notify()
        self._notifier.info(f"Unmounted {bookmark}")
        return True

    # ── Slot configuration ──

    def _require_slot(self, bookmark: str, slot: str) -> None:
        if not self._slots.bookmark_exists(bookmark):
            raise BookmarkNotFoundError(f"Bookmark {bookmark!r} not found")
        if not self._slots.mount_slot_exists(bookmark, slot):
            raise SlotNotFoundError(f"Mount slot {slot!r} not found for {bookmark}")

    def get_mount_config(self, bookmark: str, slot: str = DEFAULT_SLOT) -> MountSlot:
        self._require_slot(bookmark, slot)
        return self._slots.get_mount_config(bookmark, slot)

    def save_mount_config(
        self, bookmark: str, config: MountSlot, slot: str = DEFAULT_SLOT
    ) -> MountSlot:
        """Store new settings for an existing slot; ``enabled`` is left as is."""
        current = self.get_mount_config(bookmark, slot)
        config.enabled = current.enabled
        self._slots.save_mount_config(bookmark, config, slot)
        self._bus.notify()
        return config

    def list_mount_slots(self, bookmark: str) -> list[str]:
        if not self._slots.bookmark_exists(bookmark):
            raise BookmarkNotFoundError(f"Bookmark {bookmark!r} not found")
        return self._slots.list_mount_slots(bookmark)

    def create_mount_slot(self, bookmark: str, slot: str, config: MountSlot) -> MountSlot:
        if not self._slots.bookmark_exists(bookmark):
            raise BookmarkNotFoundError(f"Bookmark {bookmark!r} not found")
        config.enabled = False
        self._slots.create_mount_slot(bookmark, slot, config)
        self._bus.notify()
        return config

    def delete_mount_slot(self, bookmark: str, slot: str) -> None:
        if self.get_mount_status(bookmark, slot) is not None:
            raise ActiveResourceError(f"Unmount {bookmark}/{slot} before deleting it")
        self._slots.delete_mount_slot(bookmark, slot)
        self._bus.notify()

    # ── Daemon reconciliation ──

    async def refresh_from_daemon(self) -> None:
        """Rebuild the cache from the daemon's live mount list."""
        entries = await self._list_mounts()
        index: dict[str, MountKey] = {}
        for bookmark in self._slots.bookmark_names():
            for slot in self._slots.list_mount_slots(bookmark):
                config = self._slots.get_mount_config(bookmark, slot)
                index[str(self.resolve_mount_path(bookmark, slot, config))] = (bookmark, slot)

        mounts: dict[MountKey, ActiveMount] = {}
        for entry in entries:
            mount_point = _listed_mount_point(entry)
            if mount_point is None:
                continue
            key = index.get(mount_point) or self._key_from_generated_path(mount_point)
            if key is None:
                logger.debug("Ignoring mount not managed by rclonetray: %s", mount_point)
                continue
            mounts[key] = ActiveMount(
                bookmark=key[0],
                slot=key[1],
                path=mount_point,
                remote=str(entry.get("Fs") or entry.get("fs") or remote_spec(key[0])),
            )

        self._mounts = mounts
        logger.info("Found %d active mounts", len(mounts))
        self._bus.notify()

    def _key_from_generated_path(self, mount_point: str) -> MountKey | None:
        path = Path(mount_point)
        if path.parent != self._settings.mount_base_dir:
            return None
        bookmark, sep, slot = path.name.partition("@@")
        return (bookmark, slot if sep else DEFAULT_SLOT)

    async def restore_enabled_mounts(self) -> int:
        """Mount every slot marked enabled. Returns how many are mounted."""
        restored = 0
        for bookmark, slot in self._slots.enabled_mount_slots():
            try:
                await self.mount(bookmark, slot)
                restored += 1
            except Exception as exc:
                logger.error("Failed to restore mount %s/%s: %s", bookmark, slot, exc)
        return restored

    async def shutdown(self) -> None:
        """Unmount everything daemon-side, keeping the enabled flags for next start."""
        mounts = list(self._mounts.values())
        if mounts and self._router.rpc_available:
            results = await asyncio.gather(
                *(
                    self._router.call_rpc(endpoints.UNMOUNT, {"mountPoint": m.path})
                    for m in mounts
                ),
                return_exceptions=True,
            )
            for active, result in zip(mounts, results, strict=True):
                if isinstance(result, BaseException):
                    logger.warning("Failed to unmount %s on shutdown: %s", active.path, result)
        self._mounts.clear()

    def reset(self) -> None:
        """Forget every mount; used when the daemon has gone away."""
        if self._mounts:
            self._mounts.clear()
            self._bus.notify()
