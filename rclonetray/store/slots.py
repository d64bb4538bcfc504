"""Mount and sync slot records stored alongside bookmarks in the config file.

The default mount slot lives in the bookmark's own section; named mount slots
live in ``<bookmark>.mount_<slot>`` and sync slots in ``<bookmark>.sync_<slot>``.
All slot keys carry the ``_rclonetray_`` prefix so rclone ignores them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from rclonetray.exceptions import SlotNotFoundError, StateError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from rclonetray.store.ini_store import BookmarkStore

logger = logging.getLogger(__name__)

DEFAULT_SLOT = "default"
KEY_PREFIX = "_rclonetray_"
MOUNT_SECTION_MARKER = ".mount_"
SYNC_SECTION_MARKER = ".sync_"

_MOUNT_ENABLED = f"{KEY_PREFIX}mount_enabled"
_MOUNT_PATH = f"{KEY_PREFIX}mount_path"
_MOUNT_OPT_PREFIX = f"{KEY_PREFIX}mount_opt_"
_REMOTE_PATH = f"{KEY_PREFIX}remote_path"

_SYNC_PREFIX = f"{KEY_PREFIX}sync_"

_SLOT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

DEFAULT_MOUNT_OPTIONS: dict[str, str] = {
    "--vfs-cache-mode": "writes",
    "--dir-cache-time": "30m",
    "--vfs-cache-max-age": "24h",
    "--vfs-read-ahead": "128M",
    "--buffer-size": "32M",
}


class SyncMode(StrEnum):
    """How a sync slot runs. Values match what is stored in the config file."""

    BIDIRECTIONAL = "bisync"
    ONE_SHOT = "sync"


class SyncDirection(StrEnum):
    """Direction of a one-shot sync."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass
class MountSlot:
    """Mount configuration of one slot."""

    enabled: bool = False
    path: str = ""
    remote_path: str = ""
    options: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MOUNT_OPTIONS))


@dataclass
class SyncSlot:
    """Sync configuration of one slot."""

    name: str
    local_path: str = ""
    remote_path: str = ""
    mode: SyncMode = SyncMode.BIDIRECTIONAL
    direction: SyncDirection = SyncDirection.UPLOAD
    transfers: int = 4
    checkers: int = 8
    max_delete: int = -1
    initialized: bool = False
    enabled: bool = False


def validate_slot_name(slot: str) -> None:
    if not _SLOT_NAME_RE.match(slot):
        msg = f"Invalid slot name: {slot!r}"
        raise ValueError(msg)


def mount_section(bookmark: str, slot: str = DEFAULT_SLOT) -> str:
    return bookmark if slot == DEFAULT_SLOT else f"{bookmark}{MOUNT_SECTION_MARKER}{slot}"


def sync_section(bookmark: str, slot: str) -> str:
    return f"{bookmark}{SYNC_SECTION_MARKER}{slot}"


def is_slot_section(name: str) -> bool:
    return MOUNT_SECTION_MARKER in name or SYNC_SECTION_MARKER in name


def remote_spec(bookmark: str, remote_path: str = "") -> str:
    """rclone remote string, e.g. ``remote1:backup``.

    *remote_path* is used as given: relative paths resolve against the
    remote's root (the login directory on sftp), a leading ``/`` makes it
    absolute. Mounts and syncs share this so one path names one directory.
    """
    return f"{bookmark}:{remote_path}"


def normalize_option_name(name: str) -> str:
    return "--" + name.lstrip("-")


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


def _parse_int(value: str | None, default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except ValueError:
        logger.warning("Ignoring non-integer slot value %r", value)
        return default


def decode_mount_slot(record: Mapping[str, str] | None) -> MountSlot:
    """Build a ``MountSlot`` from a config section; missing keys take defaults."""
    slot = MountSlot()
    if not record:
        return slot
    slot.enabled = _parse_bool(record.get(_MOUNT_ENABLED))
    slot.path = record.get(_MOUNT_PATH, "")
    slot.remote_path = record.get(_REMOTE_PATH, "")
    for key, value in record.items():
        if key.startswith(_MOUNT_OPT_PREFIX):
            slot.options[normalize_option_name(key.removeprefix(_MOUNT_OPT_PREFIX))] = value
    return slot


def encode_mount_slot(slot: MountSlot) -> dict[str, str]:
    """Config keys for *slot*. Option names lose their leading ``--``."""
    record = {_MOUNT_ENABLED: "true" if slot.enabled else "false"}
    if slot.path:
        record[_MOUNT_PATH] = slot.path
    if slot.remote_path:
        record[_REMOTE_PATH] = slot.remote_path
    for name, value in slot.options.items():
        record[f"{_MOUNT_OPT_PREFIX}{name.lstrip('-')}"] = value
    return record


def decode_sync_slot(name: str, record: Mapping[str, str]) -> SyncSlot:
    """Build a ``SyncSlot`` from its config section."""
    mode_value = record.get(f"{_SYNC_PREFIX}mode", SyncMode.BIDIRECTIONAL.value)
    direction_value = record.get(f"{_SYNC_PREFIX}direction", SyncDirection.UPLOAD.value)
    try:
        mode = SyncMode(mode_value)
    except ValueError:
        logger.warning("Unknown sync mode %r for slot %s, using bisync", mode_value, name)
        mode = SyncMode.BIDIRECTIONAL
    try:
        direction = SyncDirection(direction_value)
    except ValueError:
        logger.warning(
            "Unknown sync direction %r for slot %s, using upload", direction_value, name
        )
        direction = SyncDirection.UPLOAD

    return SyncSlot(
        name=name,
        local_path=record.get(f"{_SYNC_PREFIX}local_path", ""),
        remote_path=record.get(f"{_SYNC_PREFIX}remote_path", ""),
        mode=mode,
        direction=direction,
        transfers=_parse_int(record.get(f"{_SYNC_PREFIX}transfers"), 4),
        checkers=_parse_int(record.get(f"{_SYNC_PREFIX}checkers"), 8),
        max_delete=_parse_int(record.get(f"{_SYNC_PREFIX}max_delete"), -1),
        initialized=_parse_bool(record.get(f"{_SYNC_PREFIX}initialized")),
        enabled=_parse_bool(record.get(f"{_SYNC_PREFIX}enabled")),
    )


def encode_sync_slot(slot: SyncSlot) -> dict[str, str]:
    return {
        f"{_SYNC_PREFIX}local_path": slot.local_path,
        f"{_SYNC_PREFIX}remote_path": slot.remote_path,
        f"{_SYNC_PREFIX}mode": slot.mode.value,
        f"{_SYNC_PREFIX}direction": slot.direction.value,
        f"{_SYNC_PREFIX}transfers": str(slot.transfers),
        f"{_SYNC_PREFIX}checkers": str(slot.checkers),
        f"{_SYNC_PREFIX}max_delete": str(slot.max_delete),
        f"{_SYNC_PREFIX}initialized": "true" if slot.initialized else "false",
        f"{_SYNC_PREFIX}enabled": "true" if slot.enabled else "false",
    }


class SlotRepository:
    """Reads and writes mount/sync slot records through the bookmark store."""

    def __init__(self, store: BookmarkStore) -> None:
        self.store = store

    # ── Mount slots ──

    def get_mount_config(self, bookmark: str, slot: str = DEFAULT_SLOT) -> MountSlot:
        return decode_mount_slot(self.store.get(mount_section(bookmark, slot)))

    def save_mount_config(
        self, bookmark: str, config: MountSlot, slot: str = DEFAULT_SLOT
    ) -> None:
        """Replace the slot's mount keys, keeping the section's other keys."""
        self.store.update(
            mount_section(bookmark, slot),
            encode_mount_slot(config),
            remove=(_REMOTE_PATH,),
            remove_prefixes=(f"{KEY_PREFIX}mount_",),
        )

    def set_mount_enabled(self, bookmark: str, slot: str, enabled: bool) -> None:
        self.store.update(
            mount_section(bookmark, slot),
            {_MOUNT_ENABLED: "true" if enabled else "false"},
        )

    def list_mount_slots(self, bookmark: str) -> list[str]:
        """Slot names of *bookmark*, ``default`` first."""
        prefix = f"{bookmark}{MOUNT_SECTION_MARKER}"
        named = sorted(
            name.removeprefix(prefix) for name in self.store.names() if name.startswith(prefix)
        )
        return [DEFAULT_SLOT, *named]

    def create_mount_slot(self, bookmark: str, slot: str, config: MountSlot) -> None:
        validate_slot_name(slot)
        if slot == DEFAULT_SLOT or self.store.get(mount_section(bookmark, slot)) is not None:
            msg = f"Mount slot {slot!r} already exists for {bookmark}"
            raise StateError(msg)
        self.save_mount_config(bookmark, config, slot)

    def delete_mount_slot(self, bookmark: str, slot: str) -> None:
        if slot == DEFAULT_SLOT:
            msg = "The default mount slot cannot be deleted"
            raise StateError(msg)
        if not self.store.delete(mount_section(bookmark, slot)):
            raise SlotNotFoundError(f"Mount slot {slot!r} not found for {bookmark}")

    def enabled_mount_slots(self) -> list[tuple[str, str]]:
        """All (bookmark, slot) keys whose mount is marked enabled."""
        keys: list[tuple[str, str]] = []
        for name, record in self.store.dump().items():
            if SYNC_SECTION_MARKER in name or not _parse_bool(record.get(_MOUNT_ENABLED)):
                continue
            bookmark, marker, slot = name.partition(MOUNT_SECTION_MARKER)
            keys.append((bookmark, slot if marker else DEFAULT_SLOT))
        return keys

    # ── Sync slots ──

    def get_sync_config(self, bookmark: str, slot: str) -> SyncSlot:
        record = self.store.get(sync_section(bookmark, slot))
        if record is None:
            raise SlotNotFoundError(f"Sync slot {slot!r} not found for {bookmark}")
        return decode_sync_slot(slot, record)

    def save_sync_config(self, bookmark: str, config: SyncSlot) -> None:
        validate_slot_name(config.name)
        self.store.update(
            sync_section(bookmark, config.name),
            encode_sync_slot(config),
            remove_prefixes=(_SYNC_PREFIX,),
        )

    def set_sync_flag(self, bookmark: str, slot: str, flag: str, value: bool) -> None:
        """Persist one boolean sync flag (``initialized`` or ``enabled``)."""
        self.store.update(
            sync_section(bookmark, slot),
            {f"{_SYNC_PREFIX}{flag}": "true" if value else "false"},
        )

    def list_sync_slots(self, bookmark: str) -> list[str]:
        prefix = f"{bookmark}{SYNC_SECTION_MARKER}"
        return sorted(
            name.removeprefix(prefix) for name in self.store.names() if name.startswith(prefix)
        )

    def delete_sync_slot(self, bookmark: str, slot: str) -> None:
        if not self.store.delete(sync_section(bookmark, slot)):
            raise SlotNotFoundError(f"Sync slot {slot!r} not found for {bookmark}")

    def enabled_sync_slots(self) -> list[tuple[str, str]]:
        keys: list[tuple[str, str]] = []
        for name, record in self.store.dump().items():
            bookmark, marker, slot = name.partition(SYNC_SECTION_MARKER)
            if marker and _parse_bool(record.get(f"{_SYNC_PREFIX}enabled")):
                keys.append((bookmark, slot))
        return keys

    # ── Bookmarks ──

    def slot_sections(self, bookmark: str) -> list[str]:
        """Section names of every named slot belonging to *bookmark*."""
        prefixes = (f"{bookmark}{MOUNT_SECTION_MARKER}", f"{bookmark}{SYNC_SECTION_MARKER}")
        return [name for name in self.store.names() if name.startswith(prefixes)]

    def bookmark_names(self) -> list[str]:
        return [name for name in self.store.names() if not is_slot_section(name)]

    def bookmark_exists(self, bookmark: str) -> bool:
        return not is_slot_section(bookmark) and self.store.get(bookmark) is not None

    def mount_slot_exists(self, bookmark: str, slot: str) -> bool:
        if slot == DEFAULT_SLOT:
            return self.bookmark_exists(bookmark)
        return self.store.get(mount_section(bookmark, slot)) is not None
