"""Bookmark (rclone remote) and provider catalogue."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from rclonetray.daemon import endpoints
from rclonetray.exceptions import ActiveResourceError, BookmarkNotFoundError, StateError
from rclonetray.store.slots import KEY_PREFIX, is_slot_section

if TYPE_CHECKING:
    from collections.abc import Mapping

    from rclonetray.daemon.router import RequestRouter
    from rclonetray.services.mount_service import MountService
    from rclonetray.services.notifications import UpdateBus
    from rclonetray.services.sync_service import SyncService
    from rclonetray.store.ini_store import BookmarkStore
    from rclonetray.store.slots import SlotRepository

logger = logging.getLogger(__name__)

UNSUPPORTED_PROVIDERS = frozenset({"union", "crypt"})
BUCKET_REQUIRED_PROVIDERS = frozenset({"b2", "swift", "s3", "gsc", "hubic"})

# Section rclone writes when the config file is encrypted.
_ENCRYPTION_SECTION = "RCLONE_ENCRYPT_V0"

_BOOKMARK_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_. -]{0,99}$")


@dataclass
class Provider:
    type: str
    description: str = ""
    requires_bucket: bool = False


@dataclass
class Bookmark:
    """A configured remote. ``options`` excludes ``type`` and rclonetray keys."""

    name: str
    type: str
    options: dict[str, str] = field(default_factory=dict)


def validate_bookmark_name(name: str) -> None:
    if (
        not _BOOKMARK_NAME_RE.match(name)
        or name != name.strip()
        or is_slot_section(name)
        or name == _ENCRYPTION_SECTION
    ):
        msg = f"Invalid bookmark name: {name!r}"
        raise ValueError(msg)


def _decode_bookmark(name: str, record: Mapping[str, Any]) -> Bookmark:
    options = {
        key: str(value)
        for key, value in record.items()
        if key != "type" and not key.startswith(KEY_PREFIX)
    }
    return Bookmark(name=name, type=str(record.get("type", "")), options=options)


def _decode_providers(raw: Any) -> list[Provider]:
    """Accept the daemon's list of provider objects or a ``{type: description}`` map."""
    entries: list[tuple[str, str]] = []
    if isinstance(raw, dict):
        entries = [(str(key), str(value)) for key, value in raw.items()]
    elif isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict):
                continue
            kind = item.get("Prefix") or item.get("Name")
            if kind:
                entries.append((str(kind), str(item.get("Description", ""))))

    return [
        Provider(
            type=kind,
            description=description,
            requires_bucket=kind in BUCKET_REQUIRED_PROVIDERS,
        )
        for kind, description in entries
        if kind not in UNSUPPORTED_PROVIDERS
    ]


class BookmarkService:
    """Keeps the bookmark and provider caches and writes bookmark changes."""

    def __init__(
        self,
        router: RequestRouter,
        store: BookmarkStore,
        slots: SlotRepository,
        bus: UpdateBus,
        mounts: MountService,
        syncs: SyncService,
    ) -> None:
        self._router = router
        self._store = store
        self._slots = slots
        self._bus = bus
        self._mounts = mounts
        self._syncs = syncs
        self._bookmarks: dict[str, Bookmark] = {}
        self._providers: dict[str, Provider] = {}

    async def refresh(self) -> list[Bookmark]:
        """Reload bookmarks from ``config/dump``. Works over RPC and CLI."""
        dump = await self._router.request(endpoints.CONFIG_DUMP)
        bookmarks: dict[str, Bookmark] = {}
        for name, record in dump.items():
            if name == _ENCRYPTION_SECTION or is_slot_section(name):
                continue
            if not isinstance(record, dict):
                continue
            bookmarks[name] = _decode_bookmark(name, record)
        self._bookmarks = bookmarks
        logger.info("Loaded %d bookmarks", len(bookmarks))
        self._bus.notify()
        return self.list_bookmarks()

    async def refresh_providers(self) -> list[Provider]:
        result = await self._router.request(endpoints.PROVIDERS)
        self._providers = {p.type: p for p in _decode_providers(result.get("providers"))}
        logger.info("Loaded %d providers", len(self._providers))
        return self.list_providers()

    def list_providers(self) -> list[Provider]:
        return sorted(self._providers.values(), key=lambda p: p.type)

    def get_provider(self, kind: str) -> Provider:
        provider = self._providers.get(kind)
        if provider is None:
            msg = f"Provider {kind!r} not found"
            raise ValueError(msg)
        return provider

    def list_bookmarks(self) -> list[Bookmark]:
        return [self._bookmarks[name] for name in sorted(self._bookmarks)]

    def get_bookmark(self, name: str) -> Bookmark:
        bookmark = self._bookmarks.get(name)
        if bookmark is None:
            raise BookmarkNotFoundError(f"Bookmark {name!r} not found")
        return bookmark

    def _reload(self, name: str) -> Bookmark:
        record = self._store.get(name) or {}
        bookmark = _decode_bookmark(name, record)
        self._bookmarks[name] = bookmark
        return bookmark

    def add_bookmark(self, name: str, kind: str, options: Mapping[str, str]) -> Bookmark:
        """Create a bookmark section in the config file.

        Raises:
            ValueError: Invalid name or an unsupported provider type.
            StateError: A section with that name already exists.
        """
        validate_bookmark_name(name)
        if kind in UNSUPPORTED_PROVIDERS:
            msg = f"Provider {kind!r} is not supported"
            raise ValueError(msg)
        if self._store.get(name) is not None:
            msg = f"Bookmark {name!r} already exists"
            raise StateError(msg)

        record = {key: value for key, value in options.items() if not key.startswith(KEY_PREFIX)}
        self._store.set(name, {"type": kind, **record})
        bookmark = self._reload(name)
        logger.info("Added bookmark %s (%s)", name, kind)
        self._bus.notify()
        return bookmark

    def update_bookmark(
        self, name: str, options: Mapping[str, str], kind: str | None = None
    ) -> Bookmark:
        """Replace a bookmark's remote options, keeping its slot settings."""
        current = self._store.get(name)
        if current is None or is_slot_section(name):
            raise BookmarkNotFoundError(f"Bookmark {name!r} not found")

        preserved = {key: value for key, value in current.items() if key.startswith(KEY_PREFIX)}
        record = {key: value for key, value in options.items() if not key.startswith(KEY_PREFIX)}
        self._store.set(name, {"type": kind or current.get("type", ""), **record, **preserved})
        bookmark = self._reload(name)
        logger.info("Updated bookmark %s", name)
        self._bus.notify()
        return bookmark

    def delete_bookmark(self, name: str) -> None:
        """Delete a bookmark and every slot section that belongs to it.

        Raises:
            BookmarkNotFoundError: No such bookmark.
            ActiveResourceError: A mount or sync of the bookmark is active.
        """
        if not self._slots.bookmark_exists(name):
            raise BookmarkNotFoundError(f"Bookmark {name!r} not found")
        if self._mounts.is_active(name) or self._syncs.is_active(name):
            raise ActiveResourceError(f"Stop mounts and syncs of {name} before deleting it")

        removed = self._store.delete_many([name, *self._slots.slot_sections(name)])
        self._bookmarks.pop(name, None)
        logger.info("Deleted bookmark %s (%d sections)", name, removed)
        self._bus.notify()
