"""INI record store backed by the rclone config file.

Each section is a record keyed by name. The file is also edited by rclone and
by hand, so every in-process change goes through ``_modify``: one locked
read-modify-write that re-reads the file, applies the change and atomically
replaces it. External edits between two writes are last-writer-wins.
"""

from __future__ import annotations

import configparser
import contextlib
import io
import logging
import os
import tempfile
import threading
from typing import TYPE_CHECKING, TypeVar

from rclonetray.exceptions import InternalServerError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    return parser


class BookmarkStore:
    """Section-per-record store over an INI file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> configparser.ConfigParser:
        parser = _new_parser()
        if not self.path.exists():
            return parser
        try:
            parser.read_string(self.path.read_text(encoding="utf-8"), source=str(self.path))
        except configparser.Error as exc:
            raise InternalServerError(f"Failed to parse config file {self.path}: {exc}") from exc
        return parser

    def _write(self, parser: configparser.ConfigParser) -> None:
        buffer = io.StringIO()
        parser.write(buffer)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(buffer.getvalue())
            if self.path.exists():
                os.chmod(tmp_name, self.path.stat().st_mode & 0o777)
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

    def _modify(self, mutator: Callable[[configparser.ConfigParser], T]) -> T:
        """Apply *mutator* to a fresh copy of the file and write it back."""
        with self._lock:
            parser = self._read()
            result = mutator(parser)
            self._write(parser)
            return result

    def get(self, name: str) -> dict[str, str] | None:
        """Return the record *name*, or None if absent."""
        parser = self._read()
        if not parser.has_section(name):
            return None
        return dict(parser.items(name, raw=True))

    def names(self) -> list[str]:
        return self._read().sections()

    def dump(self) -> dict[str, dict[str, str]]:
        """Return every record."""
        parser = self._read()
        return {name: dict(parser.items(name, raw=True)) for name in parser.sections()}

    def set(self, name: str, record: Mapping[str, str]) -> None:
        """Replace record *name* entirely."""

        def mutate(parser: configparser.ConfigParser) -> None:
            if parser.has_section(name):
                parser.remove_section(name)
            parser.add_section(name)
            for key, value in record.items():
                parser.set(name, key, value)

        self._modify(mutate)
        logger.debug("Wrote record %s to %s", name, self.path)

    def update(
        self,
        name: str,
        values: Mapping[str, str],
        *,
        remove: Iterable[str] = (),
        remove_prefixes: Iterable[str] = (),
    ) -> None:
        """Merge *values* into record *name*, creating it if needed.

        Keys listed in *remove* or starting with any of *remove_prefixes* are
        dropped before the merge.
        """
        drop = set(remove)
        prefixes = tuple(remove_prefixes)

        def mutate(parser: configparser.ConfigParser) -> None:
            if not parser.has_section(name):
                parser.add_section(name)
            for key in list(parser.options(name)):
                if key in drop or (prefixes and key.startswith(prefixes)):
                    parser.remove_option(name, key)
            for key, value in values.items():
                parser.set(name, key, value)

        self._modify(mutate)

    def delete(self, name: str) -> bool:
        """Delete record *name*. Returns False if it did not exist."""
        return self._modify(lambda parser: parser.remove_section(name))

    def delete_many(self, names: Iterable[str]) -> int:
        """Delete several records in one write. Returns how many existed."""
        targets = list(names)

        def mutate(parser: configparser.ConfigParser) -> int:
            return sum(1 for name in targets if parser.remove_section(name))

        return self._modify(mutate)
