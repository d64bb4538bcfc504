"""Direct rclone command-line invocation for read-only queries.

Used when the RPC channel is down. Only a fixed allow-list of endpoints has a
command-line equivalent; their output is normalized to the shape the daemon
would have returned.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import TYPE_CHECKING, Any

from rclonetray.daemon import endpoints
from rclonetray.exceptions import UnsupportedFallbackError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger(__name__)

_VERSION_FIELDS = {
    "os/type": "os",
    "os/arch": "arch",
    "go/version": "goVersion",
    "go/linking": "linking",
    "go/tags": "goTags",
}


def _parse_version(stdout: str) -> dict[str, Any]:
    lines = stdout.splitlines()
    if not lines or not lines[0].strip():
        msg = "rclone version produced no output"
        raise ValueError(msg)
    first = lines[0].split()
    result: dict[str, Any] = {"version": first[-1]}
    for line in lines[1:]:
        key, sep, value = line.strip().lstrip("- ").partition(":")
        if sep and key in _VERSION_FIELDS:
            result[_VERSION_FIELDS[key]] = value.strip()
    return result


def _parse_providers(stdout: str) -> dict[str, Any]:
    providers = json.loads(stdout)
    if not isinstance(providers, list):
        msg = "rclone config providers did not return a list"
        raise ValueError(msg)
    return {"providers": providers}


def _parse_config_dump(stdout: str) -> dict[str, Any]:
    dump = json.loads(stdout) if stdout.strip() else {}
    if not isinstance(dump, dict):
        msg = "rclone config dump did not return an object"
        raise ValueError(msg)
    return dump


def _parse_remotes(stdout: str) -> dict[str, Any]:
    remotes = [line.strip().rstrip(":") for line in stdout.splitlines() if line.strip()]
    return {"remotes": remotes}


_COMMANDS: dict[str, tuple[tuple[str, ...], Callable[[str], dict[str, Any]]]] = {
    endpoints.VERSION: (("version",), _parse_version),
    endpoints.PROVIDERS: (("config", "providers"), _parse_providers),
    endpoints.CONFIG_DUMP: (("config", "dump"), _parse_config_dump),
    endpoints.LIST_REMOTES: (("listremotes",), _parse_remotes),
}


class CliFallbackExecutor:
    """Runs allow-listed read-only queries through the rclone binary."""

    def __init__(self, binary: str, config_path: Path, timeout: float = 30.0) -> None:
        self.binary = binary
        self.config_path = config_path
        self.timeout = timeout

    @staticmethod
    def supports(endpoint: str) -> bool:
        """Whether *endpoint* has a command-line equivalent."""
        return endpoint in _COMMANDS

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Run an rclone command against the configured config file."""
        return subprocess.run(
            [self.binary, *args, f"--config={self.config_path}"],
            check=True,
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )

    def run(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute *endpoint* through the CLI.

        ``params`` is accepted for signature parity with the RPC path; none of
        the allow-listed queries take parameters.

        Raises:
            UnsupportedFallbackError: The endpoint has no CLI equivalent.
            subprocess.CalledProcessError: rclone exited non-zero.
            FileNotFoundError: The rclone binary is missing.
        """
        command = _COMMANDS.get(endpoint)
        if command is None:
            raise UnsupportedFallbackError(endpoint, "no command-line equivalent")
        args, parse = command
        if params:
            logger.debug("Ignoring parameters for CLI fallback of %s: %s", endpoint, params)

        try:
            result = self._run(*args)
        except subprocess.CalledProcessError as exc:
            logger.error(
                "rclone %s failed (exit %d): %s",
                " ".join(args),
                exc.returncode,
                (exc.stderr or "").strip()[:500],
            )
            raise
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            logger.error("rclone %s could not run: %s", " ".join(args), exc)
            raise

        return parse(result.stdout)
