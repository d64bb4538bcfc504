"""Application-level exception types.

Convention:
- ``RpcError`` and subclasses: failures talking to the rclone daemon. Transport
  errors (timeouts, resets) are retried once by the RPC client; daemon-reported
  errors (``DaemonError``) are never retried. The global handlers map them to
  502/503/504.
- ``StateError`` (a ``ValueError``): the request conflicts with current state
  (already mounted, already syncing, slot missing, deleting something active).
  Raised before any side effect, except ``SyncStoppedError`` which ends a
  start interrupted by a stop. The message is safe to forward to clients.
- ``DaemonStartupError``: the daemon could not be brought up. Callers fall back
  to CLI-only mode instead of crashing.
- ``InternalServerError``: errors whose details must never reach clients. The
  global handler logs the full message and returns a generic 500.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients."""


class DaemonStartupError(RuntimeError):
    """The rclone daemon could not be spawned or did not become ready in time."""


class RpcError(Exception):
    """Base class for failures of a call to the rclone daemon."""

    def __init__(self, endpoint: str, message: str) -> None:
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint
        self.message = message


class RpcTimeoutError(RpcError):
    """The request did not complete within its timeout."""


class RpcConnectionError(RpcError):
    """The daemon could not be reached."""


class RpcConnectionResetError(RpcConnectionError):
    """The connection was reset or closed mid-request."""


class RpcHTTPError(RpcError):
    """Non-2xx response without a daemon error body."""

    def __init__(self, endpoint: str, status_code: int, message: str = "") -> None:
        super().__init__(endpoint, message or f"HTTP {status_code}")
        self.status_code = status_code


class DaemonError(RpcError):
    """The daemon answered with an explicit error."""

    def __init__(self, endpoint: str, message: str, status_code: int | None = None) -> None:
        super().__init__(endpoint, message)
        self.status_code = status_code

    @property
    def is_job_not_found(self) -> bool:
        """Whether the daemon no longer knows the referenced job."""
        return "job not found" in self.message.lower()


class JobError(DaemonError):
    """An asynchronous daemon job finished with an error."""

    def __init__(self, endpoint: str, message: str, job_id: int | None = None) -> None:
        super().__init__(endpoint, message)
        self.job_id = job_id


class JobTimeoutError(JobError):
    """An asynchronous daemon job did not finish within the allowed time."""


class RpcUnavailableError(RpcError):
    """The operation needs the RPC channel, which is not ready."""


class UnsupportedFallbackError(RpcError):
    """The endpoint has no command-line equivalent."""


class StateError(ValueError):
    """The operation conflicts with the current mount/sync state."""


class AlreadyActiveError(StateError):
    """A mount or sync for the key is already active or starting."""


class SyncStoppedError(StateError):
    """The sync was stopped before its start completed."""


class ActiveResourceError(StateError):
    """The resource cannot be changed or removed while it is active."""


class NotFoundError(StateError):
    """The referenced bookmark or slot does not exist."""


class BookmarkNotFoundError(NotFoundError):
    """No bookmark with the given name."""


class SlotNotFoundError(NotFoundError):
    """No mount or sync slot with the given name."""
