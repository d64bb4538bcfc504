"""Request routing between the RPC channel and the CLI fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from rclonetray.exceptions import RpcError, RpcUnavailableError

if TYPE_CHECKING:
    from rclonetray.daemon.cli_fallback import CliFallbackExecutor
    from rclonetray.daemon.rpc_client import RpcClient
    from rclonetray.daemon.supervisor import DaemonSupervisor

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """A way of executing a daemon endpoint."""

    name: str

    def supports(self, endpoint: str) -> bool: ...

    async def request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        *,
        method: str = "POST",
        timeout: float | None = None,
    ) -> dict[str, Any]: ...


class RpcTransport:
    """Transport over the daemon's HTTP RPC interface."""

    name = "rpc"

    def __init__(self, client: RpcClient) -> None:
        self._client = client

    def supports(self, endpoint: str) -> bool:
        return True

    async def request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        *,
        method: str = "POST",
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self._client.call(endpoint, params, method=method, timeout=timeout)


class CliTransport:
    """Transport that shells out to the rclone binary in a worker thread."""

    name = "cli"

    def __init__(self, executor: CliFallbackExecutor) -> None:
        self._executor = executor

    def supports(self, endpoint: str) -> bool:
        return self._executor.supports(endpoint)

    async def request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        *,
        method: str = "POST",
        timeout: float | None = None,
    ) -> dict[str, Any]:
        # Unsupported endpoints fail before a thread is spent on them.
        if not self._executor.supports(endpoint):
            return self._executor.run(endpoint, params)
        return await asyncio.to_thread(self._executor.run, endpoint, params)


class RequestRouter:
    """Picks the transport for each call based on the supervisor's state.

    Holds no state of its own: every decision reads ``supervisor.is_ready``.
    """

    def __init__(
        self,
        supervisor: DaemonSupervisor,
        rpc: Transport,
        cli: Transport,
        *,
        rpc_enabled: bool = True,
    ) -> None:
        self._supervisor = supervisor
        self._rpc = rpc
        self._cli = cli
        self._rpc_enabled = rpc_enabled

    @property
    def rpc_available(self) -> bool:
        """Whether calls currently go through the RPC channel."""
        return self._rpc_enabled and self._supervisor.is_ready

    @property
    def mode(self) -> str:
        """``"rpc"`` or ``"cli"``."""
        return self._rpc.name if self.rpc_available else self._cli.name

    async def request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        *,
        method: str = "POST",
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Execute *endpoint* over RPC, falling back to the CLI where possible.

        Raises:
            RpcUnavailableError: Not ready and the endpoint has no CLI equivalent.
            RpcError: The RPC call failed and the endpoint has no CLI equivalent.
        """
        if self.rpc_available:
            try:
                return await self._rpc.request(endpoint, params, method=method, timeout=timeout)
            except RpcError as exc:
                if not self._cli.supports(endpoint):
                    raise
                logger.warning("RPC call %s failed (%s), falling back to CLI", endpoint, exc)
        elif not self._cli.supports(endpoint):
            raise RpcUnavailableError(endpoint, f"{endpoint} requires active RPC channel")

        return await self._cli.request(endpoint, params, method=method, timeout=timeout)

    async def call_rpc(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        operation: str | None = None,
    ) -> dict[str, Any]:
        """Execute a job-style endpoint, which never degrades to the CLI.

        Raises:
            RpcUnavailableError: The RPC channel is not ready.
        """
        self.require_rpc(operation or endpoint, endpoint)
        return await self._rpc.request(endpoint, params, timeout=timeout)

    def require_rpc(self, operation: str, endpoint: str | None = None) -> None:
        """Raise ``RpcUnavailableError`` unless the RPC channel is ready."""
        if not self.rpc_available:
            raise RpcUnavailableError(
                endpoint or operation, f"{operation} requires active RPC channel"
            )
