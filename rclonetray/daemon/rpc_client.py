"""HTTP client for the rclone remote control API.

Every call is a JSON ``POST`` to ``<base_url>/<endpoint>`` with basic auth.
Connection resets are retried once; everything else is mapped to the
``RpcError`` hierarchy and propagated.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from rclonetray.exceptions import (
    DaemonError,
    RpcConnectionError,
    RpcConnectionResetError,
    RpcHTTPError,
    RpcTimeoutError,
)

logger = logging.getLogger(__name__)

_RESET_ERRORS = (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)


class RpcClient:
    """Async client for the daemon's JSON-over-HTTP RPC surface.

    Args:
        base_url: Daemon address, e.g. ``http://127.0.0.1:5572``.
        username: Basic auth user (``--rc-user``).
        password: Basic auth password (``--rc-pass``).
        timeout: Default per-request timeout in seconds.
        retry_delay: Pause before the single retry after a connection reset.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = 15.0,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if timeout <= 0:
            msg = f"timeout must be > 0, got {timeout}"
            raise ValueError(msg)
        self._base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(username, password)
        self._timeout = timeout
        self._retry_delay = retry_delay
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def call(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        *,
        method: str = "POST",
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Invoke an RPC endpoint and return its JSON object.

        Raises:
            RpcTimeoutError: The request timed out.
            RpcConnectionError: The daemon is not reachable.
            RpcConnectionResetError: The connection was reset twice in a row.
            RpcHTTPError: Non-2xx status without an error body.
            DaemonError: The daemon reported an error.
        """
        try:
            return await self._send(endpoint, params, method, timeout)
        except RpcConnectionResetError as exc:
            logger.warning(
                "Connection reset calling %s (%s), retrying in %.1fs",
                endpoint,
                exc.message,
                self._retry_delay,
            )
        await asyncio.sleep(self._retry_delay)
        return await self._send(endpoint, params, method, timeout)

    async def _send(
        self,
        endpoint: str,
        params: dict[str, Any] | None,
        method: str,
        timeout: float | None,
    ) -> dict[str, Any]:
        client = self._get_client()
        request_timeout = self._timeout if timeout is None else timeout
        try:
            response = await client.request(
                method,
                f"/{endpoint.lstrip('/')}",
                json=params or {},
                timeout=request_timeout,
            )
        except httpx.TimeoutException:
            raise RpcTimeoutError(endpoint, f"timed out after {request_timeout:.1f}s") from None
        except _RESET_ERRORS as exc:
            raise RpcConnectionResetError(endpoint, str(exc) or type(exc).__name__) from None
        except httpx.TransportError as exc:
            raise RpcConnectionError(endpoint, str(exc) or type(exc).__name__) from None

        return _parse_response(endpoint, response)

    async def close(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _parse_response(endpoint: str, response: httpx.Response) -> dict[str, Any]:
    payload: Any = None
    if response.content:
        try:
            payload = response.json()
        except ValueError:
            payload = None

    error = payload.get("error") if isinstance(payload, dict) else None
    if error:
        logger.debug("Daemon error from %s (status %d): %s", endpoint, response.status_code, error)
        raise DaemonError(endpoint, str(error), status_code=response.status_code)
    if response.is_error:
        raise RpcHTTPError(endpoint, response.status_code, response.text[:200])
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise DaemonError(endpoint, "daemon returned a non-object response")
    return payload
