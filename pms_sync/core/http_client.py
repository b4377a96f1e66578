"""
HTTP Client Lifecycle Management.

Builds the httpx.AsyncClient the RemoteGateway talks through. Timeouts come
from SyncSettings; every request and response is traced at DEBUG level.
The client is always injected; nothing here keeps a global client.

Usage:
    async with create_standalone_http_client(settings) as client:
        gateway = RemoteGateway(http_client=client, session=session)
        coordinator = SyncCoordinator(gateway=gateway, cache=cache)
        await coordinator.load_dashboard()
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

import httpx

from pms_sync import __version__
from pms_sync.core.config import SyncSettings, get_sync_settings

logger = logging.getLogger(__name__)

DEFAULT_HEADERS: Dict[str, str] = {
    "Accept": "application/json",
    "User-Agent": f"pms-sync/{__version__}",
}


async def _trace_request(request: httpx.Request) -> None:
    logger.debug(f"-> {request.method} {request.url}")


async def _trace_response(response: httpx.Response) -> None:
    request = response.request
    logger.debug(f"<- {response.status_code} {request.method} {request.url}")


class HttpClientManager:
    """
    Owns one httpx.AsyncClient for a dashboard session.

    Use directly when the client must outlive a single ``async with``
    block; otherwise prefer ``create_standalone_http_client``.
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        max_connections: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Args:
            settings: Sync settings (request timeout); loaded from the environment if omitted.
            max_connections: Maximum number of concurrent connections.
            transport: Optional transport override (tests use httpx.MockTransport).
        """
        self._settings = settings or get_sync_settings()
        self._timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        self._limits = httpx.Limits(max_connections=max_connections)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> httpx.AsyncClient:
        """
        Create the client.

        Raises:
            RuntimeError: If the client is already started.
        """
        if self._client is not None:
            raise RuntimeError("HTTP client already started")

        self._client = httpx.AsyncClient(
            headers=DEFAULT_HEADERS,
            timeout=self._timeout,
            limits=self._limits,
            transport=self._transport,
            event_hooks={"request": [_trace_request], "response": [_trace_response]},
        )
        logger.info(f"HTTP client started (timeout={self._settings.request_timeout_seconds}s)")
        return self._client

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("HTTP client closed")

    @property
    def client(self) -> httpx.AsyncClient:
        """
        The managed client.

        Raises:
            RuntimeError: If the client is not started.
        """
        if self._client is None:
            raise RuntimeError("HTTP client not started. Call start() first.")
        return self._client

    @property
    def is_running(self) -> bool:
        return self._client is not None and not self._client.is_closed


@asynccontextmanager
async def create_standalone_http_client(
    settings: Optional[SyncSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Yield a client bound to the caller's scope and close it on exit."""
    manager = HttpClientManager(settings=settings, transport=transport)
    client = await manager.start()
    try:
        yield client
    finally:
        await manager.stop()
