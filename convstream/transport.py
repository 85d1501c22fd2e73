"""
convstream - WebSocket Transport

Transport handle backed by the ``websockets`` library. One handle owns a
background task that connects, reads frames, and reconnects with
exponential backoff until it is closed or runs out of attempts.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from convstream.config import ClientConfig, Endpoints, QueryParams
from convstream.connection import TransportHandle
from convstream.exceptions import AuthenticationError, ConnectionError

logger = structlog.get_logger(__name__)

TokenProvider = Callable[[], Awaitable[str]]

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def build_query(config: ClientConfig) -> Dict[str, str]:
    """Connection query parameters, leaving out empty values."""
    params = {
        QueryParams.ORGANIZATION_ID: config.organization_id,
        QueryParams.TENANT_ID: config.tenant_id,
        QueryParams.EXTERNAL_USER_ID: config.external_user_id,
    }
    return {key: value for key, value in params.items() if value}


def build_socket_url(
    base_url: str,
    query: Optional[Dict[str, str]] = None,
    path: Optional[str] = None,
) -> str:
    """
    Turn an http(s) base URL into the socket URL.

    Example:
        >>> build_socket_url("https://cloud.example.com", {"tenantId": "t1"})
        'wss://cloud.example.com/conversations_/ws?tenantId=t1'
        >>> build_socket_url("http://localhost:3000")
        'ws://localhost:3000/ws'
    """
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"

    if path is None:
        path = Endpoints.SOCKET_LOCAL if parts.hostname in LOCAL_HOSTS else Endpoints.SOCKET

    return urlunsplit((scheme, parts.netloc, path, urlencode(query or {}), ""))


class WebSocketTransport(TransportHandle):
    """
    A reconnecting WebSocket.

    The token provider is awaited before every connection attempt so that a
    refreshed credential is used after expiry.
    """

    def __init__(
        self,
        url: str,
        token_provider: TokenProvider,
        config: ClientConfig,
    ) -> None:
        super().__init__()
        self._url = url
        self._token_provider = token_provider
        self._config = config
        self._websocket: Optional[ClientConnection] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    def open(self) -> None:
        if self._task is not None or self._closed:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def send(self, text: str) -> None:
        if self._websocket is None:
            raise ConnectionError("Not connected")
        await self._websocket.send(text)
        logger.debug("frame_sent", size=len(text))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug("transport_closed", url=self._url)

    def deprecate(self) -> None:
        super().deprecate()
        logger.debug("transport_deprecated", url=self._url)

    def _next_delay(self, attempt: int) -> float:
        delay = self._config.reconnection_delay * (2 ** (attempt - 1))
        return min(delay, self._config.reconnection_delay_max)

    def _should_retry(self, attempt: int) -> bool:
        if self._closed or self.deprecated or not self._config.reconnection:
            return False
        limit = self._config.reconnection_attempts
        return limit is None or attempt < limit

    async def _run(self) -> None:
        attempt = 0

        while not self._closed:
            opened = False
            try:
                token = await self._token_provider()
                if not token:
                    raise AuthenticationError("Token provider returned an empty token")

                async with connect(
                    self._url,
                    additional_headers={"Authorization": f"Bearer {token}"},
                    open_timeout=self._config.timeout,
                    ping_interval=self._config.ping_interval,
                    ping_timeout=self._config.ping_timeout,
                ) as websocket:
                    self._websocket = websocket
                    opened = True
                    attempt = 0
                    logger.info("websocket_connected", url=self._url)
                    self._fire("connect")

                    async for message in websocket:
                        if isinstance(message, bytes):
                            try:
                                message = message.decode("utf-8")
                            except UnicodeDecodeError as e:
                                logger.warning("invalid_frame_encoding", size=len(message), error=str(e))
                                continue
                        self._fire("message", message)

                self._websocket = None
                self._fire("disconnect", "closed by server")

            except asyncio.CancelledError:
                self._websocket = None
                raise
            except ConnectionClosed as e:
                self._websocket = None
                logger.warning("websocket_closed", code=e.rcvd.code if e.rcvd else None)
                self._fire("disconnect", str(e))
            except Exception as e:
                self._websocket = None
                if opened:
                    logger.error("websocket_error", error=str(e))
                    self._fire("disconnect", str(e))
                else:
                    logger.warning("websocket_connect_failed", error=str(e))
                    self._fire("connect_error", e)

            attempt += 1
            if not self._should_retry(attempt - 1):
                break

            delay = self._next_delay(attempt)
            logger.info("reconnecting", delay=delay, attempt=attempt)
            await asyncio.sleep(delay)
            if self.deprecated:
                break

        self._websocket = None
        if not self._closed:
            self._closed = True
            self._fire("closed")
