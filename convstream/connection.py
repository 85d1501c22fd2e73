"""
convstream - Connection

Connection lifecycle for the single socket that carries every conversation.

The manager owns exactly one live transport handle. Transports report back
through ``connect``, ``connect_error``, ``disconnect``, ``closed`` and
``message`` events; lifecycle events from a handle that is no longer the
current one are ignored.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from convstream.exceptions import ConnectionError
from convstream.handlers import Handler, HandlerList, Unregister

logger = structlog.get_logger(__name__)


class ConnectionStatus(str, Enum):
    """Lifecycle states of the connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TransportHandle(ABC):
    """
    One physical connection attempt and the socket it produces.

    Subclasses call :meth:`_fire` to report lifecycle events:

    - ``connect``: the socket is open
    - ``connect_error`` (error): an attempt failed, the transport may retry
    - ``disconnect`` (reason): an open socket dropped, the transport may retry
    - ``closed``: the transport gave up and will not reconnect
    - ``message`` (text): an inbound frame
    """

    EVENTS = ("connect", "connect_error", "disconnect", "closed", "message")

    def __init__(self) -> None:
        self.deprecated = False
        self._listeners: Dict[str, HandlerList] = {
            event: HandlerList(f"transport.{event}") for event in self.EVENTS
        }

    def on(self, event: str, handler: Handler) -> Unregister:
        if event not in self._listeners:
            raise ValueError(f"Unknown transport event: {event}")
        return self._listeners[event].add(handler)

    def _fire(self, event: str, *args: Any) -> None:
        self._listeners[event].emit(*args)

    def deprecate(self) -> None:
        """
        Stop reconnecting. The open socket keeps delivering frames until the
        server closes it, then the handle fires ``closed``.
        """
        self.deprecated = True

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether the socket is currently open."""

    @abstractmethod
    def open(self) -> None:
        """Start connecting. Must not block."""

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send one frame."""

    @abstractmethod
    def close(self) -> None:
        """Tear the connection down. Calling it again is a no-op."""


class ConnectionManager:
    """
    Drives one transport handle through the connection lifecycle.

    Example:
        >>> manager = ConnectionManager(lambda: WebSocketTransport(url, token_provider))
        >>> manager.on_status_changed(lambda status, error: print(status, error))
        >>> handle = await manager.get_connected_socket()
        >>> await handle.send(envelope.to_json())
    """

    def __init__(self, open_handle: Callable[[], TransportHandle]) -> None:
        self._open_handle = open_handle
        self._handle: Optional[TransportHandle] = None
        self._status = ConnectionStatus.DISCONNECTED
        self.last_error: Optional[BaseException] = None
        self._status_handlers = HandlerList("connection.status")
        self._message_handlers = HandlerList("connection.message")
        self._waiters: List[asyncio.Future] = []
        self._subscriptions: Dict[TransportHandle, List[Unregister]] = {}

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def handle(self) -> Optional[TransportHandle]:
        return self._handle

    def on_status_changed(self, handler: Handler) -> Unregister:
        """Register ``handler(status, error)`` for every status notification."""
        return self._status_handlers.add(handler)

    def on_message(self, handler: Handler) -> Unregister:
        """Register ``handler(text, handle)`` for inbound frames."""
        return self._message_handlers.add(handler)

    def connect(self) -> None:
        """Open a transport handle unless one is already connecting or connected."""
        if self._status is not ConnectionStatus.DISCONNECTED:
            return

        self._set_status(ConnectionStatus.CONNECTING)
        handle = self._open_handle()
        self._handle = handle

        self._subscriptions[handle] = [
            handle.on("connect", lambda: self._handle_connect(handle)),
            handle.on("connect_error", lambda error: self._handle_connect_error(handle, error)),
            handle.on("disconnect", lambda reason=None: self._handle_disconnect(handle, reason)),
            handle.on("closed", lambda: self._handle_closed(handle)),
            # Frames from a deprecated handle still drain to the caller until it closes
            handle.on("message", lambda text: self._message_handlers.emit(text, handle)),
        ]

        logger.debug("connecting")
        handle.open()

    def disconnect(self) -> None:
        """Close the current handle and reject everyone waiting for a connection."""
        if self._status is ConnectionStatus.DISCONNECTED:
            logger.debug("disconnect_ignored", reason="already disconnected")
            self._reject_waiters(ConnectionError("closed while waiting for connection"))
            return

        handle, self._handle = self._handle, None
        if handle is not None:
            self._release(handle)
            handle.close()

        self._reject_waiters(ConnectionError("closed while waiting for connection"))
        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info("disconnected")

    def deprecate_socket(self, handle: TransportHandle) -> None:
        """
        Detach ``handle`` without closing it.

        Used when the server announces it will close the socket; the next
        send opens a fresh handle while the old one drains.
        """
        if handle is not self._handle:
            return

        logger.debug("socket_deprecated")
        self._handle = None
        handle.deprecate()
        handle.on("closed", lambda: self._release(handle))
        self._set_status(ConnectionStatus.DISCONNECTED)
        if self._waiters:
            self.connect()

    async def get_connected_socket(self) -> TransportHandle:
        """
        Return the live handle, connecting first if needed.

        Raises:
            ConnectionError: If ``disconnect()`` is called before the
                connection is established, or the transport gives up.
        """
        if self._status is ConnectionStatus.CONNECTED:
            if self._handle is not None and self._handle.connected:
                return self._handle
            raise ConnectionError("Connection status is connected but the socket is not")

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            self.connect()
            return await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def _handle_connect(self, handle: TransportHandle) -> None:
        if handle is not self._handle:
            logger.debug("stale_handle_event", event="connect")
            return

        self.last_error = None
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("connected")

        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.set_result(handle)

    def _handle_connect_error(self, handle: TransportHandle, error: BaseException) -> None:
        if handle is not self._handle or self._status is ConnectionStatus.DISCONNECTED:
            logger.debug("stale_handle_event", event="connect_error")
            return

        logger.warning("connect_failed", error=str(error))
        self.last_error = ConnectionError(f"WebSocket connection failed: {error}", cause=error)
        # Retry timing belongs to the transport
        self._set_status(ConnectionStatus.CONNECTING, self.last_error)

    def _handle_disconnect(self, handle: TransportHandle, reason: Any) -> None:
        if handle is not self._handle:
            logger.debug("stale_handle_event", event="disconnect")
            return

        logger.warning("connection_lost", reason=str(reason) if reason else None)
        self.last_error = ConnectionError(f"Connection lost: {reason}" if reason else "Connection lost")
        self._set_status(ConnectionStatus.CONNECTING, self.last_error)

    def _handle_closed(self, handle: TransportHandle) -> None:
        if handle is not self._handle:
            logger.debug("stale_handle_event", event="closed")
            return

        self._handle = None
        self._release(handle)
        error = self.last_error or ConnectionError("Connection closed")
        self._reject_waiters(error)
        self._set_status(ConnectionStatus.DISCONNECTED, error)

    def _release(self, handle: TransportHandle) -> None:
        for unregister in self._subscriptions.pop(handle, ()):
            unregister()

    def _reject_waiters(self, error: ConnectionError) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)

    def _set_status(self, status: ConnectionStatus, error: Optional[BaseException] = None) -> None:
        self._status = status
        self._status_handlers.emit(status, error)
