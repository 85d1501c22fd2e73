"""
convstream - Client

Wires the connection, the event dispatcher and the outbound queue together.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

import structlog

from convstream.config import ClientConfig, get_config
from convstream.connection import ConnectionManager, ConnectionStatus, TransportHandle
from convstream.events.dispatcher import EventDispatcher
from convstream.events.node import OutboundChannel
from convstream.events.session import Session
from convstream.exceptions import AuthenticationError, ConvStreamError, ProtocolStateError, ProtocolValidationError
from convstream.handlers import Handler, Unregister
from convstream.log import configure_logging
from convstream.models import ErrorEnd, ErrorStart, SessionEnding
from convstream.protocol import Envelope
from convstream.resources.conversations import ConversationHistory
from convstream.transport import TokenProvider, WebSocketTransport, build_query, build_socket_url

logger = structlog.get_logger(__name__)

EVENT_SEND_ERROR = "EVENT_SEND_ERROR"
WEBSOCKET_DISCONNECTED = "WEBSOCKET_DISCONNECTED"


class OutboundQueue(OutboundChannel):
    """
    Fire-and-forget outbound channel.

    Envelopes are queued and written in order by a single writer task, which
    waits for a connected socket before each send.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        on_failure: Callable[[Envelope, BaseException], None],
        maxsize: int = 0,
    ) -> None:
        self._connection = connection
        self._on_failure = on_failure
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None

    def _ensure_writer(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._drain())
        return self._queue

    def send(self, envelope: Envelope) -> None:
        self._ensure_writer().put_nowait(envelope)

    async def flush(self) -> None:
        """Wait until every queued envelope has been written or reported as failed."""
        if self._queue is not None:
            await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def _drain(self) -> None:
        queue = self._queue
        while True:
            envelope = await queue.get()
            try:
                handle = await self._connection.get_connected_socket()
                await handle.send(envelope.to_json())
                logger.debug(
                    "event_sent",
                    conversation_id=envelope.conversation_id,
                    event=envelope.payload_key,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "event_send_failed",
                    conversation_id=envelope.conversation_id,
                    event=envelope.payload_key,
                    error=str(e),
                )
                self._on_failure(envelope, e)
            finally:
                queue.task_done()

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        # Release anyone waiting in flush()
        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()


class ConversationClient:
    """
    Client for real-time conversations with an agent runtime.

    Args:
        token: Static bearer token. Falls back to ``CONVSTREAM_TOKEN``.
        token_provider: Async callable returning a valid token, awaited on
            every connection attempt. Takes precedence over ``token``.
        config: Client configuration, loaded from the environment by default.
        history: REST collaborator, created from ``config`` by default.
        transport_factory: Builds a transport handle; defaults to a WebSocket.

    Example:
        >>> async with ConversationClient(token="...") as client:
        ...     client.on_unhandled_error_start(lambda notice: print(notice.error_id))
        ...     async with client.start_session("conv-1") as session:
        ...         exchange = session.start_exchange()
        ...         await exchange.send_message_with_content_part("Hello")
    """

    def __init__(
        self,
        token: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        config: Optional[ClientConfig] = None,
        history: Optional[ConversationHistory] = None,
        transport_factory: Optional[Callable[[], TransportHandle]] = None,
        **overrides: Any,
    ) -> None:
        config = config or get_config()
        if overrides:
            config = config.model_copy(update=overrides)
        self._config = config

        if token_provider is None:
            static_token = token or os.environ.get("CONVSTREAM_TOKEN")
            if not static_token:
                raise AuthenticationError(
                    "A token is required. Provide token or token_provider, or set "
                    "the CONVSTREAM_TOKEN environment variable."
                )

            async def token_provider() -> str:
                return static_token

        self._token_provider = token_provider

        if config.debug:
            configure_logging("DEBUG", json_format=False)

        self._transport_factory = transport_factory or self._open_websocket
        self.connection = ConnectionManager(self._transport_factory)
        self.connection.on_message(self._handle_frame)
        self.connection.on_status_changed(self._handle_status)

        self.history = history or ConversationHistory(self._token_provider, config)
        self._outbound = OutboundQueue(self.connection, self._report_send_failure)
        self.dispatcher = EventDispatcher(self._outbound, history=self.history)

        self._closing = False
        self._disconnected_sessions: Set[str] = set()

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def status(self) -> ConnectionStatus:
        return self.connection.status

    def _open_websocket(self) -> TransportHandle:
        url = build_socket_url(self._config.base_url, build_query(self._config))
        return WebSocketTransport(url, self._token_provider, self._config)

    # =========================================================================
    # Connection
    # =========================================================================

    def connect(self) -> None:
        self._closing = False
        self.connection.connect()

    async def get_connected_socket(self) -> TransportHandle:
        return await self.connection.get_connected_socket()

    def on_connection_status_changed(self, handler: Handler) -> Unregister:
        return self.connection.on_status_changed(handler)

    async def close(self) -> None:
        """Disconnect and release the outbound queue and HTTP client."""
        self._closing = True
        self.connection.disconnect()
        await self._outbound.close()
        await self.history.close()
        logger.info("client_closed")

    async def __aenter__(self) -> "ConversationClient":
        self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Conversations
    # =========================================================================

    def start_session(
        self,
        conversation_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Union[Session, Awaitable[Any]]:
        return self.dispatcher.start_session(conversation_id, **kwargs)

    def get_session(self, conversation_id: str) -> Optional[Session]:
        return self.dispatcher.get_session(conversation_id)

    def on_any(self, handler: Handler) -> Unregister:
        return self.dispatcher.on_any(handler)

    def on_session_start(self, handler: Handler) -> Unregister:
        return self.dispatcher.on_session_start(handler)

    def on_any_error_start(self, handler: Handler) -> Unregister:
        return self.dispatcher.on_any_error_start(handler)

    def on_any_error_end(self, handler: Handler) -> Unregister:
        return self.dispatcher.on_any_error_end(handler)

    def on_unhandled_error_start(self, handler: Handler) -> Unregister:
        return self.dispatcher.on_unhandled_error_start(handler)

    def on_unhandled_error_end(self, handler: Handler) -> Unregister:
        return self.dispatcher.on_unhandled_error_end(handler)

    async def flush(self) -> None:
        await self._outbound.flush()

    # =========================================================================
    # Transport callbacks
    # =========================================================================

    def _handle_frame(self, text: str, handle: TransportHandle) -> None:
        try:
            envelope = Envelope.from_json(text)
        except ProtocolValidationError as e:
            logger.warning("invalid_envelope", error=str(e))
            return

        if isinstance(envelope.payload, SessionEnding):
            self.connection.deprecate_socket(handle)

        try:
            self.dispatcher.dispatch(envelope)
        except ProtocolStateError as e:
            logger.warning(
                "protocol_violation",
                conversation_id=envelope.conversation_id,
                event=envelope.payload_key,
                error=str(e),
            )

    def _handle_status(self, status: ConnectionStatus, error: Optional[BaseException]) -> None:
        if status is ConnectionStatus.CONNECTED:
            self._resolve_disconnect_errors()
        elif error is not None and not self._closing:
            self._report_disconnect(error)

    def _report_disconnect(self, error: BaseException) -> None:
        for session in self.dispatcher.sessions:
            if session.conversation_id in self._disconnected_sessions:
                continue
            self._disconnected_sessions.add(session.conversation_id)
            self._dispatch_local(
                Envelope(
                    session.conversation_id,
                    ErrorStart(error_id=WEBSOCKET_DISCONNECTED, message=str(error)),
                )
            )

    def _resolve_disconnect_errors(self) -> None:
        conversation_ids, self._disconnected_sessions = self._disconnected_sessions, set()
        for conversation_id in conversation_ids:
            if self.dispatcher.get_session(conversation_id) is not None:
                self._dispatch_local(Envelope(conversation_id, ErrorEnd(error_id=WEBSOCKET_DISCONNECTED)))

    def _report_send_failure(self, envelope: Envelope, error: BaseException) -> None:
        if self.dispatcher.get_session(envelope.conversation_id) is None:
            return
        details: Dict[str, Any] = {"event": envelope.payload_key}
        if isinstance(error, ConvStreamError) and error.code:
            details["code"] = error.code
        self._dispatch_local(
            Envelope(
                envelope.conversation_id,
                ErrorStart(error_id=EVENT_SEND_ERROR, message=str(error), details=details),
            )
        )

    def _dispatch_local(self, envelope: Envelope) -> None:
        try:
            self.dispatcher.dispatch(envelope)
        except ProtocolStateError as e:
            logger.warning("local_error_not_routed", conversation_id=envelope.conversation_id, error=str(e))
