"""
convstream - Session

The runtime of one conversation: the root of the event tree.
"""

import weakref
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)

import structlog

from convstream.events.async_tool_call import AsyncToolCall
from convstream.events.exchange import Exchange
from convstream.events.input_stream import AsyncInputStream
from convstream.events.node import EventNode, NodeContext, make_id, run_scoped
from convstream.exceptions import ProtocolStateError
from convstream.handlers import Handler, HandlerList, Unregister
from convstream.models import (
    AsyncInputStreamStart,
    AsyncToolCallStart,
    CitationEndMarker,
    CitationMarker,
    ContentPartChunk,
    ContentPartEnd,
    ContentPartStart,
    EventPayload,
    ExchangeEnd,
    ExchangeStart,
    ExternalValue,
    HistoricalContentPart,
    HistoricalExchange,
    HistoricalMessage,
    InterruptEnd,
    InterruptStart,
    LabelUpdated,
    MessageEnd,
    MessageStart,
    SessionCapabilities,
    SessionEnd,
    SessionEnding,
    SessionStart,
    SessionStarted,
    ToolCallEnd,
    ToolCallStart,
    utc_now,
)

if TYPE_CHECKING:
    from convstream.events.dispatcher import EventDispatcher

logger = structlog.get_logger(__name__)


class Session(EventNode):
    """
    A conversation session.

    Sessions are created by :meth:`EventDispatcher.start_session` or lazily
    when the remote side sends the first event for a conversation id.

    Example:
        >>> async with dispatcher.start_session("conv-1") as session:
        ...     exchange = session.start_exchange()
        ...     await exchange.send_message_with_content_part("hi")
    """

    kind = "session"
    _RECEIVERS = {
        SessionStart: "_receive_start",
        SessionStarted: "_receive_started",
        SessionEnding: "_receive_ending",
        SessionEnd: "_receive_end",
        LabelUpdated: "_receive_label",
    }

    def __init__(
        self,
        context: NodeContext,
        dispatcher: "EventDispatcher",
        start: Optional[SessionStart] = None,
    ) -> None:
        super().__init__(context, context.conversation_id, start=start)
        self._dispatcher_ref = weakref.ref(dispatcher)
        self._exchanges: Dict[str, Exchange] = {}
        self._input_streams: Dict[str, AsyncInputStream] = {}
        self._async_tool_calls: Dict[str, AsyncToolCall] = {}
        self.label: Optional[str] = None
        self.remote_capabilities: Optional[SessionCapabilities] = None

        self._started_handlers = HandlerList("session.started")
        self._ending_handlers = HandlerList("session.ending")
        self._end_handlers = HandlerList("session.end")
        self._exchange_start_handlers = HandlerList("session.exchange_start")
        self._input_stream_start_handlers = HandlerList("session.async_input_stream_start")
        self._async_tool_call_start_handlers = HandlerList("session.async_tool_call_start")
        self._label_handlers = HandlerList("session.label_updated")
        self._any_error_start_handlers = HandlerList("session.any_error_start")
        self._any_error_end_handlers = HandlerList("session.any_error_end")

    @property
    def capabilities(self) -> SessionCapabilities:
        """Capabilities announced in this session's start event."""
        announced = self._start.capabilities if self._start is not None else None
        return SessionCapabilities.model_validate(announced or {})

    @property
    def exchanges(self) -> List[Exchange]:
        return list(self._exchanges.values())

    def get_exchange(self, exchange_id: str) -> Optional[Exchange]:
        return self._exchanges.get(exchange_id)

    @property
    def async_input_streams(self) -> List[AsyncInputStream]:
        return list(self._input_streams.values())

    def get_async_input_stream(self, stream_id: str) -> Optional[AsyncInputStream]:
        return self._input_streams.get(stream_id)

    @property
    def async_tool_calls(self) -> List[AsyncToolCall]:
        return list(self._async_tool_calls.values())

    def get_async_tool_call(self, tool_call_id: str) -> Optional[AsyncToolCall]:
        return self._async_tool_calls.get(tool_call_id)

    def _children(self) -> List[EventNode]:
        return [*self._exchanges.values(), *self._input_streams.values(), *self._async_tool_calls.values()]

    def _detach_child(self, child: EventNode) -> None:
        if isinstance(child, AsyncInputStream):
            self._input_streams.pop(child.id, None)
        elif isinstance(child, AsyncToolCall):
            self._async_tool_calls.pop(child.id, None)
        else:
            self._exchanges.pop(child.id, None)

    # =========================================================================
    # Handler registration
    # =========================================================================

    def on_session_started(self, handler: Handler) -> Unregister:
        return self._started_handlers.add(handler)

    def on_session_ending(self, handler: Handler) -> Unregister:
        return self._ending_handlers.add(handler)

    def on_session_end(self, handler: Handler) -> Unregister:
        return self._end_handlers.add(handler)

    def on_exchange_start(self, handler: Handler) -> Unregister:
        """Register ``handler(exchange)`` for exchanges started by the remote side."""
        return self._exchange_start_handlers.add(handler)

    def on_async_input_stream_start(self, handler: Handler) -> Unregister:
        """Register ``handler(stream)`` for input streams opened by the remote side."""
        return self._input_stream_start_handlers.add(handler)

    def on_async_tool_call_start(self, handler: Handler) -> Unregister:
        return self._async_tool_call_start_handlers.add(handler)

    def on_label_updated(self, handler: Handler) -> Unregister:
        return self._label_handlers.add(handler)

    def on_any_error_start(self, handler: Handler) -> Unregister:
        """Register ``handler(ErrorNotice)`` for error-starts anywhere in this session without a local handler."""
        return self._any_error_start_handlers.add(handler)

    def on_any_error_end(self, handler: Handler) -> Unregister:
        return self._any_error_end_handlers.add(handler)

    # =========================================================================
    # Sending
    # =========================================================================

    def start_exchange(
        self,
        exchange_id: Optional[str] = None,
        conversation_sequence: Optional[int] = None,
        meta_data: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[Exchange], Optional[Awaitable[Any]]]] = None,
    ) -> Union[Exchange, Awaitable[Any]]:
        """
        Start an exchange.

        With ``callback`` the call returns an awaitable that runs
        ``callback(exchange)`` and then ends the exchange, even on failure.
        """
        self._assert_not_ended("start exchange")
        exchange_id = exchange_id or make_id()
        if exchange_id in self._exchanges:
            raise ProtocolStateError(f"exchange {exchange_id} already exists in session {self.id}")

        start = ExchangeStart(
            exchange_id=exchange_id,
            conversation_sequence=conversation_sequence,
            timestamp=utc_now(),
            meta_data=meta_data,
        )
        exchange = Exchange(self._context, exchange_id, self, start)
        self._exchanges[exchange_id] = exchange
        self._emit(start)

        if callback is not None:
            return run_scoped(exchange, callback)
        return exchange

    def start_async_input_stream(
        self,
        mime_type: str,
        stream_id: Optional[str] = None,
        start_of_speech_sensitivity: Optional[str] = None,
        end_of_speech_sensitivity: Optional[str] = None,
        prefix_padding_ms: Optional[int] = None,
        silence_duration_ms: Optional[int] = None,
        meta_data: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[AsyncInputStream], Optional[Awaitable[Any]]]] = None,
    ) -> Union[AsyncInputStream, Awaitable[Any]]:
        """
        Open an input stream that is not bound to an exchange.

        With ``callback`` the call returns an awaitable that runs
        ``callback(stream)`` and then ends the stream, even on failure.
        """
        self._assert_not_ended("start async input stream")
        stream_id = stream_id or make_id()
        if stream_id in self._input_streams:
            raise ProtocolStateError(f"async input stream {stream_id} already exists in session {self.id}")

        start = AsyncInputStreamStart(
            stream_id=stream_id,
            mime_type=mime_type,
            start_of_speech_sensitivity=start_of_speech_sensitivity,
            end_of_speech_sensitivity=end_of_speech_sensitivity,
            prefix_padding_ms=prefix_padding_ms,
            silence_duration_ms=silence_duration_ms,
            timestamp=utc_now(),
            meta_data=meta_data,
        )
        stream = AsyncInputStream(self._context, stream_id, self, start)
        self._input_streams[stream_id] = stream
        self._emit(start)

        if callback is not None:
            return run_scoped(stream, callback)
        return stream

    def start_async_tool_call(
        self,
        tool_name: str,
        input: Optional[Any] = None,
        tool_call_id: Optional[str] = None,
        meta_data: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[AsyncToolCall], Optional[Awaitable[Any]]]] = None,
    ) -> Union[AsyncToolCall, Awaitable[Any]]:
        """Start a tool call owned by the session rather than a message."""
        self._assert_not_ended("start async tool call")
        tool_call_id = tool_call_id or make_id()
        if tool_call_id in self._async_tool_calls:
            raise ProtocolStateError(f"async tool call {tool_call_id} already exists in session {self.id}")

        start = AsyncToolCallStart(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            input=input,
            timestamp=utc_now(),
            meta_data=meta_data,
        )
        tool_call = AsyncToolCall(self._context, tool_call_id, self, start)
        self._async_tool_calls[tool_call_id] = tool_call
        self._emit(start)

        if callback is not None:
            return run_scoped(tool_call, callback)
        return tool_call

    def send_session_start(self) -> None:
        self._assert_not_ended("send session start")
        self._emit(self._start or SessionStart())

    def send_session_started(self, capabilities: Optional[Dict[str, Any]] = None) -> None:
        self._assert_not_ended("send session started")
        self._emit(SessionStarted(capabilities=capabilities))

    def send_session_end(self, meta_data: Optional[Dict[str, Any]] = None) -> None:
        """End the session and remove it from its dispatcher."""
        self._assert_not_ended("send session end")
        end = SessionEnd(meta_data=meta_data)
        self._end = end
        self.ended = True
        self._emit(end)
        logger.info("session_ended", conversation_id=self.conversation_id, initiator="local")
        self.delete()

    def _end_scope(self) -> None:
        self.send_session_end()

    def delete(self) -> None:
        if self.deleted:
            return
        super().delete()
        dispatcher = self._dispatcher_ref()
        if dispatcher is not None:
            dispatcher._forget(self)

    # =========================================================================
    # Replay
    # =========================================================================

    def replay(self, exchanges: Iterable[Union[HistoricalExchange, Dict[str, Any]]]) -> None:
        """
        Feed historical exchanges through the tree as if they were streamed.

        Raises:
            ValueError: If a content part's citations overlap.
            ProtocolStateError: If an exchange with the same id already exists.
        """
        for exchange in exchanges:
            if not isinstance(exchange, HistoricalExchange):
                exchange = HistoricalExchange.model_validate(exchange)
            for payload in _exchange_events(exchange):
                self.route(payload)
            replayed = self._exchanges.get(exchange.exchange_id)
            if replayed is not None and exchange.feedback_rating is not None:
                replayed.feedback_rating = exchange.feedback_rating

    # =========================================================================
    # Inbound
    # =========================================================================

    def _child_for(self, payload: EventPayload) -> Tuple[Optional[EventNode], bool]:
        # Exchange ids win: tool calls inside messages are addressed through their exchange
        exchange_id = getattr(payload, "exchange_id", None)
        if exchange_id is not None:
            return self._locate(
                self._exchanges,
                exchange_id,
                payload,
                lambda child_id, start: Exchange(self._context, child_id, self, start),
                ExchangeStart,
            )

        stream_id = getattr(payload, "stream_id", None)
        if stream_id is not None:
            return self._locate(
                self._input_streams,
                stream_id,
                payload,
                lambda child_id, start: AsyncInputStream(self._context, child_id, self, start),
                AsyncInputStreamStart,
            )

        tool_call_id = getattr(payload, "tool_call_id", None)
        if tool_call_id is not None:
            return self._locate(
                self._async_tool_calls,
                tool_call_id,
                payload,
                lambda child_id, start: AsyncToolCall(self._context, child_id, self, start),
                AsyncToolCallStart,
            )

        return None, False

    def _child_started(self, child: EventNode) -> None:
        if isinstance(child, AsyncInputStream):
            self._input_stream_start_handlers.emit(child)
        elif isinstance(child, AsyncToolCall):
            self._async_tool_call_start_handlers.emit(child)
        else:
            self._exchange_start_handlers.emit(child)

    def _receive_started(self, payload: SessionStarted) -> None:
        if payload.capabilities is not None:
            self.remote_capabilities = SessionCapabilities.model_validate(payload.capabilities)
        self._started_handlers.emit(payload)

    def _receive_ending(self, payload: SessionEnding) -> None:
        logger.info(
            "session_ending",
            conversation_id=self.conversation_id,
            time_to_live_ms=payload.time_to_live_ms,
        )
        self._ending_handlers.emit(payload)

    def _receive_label(self, payload: LabelUpdated) -> None:
        self.label = payload.label
        self._label_handlers.emit(payload)

    def _receive_end(self, payload: SessionEnd) -> None:
        self._end = payload
        self.ended = True
        logger.info("session_ended", conversation_id=self.conversation_id, initiator="remote")
        self._end_handlers.emit(payload)
        self.delete()


# =============================================================================
# History -> events
# =============================================================================


def _exchange_events(exchange: HistoricalExchange) -> Iterator[EventPayload]:
    exchange_id = exchange.exchange_id
    yield ExchangeStart(exchange_id=exchange_id, timestamp=exchange.created_time)
    for message in exchange.messages:
        yield from _message_events(exchange_id, message)
    yield ExchangeEnd(exchange_id=exchange_id)


def _message_events(exchange_id: str, message: HistoricalMessage) -> Iterator[EventPayload]:
    ids = {"exchange_id": exchange_id, "message_id": message.message_id}
    yield MessageStart(role=message.role, timestamp=message.created_time, **ids)

    for part in message.content_parts:
        yield from _content_part_events(ids, part)

    for tool_call in message.tool_calls:
        yield ToolCallStart(
            tool_call_id=tool_call.tool_call_id,
            tool_name=tool_call.name,
            input=tool_call.input,
            timestamp=tool_call.timestamp,
            **ids,
        )
        result = tool_call.result
        if result is not None:
            yield ToolCallEnd(
                tool_call_id=tool_call.tool_call_id,
                output=result.output,
                is_error=result.is_error,
                cancelled=result.cancelled,
                timestamp=result.timestamp,
                **ids,
            )

    for interrupt in message.interrupts:
        yield InterruptStart(
            interrupt_id=interrupt.interrupt_id,
            type=interrupt.type,
            value=interrupt.interrupt_value,
            **ids,
        )
        if interrupt.end_value is not None:
            yield InterruptEnd(interrupt_id=interrupt.interrupt_id, value=interrupt.end_value, **ids)

    yield MessageEnd(**ids)


def _content_part_events(ids: Dict[str, str], part: HistoricalContentPart) -> Iterator[EventPayload]:
    part_ids = {**ids, "content_part_id": part.content_part_id}
    external = None
    if part.data.inline is None and part.data.uri:
        external = ExternalValue(uri=part.data.uri, byte_count=part.data.byte_count)

    meta_data = {"isTranscript": True} if part.is_transcript else None
    yield ContentPartStart(
        mime_type=part.mime_type,
        name=part.name,
        external_value=external,
        timestamp=part.created_time,
        meta_data=meta_data,
        **part_ids,
    )

    if part.data.inline is not None:
        text = part.data.inline if isinstance(part.data.inline, str) else str(part.data.inline)
        cursor = 0
        for citation in sorted(part.citations, key=lambda c: c.offset):
            if citation.offset < cursor:
                raise ValueError(
                    f"Overlapping citations in content part {part.content_part_id}: "
                    f"{citation.citation_id} starts at {citation.offset}, previous ends at {cursor}"
                )
            if citation.offset > cursor:
                yield ContentPartChunk(data=text[cursor:citation.offset], **part_ids)
            end = citation.offset + citation.length
            yield ContentPartChunk(
                data=text[citation.offset:end],
                citation=CitationMarker(
                    citation_id=citation.citation_id,
                    start_citation={},
                    end_citation=CitationEndMarker(sources=citation.sources),
                ),
                **part_ids,
            )
            cursor = end
        if cursor < len(text):
            yield ContentPartChunk(data=text[cursor:], **part_ids)

    yield ContentPartEnd(interrupted=part.is_incomplete or None, **part_ids)
