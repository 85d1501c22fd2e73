"""
convstream - Message

One role-tagged turn inside an exchange. Owns its content parts, tool calls
and interrupts.
"""

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import structlog

from convstream.events.content_part import ContentPart
from convstream.events.node import EventNode, NodeContext, make_id, run_scoped
from convstream.events.tool_call import ToolCall
from convstream.exceptions import ProtocolStateError
from convstream.handlers import Handler, HandlerList, Unregister
from convstream.models import (
    CompletedContentPart,
    CompletedMessage,
    CompletedToolCall,
    ContentPartStart,
    EventPayload,
    Interrupt,
    InterruptEnd,
    InterruptStart,
    MessageEnd,
    MessageRole,
    MessageStart,
    ToolCallStart,
    utc_now,
)

if TYPE_CHECKING:
    from convstream.events.exchange import Exchange

logger = structlog.get_logger(__name__)


class Message(EventNode):
    """
    A message inside an exchange.

    Example:
        >>> message = exchange.start_message(role=MessageRole.ASSISTANT)
        >>> part = message.start_content_part(mime_type="text/markdown")
        >>> part.send_chunk("Hello")
        >>> part.send_content_part_end()
        >>> message.send_message_end()
    """

    kind = "message"
    _RECEIVERS = {
        MessageStart: "_receive_start",
        MessageEnd: "_receive_end",
        InterruptStart: "_receive_interrupt_start",
        InterruptEnd: "_receive_interrupt_end",
    }

    def __init__(
        self,
        context: NodeContext,
        message_id: str,
        exchange: "Exchange",
        start: Optional[MessageStart] = None,
    ) -> None:
        super().__init__(context, message_id, parent=exchange, start=start)
        self._exchange_id = exchange.id
        self._content_parts: Dict[str, ContentPart] = {}
        self._tool_calls: Dict[str, ToolCall] = {}
        self._interrupts: Dict[str, Interrupt] = {}

        self._end_handlers = HandlerList("message.end")
        self._content_part_start_handlers = HandlerList("message.content_part_start")
        self._content_part_completed_handlers = HandlerList("message.content_part_completed")
        self._tool_call_start_handlers = HandlerList("message.tool_call_start")
        self._tool_call_completed_handlers = HandlerList("message.tool_call_completed")
        self._interrupt_start_handlers = HandlerList("message.interrupt_start")
        self._interrupt_end_handlers = HandlerList("message.interrupt_end")
        self._completed_handlers = HandlerList("message.completed")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def message_id(self) -> str:
        return self.id

    @property
    def exchange_id(self) -> str:
        return self._exchange_id

    @property
    def role(self) -> Optional[MessageRole]:
        return self._start.role if self._start is not None else None

    @property
    def is_user(self) -> bool:
        return self.role is MessageRole.USER

    @property
    def is_assistant(self) -> bool:
        return self.role is MessageRole.ASSISTANT

    @property
    def is_system(self) -> bool:
        return self.role is MessageRole.SYSTEM

    @property
    def is_tool(self) -> bool:
        return self.role is MessageRole.TOOL

    @property
    def content_parts(self) -> List[ContentPart]:
        return list(self._content_parts.values())

    @property
    def tool_calls(self) -> List[ToolCall]:
        return list(self._tool_calls.values())

    @property
    def interrupts(self) -> List[Interrupt]:
        return list(self._interrupts.values())

    def get_content_part(self, content_part_id: str) -> Optional[ContentPart]:
        return self._content_parts.get(content_part_id)

    def get_tool_call(self, tool_call_id: str) -> Optional[ToolCall]:
        return self._tool_calls.get(tool_call_id)

    def get_interrupt(self, interrupt_id: str) -> Optional[Interrupt]:
        return self._interrupts.get(interrupt_id)

    def _address(self) -> Dict[str, str]:
        return {"exchange_id": self._exchange_id, "message_id": self.id}

    def _children(self) -> List[EventNode]:
        return [*self._content_parts.values(), *self._tool_calls.values()]

    def _detach_child(self, child: EventNode) -> None:
        if isinstance(child, ContentPart):
            self._content_parts.pop(child.id, None)
        elif isinstance(child, ToolCall):
            self._tool_calls.pop(child.id, None)

    # =========================================================================
    # Handler registration
    # =========================================================================

    def on_message_end(self, handler: Handler) -> Unregister:
        return self._end_handlers.add(handler)

    def on_content_part_start(self, handler: Handler) -> Unregister:
        """Register ``handler(content_part)`` for content parts started by the remote side."""
        return self._content_part_start_handlers.add(handler)

    def on_content_part_completed(self, handler: Handler) -> Unregister:
        """Register ``handler(CompletedContentPart)`` for each content part that ends."""
        return self._content_part_completed_handlers.add(handler)

    def on_tool_call_start(self, handler: Handler) -> Unregister:
        return self._tool_call_start_handlers.add(handler)

    def on_tool_call_completed(self, handler: Handler) -> Unregister:
        return self._tool_call_completed_handlers.add(handler)

    def on_interrupt_start(self, handler: Handler) -> Unregister:
        return self._interrupt_start_handlers.add(handler)

    def on_interrupt_end(self, handler: Handler) -> Unregister:
        return self._interrupt_end_handlers.add(handler)

    def on_completed(self, handler: Handler) -> Unregister:
        """Register ``handler(CompletedMessage)`` for when the message ends."""
        return self._completed_handlers.add(handler)

    # =========================================================================
    # Sending
    # =========================================================================

    def start_content_part(
        self,
        content_part_id: Optional[str] = None,
        mime_type: str = "text/markdown",
        name: Optional[str] = None,
        is_transcript: bool = False,
        meta_data: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[ContentPart], Optional[Awaitable[Any]]]] = None,
    ) -> Union[ContentPart, Awaitable[Any]]:
        """
        Start a content part.

        With ``callback`` the call returns an awaitable that runs
        ``callback(part)`` and then ends the part, even on failure.
        """
        self._assert_not_ended("start content part")
        content_part_id = content_part_id or make_id()
        if content_part_id in self._content_parts:
            raise ProtocolStateError(f"content_part {content_part_id} already exists in message {self.id}")

        if is_transcript:
            meta_data = {**(meta_data or {}), "isTranscript": True}

        start = ContentPartStart(
            exchange_id=self._exchange_id,
            message_id=self.id,
            content_part_id=content_part_id,
            mime_type=mime_type,
            name=name,
            timestamp=utc_now(),
            meta_data=meta_data,
        )
        part = ContentPart(self._context, content_part_id, self, start)
        self._content_parts[content_part_id] = part
        self._emit(start)

        if callback is not None:
            return run_scoped(part, callback)
        return part

    def send_content_part(
        self,
        data: str,
        mime_type: str = "text/markdown",
        content_part_id: Optional[str] = None,
    ) -> ContentPart:
        """Start a content part, send ``data`` as one chunk and end it."""
        part = self.start_content_part(content_part_id=content_part_id, mime_type=mime_type)
        part.send_chunk(data)
        part.send_content_part_end()
        return part

    def start_tool_call(
        self,
        tool_name: str,
        tool_call_id: Optional[str] = None,
        input: Optional[Any] = None,
        meta_data: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[ToolCall], Optional[Awaitable[Any]]]] = None,
    ) -> Union[ToolCall, Awaitable[Any]]:
        self._assert_not_ended("start tool call")
        tool_call_id = tool_call_id or make_id()
        if tool_call_id in self._tool_calls:
            raise ProtocolStateError(f"tool_call {tool_call_id} already exists in message {self.id}")

        start = ToolCallStart(
            exchange_id=self._exchange_id,
            message_id=self.id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            input=input,
            timestamp=utc_now(),
            meta_data=meta_data,
        )
        tool_call = ToolCall(self._context, tool_call_id, self, start)
        self._tool_calls[tool_call_id] = tool_call
        self._emit(start)

        if callback is not None:
            return run_scoped(tool_call, callback)
        return tool_call

    def send_interrupt(
        self,
        interrupt_type: str,
        value: Optional[Any] = None,
        interrupt_id: Optional[str] = None,
    ) -> Interrupt:
        self._assert_not_ended("send interrupt")
        interrupt_id = interrupt_id or make_id()
        if interrupt_id in self._interrupts:
            raise ProtocolStateError(f"interrupt {interrupt_id} already exists in message {self.id}")

        interrupt = Interrupt(interrupt_id=interrupt_id, type=interrupt_type, value=value, start_time=utc_now())
        self._interrupts[interrupt_id] = interrupt
        self._emit(
            InterruptStart(
                exchange_id=self._exchange_id,
                message_id=self.id,
                interrupt_id=interrupt_id,
                type=interrupt_type,
                value=value,
            )
        )
        return interrupt

    def send_interrupt_end(self, interrupt_id: str, value: Optional[Any] = None) -> None:
        """Resolve an interrupt, typically one raised by the remote side."""
        self._assert_not_ended("send interrupt end")
        interrupt = self._interrupts.get(interrupt_id)
        if interrupt is not None:
            if interrupt.ended:
                raise ProtocolStateError(f"interrupt {interrupt_id} has already ended")
            interrupt.end_value = value
            interrupt.ended = True
            interrupt.end_time = utc_now()

        self._emit(
            InterruptEnd(
                exchange_id=self._exchange_id,
                message_id=self.id,
                interrupt_id=interrupt_id,
                value=value,
            )
        )

    def send_message_end(self, meta_data: Optional[Dict[str, Any]] = None) -> None:
        self._assert_not_ended("send message end")
        end = MessageEnd(exchange_id=self._exchange_id, message_id=self.id, meta_data=meta_data)
        self._end = end
        self.ended = True
        self._emit(end)

    def _end_scope(self) -> None:
        self.send_message_end()

    def to_completed(self) -> CompletedMessage:
        return CompletedMessage(
            message_id=self.id,
            role=self.role,
            content_parts=[part.to_completed() for part in self._content_parts.values()],
            tool_calls=[tool_call.to_completed() for tool_call in self._tool_calls.values()],
            interrupts=list(self._interrupts.values()),
            meta_data=dict(self._start.meta_data or {}) if self._start is not None else {},
        )

    # =========================================================================
    # Inbound
    # =========================================================================

    def _child_for(self, payload: EventPayload) -> Tuple[Optional[EventNode], bool]:
        content_part_id = getattr(payload, "content_part_id", None)
        if content_part_id is not None:
            return self._locate(
                self._content_parts,
                content_part_id,
                payload,
                lambda child_id, start: ContentPart(self._context, child_id, self, start),
                ContentPartStart,
            )

        tool_call_id = getattr(payload, "tool_call_id", None)
        if tool_call_id is not None:
            return self._locate(
                self._tool_calls,
                tool_call_id,
                payload,
                lambda child_id, start: ToolCall(self._context, child_id, self, start),
                ToolCallStart,
            )

        return None, False

    def _child_started(self, child: EventNode) -> None:
        if isinstance(child, ContentPart):
            self._content_part_start_handlers.emit(child)
        elif isinstance(child, ToolCall):
            self._tool_call_start_handlers.emit(child)

    def _content_part_completed(self, completed: CompletedContentPart) -> None:
        self._content_part_completed_handlers.emit(completed)

    def _tool_call_completed(self, completed: CompletedToolCall) -> None:
        self._tool_call_completed_handlers.emit(completed)

    def _receive_interrupt_start(self, payload: InterruptStart) -> None:
        if payload.interrupt_id in self._interrupts:
            raise ProtocolStateError(f"interrupt {payload.interrupt_id} has already started")
        interrupt = Interrupt(
            interrupt_id=payload.interrupt_id,
            type=payload.type,
            value=payload.value,
            start_time=utc_now(),
        )
        self._interrupts[payload.interrupt_id] = interrupt
        self._interrupt_start_handlers.emit(interrupt)

    def _receive_interrupt_end(self, payload: InterruptEnd) -> None:
        interrupt = self._interrupts.get(payload.interrupt_id)
        if interrupt is None:
            raise ProtocolStateError(f"InterruptEnd addressed to unknown interrupt {payload.interrupt_id}")
        if interrupt.ended:
            raise ProtocolStateError(f"interrupt {payload.interrupt_id} has already ended")
        interrupt.end_value = payload.value
        interrupt.ended = True
        interrupt.end_time = utc_now()
        self._interrupt_end_handlers.emit(interrupt)

    def _receive_end(self, end: MessageEnd) -> None:
        self._end = end
        self.ended = True
        self._end_handlers.emit(end)

        exchange = self.parent
        wants_completion = self._completed_handlers or (
            exchange is not None and exchange._message_completed_handlers
        )
        if wants_completion:
            completed = self.to_completed()
            self._completed_handlers.emit(completed)
            if exchange is not None:
                exchange._message_completed_handlers.emit(completed)
