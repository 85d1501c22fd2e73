"""
convstream - Tool Call

A tool invocation requested inside a message and its result.
"""

from typing import TYPE_CHECKING, Any, Dict, Optional

from convstream.events.node import EventNode, NodeContext
from convstream.handlers import Handler, HandlerList, Unregister
from convstream.models import CompletedToolCall, ToolCallEnd, ToolCallStart, utc_now

if TYPE_CHECKING:
    from convstream.events.message import Message


class ToolCall(EventNode):
    kind = "tool_call"
    _RECEIVERS = {
        ToolCallStart: "_receive_start",
        ToolCallEnd: "_receive_end",
    }

    def __init__(
        self,
        context: NodeContext,
        tool_call_id: str,
        message: "Message",
        start: Optional[ToolCallStart] = None,
    ) -> None:
        super().__init__(context, tool_call_id, parent=message, start=start)
        self._exchange_id = message.exchange_id
        self._message_id = message.id
        self._end_handlers = HandlerList("tool_call.end")
        self._completed_handlers = HandlerList("tool_call.completed")

    @property
    def tool_call_id(self) -> str:
        return self.id

    @property
    def tool_name(self) -> Optional[str]:
        return self._start.tool_name if self._start is not None else None

    @property
    def input(self) -> Optional[Any]:
        return self._start.input if self._start is not None else None

    @property
    def output(self) -> Optional[Any]:
        return self._end.output if self._end is not None else None

    @property
    def is_error(self) -> bool:
        return bool(self._end is not None and self._end.is_error)

    @property
    def cancelled(self) -> bool:
        return bool(self._end is not None and self._end.cancelled)

    def _address(self) -> Dict[str, str]:
        return {
            "exchange_id": self._exchange_id,
            "message_id": self._message_id,
            "tool_call_id": self.id,
        }

    def on_tool_call_end(self, handler: Handler) -> Unregister:
        return self._end_handlers.add(handler)

    def on_completed(self, handler: Handler) -> Unregister:
        return self._completed_handlers.add(handler)

    def send_tool_call_end(
        self,
        output: Optional[Any] = None,
        is_error: bool = False,
        cancelled: bool = False,
        meta_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._assert_not_ended("send tool call end")
        end = ToolCallEnd(
            exchange_id=self._exchange_id,
            message_id=self._message_id,
            tool_call_id=self.id,
            output=output,
            is_error=is_error or None,
            cancelled=cancelled or None,
            timestamp=utc_now(),
            meta_data=meta_data,
        )
        self._end = end
        self.ended = True
        self._emit(end)

    def _end_scope(self) -> None:
        self.send_tool_call_end()

    def to_completed(self) -> CompletedToolCall:
        return CompletedToolCall(
            tool_call_id=self.id,
            tool_name=self.tool_name or "",
            input=self.input,
            output=self.output,
            is_error=self.is_error,
            cancelled=self.cancelled,
            start_time=self._start.timestamp if self._start is not None else None,
            end_time=self._end.timestamp if self._end is not None else None,
        )

    def _receive_end(self, end: ToolCallEnd) -> None:
        self._end = end
        self.ended = True
        self._end_handlers.emit(end)

        message = self.parent
        wants_completion = self._completed_handlers or (
            message is not None and message._tool_call_completed_handlers
        )
        if wants_completion:
            completed = self.to_completed()
            self._completed_handlers.emit(completed)
            if message is not None:
                message._tool_call_completed(completed)
