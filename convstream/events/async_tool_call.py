"""
convstream - Async Tool Call

A tool call owned by the session, for work that outlives any one exchange.
"""

from typing import TYPE_CHECKING, Any, Dict, Optional

from convstream.events.node import EventNode, NodeContext
from convstream.handlers import Handler, HandlerList, Unregister
from convstream.models import AsyncToolCallEnd, AsyncToolCallStart, utc_now

if TYPE_CHECKING:
    from convstream.events.session import Session


class AsyncToolCall(EventNode):
    kind = "async_tool_call"
    _RECEIVERS = {
        AsyncToolCallStart: "_receive_start",
        AsyncToolCallEnd: "_receive_end",
    }

    def __init__(
        self,
        context: NodeContext,
        tool_call_id: str,
        session: "Session",
        start: Optional[AsyncToolCallStart] = None,
    ) -> None:
        super().__init__(context, tool_call_id, parent=session, start=start)
        self._end_handlers = HandlerList("async_tool_call.end")

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
        return {"tool_call_id": self.id}

    def on_tool_call_end(self, handler: Handler) -> Unregister:
        return self._end_handlers.add(handler)

    def send_tool_call_end(
        self,
        output: Optional[Any] = None,
        is_error: bool = False,
        cancelled: bool = False,
        meta_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Report the result and remove the call from its session."""
        self._assert_not_ended("send tool call end")
        end = AsyncToolCallEnd(
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
        self.delete()

    def _end_scope(self) -> None:
        self.send_tool_call_end()

    def _receive_end(self, end: AsyncToolCallEnd) -> None:
        self._end = end
        self.ended = True
        self._end_handlers.emit(end)
        self.delete()
