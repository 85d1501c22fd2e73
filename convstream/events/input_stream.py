"""
convstream - Async Input Stream

A media stream owned by the session, used for input (usually audio) that
is not tied to an exchange. Chunks are forwarded as they arrive and are not
buffered.
"""

from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from convstream.events.node import EventNode, NodeContext
from convstream.handlers import Handler, HandlerList, Unregister
from convstream.models import AsyncInputStreamChunk, AsyncInputStreamEnd, AsyncInputStreamStart

if TYPE_CHECKING:
    from convstream.events.session import Session

logger = structlog.get_logger(__name__)


class AsyncInputStream(EventNode):
    """
    An async input stream inside a session.

    The stream removes itself from the session once its end event has been
    sent or received.

    Example:
        >>> stream = session.start_async_input_stream(mime_type="audio/pcm")
        >>> stream.send_chunk(base64_frame)
        >>> stream.send_async_input_stream_end()
    """

    kind = "async_input_stream"
    _RECEIVERS = {
        AsyncInputStreamStart: "_receive_start",
        AsyncInputStreamChunk: "_receive_chunk",
        AsyncInputStreamEnd: "_receive_end",
    }

    def __init__(
        self,
        context: NodeContext,
        stream_id: str,
        session: "Session",
        start: Optional[AsyncInputStreamStart] = None,
    ) -> None:
        super().__init__(context, stream_id, parent=session, start=start)
        self.chunk_count = 0

        self._chunk_handlers = HandlerList("async_input_stream.chunk")
        self._end_handlers = HandlerList("async_input_stream.end")

    @property
    def stream_id(self) -> str:
        return self.id

    @property
    def mime_type(self) -> Optional[str]:
        return self._start.mime_type if self._start is not None else None

    @property
    def meta_data(self) -> Dict[str, Any]:
        if self._start is None or self._start.meta_data is None:
            return {}
        return self._start.meta_data

    def _address(self) -> Dict[str, str]:
        return {"stream_id": self.id}

    # =========================================================================
    # Handler registration
    # =========================================================================

    def on_chunk(self, handler: Handler) -> Unregister:
        """Register ``handler(AsyncInputStreamChunk)`` for every inbound chunk."""
        return self._chunk_handlers.add(handler)

    def on_async_input_stream_end(self, handler: Handler) -> Unregister:
        return self._end_handlers.add(handler)

    # =========================================================================
    # Sending
    # =========================================================================

    def send_chunk(self, data: str) -> None:
        self._assert_not_ended("send chunk")
        self.chunk_count += 1
        self._emit(AsyncInputStreamChunk(stream_id=self.id, data=data))

    def send_async_input_stream_end(self, meta_data: Optional[Dict[str, Any]] = None) -> None:
        """End the stream and remove it from its session."""
        self._assert_not_ended("send async input stream end")
        end = AsyncInputStreamEnd(
            stream_id=self.id,
            last_chunk_content_part_sequence=self.chunk_count or None,
            meta_data=meta_data,
        )
        self._end = end
        self.ended = True
        self._emit(end)
        self.delete()

    def _end_scope(self) -> None:
        self.send_async_input_stream_end()

    # =========================================================================
    # Inbound
    # =========================================================================

    def _receive_chunk(self, chunk: AsyncInputStreamChunk) -> None:
        self.chunk_count += 1
        self._chunk_handlers.emit(chunk)

    def _receive_end(self, end: AsyncInputStreamEnd) -> None:
        self._end = end
        self.ended = True
        logger.debug(
            "async_input_stream_ended",
            conversation_id=self.conversation_id,
            stream_id=self.id,
            chunks=self.chunk_count,
        )
        self._end_handlers.emit(end)
        self.delete()
