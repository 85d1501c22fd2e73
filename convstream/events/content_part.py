"""
convstream - Content Part

One streamed fragment of a message. Chunks are buffered in arrival order and
citation markers carried by the chunks are resolved into offset/length
ranges over the buffered text.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import structlog

from convstream.events.node import EventNode, NodeContext
from convstream.exceptions import ProtocolStateError
from convstream.handlers import Handler, Unregister, HandlerList
from convstream.models import (
    Citation,
    CitationEndMarker,
    CitationError,
    CitationErrorType,
    CitationMarker,
    CitationSource,
    CompletedContentPart,
    ContentPartChunk,
    ContentPartEnd,
    ContentPartStart,
    utc_now,
)

if TYPE_CHECKING:
    from convstream.events.message import Message

logger = structlog.get_logger(__name__)

DEFAULT_MIME_TYPE = "text/plain"


class ContentPart(EventNode):
    """
    A content part inside a message.

    Example:
        >>> part = message.start_content_part(mime_type="text/markdown")
        >>> part.send_chunk_with_citation_start("c1", "The sky is blue")
        >>> part.send_chunk_with_citation_end("c1", ".", sources=[{"title": "Physics 101"}])
        >>> part.send_content_part_end()
        >>> part.to_completed().citations[0].length
        16
    """

    kind = "content_part"
    _RECEIVERS = {
        ContentPartStart: "_receive_start",
        ContentPartChunk: "_receive_chunk",
        ContentPartEnd: "_receive_end",
    }

    def __init__(
        self,
        context: NodeContext,
        content_part_id: str,
        message: "Message",
        start: Optional[ContentPartStart] = None,
    ) -> None:
        super().__init__(context, content_part_id, parent=message, start=start)
        self._exchange_id = message.exchange_id
        self._message_id = message.id

        self._chunks: List[str] = []
        self._length = 0
        # citation id -> (offset, created time)
        self._open_citations: Dict[str, Tuple[int, str]] = {}
        self._citations: List[Citation] = []
        self._citation_errors: List[CitationError] = []
        self._completed: Optional[CompletedContentPart] = None

        self._chunk_handlers = HandlerList("content_part.chunk")
        self._end_handlers = HandlerList("content_part.end")
        self._completed_handlers = HandlerList("content_part.completed")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def content_part_id(self) -> str:
        return self.id

    @property
    def exchange_id(self) -> str:
        return self._exchange_id

    @property
    def message_id(self) -> str:
        return self._message_id

    @property
    def mime_type(self) -> str:
        if self._start is None:
            return DEFAULT_MIME_TYPE
        return self._start.mime_type

    @property
    def name(self) -> Optional[str]:
        return self._start.name if self._start is not None else None

    @property
    def meta_data(self) -> Dict[str, Any]:
        if self._start is None or self._start.meta_data is None:
            return {}
        return self._start.meta_data

    @property
    def is_text(self) -> bool:
        return self.mime_type.startswith("text/")

    @property
    def is_markdown(self) -> bool:
        return self.mime_type == "text/markdown"

    @property
    def is_html(self) -> bool:
        return self.mime_type == "text/html"

    @property
    def is_audio(self) -> bool:
        return self.mime_type.startswith("audio/")

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_transcript(self) -> bool:
        return bool(self.meta_data.get("isTranscript"))

    @property
    def is_incomplete(self) -> bool:
        return bool(self._end is not None and self._end.interrupted)

    @property
    def data(self) -> str:
        """Chunks received or sent so far, concatenated in order."""
        return "".join(self._chunks)

    @property
    def chunks(self) -> List[str]:
        return list(self._chunks)

    @property
    def citations(self) -> List[Citation]:
        return list(self._citations)

    @property
    def citation_errors(self) -> List[CitationError]:
        return list(self._citation_errors)

    def _address(self) -> Dict[str, str]:
        return {
            "exchange_id": self._exchange_id,
            "message_id": self._message_id,
            "content_part_id": self.id,
        }

    # =========================================================================
    # Handler registration
    # =========================================================================

    def on_chunk(self, handler: Handler) -> Unregister:
        """Register ``handler(chunk)`` for every inbound chunk."""
        return self._chunk_handlers.add(handler)

    def on_content_part_end(self, handler: Handler) -> Unregister:
        return self._end_handlers.add(handler)

    def on_completed(self, handler: Handler) -> Unregister:
        """Register ``handler(CompletedContentPart)`` for when the part ends."""
        return self._completed_handlers.add(handler)

    # =========================================================================
    # Sending
    # =========================================================================

    def send_chunk(self, data: str, citation: Optional[CitationMarker] = None) -> None:
        self._assert_not_ended("send chunk")
        chunk = ContentPartChunk(
            exchange_id=self._exchange_id,
            message_id=self._message_id,
            content_part_id=self.id,
            data=data,
            citation=citation,
        )
        self._append(chunk)
        self._emit(chunk)

    def send_chunk_with_citation_start(self, citation_id: str, data: str = "") -> None:
        """Send ``data`` and open citation ``citation_id`` at its first character."""
        self.send_chunk(data, CitationMarker(citation_id=citation_id, start_citation={}))

    def send_chunk_with_citation_end(
        self,
        citation_id: str,
        data: str = "",
        sources: Optional[List[Any]] = None,
    ) -> None:
        """Send ``data`` and close citation ``citation_id`` after its last character."""
        self.send_chunk(
            data,
            CitationMarker(citation_id=citation_id, end_citation=_end_marker(sources)),
        )

    def send_chunk_with_citation(
        self,
        citation_id: str,
        data: str,
        sources: Optional[List[Any]] = None,
    ) -> None:
        """Send ``data`` cited in full by ``sources``."""
        self.send_chunk(
            data,
            CitationMarker(
                citation_id=citation_id,
                start_citation={},
                end_citation=_end_marker(sources),
            ),
        )

    def send_content_part_end(
        self,
        interrupted: bool = False,
        meta_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._assert_not_ended("send content part end")
        end = ContentPartEnd(
            exchange_id=self._exchange_id,
            message_id=self._message_id,
            content_part_id=self.id,
            last_chunk_content_part_sequence=len(self._chunks) or None,
            interrupted=interrupted or None,
            meta_data=meta_data,
        )
        self._finish(end)
        self._emit(end)

    def _end_scope(self) -> None:
        self.send_content_part_end()

    async def fetch_external_data(self) -> str:
        """
        Load the payload of a part whose data lives outside the stream.

        Raises:
            ProtocolStateError: If the part has no external value or no
                history client is configured.
        """
        if self._start is None or self._start.external_value is None:
            raise ProtocolStateError(f"content_part {self.id} has no external value")
        history = self._context.history
        if history is None:
            raise ProtocolStateError("No history client configured")
        return await history.fetch_external_data(self._start.external_value.uri)

    # =========================================================================
    # Buffering
    # =========================================================================

    def _append(self, chunk: ContentPartChunk) -> None:
        marker = chunk.citation

        if marker is not None and marker.is_start:
            self._open_citations[marker.citation_id] = (self._length, utc_now())

        self._chunks.append(chunk.data)
        self._length += len(chunk.data)

        if marker is not None and marker.is_end:
            opened = self._open_citations.pop(marker.citation_id, None)
            if opened is None:
                self._citation_errors.append(
                    CitationError(marker.citation_id, CitationErrorType.NOT_STARTED)
                )
                logger.debug(
                    "citation_not_started",
                    conversation_id=self.conversation_id,
                    content_part_id=self.id,
                    citation_id=marker.citation_id,
                )
                return

            offset, created_time = opened
            self._citations.append(
                Citation(
                    citation_id=marker.citation_id,
                    offset=offset,
                    length=self._length - offset,
                    sources=marker.end_citation.sources,
                    created_time=created_time,
                    updated_time=utc_now(),
                )
            )

    def _finish(self, end: ContentPartEnd) -> None:
        self._end = end
        self.ended = True

        for citation_id in self._open_citations:
            self._citation_errors.append(CitationError(citation_id, CitationErrorType.NOT_ENDED))
        self._open_citations.clear()

    def to_completed(self) -> CompletedContentPart:
        """Aggregate the buffered state; open citations are reported as defects."""
        if self._completed is not None:
            return self._completed

        errors = list(self._citation_errors)
        errors.extend(
            CitationError(citation_id, CitationErrorType.NOT_ENDED)
            for citation_id in self._open_citations
        )
        completed = CompletedContentPart(
            content_part_id=self.id,
            mime_type=self.mime_type,
            data=self.data,
            citations=list(self._citations),
            citation_errors=errors,
            name=self.name,
            is_transcript=self.is_transcript,
            is_incomplete=self.is_incomplete,
            external_value=self._start.external_value if self._start is not None else None,
            meta_data=dict(self.meta_data),
        )
        if self.ended:
            self._completed = completed
        return completed

    # =========================================================================
    # Inbound
    # =========================================================================

    def _receive_chunk(self, chunk: ContentPartChunk) -> None:
        self._append(chunk)
        self._chunk_handlers.emit(chunk)

    def _receive_end(self, end: ContentPartEnd) -> None:
        self._finish(end)
        self._end_handlers.emit(end)

        message = self.parent
        wants_completion = self._completed_handlers or (
            message is not None and message._content_part_completed_handlers
        )
        if wants_completion:
            completed = self.to_completed()
            self._completed_handlers.emit(completed)
            if message is not None:
                message._content_part_completed(completed)


def _end_marker(sources: Optional[List[Any]]) -> CitationEndMarker:
    return CitationEndMarker(
        sources=[
            source if isinstance(source, CitationSource) else CitationSource.model_validate(source)
            for source in sources or []
        ]
    )
