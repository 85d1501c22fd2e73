"""
convstream - Models

Wire payload models, history records returned by the REST collaborator and
the aggregates produced when a streamed node completes.

Payload models serialise with camelCase aliases; every payload class carries
the ``wire_key`` it occupies inside an envelope.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# Enums
# =============================================================================


class MessageRole(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class FeedbackRating(str, Enum):
    """Rating attached to a finished exchange."""

    POSITIVE = "positive"
    NEGATIVE = "negative"


class CitationErrorType(str, Enum):
    """Defects found while resolving citation ranges."""

    NOT_STARTED = "CitationNotStarted"
    NOT_ENDED = "CitationNotEnded"


# =============================================================================
# Base models
# =============================================================================


class WireModel(BaseModel):
    """Base for every model exchanged with the agent runtime."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> Dict[str, Any]:
        """Serialise with camelCase keys, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EventPayload(WireModel):
    """Base for the payload carried by an envelope."""

    wire_key: ClassVar[str] = ""


class CitationSource(WireModel):
    """A source referenced by a citation (a URL or a downloadable media item)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    title: str
    number: Optional[int] = None
    url: Optional[str] = None
    mime_type: Optional[str] = None
    download_url: Optional[str] = None
    page_number: Optional[int] = None


class ExternalValue(WireModel):
    """Reference to a payload stored outside the event stream."""

    uri: str
    byte_count: Optional[int] = None


class Citation(WireModel):
    """A resolved range of a content part's text and the sources backing it."""

    citation_id: str
    offset: int
    length: int
    sources: List[CitationSource] = Field(default_factory=list)
    id: Optional[str] = None
    created_time: Optional[str] = None
    updated_time: Optional[str] = None


# =============================================================================
# Session payloads
# =============================================================================


class SessionCapabilities(WireModel):
    """
    Features a participant announces when a session starts.

    Emitter flags say what this side will send, handler flags what it can
    receive. Unknown keys are kept for forward compatibility.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    async_input_stream_emitter: bool = False
    async_input_stream_handler: bool = False
    async_tool_call_emitter: bool = False
    async_tool_call_handler: bool = False
    mime_types_emitted: List[str] = Field(default_factory=list)
    mime_types_handled: List[str] = Field(default_factory=list)


class SessionStart(EventPayload):
    wire_key: ClassVar[str] = "startSession"

    capabilities: Optional[Dict[str, Any]] = None
    meta_data: Optional[Dict[str, Any]] = None


class SessionStarted(EventPayload):
    wire_key: ClassVar[str] = "sessionStarted"

    capabilities: Optional[Dict[str, Any]] = None


class SessionEnding(EventPayload):
    """The server is about to close the socket carrying this session."""

    wire_key: ClassVar[str] = "sessionEnding"

    time_to_live_ms: int = Field(default=0, alias="timeToLiveMS")


class SessionEnd(EventPayload):
    wire_key: ClassVar[str] = "endSession"

    meta_data: Optional[Dict[str, Any]] = None


class LabelUpdated(EventPayload):
    wire_key: ClassVar[str] = "labelUpdated"

    label: str
    autogenerated: bool = False


# =============================================================================
# Exchange and message payloads
# =============================================================================


class ExchangeStart(EventPayload):
    wire_key: ClassVar[str] = "exchangeStart"

    exchange_id: str
    conversation_sequence: Optional[int] = None
    timestamp: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None


class ExchangeEnd(EventPayload):
    wire_key: ClassVar[str] = "exchangeEnd"

    exchange_id: str
    meta_data: Optional[Dict[str, Any]] = None


class MessageStart(EventPayload):
    wire_key: ClassVar[str] = "messageStart"

    exchange_id: str
    message_id: str
    role: MessageRole = MessageRole.USER
    exchange_sequence: Optional[int] = None
    timestamp: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None


class MessageEnd(EventPayload):
    wire_key: ClassVar[str] = "messageEnd"

    exchange_id: str
    message_id: str
    meta_data: Optional[Dict[str, Any]] = None


# =============================================================================
# Content part payloads
# =============================================================================


class ContentPartStart(EventPayload):
    wire_key: ClassVar[str] = "contentPartStart"

    exchange_id: str
    message_id: str
    content_part_id: str
    mime_type: str = "text/plain"
    name: Optional[str] = None
    external_value: Optional[ExternalValue] = None
    timestamp: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None


class CitationEndMarker(WireModel):
    sources: List[CitationSource] = Field(default_factory=list)


class CitationMarker(WireModel):
    """
    Citation boundary carried by a chunk.

    A marker with ``start_citation`` opens the range before the chunk's data,
    one with ``end_citation`` closes it after the data. Both together cite
    exactly the chunk's data.
    """

    citation_id: str
    start_citation: Optional[Dict[str, Any]] = None
    end_citation: Optional[CitationEndMarker] = None

    @property
    def is_start(self) -> bool:
        return self.start_citation is not None

    @property
    def is_end(self) -> bool:
        return self.end_citation is not None


class ContentPartChunk(EventPayload):
    wire_key: ClassVar[str] = "contentPartChunk"

    exchange_id: str
    message_id: str
    content_part_id: str
    data: str = ""
    citation: Optional[CitationMarker] = None


class ContentPartEnd(EventPayload):
    wire_key: ClassVar[str] = "contentPartEnd"

    exchange_id: str
    message_id: str
    content_part_id: str
    last_chunk_content_part_sequence: Optional[int] = None
    interrupted: Optional[bool] = None
    meta_data: Optional[Dict[str, Any]] = None


# =============================================================================
# Tool call and interrupt payloads
# =============================================================================


class ToolCallStart(EventPayload):
    wire_key: ClassVar[str] = "toolCallStart"

    exchange_id: str
    message_id: str
    tool_call_id: str
    tool_name: str
    input: Optional[Any] = None
    timestamp: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None


class ToolCallEnd(EventPayload):
    wire_key: ClassVar[str] = "toolCallEnd"

    exchange_id: str
    message_id: str
    tool_call_id: str
    output: Optional[Any] = None
    is_error: Optional[bool] = None
    cancelled: Optional[bool] = None
    timestamp: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None


class InterruptStart(EventPayload):
    wire_key: ClassVar[str] = "interruptStart"

    exchange_id: str
    message_id: str
    interrupt_id: str
    type: str
    value: Optional[Any] = None


class InterruptEnd(EventPayload):
    wire_key: ClassVar[str] = "interruptEnd"

    exchange_id: str
    message_id: str
    interrupt_id: str
    value: Optional[Any] = None


# =============================================================================
# Session-level async payloads
# =============================================================================


class AsyncInputStreamStart(EventPayload):
    """Opens a media stream (typically audio) that is not bound to an exchange."""

    wire_key: ClassVar[str] = "asyncInputStreamStart"

    stream_id: str
    mime_type: str
    start_of_speech_sensitivity: Optional[str] = None
    end_of_speech_sensitivity: Optional[str] = None
    prefix_padding_ms: Optional[int] = None
    silence_duration_ms: Optional[int] = None
    timestamp: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None


class AsyncInputStreamChunk(EventPayload):
    wire_key: ClassVar[str] = "asyncInputStreamChunk"

    stream_id: str
    data: str = ""


class AsyncInputStreamEnd(EventPayload):
    wire_key: ClassVar[str] = "asyncInputStreamEnd"

    stream_id: str
    last_chunk_content_part_sequence: Optional[int] = None
    meta_data: Optional[Dict[str, Any]] = None


class AsyncToolCallStart(EventPayload):
    """A tool call owned by the session rather than by a message."""

    wire_key: ClassVar[str] = "asyncToolCallStart"

    tool_call_id: str
    tool_name: str
    input: Optional[Any] = None
    timestamp: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None


class AsyncToolCallEnd(EventPayload):
    wire_key: ClassVar[str] = "asyncToolCallEnd"

    tool_call_id: str
    output: Optional[Any] = None
    is_error: Optional[bool] = None
    cancelled: Optional[bool] = None
    timestamp: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None


# =============================================================================
# Error and meta payloads
# =============================================================================


class AddressedPayload(EventPayload):
    """Payload that targets the deepest node named by its optional ids."""

    exchange_id: Optional[str] = None
    message_id: Optional[str] = None
    content_part_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    stream_id: Optional[str] = None


class ErrorStart(AddressedPayload):
    wire_key: ClassVar[str] = "errorStart"

    error_id: str
    message: str = ""
    details: Optional[Dict[str, Any]] = None


class ErrorEnd(AddressedPayload):
    wire_key: ClassVar[str] = "errorEnd"

    error_id: str


class MetaEvent(AddressedPayload):
    """Free-form metadata; any key beyond the addressing ids is kept."""

    wire_key: ClassVar[str] = "metaEvent"

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    @property
    def data(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


START_PAYLOADS = (
    ExchangeStart,
    MessageStart,
    ContentPartStart,
    ToolCallStart,
    InterruptStart,
    AsyncInputStreamStart,
    AsyncToolCallStart,
)


# =============================================================================
# History records (REST collaborator)
# =============================================================================


class InlineOrExternal(WireModel):
    inline: Optional[Any] = None
    uri: Optional[str] = None
    byte_count: Optional[int] = None


class HistoricalContentPart(WireModel):
    content_part_id: str
    mime_type: str = "text/plain"
    data: InlineOrExternal = Field(default_factory=InlineOrExternal)
    citations: List[Citation] = Field(default_factory=list)
    is_transcript: Optional[bool] = None
    is_incomplete: Optional[bool] = None
    name: Optional[str] = None
    created_time: Optional[str] = None
    updated_time: Optional[str] = None


class HistoricalToolCallResult(WireModel):
    output: Optional[Any] = None
    is_error: Optional[bool] = None
    cancelled: Optional[bool] = None
    timestamp: Optional[str] = None


class HistoricalToolCall(WireModel):
    tool_call_id: str
    name: str
    input: Optional[Any] = None
    timestamp: Optional[str] = None
    result: Optional[HistoricalToolCallResult] = None


class HistoricalInterrupt(WireModel):
    interrupt_id: str
    type: str
    interrupt_value: Optional[Any] = None
    end_value: Optional[Any] = None


class HistoricalMessage(WireModel):
    message_id: str
    role: MessageRole
    content_parts: List[HistoricalContentPart] = Field(default_factory=list)
    tool_calls: List[HistoricalToolCall] = Field(default_factory=list)
    interrupts: List[HistoricalInterrupt] = Field(default_factory=list)
    created_time: Optional[str] = None
    updated_time: Optional[str] = None


class HistoricalExchange(WireModel):
    exchange_id: str
    messages: List[HistoricalMessage] = Field(default_factory=list)
    feedback_rating: Optional[FeedbackRating] = None
    created_time: Optional[str] = None
    updated_time: Optional[str] = None


class FeedbackResponse(WireModel):
    id: Optional[str] = None
    rating: Optional[FeedbackRating] = None
    comment: Optional[str] = None


# =============================================================================
# Completed aggregates
# =============================================================================


@dataclass
class CitationError:
    """A citation range that could not be resolved."""
    citation_id: str
    error_type: CitationErrorType


@dataclass
class CompletedContentPart:
    """Buffered result of a content part after its end event."""
    content_part_id: str
    mime_type: str
    data: str
    citations: List[Citation] = field(default_factory=list)
    citation_errors: List[CitationError] = field(default_factory=list)
    name: Optional[str] = None
    is_transcript: bool = False
    is_incomplete: bool = False
    external_value: Optional[ExternalValue] = None
    meta_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletedToolCall:
    tool_call_id: str
    tool_name: str
    input: Optional[Any] = None
    output: Optional[Any] = None
    is_error: bool = False
    cancelled: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None


@dataclass
class Interrupt:
    """An interrupt raised inside a message, and its resolution once ended."""
    interrupt_id: str
    type: str
    value: Optional[Any] = None
    end_value: Optional[Any] = None
    ended: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None


@dataclass
class CompletedMessage:
    message_id: str
    role: Optional[MessageRole]
    content_parts: List[CompletedContentPart] = field(default_factory=list)
    tool_calls: List[CompletedToolCall] = field(default_factory=list)
    interrupts: List[Interrupt] = field(default_factory=list)
    meta_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated data of the message's text content parts."""
        return "".join(part.data for part in self.content_parts if part.mime_type.startswith("text/"))
