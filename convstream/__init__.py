"""
convstream

Python client for real-time, multi-party conversations with an agent runtime.
Events arrive over a persistent WebSocket and are routed into a tree of
sessions, exchanges, messages, content parts, tool calls and session-level
async input streams.

Example:
    >>> from convstream import ConversationClient
    >>> client = ConversationClient(token="your-token")
    >>> client.on_session_start(lambda session: print(session.conversation_id))
    >>> async with client:
    ...     session = client.start_session("conv-1")
    ...     exchange = session.start_exchange()
    ...     await exchange.send_message_with_content_part("Hello")
"""

__version__ = "1.0.0"
__author__ = "convstream developers"
__license__ = "MIT"

from convstream.client import ConversationClient, OutboundQueue
from convstream.config import ClientConfig, get_config
from convstream.connection import ConnectionManager, ConnectionStatus, TransportHandle
from convstream.events import (
    AsyncInputStream,
    AsyncToolCall,
    ContentPart,
    EventDispatcher,
    Exchange,
    Message,
    Session,
    ToolCall,
)
from convstream.events.node import run_scoped
from convstream.exceptions import (
    APIError,
    AuthenticationError,
    ConflictError,
    ConnectionError,
    ConvStreamError,
    NotFoundError,
    ProtocolStateError,
    ProtocolValidationError,
    UnhandledConversationError,
)
from convstream.handlers import ErrorNotice, ErrorPropagationPolicy, ErrorTier, HandlerList
from convstream.log import configure_logging
from convstream.models import (
    Citation,
    CitationError,
    CitationErrorType,
    CompletedContentPart,
    CompletedMessage,
    CompletedToolCall,
    FeedbackRating,
    HistoricalExchange,
    HistoricalMessage,
    Interrupt,
    MessageRole,
    SessionCapabilities,
)
from convstream.protocol import Envelope
from convstream.resources import ConversationHistory, PaginatedResponse
from convstream.transport import WebSocketTransport

__all__ = [
    # Main client
    "ConversationClient",
    "OutboundQueue",
    "ClientConfig",
    "get_config",
    "configure_logging",

    # Connection
    "ConnectionManager",
    "ConnectionStatus",
    "TransportHandle",
    "WebSocketTransport",

    # Event tree
    "EventDispatcher",
    "Session",
    "Exchange",
    "Message",
    "ContentPart",
    "ToolCall",
    "AsyncInputStream",
    "AsyncToolCall",
    "Envelope",
    "run_scoped",

    # Error handling
    "ErrorNotice",
    "ErrorPropagationPolicy",
    "ErrorTier",
    "HandlerList",

    # Models
    "Citation",
    "CitationError",
    "CitationErrorType",
    "CompletedContentPart",
    "CompletedMessage",
    "CompletedToolCall",
    "FeedbackRating",
    "HistoricalExchange",
    "HistoricalMessage",
    "Interrupt",
    "MessageRole",
    "SessionCapabilities",

    # Resources
    "ConversationHistory",
    "PaginatedResponse",

    # Exceptions
    "ConvStreamError",
    "ConnectionError",
    "AuthenticationError",
    "ProtocolStateError",
    "ProtocolValidationError",
    "UnhandledConversationError",
    "APIError",
    "NotFoundError",
    "ConflictError",
]
