"""
convstream - Event Dispatcher

Conversation-level router: owns the map from conversation id to Session and
the top-level observers.
"""

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Type, Union

import structlog

from convstream.events.async_tool_call import AsyncToolCall
from convstream.events.content_part import ContentPart
from convstream.events.exchange import Exchange
from convstream.events.input_stream import AsyncInputStream
from convstream.events.message import Message
from convstream.events.node import NodeContext, OutboundChannel, make_id, run_scoped
from convstream.events.session import Session
from convstream.events.tool_call import ToolCall
from convstream.handlers import ErrorPropagationPolicy, Handler, HandlerList, Unregister
from convstream.models import ErrorEnd, ErrorStart, EventPayload, MetaEvent, SessionStart
from convstream.protocol import Envelope

if TYPE_CHECKING:
    from convstream.resources.conversations import ConversationHistory

logger = structlog.get_logger(__name__)

# Handled by every node
_COMMON_PAYLOADS = (ErrorStart, ErrorEnd, MetaEvent)


def routed_payload_types() -> FrozenSet[Type[EventPayload]]:
    """Every payload type some node of the tree knows how to receive."""
    routed = set(_COMMON_PAYLOADS)
    for node_type in (Session, Exchange, Message, ContentPart, ToolCall, AsyncInputStream, AsyncToolCall):
        routed.update(node_type._RECEIVERS)
    return frozenset(routed)


class EventDispatcher:
    """
    Routes inbound envelopes to sessions and creates sessions for outbound use.

    Example:
        >>> dispatcher = EventDispatcher(channel)
        >>> dispatcher.on_unhandled_error_start(lambda notice: print(notice.error_id))
        >>> session = dispatcher.start_session("conv-1")
        >>> dispatcher.dispatch(Envelope.from_json(frame))
    """

    def __init__(
        self,
        channel: OutboundChannel,
        history: Optional["ConversationHistory"] = None,
    ) -> None:
        self._channel = channel
        self._history = history
        self._sessions: Dict[str, Session] = {}
        self._policy = ErrorPropagationPolicy()
        self._any_handlers = HandlerList("dispatcher.any")
        self._session_start_handlers = HandlerList("dispatcher.session_start")

    make_id = staticmethod(make_id)

    @property
    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def get_session(self, conversation_id: str) -> Optional[Session]:
        return self._sessions.get(conversation_id)

    def remove_session(self, conversation_id: str) -> None:
        """Delete a session locally without sending an end event."""
        session = self._sessions.get(conversation_id)
        if session is not None:
            session.delete()

    def _forget(self, session: Session) -> None:
        if self._sessions.get(session.conversation_id) is session:
            del self._sessions[session.conversation_id]
            logger.debug("session_removed", conversation_id=session.conversation_id)

    def _create_session(self, conversation_id: str, start: Optional[SessionStart]) -> Session:
        context = NodeContext(
            conversation_id=conversation_id,
            channel=self._channel,
            policy=self._policy,
            history=self._history,
        )
        session = Session(context, self, start)
        self._sessions[conversation_id] = session
        return session

    # =========================================================================
    # Handler registration
    # =========================================================================

    def on_any(self, handler: Handler) -> Unregister:
        """Register ``handler(envelope)`` for every inbound envelope."""
        return self._any_handlers.add(handler)

    def on_session_start(self, handler: Handler) -> Unregister:
        """Register ``handler(session)`` for sessions created by inbound events."""
        return self._session_start_handlers.add(handler)

    def on_any_error_start(self, handler: Handler) -> Unregister:
        return self._policy.any_error_start.add(handler)

    def on_any_error_end(self, handler: Handler) -> Unregister:
        return self._policy.any_error_end.add(handler)

    def on_unhandled_error_start(self, handler: Handler) -> Unregister:
        """Register the fallback for error-starts nobody else handles."""
        return self._policy.unhandled_error_start.add(handler)

    def on_unhandled_error_end(self, handler: Handler) -> Unregister:
        return self._policy.unhandled_error_end.add(handler)

    # =========================================================================
    # Sending
    # =========================================================================

    def start_session(
        self,
        conversation_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        capabilities: Optional[Dict[str, Any]] = None,
        meta_data: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[Session], Optional[Awaitable[Any]]]] = None,
    ) -> Union[Session, Awaitable[Any]]:
        """
        Start a session, replacing any existing one for the same id.

        With ``callback`` the call returns an awaitable that runs
        ``callback(session)``, then sends the session end (even if the
        callback raised) and waits for the outbound queue to flush.
        """
        conversation_id = conversation_id or make_id()

        existing = self._sessions.get(conversation_id)
        if existing is not None:
            logger.info("session_replaced", conversation_id=conversation_id)
            existing.delete()

        session = self._create_session(
            conversation_id,
            SessionStart(capabilities=capabilities, meta_data=meta_data),
        )
        if properties:
            session.set_properties(**properties)
        session.send_session_start()
        logger.info("session_started", conversation_id=conversation_id)

        if callback is not None:
            return run_scoped(session, callback)
        return session

    def send_error_start(
        self,
        conversation_id: str,
        error_id: Optional[str] = None,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Report a conversation-level error without going through a session."""
        error_id = error_id or make_id()
        self._channel.send(
            Envelope(conversation_id, ErrorStart(error_id=error_id, message=message, details=details))
        )
        return error_id

    def send_error_end(self, conversation_id: str, error_id: str) -> None:
        self._channel.send(Envelope(conversation_id, ErrorEnd(error_id=error_id)))

    async def flush(self) -> None:
        await self._channel.flush()

    # =========================================================================
    # Inbound
    # =========================================================================

    def dispatch(self, envelope: Envelope) -> None:
        """
        Route one inbound envelope.

        Raises:
            ProtocolStateError: If the payload targets an unknown or ended node.
            UnhandledConversationError: If an error event reaches no handler
                and there is no running event loop.
        """
        payload = envelope.payload
        conversation_id = envelope.conversation_id

        consumed = False
        session = self._sessions.get(conversation_id)
        if session is None:
            start = payload if isinstance(payload, SessionStart) else None
            session = self._create_session(conversation_id, start)
            consumed = start is not None
            logger.info("session_created", conversation_id=conversation_id, initiator="remote")
            self._session_start_handlers.emit(session)

        self._any_handlers.emit(envelope)

        if not consumed:
            session.route(payload)
