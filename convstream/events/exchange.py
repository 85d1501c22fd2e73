"""
convstream - Exchange

One request/response cycle inside a session.
"""

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import structlog

from convstream.events.message import Message
from convstream.events.node import EventNode, NodeContext, make_id, run_scoped
from convstream.exceptions import ProtocolStateError
from convstream.handlers import Handler, HandlerList, Unregister
from convstream.models import (
    EventPayload,
    ExchangeEnd,
    ExchangeStart,
    FeedbackRating,
    MessageRole,
    MessageStart,
    utc_now,
)

if TYPE_CHECKING:
    from convstream.events.session import Session

logger = structlog.get_logger(__name__)


class Exchange(EventNode):
    """
    An exchange inside a session.

    Example:
        >>> exchange = session.start_exchange()
        >>> await exchange.send_message_with_content_part("What's the weather?")
        >>> exchange.on_message_completed(lambda message: print(message.text))
    """

    kind = "exchange"
    _RECEIVERS = {
        ExchangeStart: "_receive_start",
        ExchangeEnd: "_receive_end",
    }

    def __init__(
        self,
        context: NodeContext,
        exchange_id: str,
        session: "Session",
        start: Optional[ExchangeStart] = None,
    ) -> None:
        super().__init__(context, exchange_id, parent=session, start=start)
        self._messages: Dict[str, Message] = {}
        self.feedback_rating: Optional[FeedbackRating] = None

        self._end_handlers = HandlerList("exchange.end")
        self._message_start_handlers = HandlerList("exchange.message_start")
        self._message_completed_handlers = HandlerList("exchange.message_completed")

    @property
    def exchange_id(self) -> str:
        return self.id

    @property
    def messages(self) -> List[Message]:
        return list(self._messages.values())

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    def _address(self) -> Dict[str, str]:
        return {"exchange_id": self.id}

    def _children(self) -> List[EventNode]:
        return list(self._messages.values())

    def _detach_child(self, child: EventNode) -> None:
        self._messages.pop(child.id, None)

    # =========================================================================
    # Handler registration
    # =========================================================================

    def on_exchange_end(self, handler: Handler) -> Unregister:
        return self._end_handlers.add(handler)

    def on_message_start(self, handler: Handler) -> Unregister:
        """Register ``handler(message)`` for messages started by the remote side."""
        return self._message_start_handlers.add(handler)

    def on_message_completed(self, handler: Handler) -> Unregister:
        """Register ``handler(CompletedMessage)`` for each message that ends."""
        return self._message_completed_handlers.add(handler)

    # =========================================================================
    # Sending
    # =========================================================================

    def start_message(
        self,
        message_id: Optional[str] = None,
        role: Union[MessageRole, str] = MessageRole.USER,
        meta_data: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[Message], Optional[Awaitable[Any]]]] = None,
    ) -> Union[Message, Awaitable[Any]]:
        """
        Start a message.

        With ``callback`` the call returns an awaitable that runs
        ``callback(message)`` and then ends the message, even on failure.
        """
        self._assert_not_ended("start message")
        message_id = message_id or make_id()
        if message_id in self._messages:
            raise ProtocolStateError(f"message {message_id} already exists in exchange {self.id}")

        start = MessageStart(
            exchange_id=self.id,
            message_id=message_id,
            role=MessageRole(role),
            timestamp=utc_now(),
            meta_data=meta_data,
        )
        message = Message(self._context, message_id, self, start)
        self._messages[message_id] = message
        self._emit(start)

        if callback is not None:
            return run_scoped(message, callback)
        return message

    async def send_message_with_content_part(
        self,
        data: str,
        role: Union[MessageRole, str] = MessageRole.USER,
        mime_type: str = "text/markdown",
        message_id: Optional[str] = None,
        content_part_id: Optional[str] = None,
    ) -> Message:
        """
        Send a complete single-part message and wait until it has been flushed.

        Args:
            data: Full content, sent as one chunk
            role: Message role
            mime_type: Content part MIME type
            message_id: Message id, generated when omitted
            content_part_id: Content part id, generated when omitted

        Returns:
            The ended message
        """
        message = self.start_message(message_id=message_id, role=role)
        message.send_content_part(data, mime_type=mime_type, content_part_id=content_part_id)
        message.send_message_end()
        await self._context.channel.flush()
        return message

    def send_exchange_end(self, meta_data: Optional[Dict[str, Any]] = None) -> None:
        self._assert_not_ended("send exchange end")
        end = ExchangeEnd(exchange_id=self.id, meta_data=meta_data)
        self._end = end
        self.ended = True
        self._emit(end)

    def _end_scope(self) -> None:
        self.send_exchange_end()

    async def submit_feedback(
        self,
        rating: Union[FeedbackRating, str],
        comment: Optional[str] = None,
    ) -> None:
        """
        Rate the exchange once it has ended.

        Raises:
            ProtocolStateError: If the exchange has not ended, was already
                rated, or no history client is configured.
        """
        rating = FeedbackRating(rating)
        if not self.ended:
            raise ProtocolStateError(f"Cannot rate exchange {self.id} before it has ended")
        if self.feedback_rating is not None:
            raise ProtocolStateError(f"Exchange {self.id} has already been rated")
        history = self._context.history
        if history is None:
            raise ProtocolStateError("No history client configured")

        # Claimed before the request so a concurrent call is rejected
        self.feedback_rating = rating
        try:
            await history.create_feedback(self.conversation_id, self.id, rating, comment=comment)
        except BaseException:
            self.feedback_rating = None
            raise

        logger.info(
            "feedback_submitted",
            conversation_id=self.conversation_id,
            exchange_id=self.id,
            rating=rating.value,
        )

    # =========================================================================
    # Inbound
    # =========================================================================

    def _child_for(self, payload: EventPayload) -> Tuple[Optional[EventNode], bool]:
        message_id = getattr(payload, "message_id", None)
        if message_id is None:
            return None, False
        return self._locate(
            self._messages,
            message_id,
            payload,
            lambda child_id, start: Message(self._context, child_id, self, start),
            MessageStart,
        )

    def _child_started(self, child: EventNode) -> None:
        self._message_start_handlers.emit(child)

    def _receive_end(self, end: ExchangeEnd) -> None:
        self._end = end
        self.ended = True
        self._end_handlers.emit(end)
