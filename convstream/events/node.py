"""
convstream - Event Node

Base class shared by every node of the conversation tree.

A node is reachable only through its parent's id map. The back-reference to
the parent is a weak reference so the tree has a single owner per node.
"""

import inspect
import uuid
import weakref
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Type,
)

import structlog

from convstream.exceptions import ProtocolStateError
from convstream.handlers import ErrorPropagationPolicy, Handler, HandlerList, Unregister
from convstream.models import START_PAYLOADS, ErrorEnd, ErrorStart, EventPayload, MetaEvent
from convstream.protocol import Envelope

if TYPE_CHECKING:
    from convstream.events.session import Session
    from convstream.resources.conversations import ConversationHistory

logger = structlog.get_logger(__name__)


def make_id() -> str:
    """New client-side identifier (uppercase UUID4)."""
    return str(uuid.uuid4()).upper()


class OutboundChannel:
    """Where nodes put the envelopes they send."""

    def send(self, envelope: Envelope) -> None:
        raise NotImplementedError

    async def flush(self) -> None:
        raise NotImplementedError


@dataclass
class NodeContext:
    """Services shared by every node of one conversation."""
    conversation_id: str
    channel: OutboundChannel
    policy: ErrorPropagationPolicy
    history: Optional["ConversationHistory"] = None


class EventNode:
    """
    Common state and behaviour of every addressable node.

    Subclasses declare ``_RECEIVERS`` (payload type -> method name) for the
    events addressed to themselves and override ``_child_for`` to route
    events addressed further down.
    """

    kind: ClassVar[str] = "node"
    _RECEIVERS: ClassVar[Dict[Type[EventPayload], str]] = {}

    def __init__(
        self,
        context: NodeContext,
        node_id: str,
        parent: Optional["EventNode"] = None,
        start: Optional[EventPayload] = None,
    ) -> None:
        self._context = context
        self.id = node_id
        self._parent_ref = weakref.ref(parent) if parent is not None else None
        self._start = start
        self._end: Optional[EventPayload] = None

        self.properties: Dict[str, Any] = {}
        self.errors: Dict[str, ErrorStart] = {}
        self.ended = False
        self.deleted = False

        self._paused = False
        self._buffer: List[EventPayload] = []

        self._error_start_handlers = HandlerList(f"{self.kind}.error_start")
        self._error_end_handlers = HandlerList(f"{self.kind}.error_end")
        self._meta_handlers = HandlerList(f"{self.kind}.meta_event")
        self._deleted_handlers = HandlerList(f"{self.kind}.deleted")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id='{self.id}', ended={self.ended})"

    # =========================================================================
    # Identity
    # =========================================================================

    @property
    def conversation_id(self) -> str:
        return self._context.conversation_id

    @property
    def parent(self) -> Optional["EventNode"]:
        return self._parent_ref() if self._parent_ref is not None else None

    @property
    def session(self) -> Optional["Session"]:
        node: Optional[EventNode] = self
        while node is not None and node.parent is not None:
            node = node.parent
        return node  # type: ignore[return-value]

    @property
    def start_event(self) -> Optional[EventPayload]:
        return self._start

    @property
    def end_event(self) -> Optional[EventPayload]:
        return self._end

    @property
    def has_error(self) -> bool:
        return bool(self.errors)

    def set_properties(self, **values: Any) -> None:
        """Merge ``values`` into the property bag; later writes win."""
        self.properties.update(values)

    def _address(self) -> Dict[str, str]:
        """Ids that address this node inside an error or meta payload."""
        return {}

    def _children(self) -> Iterable["EventNode"]:
        return ()

    # =========================================================================
    # Handler registration
    # =========================================================================

    def on_error_start(self, handler: Handler) -> Unregister:
        """Register a local handler for error-start events addressed to this node."""
        return self._error_start_handlers.add(handler)

    def on_error_end(self, handler: Handler) -> Unregister:
        return self._error_end_handlers.add(handler)

    def on_meta_event(self, handler: Handler) -> Unregister:
        return self._meta_handlers.add(handler)

    def on_deleted(self, handler: Handler) -> Unregister:
        return self._deleted_handlers.add(handler)

    # =========================================================================
    # Sending
    # =========================================================================

    def _assert_not_ended(self, operation: str) -> None:
        if self.ended:
            raise ProtocolStateError(
                f"Cannot {operation}: {self.kind} {self.id} has already ended",
                details={"conversation_id": self.conversation_id, "node_id": self.id},
            )

    def _emit(self, payload: EventPayload) -> None:
        self._context.channel.send(Envelope(self.conversation_id, payload))

    def send_error_start(
        self,
        error_id: Optional[str] = None,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Report an error on this node. Returns the error id."""
        self._assert_not_ended("send error start")
        error_id = error_id or make_id()
        self._emit(ErrorStart(error_id=error_id, message=message, details=details, **self._address()))
        return error_id

    def send_error_end(self, error_id: str) -> None:
        self._assert_not_ended("send error end")
        self._emit(ErrorEnd(error_id=error_id, **self._address()))

    def send_meta_event(self, data: Dict[str, Any]) -> None:
        self._assert_not_ended("send meta event")
        self._emit(MetaEvent(**self._address(), **data))

    # =========================================================================
    # Scoped usage
    # =========================================================================

    def _end_scope(self) -> None:
        raise NotImplementedError

    async def __aenter__(self) -> "EventNode":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self.ended and not self.deleted:
            self._end_scope()
        await self._context.channel.flush()

    # =========================================================================
    # Inbound routing
    # =========================================================================

    def pause(self) -> None:
        """Buffer inbound events for this node and its descendants."""
        self._paused = True

    def resume(self) -> None:
        """Replay buffered events in arrival order."""
        self._paused = False
        buffered, self._buffer = self._buffer, []
        for payload in buffered:
            self.route(payload)

    def route(self, payload: EventPayload) -> None:
        if self._paused:
            self._buffer.append(payload)
            return

        if self.ended:
            raise ProtocolStateError(
                f"{type(payload).__name__} received for {self.kind} {self.id} after it ended",
                details={"conversation_id": self.conversation_id, "node_id": self.id},
            )

        child, consumed = self._child_for(payload)
        if child is None:
            self._receive(payload)
        elif not consumed:
            child.route(payload)

    def _child_for(self, payload: EventPayload) -> Tuple[Optional["EventNode"], bool]:
        """Child the payload is addressed to (None for self) and whether creating it consumed the payload."""
        return None, False

    def _locate(
        self,
        children: Dict[str, "EventNode"],
        child_id: str,
        payload: EventPayload,
        factory: Callable[[str, Optional[EventPayload]], "EventNode"],
        start_type: Type[EventPayload],
    ) -> Tuple["EventNode", bool]:
        child = children.get(child_id)
        if child is not None:
            return child, False

        if not isinstance(payload, START_PAYLOADS):
            raise ProtocolStateError(
                f"{type(payload).__name__} addressed to unknown node {child_id} in {self.kind} {self.id}",
                details={"conversation_id": self.conversation_id, "node_id": child_id},
            )

        own_start = payload if isinstance(payload, start_type) else None
        child = factory(child_id, own_start)
        children[child_id] = child
        logger.debug(
            "node_created",
            conversation_id=self.conversation_id,
            kind=child.kind,
            node_id=child_id,
            lazy=own_start is None,
        )
        self._child_started(child)
        return child, own_start is not None

    def _child_started(self, child: "EventNode") -> None:
        pass

    def _receive(self, payload: EventPayload) -> None:
        if isinstance(payload, ErrorStart):
            self.errors[payload.error_id] = payload
            self._propagate_error(payload, self._error_start_handlers)
        elif isinstance(payload, ErrorEnd):
            self.errors.pop(payload.error_id, None)
            self._propagate_error(payload, self._error_end_handlers)
        elif isinstance(payload, MetaEvent):
            self._meta_handlers.emit(payload)
        else:
            method = self._RECEIVERS.get(type(payload))
            if method is None:
                raise ProtocolStateError(
                    f"{type(payload).__name__} cannot be addressed to {self.kind} {self.id}"
                )
            getattr(self, method)(payload)

    def _receive_start(self, payload: EventPayload) -> None:
        """A start event for a node that was created without one fills it in."""
        if self._start is not None:
            raise ProtocolStateError(
                f"{self.kind} {self.id} has already started",
                details={"conversation_id": self.conversation_id, "node_id": self.id},
            )
        self._start = payload

    def _propagate_error(self, event: EventPayload, local: HandlerList) -> None:
        session = self.session
        scoped_any = None
        if session is not None:
            scoped_any = session._any_error_start_handlers if isinstance(event, ErrorStart) \
                else session._any_error_end_handlers
        tier = self._context.policy.propagate(
            self.conversation_id, self, event, local, scoped_any=scoped_any,
        )
        logger.debug(
            "error_propagated",
            conversation_id=self.conversation_id,
            kind=self.kind,
            node_id=self.id,
            error_id=event.error_id,
            tier=tier.value,
        )

    # =========================================================================
    # Teardown
    # =========================================================================

    def _detach_child(self, child: "EventNode") -> None:
        pass

    def delete(self) -> None:
        """Remove this node from its parent, delete its children, then notify ``on_deleted`` handlers."""
        if self.deleted:
            return
        self.deleted = True

        parent = self.parent
        if parent is not None:
            parent._detach_child(self)

        for child in list(self._children()):
            child.delete()

        self._deleted_handlers.emit(self)


async def run_scoped(
    node: EventNode,
    callback: Callable[[EventNode], Optional[Awaitable[Any]]],
) -> Any:
    """Run ``callback(node)``, then send the node's end event even if the callback failed."""
    try:
        result = callback(node)
        if inspect.isawaitable(result):
            result = await result
        return result
    finally:
        if not node.ended and not node.deleted:
            node._end_scope()
        await node._context.channel.flush()
