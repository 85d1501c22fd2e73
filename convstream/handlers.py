"""
convstream - Handlers

Handler lists used by every node of the conversation tree, and the
three-tier policy that decides who hears about an application error.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Sequence, Set, Union

import structlog

from convstream.exceptions import UnhandledConversationError
from convstream.models import ErrorEnd, ErrorStart

logger = structlog.get_logger(__name__)

Handler = Callable[..., Any]
Unregister = Callable[[], None]

# Strong references to coroutine handlers scheduled on the loop
_pending_tasks: Set[asyncio.Task] = set()


def _log_task_failure(task: asyncio.Task) -> None:
    _pending_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("handler_failed", error=str(exc), exc_info=exc)


class HandlerList:
    """
    Ordered list of callbacks.

    ``add`` returns a callable that unregisters the handler. Handlers may be
    plain functions or coroutine functions; coroutines are scheduled on the
    running loop. A failing handler is logged and does not stop the others.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._handlers: List[Handler] = []

    def add(self, handler: Handler) -> Unregister:
        self._handlers.append(handler)

        def unregister() -> None:
            self.remove(handler)

        return unregister

    def remove(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def emit(self, *args: Any) -> None:
        # Copy so handlers may unregister themselves while running
        for handler in list(self._handlers):
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    self._schedule(result)
            except Exception as e:
                logger.error("handler_failed", handlers=self.name, error=str(e), exc_info=True)

    def _schedule(self, coro: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("coroutine_handler_without_loop", handlers=self.name)
            return
        task = loop.create_task(coro)
        _pending_tasks.add(task)
        task.add_done_callback(_log_task_failure)

    def __len__(self) -> int:
        return len(self._handlers)

    def __bool__(self) -> bool:
        return bool(self._handlers)

    def __iter__(self) -> Iterator[Handler]:
        return iter(list(self._handlers))


class ErrorTier(str, Enum):
    """Which tier of the propagation chain received an error event."""

    LOCAL = "local"
    ANY = "any"
    UNHANDLED = "unhandled"
    RAISED = "raised"


@dataclass
class ErrorNotice:
    """What "any" and "unhandled" handlers receive: the event and its source."""
    conversation_id: str
    source: Any
    event: Union[ErrorStart, ErrorEnd]

    @property
    def error_id(self) -> str:
        return self.event.error_id


def _raise_unhandled(error: UnhandledConversationError) -> None:
    raise error


class ErrorPropagationPolicy:
    """
    Resolves error-start and error-end events.

    1. Handlers registered on the addressed node, if any.
    2. Otherwise the "any error" handlers (session and dispatcher level).
    3. Otherwise the "unhandled error" handlers.
    4. Otherwise an ``UnhandledConversationError`` is raised on the running
       event loop, reaching its exception handler. Without a running loop it
       is raised to the caller of ``dispatch()``.

    Start and end events are resolved independently.
    """

    def __init__(self) -> None:
        self.any_error_start = HandlerList("any_error_start")
        self.any_error_end = HandlerList("any_error_end")
        self.unhandled_error_start = HandlerList("unhandled_error_start")
        self.unhandled_error_end = HandlerList("unhandled_error_end")

    def propagate(
        self,
        conversation_id: str,
        source: Any,
        event: Union[ErrorStart, ErrorEnd],
        local: HandlerList,
        scoped_any: Optional[HandlerList] = None,
    ) -> ErrorTier:
        is_start = isinstance(event, ErrorStart)

        if local:
            local.emit(event)
            return ErrorTier.LOCAL

        any_lists: Sequence[HandlerList] = [
            handlers
            for handlers in (scoped_any, self.any_error_start if is_start else self.any_error_end)
            if handlers
        ]
        notice = ErrorNotice(conversation_id=conversation_id, source=source, event=event)
        if any_lists:
            for handlers in any_lists:
                handlers.emit(notice)
            return ErrorTier.ANY

        unhandled = self.unhandled_error_start if is_start else self.unhandled_error_end
        if unhandled:
            unhandled.emit(notice)
            return ErrorTier.UNHANDLED

        error = UnhandledConversationError(
            conversation_id,
            event.error_id,
            message=getattr(event, "message", ""),
            details=getattr(event, "details", None),
        )
        logger.error(
            "unhandled_conversation_error",
            conversation_id=conversation_id,
            error_id=event.error_id,
            phase="start" if is_start else "end",
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise error
        loop.call_soon(_raise_unhandled, error)
        return ErrorTier.RAISED
