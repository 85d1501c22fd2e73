"""REST collaborators used alongside the event stream."""

from convstream.resources.base import BaseResource, PaginatedResponse
from convstream.resources.conversations import ConversationHistory

__all__ = [
    "BaseResource",
    "ConversationHistory",
    "PaginatedResponse",
]
