"""Conversation event tree: dispatcher, sessions, exchanges, messages, content parts, tool calls, async streams."""

from convstream.events.async_tool_call import AsyncToolCall
from convstream.events.content_part import ContentPart
from convstream.events.dispatcher import EventDispatcher, routed_payload_types
from convstream.events.exchange import Exchange
from convstream.events.input_stream import AsyncInputStream
from convstream.events.message import Message
from convstream.events.node import EventNode, NodeContext, OutboundChannel, make_id
from convstream.events.session import Session
from convstream.events.tool_call import ToolCall

__all__ = [
    "AsyncInputStream",
    "AsyncToolCall",
    "ContentPart",
    "EventDispatcher",
    "EventNode",
    "Exchange",
    "Message",
    "NodeContext",
    "OutboundChannel",
    "Session",
    "ToolCall",
    "make_id",
    "routed_payload_types",
]
