"""
convstream - Protocol

The envelope is the unit exchanged with the agent runtime: a conversation
identifier plus exactly one typed payload.

    {"conversationId": "conv-1", "exchangeStart": {"exchangeId": "ex-1"}}
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Type, Union

from pydantic import ValidationError

from convstream.exceptions import ProtocolValidationError
from convstream.models import (
    AsyncInputStreamChunk,
    AsyncInputStreamEnd,
    AsyncInputStreamStart,
    AsyncToolCallEnd,
    AsyncToolCallStart,
    ContentPartChunk,
    ContentPartEnd,
    ContentPartStart,
    ErrorEnd,
    ErrorStart,
    EventPayload,
    ExchangeEnd,
    ExchangeStart,
    InterruptEnd,
    InterruptStart,
    LabelUpdated,
    MessageEnd,
    MessageStart,
    MetaEvent,
    SessionEnd,
    SessionEnding,
    SessionStart,
    SessionStarted,
    ToolCallEnd,
    ToolCallStart,
)

CONVERSATION_ID_KEY = "conversationId"

# Payload key -> payload model
PAYLOAD_TYPES: Dict[str, Type[EventPayload]] = {
    payload_type.wire_key: payload_type
    for payload_type in (
        SessionStart,
        SessionStarted,
        SessionEnding,
        SessionEnd,
        LabelUpdated,
        ExchangeStart,
        ExchangeEnd,
        MessageStart,
        MessageEnd,
        ContentPartStart,
        ContentPartChunk,
        ContentPartEnd,
        ToolCallStart,
        ToolCallEnd,
        InterruptStart,
        InterruptEnd,
        AsyncInputStreamStart,
        AsyncInputStreamChunk,
        AsyncInputStreamEnd,
        AsyncToolCallStart,
        AsyncToolCallEnd,
        ErrorStart,
        ErrorEnd,
        MetaEvent,
    )
}


@dataclass(frozen=True)
class Envelope:
    """One protocol message scoped to a conversation."""
    conversation_id: str
    payload: EventPayload

    @property
    def payload_key(self) -> str:
        return self.payload.wire_key

    def to_wire(self) -> Dict[str, Any]:
        return {
            CONVERSATION_ID_KEY: self.conversation_id,
            self.payload.wire_key: self.payload.to_wire(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_wire())

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "Envelope":
        """
        Parse an envelope from its decoded JSON form.

        Raises:
            ProtocolValidationError: If the conversation id is missing, the
                payload key count is not exactly one, the key is unknown, or
                the payload fails validation.
        """
        if not isinstance(data, Mapping):
            raise ProtocolValidationError("Envelope must be a JSON object")

        conversation_id = data.get(CONVERSATION_ID_KEY)
        if not isinstance(conversation_id, str) or not conversation_id:
            raise ProtocolValidationError("Envelope is missing conversationId")

        keys = [key for key in data if key != CONVERSATION_ID_KEY]
        if len(keys) != 1:
            raise ProtocolValidationError(
                f"Envelope must carry exactly one payload, got {len(keys)}: {sorted(keys)}"
            )

        key = keys[0]
        payload_type = PAYLOAD_TYPES.get(key)
        if payload_type is None:
            raise ProtocolValidationError(f"Unknown payload key: {key}")

        try:
            payload = payload_type.model_validate(data[key] or {})
        except ValidationError as e:
            raise ProtocolValidationError(
                f"Invalid {key} payload: {e.error_count()} error(s)",
                errors=e.errors(include_url=False),
            ) from e

        return cls(conversation_id=conversation_id, payload=payload)

    @classmethod
    def from_json(cls, message: Union[str, bytes]) -> "Envelope":
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            raise ProtocolValidationError(f"Invalid JSON message: {e}") from e
        except UnicodeDecodeError as e:
            raise ProtocolValidationError(f"Message is not valid UTF-8: {e}") from e
        return cls.from_wire(data)
