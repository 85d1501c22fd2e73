"""Shared pytest fixtures for testing."""

from typing import Any, Dict, List, Optional

import pytest

from convstream.config import ClientConfig
from convstream.connection import TransportHandle
from convstream.events.dispatcher import EventDispatcher
from convstream.events.node import OutboundChannel
from convstream.protocol import Envelope

# =============================================================================
# Fakes
# =============================================================================


class RecordingChannel(OutboundChannel):
    """Outbound channel that keeps every envelope in memory."""

    def __init__(self) -> None:
        self.sent: List[Envelope] = []
        self.flushes = 0

    def send(self, envelope: Envelope) -> None:
        self.sent.append(envelope)

    async def flush(self) -> None:
        self.flushes += 1

    @property
    def keys(self) -> List[str]:
        return [envelope.payload_key for envelope in self.sent]

    def wire(self) -> List[Dict[str, Any]]:
        return [envelope.to_wire() for envelope in self.sent]


class FakeTransport(TransportHandle):
    """In-memory transport handle driven by the test."""

    def __init__(self) -> None:
        super().__init__()
        self.opened = 0
        self.close_calls = 0
        self.frames: List[str] = []
        self.fail_sends: Optional[BaseException] = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def open(self) -> None:
        self.opened += 1

    async def send(self, text: str) -> None:
        if self.fail_sends is not None:
            raise self.fail_sends
        self.frames.append(text)

    def close(self) -> None:
        self.close_calls += 1
        self._connected = False

    # Signals

    def simulate_connect(self) -> None:
        self._connected = True
        self._fire("connect")

    def simulate_connect_error(self, error: BaseException) -> None:
        self._fire("connect_error", error)

    def simulate_disconnect(self, reason: str = "transport close") -> None:
        self._connected = False
        self._fire("disconnect", reason)

    def simulate_closed(self) -> None:
        self._connected = False
        self._fire("closed")

    def simulate_message(self, text: str) -> None:
        self._fire("message", text)


class TransportFactory:
    """Hands out FakeTransports and remembers them."""

    def __init__(self, auto_connect: bool = False) -> None:
        self.auto_connect = auto_connect
        self.handles: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        handle = FakeTransport()
        if self.auto_connect:
            original_open = handle.open

            def open_and_connect() -> None:
                original_open()
                handle.simulate_connect()

            handle.open = open_and_connect  # type: ignore[method-assign]
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeTransport:
        return self.handles[-1]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def channel() -> RecordingChannel:
    """Outbound channel recording sent envelopes."""
    return RecordingChannel()


@pytest.fixture
def dispatcher(channel) -> EventDispatcher:
    """Dispatcher without a history client."""
    return EventDispatcher(channel)


@pytest.fixture
def transport_factory() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def config() -> ClientConfig:
    """Configuration that ignores the environment's reconnect settings."""
    return ClientConfig(
        base_url="https://agents.example.com",
        organization_id="org_123",
        tenant_id="tenant_456",
        reconnection_delay=0.01,
        reconnection_delay_max=0.04,
    )


@pytest.fixture
def token_provider():
    async def provide() -> str:
        return "test-token"

    return provide


@pytest.fixture
def inbound():
    """Build an inbound envelope from its wire form."""

    def build(conversation_id: str, key: str, **payload: Any) -> Envelope:
        return Envelope.from_wire({"conversationId": conversation_id, key: payload})

    return build
