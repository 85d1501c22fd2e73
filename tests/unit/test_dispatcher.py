"""Unit tests for the event dispatcher."""

import pytest

from convstream.events import EventDispatcher, Exchange, Session, routed_payload_types
from convstream.exceptions import ProtocolStateError, UnhandledConversationError
from convstream.models import ErrorStart, LabelUpdated, SessionStarted
from convstream.protocol import PAYLOAD_TYPES, Envelope


class TestRouting:
    """Tests for the payload routing table."""

    def test_every_payload_type_is_routed(self):
        """Test no registered payload type lacks a receiver."""
        assert routed_payload_types() == frozenset(PAYLOAD_TYPES.values())

    def test_make_id_is_uppercase_uuid(self):
        """Test generated identifiers."""
        generated = EventDispatcher.make_id()

        assert generated == generated.upper()
        assert len(generated) == 36
        assert generated != EventDispatcher.make_id()


class TestLazyCreation:
    """Tests for sessions and nodes created by inbound events."""

    def test_exchange_start_creates_one_session_and_one_exchange(self, dispatcher, inbound):
        """Test lazy creation from an exchange start."""
        sessions, exchanges = [], []
        dispatcher.on_session_start(sessions.append)
        dispatcher.on_session_start(lambda session: session.on_exchange_start(exchanges.append))

        dispatcher.dispatch(inbound("conv-1", "exchangeStart", exchangeId="ex-1"))

        assert len(dispatcher.sessions) == 1
        assert len(sessions) == 1
        session = dispatcher.get_session("conv-1")
        assert session.exchanges == [session.get_exchange("ex-1")]
        assert len(exchanges) == 1
        assert exchanges[0].start_event.exchange_id == "ex-1"

    def test_session_start_is_consumed_on_creation(self, dispatcher, inbound):
        """Test a remote startSession becomes the new session's start event."""
        dispatcher.dispatch(inbound("conv-1", "startSession", capabilities={"audio": True}))

        session = dispatcher.get_session("conv-1")
        assert session.start_event.capabilities == {"audio": True}

    def test_message_start_creates_missing_exchange(self, dispatcher, inbound):
        """Test a start event for an unknown parent creates the parent."""
        dispatcher.dispatch(inbound("conv-1", "messageStart", exchangeId="ex-1", messageId="m-1", role="assistant"))

        exchange = dispatcher.get_session("conv-1").get_exchange("ex-1")
        assert exchange is not None
        assert exchange.start_event is None
        assert exchange.get_message("m-1").is_assistant

    def test_late_exchange_start_fills_in_lazy_exchange(self, dispatcher, inbound):
        """Test the real start of a lazily created node is accepted once."""
        dispatcher.dispatch(inbound("conv-1", "messageStart", exchangeId="ex-1", messageId="m-1"))
        dispatcher.dispatch(inbound("conv-1", "exchangeStart", exchangeId="ex-1", conversationSequence=2))

        exchange = dispatcher.get_session("conv-1").get_exchange("ex-1")
        assert exchange.start_event.conversation_sequence == 2

        with pytest.raises(ProtocolStateError, match="already started"):
            dispatcher.dispatch(inbound("conv-1", "exchangeStart", exchangeId="ex-1"))

    def test_chunk_for_unknown_content_part_is_rejected(self, dispatcher, inbound):
        """Test non-start events never create nodes."""
        dispatcher.dispatch(inbound("conv-1", "messageStart", exchangeId="ex-1", messageId="m-1"))

        with pytest.raises(ProtocolStateError, match="unknown node cp-1"):
            dispatcher.dispatch(
                inbound("conv-1", "contentPartChunk", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1", data="x")
            )

    def test_error_for_unknown_exchange_is_rejected(self, dispatcher, inbound):
        """Test error events addressed to unknown nodes."""
        with pytest.raises(ProtocolStateError):
            dispatcher.dispatch(inbound("conv-1", "errorStart", errorId="err-1", exchangeId="missing"))

    def test_any_handlers_see_raw_envelopes(self, dispatcher, inbound):
        """Test on_any receives every inbound envelope."""
        seen = []
        dispatcher.on_any(seen.append)
        first = inbound("conv-1", "exchangeStart", exchangeId="ex-1")
        second = inbound("conv-1", "exchangeEnd", exchangeId="ex-1")

        dispatcher.dispatch(first)
        dispatcher.dispatch(second)

        assert seen == [first, second]


class TestStartSession:
    """Tests for locally started sessions."""

    def test_start_session_sends_start(self, dispatcher, channel):
        """Test a start envelope is queued."""
        session = dispatcher.start_session("conv-1", properties={"agent": "support"}, capabilities={"text": True})

        assert isinstance(session, Session)
        assert dispatcher.get_session("conv-1") is session
        assert session.properties == {"agent": "support"}
        assert channel.wire() == [{"conversationId": "conv-1", "startSession": {"capabilities": {"text": True}}}]

    def test_generated_conversation_id(self, dispatcher):
        """Test a conversation id is generated when omitted."""
        session = dispatcher.start_session()

        assert session.conversation_id == session.conversation_id.upper()
        assert dispatcher.get_session(session.conversation_id) is session

    def test_replacement_deletes_prior_session_first(self, dispatcher):
        """Test starting twice notifies deletion before the new session is visible."""
        first = dispatcher.start_session("conv-1")
        visible_during_delete = []
        first.on_deleted(lambda node: visible_during_delete.append(dispatcher.get_session("conv-1")))

        second = dispatcher.start_session("conv-1")

        assert first.deleted
        assert len(visible_during_delete) == 1
        assert visible_during_delete[0] is not second
        assert dispatcher.get_session("conv-1") is second
        assert len(dispatcher.sessions) == 1

    def test_remove_session(self, dispatcher, channel):
        """Test removing a session locally sends nothing."""
        dispatcher.start_session("conv-1")
        sent = len(channel.sent)

        dispatcher.remove_session("conv-1")
        dispatcher.remove_session("unknown")

        assert dispatcher.get_session("conv-1") is None
        assert len(channel.sent) == sent

    def test_conversation_level_errors(self, dispatcher, channel):
        """Test error envelopes sent without a session."""
        error_id = dispatcher.send_error_start("conv-9", message="bad input")
        dispatcher.send_error_end("conv-9", error_id)

        assert channel.keys == ["errorStart", "errorEnd"]
        assert channel.sent[0].payload.message == "bad input"
        assert channel.sent[1].payload.error_id == error_id

    @pytest.mark.asyncio
    async def test_conv_1_scenario(self, dispatcher, channel):
        """Test the single-message round trip through the tree."""
        session = dispatcher.start_session("conv-1")
        exchange = session.start_exchange("ex-1")

        message = await exchange.send_message_with_content_part("hi", role="user")

        looked_up = dispatcher.get_session("conv-1").get_exchange("ex-1").get_message(message.message_id)
        assert looked_up is message
        assert len(looked_up.content_parts) == 1
        assert looked_up.content_parts[0].data == "hi"
        assert looked_up.ended
        assert channel.keys == [
            "startSession",
            "exchangeStart",
            "messageStart",
            "contentPartStart",
            "contentPartChunk",
            "contentPartEnd",
            "messageEnd",
        ]
        assert channel.flushes == 1

    @pytest.mark.asyncio
    async def test_scoped_session_sends_end(self, dispatcher, channel):
        """Test the callback form ends the session and flushes."""
        seen = []

        async def use(session):
            seen.append(session)
            return "done"

        result = await dispatcher.start_session("conv-1", callback=use)

        assert result == "done"
        assert seen[0].ended
        assert channel.keys == ["startSession", "endSession"]
        assert channel.flushes == 1
        assert dispatcher.get_session("conv-1") is None

    @pytest.mark.asyncio
    async def test_scoped_session_sends_end_on_failure(self, dispatcher, channel):
        """Test the end event is sent even when the callback raises."""

        def use(session):
            session.start_exchange("ex-1")
            raise ValueError("callback failed")

        with pytest.raises(ValueError, match="callback failed"):
            await dispatcher.start_session("conv-1", callback=use)

        assert channel.keys[-1] == "endSession"

    @pytest.mark.asyncio
    async def test_session_as_context_manager(self, dispatcher, channel):
        """Test async with ends the session on exit."""
        async with dispatcher.start_session("conv-1") as session:
            session.start_exchange("ex-1")

        assert session.ended
        assert channel.keys == ["startSession", "exchangeStart", "endSession"]

    @pytest.mark.asyncio
    async def test_context_manager_after_explicit_end(self, dispatcher, channel):
        """Test exiting after an explicit end sends nothing more."""
        async with dispatcher.start_session("conv-1") as session:
            session.send_session_end()

        assert channel.keys == ["startSession", "endSession"]


class TestSessionEvents:
    """Tests for session-level inbound events."""

    def test_session_started_and_label(self, dispatcher, inbound):
        """Test session observers."""
        session = dispatcher.start_session("conv-1")
        started, labels = [], []
        session.on_session_started(started.append)
        session.on_label_updated(labels.append)

        dispatcher.dispatch(inbound("conv-1", "sessionStarted", capabilities={"voice": False}))
        dispatcher.dispatch(inbound("conv-1", "labelUpdated", label="Billing question", autogenerated=True))

        assert isinstance(started[0], SessionStarted)
        assert isinstance(labels[0], LabelUpdated)
        assert session.label == "Billing question"

    def test_session_ending_notice(self, dispatcher, inbound):
        """Test the server's session-ending notice reaches observers."""
        session = dispatcher.start_session("conv-1")
        notices = []
        session.on_session_ending(notices.append)

        dispatcher.dispatch(inbound("conv-1", "sessionEnding", timeToLiveMS=1500))

        assert notices[0].time_to_live_ms == 1500
        assert not session.ended

    def test_remote_end_removes_session(self, dispatcher, inbound):
        """Test endSession from the remote side ends and forgets the session."""
        session = dispatcher.start_session("conv-1")
        session.start_exchange("ex-1")
        ended, deleted = [], []
        session.on_session_end(ended.append)
        session.on_deleted(deleted.append)

        dispatcher.dispatch(inbound("conv-1", "endSession"))

        assert session.ended
        assert len(ended) == 1
        assert deleted == [session]
        assert dispatcher.get_session("conv-1") is None
        assert session.exchanges == []

    def test_events_after_end_start_a_new_session(self, dispatcher, inbound):
        """Test a conversation id can be reused after its session ended."""
        first = dispatcher.start_session("conv-1")
        dispatcher.dispatch(inbound("conv-1", "endSession"))

        dispatcher.dispatch(inbound("conv-1", "exchangeStart", exchangeId="ex-2"))

        second = dispatcher.get_session("conv-1")
        assert second is not first
        assert second.get_exchange("ex-2") is not None

    def test_send_after_session_end_is_rejected(self, dispatcher):
        """Test the freeze invariant on sessions."""
        session = dispatcher.start_session("conv-1")
        session.send_session_end()

        with pytest.raises(ProtocolStateError):
            session.send_session_end()
        with pytest.raises(ProtocolStateError):
            session.start_exchange()

    def test_properties_last_write_wins(self, dispatcher):
        """Test the property bag merges."""
        session = dispatcher.start_session("conv-1", properties={"a": 1, "b": 1})

        session.set_properties(b=2, c=3)

        assert session.properties == {"a": 1, "b": 2, "c": 3}


class TestErrorRouting:
    """Tests for error events through the tree."""

    @pytest.fixture
    def exchange(self, dispatcher) -> Exchange:
        return dispatcher.start_session("conv-1").start_exchange("ex-1")

    def test_only_unhandled_handler_fires(self, dispatcher, exchange, inbound):
        """Test the unhandled tier with no local or any handlers."""
        unhandled = []
        dispatcher.on_unhandled_error_start(unhandled.append)

        dispatcher.dispatch(inbound("conv-1", "errorStart", errorId="err-1", exchangeId="ex-1", message="boom"))

        assert len(unhandled) == 1
        assert unhandled[0].source is exchange
        assert exchange.errors["err-1"].message == "boom"
        assert exchange.has_error

    def test_only_local_handler_fires(self, dispatcher, exchange, inbound):
        """Test the local tier wins over any and unhandled handlers."""
        local, any_calls, unhandled = [], [], []
        exchange.on_error_start(local.append)
        dispatcher.on_any_error_start(any_calls.append)
        dispatcher.on_unhandled_error_start(unhandled.append)

        dispatcher.dispatch(inbound("conv-1", "errorStart", errorId="err-1", exchangeId="ex-1"))

        assert len(local) == 1
        assert isinstance(local[0], ErrorStart)
        assert any_calls == []
        assert unhandled == []

    def test_session_any_error_handlers(self, dispatcher, exchange, inbound):
        """Test a session's any-error handlers cover its descendants."""
        scoped, unhandled = [], []
        exchange.parent.on_any_error_start(scoped.append)
        dispatcher.on_unhandled_error_start(unhandled.append)

        dispatcher.dispatch(inbound("conv-1", "errorStart", errorId="err-1", exchangeId="ex-1"))

        assert len(scoped) == 1
        assert unhandled == []

    def test_error_end_clears_error(self, dispatcher, exchange, inbound):
        """Test error-end removes the error and resolves through its own chain."""
        starts, ends = [], []
        exchange.on_error_start(starts.append)
        dispatcher.on_any_error_end(ends.append)

        dispatcher.dispatch(inbound("conv-1", "errorStart", errorId="err-1", exchangeId="ex-1"))
        dispatcher.dispatch(inbound("conv-1", "errorEnd", errorId="err-1", exchangeId="ex-1"))

        assert len(starts) == 1
        assert len(ends) == 1
        assert not exchange.has_error

    def test_conversation_level_error(self, dispatcher, inbound):
        """Test errors without ids address the session."""
        session = dispatcher.start_session("conv-1")
        local = []
        session.on_error_start(local.append)

        dispatcher.dispatch(inbound("conv-1", "errorStart", errorId="err-1"))

        assert len(local) == 1
        assert "err-1" in session.errors

    def test_deepest_id_is_addressed(self, dispatcher, inbound):
        """Test an error carrying several ids goes to the deepest node."""
        dispatcher.dispatch(
            inbound("conv-1", "contentPartStart", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1")
        )
        part = dispatcher.get_session("conv-1").get_exchange("ex-1").get_message("m-1").get_content_part("cp-1")
        message_errors, part_errors = [], []
        part.parent.on_error_start(message_errors.append)
        part.on_error_start(part_errors.append)

        dispatcher.dispatch(
            inbound("conv-1", "errorStart", errorId="err-1", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1")
        )

        assert len(part_errors) == 1
        assert message_errors == []

    def test_unhandled_error_raises_without_loop(self, dispatcher, exchange, inbound):
        """Test the fail-loud fallback from dispatch()."""
        with pytest.raises(UnhandledConversationError) as exc_info:
            dispatcher.dispatch(inbound("conv-1", "errorStart", errorId="err-1", exchangeId="ex-1"))

        assert exc_info.value.error_id == "err-1"

    def test_unregistered_handler_falls_through(self, dispatcher, exchange, inbound):
        """Test unregistering the local handler re-enables the fallback chain."""
        local, unhandled = [], []
        unregister = exchange.on_error_start(local.append)
        dispatcher.on_unhandled_error_start(unhandled.append)

        unregister()
        dispatcher.dispatch(inbound("conv-1", "errorStart", errorId="err-1", exchangeId="ex-1"))

        assert local == []
        assert len(unhandled) == 1

    def test_meta_event(self, dispatcher, exchange, inbound):
        """Test meta events reach the addressed node."""
        received = []
        exchange.on_meta_event(received.append)

        dispatcher.dispatch(inbound("conv-1", "metaEvent", exchangeId="ex-1", latencyMs=42))

        assert received[0].data == {"latencyMs": 42}


class TestPauseResume:
    """Tests for buffering inbound events."""

    def test_paused_node_buffers_in_order(self, dispatcher, inbound):
        """Test events are replayed on resume in arrival order."""
        session = dispatcher.start_session("conv-1")
        exchanges = []
        session.on_exchange_start(exchanges.append)
        session.pause()

        dispatcher.dispatch(inbound("conv-1", "exchangeStart", exchangeId="ex-1"))
        dispatcher.dispatch(inbound("conv-1", "exchangeStart", exchangeId="ex-2"))
        assert exchanges == []

        session.resume()

        assert [exchange.id for exchange in exchanges] == ["ex-1", "ex-2"]

    def test_ended_node_rejects_inbound(self, dispatcher, inbound):
        """Test events for an ended exchange are protocol violations."""
        dispatcher.dispatch(inbound("conv-1", "exchangeStart", exchangeId="ex-1"))
        dispatcher.dispatch(inbound("conv-1", "exchangeEnd", exchangeId="ex-1"))

        with pytest.raises(ProtocolStateError, match="after it ended"):
            dispatcher.dispatch(inbound("conv-1", "messageStart", exchangeId="ex-1", messageId="m-1"))

    def test_envelope_without_session_start_handlers(self, dispatcher):
        """Test dispatching a prebuilt Envelope object."""
        dispatcher.dispatch(Envelope("conv-2", SessionStarted()))

        assert dispatcher.get_session("conv-2") is not None
