"""Unit tests for content parts: buffering, citations and completion."""

from unittest.mock import patch

import pytest

from convstream.events import ContentPart
from convstream.exceptions import ProtocolStateError
from convstream.models import CitationErrorType, CitationSource, CompletedContentPart


@pytest.fixture
def message(dispatcher):
    session = dispatcher.start_session("conv-1")
    return session.start_exchange("ex-1").start_message("m-1", role="assistant")


@pytest.fixture
def part(message) -> ContentPart:
    return message.start_content_part("cp-1", mime_type="text/markdown")


def chunk(inbound, data, **citation):
    payload = {"exchangeId": "ex-1", "messageId": "m-1", "contentPartId": "cp-1", "data": data}
    if citation:
        payload["citation"] = citation
    return inbound("conv-1", "contentPartChunk", **payload)


def end(inbound, **fields):
    return inbound("conv-1", "contentPartEnd", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1", **fields)


class TestOrdering:
    """Tests for chunk concatenation."""

    @pytest.mark.parametrize("chunks", [[], ["only"], ["The ", "quick ", "brown ", "fox"], ["", "a", "", "b"]])
    def test_data_is_chunks_in_order(self, dispatcher, message, inbound, chunks):
        """Test the completed text equals the chunks joined in arrival order."""
        dispatcher.dispatch(
            inbound("conv-1", "contentPartStart", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1")
        )
        for data in chunks:
            dispatcher.dispatch(chunk(inbound, data))
        completed = []
        message.get_content_part("cp-1").on_completed(completed.append)

        dispatcher.dispatch(end(inbound))

        assert completed[0].data == "".join(chunks)
        assert message.get_content_part("cp-1").chunks == chunks

    def test_local_sends_update_buffer(self, part, channel):
        """Test the sender's own tree reflects what was sent."""
        part.send_chunk("Hello, ")
        part.send_chunk("world")

        assert part.data == "Hello, world"
        assert channel.keys[-2:] == ["contentPartChunk", "contentPartChunk"]
        assert channel.sent[-1].payload.data == "world"

    def test_chunk_observer(self, dispatcher, inbound):
        """Test on_chunk sees each inbound chunk."""
        seen = []
        dispatcher.on_session_start(
            lambda session: session.on_exchange_start(
                lambda exchange: exchange.on_message_start(
                    lambda message: message.on_content_part_start(
                        lambda part: part.on_chunk(seen.append)
                    )
                )
            )
        )

        dispatcher.dispatch(
            inbound("conv-1", "contentPartStart", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1")
        )
        dispatcher.dispatch(chunk(inbound, "a"))
        dispatcher.dispatch(chunk(inbound, "b"))

        assert [c.data for c in seen] == ["a", "b"]


class TestCitations:
    """Tests for citation range resolution."""

    def test_round_trip(self, part):
        """Test a start/end pair resolves to one citation without defects."""
        source = {"title": "Physics 101", "url": "https://example.com/physics"}
        part.send_chunk("Intro. ")
        part.send_chunk_with_citation_start("C", "The sky ")
        part.send_chunk("is ")
        part.send_chunk_with_citation_end("C", "blue.", sources=[source])
        part.send_content_part_end()

        completed = part.to_completed()

        assert completed.data == "Intro. The sky is blue."
        assert len(completed.citations) == 1
        citation = completed.citations[0]
        assert citation.citation_id == "C"
        assert citation.sources == [CitationSource(**source)]
        assert completed.data[citation.offset:citation.offset + citation.length] == "The sky is blue."
        assert completed.citation_errors == []

    def test_whole_citation(self, part):
        """Test a single chunk carrying both markers cites exactly its data."""
        part.send_chunk("See ")
        part.send_chunk_with_citation("C", "this study", sources=[CitationSource(title="Study")])
        part.send_chunk(" for details.")
        part.send_content_part_end()

        citation = part.citations[0]
        assert (citation.offset, citation.length) == (4, 10)
        assert citation.sources[0].title == "Study"

    def test_empty_marker_chunks(self, part):
        """Test markers on empty chunks bracket the text between them."""
        part.send_chunk("a")
        part.send_chunk_with_citation_start("C")
        part.send_chunk("bc")
        part.send_chunk_with_citation_end("C", sources=[{"title": "S"}])
        part.send_chunk("d")

        citation = part.citations[0]
        assert (citation.offset, citation.length) == (1, 2)

    def test_interleaved_citations(self, part):
        """Test two open citations resolve independently."""
        part.send_chunk_with_citation_start("A", "one ")
        part.send_chunk_with_citation_start("B", "two ")
        part.send_chunk_with_citation_end("A", "three", sources=[{"title": "a"}])
        part.send_chunk_with_citation_end("B", "", sources=[{"title": "b"}])

        resolved = {c.citation_id: (c.offset, c.length) for c in part.citations}
        assert resolved == {"A": (0, 13), "B": (4, 9)}

    def test_not_ended_defect(self, part):
        """Test a citation still open at end is recorded, not resolved."""
        part.send_chunk_with_citation_start("C", "dangling")
        part.send_content_part_end()

        completed = part.to_completed()
        assert completed.citations == []
        assert len(completed.citation_errors) == 1
        assert completed.citation_errors[0].citation_id == "C"
        assert completed.citation_errors[0].error_type is CitationErrorType.NOT_ENDED

    def test_not_started_defect(self, part):
        """Test an end marker without a start is recorded."""
        part.send_chunk_with_citation_end("X", "orphan", sources=[{"title": "s"}])

        assert part.citations == []
        assert part.citation_errors[0].error_type is CitationErrorType.NOT_STARTED
        assert part.data == "orphan"

    def test_inbound_citation_round_trip(self, dispatcher, message, inbound):
        """Test citation markers on received chunks."""
        dispatcher.dispatch(
            inbound("conv-1", "contentPartStart", exchangeId="ex-1", messageId="m-2", contentPartId="cp-9")
        )
        completed = []
        message.parent.get_message("m-2").on_content_part_completed(completed.append)

        base = {"exchangeId": "ex-1", "messageId": "m-2", "contentPartId": "cp-9"}
        dispatcher.dispatch(inbound("conv-1", "contentPartChunk", data="Water ", **base))
        dispatcher.dispatch(
            inbound("conv-1", "contentPartChunk", data="boils", citation={"citationId": "W", "startCitation": {}}, **base)
        )
        dispatcher.dispatch(
            inbound(
                "conv-1",
                "contentPartChunk",
                data=" at 100C",
                citation={"citationId": "W", "endCitation": {"sources": [{"title": "Chemistry"}]}},
                **base,
            )
        )
        dispatcher.dispatch(inbound("conv-1", "contentPartEnd", **base))

        result = completed[0]
        assert isinstance(result, CompletedContentPart)
        assert result.data == "Water boils at 100C"
        assert (result.citations[0].offset, result.citations[0].length) == (6, 13)
        assert result.citations[0].sources[0].title == "Chemistry"
        assert result.citation_errors == []


class TestCompletionAggregation:
    """Tests for building completed content parts on demand."""

    def test_not_built_without_observers(self, dispatcher, message, inbound):
        """Test no aggregate is built when nobody observes completion."""
        dispatcher.dispatch(
            inbound("conv-1", "contentPartStart", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1")
        )
        part = message.get_content_part("cp-1")

        with patch.object(part, "to_completed", wraps=part.to_completed) as to_completed:
            dispatcher.dispatch(chunk(inbound, "a"))
            dispatcher.dispatch(end(inbound))

        assert to_completed.call_count == 0
        assert part.to_completed().data == "a"

    def test_built_once_for_message_observer(self, dispatcher, message, inbound):
        """Test a message-level observer alone triggers aggregation."""
        completed = []
        message.on_content_part_completed(completed.append)
        dispatcher.dispatch(
            inbound("conv-1", "contentPartStart", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1")
        )
        part = message.get_content_part("cp-1")

        with patch.object(part, "to_completed", wraps=part.to_completed) as to_completed:
            dispatcher.dispatch(chunk(inbound, "b"))
            dispatcher.dispatch(end(inbound))

        assert to_completed.call_count == 1
        assert [c.data for c in completed] == ["b"]
        assert part.to_completed() is completed[0]


class TestFreeze:
    """Tests for the frozen-after-end rule on content parts."""

    def test_sends_after_end_rejected(self, part):
        """Test every mutating send fails once the part has ended."""
        part.send_content_part_end()

        with pytest.raises(ProtocolStateError):
            part.send_chunk("late")
        with pytest.raises(ProtocolStateError):
            part.send_chunk_with_citation_start("C", "late")
        with pytest.raises(ProtocolStateError):
            part.send_content_part_end()

    def test_inbound_chunk_after_end_rejected(self, dispatcher, inbound):
        """Test chunk events after the end event are protocol violations."""
        dispatcher.dispatch(
            inbound("conv-1", "contentPartStart", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1")
        )
        dispatcher.dispatch(end(inbound))

        with pytest.raises(ProtocolStateError):
            dispatcher.dispatch(chunk(inbound, "late"))

        part = dispatcher.get_session("conv-1").get_exchange("ex-1").get_message("m-1").get_content_part("cp-1")
        assert part.data == ""


class TestContentPartProperties:
    """Tests for MIME and flag accessors."""

    def test_mime_type_flags(self, message):
        """Test MIME helpers."""
        markdown = message.start_content_part(mime_type="text/markdown")
        html = message.start_content_part(mime_type="text/html")
        audio = message.start_content_part(mime_type="audio/wav")
        image = message.start_content_part(mime_type="image/png")

        assert markdown.is_text and markdown.is_markdown
        assert html.is_html and not html.is_markdown
        assert audio.is_audio and not audio.is_text
        assert image.is_image

    def test_default_mime_type_for_lazy_part(self, dispatcher, inbound):
        """Test a start without mimeType defaults to text/plain."""
        dispatcher.dispatch(
            inbound("conv-1", "contentPartStart", exchangeId="ex-1", messageId="m-1", contentPartId="cp-1")
        )

        part = dispatcher.get_session("conv-1").get_exchange("ex-1").get_message("m-1").get_content_part("cp-1")
        assert part.mime_type == "text/plain"

    def test_transcript_flag(self, message, channel):
        """Test transcripts are flagged through meta data."""
        part = message.start_content_part(is_transcript=True)

        assert part.is_transcript
        assert channel.sent[-1].to_wire()["contentPartStart"]["metaData"] == {"isTranscript": True}

    def test_interrupted_end(self, part):
        """Test an interrupted part is incomplete."""
        part.send_chunk("partial")
        part.send_content_part_end(interrupted=True)

        assert part.is_incomplete
        assert part.to_completed().is_incomplete

    def test_duplicate_content_part_id(self, message):
        """Test content part ids are unique within a message."""
        message.start_content_part("cp-1")

        with pytest.raises(ProtocolStateError, match="already exists"):
            message.start_content_part("cp-1")

    @pytest.mark.asyncio
    async def test_fetch_external_data_without_external_value(self, part):
        """Test loading external data requires an external value."""
        with pytest.raises(ProtocolStateError, match="no external value"):
            await part.fetch_external_data()

    @pytest.mark.asyncio
    async def test_scoped_content_part(self, message, channel):
        """Test the callback form ends the content part."""
        await message.start_content_part("cp-7", callback=lambda part: part.send_chunk("x"))

        assert message.get_content_part("cp-7").ended
        assert channel.keys[-2:] == ["contentPartChunk", "contentPartEnd"]
