"""
Unit Tests - Chunking

Tests for StreamingChunker.
"""

import pytest

from kbengine.core.exceptions import ConfigurationError
from kbengine.core.types import TextSegment
from kbengine.knowledge.chunking import StreamingChunker


def sentences(count: int) -> str:
    return "".join(f"Sentence {i:03d} ends here. " for i in range(count))


def reassemble(chunks: list[str], overlap: int) -> str:
    return chunks[0] + "".join(c[overlap:] for c in chunks[1:])


class TestStreamingChunker:
    """Tests for separator-priority chunking."""

    def test_short_text_is_one_chunk(self):
        """Text below chunk_size passes through unchanged."""
        chunker = StreamingChunker(chunk_size=1000, overlap=150)

        assert chunker.chunk_text("A short note.") == ["A short note."]

    def test_empty_text_yields_nothing(self):
        chunker = StreamingChunker()

        assert chunker.chunk_text("") == []

    def test_cuts_after_sentence_boundaries(self):
        """A 2000 character text splits on sentence ends with shared overlap."""
        chunker = StreamingChunker(chunk_size=1000, overlap=150)
        text = sentences(100)[:2000]

        chunks = chunker.chunk_text(text)

        assert [len(c) for c in chunks] == [984, 990, 326]
        assert all(c.endswith("here. ") for c in chunks[:2])
        for current, following in zip(chunks, chunks[1:]):
            assert current[-150:] == following[:150]

    def test_overlap_removal_rebuilds_source(self):
        chunker = StreamingChunker(chunk_size=1000, overlap=150)
        text = sentences(100)[:2000]

        assert reassemble(chunker.chunk_text(text), 150) == text

    def test_chunks_never_exceed_size(self):
        chunker = StreamingChunker(chunk_size=200, overlap=30)
        text = sentences(80)

        chunks = chunker.chunk_text(text)

        assert len(chunks) > 1
        assert all(len(c) <= 200 for c in chunks)
        assert reassemble(chunks, 30) == text

    def test_paragraph_break_preferred(self):
        """A paragraph break wins over later sentence ends."""
        chunker = StreamingChunker(chunk_size=100, overlap=10)
        text = "a" * 60 + "\n\n" + "b. " * 20

        chunks = chunker.chunk_text(text)

        assert chunks[0] == "a" * 60 + "\n\n"

    def test_hard_cut_without_separators(self):
        chunker = StreamingChunker(chunk_size=100, overlap=20)
        text = "x" * 250

        chunks = chunker.chunk_text(text)

        assert [len(c) for c in chunks] == [100, 100, 90]
        assert reassemble(chunks, 20) == text

    def test_cjk_punctuation(self):
        """Chinese full stops are valid cut points."""
        chunker = StreamingChunker(chunk_size=50, overlap=5)
        text = "这是一个测试句子。" * 20

        chunks = chunker.chunk_text(text)

        assert all(c.endswith("。") for c in chunks[:-1])
        assert reassemble(chunks, 5) == text

    def test_streamed_pieces_match_whole_text(self):
        """Feeding pieces yields the same chunks as the full string."""
        chunker = StreamingChunker(chunk_size=300, overlap=40)
        text = sentences(60)
        pieces = [text[i : i + 77] for i in range(0, len(text), 77)]

        assert list(chunker.iter_chunks(pieces)) == chunker.chunk_text(text)

    @pytest.mark.slow
    def test_large_stream_is_consumed_lazily(self):
        """Several megabytes stream through without materialising the source."""
        chunker = StreamingChunker(chunk_size=1000, overlap=150)
        consumed = []

        def pieces():
            for i in range(5000):
                consumed.append(i)
                yield sentences(40)

        stream = chunker.iter_chunks(pieces())
        first = next(stream)
        assert len(first) <= 1000
        assert len(consumed) <= 2

        sizes = [len(first)] + [len(chunk) for chunk in stream]
        assert len(consumed) == 5000
        assert max(sizes) <= 1000
        assert sum(sizes) - 150 * (len(sizes) - 1) == len(sentences(40)) * 5000

    def test_tail_fully_covered_by_overlap_is_dropped(self):
        """No trailing chunk that only repeats the previous overlap."""
        chunker = StreamingChunker(chunk_size=100, overlap=20)

        chunks = chunker.chunk_text("y" * 100)

        assert chunks == ["y" * 100]

    @pytest.mark.parametrize("chunk_size,overlap", [(100, 100), (100, 150), (100, -1), (0, 0)])
    def test_invalid_configuration(self, chunk_size, overlap):
        with pytest.raises(ConfigurationError):
            StreamingChunker(chunk_size=chunk_size, overlap=overlap)

    def test_segments_keep_metadata(self):
        chunker = StreamingChunker(chunk_size=100, overlap=10)
        segments = [
            TextSegment(text="page one", metadata={"page": 1}),
            TextSegment(text="z" * 150, metadata={"page": 2}),
        ]

        out = list(chunker.iter_segments(segments))

        assert out[0].text == "page one"
        assert out[0].metadata == {"page": 1, "segment_chunk": 0}
        assert [s.metadata["page"] for s in out[1:]] == [2, 2]
        assert [s.metadata["segment_chunk"] for s in out[1:]] == [0, 1]

    def test_estimate_chunks(self):
        chunker = StreamingChunker(chunk_size=1000, overlap=150)

        assert chunker.estimate_chunks(0) == 0
        assert chunker.estimate_chunks(800) == 1
        assert chunker.estimate_chunks(2000) == 3
