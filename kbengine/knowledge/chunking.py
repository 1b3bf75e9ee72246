"""
Streaming Chunker

Split text into bounded, overlapping chunks for independent embedding.

Design decisions:
- Generator based, so a file is never held as a list of chunks
- Separator priority from paragraphs down to single characters,
  covering CJK and Latin punctuation
- Chunks are never trimmed: dropping the leading overlap of every
  chunk after the first gives back the source text exactly
"""

from collections.abc import Iterable, Iterator

from kbengine.core.exceptions import ConfigurationError
from kbengine.core.types import TextSegment

DEFAULT_SEPARATORS: tuple[str, ...] = (
    "\n\n",  # paragraph
    "\n",  # line
    "。",
    ". ",
    "！",
    "! ",
    "？",
    "? ",
    "；",
    "; ",
    "，",
    ", ",
    " ",
    "",  # character boundary, last resort
)


class StreamingChunker:
    """
    Separator-priority chunker over a text stream.

    The buffer is cut whenever it reaches ``chunk_size``. The cut lands
    right after the highest-priority separator whose last occurrence
    ends past half of ``chunk_size``; without one the buffer is hard-cut
    at ``chunk_size``. The last ``overlap`` characters before the cut
    start the next buffer.
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        overlap: int = 150,
        separators: Iterable[str] = DEFAULT_SEPARATORS,
    ):
        if chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive", context={"chunk_size": chunk_size})
        if not 0 <= overlap < chunk_size:
            raise ConfigurationError(
                "overlap must be non-negative and smaller than chunk_size",
                context={"chunk_size": chunk_size, "overlap": overlap},
            )

        self.chunk_size = chunk_size
        self.overlap = overlap
        self._separators = [s for s in separators if s]
        # Cuts must land past both half the chunk and the overlap,
        # otherwise the buffer would not shrink
        self._min_cut = max(int(chunk_size * 0.5), overlap)

    def iter_chunks(self, source: str | Iterable[str]) -> Iterator[str]:
        """
        Yield chunks in source order.

        Args:
            source: Whole text or an iterable of text pieces (pages, blocks)

        Yields:
            Chunk strings of at most ``chunk_size`` characters
        """
        pieces = (source,) if isinstance(source, str) else source

        buffer = ""
        carried = 0  # length of the overlap prefix taken from the previous chunk
        emitted = False

        for piece in pieces:
            if not piece:
                continue
            buffer += piece

            while len(buffer) >= self.chunk_size:
                cut = self._find_cut(buffer)
                yield buffer[:cut]
                emitted = True
                buffer = buffer[cut - self.overlap :]
                carried = self.overlap

        if buffer and (not emitted or len(buffer) > carried):
            yield buffer

    def chunk_text(self, text: str) -> list[str]:
        """Chunk a complete string."""
        return list(self.iter_chunks(text))

    def iter_segments(self, segments: Iterable[TextSegment]) -> Iterator[TextSegment]:
        """
        Chunk pre-split segments independently, keeping their metadata.

        Segments shorter than ``chunk_size`` pass through unchanged.
        """
        for segment in segments:
            for i, chunk in enumerate(self.iter_chunks(segment.text)):
                yield TextSegment(
                    text=chunk,
                    metadata={**segment.metadata, "segment_chunk": i},
                )

    def _find_cut(self, buffer: str) -> int:
        window = buffer[: self.chunk_size]

        for sep in self._separators:
            index = window.rfind(sep)
            if index == -1:
                continue
            end = index + len(sep)
            if end > self._min_cut:
                return end

        return self.chunk_size

    def estimate_chunks(self, text_length: int) -> int:
        """Rough number of chunks a text of this length produces."""
        if text_length <= 0:
            return 0
        if text_length <= self.chunk_size:
            return 1
        step = self.chunk_size - self.overlap
        return 1 + -(-(text_length - self.chunk_size) // step)
