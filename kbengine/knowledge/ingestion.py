"""
Ingestion Pipeline

Parse → chunk → embed → store for one file or knowledge item.

Design decisions:
- Chunks stream through fixed-size batches; a batch's texts, vectors
  and records are dropped as soon as it is written
- Batch size shrinks as inputs grow, capped by max_batch_size
- Within a batch chunks are embedded sequentially, in source order
- Failures degrade to a structured result: a bad chunk is skipped, a bad
  batch is skipped, a parse error or lost connection ends the run
- Re-ingesting the same file is serialized by a per-file lock
"""

import asyncio
import itertools
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kbengine.config.settings import IngestionSettings
from kbengine.core.exceptions import (
    DimensionMismatchError,
    ParseError,
    StoreConnectionError,
    StoreError,
)
from kbengine.core.types import IngestionResult, KnowledgeType, TextSegment, VectorRecord
from kbengine.knowledge.chunking import StreamingChunker
from kbengine.knowledge.embeddings import EmbeddingService
from kbengine.knowledge.parsers import parser_for
from kbengine.knowledge.vector_store import VectorStore
from kbengine.observability.logging import get_logger

logger = get_logger("kbengine.ingestion")

IngestContent = str | Iterable[str] | Iterable[TextSegment]


def _utf8_size(piece: str | TextSegment) -> int:
    text = piece.text if isinstance(piece, TextSegment) else piece
    return len(text.encode("utf-8"))


def _measured(content: Iterable, result: IngestionResult) -> Iterator:
    """Pass pieces through while adding their encoded size to the result."""
    for piece in content:
        result.bytes += _utf8_size(piece)
        yield piece


def batch_size_for(
    file_size: int | None,
    chunk_count: int | None,
    settings: IngestionSettings | None = None,
) -> int:
    """
    Chunks per batch for an input of this size.

    Larger files and higher chunk counts get smaller batches. The
    result never exceeds ``max_batch_size``.
    """
    settings = settings or IngestionSettings()
    file_size = file_size or 0
    chunk_count = chunk_count or 0

    if file_size > settings.large_file_bytes:
        size = settings.large_file_batch_size
    elif file_size > settings.medium_file_bytes:
        size = settings.medium_file_batch_size
    elif chunk_count > settings.many_chunks:
        size = settings.many_chunks_batch_size
    else:
        size = settings.normal_batch_size

    return max(1, min(size, settings.max_batch_size))


class IngestionLocks:
    """
    One asyncio lock per key, held only while someone uses it.

    Two ingestions of the same file run one after the other; different
    files never wait on each other.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class _Run:
    """State of one ingestion."""

    knowledge_entry_id: str
    knowledge_type: KnowledgeType
    result: IngestionResult
    user_id: str | None = None
    entity_id: str | None = None
    file_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    cleared: bool = False


class IngestionPipeline:
    """
    Turns content into stored vectors for one file or knowledge entry.

    ingest() never raises; every outcome is an IngestionResult.
    """

    def __init__(
        self,
        chunker: StreamingChunker,
        embeddings: EmbeddingService,
        store: VectorStore,
        settings: IngestionSettings | None = None,
        locks: IngestionLocks | None = None,
    ):
        self._chunker = chunker
        self._embeddings = embeddings
        self._store = store
        self._settings = settings or IngestionSettings()
        self._locks = locks or IngestionLocks()

    @property
    def locks(self) -> IngestionLocks:
        return self._locks

    async def ingest(
        self,
        content: IngestContent,
        *,
        file_id: str | None = None,
        knowledge_entry_id: str | None = None,
        knowledge_type: KnowledgeType = KnowledgeType.FILE,
        user_id: str | None = None,
        entity_id: str | None = None,
        filename: str | None = None,
        file_size: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> IngestionResult:
        """
        Ingest content, replacing any vectors stored for it before.

        Args:
            content: Text, an iterable of text pieces, or pre-split segments
            file_id: Uploaded file the content came from
            knowledge_entry_id: Owning entry, defaults to file_id
            knowledge_type: Table the vectors go to
            user_id: Owner scope
            entity_id: Sharing scope
            filename: Original file name, reported back
            file_size: Size in bytes, drives batch sizing
            metadata: Extra metadata stored on every chunk

        Returns:
            IngestionResult with embedded=True if any chunk was stored
        """
        entry_id = knowledge_entry_id or file_id
        if isinstance(content, str) and file_size is None:
            file_size = len(content.encode("utf-8"))

        result = IngestionResult(
            embedded=False,
            bytes=file_size or 0,
            filename=filename,
            file_id=file_id,
        )
        if file_size is None and not isinstance(content, str):
            # Unknown size: report what was actually read
            if isinstance(content, (list, tuple)):
                result.bytes = sum(_utf8_size(piece) for piece in content)
            else:
                content = _measured(content, result)

        if entry_id is None:
            result.error = "Either file_id or knowledge_entry_id is required"
            logger.error("Ingestion rejected", reason=result.error)
            return result

        run = _Run(
            knowledge_entry_id=entry_id,
            knowledge_type=knowledge_type,
            result=result,
            user_id=user_id,
            entity_id=entity_id,
            file_id=file_id,
            metadata={**(metadata or {}), **({"filename": filename} if filename else {})},
        )

        with logger.context(
            file_id=file_id, user_id=user_id, entity_id=entity_id, knowledge_entry_id=entry_id
        ):
            async with self._locks.hold(file_id or entry_id):
                await self._run(run, content)

        return result

    async def ingest_path(
        self,
        path: str | Path,
        *,
        file_id: str,
        user_id: str | None = None,
        entity_id: str | None = None,
        filename: str | None = None,
    ) -> IngestionResult:
        """Parse a file from disk and ingest its text."""
        path = Path(path)
        filename = filename or path.name
        try:
            parser = parser_for(filename)
            file_size = path.stat().st_size
        except (ParseError, OSError) as e:
            logger.error("Cannot ingest file", error=e, file_id=file_id, filename=filename)
            return IngestionResult(embedded=False, bytes=0, filename=filename, file_id=file_id, error=str(e))

        return await self.ingest(
            parser.iter_text(path),
            file_id=file_id,
            user_id=user_id,
            entity_id=entity_id,
            filename=filename,
            file_size=file_size,
        )

    async def _run(self, run: _Run, content: IngestContent) -> None:
        result = run.result
        batch: list[tuple[int, TextSegment]] = []

        try:
            size = result.bytes
            segments, estimated = self._segments(content, size)
            result.batch_size = batch_size_for(size, estimated, self._settings)
            logger.info(
                "Ingestion started",
                bytes=size,
                estimated_chunks=estimated,
                batch_size=result.batch_size,
            )

            for segment in segments:
                if not segment.text.strip():
                    continue
                batch.append((result.chunks_total, segment))
                result.chunks_total += 1

                if len(batch) >= result.batch_size:
                    await self._flush(run, batch)
                    batch.clear()

            if batch:
                await self._flush(run, batch)
                batch.clear()
        except ParseError as e:
            result.error = e.message
            logger.error("Parsing failed, ingestion aborted", error=e)
        except DimensionMismatchError as e:
            result.error = e.message
            logger.error("Embedding dimension mismatch, migration required", error=e)
        except StoreConnectionError as e:
            result.error = e.message
            logger.error(
                "Vector store unreachable, ingestion aborted",
                error=e,
                chunks_stored=result.chunks_stored,
            )
        except Exception as e:  # noqa: BLE001
            # Ingestion must never break the caller's upload flow
            result.error = str(e)
            logger.error("Unexpected ingestion failure", error=e)
        else:
            result.embedded = result.chunks_stored > 0
            if result.chunks_total == 0:
                result.error = "No text content to ingest"
            elif not result.embedded:
                result.error = "No chunk could be embedded and stored"
        finally:
            batch.clear()

        log = logger.info if result.embedded else logger.warning
        log(
            "Ingestion finished",
            embedded=result.embedded,
            bytes=result.bytes,
            chunks_total=result.chunks_total,
            chunks_embedded=result.chunks_embedded,
            chunks_stored=result.chunks_stored,
            batches_failed=result.batches_failed,
        )

    def _segments(self, content: IngestContent, size: int) -> tuple[Iterator[TextSegment], int]:
        """Chunked segments plus an estimate of how many there will be."""
        if isinstance(content, str):
            chunks = self._chunker.iter_chunks(content)
            return (TextSegment(text=c) for c in chunks), self._chunker.estimate_chunks(len(content))

        if isinstance(content, (list, tuple)) and all(isinstance(s, TextSegment) for s in content):
            estimated = sum(self._chunker.estimate_chunks(len(s.text)) for s in content)
            return self._chunker.iter_segments(content), estimated

        pieces = iter(content)
        first = next(pieces, None)
        if first is None:
            return iter(()), 0

        estimated = self._chunker.estimate_chunks(size)
        stream = itertools.chain([first], pieces)
        if isinstance(first, TextSegment):
            return self._chunker.iter_segments(stream), estimated
        return (TextSegment(text=c) for c in self._chunker.iter_chunks(stream)), estimated

    async def _flush(self, run: _Run, batch: list[tuple[int, TextSegment]]) -> None:
        result = run.result
        embeddings = await self._embeddings.embed_many([segment.text for _, segment in batch])

        records = []
        for (index, segment), embedding in zip(batch, embeddings):
            if embedding is None:
                continue
            result.chunks_embedded += 1
            records.append(
                VectorRecord(
                    knowledge_entry_id=run.knowledge_entry_id,
                    type=run.knowledge_type,
                    content=segment.text,
                    embedding=embedding,
                    chunk_index=index,
                    user_id=run.user_id,
                    entity_id=run.entity_id,
                    file_id=run.file_id,
                    metadata={**run.metadata, **segment.metadata, "chunk_index": index},
                )
            )
        embeddings.clear()

        if not records:
            return

        try:
            if not run.cleared:
                await self._clear_existing(run)
                run.cleared = True
            result.chunks_stored += await self._store.upsert(records)
        except StoreConnectionError:
            raise
        except StoreError as e:
            result.batches_failed += 1
            logger.warning(
                "Batch could not be stored, skipping",
                error=e,
                batch_start=batch[0][0],
                batch_chunks=len(records),
            )
        finally:
            records.clear()

    async def _clear_existing(self, run: _Run) -> None:
        # Entries describing a file share its file_id but own only their rows
        if run.knowledge_type is KnowledgeType.FILE and run.file_id == run.knowledge_entry_id:
            removed = await self._store.delete_by_file(run.file_id)
        else:
            removed = await self._store.delete_by_entry(run.knowledge_entry_id, [run.knowledge_type])
        if removed:
            logger.info("Replaced previously stored vectors", removed=removed)
