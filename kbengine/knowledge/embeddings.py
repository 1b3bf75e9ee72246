"""
Embedding Service

Generate fixed-dimension vector embeddings for text.
Abstracts different embedding providers.

Design decisions:
- Provider-agnostic interface with an explicit initialize/close lifecycle
- Texts are embedded one at a time within a batch to bound peak memory
- A single text failing is logged and skipped, never fatal
- Dimension is fixed per deployment and checked on every embedding
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Sequence
from typing import Any

from kbengine.core.exceptions import DimensionMismatchError, EmbedError
from kbengine.observability.logging import get_logger

logger = get_logger("kbengine.embeddings")


class EmbeddingService(ABC):
    """
    Abstract embedding service.

    Generates dense vector representations of text
    for semantic similarity search.
    """

    def __init__(self, dimension: int, query_cache_size: int = 0):
        self._dimension = dimension
        self._query_cache: OrderedDict[str, list[float]] = OrderedDict()
        self._query_cache_size = query_cache_size

    @property
    def dimension(self) -> int:
        """Embedding dimension agreed at deployment time."""
        return self._dimension

    async def initialize(self) -> None:
        """Acquire clients or models. Safe to call more than once."""

    async def close(self) -> None:
        """Release clients or models."""
        self._query_cache.clear()

    @abstractmethod
    async def _embed(self, text: str) -> Sequence[float]:
        """Provider call for a single text."""

    async def embed(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Raises:
            EmbedError: If the provider fails or the text is empty
            DimensionMismatchError: If the provider returns the wrong dimension
        """
        if not text or not text.strip():
            raise EmbedError("Cannot embed empty text")

        try:
            raw = await self._embed(text)
        except (EmbedError, DimensionMismatchError):
            raise
        except Exception as e:  # noqa: BLE001
            raise EmbedError(
                f"Embedding provider failed: {e}",
                context={"provider": type(self).__name__, "text_length": len(text)},
                cause=e,
            ) from e

        embedding = [float(x) for x in raw]
        self._check_dimension(embedding)
        return embedding

    async def embed_query(self, text: str) -> list[float]:
        """Embed a search query, consulting the bounded query cache."""
        if self._query_cache_size <= 0:
            return await self.embed(text)

        key = hashlib.md5(text.encode()).hexdigest()
        cached = self._query_cache.get(key)
        if cached is not None:
            self._query_cache.move_to_end(key)
            return cached

        embedding = await self.embed(text)
        self._query_cache[key] = embedding
        if len(self._query_cache) > self._query_cache_size:
            self._query_cache.popitem(last=False)
        return embedding

    async def embed_many(self, texts: Sequence[str]) -> list[list[float] | None]:
        """
        Embed texts sequentially, in order.

        A text whose embedding fails yields None at its position and the
        rest continue. Dimension mismatches are not recoverable and
        propagate.
        """
        results: list[list[float] | None] = []

        for index, text in enumerate(texts):
            try:
                results.append(await self.embed(text))
            except EmbedError as e:
                logger.warning(
                    "Skipping chunk that failed to embed",
                    error=e,
                    chunk_position=index,
                    text_length=len(text),
                )
                results.append(None)

        return results

    def _check_dimension(self, embedding: list[float]) -> None:
        if len(embedding) != self._dimension:
            raise DimensionMismatchError(
                f"Embedding has dimension {len(embedding)}, deployment expects {self._dimension}",
                expected=self._dimension,
                actual=len(embedding),
            )


class LocalEmbeddings(EmbeddingService):
    """
    Local embedding service using sentence-transformers.

    Runs on CPU/GPU locally, no API calls needed.
    Encoding runs in the default executor so the event loop stays free.
    """

    def __init__(
        self,
        model_name: str = "BAAI/bge-small-zh-v1.5",
        dimension: int = 512,
        device: str = "cpu",
        query_cache_size: int = 0,
    ):
        super().__init__(dimension, query_cache_size)
        self._model_name = model_name
        self._device = device
        self._model = None

    def _get_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError(
                    "sentence-transformers required. Install with: "
                    "pip install sentence-transformers"
                )

            self._model = SentenceTransformer(self._model_name, device=self._device)
            model_dim = self._model.get_sentence_embedding_dimension()
            if model_dim is not None and model_dim != self._dimension:
                raise DimensionMismatchError(
                    f"Model {self._model_name} produces {model_dim}-dimensional embeddings, "
                    f"deployment expects {self._dimension}",
                    expected=self._dimension,
                    actual=model_dim,
                )
            logger.info("Loaded embedding model", model=self._model_name, device=self._device)
        return self._model

    async def initialize(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._get_model)

    async def close(self) -> None:
        await super().close()
        self._model = None

    async def _embed(self, text: str) -> Sequence[float]:
        loop = asyncio.get_running_loop()
        model = await loop.run_in_executor(None, self._get_model)
        embedding = await loop.run_in_executor(
            None,
            lambda: model.encode(text, convert_to_numpy=True, normalize_embeddings=True),
        )
        return embedding.tolist()


class OpenAIEmbeddings(EmbeddingService):
    """
    OpenAI-compatible embedding service.

    Requests embeddings of the deployment dimension via the
    ``dimensions`` parameter.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dimension: int = 512,
        base_url: str | None = None,
        query_cache_size: int = 0,
    ):
        super().__init__(dimension, query_cache_size)
        self._model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ImportError("openai package required. Install with: pip install openai")

            kwargs: dict[str, Any] = {}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url

            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def initialize(self) -> None:
        await self._get_client()

    async def close(self) -> None:
        await super().close()
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _embed(self, text: str) -> Sequence[float]:
        client = await self._get_client()
        response = await client.embeddings.create(
            model=self._model,
            input=text,
            dimensions=self._dimension,
        )
        return response.data[0].embedding
