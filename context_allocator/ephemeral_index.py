"""
In-memory embed-and-search over content that is not indexed yet.

Built and thrown away within a single request.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from .backends import EphemeralIndex
from .chunking import split_text
from .config import settings
from .embeddings import EmbeddingService, cosine_scores, get_embedding_service
from .exceptions import BackendUnavailableError
from .models import Chunk
from .tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)


class InMemoryEphemeralIndex(EphemeralIndex):
    """
    Ephemeral index backed by sentence-transformers and numpy.

    Usage:
        index = InMemoryEphemeralIndex()
        chunks = await index.index_and_search("query", long_text, k=10)
    """

    def __init__(
        self,
        embedding_service: Optional[EmbeddingService] = None,
        tokenizer: Optional[Tokenizer] = None,
        chunk_tokens: int = None,
    ):
        self._embedding_service = embedding_service
        self.tokenizer = tokenizer or get_tokenizer()
        self.chunk_tokens = chunk_tokens or settings.chunking.chunk_tokens

    @property
    def embedding_service(self) -> EmbeddingService:
        if self._embedding_service is None:
            self._embedding_service = get_embedding_service()
        return self._embedding_service

    def _prepare(self, content: Union[str, Sequence[Chunk]], need_chunk: bool) -> List[Chunk]:
        if isinstance(content, str):
            if need_chunk:
                return split_text(content, self.chunk_tokens, self.tokenizer)
            return [Chunk(text=content, start=0, end=len(content), index=0)]
        return list(content)

    def _search(self, query: str, chunks: List[Chunk], k: int) -> List[Chunk]:
        result = self.embedding_service.embed_batch([query] + [c.text for c in chunks])
        query_vector, vectors = result.vectors[0], result.vectors[1:]
        scores = cosine_scores(query_vector, vectors)

        # Stable on ties so repeated runs rank identically
        order = np.argsort(-scores, kind="stable")[:k]
        return [replace(chunks[i], score=float(scores[i])) for i in order]

    async def index_and_search(
        self,
        query: str,
        content: Union[str, Sequence[Chunk]],
        k: int = 10,
        need_chunk: bool = True,
        filter: Optional[Callable[[Chunk], bool]] = None,
    ) -> List[Chunk]:
        if not query:
            return []

        chunks = self._prepare(content, need_chunk)
        if filter is not None:
            chunks = [c for c in chunks if filter(c)]
        if not chunks:
            return []

        try:
            return await asyncio.to_thread(self._search, query, chunks, k)
        except Exception as e:
            raise BackendUnavailableError(f"Ephemeral search failed: {e}") from e
