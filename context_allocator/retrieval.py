"""
Chunk recall for oversized items.

The fallback policy is an ordered tuple of strategies. Each strategy
reports a StrategyResult; the first non-empty result wins:

1. indexed    - persistent index scoped to the item's entity id and domain
2. ephemeral  - chunk + embed + search the item's content in memory
3. truncation - the head of the content, truncated to a safe ceiling and
                split into reading-order chunks (never fails)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .backends import EphemeralIndex, SearchBackend
from .chunking import split_text
from .circuit_breaker import CircuitBreaker, get_breaker
from .config import settings
from .models import Chunk, ContextItem, ItemKind
from .tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyResult:
    """Outcome of one recall strategy for one item."""

    strategy: str
    chunks: Tuple[Chunk, ...] = ()
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.chunks)


class RecallStrategy(ABC):
    name: str = "strategy"

    def applies_to(self, item: ContextItem) -> bool:
        return True

    @abstractmethod
    async def run(self, query: str, item: ContextItem, limit: int) -> List[Chunk]:
        ...


class IndexedSearchStrategy(RecallStrategy):
    """Query the persistent index for chunks of this very item."""

    name = "indexed"

    # Snippets and crawled pages never reach the persistent index
    indexed_kinds = (ItemKind.RESOURCE, ItemKind.DOCUMENT)

    def __init__(self, backend: SearchBackend, breaker: Optional[CircuitBreaker] = None):
        self.backend = backend
        self.breaker = breaker or get_breaker("search")

    def applies_to(self, item: ContextItem) -> bool:
        return item.kind in self.indexed_kinds and bool(item.entity_id)

    async def run(self, query: str, item: ContextItem, limit: int) -> List[Chunk]:
        hits = await self.breaker.call(
            self.backend.search,
            query,
            entities=[{"entity_id": item.entity_id, "entity_type": item.domain}],
            domains=[item.domain],
            limit=limit,
            mode="vector",
        )
        return [
            Chunk(
                text=hit.text,
                start=hit.metadata.get("start"),
                end=hit.metadata.get("end"),
                score=hit.score,
                metadata={"id": hit.id, "title": hit.title, "domain": hit.domain},
            )
            for hit in hits
            if hit.text
        ]


class EphemeralSearchStrategy(RecallStrategy):
    """Chunk the content on the fly and search it in memory."""

    name = "ephemeral"

    def __init__(self, index: EphemeralIndex):
        self.index = index

    async def run(self, query: str, item: ContextItem, limit: int) -> List[Chunk]:
        return await self.index.index_and_search(query, item.content, k=limit, need_chunk=True)


class TruncationStrategy(RecallStrategy):
    """
    Last resort: the head of the content.

    The head is split into chunk_tokens-sized chunks so callers can keep
    as much of it as their budget allows.
    """

    name = "truncation"

    def __init__(
        self,
        tokenizer: Optional[Tokenizer] = None,
        max_tokens: int = None,
        chunk_tokens: int = None,
    ):
        self.tokenizer = tokenizer or get_tokenizer()
        self.max_tokens = max_tokens or settings.budget.must_recall_tokens
        self.chunk_tokens = chunk_tokens or settings.chunking.chunk_tokens

    async def run(self, query: str, item: ContextItem, limit: int) -> List[Chunk]:
        text = self.tokenizer.truncate(item.content, self.max_tokens)
        # Reading order doubles as relevance order
        return split_text(text, self.chunk_tokens, self.tokenizer)[:limit]


class ChunkRetriever:
    """
    Recall the most relevant chunks of an item.

    Usage:
        retriever = ChunkRetriever([
            IndexedSearchStrategy(backend),
            EphemeralSearchStrategy(index),
            TruncationStrategy(),
        ])
        chunks = await retriever.retrieve(query, item, limit=10)
    """

    def __init__(
        self,
        strategies: Sequence[RecallStrategy],
        concurrency: int = None,
        default_limit: int = None,
    ):
        self.strategies = tuple(strategies)
        self.concurrency = concurrency or settings.concurrency.retrieval
        self.default_limit = default_limit or settings.chunking.recall_top_k

    async def _attempt(
        self, strategy: RecallStrategy, query: str, item: ContextItem, limit: int
    ) -> StrategyResult:
        try:
            chunks = await strategy.run(query, item, limit)
        except Exception as e:
            return StrategyResult(strategy=strategy.name, error=e)
        return StrategyResult(strategy=strategy.name, chunks=tuple(chunks[:limit]))

    async def retrieve(
        self, query: str, item: ContextItem, limit: Optional[int] = None
    ) -> List[Chunk]:
        """Return up to limit chunks of item, by descending relevance."""
        limit = limit or self.default_limit

        for strategy in self.strategies:
            if not strategy.applies_to(item):
                continue

            result = await self._attempt(strategy, query, item, limit)
            if result.ok:
                logger.debug(
                    f"Recalled {len(result.chunks)} chunks for {item.identity} via {result.strategy}"
                )
                return list(result.chunks)

            if result.error is not None:
                logger.warning(
                    f"Recall strategy '{result.strategy}' failed for {item.identity}: "
                    f"{result.error!r}, falling back"
                )
            else:
                logger.debug(f"Recall strategy '{result.strategy}' empty for {item.identity}")

        logger.warning(f"All recall strategies exhausted for {item.identity}")
        return []

    async def retrieve_many(
        self, query: str, items: Sequence[ContextItem], limit: Optional[int] = None
    ) -> List[List[Chunk]]:
        """Recall chunks for several items concurrently, in input order."""
        if not items:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(item: ContextItem) -> List[Chunk]:
            async with semaphore:
                return await self.retrieve(query, item, limit)

        return list(await asyncio.gather(*(bounded(item) for item in items)))


def build_default_retriever(
    search_backend: Optional[SearchBackend],
    ephemeral_index: Optional[EphemeralIndex],
    tokenizer: Optional[Tokenizer] = None,
) -> ChunkRetriever:
    """Indexed search, then ephemeral search, then truncation."""
    strategies: List[RecallStrategy] = []
    if search_backend is not None:
        strategies.append(IndexedSearchStrategy(search_backend))
    if ephemeral_index is not None:
        strategies.append(EphemeralSearchStrategy(ephemeral_index))
    strategies.append(TruncationStrategy(tokenizer))
    return ChunkRetriever(strategies)
