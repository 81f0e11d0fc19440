"""
Tier processors: fit a pool of items into a token budget.

Two-phase greedy packing over items ranked by relevance:

Phase 1 (budget = max_tokens * relevant_ratio)
    - oversized items, or items pinned with use_whole_content=False,
      are recalled as chunks instead of included whole
    - other items are included verbatim while they fit
    - the first item that does not fit ends the phase
Phase 2 (budget = max_tokens)
    - short items are included verbatim without a fit check
    - everything else is recalled and truncated to what is left
    - the phase ends once the budget is spent, so the overshoot is at
      most one short item plus elision markers

Chunk recall is prefetched concurrently before each packing loop; the
loops themselves are sequential because they depend on cumulative usage.
"""

import asyncio
import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from .chunking import assemble_chunks, truncate_chunks
from .config import BudgetConfig, settings
from .models import (
    Chunk,
    ContentItem,
    ContextItem,
    ContextTier,
    DocumentItem,
    ItemKind,
    ResourceItem,
    TierResult,
    UrlSource,
)
from .ranking import SimilarityRanker
from .retrieval import ChunkRetriever
from .schemas import Source
from .tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)

CATEGORIES = ("content", "resource", "document")


class TierProcessor:
    """
    Ranks, packs and recalls one homogeneous list of items.

    Usage:
        processor = TierProcessor(ranker, retriever)
        result = await processor.process_resources(query, resources, max_tokens=4000)
        result.items, result.used_tokens
    """

    def __init__(
        self,
        ranker: SimilarityRanker,
        retriever: ChunkRetriever,
        tokenizer: Optional[Tokenizer] = None,
        budget: Optional[BudgetConfig] = None,
    ):
        self.ranker = ranker
        self.retriever = retriever
        self.tokenizer = tokenizer or get_tokenizer()
        self.budget = budget or settings.budget

    def needs_recall(self, item: ContextItem, tokens: int) -> bool:
        return tokens > self.budget.must_recall_tokens or item.use_whole_content is False

    def is_malformed(self, item: ContextItem) -> bool:
        if not item.content or not item.content.strip():
            return True
        # Snippets may be anonymous, everything else needs an identity
        return item.kind != ItemKind.CONTENT and item.identity is None

    def _recall_view(self, item: ContextItem) -> ContextItem:
        if item.kind == ItemKind.URL_SOURCE:
            return item.with_content(item.content[: self.budget.max_url_source_chars])
        return item

    async def _prefetch(
        self,
        query: str,
        ranked: Sequence[ContextItem],
        indices: Sequence[int],
        cache: Dict[int, List[Chunk]],
    ) -> None:
        pending = [i for i in indices if i not in cache]
        if not pending:
            return
        recalled = await self.retriever.retrieve_many(
            query, [self._recall_view(ranked[i]) for i in pending]
        )
        cache.update(zip(pending, recalled))

    def _recalled_text(self, chunks: List[Chunk], max_tokens: int) -> str:
        return assemble_chunks(truncate_chunks(chunks, max(max_tokens, 0), self.tokenizer))

    async def process(
        self,
        query: str,
        items: Sequence[ContextItem],
        max_tokens: int,
        relevant_ratio: Optional[float] = None,
        rank: bool = True,
        tier: str = "",
    ) -> TierResult:
        """
        Fit items into max_tokens.

        Args:
            query: User query driving ranking and recall
            items: Homogeneous items of one category
            max_tokens: Tier budget
            relevant_ratio: Share of the budget for the primary pass
            rank: Rank items by similarity first
            tier: Tier name, for logs

        Returns:
            TierResult with retained (possibly recalled) items and their cost
        """
        relevant_ratio = self.budget.relevant_ratio if relevant_ratio is None else relevant_ratio

        candidates = []
        for item in items:
            if self.is_malformed(item):
                logger.warning(f"[{tier}] skipping malformed {item.kind.value} item {item.identity}")
                continue
            candidates.append(item)

        if not candidates or max_tokens <= 0:
            return TierResult()

        ranked = await self.ranker.rank(query, candidates) if rank else candidates
        tokens = [self.tokenizer.count_item(item) for item in ranked]
        phase_budget = math.floor(max_tokens * relevant_ratio)

        chunk_cache: Dict[int, List[Chunk]] = {}
        await self._prefetch(
            query,
            ranked,
            [i for i, item in enumerate(ranked) if self.needs_recall(item, tokens[i])],
            chunk_cache,
        )

        result: List[ContextItem] = []
        used = 0
        processed = 0

        # Phase 1: most relevant items within the primary budget
        for i, item in enumerate(ranked):
            if self.needs_recall(item, tokens[i]):
                text = self._recalled_text(chunk_cache.get(i, []), max_tokens - used)
                processed = i + 1
                if text:
                    result.append(item.with_content(text))
                    used += self.tokenizer.count(text)
                else:
                    logger.info(f"[{tier}] no recalled chunk of {item.identity} fits, dropped")
            elif used + tokens[i] <= phase_budget:
                result.append(item)
                used += tokens[i]
                processed = i + 1
            else:
                break

            if used >= phase_budget:
                break

        # Phase 2: remaining items against the full budget
        short = self.budget.short_content_tokens
        if processed < len(ranked) and used < max_tokens:
            await self._prefetch(
                query,
                ranked,
                [i for i in range(processed, len(ranked)) if tokens[i] >= short],
                chunk_cache,
            )

        for i in range(processed, len(ranked)):
            if used >= max_tokens:
                logger.debug(
                    f"[{tier}] budget of {max_tokens} tokens exhausted, "
                    f"{len(ranked) - i} items dropped"
                )
                break

            item = ranked[i]
            if tokens[i] < short:
                result.append(item)
                used += tokens[i]
                continue

            text = self._recalled_text(chunk_cache.get(i, []), max_tokens - used)
            if text:
                result.append(item.with_content(text))
                used += self.tokenizer.count(text)
            else:
                logger.info(f"[{tier}] no recalled chunk of {item.identity} fits, dropped")

        logger.debug(f"[{tier}] kept {len(result)} of {len(items)} items, {used}/{max_tokens} tokens")
        return TierResult(items=result, used_tokens=used)

    async def process_content_list(
        self, query: str, items: Sequence[ContentItem], max_tokens: int, tier: str = "content"
    ) -> TierResult:
        return await self.process(query, items, max_tokens, tier=tier)

    async def process_resources(
        self, query: str, items: Sequence[ResourceItem], max_tokens: int, tier: str = "resources"
    ) -> TierResult:
        return await self.process(query, items, max_tokens, tier=tier)

    async def process_documents(
        self, query: str, items: Sequence[DocumentItem], max_tokens: int, tier: str = "documents"
    ) -> TierResult:
        return await self.process(query, items, max_tokens, tier=tier)

    async def process_url_sources(
        self, query: str, items: Sequence[UrlSource], max_tokens: int, tier: str = "url_sources"
    ) -> TierResult:
        return await self.process(
            query, items, max_tokens, relevant_ratio=self.budget.url_relevant_ratio, tier=tier
        )

    def category_budgets(self, tier: ContextTier, max_tokens: int) -> Dict[str, int]:
        """Split max_tokens across the non-empty categories of a tier."""
        present = [name for name in CATEGORIES if tier.category(name)]
        total = sum(self.budget.category_ratios[name] for name in present)
        if not present or total <= 0:
            return {}
        # Epsilon absorbs float error in ratios like 0.3 / 0.6
        return {
            name: math.floor(max_tokens * self.budget.category_ratios[name] / total + 1e-9)
            for name in present
        }

    async def process_tier(
        self, query: str, tier: ContextTier, max_tokens: int, name: str
    ) -> Tuple[ContextTier, int]:
        """Process every category of a tier with its share of max_tokens."""
        budgets = self.category_budgets(tier, max_tokens)
        if not budgets:
            return ContextTier(), 0

        handlers = {
            "content": self.process_content_list,
            "resource": self.process_resources,
            "document": self.process_documents,
        }
        names = list(budgets)
        results = await asyncio.gather(
            *(
                handlers[c](query, tier.category(c), budgets[c], tier=f"{name}.{c}")
                for c in names
            )
        )
        by_name = dict(zip(names, results))
        empty = TierResult()

        processed = ContextTier(
            content_list=by_name.get("content", empty).items,
            resources=by_name.get("resource", empty).items,
            documents=by_name.get("document", empty).items,
        )
        return processed, sum(r.used_tokens for r in results)


def truncate_tier(
    tier: ContextTier,
    max_tokens: int,
    tokenizer: Optional[Tokenizer] = None,
    short_content_tokens: int = 0,
) -> ContextTier:
    """
    Hard-truncate a tier to max_tokens.

    Items are charged in category order. Items under short_content_tokens
    are kept whole when they fit and skipped otherwise. The first longer
    item that does not fit is cut to the remainder and every later long
    item is dropped.
    """
    tokenizer = tokenizer or get_tokenizer()
    kept: Dict[str, List[ContextItem]] = {name: [] for name in CATEGORIES}
    used = 0
    exhausted = False

    for name in CATEGORIES:
        for item in tier.category(name):
            item_tokens = tokenizer.count_item(item)
            if item_tokens < short_content_tokens:
                if used + item_tokens <= max_tokens:
                    kept[name].append(item)
                    used += item_tokens
                continue
            if exhausted:
                continue
            if used + item_tokens <= max_tokens:
                kept[name].append(item)
                used += item_tokens
                continue

            text = tokenizer.truncate(item.content, max_tokens - used)
            if text:
                kept[name].append(item.with_content(text))
                used += tokenizer.count(text)
            exhausted = True

    return ContextTier(
        content_list=kept["content"],
        resources=kept["resource"],
        documents=kept["document"],
    )


def pack_sources(
    sources: Sequence[Source], max_tokens: int, tokenizer: Optional[Tokenizer] = None
) -> Tuple[List[Source], int]:
    """Greedily keep search sources, in rank order, that fit max_tokens."""
    tokenizer = tokenizer or get_tokenizer()
    kept: List[Source] = []
    used = 0

    for source in sources:
        if used >= max_tokens:
            break
        source_tokens = tokenizer.count(source.page_content)
        if source_tokens == 0:
            continue
        if used + source_tokens <= max_tokens:
            kept.append(source)
            used += source_tokens

    return kept, used
