"""
Budget allocator: the orchestrator of one context preparation run.

Tiers are processed strictly in order, each step a pure function from
AllocationState to AllocationState:

    URL sources -> web search -> library search -> mentioned -> relevant

Every step spends from the same running budget, which starts at
floor(max_tokens * context_ratio). Cross-tier cleanup and the noise cap
run on whatever state the steps reached, so a run cut short by its
deadline still serializes a consistent partial context.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from .backends import (
    EphemeralIndex,
    LibrarySearchClient,
    SearchBackend,
    UrlSourceProvider,
    WebSearchClient,
)
from .config import Settings, settings as default_settings
from .dedupe import (
    dedupe_tier_by_content,
    remove_colliding_items,
    remove_overlapping_items,
    remove_overlapping_sources,
)
from .ephemeral_index import InMemoryEphemeralIndex
from .models import ContextTier, MergedContext, UrlSource
from .processors import TierProcessor, pack_sources, truncate_tier
from .ranking import SimilarityRanker
from .retrieval import ChunkRetriever, build_default_retriever
from .schemas import ModelInfo, PreparedContext, Source
from .serializer import concat_merged_context, flatten_merged_context_to_sources
from .tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)


@dataclass
class AllocationOptions:
    """Per-request switches."""

    enable_web_search: bool = False
    enable_knowledge_base_search: bool = False
    enable_deep_search: bool = False
    locale: str = "en"
    model_info: Optional[ModelInfo] = None


@dataclass(frozen=True)
class AllocationState:
    """Running budget and the tiers settled so far."""

    context_budget: int
    remaining: int
    merged: MergedContext = field(default_factory=MergedContext)
    completed: Tuple[str, ...] = ()

    def advance(self, tier: str, used: int, **tiers) -> "AllocationState":
        remaining = self.remaining - used
        logger.info(f"[{tier}] used {used} tokens, {remaining} remaining")
        return replace(
            self,
            remaining=remaining,
            merged=replace(self.merged, **tiers),
            completed=self.completed + (tier,),
        )

    def skip(self, tier: str) -> "AllocationState":
        return replace(self, completed=self.completed + (tier,))


class _Checkpoint:
    """Latest state reached, readable after the run is cancelled."""

    def __init__(self, state: AllocationState):
        self.state = state


class ContextAllocator:
    """
    Fit five pools of candidate context into one token budget.

    Usage:
        allocator = ContextAllocator(
            search_backend=ChromaSearchBackend(),
            web_search=MultiLingualWebSearch(provider=my_search_api),
        )
        prepared = await allocator.prepare_context(
            query="tesla battery roadmap",
            mentioned_context=ContextTier(content_list=[ContentItem("...")]),
            max_tokens=2000,
            enable_mentioned_context=True,
            options=AllocationOptions(enable_web_search=True),
        )
        prepared.context_str, prepared.sources
    """

    def __init__(
        self,
        tokenizer: Optional[Tokenizer] = None,
        search_backend: Optional[SearchBackend] = None,
        ephemeral_index: Optional[EphemeralIndex] = None,
        web_search: Optional[WebSearchClient] = None,
        library_search: Optional[LibrarySearchClient] = None,
        url_provider: Optional[UrlSourceProvider] = None,
        retriever: Optional[ChunkRetriever] = None,
        ranker: Optional[SimilarityRanker] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.budget = self.settings.budget
        self.tokenizer = tokenizer or get_tokenizer()
        self.ephemeral_index = ephemeral_index or InMemoryEphemeralIndex(tokenizer=self.tokenizer)
        self.web_search = web_search
        self.library_search = library_search
        self.url_provider = url_provider

        self.processor = TierProcessor(
            ranker=ranker or SimilarityRanker(self.ephemeral_index, self.tokenizer),
            retriever=retriever
            or build_default_retriever(search_backend, self.ephemeral_index, self.tokenizer),
            tokenizer=self.tokenizer,
            budget=self.budget,
        )

    # Model checks

    def is_model_supported(self, model_info: Optional[ModelInfo]) -> bool:
        if model_info is None:
            return True
        return model_info.context_limit >= self.budget.min_model_context

    def has_long_context(self, model_info: Optional[ModelInfo]) -> bool:
        if model_info is None:
            return False
        return model_info.context_limit >= self.budget.long_context_threshold

    # Steps

    async def prepare_url_sources(
        self,
        query: str,
        url_sources: Optional[Sequence[Source]],
        state: AllocationState,
    ) -> AllocationState:
        if url_sources is None and self.url_provider is not None:
            try:
                url_sources = await self.url_provider.extract_and_crawl(query)
            except Exception as e:
                logger.warning(f"[url_sources] URL extraction failed: {e!r}")
                url_sources = []

        items = [UrlSource.from_source(s) for s in url_sources or []]
        if not items:
            return state.skip("url_sources")

        max_tokens = math.floor(state.context_budget * self.budget.url_sources_ratio)
        result = await self.processor.process_url_sources(query, items, max_tokens)
        return state.advance("url_sources", result.used_tokens, url_sources=result.items)

    def _search_params(self, options: AllocationOptions) -> Tuple[int, float, List[str]]:
        search = self.settings.search
        locales = list(search.locales)
        if options.enable_deep_search:
            if options.locale and options.locale not in locales:
                locales.append(options.locale)
            return search.deep_limit, search.deep_relevance_threshold, locales
        return search.limit, search.relevance_threshold, locales

    def _fit_sources(
        self, tier: str, sources: List[Source], options: AllocationOptions, ratio: float, state: AllocationState
    ) -> Tuple[List[Source], int]:
        if not self.has_long_context(options.model_info):
            sources = sources[: self.budget.search_sources_cap]
        max_tokens = math.floor(max(state.remaining, 0) * ratio)
        kept, used = pack_sources(sources, max_tokens, self.tokenizer)
        logger.debug(f"[{tier}] kept {len(kept)}/{len(sources)} sources in {max_tokens} tokens")
        return kept, used

    async def prepare_web_search_context(
        self,
        query: str,
        rewritten_queries: Optional[Sequence[str]],
        options: AllocationOptions,
        state: AllocationState,
    ) -> AllocationState:
        if not options.enable_web_search or self.web_search is None:
            return state.skip("web_search")

        limit, threshold, locales = self._search_params(options)
        try:
            sources = await self.web_search.search(
                list(rewritten_queries or [query]),
                locales,
                limit=limit,
                rerank=self.settings.search.enable_rerank,
                relevance_threshold=threshold,
            )
        except Exception as e:
            logger.warning(f"[web_search] search failed, tier omitted: {e!r}")
            return state.skip("web_search")

        kept, used = self._fit_sources(
            "web_search", sources, options, self.budget.web_search_ratio, state
        )
        return state.advance("web_search", used, web_search_sources=kept)

    async def prepare_library_search_context(
        self,
        query: str,
        rewritten_queries: Optional[Sequence[str]],
        options: AllocationOptions,
        state: AllocationState,
    ) -> AllocationState:
        if not options.enable_knowledge_base_search or self.library_search is None:
            return state.skip("library_search")

        limit, threshold, locales = self._search_params(options)
        try:
            sources = await self.library_search.search(
                list(rewritten_queries or [query]),
                locales,
                limit=limit,
                rerank=self.settings.search.enable_rerank,
                relevance_threshold=threshold,
                search_whole_space=True,
            )
        except Exception as e:
            logger.warning(f"[library_search] search failed, tier omitted: {e!r}")
            return state.skip("library_search")

        kept, used = self._fit_sources(
            "library_search", sources, options, self.budget.library_search_ratio, state
        )
        return state.advance("library_search", used, library_search_sources=kept)

    async def _fit_tier(
        self, query: str, tier: ContextTier, max_tokens: int, name: str
    ) -> Tuple[ContextTier, int]:
        need = self.tokenizer.count_tier(tier)
        if need <= max_tokens:
            return tier, need

        logger.info(f"[{name}] needs {need} tokens, {max_tokens} available")
        processed, _ = await self.processor.process_tier(query, tier, max_tokens, name)
        if self.tokenizer.count_tier(processed) > max_tokens:
            processed = truncate_tier(
                processed, max_tokens, self.tokenizer, self.budget.short_content_tokens
            )
        return processed, self.tokenizer.count_tier(processed)

    async def prepare_mentioned_context(
        self,
        query: str,
        mentioned_context: Optional[ContextTier],
        enabled: bool,
        options: AllocationOptions,
        state: AllocationState,
    ) -> AllocationState:
        if not enabled or mentioned_context is None or mentioned_context.is_empty():
            return state.skip("mentioned_context")
        if not self.is_model_supported(options.model_info):
            logger.info("[mentioned_context] model not supported, skipped")
            return state.skip("mentioned_context")
        if state.remaining <= 0:
            logger.debug("[mentioned_context] no budget left")
            return state.skip("mentioned_context")

        tier, used = await self._fit_tier(query, mentioned_context, state.remaining, "mentioned_context")
        return state.advance("mentioned_context", used, mentioned_context=tier)

    async def prepare_relevant_context(
        self,
        query: str,
        relevant_context: Optional[ContextTier],
        state: AllocationState,
    ) -> AllocationState:
        if relevant_context is None or relevant_context.is_empty() or state.remaining <= 0:
            return state.skip("relevant_context")

        pool = remove_overlapping_items(state.merged.mentioned_context, relevant_context)
        if pool.is_empty():
            return state.skip("relevant_context")

        tier, used = await self._fit_tier(query, pool, state.remaining, "relevant_context")
        return state.advance("relevant_context", used, relevant_context=tier)

    # Cleanup

    def cleanup(self, merged: MergedContext) -> MergedContext:
        """Cross-tier deduplication, then the noise cap on search sources."""
        url_items = merged.url_sources
        mentioned = remove_colliding_items(
            dedupe_tier_by_content(merged.mentioned_context), url_items
        )
        relevant = remove_colliding_items(
            dedupe_tier_by_content(merged.relevant_context), url_items, mentioned.items()
        )
        web = remove_overlapping_sources(
            merged.web_search_sources, url_items, mentioned.items(), relevant.items()
        )
        library = remove_overlapping_sources(
            merged.library_search_sources,
            url_items,
            mentioned.items(),
            relevant.items(),
            higher_sources=web,
        )

        if not mentioned.is_empty() or not relevant.is_empty():
            cap = self.budget.search_sources_cap
            if len(web) > cap or len(library) > cap:
                logger.debug(f"Capping search sources to {cap} alongside user context")
            web, library = web[:cap], library[:cap]

        return MergedContext(
            url_sources=url_items,
            mentioned_context=mentioned,
            relevant_context=relevant,
            web_search_sources=web,
            library_search_sources=library,
        )

    def tier_tokens(self, merged: MergedContext) -> Dict[str, int]:
        return {
            "url_sources": self.tokenizer.count_items(merged.url_sources),
            "mentioned_context": self.tokenizer.count_tier(merged.mentioned_context),
            "relevant_context": self.tokenizer.count_tier(merged.relevant_context),
            "web_search_sources": self.tokenizer.count_sources(merged.web_search_sources),
            "library_search_sources": self.tokenizer.count_sources(merged.library_search_sources),
        }

    # Orchestration

    async def _run_steps(
        self,
        checkpoint: _Checkpoint,
        query: str,
        mentioned_context: Optional[ContextTier],
        enable_mentioned_context: bool,
        rewritten_queries: Optional[Sequence[str]],
        url_sources: Optional[Sequence[Source]],
        relevant_context: Optional[ContextTier],
        options: AllocationOptions,
    ) -> None:
        state = checkpoint.state

        state = checkpoint.state = await self.prepare_url_sources(query, url_sources, state)
        state = checkpoint.state = await self.prepare_web_search_context(
            query, rewritten_queries, options, state
        )
        state = checkpoint.state = await self.prepare_library_search_context(
            query, rewritten_queries, options, state
        )
        state = checkpoint.state = await self.prepare_mentioned_context(
            query, mentioned_context, enable_mentioned_context, options, state
        )
        checkpoint.state = await self.prepare_relevant_context(query, relevant_context, state)

    async def prepare_context(
        self,
        query: str,
        mentioned_context: Optional[ContextTier],
        max_tokens: int,
        enable_mentioned_context: bool,
        rewritten_queries: Optional[Sequence[str]] = None,
        url_sources: Optional[Sequence[Source]] = None,
        relevant_context: Optional[ContextTier] = None,
        options: Optional[AllocationOptions] = None,
        timeout: Optional[float] = None,
    ) -> PreparedContext:
        """
        Prepare the prompt context for one request.

        Args:
            query: User query (already optimized, if the host rewrites)
            mentioned_context: Items the user referenced explicitly
            max_tokens: Token budget of the whole request
            enable_mentioned_context: Use mentioned context at all
            rewritten_queries: Alternative phrasings for search
            url_sources: Pre-crawled URL sources; extracted from query when None
            relevant_context: Implicitly attached items
            options: Search switches and model info
            timeout: Deadline in seconds, settings.ALLOCATION_TIMEOUT by default

        Returns:
            PreparedContext; empty on unexpected failure, partial on timeout
        """
        options = options or AllocationOptions()
        if timeout is None:
            timeout = self.settings.ALLOCATION_TIMEOUT

        try:
            context_budget = math.floor(max_tokens * self.budget.context_ratio)
            logger.info(
                f"Preparing context: max_tokens={max_tokens}, context_budget={context_budget}, "
                f"web_search={options.enable_web_search}, "
                f"knowledge_base={options.enable_knowledge_base_search}, "
                f"deep={options.enable_deep_search}"
            )

            checkpoint = _Checkpoint(
                AllocationState(context_budget=context_budget, remaining=context_budget)
            )
            timed_out = False
            try:
                await asyncio.wait_for(
                    self._run_steps(
                        checkpoint,
                        query,
                        mentioned_context,
                        enable_mentioned_context,
                        rewritten_queries,
                        url_sources,
                        relevant_context,
                        options,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning(
                    f"Context preparation timed out after {timeout}s, "
                    f"serializing completed tiers: {list(checkpoint.state.completed)}"
                )

            merged = self.cleanup(checkpoint.state.merged)
            prepared = PreparedContext(
                context_str=concat_merged_context(merged),
                sources=flatten_merged_context_to_sources(merged),
                tier_tokens=self.tier_tokens(merged),
                timed_out=timed_out,
            )
            logger.info(
                f"Prepared context: {len(prepared.sources)} sources, "
                f"{sum(prepared.tier_tokens.values())}/{context_budget} tokens"
            )
            return prepared
        except Exception:
            logger.exception("Unexpected error in prepare_context")
            return PreparedContext()
