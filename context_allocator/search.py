"""
Search fan-out and URL crawling adapters.

Web and library search run every rewritten query in every locale,
bounded by a semaphore, then merge, deduplicate and optionally rerank
the hits. Query URLs are crawled through an injected crawler, with raw
results kept in an injected CrawlCache.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .backends import (
    CrawlCache,
    LibrarySearchClient,
    SearchBackend,
    UrlSourceProvider,
    WebSearchClient,
)
from .cache import NullCrawlCache
from .config import settings
from .dedupe import source_keys
from .reranking import CrossEncoderReranker
from .schemas import SearchHit, Source

logger = logging.getLogger(__name__)

# (query, locale, limit) -> sources
WebSearchProvider = Callable[[str, str, int], Awaitable[List[Source]]]

# url -> {"title": ..., "content": ..., "metadata": {...}}
Crawler = Callable[[str], Awaitable[Dict]]

URL_PATTERN = re.compile(r"https?://[^\s<>\"'`\)\]\}，。]+", re.IGNORECASE)

LIBRARY_DOMAINS = ("resource", "document")


def merge_sources(batches: Sequence[Sequence[Source]]) -> List[Source]:
    """Flatten result batches, first occurrence of a url or entity wins."""
    seen = set()
    merged: List[Source] = []
    for batch in batches:
        for source in batch:
            keys = source_keys(source)
            if keys & seen:
                continue
            seen |= keys
            merged.append(source)
    return merged


def hit_to_source(hit: SearchHit) -> Source:
    return Source(
        url=hit.metadata.get("url"),
        title=hit.title,
        page_content=hit.text,
        score=hit.score,
        metadata={
            **hit.metadata,
            "entity_id": hit.metadata.get("entity_id", hit.id),
            "entity_type": hit.metadata.get("entity_type", hit.domain),
            "source_type": "library",
        },
    )


class _FanOutSearch:
    """Bounded query x locale fan-out with merge and rerank."""

    def __init__(
        self,
        reranker: Optional[CrossEncoderReranker] = None,
        concurrency: int = None,
    ):
        self.reranker = reranker
        self.concurrency = concurrency or settings.concurrency.search

    async def _gather(self, calls: List[Callable[[], Awaitable[List[Source]]]]) -> List[List[Source]]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(call) -> List[Source]:
            async with semaphore:
                try:
                    return await call()
                except Exception as e:
                    logger.warning(f"{type(self).__name__} call failed: {e!r}")
                    return []

        return list(await asyncio.gather(*(bounded(c) for c in calls)))

    async def _finalize(
        self,
        query: str,
        batches: List[List[Source]],
        limit: int,
        rerank: bool,
        relevance_threshold: float,
    ) -> List[Source]:
        merged = merge_sources(batches)

        if rerank and self.reranker is not None and merged:
            try:
                return await self.reranker.rerank(
                    query, merged, top_k=limit, threshold=relevance_threshold
                )
            except Exception as e:
                logger.warning(f"Reranking failed, keeping provider order: {e!r}")

        return merged[:limit]


class MultiLingualWebSearch(_FanOutSearch, WebSearchClient):
    """
    WebSearchClient over a per-locale provider callable.

    Usage:
        web = MultiLingualWebSearch(provider=my_search_api, reranker=get_reranker())
        sources = await web.search(["tesla battery"], ["en", "de"], limit=10)
    """

    def __init__(
        self,
        provider: WebSearchProvider,
        reranker: Optional[CrossEncoderReranker] = None,
        concurrency: int = None,
    ):
        super().__init__(reranker, concurrency)
        self.provider = provider

    async def search(
        self,
        queries: Sequence[str],
        locales: Sequence[str],
        limit: int = 10,
        rerank: bool = True,
        relevance_threshold: float = 0.0,
    ) -> List[Source]:
        queries = [q for q in queries if q]
        if not queries or limit <= 0:
            return []
        locales = list(dict.fromkeys(locales)) or list(settings.search.locales)

        def call(q: str, loc: str):
            return lambda: self.provider(q, loc, limit)

        batches = [
            [
                s.model_copy(update={"metadata": {"source_type": "webSearch", **s.metadata}})
                for s in batch
            ]
            for batch in await self._gather([call(q, loc) for q in queries for loc in locales])
        ]

        sources = await self._finalize(queries[0], batches, limit, rerank, relevance_threshold)
        logger.info(
            f"Web search: {len(queries)} queries x {len(locales)} locales -> {len(sources)} sources"
        )
        return sources


class MultiLingualLibrarySearch(_FanOutSearch, LibrarySearchClient):
    """
    LibrarySearchClient over the persistent SearchBackend.

    The backend is locale-agnostic, so each query runs once whatever the
    locales. Without search_whole_space the search is scoped to the
    entities given at construction.
    """

    def __init__(
        self,
        backend: SearchBackend,
        entities: Sequence[dict] = (),
        reranker: Optional[CrossEncoderReranker] = None,
        concurrency: int = None,
    ):
        super().__init__(reranker, concurrency)
        self.backend = backend
        self.entities = list(entities)

    async def _search_one(self, query: str, entities: List[dict], limit: int) -> List[Source]:
        hits = await self.backend.search(
            query, entities=entities, domains=list(LIBRARY_DOMAINS), limit=limit, mode="vector"
        )
        return [hit_to_source(hit) for hit in hits if hit.text]

    async def search(
        self,
        queries: Sequence[str],
        locales: Sequence[str],
        limit: int = 10,
        rerank: bool = True,
        relevance_threshold: float = 0.0,
        search_whole_space: bool = False,
    ) -> List[Source]:
        queries = list(dict.fromkeys(q for q in queries if q))
        if not queries or limit <= 0:
            return []
        if not search_whole_space and not self.entities:
            logger.debug("Library search scoped to no entities, skipping")
            return []

        entities = [] if search_whole_space else self.entities

        def call(q: str):
            return lambda: self._search_one(q, entities, limit)

        batches = await self._gather([call(q) for q in queries])
        sources = await self._finalize(queries[0], batches, limit, rerank, relevance_threshold)
        logger.info(f"Library search: {len(queries)} queries -> {len(sources)} sources")
        return sources


def extract_urls(text: str, max_urls: int = None) -> List[str]:
    """URLs in text, in order of first appearance, trailing punctuation stripped."""
    urls = []
    for match in URL_PATTERN.finditer(text or ""):
        url = match.group(0).rstrip(".,;:!?")
        if url not in urls:
            urls.append(url)
    return urls[:max_urls] if max_urls else urls


class CrawlingUrlSourceProvider(UrlSourceProvider):
    """
    UrlSourceProvider over an injected crawler callable.

    Usage:
        provider = CrawlingUrlSourceProvider(crawler=my_crawler, cache=InMemoryCrawlCache())
        sources = await provider.extract_and_crawl("summarize https://example.com/post")
    """

    def __init__(
        self,
        crawler: Crawler,
        cache: Optional[CrawlCache] = None,
        concurrency: int = 5,
        max_urls: int = 10,
    ):
        self.crawler = crawler
        self.cache = cache or NullCrawlCache()
        self.concurrency = concurrency
        self.max_urls = max_urls

    async def _crawl(self, url: str) -> Optional[Source]:
        cached = self.cache.get(url)
        if cached is not None:
            logger.debug(f"Crawl cache hit: {url}")
            return cached

        try:
            page = await self.crawler(url)
        except Exception as e:
            logger.warning(f"Crawling {url} failed: {e!r}")
            return None

        content = (page or {}).get("content") or ""
        if not content.strip():
            logger.info(f"Crawling {url} returned no content")
            return None

        source = Source(
            url=url,
            title=page.get("title") or url,
            page_content=content,
            metadata={**(page.get("metadata") or {}), "source_type": "urlSource"},
        )
        self.cache.set(url, source)
        return source

    async def extract_and_crawl(
        self, query: str, extra_urls: Optional[Sequence[str]] = None
    ) -> List[Source]:
        urls = list(dict.fromkeys([*(extra_urls or []), *extract_urls(query)]))[: self.max_urls]
        if not urls:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(url: str) -> Optional[Source]:
            async with semaphore:
                return await self._crawl(url)

        crawled = await asyncio.gather(*(bounded(u) for u in urls))
        sources = [s for s in crawled if s is not None]
        logger.info(f"Crawled {len(sources)}/{len(urls)} URLs from query")
        return sources
