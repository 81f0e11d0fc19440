import re
from dataclasses import replace
from typing import Dict, List, Optional

import pytest

from context_allocator import circuit_breaker
from context_allocator.allocator import ContextAllocator
from context_allocator.backends import (
    EphemeralIndex,
    LibrarySearchClient,
    SearchBackend,
    UrlSourceProvider,
    WebSearchClient,
)
from context_allocator.chunking import split_text
from context_allocator.config import Settings
from context_allocator.exceptions import BackendUnavailableError
from context_allocator.models import Chunk
from context_allocator.schemas import SearchHit, Source
from context_allocator.tokenizer import WhitespaceTokenizer

_WORD = re.compile(r"\w+")


def words(n: int, prefix: str = "w", start: int = 0) -> str:
    """n distinct whitespace tokens: w0 w1 w2 ..."""
    return " ".join(f"{prefix}{i}" for i in range(start, start + n))


def overlap(query: str, text: str) -> int:
    return len(set(_WORD.findall(query.lower())) & set(_WORD.findall(text.lower())))


class FakeEphemeralIndex(EphemeralIndex):
    """Scores chunks by word overlap with the query."""

    def __init__(self, tokenizer=None, chunk_tokens: int = 10, fail: bool = False):
        self.tokenizer = tokenizer or WhitespaceTokenizer()
        self.chunk_tokens = chunk_tokens
        self.fail = fail
        self.calls: List[dict] = []

    async def index_and_search(self, query, content, k=10, need_chunk=True, filter=None):
        self.calls.append({"query": query, "k": k, "need_chunk": need_chunk})
        if self.fail:
            raise BackendUnavailableError("ephemeral index down")

        if isinstance(content, str):
            if need_chunk:
                chunks = split_text(content, self.chunk_tokens, self.tokenizer)
            else:
                chunks = [Chunk(text=content, start=0, end=len(content), index=0)]
        else:
            chunks = list(content)
        if filter is not None:
            chunks = [c for c in chunks if filter(c)]

        scored = [(overlap(query, c.text), i, c) for i, c in enumerate(chunks)]
        scored.sort(key=lambda t: (-t[0], t[1]))
        return [replace(c, score=float(s)) for s, _, c in scored[:k]]


class FakeSearchBackend(SearchBackend):
    def __init__(self, hits: Optional[Dict[str, List[SearchHit]]] = None, fail: bool = False):
        self.hits = hits or {}
        self.fail = fail
        self.calls: List[dict] = []

    async def search(self, query, entities, domains, limit=10, mode="vector"):
        self.calls.append({"query": query, "entities": list(entities), "domains": list(domains)})
        if self.fail:
            raise BackendUnavailableError("search backend down")
        results = []
        for entity in entities:
            results.extend(self.hits.get(entity["entity_id"], []))
        return results[:limit]


class FakeWebSearch(WebSearchClient):
    def __init__(self, sources: Optional[List[Source]] = None, fail: bool = False):
        self.sources = sources or []
        self.fail = fail
        self.calls: List[dict] = []

    async def search(self, queries, locales, limit=10, rerank=True, relevance_threshold=0.0):
        self.calls.append(
            {
                "queries": list(queries),
                "locales": list(locales),
                "limit": limit,
                "relevance_threshold": relevance_threshold,
            }
        )
        if self.fail:
            raise BackendUnavailableError("web search down")
        return list(self.sources[:limit])


class FakeLibrarySearch(LibrarySearchClient):
    def __init__(self, sources: Optional[List[Source]] = None, fail: bool = False):
        self.sources = sources or []
        self.fail = fail
        self.calls: List[dict] = []

    async def search(
        self,
        queries,
        locales,
        limit=10,
        rerank=True,
        relevance_threshold=0.0,
        search_whole_space=False,
    ):
        self.calls.append({"queries": list(queries), "search_whole_space": search_whole_space})
        if self.fail:
            raise BackendUnavailableError("library search down")
        return list(self.sources[:limit])


class FakeUrlProvider(UrlSourceProvider):
    def __init__(self, sources: Optional[List[Source]] = None, fail: bool = False):
        self.sources = sources or []
        self.fail = fail

    async def extract_and_crawl(self, query):
        if self.fail:
            raise BackendUnavailableError("crawler down")
        return list(self.sources)


def web_source(i: int, tokens: int = 300, **metadata) -> Source:
    return Source(
        url=f"https://example.com/{i}",
        title=f"Result {i}",
        page_content=words(tokens, prefix=f"r{i}x"),
        metadata=metadata,
    )


@pytest.fixture(autouse=True)
def reset_breakers():
    circuit_breaker._breakers.clear()
    yield
    circuit_breaker._breakers.clear()


@pytest.fixture
def tokenizer():
    return WhitespaceTokenizer()


@pytest.fixture
def ephemeral_index(tokenizer):
    return FakeEphemeralIndex(tokenizer)


@pytest.fixture
def search_backend():
    return FakeSearchBackend()


@pytest.fixture
def make_allocator(tokenizer, ephemeral_index, search_backend):
    def factory(**kwargs):
        kwargs.setdefault("tokenizer", tokenizer)
        kwargs.setdefault("ephemeral_index", ephemeral_index)
        kwargs.setdefault("search_backend", search_backend)
        kwargs.setdefault("settings", Settings())
        return ContextAllocator(**kwargs)

    return factory
