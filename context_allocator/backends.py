"""
Collaborator interfaces consumed by the allocator.

The allocator never talks to a vector index, a search API or a crawler
directly; it goes through these narrow contracts so hosts (and tests)
can plug in their own implementations.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Union

from .models import Chunk
from .schemas import SearchHit, Source


class SearchBackend(ABC):
    """Persistent vector/document search."""

    @abstractmethod
    async def search(
        self,
        query: str,
        entities: Sequence[dict],
        domains: Sequence[str],
        limit: int = 10,
        mode: str = "vector",
    ) -> List[SearchHit]:
        """
        Search the index, scoped to entities and domains.

        Args:
            query: Search query
            entities: Entity filters, e.g. [{"entity_id": "d1", "entity_type": "document"}]
            domains: Domains to search, e.g. ["document"]
            limit: Maximum hits
            mode: Search mode ("vector" or "fulltext")

        Returns:
            Hits by descending relevance
        """


class EphemeralIndex(ABC):
    """Throwaway embed-and-search structure built per request."""

    @abstractmethod
    async def index_and_search(
        self,
        query: str,
        content: Union[str, Sequence[Chunk]],
        k: int = 10,
        need_chunk: bool = True,
        filter: Optional[Callable[[Chunk], bool]] = None,
    ) -> List[Chunk]:
        """
        Index content in memory and return the k most similar chunks.

        A string is split into offset-tagged chunks when need_chunk is
        set; a sequence of chunks is indexed as given.
        """


class WebSearchClient(ABC):
    @abstractmethod
    async def search(
        self,
        queries: Sequence[str],
        locales: Sequence[str],
        limit: int = 10,
        rerank: bool = True,
        relevance_threshold: float = 0.0,
    ) -> List[Source]:
        """Search the web for every query in every locale."""


class LibrarySearchClient(ABC):
    @abstractmethod
    async def search(
        self,
        queries: Sequence[str],
        locales: Sequence[str],
        limit: int = 10,
        rerank: bool = True,
        relevance_threshold: float = 0.0,
        search_whole_space: bool = False,
    ) -> List[Source]:
        """Search the user's knowledge base."""


class UrlSourceProvider(ABC):
    @abstractmethod
    async def extract_and_crawl(self, query: str) -> List[Source]:
        """Find URLs in the query and return their page content."""


class CrawlCache(ABC):
    """Cache for raw crawl results, injected into URL providers."""

    @abstractmethod
    def get(self, url: str) -> Optional[Source]:
        ...

    @abstractmethod
    def set(self, url: str, value: Source) -> None:
        ...
