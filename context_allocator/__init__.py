"""
Context Budget Allocator.

Treat prompt context as a resource with a budget.

Given a query and five pools of candidate context, produce one
prompt-ready context string plus an ordered, deduplicated list of
citable sources that fits a hard token budget:
- URL sources found in the query
- Web search results
- Library (knowledge base) search results
- Mentioned context (items the user referenced explicitly)
- Relevant context (items attached implicitly)

Oversized items are never blindly cut: their most relevant chunks are
recalled (persistent index, then in-memory embedding search, then
truncation) and reassembled in document order.

Usage:
    from context_allocator import AllocationOptions, ContextAllocator, ContextTier, ResourceItem

    allocator = ContextAllocator()
    prepared = await allocator.prepare_context(
        query="tesla battery roadmap",
        mentioned_context=ContextTier(resources=[ResourceItem("r1", content=text)]),
        max_tokens=4000,
        enable_mentioned_context=True,
    )
    prepared.context_str, prepared.sources
"""

from .allocator import AllocationOptions, AllocationState, ContextAllocator
from .cache import InMemoryCrawlCache, NullCrawlCache, RedisCrawlCache
from .chunking import ELISION_MARKER, assemble_chunks, split_text, truncate_chunks
from .config import Settings, configure_logging, get_settings, settings
from .exceptions import BackendUnavailableError, CircuitOpenError, ContextAllocatorError
from .models import (
    Chunk,
    ContentItem,
    ContextItem,
    ContextTier,
    DocumentItem,
    ItemKind,
    MergedContext,
    ResourceItem,
    TierResult,
    UrlSource,
)
from .processors import TierProcessor
from .prompts import DefaultPromptModule, PromptModule
from .ranking import SimilarityRanker
from .retrieval import ChunkRetriever, build_default_retriever
from .schemas import Message, ModelInfo, PreparedContext, Source
from .serializer import (
    apply_context_caching,
    build_final_request_messages,
    concat_merged_context,
    flatten_merged_context_to_sources,
)
from .tokenizer import Tokenizer, get_tokenizer

__all__ = [
    "ContextAllocator",
    "AllocationOptions",
    "AllocationState",
    "ContentItem",
    "ResourceItem",
    "DocumentItem",
    "UrlSource",
    "ContextItem",
    "ItemKind",
    "ContextTier",
    "MergedContext",
    "TierResult",
    "Chunk",
    "Source",
    "ModelInfo",
    "Message",
    "PreparedContext",
    "Tokenizer",
    "get_tokenizer",
    "split_text",
    "assemble_chunks",
    "truncate_chunks",
    "ELISION_MARKER",
    "ChunkRetriever",
    "build_default_retriever",
    "SimilarityRanker",
    "TierProcessor",
    "concat_merged_context",
    "flatten_merged_context_to_sources",
    "build_final_request_messages",
    "apply_context_caching",
    "PromptModule",
    "DefaultPromptModule",
    "InMemoryCrawlCache",
    "NullCrawlCache",
    "RedisCrawlCache",
    "ContextAllocatorError",
    "BackendUnavailableError",
    "CircuitOpenError",
    "Settings",
    "settings",
    "get_settings",
    "configure_logging",
]
