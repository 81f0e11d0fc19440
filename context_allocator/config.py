"""
Configuration module for the context allocator.
Manages environment variables, budget policy and backend settings.
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional


@dataclass
class TokenizerConfig:
    """Tokenizer configuration - keep close to the target completion model."""
    encoding_name: str = "cl100k_base"


@dataclass
class EmbeddingConfig:
    """Embedding model configuration for the ephemeral index."""
    model_name: str = "all-MiniLM-L6-v2"
    normalize: bool = True
    version: str = "2025-01-01"
    dimension: int = 384  # Matches all-MiniLM-L6-v2


@dataclass
class ChunkingConfig:
    """Chunking strategy for recall."""
    chunk_tokens: int = 250
    recall_top_k: int = 10


@dataclass
class BudgetConfig:
    """
    Budget policy.

    Ratios are policy, not invariants: tiers keep their priority order
    whatever the numbers are.
    """
    context_ratio: float = 0.7
    url_sources_ratio: float = 0.4
    web_search_ratio: float = 0.5
    library_search_ratio: float = 0.5

    # Share of a tier budget spent in the primary pass
    relevant_ratio: float = 0.7
    url_relevant_ratio: float = 0.7

    must_recall_tokens: int = 10000
    short_content_tokens: int = 100
    max_url_source_chars: int = 32000

    category_ratios: Dict[str, float] = field(
        default_factory=lambda: {"content": 0.4, "resource": 0.3, "document": 0.3}
    )

    search_sources_cap: int = 10
    long_context_threshold: int = 32000

    # Models under this window skip mentioned context
    min_model_context: int = 4096


@dataclass
class SearchConfig:
    """Web and library search configuration."""
    limit: int = 10
    deep_limit: int = 20
    relevance_threshold: float = 0.2
    deep_relevance_threshold: float = 0.4
    locales: List[str] = field(default_factory=lambda: ["en"])
    enable_rerank: bool = True
    reranker_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"


@dataclass
class ConcurrencyConfig:
    """Bounded fan-out limits for backend calls."""
    retrieval: int = 5
    search: int = 3


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker thresholds for the persistent search backend."""
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    half_open_max_calls: int = 2


@dataclass
class Settings:
    """Main settings loaded from environment."""

    # Chroma settings
    CHROMA_PATH: str = field(default_factory=lambda: os.getenv("CHROMA_PATH", "./data/chroma"))
    CHROMA_HOST: Optional[str] = field(default_factory=lambda: os.getenv("CHROMA_HOST"))
    CHROMA_PORT: int = field(default_factory=lambda: int(os.getenv("CHROMA_PORT", "8000")))
    COLLECTION_NAME: str = field(default_factory=lambda: os.getenv("COLLECTION_NAME", "context_v1"))

    # Crawl cache settings
    CRAWL_CACHE_TTL: int = field(default_factory=lambda: int(os.getenv("CRAWL_CACHE_TTL", "3600")))
    CRAWL_CACHE_MAX_ENTRIES: int = field(
        default_factory=lambda: int(os.getenv("CRAWL_CACHE_MAX_ENTRIES", "1000"))
    )

    # Application settings
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    ALLOCATION_TIMEOUT: float = field(
        default_factory=lambda: float(os.getenv("ALLOCATION_TIMEOUT", "60"))
    )

    # Nested configs
    tokenizer: TokenizerConfig = field(default_factory=TokenizerConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    def get_index_name(self) -> str:
        """Generate versioned index name for embedding schema management."""
        model_slug = self.embedding.model_name.replace("/", "_").replace("-", "_")
        return f"{self.COLLECTION_NAME}_{model_slug}_{self.embedding.version}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Apply LOG_LEVEL to the package logger."""
    level = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("context_allocator").setLevel(level)
