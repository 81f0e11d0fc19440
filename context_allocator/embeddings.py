"""
Embedding service for on-the-fly similarity search.
Vectors are normalized so cosine similarity is a dot product.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from .config import EmbeddingConfig, settings

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    """Embedding result with metadata for tracking."""
    vectors: np.ndarray
    model_name: str
    model_version: str
    preprocessing_hash: str


class EmbeddingService:
    """
    Sentence-transformers embedding service.

    Key practices:
    - Normalize vectors to unit length for cosine similarity
    - Keep preprocessing deterministic so rankings are repeatable
    """

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or settings.embedding
        self._model: Optional[SentenceTransformer] = None
        self._preprocessing_hash = self._compute_preprocessing_hash()

    def _compute_preprocessing_hash(self) -> str:
        """Hash preprocessing config for drift detection."""
        config_str = f"{self.config.model_name}:{self.config.normalize}:{self.config.version}"
        return hashlib.md5(config_str.encode()).hexdigest()[:8]

    @property
    def model(self) -> SentenceTransformer:
        """Lazy load the model."""
        if self._model is None:
            logger.info(f"Loading embedding model: {self.config.model_name}")
            self._model = SentenceTransformer(self.config.model_name)
        return self._model

    def preprocess_text(self, text: str) -> str:
        """Deterministic text preprocessing."""
        text = " ".join(text.split())
        max_chars = 8192
        if len(text) > max_chars:
            text = text[:max_chars]
        return text

    def embed_batch(self, texts: List[str]) -> EmbeddingResult:
        """
        Embed a batch of texts.

        Args:
            texts: List of texts to embed

        Returns:
            EmbeddingResult with one row per text
        """
        processed = [self.preprocess_text(t) for t in texts]

        vectors = self.model.encode(
            processed,
            show_progress_bar=False,
            convert_to_numpy=True,
        )

        if self.config.normalize:
            norms = np.linalg.norm(vectors, axis=1, keepdims=True)
            vectors = vectors / (norms + 1e-10)  # Avoid division by zero

        return EmbeddingResult(
            vectors=vectors,
            model_name=self.config.model_name,
            model_version=self.config.version,
            preprocessing_hash=self._preprocessing_hash,
        )

    def embed_query(self, query: str) -> np.ndarray:
        return self.embed_batch([query]).vectors[0]


def cosine_scores(query_vector: np.ndarray, vectors: np.ndarray) -> np.ndarray:
    """Cosine similarity of one query vector against a matrix of vectors."""
    if len(vectors) == 0:
        return np.array([])
    q = query_vector / (np.linalg.norm(query_vector) + 1e-10)
    m = vectors / (np.linalg.norm(vectors, axis=1, keepdims=True) + 1e-10)
    return m @ q


_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get or create the global embedding service."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
