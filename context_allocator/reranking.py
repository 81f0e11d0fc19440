"""
Cross-encoder reranking for search sources.

Search providers return loosely ordered hits across queries and
locales; the cross-encoder rescores them jointly against the user query
and drops the ones under the relevance threshold.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import numpy as np

from .config import settings
from .schemas import Source

logger = logging.getLogger(__name__)


class CrossEncoderReranker:
    """
    Cross-encoder reranker using sentence-transformers.

    WARNING: Expensive per query - only run on a few dozen candidates!

    Usage:
        reranker = CrossEncoderReranker()
        sources = await reranker.rerank(query, sources, top_k=10, threshold=0.2)
    """

    def __init__(self, model_name: str = None, max_length: int = 512):
        """
        Args:
            model_name: HuggingFace model name for cross-encoder
            max_length: Max tokens of a query/document pair
        """
        self.model_name = model_name or settings.search.reranker_model
        self.max_length = max_length
        self._model = None

    @property
    def model(self):
        """Lazy load model."""
        if self._model is None:
            from sentence_transformers import CrossEncoder

            logger.info(f"Loading reranker model: {self.model_name}")
            self._model = CrossEncoder(self.model_name, max_length=self.max_length)
        return self._model

    def score(self, query: str, texts: Sequence[str]) -> np.ndarray:
        """Relevance of each text to query, normalized to [0, 1]."""
        if not texts:
            return np.array([])

        logits = np.asarray(self.model.predict([(query, t) for t in texts]), dtype=np.float32)
        scores = 1.0 / (1.0 + np.exp(-logits))

        logger.debug(f"Rerank scores - min: {scores.min():.3f}, max: {scores.max():.3f}")
        return scores

    def rerank_sync(
        self,
        query: str,
        sources: Sequence[Source],
        top_k: Optional[int] = None,
        threshold: float = 0.0,
    ) -> List[Source]:
        if not sources:
            return []

        scores = self.score(query, [s.page_content for s in sources])
        order = np.argsort(-scores, kind="stable")

        results = []
        for i in order:
            if scores[i] < threshold:
                continue
            source = sources[i]
            results.append(
                source.model_copy(
                    update={
                        "score": float(scores[i]),
                        "metadata": {**source.metadata, "original_score": source.score},
                    }
                )
            )

        dropped = len(sources) - len(results)
        if dropped:
            logger.debug(f"Reranker dropped {dropped} sources under threshold {threshold}")
        return results[:top_k] if top_k else results

    async def rerank(
        self,
        query: str,
        sources: Sequence[Source],
        top_k: Optional[int] = None,
        threshold: float = 0.0,
    ) -> List[Source]:
        """
        Rerank sources by cross-encoder relevance.

        Args:
            query: Query string
            sources: Candidate sources
            top_k: Number of sources to return, all when None
            threshold: Minimum normalized relevance

        Returns:
            Sources by descending relevance, score replaced, original score in metadata
        """
        return await asyncio.to_thread(self.rerank_sync, query, list(sources), top_k, threshold)


# Global reranker instance
_reranker: Optional[CrossEncoderReranker] = None


def get_reranker() -> CrossEncoderReranker:
    """Get or create global reranker instance."""
    global _reranker
    if _reranker is None:
        _reranker = CrossEncoderReranker()
    return _reranker
