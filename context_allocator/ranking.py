"""
Relevance ordering of homogeneous item lists.
"""

import logging
from typing import List, Optional, Sequence, TypeVar

from .backends import EphemeralIndex
from .config import settings
from .models import Chunk, ContextItem
from .tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=ContextItem)


class SimilarityRanker:
    """
    Orders items by similarity to the query, whole item at a time.

    Each item is one document in an ephemeral index (content capped at
    the recall threshold). Ranking failures keep the caller's order.
    """

    def __init__(
        self,
        index: EphemeralIndex,
        tokenizer: Optional[Tokenizer] = None,
        max_item_tokens: int = None,
    ):
        self.index = index
        self.tokenizer = tokenizer or get_tokenizer()
        self.max_item_tokens = max_item_tokens or settings.budget.must_recall_tokens

    async def rank(self, query: str, items: Sequence[T]) -> List[T]:
        items = list(items)
        if len(items) <= 1:
            return items

        documents = [
            Chunk(
                text=self.tokenizer.truncate(item.content, self.max_item_tokens),
                index=position,
                metadata={"position": position},
            )
            for position, item in enumerate(items)
        ]

        try:
            hits = await self.index.index_and_search(
                query, documents, k=len(documents), need_chunk=False
            )
        except Exception as e:
            logger.warning(f"Similarity ranking failed for {len(items)} items: {e!r}, keeping input order")
            return items

        ranked: List[T] = []
        seen = set()
        for hit in hits:
            position = hit.metadata.get("position")
            if position is None or position in seen or not 0 <= position < len(items):
                continue
            seen.add(position)
            ranked.append(items[position])

        # Items the backend did not return keep their relative order
        ranked.extend(item for position, item in enumerate(items) if position not in seen)
        return ranked
