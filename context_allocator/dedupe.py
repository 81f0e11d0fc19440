"""
Cross-tier deduplication.

Two items collide when they share an identity (domain, entity id, or
url for web pages) or byte-identical content. The higher-priority tier
always keeps its copy.
"""

import hashlib
import logging
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

from .models import ContextItem, ContextTier
from .schemas import Source

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


def compute_content_hash(text: str) -> str:
    """
    sha256 of the exact text.

    No whitespace normalization: only byte-identical content collides.
    """
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def item_keys(item: ContextItem) -> Set[Key]:
    keys = set()
    if item.identity is not None:
        keys.add(item.identity)
    if item.url:
        keys.add(("url", item.url))
    return keys


def source_keys(source: Source) -> Set[Key]:
    keys = set()
    if source.entity_type and source.entity_id:
        keys.add((source.entity_type, source.entity_id))
    if source.url:
        keys.add(("url", source.url))
    return keys


class SeenIndex:
    """Identities and content digests of everything already placed."""

    def __init__(self):
        self.keys: Set[Key] = set()
        self.hashes: Set[str] = set()

    def add_item(self, item: ContextItem) -> None:
        self.keys |= item_keys(item)
        self.hashes.add(compute_content_hash(item.content))

    def add_items(self, items: Iterable[ContextItem]) -> "SeenIndex":
        for item in items:
            self.add_item(item)
        return self

    def add_source(self, source: Source) -> None:
        self.keys |= source_keys(source)
        self.hashes.add(compute_content_hash(source.page_content))

    def add_sources(self, sources: Iterable[Source]) -> "SeenIndex":
        for source in sources:
            self.add_source(source)
        return self

    def has_item(self, item: ContextItem) -> bool:
        return bool(item_keys(item) & self.keys) or compute_content_hash(item.content) in self.hashes

    def has_source(self, source: Source) -> bool:
        return (
            bool(source_keys(source) & self.keys)
            or compute_content_hash(source.page_content) in self.hashes
        )


def _filter_tier(tier: ContextTier, keep: Callable[[ContextItem], bool]) -> ContextTier:
    # Same visiting order as tier.items()
    return ContextTier(
        content_list=[i for i in tier.content_list if keep(i)],
        resources=[i for i in tier.resources if keep(i)],
        documents=[i for i in tier.documents if keep(i)],
    )


def dedupe_tier_by_content(tier: ContextTier) -> ContextTier:
    """Keep the first occurrence of each distinct content within a tier."""
    seen: Set[str] = set()

    def first_occurrence(item: ContextItem) -> bool:
        digest = compute_content_hash(item.content)
        if digest in seen:
            logger.debug(f"Dropping duplicate content from {item.identity}")
            return False
        seen.add(digest)
        return True

    return _filter_tier(tier, first_occurrence)


def remove_overlapping_items(higher: ContextTier, lower: ContextTier) -> ContextTier:
    """
    Drop from lower every item whose identity already appears in higher.

    Args:
        higher: Tier that wins collisions (mentioned context)
        lower: Tier being filtered (relevant context)

    Returns:
        New tier with the surviving items of lower
    """
    taken = set()
    for item in higher.items():
        if item.identity is not None:
            taken.add(item.identity)

    filtered = _filter_tier(
        lower, lambda item: item.identity is None or item.identity not in taken
    )
    removed = sum(1 for _ in lower.items()) - sum(1 for _ in filtered.items())
    if removed:
        logger.debug(f"Removed {removed} items already present in a higher tier")
    return filtered


def remove_colliding_items(lower: ContextTier, *higher_items: Iterable[ContextItem]) -> ContextTier:
    """Drop from lower every item sharing an identity, url or content with higher items."""
    seen = SeenIndex()
    for items in higher_items:
        seen.add_items(items)
    if not seen.keys and not seen.hashes:
        return lower
    return _filter_tier(lower, lambda item: not seen.has_item(item))


def remove_overlapping_sources(
    sources: Sequence[Source],
    *higher_items: Iterable[ContextItem],
    higher_sources: Optional[Iterable[Source]] = None,
) -> List[Source]:
    """
    Drop search sources that collide with higher-priority context.

    Also removes duplicates within sources itself, first occurrence wins.

    Args:
        sources: Search sources, in rank order
        higher_items: Item collections that win collisions
        higher_sources: Sources of higher tiers that win collisions

    Returns:
        Surviving sources, order preserved
    """
    seen = SeenIndex()
    for items in higher_items:
        seen.add_items(items)
    if higher_sources is not None:
        seen.add_sources(higher_sources)

    kept: List[Source] = []
    for source in sources:
        if seen.has_source(source):
            logger.debug(f"Dropping overlapping source {source.url or source.entity_id}")
            continue
        seen.add_source(source)
        kept.append(source)
    return kept
