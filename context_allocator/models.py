"""
Context data model.

Every candidate unit of context is one variant of the ContextItem
tagged union. Variants are frozen: processing returns new items
(with_content) instead of mutating the caller's pools.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from .schemas import Source


class ItemKind(str, Enum):
    CONTENT = "content"
    RESOURCE = "resource"
    DOCUMENT = "document"
    URL_SOURCE = "urlSource"


Identity = Tuple[str, str]


@dataclass(frozen=True)
class ContentItem:
    """Free text selected by the user (a snippet, a canvas node, a quote)."""

    content: str
    title: str = ""
    entity_id: Optional[str] = None
    domain: str = "content"
    url: Optional[str] = None
    use_whole_content: Optional[bool] = None
    kind: ItemKind = field(default=ItemKind.CONTENT, init=False)

    @property
    def identity(self) -> Optional[Identity]:
        if not self.entity_id:
            return None
        return (self.domain, self.entity_id)

    def with_content(self, content: str) -> "ContentItem":
        return replace(self, content=content)


@dataclass(frozen=True)
class ResourceItem:
    """An imported resource (web page, file, note)."""

    resource_id: str
    title: str = ""
    content: str = ""
    url: Optional[str] = None
    resource_type: str = "text"
    use_whole_content: Optional[bool] = None
    kind: ItemKind = field(default=ItemKind.RESOURCE, init=False)

    @property
    def domain(self) -> str:
        return ItemKind.RESOURCE.value

    @property
    def entity_id(self) -> str:
        return self.resource_id

    @property
    def identity(self) -> Optional[Identity]:
        if not self.resource_id:
            return None
        return (self.domain, self.resource_id)

    def with_content(self, content: str) -> "ResourceItem":
        return replace(self, content=content)


@dataclass(frozen=True)
class DocumentItem:
    """A document authored in the workspace."""

    doc_id: str
    title: str = ""
    content: str = ""
    use_whole_content: Optional[bool] = None
    kind: ItemKind = field(default=ItemKind.DOCUMENT, init=False)

    @property
    def domain(self) -> str:
        return ItemKind.DOCUMENT.value

    @property
    def entity_id(self) -> str:
        return self.doc_id

    @property
    def url(self) -> Optional[str]:
        return None

    @property
    def identity(self) -> Optional[Identity]:
        if not self.doc_id:
            return None
        return (self.domain, self.doc_id)

    def with_content(self, content: str) -> "DocumentItem":
        return replace(self, content=content)


@dataclass(frozen=True)
class UrlSource:
    """Page content crawled from a URL found in the query."""

    url: str
    title: str = ""
    content: str = ""
    kind: ItemKind = field(default=ItemKind.URL_SOURCE, init=False)

    # URL sources are never user-pinned as a whole
    use_whole_content: Optional[bool] = field(default=None, init=False)

    @property
    def domain(self) -> str:
        return ItemKind.URL_SOURCE.value

    @property
    def entity_id(self) -> str:
        return self.url

    @property
    def identity(self) -> Optional[Identity]:
        if not self.url:
            return None
        return (self.domain, self.url)

    def with_content(self, content: str) -> "UrlSource":
        return replace(self, content=content)

    @classmethod
    def from_source(cls, source: Source) -> "UrlSource":
        return cls(url=source.url or "", title=source.title or "", content=source.page_content)


ContextItem = Union[ContentItem, ResourceItem, DocumentItem, UrlSource]


@dataclass
class Chunk:
    """A contiguous sub-span of an item's content."""

    text: str
    start: Optional[int] = None
    end: Optional[int] = None
    index: Optional[int] = None
    score: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContextTier:
    """Content snippets, resources and documents of one pool."""

    content_list: Tuple[ContentItem, ...] = ()
    resources: Tuple[ResourceItem, ...] = ()
    documents: Tuple[DocumentItem, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "content_list", tuple(self.content_list))
        object.__setattr__(self, "resources", tuple(self.resources))
        object.__setattr__(self, "documents", tuple(self.documents))

    def items(self) -> Iterator[ContextItem]:
        yield from self.content_list
        yield from self.resources
        yield from self.documents

    def is_empty(self) -> bool:
        return not (self.content_list or self.resources or self.documents)

    def category(self, name: str) -> Tuple[ContextItem, ...]:
        return {
            "content": self.content_list,
            "resource": self.resources,
            "document": self.documents,
        }[name]


@dataclass(frozen=True)
class MergedContext:
    """The five processed tiers, in priority order."""

    url_sources: Tuple[UrlSource, ...] = ()
    mentioned_context: ContextTier = field(default_factory=ContextTier)
    relevant_context: ContextTier = field(default_factory=ContextTier)
    web_search_sources: Tuple[Source, ...] = ()
    library_search_sources: Tuple[Source, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "url_sources", tuple(self.url_sources))
        object.__setattr__(self, "web_search_sources", tuple(self.web_search_sources))
        object.__setattr__(self, "library_search_sources", tuple(self.library_search_sources))


@dataclass(frozen=True)
class TierResult:
    """Items retained by a tier processor and what they cost."""

    items: Tuple[ContextItem, ...] = ()
    used_tokens: int = 0

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))
