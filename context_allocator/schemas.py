"""
Pydantic schemas for values crossing the allocator boundary.

Sources and messages leave this package; search hits and model info
come in from collaborators.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Source(BaseModel):
    """A citable unit of context, used both for the prompt and the UI."""

    url: Optional[str] = None
    title: Optional[str] = None
    page_content: str = ""
    score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def entity_type(self) -> Optional[str]:
        return self.metadata.get("entity_type")

    @property
    def entity_id(self) -> Optional[str]:
        return self.metadata.get("entity_id")


class SearchHit(BaseModel):
    """A ranked hit from the persistent search backend."""

    id: str
    domain: str
    title: Optional[str] = None
    snippets: List[str] = Field(default_factory=list)
    score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        return "\n\n".join(self.snippets)


class ModelCapabilities(BaseModel):
    context_caching: bool = False
    vision: bool = False


class ModelInfo(BaseModel):
    """What the target completion model advertises."""

    name: str
    provider: Optional[str] = None
    context_limit: int = 8192
    max_output: int = 4096
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)


class CacheControl(BaseModel):
    type: Literal["ephemeral"] = "ephemeral"


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str
    cache_control: Optional[CacheControl] = None


class ImageUrl(BaseModel):
    url: str


class ImageUrlBlock(BaseModel):
    # Images never carry cache_control, they are cached as part of the prefix
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


ContentBlock = Union[TextBlock, ImageUrlBlock]


class Message(BaseModel):
    """A chat message in the final request sequence."""

    role: Literal["system", "user", "assistant"]
    content: Union[str, List[ContentBlock]]


class PreparedContext(BaseModel):
    """Result of one allocation run."""

    context_str: str = ""
    sources: List[Source] = Field(default_factory=list)
    tier_tokens: Dict[str, int] = Field(default_factory=dict)
    timed_out: bool = False
