"""
Token counting and truncation.

Treat prompt context as a resource with a budget: every tier is
measured with the same tokenizer so consumption adds up.
"""

import logging
from typing import Iterable, List, Optional, Sequence

import tiktoken

from .config import settings
from .models import ContextItem, ContextTier
from .schemas import Source

logger = logging.getLogger(__name__)


class Tokenizer:
    """
    Deterministic token counter backed by tiktoken.

    Exactness is not required, the allocator tolerates small
    estimation errors. Subclasses can swap encode/decode.

    Usage:
        tokenizer = Tokenizer()
        tokenizer.count("hello world")
        tokenizer.truncate(long_text, max_tokens=500)
    """

    def __init__(self, encoding_name: Optional[str] = None):
        self.encoding_name = encoding_name or settings.tokenizer.encoding_name
        self._enc = None

    @property
    def enc(self):
        """Lazy load the encoding."""
        if self._enc is None:
            logger.debug(f"Loading tiktoken encoding: {self.encoding_name}")
            self._enc = tiktoken.get_encoding(self.encoding_name)
        return self._enc

    def encode(self, text: str) -> Sequence:
        return self.enc.encode(text, disallowed_special=())

    def decode(self, tokens: Sequence) -> str:
        return self.enc.decode(list(tokens))

    def count(self, text: Optional[str]) -> int:
        """Count tokens in text."""
        if not text:
            return 0
        return len(self.encode(text))

    def count_item(self, item: ContextItem) -> int:
        return self.count(item.content)

    def count_items(self, items: Iterable[ContextItem]) -> int:
        return sum(self.count_item(item) for item in items)

    def count_tier(self, tier: ContextTier) -> int:
        """Sum over content snippets, resources and documents."""
        return self.count_items(tier.items())

    def count_sources(self, sources: Iterable[Source]) -> int:
        return sum(self.count(source.page_content) for source in sources)

    def truncate(self, text: str, max_tokens: int) -> str:
        """Truncate text to at most max_tokens, keeping the head."""
        if max_tokens <= 0 or not text:
            return ""
        tokens = self.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return self.decode(tokens[:max_tokens])


class WhitespaceTokenizer(Tokenizer):
    """
    One token per whitespace-separated word.

    Cheap and offline; handy for tests and for rough estimates
    when no encoding file can be loaded.
    """

    def __init__(self):
        super().__init__(encoding_name="whitespace")

    def encode(self, text: str) -> List[str]:
        return text.split()

    def decode(self, tokens: Sequence) -> str:
        return " ".join(tokens)


_tokenizer: Optional[Tokenizer] = None


def get_tokenizer() -> Tokenizer:
    """Get or create the global tokenizer."""
    global _tokenizer
    if _tokenizer is None:
        _tokenizer = Tokenizer()
    return _tokenizer
