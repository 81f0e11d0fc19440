"""
Chunking for recall.

Splits an item's content into contiguous, non-overlapping chunks that
carry their character offsets, so recalled chunks can be put back in
reading order before they reach the model.

Rules:
- Prefer paragraph boundaries, then sentences, then words
- Chunk text is always an exact slice of the source text
- No overlap: offsets must stay monotonic for reassembly
"""

import logging
import re
from typing import List, Optional, Tuple

from .config import settings
from .models import Chunk
from .tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)

ELISION_MARKER = "\n [...] \n"

_BLOCK_RE = re.compile(r"(?:(?!\n[ \t]*\n).)+", re.DOTALL)
_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)\s*", re.DOTALL)
_WORD_RE = re.compile(r"\S+\s*")

Span = Tuple[int, int]


def _spans(pattern: re.Pattern, text: str, offset: int = 0) -> List[Span]:
    return [
        (offset + m.start(), offset + m.end())
        for m in pattern.finditer(text)
        if m.group(0).strip()
    ]


def _split_oversized(
    text: str, span: Span, max_tokens: int, tokenizer: Tokenizer
) -> List[Span]:
    """Break a span that exceeds max_tokens into sentences, then words."""
    start, end = span
    units: List[Span] = []
    for s_start, s_end in _spans(_SENTENCE_RE, text[start:end], start):
        if tokenizer.count(text[s_start:s_end]) <= max_tokens:
            units.append((s_start, s_end))
        else:
            units.extend(_spans(_WORD_RE, text[s_start:s_end], s_start))
    return units


def split_text(
    text: str,
    max_tokens: Optional[int] = None,
    tokenizer: Optional[Tokenizer] = None,
) -> List[Chunk]:
    """
    Split text into offset-tagged chunks of at most max_tokens.

    Args:
        text: Text to split
        max_tokens: Token ceiling per chunk (default from config)
        tokenizer: Tokenizer used for measuring

    Returns:
        Chunks in reading order with start/end character offsets
    """
    max_tokens = max_tokens or settings.chunking.chunk_tokens
    tokenizer = tokenizer or get_tokenizer()

    if not text or not text.strip():
        return []

    units: List[Tuple[Span, int]] = []
    for span in _spans(_BLOCK_RE, text):
        tokens = tokenizer.count(text[span[0]:span[1]])
        if tokens <= max_tokens:
            units.append((span, tokens))
            continue
        for sub in _split_oversized(text, span, max_tokens, tokenizer):
            units.append((sub, tokenizer.count(text[sub[0]:sub[1]])))

    chunks: List[Chunk] = []
    current: List[Span] = []
    current_tokens = 0

    def flush():
        start, end = current[0][0], current[-1][1]
        raw = text[start:end]
        # Trim whitespace without losing the true offsets
        lead = len(raw) - len(raw.lstrip())
        body = raw.strip()
        chunks.append(
            Chunk(
                text=body,
                start=start + lead,
                end=start + lead + len(body),
                index=len(chunks),
            )
        )

    for span, tokens in units:
        if current and current_tokens + tokens > max_tokens:
            flush()
            current = []
            current_tokens = 0
        current.append(span)
        current_tokens += tokens

    if current:
        flush()

    return chunks


def _adjacent(prev: Chunk, nxt: Chunk) -> bool:
    if prev.end is None or nxt.start is None:
        return False
    return 0 <= nxt.start - prev.end <= 2


def assemble_chunks(chunks: List[Chunk]) -> str:
    """
    Reassemble recalled chunks into one text.

    Chunks are put back in reading order when every chunk has a start
    offset. Skipped content between chunks is marked so the model
    knows the text is not contiguous.
    """
    if not chunks:
        return ""

    ordered = list(chunks)
    if all(c.start is not None for c in ordered):
        ordered.sort(key=lambda c: c.start)

    parts = [ordered[0].text]
    for prev, nxt in zip(ordered, ordered[1:]):
        parts.append("\n\n" if _adjacent(prev, nxt) else ELISION_MARKER)
        parts.append(nxt.text)

    return "".join(parts)


def truncate_chunks(
    chunks: List[Chunk],
    max_tokens: int,
    tokenizer: Optional[Tokenizer] = None,
) -> List[Chunk]:
    """Keep leading chunks (by relevance) while they fit max_tokens."""
    tokenizer = tokenizer or get_tokenizer()
    result: List[Chunk] = []
    used = 0

    for chunk in chunks:
        chunk_tokens = tokenizer.count(chunk.text)
        if used + chunk_tokens > max_tokens:
            break
        result.append(chunk)
        used += chunk_tokens

    return result
