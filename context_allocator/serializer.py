"""
Context serialization and final request assembly.

concat_merged_context and flatten_merged_context_to_sources walk the
tiers in the same order, so citation_index N in the context string is
always sources[N - 1].

Example context string:

    <url_sources>
    <context_item citation_index="1" type="urlSource" entity_id="https://..." title="..." url="https://...">
    page content
    </context_item>
    </url_sources>
    <mentioned_context>
    ...
"""

import html
import logging
from typing import Iterator, List, Optional, Sequence, Tuple

from .models import ContextItem, MergedContext
from .prompts import PromptModule
from .schemas import CacheControl, ImageUrl, ImageUrlBlock, Message, ModelInfo, Source, TextBlock

logger = logging.getLogger(__name__)

SECTIONS = (
    "url_sources",
    "mentioned_context",
    "relevant_context",
    "web_search_sources",
    "library_search_sources",
)

_DEFAULT_SOURCE_TYPES = {
    "web_search_sources": "webSearch",
    "library_search_sources": "library",
}


def item_to_source(item: ContextItem, section: str) -> Source:
    metadata = {"entity_type": item.domain, "source_type": section}
    if item.entity_id:
        metadata["entity_id"] = item.entity_id
    return Source(
        url=item.url,
        title=item.title or None,
        page_content=item.content,
        metadata=metadata,
    )


def _entries(merged: MergedContext) -> Iterator[Tuple[str, Source]]:
    """(section, source) pairs in priority order."""
    for item in merged.url_sources:
        yield "url_sources", item_to_source(item, "urlSource")
    for item in merged.mentioned_context.items():
        yield "mentioned_context", item_to_source(item, "mentionedContext")
    for item in merged.relevant_context.items():
        yield "relevant_context", item_to_source(item, "relevantContext")
    for section, sources in (
        ("web_search_sources", merged.web_search_sources),
        ("library_search_sources", merged.library_search_sources),
    ):
        for source in sources:
            if "source_type" not in source.metadata:
                source = source.model_copy(
                    update={
                        "metadata": {**source.metadata, "source_type": _DEFAULT_SOURCE_TYPES[section]}
                    }
                )
            yield section, source


def _attr(value: Optional[str]) -> str:
    return html.escape(value or "", quote=True)


def format_context_item(citation_index: int, source: Source) -> str:
    return (
        f'<context_item citation_index="{citation_index}" '
        f'type="{_attr(source.metadata.get("source_type"))}" '
        f'entity_id="{_attr(source.entity_id)}" '
        f'title="{_attr(source.title)}" '
        f'url="{_attr(source.url)}">\n'
        f"{source.page_content}\n"
        f"</context_item>"
    )


def concat_merged_context(merged: MergedContext) -> str:
    """
    Render the merged tiers as one prompt-ready string.

    Args:
        merged: Processed tiers

    Returns:
        Section-tagged context, empty string when every tier is empty
    """
    blocks = {section: [] for section in SECTIONS}
    for citation_index, (section, source) in enumerate(_entries(merged), start=1):
        blocks[section].append(format_context_item(citation_index, source))

    parts = []
    for section in SECTIONS:
        if blocks[section]:
            parts.append(f"<{section}>\n" + "\n".join(blocks[section]) + f"\n</{section}>")
    return "\n".join(parts)


def flatten_merged_context_to_sources(merged: MergedContext) -> List[Source]:
    """One Source per item, in citation order."""
    return [source for _, source in _entries(merged)]


def apply_context_caching(messages: Sequence[Message]) -> List[Message]:
    """
    Mark every message but the last as cacheable.

    String content becomes a single cacheable text block; in block
    content only text blocks are marked, image blocks are left as is.
    """
    if len(messages) <= 1:
        return list(messages)

    cached: List[Message] = []
    for message in messages[:-1]:
        if isinstance(message.content, str):
            content = [TextBlock(text=message.content, cache_control=CacheControl())]
        else:
            content = [
                block.model_copy(update={"cache_control": CacheControl()})
                if isinstance(block, TextBlock)
                else block
                for block in message.content
            ]
        cached.append(message.model_copy(update={"content": content}))

    cached.append(messages[-1])
    return cached


def build_final_request_messages(
    module: PromptModule,
    locale: str,
    chat_history: Sequence[Message],
    messages: Sequence[Message],
    need_prepare_context: bool,
    context: str,
    images: Optional[Sequence[str]],
    original_query: str,
    optimized_query: str,
    rewritten_queries: Optional[Sequence[str]] = None,
    model_info: Optional[ModelInfo] = None,
) -> List[Message]:
    """
    Assemble the ordered request sent to the completion model.

    Order: system prompt, chat history, injected messages, context
    message (only when there is context), final user message with any
    images attached.
    """
    system_prompt = module.build_system_prompt(locale, need_prepare_context)
    context_prompt = module.build_context_user_prompt(context, need_prepare_context)
    user_prompt = module.build_user_prompt(
        original_query=original_query,
        optimized_query=optimized_query,
        rewritten_queries=rewritten_queries or [],
        locale=locale,
    )

    if images:
        final_message = Message(
            role="user",
            content=[TextBlock(text=user_prompt)]
            + [ImageUrlBlock(image_url=ImageUrl(url=image)) for image in images],
        )
    else:
        final_message = Message(role="user", content=user_prompt)

    request = [
        Message(role="system", content=system_prompt),
        *chat_history,
        *messages,
        *([Message(role="user", content=context_prompt)] if context_prompt else []),
        final_message,
    ]

    if model_info is not None and model_info.capabilities.context_caching:
        logger.debug(f"Context caching enabled for {model_info.name}")
        return apply_context_caching(request)
    return request
