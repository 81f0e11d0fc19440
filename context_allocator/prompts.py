"""
Prompt templates for the final request.

A prompt module turns the allocator output into the system, context and
user messages. Hosts subclass PromptModule to change the wording; the
message assembly in serializer.py only depends on these three builders.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence


GROUNDED_SYSTEM_PROMPT = """You are a research assistant. Answer the user's question using the context items provided in the conversation.

Instructions:
- Base your answer on the context items; say so when they do not contain the answer
- Cite context items inline as [citation:N], where N is the item's citation_index
- Never invent citations or cite an item that is not in the context
- Prefer the most specific and recent sources when they disagree
- Reply in {locale}"""


PLAIN_SYSTEM_PROMPT = """You are a helpful assistant. Answer the user's question directly and concisely.

Reply in {locale}"""


CONTEXT_USER_PROMPT = """Context:
<context>
{context}
</context>"""


USER_PROMPT = """Question: {query}"""


REWRITTEN_QUERIES_SUFFIX = """

The question was also searched as:
{rewritten}"""


ORIGINAL_QUERY_PROMPT = """Original question: {original_query}
Optimized question: {query}"""


class PromptModule(ABC):
    """
    Builds the prompts of the final request.

    Usage:
        module = DefaultPromptModule()
        system = module.build_system_prompt("en", need_prepare_context=True)
    """

    @abstractmethod
    def build_system_prompt(self, locale: str, need_prepare_context: bool) -> str:
        pass

    @abstractmethod
    def build_context_user_prompt(self, context: str, need_prepare_context: bool) -> str:
        """Return "" to leave the context message out."""
        pass

    @abstractmethod
    def build_user_prompt(
        self,
        original_query: str,
        optimized_query: str,
        rewritten_queries: Optional[Sequence[str]],
        locale: str,
    ) -> str:
        pass


class DefaultPromptModule(PromptModule):
    """Grounded question answering with inline citations."""

    def build_system_prompt(self, locale: str, need_prepare_context: bool) -> str:
        template = GROUNDED_SYSTEM_PROMPT if need_prepare_context else PLAIN_SYSTEM_PROMPT
        return template.format(locale=locale or "en")

    def build_context_user_prompt(self, context: str, need_prepare_context: bool) -> str:
        # No context message at all rather than an empty one
        if not need_prepare_context or not context:
            return ""
        return CONTEXT_USER_PROMPT.format(context=context)

    def build_user_prompt(
        self,
        original_query: str,
        optimized_query: str,
        rewritten_queries: Optional[Sequence[str]],
        locale: str,
    ) -> str:
        query = optimized_query or original_query
        others: List[str] = [q for q in (rewritten_queries or []) if q and q != query]

        if original_query and optimized_query and original_query != optimized_query:
            prompt = ORIGINAL_QUERY_PROMPT.format(original_query=original_query, query=query)
        else:
            prompt = USER_PROMPT.format(query=query)

        if others:
            prompt += REWRITTEN_QUERIES_SUFFIX.format(
                rewritten="\n".join(f"- {q}" for q in others)
            )
        return prompt
