import logging
import math
from typing import List, Optional

from openai import AsyncOpenAI

from store_assistant.agents.base import BaseAgent
from store_assistant.models import Chunk

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
DEFAULT_MAX_TOKENS = 900
EMPTY_CONTEXT = "No product context available."


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def render_chunks(chunks: List[Chunk]) -> str:
    """`[title]\\nbody` blocks in descending score order, separated by blank lines."""
    ordered = sorted(chunks, key=lambda c: c.search_score, reverse=True)
    return "\n\n".join(f"[{c.section_title or 'Unknown'}]\n{c.section_body or ''}" for c in ordered)


def truncate_to_budget(text: str, max_tokens: int) -> str:
    limit = max_tokens * CHARS_PER_TOKEN
    if len(text) <= limit:
        return text
    return text[:max(limit - 3, 0)] + "..."


class CondenserAgent(BaseAgent):
    """One-shot compression of retrieved chunks to a token budget."""

    def __init__(self, openai_client: Optional[AsyncOpenAI] = None, default_max_tokens: int = DEFAULT_MAX_TOKENS, **kwargs):
        kwargs.setdefault("temperature", 0.1)
        super().__init__(openai_client, **kwargs)
        self.default_max_tokens = default_max_tokens

    def _get_system_prompt(self) -> str:
        return """
        You are a context summarizer for a retail assistant. Summarize the product information
        chunks you are given into a crisp, factual context summary.

        Instructions:
        - Keep ALL product-specific facts, specifications and key details
        - Preserve safety and warranty constraints and important warnings
        - Remove marketing language and redundant information
        - Do not invent or change facts
        - Stay within the length limit stated in the request

        Return ONLY the summarized text, no markdown, no code blocks, no explanations.
        """

    def needs_condensation(self, chunks: List[Chunk], max_tokens: Optional[int] = None) -> bool:
        if not chunks:
            return False
        return estimate_tokens(render_chunks(chunks)) > (max_tokens or self.default_max_tokens)

    async def condense(self, chunks: List[Chunk], max_tokens: Optional[int] = None) -> str:
        max_tokens = max_tokens or self.default_max_tokens
        if not chunks:
            return EMPTY_CONTEXT

        chunks_text = render_chunks(chunks)
        estimated = estimate_tokens(chunks_text)
        if estimated <= max_tokens:
            return chunks_text

        logger.info(f"Context too large ({estimated} tokens > {max_tokens}), summarizing...")
        summary = await self.run(
            message=(
                f"Summarize these product chunks in under {max_tokens} tokens "
                f"(about {max_tokens * CHARS_PER_TOKEN} characters):\n\n{chunks_text}\n\n"
                "Provide a concise summary that preserves all factual information."
            ),
            max_tokens=max_tokens,
        )
        if not isinstance(summary, str) or not summary.strip():
            logger.warning(f"Condensation failed, truncating context instead: {summary}")
            return truncate_to_budget(chunks_text, max_tokens)

        return truncate_to_budget(summary.strip(), max_tokens)
