"""Short paths for turns that do not need the full retrieval pipeline."""

import logging
from typing import List, Optional

from langchain_core.messages import BaseMessage

from store_assistant.agents.answer_synthesizer import AnswerSynthesizerAgent
from store_assistant.agents.retriever import RetrievalAgent
from store_assistant.models import Chunk, ConversationState, QueryFilters, StructuredAnswer

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_LINES = ["Let me help you with that."]
DEFAULT_COACHING_TIPS = ["Ask the customer about their specific needs to tailor your response."]


def _context_block(chunks: List[Chunk]) -> str:
    if not chunks:
        return "No specific product context."
    return "\n\n".join(f"[{c.section_title or 'Unknown'}]\n{c.section_body}" for c in chunks)


class SalesCoachingFlow:
    """Coaching answers: what to say, how to handle an objection."""

    def __init__(self, retriever: RetrievalAgent, synthesizer: AnswerSynthesizerAgent, chunk_limit: int = 3):
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.chunk_limit = chunk_limit

    def build_prompt(self, text: str, state: ConversationState, chunks: List[Chunk]) -> str:
        product_line = f"Product being discussed: SKU {state.active_sku}\n" if state.active_sku else ""
        return f"""A store team member needs coaching on how to respond to a customer.

Staff question: "{text}"
{product_line}
Relevant product information:
{_context_block(chunks)}

Give practical coaching:
1. A short answer the staff member can say or adapt
2. Talking points that build trust
3. Tips for handling the situation

Respond with a JSON object containing "summary", "key_points", "sales_script" ({{"lines": [...]}})
and "coaching_tips" ([...]). Keep it conversational and customer-focused."""

    async def run(self, text: str, state: ConversationState,
                  history: Optional[List[BaseMessage]] = None) -> StructuredAnswer:
        filters = QueryFilters(category=state.active_category) if state.active_category else None
        try:
            chunks = await self.retriever.retrieve(
                sku=state.active_sku, query=text, limit=self.chunk_limit, filters=filters
            )
        except Exception as e:
            logger.exception(f"Coaching retrieval failed, continuing without context: {e}")
            chunks = []

        answer = await self.synthesizer.synthesize(
            text,
            chunks,
            history=history,
            conversation_state=state,
            custom_user_prompt=self.build_prompt(text, state, chunks),
        )
        if not answer.sales_script.lines:
            answer.sales_script.lines = list(DEFAULT_SCRIPT_LINES)
        if not answer.coaching_tips:
            answer.coaching_tips = list(DEFAULT_COACHING_TIPS)
        logger.info(f"Coaching answer: {len(answer.sales_script.lines)} script lines, "
                    f"{len(answer.coaching_tips)} tips")
        return answer


class GeneralInfoFlow:
    """Explanations of technical terms and general product questions."""

    def __init__(self, retriever: RetrievalAgent, synthesizer: AnswerSynthesizerAgent, chunk_limit: int = 2):
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.chunk_limit = chunk_limit

    def build_prompt(self, text: str, chunks: List[Chunk]) -> str:
        return f"""A store team member asked a general question.

Question: "{text}"

Reference information:
{_context_block(chunks)}

Explain clearly and simply so it can be passed on to a customer. Use an example where it helps.
Respond with a JSON object containing "summary" and "key_points"."""

    async def run(self, text: str, state: ConversationState,
                  history: Optional[List[BaseMessage]] = None) -> StructuredAnswer:
        try:
            chunks = await self.retriever.retrieve(query=text, limit=self.chunk_limit)
        except Exception as e:
            logger.exception(f"General info retrieval failed, continuing without context: {e}")
            chunks = []

        return await self.synthesizer.synthesize(
            text,
            chunks,
            history=history,
            conversation_state=state,
            custom_user_prompt=self.build_prompt(text, chunks),
        )
