import logging
import re
from typing import Dict, Any, List, Optional
from openai import AsyncOpenAI

from store_assistant.agents.base import BaseAgent
from store_assistant.models import (
    MAX_CANDIDATE_SKUS, ConversationState, Intent, QueryFilters, ResolvedEntities, RewrittenQuery,
)
from store_assistant.utils.json_repair import parse_json_object

logger = logging.getLogger(__name__)

MIN_RESOLVED_QUERY_LENGTH = 10

CONSTRAINT_PATTERNS = [
    re.compile(r'hdmi\s*2\.1', re.IGNORECASE),
    re.compile(r'\b\d+\s*hz\b', re.IGNORECASE),
    re.compile(r'dolby\s+(?:atmos|vision)', re.IGNORECASE),
    re.compile(r'\b(?:mini\s*led|qled|oled|led)\b', re.IGNORECASE),
    re.compile(r'\b(?:4k|8k|uhd)\b', re.IGNORECASE),
    re.compile(r'\bhdr\b', re.IGNORECASE),
    re.compile(r'refresh\s+rate', re.IGNORECASE),
    re.compile(r'\bgaming\b', re.IGNORECASE),
    re.compile(r'\bstreaming\b', re.IGNORECASE),
    re.compile(r'wireless\s+charging', re.IGNORECASE),
    re.compile(r'usb[\s-]*c\b', re.IGNORECASE),
]


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _ordered_unique(skus: List[Optional[str]]) -> List[str]:
    seen = []
    for sku in skus:
        if sku and str(sku) not in seen:
            seen.append(str(sku))
    return seen


class QueryRewriterAgent(BaseAgent):
    """
    Turns a raw staff question plus conversation context into a fully specified
    retrieval query, filter set and comparison list.
    """

    def __init__(self, openai_client: Optional[AsyncOpenAI] = None, max_compare_skus: int = MAX_CANDIDATE_SKUS, **kwargs):
        kwargs.setdefault("max_tokens", 600)
        kwargs.setdefault("temperature", 0.2)
        super().__init__(openai_client, **kwargs)
        self.max_compare_skus = max_compare_skus

    def _get_system_prompt(self) -> str:
        return """
        You are a query rewriter for an in-store retail assistant. Given the staff question and the
        conversation state, you MUST return ONLY valid JSON with no markdown, no code blocks, no explanations.

        Required JSON format:
        {
          "resolved_query": "fully specified query including category/brand/budget/use_case inferred from the thread",
          "filters": {
            "category": "string|null",
            "brand": "string|null",
            "price_max": "number|null",
            "size_inches": "number|null"
          },
          "compare_list": ["sku"],
          "constraints": ["feature keyword"]
        }

        Rules:
        - If an active SKU exists and the staff member did not name a new product, assume the question is about the active SKU.
        - Derive filters like category, brand and price_max from the conversation state.
        - resolved_query must be fully specified: include category, brand, budget, size and use case from the thread.
        - If need_compare is true, include both the active SKU and the candidate SKUs in compare_list.
        - compare_list is empty when the question is not a comparison.
        - Return ONLY the JSON object.
        """

    def _build_context_summary(self, state: ConversationState) -> str:
        parts = []
        if state.active_sku:
            parts.append(f"Active SKU: {state.active_sku}")
        if state.active_category:
            parts.append(f"Category: {state.active_category}")
        if state.active_brand:
            parts.append(f"Brand: {state.active_brand}")
        if state.budget_cap:
            parts.append(f"Budget cap: ${state.budget_cap:g}")
        if state.use_case:
            parts.append(f"Use case: {state.use_case}")
        if state.constraints.size_inches:
            parts.append(f"Size: {state.constraints.size_inches:g} inches")
        if state.recent_skus:
            parts.append(f"Recent SKUs: {', '.join(state.recent_skus)}")
        return "\n".join(parts) if parts else "No active context"

    def _build_user_prompt(self, text: str, state: ConversationState, entities: ResolvedEntities, intent: Intent) -> str:
        return f"""Staff question: "{text}"

Conversation state:
{self._build_context_summary(state)}

Resolved entities:
- active_sku: {entities.active_sku or 'null'}
- category: {entities.category or 'null'}
- brand: {entities.brand or 'null'}
- budget: {entities.budget if entities.budget is not None else 'null'}
- use_case: {entities.use_case or 'null'}
- candidate_skus: {entities.candidate_skus}

Intent:
- intent: {intent.intent.value}
- need_compare: {intent.need_compare}
- ask_specs: {intent.ask_specs}
- ask_alternatives: {intent.ask_alternatives}
- ask_details: {intent.ask_details}

Rewrite the query and return JSON only."""

    @staticmethod
    def extract_constraints(text: str) -> List[str]:
        constraints = []
        for pattern in CONSTRAINT_PATTERNS:
            match = pattern.search(text or "")
            if match and match.group(0).lower() not in constraints:
                constraints.append(match.group(0).lower())
        return constraints

    @staticmethod
    def enhance_query(text: str, entities: ResolvedEntities) -> str:
        parts = [text]
        if entities.category and entities.category.lower() not in text.lower():
            parts.append(entities.category)
        if entities.use_case:
            parts.append(entities.use_case)
        if entities.budget:
            parts.append(f"under ${entities.budget:g}")
        return " ".join(parts)

    def build_compare_list(self, proposed: List[Any], state: ConversationState,
                           entities: ResolvedEntities, intent: Intent) -> List[str]:
        """Active SKU first when comparing, then the newly resolved SKU, model proposals and candidates.

        Empty when the turn is not a comparison. Deduplicated and bounded.
        """
        if not intent.need_compare:
            if proposed:
                logger.debug(f"Ignoring proposed compare list {proposed} on a non-comparison turn")
            return []

        proposed_skus = [str(s) for s in proposed if isinstance(s, (str, int))]
        ordered = _ordered_unique(
            [state.active_sku, entities.active_sku] + proposed_skus + list(entities.candidate_skus)
        )
        return ordered[:self.max_compare_skus]

    def _filters_from(self, model_filters: Dict[str, Any], state: ConversationState,
                      entities: ResolvedEntities) -> QueryFilters:
        """Model value, then resolved entities, then conversation state."""
        return QueryFilters(
            category=model_filters.get("category") or entities.category or state.active_category,
            brand=model_filters.get("brand") or entities.brand or state.active_brand,
            price_max=_to_float(model_filters.get("price_max")) or entities.budget or state.budget_cap,
            size_inches=_to_float(model_filters.get("size_inches")) or state.constraints.size_inches,
        )

    def fallback_rewrite(self, text: str, state: ConversationState, entities: ResolvedEntities,
                         intent: Intent) -> RewrittenQuery:
        """Deterministic rewrite used when the model is unavailable or its output is unusable."""
        if entities.active_sku and entities.active_sku != state.active_sku:
            extra = [entities.category, entities.brand]
        else:
            extra = [state.active_category or entities.category, state.active_brand or entities.brand]
        if entities.budget and not (entities.active_sku or state.active_sku):
            extra.append(f"under ${entities.budget:g}")
        resolved_query = " ".join([text] + [e for e in extra if e and e.lower() not in text.lower()]).strip()

        return RewrittenQuery(
            resolved_query=resolved_query,
            filters=self._filters_from({}, state, entities),
            compare_list=self.build_compare_list([], state, entities, intent),
            constraints=self.extract_constraints(text),
        )

    def _from_model_output(self, parsed: Dict[str, Any], text: str, state: ConversationState,
                           entities: ResolvedEntities, intent: Intent) -> RewrittenQuery:
        model_filters = parsed.get("filters") if isinstance(parsed.get("filters"), dict) else {}
        proposed = parsed.get("compare_list") if isinstance(parsed.get("compare_list"), list) else []

        resolved_query = parsed.get("resolved_query")
        if not isinstance(resolved_query, str) or not resolved_query.strip():
            resolved_query = text
        elif len(resolved_query.strip()) < MIN_RESOLVED_QUERY_LENGTH:
            logger.debug(f"Model rewrite '{resolved_query}' too short, enhancing deterministically")
            resolved_query = self.enhance_query(text, entities)

        constraints = parsed.get("constraints")
        if isinstance(constraints, list):
            constraints = [str(c) for c in constraints if isinstance(c, (str, int, float))]
        else:
            constraints = self.extract_constraints(text)

        return RewrittenQuery(
            resolved_query=resolved_query.strip(),
            filters=self._filters_from(model_filters, state, entities),
            compare_list=self.build_compare_list(proposed, state, entities, intent),
            constraints=constraints,
        )

    async def rewrite(self, text: str, state: ConversationState, entities: ResolvedEntities,
                      intent: Intent) -> RewrittenQuery:
        if not self.available:
            logger.info("Query rewriter has no model, using deterministic rewrite")
            return self.fallback_rewrite(text, state, entities, intent)

        try:
            raw_llm_output = await self.run(
                message=self._build_user_prompt(text, state, entities, intent),
                json_mode=True,
            )
            if not isinstance(raw_llm_output, str):
                logger.warning(f"Query rewrite call failed, using fallback: {raw_llm_output}")
                return self.fallback_rewrite(text, state, entities, intent)

            parsed = parse_json_object(raw_llm_output)
            if parsed is None:
                logger.warning(f"Query rewrite output not parseable, using fallback. Raw: {raw_llm_output[:300]}")
                return self.fallback_rewrite(text, state, entities, intent)

            rewritten = self._from_model_output(parsed, text, state, entities, intent)
            logger.info(f"Rewritten query: '{rewritten.resolved_query}' filters={rewritten.filters.as_dict()} "
                        f"compare={rewritten.compare_list}")
            return rewritten

        except Exception as e:
            logger.exception(f"Error during query rewriting for '{text}': {str(e)}")
            return self.fallback_rewrite(text, state, entities, intent)
