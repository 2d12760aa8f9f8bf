"""Rule-based conversation state transitions.

`apply` is a pure function of (state, entities, intent, text): it never
stamps times or reads the store, so applying it twice with the same inputs
gives the same state as applying it once.
"""

import logging
import re
from typing import List, Optional

from store_assistant.data.conversation_store import ConversationStateStore
from store_assistant.models import ConversationState, Intent, IntentType, ResolvedEntities

logger = logging.getLogger(__name__)

SIZE_RE = re.compile(r'(\d+(?:\.\d+)?)\s*(?:inch(?:es)?|")', re.IGNORECASE)
MUST_HAVE_SPLIT_RE = re.compile(r'must\s+have|\bneeds?\b|required|essential|\brequires?\b', re.IGNORECASE)
NICE_TO_HAVE_SPLIT_RE = re.compile(r'nice\s+to\s+have|\bprefer(?:s|red)?\b|would\s+like|\bwish\b|\bwants?\b', re.IGNORECASE)

FEATURE_PATTERNS = [
    re.compile(r'hdmi\s*2\.1', re.IGNORECASE),
    re.compile(r'\b\d+\s*hz\b', re.IGNORECASE),
    re.compile(r'dolby\s+(?:atmos|vision)', re.IGNORECASE),
    re.compile(r'\b(?:mini\s*led|qled|oled|led)\b', re.IGNORECASE),
    re.compile(r'\b(?:4k|8k|uhd)\b', re.IGNORECASE),
    re.compile(r'\bhdr(?:\s*10\+?)?\b', re.IGNORECASE),
    re.compile(r'refresh\s+rate', re.IGNORECASE),
    re.compile(r'wi-?fi\s*6[ei]?', re.IGNORECASE),
    re.compile(r'bluetooth', re.IGNORECASE),
    re.compile(r'usb[\s-]*(?:c|type[\s-]*c)\b', re.IGNORECASE),
    re.compile(r'thunderbolt', re.IGNORECASE),
    re.compile(r'\bnfc\b', re.IGNORECASE),
    re.compile(r'wireless\s+charging', re.IGNORECASE),
]


def _union(existing: List[str], new: List[str]) -> List[str]:
    merged = list(existing)
    for item in new:
        if item and item not in merged:
            merged.append(item)
    return merged


def _format_budget(budget: float) -> str:
    return str(int(budget)) if float(budget).is_integer() else f"{budget:.2f}"


def extract_features(text: str) -> List[str]:
    """Normalised feature keywords mentioned in `text`, in table order."""
    features = []
    for pattern in FEATURE_PATTERNS:
        match = pattern.search(text)
        if match:
            features.append(re.sub(r'\s+', ' ', match.group(0).lower()))
    return _union([], features)


def _features_after(split_re: re.Pattern, text: str) -> List[str]:
    parts = split_re.split(text, maxsplit=1)
    if len(parts) < 2:
        return []
    return extract_features(parts[1])


class ContextManager:
    """Applies per-turn update rules to conversation state."""

    def __init__(self, store: Optional[ConversationStateStore] = None):
        self.store = store

    def apply(self, state: ConversationState, entities: ResolvedEntities, intent: Intent,
              raw_text: str = "") -> ConversationState:
        new_state = state.model_copy(deep=True)
        text = raw_text or ""
        comparing = intent.need_compare or intent.intent == IntentType.COMPARISON

        # Product switch, unless a comparison is anchored on the current product
        if entities.active_sku and entities.active_sku != new_state.active_sku:
            if comparing and new_state.active_sku:
                logger.debug(f"Comparison turn keeps active SKU {new_state.active_sku}")
                new_state.recent_skus = _union(new_state.recent_skus, [entities.active_sku])
            else:
                if new_state.active_sku:
                    new_state.recent_skus = _union(new_state.recent_skus, [new_state.active_sku])
                new_state.active_sku = entities.active_sku

        if comparing and new_state.active_sku and entities.candidate_skus:
            new_state.recent_skus = _union(new_state.recent_skus, entities.candidate_skus)

        if new_state.active_sku:
            new_state.recent_skus = [sku for sku in new_state.recent_skus if sku != new_state.active_sku]

        # First write wins
        if entities.category and not new_state.active_category:
            new_state.active_category = entities.category
        if entities.brand and not new_state.active_brand:
            new_state.active_brand = entities.brand

        # Latest utterance wins
        if entities.budget is not None:
            new_state.budget_cap = entities.budget
            new_state.customer_intent.budget_range = _format_budget(entities.budget)
        if entities.use_case:
            new_state.use_case = entities.use_case
            new_state.customer_intent.use_cases = _union(new_state.customer_intent.use_cases, [entities.use_case])

        self._merge_constraints(new_state, text)
        return new_state

    def _merge_constraints(self, state: ConversationState, text: str) -> None:
        if not text:
            return
        size_match = SIZE_RE.search(text)
        if size_match:
            state.constraints.size_inches = float(size_match.group(1))

        must_have = _features_after(MUST_HAVE_SPLIT_RE, text)
        nice_to_have = _features_after(NICE_TO_HAVE_SPLIT_RE, text)
        state.constraints.must_have = _union(state.constraints.must_have, must_have)
        state.constraints.nice_to_have = _union(state.constraints.nice_to_have, nice_to_have)
        state.customer_intent.key_features = _union(
            state.customer_intent.key_features, extract_features(text)
        )

    async def update(self, conversation_id: str, entities: ResolvedEntities, intent: Intent,
                     raw_text: str = "") -> ConversationState:
        """Read, transition and write back the state for `conversation_id`."""
        if self.store is None:
            raise RuntimeError("ContextManager.update needs a conversation store")
        current = await self.store.get(conversation_id)
        updated = self.apply(current, entities, intent, raw_text)
        updated.conversation_id = conversation_id
        await self.store.save(conversation_id, updated)
        logger.info(f"Conversation {conversation_id} state: active_sku={updated.active_sku}, "
                    f"recent={updated.recent_skus}, category={updated.active_category}")
        return updated
