"""First-pass routing of a turn into a coarse handling path.

Routing is an ordered rule table evaluated top to bottom; the first matching
rule wins. Sub-flags (compare / specs / alternatives / details) come from a
second table, and only the flags are ever refined by the language model.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple

from openai import AsyncOpenAI

from store_assistant.agents.base import BaseAgent
from store_assistant.agents.entity_resolver import default_explicit_sku_patterns
from store_assistant.models import ConversationState, Intent, IntentType
from store_assistant.utils.json_repair import parse_json_object

logger = logging.getLogger(__name__)

TECH_TERMS = r'(?:oled|qled|refresh\s+rate|hdr|4k|8k|bluetooth|wifi|usb|hdmi|processor|cpu|gpu|ram|ssd|hdd)'

SCAN_RE = re.compile(r'\bbarcode\b|\bscan(?:ned)?\b', re.IGNORECASE)
PRODUCT_MENTION_RE = re.compile(
    r'\b(?:iphone|galaxy|samsung|apple|laptops?|phones?|tvs?|tablets?|watch(?:es)?|headphones?|speakers?|monitors?|cameras?)\b',
    re.IGNORECASE,
)
COMPARE_RE = re.compile(r'\b(?:compare|vs\.?|versus|difference|better|alternatives?|instead)\b', re.IGNORECASE)
CATEGORY_QUERY_RE = re.compile(
    r'\b(?:show|find|recommend|suggest|need|looking\s+for|want)\s+(?:me\s+)?(?:a|an|some|any)\s+[a-z]+',
    re.IGNORECASE,
)
BUDGET_QUERY_RE = re.compile(r'\b(?:under|below|less\s+than|around|about|budget|cheap|affordable)\s*\$?\d+', re.IGNORECASE)
DEEPDIVE_CUE_RE = re.compile(
    r'tell\s+me\s+(?:more|about|details|info)|\b(?:this|that|it|the)\s+(?:one|model|product|item)\b',
    re.IGNORECASE,
)
FOLLOW_UP_START_RE = re.compile(
    r'^(?:what|how|does|is|can|will|tell\s+me\s+about|give\s+me|show\s+me|details|more|this|that|it|the\s+same|same)\b',
    re.IGNORECASE,
)

COACHING_PATTERNS = [
    re.compile(r'what\s+(?:should|do)\s+i\s+(?:say|tell|explain|respond|answer)', re.IGNORECASE),
    re.compile(r'how\s+(?:do|can)\s+i\s+(?:explain|tell|say|handle|address|deal)', re.IGNORECASE),
    re.compile(r'customer\s+(?:is|has|says|asks|worried|concerned|wants|needs)', re.IGNORECASE),
    re.compile(r'how\s+to\s+(?:explain|position|sell|pitch|talk|handle)', re.IGNORECASE),
    re.compile(r'what\s+if\s+(?:the\s+)?(?:customer|they|client)', re.IGNORECASE),
    re.compile(r'\b(?:objection|objecting|complain(?:t|ing|s)?|hesitant|skeptical)\b', re.IGNORECASE),
    re.compile(r'\b(?:script|talking\s+points|what\s+to\s+say)\b', re.IGNORECASE),
]

GENERAL_INFO_PATTERNS = [
    re.compile(rf'what\s+(?:is|are|does|do)\s+(?:an?\s+)?{TECH_TERMS}', re.IGNORECASE),
    re.compile(rf'explain\s+{TECH_TERMS}', re.IGNORECASE),
    re.compile(rf'difference\s+between\s+{TECH_TERMS}', re.IGNORECASE),
    re.compile(rf'what\s+(?:does|do)\s+{TECH_TERMS}\s+mean', re.IGNORECASE),
]


@dataclass(frozen=True)
class TurnSignals:
    """Pattern signals computed once per turn and shared by the routing rules."""
    has_explicit_sku: bool
    has_product_mention: bool
    has_compare_phrase: bool
    has_category_query: bool
    has_budget_query: bool
    has_deepdive_cue: bool
    has_follow_up_start: bool
    has_active_sku: bool
    is_coaching: bool
    is_definitional: bool

    @classmethod
    def from_text(cls, text: str, state: ConversationState, explicit_sku: Optional[str],
                  sku_patterns: List[Pattern]) -> "TurnSignals":
        return cls(
            has_explicit_sku=(bool(explicit_sku) or bool(SCAN_RE.search(text))
                              or any(p.search(text) for p in sku_patterns)),
            has_product_mention=bool(PRODUCT_MENTION_RE.search(text)),
            has_compare_phrase=bool(COMPARE_RE.search(text)),
            has_category_query=bool(CATEGORY_QUERY_RE.search(text)),
            has_budget_query=bool(BUDGET_QUERY_RE.search(text)),
            has_deepdive_cue=bool(DEEPDIVE_CUE_RE.search(text)),
            has_follow_up_start=bool(FOLLOW_UP_START_RE.search(text)),
            has_active_sku=bool(state.active_sku),
            is_coaching=any(p.search(text) for p in COACHING_PATTERNS),
            is_definitional=any(p.search(text) for p in GENERAL_INFO_PATTERNS),
        )


@dataclass(frozen=True)
class RouteRule:
    name: str
    predicate: Callable[[TurnSignals], bool]
    intent: IntentType
    confidence: float
    needs_catalogue: bool
    needs_reviews: bool


ROUTE_RULES: List[RouteRule] = [
    RouteRule("explicit_sku", lambda s: s.has_explicit_sku,
              IntentType.PRODUCT_DEEPDIVE, 0.95, True, True),
    RouteRule("coaching", lambda s: s.is_coaching,
              IntentType.SALES_COACHING, 0.9, False, False),
    RouteRule("definitional", lambda s: s.is_definitional and not s.has_product_mention,
              IntentType.GENERAL_INFO, 0.85, False, False),
    RouteRule("comparison", lambda s: s.has_compare_phrase and (s.has_product_mention or s.has_active_sku),
              IntentType.COMPARISON, 0.8, True, True),
    RouteRule("deepdive", lambda s: s.has_deepdive_cue and s.has_active_sku,
              IntentType.PRODUCT_DEEPDIVE, 0.85, True, True),
    RouteRule("discovery", lambda s: s.has_category_query or s.has_budget_query or s.has_product_mention,
              IntentType.PRODUCT_DISCOVERY, 0.8, True, False),
    RouteRule("follow_up", lambda s: s.has_follow_up_start and s.has_active_sku,
              IntentType.PRODUCT_DEEPDIVE, 0.7, True, True),
]

DEFAULT_RULE = RouteRule("default", lambda s: True, IntentType.GENERAL_INFO, 0.5, False, False)


# (flag, pattern, pattern confidence); later rows override earlier ones, as in a cascade
FLAG_RULES: List[Tuple[str, re.Pattern, str]] = [
    ("need_compare", re.compile(r'compar|\bvs\.?\b|versus|difference|better\s+than|against', re.IGNORECASE), "high"),
    ("ask_alternatives", re.compile(r'alternative|instead|other\s+option|different|another|\belse\b|other\s+choice', re.IGNORECASE), "high"),
    ("ask_specs", re.compile(r'\bspecs?\b|specification|feature|technical', re.IGNORECASE), "high"),
    ("ask_details", re.compile(r'detail|tell\s+me\s+more|more\s+info|information|\babout\b|explain|describe', re.IGNORECASE), "medium"),
]


class IntentRouter:
    """Deterministic, synchronous turn classifier. Never calls out."""

    def __init__(self, rules: Optional[List[RouteRule]] = None, sku_patterns: Optional[List[Pattern]] = None):
        self.rules = rules if rules is not None else ROUTE_RULES
        self.sku_patterns = sku_patterns if sku_patterns is not None else default_explicit_sku_patterns()

    def classify(self, text: str, conversation_state: Optional[ConversationState] = None,
                 explicit_sku: Optional[str] = None) -> Intent:
        state = conversation_state or ConversationState()
        text = (text or "").strip()
        signals = TurnSignals.from_text(text, state, explicit_sku, self.sku_patterns)

        rule = next((r for r in self.rules if r.predicate(signals)), DEFAULT_RULE)
        flags, _ = self.detect_flags(text, state)

        intent = Intent(
            intent=rule.intent,
            confidence=rule.confidence,
            needs_catalogue=rule.needs_catalogue,
            needs_reviews=rule.needs_reviews,
            **flags,
        )
        if intent.intent == IntentType.COMPARISON:
            intent.need_compare = True

        logger.info(f"Classified '{text[:50]}' -> {intent.intent.value} via rule '{rule.name}' "
                    f"(confidence: {intent.confidence}, needs_catalogue: {intent.needs_catalogue})")
        return intent

    def detect_flags(self, text: str, state: ConversationState) -> Tuple[Dict[str, bool], str]:
        """Pattern-based sub-flags plus a high/medium/low confidence label."""
        flags = {"need_compare": False, "ask_specs": False, "ask_alternatives": False, "ask_details": False}
        confidence = "medium"
        matched_any = False

        for flag, pattern, rule_confidence in FLAG_RULES:
            if pattern.search(text):
                flags[flag] = True
                confidence = rule_confidence
                matched_any = True

        if not matched_any and state.active_sku and FOLLOW_UP_START_RE.search(text):
            flags["ask_details"] = True
            confidence = "high"
        elif not matched_any and len(text) < 20 and not state.active_sku:
            confidence = "low"

        return flags, confidence


class IntentFlagAgent(BaseAgent):
    """Language-model tier for sub-flags when the pattern table is unsure."""

    def __init__(self, openai_client: Optional[AsyncOpenAI] = None, router: Optional[IntentRouter] = None, **kwargs):
        super().__init__(openai_client, **kwargs)
        self.router = router or IntentRouter()

    def _get_system_prompt(self) -> str:
        return """
        You are an intent classifier for an in-store retail assistant used by sales staff.
        Decide which of these the staff member is asking for:
        - need_compare: comparing two or more products
        - ask_specs: specifications or features
        - ask_alternatives: other or alternative products
        - ask_details: more information about a product already being discussed

        Return ONLY a JSON object with exactly these boolean keys:
        {"need_compare": false, "ask_specs": false, "ask_alternatives": false, "ask_details": false}
        """

    async def refine(self, intent: Intent, text: str, conversation_state: ConversationState) -> Intent:
        """Return `intent` with flags refined by the model when the pattern table is not confident."""
        flags, confidence = self.router.detect_flags(text, conversation_state)
        if confidence == "high" or not self.available:
            return intent

        context = (f"Context: staff are currently discussing SKU {conversation_state.active_sku}"
                   if conversation_state.active_sku else "Context: no active product")
        raw = await self.run(
            message=f"{context}\n\nStaff question: \"{text}\"\n\nReturn the JSON only.",
            json_mode=True,
        )
        if not isinstance(raw, str):
            logger.warning(f"Flag refinement skipped: {raw.get('error') if isinstance(raw, dict) else raw}")
            return intent

        parsed = parse_json_object(raw)
        if parsed is None:
            logger.warning("Flag refinement returned unparseable output, keeping pattern flags.")
            return intent

        updates: Dict[str, Any] = {}
        for flag in ("need_compare", "ask_specs", "ask_alternatives", "ask_details"):
            if isinstance(parsed.get(flag), bool):
                updates[flag] = parsed[flag]
        if intent.intent == IntentType.COMPARISON:
            updates["need_compare"] = True
        logger.debug(f"LLM refined flags: {updates}")
        return intent.model_copy(update=updates)
