import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.messages import BaseMessage
from openai import AsyncOpenAI
from pydantic import ValidationError

from store_assistant.agents.base import BaseAgent
from store_assistant.agents.enricher import review_hints
from store_assistant.models import (
    AlternativeIfOOS, Attachment, Availability, Chunk, ConversationState, ProductMetadata, SalesScript,
    ShortlistItem, StockAndFulfilment, StructuredAnswer,
)
from store_assistant.utils.json_repair import parse_json_object, strip_code_fences
from store_assistant.utils.message_utils import format_transcript

logger = logging.getLogger(__name__)

MIN_RESPONSE_LENGTH = 10
MAX_KEY_POINTS = 5
CONTEXT_CHAR_LIMIT = 2000
NO_CONTEXT_TEXT = "No specific context found for this question."
NO_DATA_SUMMARY = "I couldn't find information about that in our product catalogue."


class SynthesisTier(str, Enum):
    """Answer-building strategies, from richest to most conservative."""
    LLM_JSON = "LLM_JSON"
    LLM_TEXT_HEURISTIC = "LLM_TEXT_HEURISTIC"
    CONTEXT_ONLY = "CONTEXT_ONLY"


TIER_ORDER = [SynthesisTier.LLM_JSON, SynthesisTier.LLM_TEXT_HEURISTIC, SynthesisTier.CONTEXT_ONLY]


def step_down(current: SynthesisTier, target: SynthesisTier, reason: str) -> SynthesisTier:
    """Move to a lower tier. Tiers never move back up within a turn."""
    if TIER_ORDER.index(target) < TIER_ORDER.index(current):
        raise ValueError(f"Cannot move synthesis tier up from {current.value} to {target.value}")
    logger.warning(f"Synthesis tier {current.value} -> {target.value}: {reason}")
    return target


# Tier 3: canned key points for well-known spec mentions in the retrieved text
KEYWORD_TRIGGERS = [
    (re.compile(r'\b120\s*hz\b', re.IGNORECASE), "120Hz refresh rate keeps fast motion smooth for sports and gaming"),
    (re.compile(r'hdmi\s*2\.1', re.IGNORECASE), "HDMI 2.1 ports support full 4K 120Hz from current consoles"),
    (re.compile(r'\boled\b', re.IGNORECASE), "OLED panel gives deep blacks and strong contrast for movies"),
    (re.compile(r'dolby\s+atmos', re.IGNORECASE), "Dolby Atmos support for more immersive sound"),
    (re.compile(r'dolby\s+vision', re.IGNORECASE), "Dolby Vision HDR for richer highlights and colour"),
]

FEATURE_PATTERNS = [
    (re.compile(r'(\d+(?:\.\d+)?["\']?\s*(?:inch|"|inches)?\s*(?:HD|Full HD|4K|8K|OLED|QLED|display|screen))', re.IGNORECASE), "Display: "),
    (re.compile(r'(\d+\s*GB?\s*(?:RAM|memory|storage|SSD|HDD))', re.IGNORECASE), "Memory/Storage: "),
    (re.compile(r'(\d+\s*mAh\s*battery)', re.IGNORECASE), "Battery: "),
    (re.compile(r'(\d+\s*MP\s*camera)', re.IGNORECASE), "Camera: "),
    (re.compile(r'(octa-core|quad-core|dual-core)', re.IGNORECASE), "Processor: "),
    (re.compile(r'(\d+[- ]year\s+(?:warranty|guarantee)|warranty|guarantee)', re.IGNORECASE), "Warranty: "),
]

BULLET_RE = re.compile(r'^\s*[•\-\*]\s*(.+)$', re.MULTILINE)
ATTACHMENT_CUE_RE = re.compile(r'also\s+pick\s+up|also\s+get|most\s+people', re.IGNORECASE)
SKU_IN_QUESTION_RE = re.compile(r'SKU\s*(\d+)', re.IGNORECASE)

JSON_SCHEMA_INSTRUCTION = """You MUST respond with a valid JSON object. Your response should be ONLY JSON, no other text.

Required JSON structure:
{{
  "summary": "1-2 friendly sentences that directly answer what was asked",
  "key_points": ["bullet strings focusing on the customer's use case"],
  "attachments": [{{"sku": "string or null", "name": "string", "why_sell": "string"}}],
  "stock_and_fulfilment": {{
    "this_store_qty": {this_store_qty},
    "nearby": {nearby},
    "fulfilment_summary": {fulfilment}
  }},
  "alternative_if_oos": {alternative},
  "sentiment_note": "generic safe sentiment / who this is good for",
  "compliance_flags": [],
  "product_metadata": {{"name": "string | null", "image_url": "string | null", "price_band": "string | null", "sku": "string | null", "hero_features": ["string"]}},
  "sales_script": {{"lines": ["string"]}},
  "coaching_tips": ["string"],
  "shortlist_items": [{{"sku": "string", "name": "string", "hero_feature": "string", "price": "number | null", "stock_indicator": "string | null"}}],
  "specs_fields": {{"[key: string]": "string"}},
  "warranty_summary": "string | null",
  "technical_notes": ["string"]
}}

If you can't fill a field, set it to null or an empty array. Do not invent specs."""


def _str_list(value: Any, limit: Optional[int] = None) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    items = [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
    return items[:limit] if limit else items


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, (str, int, float)) and not isinstance(value, bool) and str(value).strip():
        return str(value).strip()
    return None


def _models(model_cls, items: Any) -> list:
    """Validate a list of dicts into models, dropping items that do not fit."""
    if not isinstance(items, list):
        return []
    built = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            built.append(model_cls.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Dropping invalid {model_cls.__name__} from model output: {e.errors()[:1]}")
    return built


def _price_of(record: Dict[str, Any]) -> Optional[float]:
    for key in ("current_price", "list_price", "price"):
        try:
            if record.get(key) is not None:
                return float(record[key])
        except (TypeError, ValueError):
            continue
    return None


def stock_block(availability: Optional[Availability]) -> StockAndFulfilment:
    if availability is None:
        return StockAndFulfilment(fulfilment_summary="Select a store to check availability")
    return StockAndFulfilment(
        this_store_qty=availability.this_store_qty,
        nearby=list(availability.nearby),
        fulfilment_summary=availability.fulfilment,
    )


def citations_for(chunks: List[Chunk]) -> List[str]:
    cited: List[str] = []
    for chunk in chunks:
        if chunk.chunk_id and chunk.chunk_id not in cited:
            cited.append(chunk.chunk_id)
    return cited


class AnswerSynthesizerAgent(BaseAgent):
    """Builds the final structured answer, degrading through three tiers when the model misbehaves."""

    def __init__(self, openai_client: Optional[AsyncOpenAI] = None, **kwargs):
        kwargs.setdefault("max_tokens", 3000)
        super().__init__(openai_client, **kwargs)

    def _get_system_prompt(self) -> str:
        return """
        You are an in-store retail product expert helping a store team member serve a customer
        who is standing in front of them. Keep continuity with the conversation so far: if a
        follow-up does not name a new product, it is about the product already being discussed.

        Use ONLY the provided product context, stock availability, warranty information and
        attachment recommendations. You may add generic, broadly known review sentiment phrased
        as general trends, never attributed to a named reviewer.

        Always help the rep make the sale today: say whether it is in stock here, where else it
        can be picked up, or what the closest alternative is when it is out of stock. Suggest
        relevant attachments helpfully, not pushily.

        If you are not certain, say "Let me check that for you." Never invent technical specs.
        Never reveal cost price, margin, supplier rebates or internal promotions. Never make
        safety promises that are not in the warranty information, and never give unsafe
        installation or electrical advice.

        Keep answers short and skimmable so the rep can read them out or show the customer.
        Respond with the JSON structure requested in each message.
        """

    # --- Prompt ---

    def build_prompt(
        self,
        question: str,
        chunks: List[Chunk],
        context_summary: Optional[str],
        product_record: Optional[Dict[str, Any]],
        availability: Optional[Availability],
        alternative: Optional[AlternativeIfOOS],
        history: List[BaseMessage],
        conversation_state: Optional[ConversationState] = None,
        customer_intent: Optional[str] = None,
        review_summary: Optional[str] = None,
        compare_list: Optional[List[str]] = None,
        product_records: Optional[Dict[str, Dict[str, Any]]] = None,
        shortlist_items: Optional[List[ShortlistItem]] = None,
    ) -> str:
        compare_list = compare_list or []
        product_records = product_records or {}
        sections = []

        if history:
            sections.append(f"Conversation so far:\n{format_transcript(history)}")
        sections.append(f"Question: {question}")
        if customer_intent:
            sections.append(f"Customer Intent:\n{customer_intent}")

        if conversation_state is not None:
            active = []
            if conversation_state.active_sku:
                active.append(f"Active product: SKU {conversation_state.active_sku}")
            if conversation_state.budget_cap:
                active.append(f"Budget: under ${conversation_state.budget_cap:g}")
            if conversation_state.use_case:
                active.append(f"Use case: {conversation_state.use_case}")
            if active:
                sections.append("Active Context:\n" + ", ".join(active))

        if compare_list:
            sections.append(f"Comparing products: SKUs {', '.join(compare_list)}")

        unique_skus = list(dict.fromkeys(c.sku for c in chunks if c.sku))
        product_lines = []
        for sku in unique_skus[:10]:
            info = product_records.get(sku)
            if info:
                price = _price_of(info)
                line = f"SKU {sku}: {info.get('name', 'Unknown')}"
                line += f" (${price:g})" if price else ""
                line += f" - {info['category']}" if info.get("category") else ""
                product_lines.append(line)
        if product_lines:
            sections.append("Product information:\n" + "\n".join(product_lines))

        general_recommendation = len(unique_skus) > 1 and not compare_list
        if general_recommendation:
            sections.append(f"Multiple product options found: present these {len(unique_skus)} options "
                            "with their SKUs and names in your key_points.")

        if context_summary:
            context = context_summary
        elif chunks:
            context = "\n\n".join(
                f"[{c.section_title or 'Unknown'}]\n{c.section_body[:500] + '...' if len(c.section_body) > 500 else c.section_body}"
                for c in chunks
            )
        else:
            context = NO_CONTEXT_TEXT
        sections.append(f"Context:\n{context}")

        review_text = review_summary or review_hints(product_record=product_record, chunks=chunks)
        sections.append(f"Review Summary:\n{review_text}")

        business_rules = []
        if availability is not None:
            business_rules.append(f"Stock: This store has {availability.this_store_qty or 0} units.")
            if availability.nearby:
                business_rules.append("Nearby stores: " + "; ".join(
                    f"{s.store_name} ({s.qty} available, {s.distance_km}km)" for s in availability.nearby
                ))
        if alternative is not None and alternative.alt_sku:
            business_rules.append(
                f"Alternative product (out of stock): {alternative.alt_name} (SKU: {alternative.alt_sku}). "
                f"Why: {alternative.why_this_alt}. Key difference: {alternative.key_diff or 'None'}"
            )
        attachments = (product_record or {}).get("recommended_attachments") or []
        if attachments:
            business_rules.append("Recommended attachments:\n" + "\n".join(
                f"- {a.get('name')} (SKU: {a.get('sku')}): {a.get('why_sell', '')}" for a in attachments if isinstance(a, dict)
            ))
        if business_rules:
            sections.append("Additional information:\n" + "\n".join(business_rules))

        guidance = []
        if history:
            guidance.append("If the question is a follow-up, assume it relates to the product discussed earlier.")
        if general_recommendation:
            guidance.append("Present 3-5 options in key_points as \"[Product Name] (SKU [number]) - description\", "
                            "compare them briefly, and fill shortlist_items with the top options.")
        if shortlist_items:
            guidance.append("Pre-built shortlist items available: "
                            f"{json.dumps([{'sku': s.sku, 'name': s.name} for s in shortlist_items])}.")
        if product_lines:
            guidance.append("When mentioning a SKU, always include its product name.")
        if compare_list:
            guidance.append("Highlight key differences and similarities between the compared SKUs.")
        if guidance:
            sections.append("\n".join(guidance))

        sections.append(JSON_SCHEMA_INSTRUCTION.format(
            this_store_qty=json.dumps(availability.this_store_qty if availability else None),
            nearby=json.dumps([s.model_dump() for s in availability.nearby] if availability else []),
            fulfilment=json.dumps(availability.fulfilment if availability else "Check availability"),
            alternative=json.dumps((alternative or AlternativeIfOOS()).model_dump()),
        ))
        return "\n\n".join(sections)

    # --- Tiers ---

    def build_from_json(self, parsed: Dict[str, Any], availability: Optional[Availability],
                        alternative: Optional[AlternativeIfOOS]) -> StructuredAnswer:
        """Tier 1: tolerant mapping of model JSON onto the answer contract."""
        stock = stock_block(availability)
        if availability is None and isinstance(parsed.get("stock_and_fulfilment"), dict):
            model_stock = parsed["stock_and_fulfilment"]
            stock.fulfilment_summary = _optional_str(model_stock.get("fulfilment_summary")) or stock.fulfilment_summary

        alt = alternative
        if alt is None and isinstance(parsed.get("alternative_if_oos"), dict):
            try:
                alt = AlternativeIfOOS.model_validate(
                    {k: _optional_str(v) for k, v in parsed["alternative_if_oos"].items() if k in AlternativeIfOOS.model_fields}
                )
            except ValidationError:
                alt = None

        metadata = None
        if isinstance(parsed.get("product_metadata"), dict):
            raw_metadata = dict(parsed["product_metadata"])
            raw_metadata["hero_features"] = _str_list(raw_metadata.get("hero_features"))
            for key in ("name", "image_url", "price_band", "sku"):
                raw_metadata[key] = _optional_str(raw_metadata.get(key))
            metadata = ProductMetadata.model_validate(
                {k: v for k, v in raw_metadata.items() if k in ProductMetadata.model_fields}
            )

        script = parsed.get("sales_script")
        script_lines = _str_list(script.get("lines") if isinstance(script, dict) else script)

        specs = parsed.get("specs_fields")
        specs_fields = {str(k): str(v) for k, v in specs.items() if v is not None} if isinstance(specs, dict) else {}

        shortlist = []
        raw_shortlist = parsed.get("shortlist_items")
        for item in raw_shortlist if isinstance(raw_shortlist, list) else []:
            if isinstance(item, dict) and item.get("sku") is not None:
                item = dict(item, sku=str(item["sku"]))
                if not isinstance(item.get("price"), (int, float)) or isinstance(item.get("price"), bool):
                    item["price"] = None
                shortlist.extend(_models(ShortlistItem, [item]))

        raw_attachments = parsed.get("attachments")
        attachments = _models(Attachment, [
            dict(a, sku=_optional_str(a.get("sku")))
            for a in (raw_attachments if isinstance(raw_attachments, list) else []) if isinstance(a, dict)
        ])

        return StructuredAnswer(
            summary=str(parsed.get("summary")).strip(),
            key_points=_str_list(parsed.get("key_points")),
            attachments=attachments,
            stock_and_fulfilment=stock,
            alternative_if_oos=alt or AlternativeIfOOS(),
            sentiment_note=_optional_str(parsed.get("sentiment_note")),
            compliance_flags=_str_list(parsed.get("compliance_flags")),
            shortlist_items=shortlist,
            product_metadata=metadata,
            sales_script=SalesScript(lines=script_lines),
            coaching_tips=_str_list(parsed.get("coaching_tips")),
            specs_fields=specs_fields,
            warranty_summary=_optional_str(parsed.get("warranty_summary")),
            technical_notes=_str_list(parsed.get("technical_notes")),
        )

    def build_from_text(self, text: str, product_record: Optional[Dict[str, Any]],
                        availability: Optional[Availability], alternative: Optional[AlternativeIfOOS]) -> StructuredAnswer:
        """Tier 2: first line as the summary, bullet lines as key points."""
        cleaned = strip_code_fences(text)
        first_line = next((line.strip() for line in cleaned.splitlines() if line.strip()), "Let me check that for you.")
        summary = BULLET_RE.sub(r'\1', first_line)[:200]

        key_points = [m.strip() for m in BULLET_RE.findall(cleaned)]
        if not key_points and product_record and product_record.get("selling_points"):
            key_points = _str_list(product_record["selling_points"])

        attachments = []
        if ATTACHMENT_CUE_RE.search(cleaned) and product_record:
            attachments = self._record_attachments(product_record)

        return StructuredAnswer(
            summary=summary,
            key_points=key_points[:MAX_KEY_POINTS],
            attachments=attachments,
            stock_and_fulfilment=stock_block(availability),
            alternative_if_oos=alternative or AlternativeIfOOS(),
        )

    def build_from_context(self, question: str, chunks: List[Chunk], product_record: Optional[Dict[str, Any]],
                           availability: Optional[Availability], alternative: Optional[AlternativeIfOOS]) -> StructuredAnswer:
        """Tier 3: deterministic answer from retrieved text only. Never calls the model."""
        context_text = "\n\n".join(c.section_body for c in chunks)[:CONTEXT_CHAR_LIMIT]
        key_points: List[str] = []

        for pattern, point in KEYWORD_TRIGGERS:
            if pattern.search(context_text) and point not in key_points:
                key_points.append(point)

        for pattern, prefix in FEATURE_PATTERNS:
            match = pattern.search(context_text)
            if match and not any(match.group(1) in kp for kp in key_points):
                key_points.append(prefix + match.group(1).strip())

        seen_titles = []
        for chunk in chunks:
            title = chunk.section_title
            if not title or title in seen_titles or "Product Overview" in title:
                continue
            seen_titles.append(title)
            if len(seen_titles) > 3:
                break
            first_sentence = re.split(r'[.!?]', chunk.section_body)[0].strip()
            if 20 < len(first_sentence) < 150 and first_sentence not in key_points:
                key_points.append(first_sentence)

        if len(key_points) < 3:
            for sentence in re.split(r'[.!?]\s+', context_text):
                sentence = sentence.strip()
                if len(key_points) >= 3:
                    break
                if 30 < len(sentence) < 200 and not any(sentence[:20] in kp for kp in key_points):
                    key_points.append(sentence)

        if not key_points:
            if product_record:
                key_points = [
                    f"{product_record.get('name', 'This product')} is in our range.",
                    f"{availability.this_store_qty} available in this store." if availability and availability.this_store_qty
                    else "Check availability in store.",
                ]
            else:
                key_points = ["Check our catalogue for detailed specs."]

        return StructuredAnswer(
            summary=self._context_summary(question, product_record),
            key_points=key_points[:MAX_KEY_POINTS + 1],
            attachments=self._record_attachments(product_record),
            stock_and_fulfilment=stock_block(availability),
            alternative_if_oos=alternative or AlternativeIfOOS(),
        )

    @staticmethod
    def _context_summary(question: str, product_record: Optional[Dict[str, Any]]) -> str:
        lowered = question.lower()
        if product_record and product_record.get("name"):
            summary = f"The {product_record['name']}"
            price = _price_of(product_record)
            if price:
                summary += f" (${price:g})"
            if "gaming" in lowered:
                return summary + " is a solid option for gaming."
            if "work" in lowered or "wfh" in lowered:
                return summary + " is well-suited for work from home."
            return summary + " is a good choice."
        sku_match = SKU_IN_QUESTION_RE.search(question)
        if sku_match:
            return f"Here's what our catalogue says about SKU {sku_match.group(1)}."
        if "gaming" in lowered:
            return "Based on our product catalogue, I found some great gaming options for you."
        if "cheaper" in lowered or "under" in lowered:
            return "Based on our product catalogue, here are some more affordable options."
        return "Based on our product catalogue, I have some options that match what you're looking for."

    @staticmethod
    def _record_attachments(product_record: Optional[Dict[str, Any]]) -> List[Attachment]:
        attachments = (product_record or {}).get("recommended_attachments") or []
        return _models(Attachment, [
            {"sku": _optional_str(a.get("sku")), "name": a.get("name") or "", "why_sell": a.get("why_sell") or ""}
            for a in attachments if isinstance(a, dict)
        ])

    def no_data_answer(self, availability: Optional[Availability]) -> StructuredAnswer:
        return StructuredAnswer(
            summary=NO_DATA_SUMMARY,
            key_points=["Try scanning the barcode or giving the SKU so I can look it up."],
            stock_and_fulfilment=stock_block(availability),
            compliance_flags=["no_data"],
        )

    # --- Entry points ---

    def _finalize(self, answer: StructuredAnswer, chunks: List[Chunk], product_record: Optional[Dict[str, Any]],
                  active_sku: Optional[str], shortlist_items: Optional[List[ShortlistItem]],
                  review_summary: Optional[str]) -> StructuredAnswer:
        answer.citations = citations_for(chunks)
        if shortlist_items:
            answer.shortlist_items = list(shortlist_items)
        if answer.sentiment_note is None and (chunks or product_record):
            answer.sentiment_note = review_summary or review_hints(product_record=product_record, chunks=chunks)
        if answer.product_metadata is None and product_record:
            sku = str(product_record.get("sku") or active_sku or "") or None
            price = _price_of(product_record)
            answer.product_metadata = ProductMetadata(
                name=product_record.get("name"),
                image_url=product_record.get("image_url"),
                price_band=f"${price:g}" if price else None,
                sku=sku,
                hero_features=_str_list(product_record.get("key_features"), limit=3),
            )
        return answer

    async def synthesize_with_tier(
        self,
        question: str,
        chunks: Optional[List[Chunk]] = None,
        context_summary: Optional[str] = None,
        product_record: Optional[Dict[str, Any]] = None,
        availability: Optional[Availability] = None,
        alternative: Optional[AlternativeIfOOS] = None,
        history: Optional[List[BaseMessage]] = None,
        conversation_state: Optional[ConversationState] = None,
        customer_intent: Optional[str] = None,
        review_summary: Optional[str] = None,
        compare_list: Optional[List[str]] = None,
        product_records: Optional[Dict[str, Dict[str, Any]]] = None,
        shortlist_items: Optional[List[ShortlistItem]] = None,
        custom_user_prompt: Optional[str] = None,
    ) -> Tuple[StructuredAnswer, Optional[SynthesisTier]]:
        """Returns the answer and the tier that produced it (None for the no-data answer)."""
        chunks = chunks or []
        history = history or []
        active_sku = conversation_state.active_sku if conversation_state else None

        if not chunks and not product_record and not custom_user_prompt:
            logger.info("No chunks, no product record and no custom prompt: returning no-data answer")
            return self.no_data_answer(availability), None

        prompt = custom_user_prompt or self.build_prompt(
            question, chunks, context_summary, product_record, availability, alternative, history,
            conversation_state, customer_intent, review_summary, compare_list, product_records, shortlist_items,
        )
        if custom_user_prompt and history:
            prompt = f"Conversation so far:\n{format_transcript(history)}\n\n{prompt}"
        logger.info(f"Synthesizing answer: prompt {len(prompt)} chars, {len(chunks)} chunks, "
                    f"record={'yes' if product_record else 'no'}")

        tier = SynthesisTier.LLM_JSON
        raw = await self.run(message=prompt, json_mode=True)

        if not isinstance(raw, str) or len(raw.strip()) < MIN_RESPONSE_LENGTH:
            reason = raw.get("error") if isinstance(raw, dict) else "empty or near-empty model response"
            tier = step_down(tier, SynthesisTier.CONTEXT_ONLY, str(reason))
            answer = self.build_from_context(question, chunks, product_record, availability, alternative)
        else:
            parsed = parse_json_object(raw)
            answer = None
            if parsed is not None and _optional_str(parsed.get("summary")):
                try:
                    answer = self.build_from_json(parsed, availability, alternative)
                except (TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"Model JSON did not fit the answer contract: {e}")
            if answer is None:
                tier = step_down(tier, SynthesisTier.LLM_TEXT_HEURISTIC, "model output is not a usable JSON answer")
                answer = self.build_from_text(raw, product_record, availability, alternative)

        answer = self._finalize(answer, chunks, product_record, active_sku, shortlist_items, review_summary)
        logger.info(f"Answer produced via {tier.value}: {len(answer.key_points)} key points, "
                    f"{len(answer.citations)} citations")
        return answer, tier

    async def synthesize(self, question: str, chunks: Optional[List[Chunk]] = None, **kwargs) -> StructuredAnswer:
        answer, _ = await self.synthesize_with_tier(question, chunks, **kwargs)
        return answer
