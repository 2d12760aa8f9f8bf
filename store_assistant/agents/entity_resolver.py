"""Entity extraction for a turn: SKU, candidates, category, brand, budget, use case.

Phrase coverage lives in `ResolverVocabulary`; pass a different instance to
extend or replace it without touching the resolution logic.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple

from store_assistant.data.product_store import ProductRecordStore, ProductSearchService
from store_assistant.models import MAX_CANDIDATE_SKUS, ConversationState, ResolvedEntities

logger = logging.getLogger(__name__)

CATEGORY_NOUNS = r'(?:laptops?|phones?|tvs?|tablets?|watch(?:es)?|cameras?|headphones?)'
BUDGET_WORDS = r'(?:below|under|less\s+than|around|about|max|budget)'


def _rx(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


def _default_budget_patterns() -> List[Pattern]:
    return [
        _rx(r'(?:under|below|less\s+than|max(?:imum)?|up\s+to|around|about)\s*\$?(\d+(?:\.\d+)?k?)\b'),
        _rx(r'budget\s*(?:of|is)?\s*\$?(\d+(?:\.\d+)?k?)\b'),
        _rx(r'\$(\d+(?:\.\d+)?k?)\b'),
    ]


def _default_use_cases() -> List[Tuple[Pattern, str]]:
    return [
        (_rx(r'\bgaming\b'), 'gaming'),
        (_rx(r'work\s+from\s+home|\bwfh\b'), 'work from home'),
        (_rx(r'bright\s+room'), 'bright room'),
        (_rx(r'dark\s+room'), 'dark room'),
        (_rx(r'\boffice\b'), 'office'),
        (_rx(r'\bstreaming\b'), 'streaming'),
        (_rx(r'\bmovies?\b|movie\s+watching'), 'movies'),
        (_rx(r'\bsports?\b'), 'sports'),
        (_rx(r'video\s+calls?|videoconferencing'), 'video calls'),
    ]


def _default_categories() -> List[Tuple[Pattern, str]]:
    return [
        (_rx(r'\b(?:tvs?|televisions?|smart\s+tv)\b'), 'TV'),
        (_rx(r'\b(?:laptops?|notebooks?|computers?)\b'), 'Laptop'),
        (_rx(r'\b(?:phones?|smartphones?|mobiles?|iphones?|android)\b'), 'Phone'),
        (_rx(r'\b(?:tablets?|ipads?)\b'), 'Tablet'),
        (_rx(r'\b(?:headphones?|earbuds?|earphones?|audio)\b'), 'Audio'),
        (_rx(r'\b(?:watch(?:es)?|smartwatch(?:es)?)\b'), 'Watch'),
        (_rx(r'\bcameras?\b'), 'Camera'),
    ]


def _default_brands() -> List[Tuple[Pattern, str]]:
    return [
        (_rx(r'\b(?:apple|iphone|ipad|macbook)\b'), 'Apple'),
        (_rx(r'\b(?:samsung|galaxy)\b'), 'Samsung'),
        (_rx(r'\blg\b'), 'LG'),
        (_rx(r'\bsony\b'), 'Sony'),
        (_rx(r'\bpanasonic\b'), 'Panasonic'),
        (_rx(r'\b(?:dell|alienware)\b'), 'Dell'),
        (_rx(r'\b(?:hp|hewlett)\b'), 'HP'),
        (_rx(r'\blenovo\b'), 'Lenovo'),
        (_rx(r'\b(?:asus|rog)\b'), 'ASUS'),
        (_rx(r'\bnintendo\b'), 'Nintendo'),
        (_rx(r'\b(?:microsoft|surface|xbox)\b'), 'Microsoft'),
    ]


def default_explicit_sku_patterns() -> List[Pattern]:
    """SKU patterns. The intent router matches the same table."""
    return [
        _rx(r'\bsku\s*[:#]?\s*(\d+)'),
        _rx(r'\b(\d{6,})\b'),
    ]


def _default_product_mentions() -> List[Pattern]:
    return [
        _rx(r'\b(?:iphone|ipad|macbook|galaxy|note|s\d{1,2}|lg|sony|panasonic|dell|hp|lenovo|asus|rog|xbox|playstation|nintendo)\b[\s\w]*'),
        _rx(r'\b(?:tvs?|televisions?|laptops?|phones?|tablets?|watch(?:es)?|cameras?)\b[\s\w]*'),
    ]


def _default_general_patterns() -> List[Pattern]:
    return [
        _rx(rf'^(?:find|show|give|recommend|suggest|what|which|list)\b.*\b{CATEGORY_NOUNS}\b'),
        _rx(rf'\b{CATEGORY_NOUNS}\b.*\b{BUDGET_WORDS}\b'),
    ]


def _default_specific_patterns() -> List[Pattern]:
    return [
        _rx(r'tell\s+me|what\s+is|\bdetails?\b|\bspecs?\b|\bfeatures?\b|\babout\b|\bthis\b|\bthat\b|\bit\b'),
        _rx(r'\b(?:sku|model|exact|specific)\b'),
    ]


@dataclass
class ResolverVocabulary:
    """Phrase tables used by the resolver. Order matters: first match wins."""
    budget_patterns: List[Pattern] = field(default_factory=_default_budget_patterns)
    use_cases: List[Tuple[Pattern, str]] = field(default_factory=_default_use_cases)
    categories: List[Tuple[Pattern, str]] = field(default_factory=_default_categories)
    brands: List[Tuple[Pattern, str]] = field(default_factory=_default_brands)
    explicit_sku_patterns: List[Pattern] = field(default_factory=default_explicit_sku_patterns)
    product_mentions: List[Pattern] = field(default_factory=_default_product_mentions)
    general_patterns: List[Pattern] = field(default_factory=_default_general_patterns)
    specific_patterns: List[Pattern] = field(default_factory=_default_specific_patterns)
    has_budget: Pattern = field(default_factory=lambda: _rx(rf'\b{BUDGET_WORDS}\b.*\d+'))
    has_category: Pattern = field(default_factory=lambda: _rx(rf'\b{CATEGORY_NOUNS}\b'))
    comparable_iphone: Pattern = field(default_factory=lambda: _rx(r'(?:alternative|compare).*iphone|iphone.*(?:alternative|compare)'))


def _first_label(table: List[Tuple[Pattern, str]], text: str) -> Optional[str]:
    for pattern, label in table:
        if pattern.search(text):
            return label
    return None


class EntityResolver:
    """Resolves entities from turn text plus conversation state. Never raises."""

    def __init__(self, product_search: Optional[ProductSearchService] = None,
                 record_store: Optional[ProductRecordStore] = None,
                 vocabulary: Optional[ResolverVocabulary] = None):
        self.product_search = product_search
        self.record_store = record_store
        self.vocabulary = vocabulary or ResolverVocabulary()

    # --- Table lookups ---

    def extract_budget(self, text: str, state: ConversationState) -> Optional[float]:
        for pattern in self.vocabulary.budget_patterns:
            match = pattern.search(text)
            if match:
                amount = match.group(1).lower()
                if amount.endswith('k'):
                    return float(amount[:-1]) * 1000
                return float(amount)

        if state.budget_cap is not None:
            return state.budget_cap
        try:
            return float(state.customer_intent.budget_range) if state.customer_intent.budget_range else None
        except ValueError:
            return None

    def extract_use_case(self, text: str, state: ConversationState) -> Optional[str]:
        return _first_label(self.vocabulary.use_cases, text) or state.use_case

    def extract_category(self, text: str) -> Optional[str]:
        return _first_label(self.vocabulary.categories, text)

    def extract_brand(self, text: str) -> Optional[str]:
        return _first_label(self.vocabulary.brands, text)

    def extract_explicit_sku(self, text: str) -> Optional[str]:
        for pattern in self.vocabulary.explicit_sku_patterns:
            match = pattern.search(text)
            if match:
                return match.group(1)
        return None

    def detect_product_mention(self, text: str) -> Optional[str]:
        """Return the search phrase for a brand/model or category mention, if any."""
        for pattern in self.vocabulary.product_mentions:
            match = pattern.search(text)
            if match:
                return match.group(0).strip()
        return None

    def is_general_recommendation(self, text: str, state: ConversationState) -> bool:
        """True for category/budget shopping queries that should fan out across several products."""
        vocab = self.vocabulary
        is_general = (any(p.search(text) for p in vocab.general_patterns)
                      and not any(p.search(text) for p in vocab.specific_patterns))
        budget_shaped = (bool(vocab.has_budget.search(text)) and bool(vocab.has_category.search(text))
                         and not state.active_sku)
        return is_general or budget_shaped

    # --- Catalog lookups ---

    async def _search(self, query: str, limit: int = MAX_CANDIDATE_SKUS) -> List[Dict[str, Any]]:
        if self.product_search is None:
            return []
        return await self.product_search.search_products(query, limit)

    async def find_comparable_product(self, query: str, budget: Optional[float]) -> Optional[str]:
        """Top match for `query`, preferring one priced within 20% of `budget`."""
        try:
            products = await self._search(query, 10)
        except Exception as e:
            logger.exception(f"Comparable product search failed for '{query}': {e}")
            return None
        if not products:
            return None
        if budget:
            for product in products:
                try:
                    price = float(product.get("price") or 0)
                except (TypeError, ValueError):
                    price = 0
                if price > 0 and budget * 0.8 <= price <= budget * 1.2:
                    return product["sku"]
        return products[0]["sku"]

    # --- Resolution ---

    async def resolve(self, text: str, conversation_state: Optional[ConversationState] = None) -> ResolvedEntities:
        state = conversation_state or ConversationState()
        text = text or ""
        try:
            return await self._resolve(text, state)
        except Exception as e:
            logger.exception(f"Error in entity resolution, falling back to conversation state: {e}")
            return ResolvedEntities(
                active_sku=state.active_sku,
                category=state.active_category,
                brand=state.active_brand,
                budget=state.budget_cap,
                use_case=state.use_case,
            )

    async def _resolve(self, text: str, state: ConversationState) -> ResolvedEntities:
        resolved = ResolvedEntities(
            budget=self.extract_budget(text, state),
            use_case=self.extract_use_case(text, state),
        )
        category_hint = self.extract_category(text)
        brand_hint = self.extract_brand(text)

        explicit_sku = self.extract_explicit_sku(text)
        if explicit_sku:
            resolved.active_sku = explicit_sku
            resolved.category = category_hint
            resolved.brand = brand_hint
            if self.record_store is not None:
                record = await self.record_store.get_record(explicit_sku)
                if record:
                    resolved.category = record.get("category") or category_hint
                    resolved.brand = record.get("brand") or brand_hint
            logger.info(f"Explicit SKU {explicit_sku} resolved (category: {resolved.category})")
            return resolved

        general = self.is_general_recommendation(text, state)
        mention = self.detect_product_mention(text)

        if mention:
            products = await self._search(mention)
            if products:
                skus = [p["sku"] for p in products][:MAX_CANDIDATE_SKUS]
                if general:
                    resolved.candidate_skus = skus
                else:
                    resolved.active_sku = skus[0]
                    resolved.candidate_skus = skus
                if products[0].get("category") and products[0]["category"] != "Unknown":
                    resolved.category = products[0]["category"]
                logger.info(f"Product mention '{mention}' matched {len(skus)} SKUs (general: {general})")
        elif general and (category_hint or resolved.budget):
            budget_text = f"{resolved.budget:g}" if resolved.budget else ""
            products = await self._search(f"{category_hint or 'product'} under {budget_text}".strip())
            resolved.candidate_skus = [p["sku"] for p in products][:MAX_CANDIDATE_SKUS]

        if self.vocabulary.comparable_iphone.search(text):
            comparable = await self.find_comparable_product("iPhone", state.budget_cap or resolved.budget)
            if comparable and comparable not in resolved.candidate_skus:
                resolved.candidate_skus.append(comparable)
            if comparable and state.active_sku:
                resolved.candidate_skus = [state.active_sku] + [s for s in resolved.candidate_skus if s != state.active_sku]
            resolved.candidate_skus = resolved.candidate_skus[:MAX_CANDIDATE_SKUS]

        if not resolved.active_sku and state.active_sku and not general:
            resolved.active_sku = state.active_sku

        resolved.category = resolved.category or state.active_category or category_hint
        resolved.brand = resolved.brand or state.active_brand or brand_hint
        return resolved
