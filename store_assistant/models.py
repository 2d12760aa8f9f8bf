"""Data model shared by the turn pipeline stages."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

MAX_TURN_HISTORY = 10
MAX_CANDIDATE_SKUS = 5


class IntentType(str, Enum):
    SALES_COACHING = "SALES_COACHING"
    GENERAL_INFO = "GENERAL_INFO"
    COMPARISON = "COMPARISON"
    PRODUCT_DEEPDIVE = "PRODUCT_DEEPDIVE"
    PRODUCT_DISCOVERY = "PRODUCT_DISCOVERY"


class Constraints(BaseModel):
    size_inches: Optional[float] = None
    must_have: List[str] = Field(default_factory=list)
    nice_to_have: List[str] = Field(default_factory=list)


class CustomerIntent(BaseModel):
    """Accumulated customer priorities, summarised for retrieval and prompting."""
    budget_range: Optional[str] = None
    use_cases: List[str] = Field(default_factory=list)
    key_features: List[str] = Field(default_factory=list)
    priority: Optional[str] = None

    def summary(self) -> Optional[str]:
        parts = []
        if self.use_cases:
            parts.append(", ".join(self.use_cases))
        if self.key_features:
            parts.append(", ".join(self.key_features))
        if self.budget_range:
            parts.append(f"under ${self.budget_range}")
        if not parts:
            return None
        return f"Customer wants {', '.join(parts)}."


class TurnRecord(BaseModel):
    question: str
    answer_summary: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class ConversationState(BaseModel):
    """Per-conversation memory. Created lazily with defaults on first access."""
    conversation_id: Optional[str] = None
    store_id: Optional[str] = None
    active_sku: Optional[str] = None
    recent_skus: List[str] = Field(default_factory=list)
    active_category: Optional[str] = None
    active_brand: Optional[str] = None
    budget_cap: Optional[float] = None
    use_case: Optional[str] = None
    constraints: Constraints = Field(default_factory=Constraints)
    customer_intent: CustomerIntent = Field(default_factory=CustomerIntent)
    turn_history: List[TurnRecord] = Field(default_factory=list)

    def add_turn(self, question: str, answer_summary: str) -> None:
        self.turn_history.append(TurnRecord(question=question, answer_summary=answer_summary or ""))
        if len(self.turn_history) > MAX_TURN_HISTORY:
            self.turn_history = self.turn_history[-MAX_TURN_HISTORY:]


class Intent(BaseModel):
    intent: IntentType = IntentType.GENERAL_INFO
    need_compare: bool = False
    ask_specs: bool = False
    ask_alternatives: bool = False
    ask_details: bool = False
    needs_catalogue: bool = False
    needs_reviews: bool = False
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ResolvedEntities(BaseModel):
    active_sku: Optional[str] = None
    candidate_skus: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    brand: Optional[str] = None
    budget: Optional[float] = None
    use_case: Optional[str] = None


class QueryFilters(BaseModel):
    category: Optional[str] = None
    brand: Optional[str] = None
    price_max: Optional[float] = None
    size_inches: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class RewrittenQuery(BaseModel):
    resolved_query: str
    filters: QueryFilters = Field(default_factory=QueryFilters)
    compare_list: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)


class Chunk(BaseModel):
    sku: Optional[str] = None
    section_title: Optional[str] = None
    section_type: Optional[str] = None
    section_body: str = ""
    importance_score: float = 0.5
    search_score: float = 0.0
    chunk_id: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def section_key(self) -> str:
        return self.section_type or self.section_title or ""


class Attachment(BaseModel):
    sku: Optional[str] = None
    name: str = ""
    why_sell: str = ""


class NearbyStock(BaseModel):
    store_id: Optional[str] = None
    store_name: str = ""
    qty: int = 0
    distance_km: Optional[float] = None
    fulfilment_option: Optional[str] = None


class StockAndFulfilment(BaseModel):
    this_store_qty: Optional[int] = None
    nearby: List[NearbyStock] = Field(default_factory=list)
    fulfilment_summary: Optional[str] = None


class AlternativeIfOOS(BaseModel):
    alt_sku: Optional[str] = None
    alt_name: Optional[str] = None
    why_this_alt: Optional[str] = None
    key_diff: Optional[str] = None


class ProductMetadata(BaseModel):
    name: Optional[str] = None
    image_url: Optional[str] = None
    price_band: Optional[str] = None
    sku: Optional[str] = None
    hero_features: List[str] = Field(default_factory=list)


class SalesScript(BaseModel):
    lines: List[str] = Field(default_factory=list)


class ShortlistItem(BaseModel):
    sku: str
    name: Optional[str] = None
    hero_feature: Optional[str] = None
    price: Optional[float] = None
    stock_indicator: Optional[str] = None


class StructuredAnswer(BaseModel):
    """Answer contract. Every field is always serialized, empty or not."""
    conversation_id: Optional[str] = None
    summary: str = ""
    key_points: List[str] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    stock_and_fulfilment: StockAndFulfilment = Field(default_factory=StockAndFulfilment)
    alternative_if_oos: AlternativeIfOOS = Field(default_factory=AlternativeIfOOS)
    sentiment_note: Optional[str] = None
    compliance_flags: List[str] = Field(default_factory=list)
    citations: List[str] = Field(default_factory=list)
    shortlist_items: List[ShortlistItem] = Field(default_factory=list)
    product_metadata: Optional[ProductMetadata] = None
    sales_script: SalesScript = Field(default_factory=SalesScript)
    coaching_tips: List[str] = Field(default_factory=list)
    specs_fields: Dict[str, str] = Field(default_factory=dict)
    warranty_summary: Optional[str] = None
    technical_notes: List[str] = Field(default_factory=list)


class Availability(BaseModel):
    sku: Optional[str] = None
    store_id: Optional[str] = None
    this_store_qty: Optional[int] = None
    nearby: List[NearbyStock] = Field(default_factory=list)
    fulfilment: str = "Select a store to check availability"
    last_checked_ts: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
