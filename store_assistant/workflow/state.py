from typing import TypedDict, Annotated, Sequence, Dict, Any, List, Optional
from langchain_core.messages import BaseMessage

from store_assistant.models import (
    AlternativeIfOOS, Availability, Chunk, ConversationState, Intent, ResolvedEntities, RewrittenQuery,
    ShortlistItem, StructuredAnswer,
)


class TurnState(TypedDict, total=False):
    """State schema for one turn through the store assistant workflow"""
    conversation_id: Annotated[str, "Conversation the turn belongs to"]
    store_id: Annotated[Optional[str], "Store the staff member is in"]
    user_text: Annotated[str, "Raw staff question"]
    explicit_sku: Annotated[Optional[str], "SKU supplied with the request (e.g. scanned)"]
    conversation_state: Annotated[ConversationState, "State read at turn start, updated in place by the pipeline"]
    history: Annotated[Sequence[BaseMessage], "Last few turns as chat messages"]
    intent: Annotated[Optional[Intent], "Router output"]
    entities: Annotated[Optional[ResolvedEntities], "Entity resolver output"]
    rewritten: Annotated[Optional[RewrittenQuery], "Query rewriter output"]
    compare_list: Annotated[List[str], "SKUs retrieval fans out across"]
    chunks: Annotated[List[Chunk], "Ranked retrieved chunks"]
    context_summary: Annotated[Optional[str], "Condensed context"]
    product_record: Annotated[Optional[Dict[str, Any]], "Record for the active SKU"]
    product_records: Annotated[Dict[str, Dict[str, Any]], "Records for the SKUs in the retrieved chunks"]
    availability: Annotated[Optional[Availability], "Stock for the active SKU"]
    alternative: Annotated[Optional[AlternativeIfOOS], "Alternative when out of stock"]
    review_summary: Annotated[Optional[str], "Generic review hint"]
    shortlist_items: Annotated[List[ShortlistItem], "Pre-built shortlist for recommendation turns"]
    answer: Annotated[Optional[StructuredAnswer], "Final structured answer"]
    error: Annotated[Optional[str], "Error message if a step fails"]
