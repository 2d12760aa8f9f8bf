import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from langgraph.graph import StateGraph, END
from openai import AsyncOpenAI
from pydantic_ai.models import Model

from store_assistant.agents.answer_synthesizer import AnswerSynthesizerAgent, stock_block
from store_assistant.agents.condenser import CondenserAgent
from store_assistant.agents.context_manager import ContextManager
from store_assistant.agents.enricher import review_hints, use_case_hint
from store_assistant.agents.entity_resolver import EntityResolver
from store_assistant.agents.flows import (
    DEFAULT_COACHING_TIPS, DEFAULT_SCRIPT_LINES, GeneralInfoFlow, SalesCoachingFlow,
)
from store_assistant.agents.intent_router import IntentFlagAgent, IntentRouter
from store_assistant.agents.query_rewriter import QueryRewriterAgent
from store_assistant.agents.retriever import RetrievalAgent
from store_assistant.config import Settings, load_settings
from store_assistant.data.availability import AvailabilityService
from store_assistant.data.conversation_store import ConversationStateStore, InMemoryConversationStore
from store_assistant.data.product_store import ProductRecordStore, ProductSearchService
from store_assistant.data.vectordb_qdrant import VectorDBManager
from store_assistant.errors import InvalidTurnRequest
from store_assistant.models import (
    Chunk, ConversationState, Intent, IntentType, ResolvedEntities, SalesScript, ShortlistItem, StructuredAnswer,
)
from store_assistant.utils.message_utils import turns_to_langchain_messages
from store_assistant.workflow.state import TurnState

logger = logging.getLogger(__name__)

NOT_READY_SUMMARY = "I'm sorry, my internal systems are not ready. Please try again later."
UNEXPECTED_ERROR_SUMMARY = "I'm sorry, but I encountered an unexpected error processing your request. Please try again."


def _chunk_skus(chunks: List[Chunk]) -> List[str]:
    return list(dict.fromkeys(c.sku for c in chunks if c.sku))


def _price(record: Dict[str, Any]) -> Optional[float]:
    for key in ("current_price", "list_price", "price"):
        try:
            if record.get(key) is not None:
                return float(record[key])
        except (TypeError, ValueError):
            continue
    return None


class AgentWorkflow:
    """
    Coordinates one staff turn through the pipeline stages.
    Initializes the catalog collaborators, the agents and the langgraph workflow.
    """

    def __init__(
        self,
        openai_client: Optional[AsyncOpenAI] = None,
        settings: Optional[Settings] = None,
        vector_db_manager: Optional[VectorDBManager] = None,
        record_store: Optional[ProductRecordStore] = None,
        availability_service: Optional[AvailabilityService] = None,
        state_store: Optional[ConversationStateStore] = None,
        model: Optional[Model] = None,
    ):
        self.openai_client = openai_client
        self.settings = settings or load_settings()
        self.vector_db_manager = vector_db_manager
        self.record_store = record_store
        self.availability_service = availability_service
        self.state_store = state_store
        self.model = model
        self.workflow = None

        self._initialize_components()

        if self.synthesizer and self.retriever:
            self.workflow = self._create_workflow()
            logger.info("Agent workflow created successfully.")
        else:
            logger.error("Workflow creation skipped due to failed component initialization.")

    def _initialize_components(self):
        """Initializes the catalog collaborators and agents."""
        settings = self.settings
        try:
            if self.vector_db_manager is None:
                logger.info("Initializing VectorDBManager (Qdrant)...")
                self.vector_db_manager = VectorDBManager.from_settings(settings, self.openai_client)
            if self.record_store is None:
                self.record_store = ProductRecordStore(settings.catalog_dir)
            if self.availability_service is None:
                self.availability_service = AvailabilityService.from_files(settings.stores_file, settings.inventory_file)
            if self.state_store is None:
                self.state_store = InMemoryConversationStore(
                    max_entries=settings.state_max_conversations, ttl_seconds=settings.state_ttl_seconds
                )

            self.product_search = ProductSearchService(self.vector_db_manager, self.record_store)
            self.resolver = EntityResolver(self.product_search, self.record_store)
            self.router = IntentRouter(sku_patterns=self.resolver.vocabulary.explicit_sku_patterns)
            self.flag_agent = None
            if settings.intent_classifier_use_llm:
                self.flag_agent = IntentFlagAgent(
                    self.openai_client, router=self.router, model_name=settings.intent_classifier_model,
                    model=self.model, temperature=settings.intent_classifier_temperature,
                )

            self.context_manager = ContextManager(self.state_store)
            self.rewriter = QueryRewriterAgent(
                self.openai_client, max_compare_skus=settings.max_compare_skus,
                model_name=settings.query_rewriter_model, model=self.model,
                max_tokens=settings.query_rewriter_max_tokens, temperature=settings.query_rewriter_temperature,
            )
            self.retriever = RetrievalAgent.from_settings(settings, self.vector_db_manager)
            self.condenser = CondenserAgent(
                self.openai_client, default_max_tokens=settings.condenser_max_tokens,
                model_name=settings.summarization_model, model=self.model,
            )
            self.synthesizer = AnswerSynthesizerAgent(
                self.openai_client, model_name=settings.main_llm_model, model=self.model,
                temperature=settings.main_llm_temperature,
            )
            self.coaching_flow = SalesCoachingFlow(self.retriever, self.synthesizer)
            self.general_info_flow = GeneralInfoFlow(self.retriever, self.synthesizer)
            logger.info("All workflow components initialized.")

        except Exception as e:
            logger.exception(f"Failed to initialize workflow components: {e}")
            self.retriever = None
            self.synthesizer = None

    def _create_workflow(self):
        """Create and compile the langgraph workflow"""

        async def classify(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Classify Intent ---")
            conversation_state = state["conversation_state"]
            try:
                intent = self.router.classify(state["user_text"], conversation_state, state.get("explicit_sku"))
                if self.flag_agent is not None:
                    intent = await self.flag_agent.refine(intent, state["user_text"], conversation_state)
                return {"intent": intent}
            except Exception as e:
                logger.exception(f"Intent classification failed, defaulting to GENERAL_INFO: {e}")
                return {"intent": Intent(), "error": f"Intent classification failed: {e}"}

        def route_after_classify(state: TurnState) -> str:
            intent_type = state["intent"].intent
            if intent_type == IntentType.SALES_COACHING:
                return "coaching"
            if intent_type == IntentType.GENERAL_INFO:
                return "general_info"
            return "resolve"

        async def coaching(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Sales Coaching ---")
            try:
                answer = await self.coaching_flow.run(state["user_text"], state["conversation_state"], state.get("history"))
            except Exception as e:
                logger.exception(f"Error in sales coaching flow: {str(e)}")
                return {"answer": StructuredAnswer(
                    summary="Let me check that for you.",
                    sales_script=SalesScript(lines=list(DEFAULT_SCRIPT_LINES)),
                    coaching_tips=list(DEFAULT_COACHING_TIPS),
                ), "error": f"Sales coaching failed: {e}"}
            return {"answer": answer}

        async def general_info(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: General Info ---")
            try:
                answer = await self.general_info_flow.run(state["user_text"], state["conversation_state"], state.get("history"))
            except Exception as e:
                logger.exception(f"Error in general info flow: {str(e)}")
                return {"answer": StructuredAnswer(summary="Let me check that for you."),
                        "error": f"General info failed: {e}"}
            return {"answer": answer}

        async def resolve(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Resolve Entities ---")
            entities = await self.resolver.resolve(state["user_text"], state["conversation_state"])
            explicit_sku = state.get("explicit_sku")
            if explicit_sku and entities.active_sku != explicit_sku:
                logger.info(f"Request SKU {explicit_sku} overrides resolved SKU {entities.active_sku}")
                entities = entities.model_copy(update={"active_sku": explicit_sku})
            logger.debug(f"Resolved entities: {entities.model_dump()}")
            return {"entities": entities}

        async def update_context(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Update Context ---")
            try:
                updated = self.context_manager.apply(
                    state["conversation_state"], state["entities"], state["intent"], state["user_text"]
                )
                return {"conversation_state": updated}
            except Exception as e:
                logger.exception(f"Context update failed, keeping previous state: {e}")
                return {"error": f"Context update failed: {e}"}

        async def rewrite(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Rewrite Query ---")
            conversation_state: ConversationState = state["conversation_state"]
            entities: ResolvedEntities = state["entities"]
            rewritten = await self.rewriter.rewrite(state["user_text"], conversation_state, entities, state["intent"])

            compare_list = list(rewritten.compare_list)
            if not conversation_state.active_sku and entities.candidate_skus:
                compare_list = entities.candidate_skus[:self.settings.max_compare_skus]
                logger.info(f"General recommendation: retrieving across candidates {compare_list}")
            return {"rewritten": rewritten, "compare_list": compare_list}

        async def retrieve(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Retrieve Information ---")
            conversation_state: ConversationState = state["conversation_state"]
            rewritten = state["rewritten"]
            try:
                chunks = await self.retriever.retrieve(
                    sku=conversation_state.active_sku,
                    query=rewritten.resolved_query,
                    filters=rewritten.filters,
                    customer_intent_summary=conversation_state.customer_intent.summary(),
                    compare_list=state.get("compare_list") or [],
                )
            except Exception as e:
                logger.exception(f"Error in retrieval stage: {str(e)}")
                return {"chunks": [], "error": f"Information retrieval failed: {e}"}
            return {"chunks": chunks}

        async def condense(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Condense Context ---")
            chunks = state.get("chunks") or []
            if not chunks:
                return {"context_summary": None}
            try:
                return {"context_summary": await self.condenser.condense(chunks)}
            except Exception as e:
                logger.exception(f"Condensation failed, synthesizer will use raw chunks: {e}")
                return {"context_summary": None}

        async def gather(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Gather Product Facts ---")
            return await self._gather_facts(state)

        async def synthesize(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Synthesize Answer ---")
            conversation_state: ConversationState = state["conversation_state"]
            try:
                answer = await self.synthesizer.synthesize(
                    state["user_text"],
                    state.get("chunks") or [],
                    context_summary=state.get("context_summary"),
                    product_record=state.get("product_record"),
                    availability=state.get("availability"),
                    alternative=state.get("alternative"),
                    history=state.get("history"),
                    conversation_state=conversation_state,
                    customer_intent=conversation_state.customer_intent.summary(),
                    review_summary=state.get("review_summary"),
                    compare_list=state.get("compare_list") or [],
                    product_records=state.get("product_records") or {},
                    shortlist_items=state.get("shortlist_items") or [],
                )
            except Exception as e:
                logger.exception(f"Error in answer synthesis stage: {str(e)}")
                answer = StructuredAnswer(
                    summary="Let me check that for you.",
                    stock_and_fulfilment=stock_block(state.get("availability")),
                )
            return {"answer": answer}

        async def save_state(state: TurnState) -> Dict[str, Any]:
            logger.info("--- Workflow Step: Save Conversation State ---")
            conversation_state: ConversationState = state["conversation_state"]
            answer = state.get("answer") or StructuredAnswer(summary=UNEXPECTED_ERROR_SUMMARY)
            answer.conversation_id = state["conversation_id"]
            conversation_state.conversation_id = state["conversation_id"]
            conversation_state.add_turn(state["user_text"], answer.summary)
            try:
                await self.state_store.save(state["conversation_id"], conversation_state)
            except Exception as e:
                logger.exception(f"Failed to save conversation state for {state['conversation_id']}: {e}")
            return {"conversation_state": conversation_state, "answer": answer}

        workflow_graph = StateGraph(TurnState)
        workflow_graph.add_node("classify", classify)
        workflow_graph.add_node("coaching", coaching)
        workflow_graph.add_node("general_info", general_info)
        workflow_graph.add_node("resolve", resolve)
        workflow_graph.add_node("update_context", update_context)
        workflow_graph.add_node("rewrite", rewrite)
        workflow_graph.add_node("retrieve", retrieve)
        workflow_graph.add_node("condense", condense)
        workflow_graph.add_node("gather", gather)
        workflow_graph.add_node("synthesize", synthesize)
        workflow_graph.add_node("save_state", save_state)

        workflow_graph.set_entry_point("classify")
        workflow_graph.add_conditional_edges(
            "classify",
            route_after_classify,
            {"coaching": "coaching", "general_info": "general_info", "resolve": "resolve"},
        )
        workflow_graph.add_edge("coaching", "save_state")
        workflow_graph.add_edge("general_info", "save_state")
        workflow_graph.add_edge("resolve", "update_context")
        workflow_graph.add_edge("update_context", "rewrite")
        workflow_graph.add_edge("rewrite", "retrieve")
        workflow_graph.add_edge("retrieve", "condense")
        workflow_graph.add_edge("condense", "gather")
        workflow_graph.add_edge("gather", "synthesize")
        workflow_graph.add_edge("synthesize", "save_state")
        workflow_graph.add_edge("save_state", END)

        return workflow_graph.compile()

    async def _gather_facts(self, state: TurnState) -> Dict[str, Any]:
        """Product records, stock, out-of-stock alternative, review hint and shortlist for the synthesizer."""
        conversation_state: ConversationState = state["conversation_state"]
        chunks: List[Chunk] = state.get("chunks") or []
        active_sku = conversation_state.active_sku
        store_id = state.get("store_id")
        facts: Dict[str, Any] = {
            "product_record": None, "product_records": {}, "availability": None,
            "alternative": None, "review_summary": None, "shortlist_items": [],
        }

        try:
            skus = _chunk_skus(chunks)
            records = await asyncio.gather(*(self.record_store.get_record(sku) for sku in skus))
            facts["product_records"] = {sku: record for sku, record in zip(skus, records) if record}
            facts["product_record"] = facts["product_records"].get(active_sku) if active_sku else None
            if active_sku and facts["product_record"] is None:
                facts["product_record"] = await self.record_store.get_record(active_sku)
        except Exception as e:
            logger.exception(f"Error fetching product records: {e}")

        if active_sku and store_id:
            availability = await self.availability_service.get_availability(active_sku, store_id)
            facts["availability"] = availability
            if availability.this_store_qty == 0:
                logger.info(f"SKU {active_sku} out of stock at {store_id}, looking for an alternative")
                facts["alternative"] = await self.retriever.find_alternative(active_sku, self.record_store)

        review_summary = review_hints(
            category=conversation_state.active_category, product_record=facts["product_record"], chunks=chunks
        )
        use_case_note = use_case_hint(conversation_state.use_case)
        facts["review_summary"] = f"{review_summary} {use_case_note}" if use_case_note else review_summary

        if not active_sku and len(facts["product_records"]) > 1:
            facts["shortlist_items"] = [
                ShortlistItem(
                    sku=sku,
                    name=record.get("name"),
                    hero_feature=(record.get("key_features") or [None])[0],
                    price=_price(record),
                )
                for sku, record in list(facts["product_records"].items())[:self.settings.max_compare_skus]
            ]
        logger.debug(f"Gathered facts: record={'yes' if facts['product_record'] else 'no'}, "
                     f"{len(facts['product_records'])} records, availability={'yes' if facts['availability'] else 'no'}")
        return facts

    def _initial_state(self, request: Dict[str, Any], conversation_state: ConversationState) -> TurnState:
        return {
            "conversation_id": conversation_state.conversation_id,
            "store_id": conversation_state.store_id,
            "user_text": request["user_text"],
            "explicit_sku": request.get("sku"),
            "conversation_state": conversation_state,
            "history": turns_to_langchain_messages(
                conversation_state.turn_history, self.settings.history_turns_in_prompt
            ),
            "intent": None,
            "entities": None,
            "rewritten": None,
            "compare_list": [],
            "chunks": [],
            "context_summary": None,
            "answer": None,
            "error": None,
        }

    @staticmethod
    def normalize_request(request: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a turn request. Accepts `user_text` or `question`; raises InvalidTurnRequest."""
        if not isinstance(request, dict):
            raise InvalidTurnRequest("Turn request must be a JSON object")
        text = request.get("user_text") or request.get("question")
        if not isinstance(text, str) or not text.strip():
            raise InvalidTurnRequest("No question provided")
        sku = request.get("sku")
        return {
            "conversation_id": str(request.get("conversation_id") or uuid.uuid4()),
            "store_id": str(request["store_id"]) if request.get("store_id") else None,
            "user_text": text.strip(),
            "sku": str(sku).strip() if sku else None,
        }

    async def run_turn(self, request: Dict[str, Any]) -> TurnState:
        """Runs one turn and returns the final workflow state (intent, entities, chunks, answer...)."""
        request = self.normalize_request(request)
        if not self.workflow:
            logger.error("Workflow is not compiled or failed during initialization. Cannot process turn.")
            return {"conversation_id": request["conversation_id"], "answer": StructuredAnswer(
                conversation_id=request["conversation_id"], summary=NOT_READY_SUMMARY,
            ), "error": "Workflow not initialized"}

        conversation_state = await self.state_store.get(request["conversation_id"])
        conversation_state.conversation_id = request["conversation_id"]
        if request["store_id"]:
            conversation_state.store_id = request["store_id"]

        logger.info(f"--- Starting Workflow for Turn: '{request['user_text']}' "
                    f"(conversation {request['conversation_id']}) ---")
        try:
            final_state = await self.workflow.ainvoke(self._initial_state(request, conversation_state))
        except Exception as e:
            logger.exception(f"Workflow invocation error: {str(e)}")
            return {"conversation_id": request["conversation_id"], "answer": StructuredAnswer(
                conversation_id=request["conversation_id"], summary=UNEXPECTED_ERROR_SUMMARY,
            ), "error": str(e)}

        answer = final_state.get("answer")
        logger.info(f"--- Workflow Finished. Summary: '{answer.summary[:100] if answer else ''}...' ---")
        return final_state

    async def process_turn(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Process a staff turn through the workflow and return the structured answer as a dict"""
        final_state = await self.run_turn(request)
        answer = final_state.get("answer") or StructuredAnswer(summary=UNEXPECTED_ERROR_SUMMARY)
        answer.conversation_id = final_state.get("conversation_id")
        return answer.model_dump()

    async def close(self):
        """Gracefully close resources, like the VectorDBManager client."""
        if self.vector_db_manager:
            try:
                logger.info("Closing VectorDBManager (Qdrant client)...")
                await self.vector_db_manager.close()
                logger.info("VectorDBManager closed successfully.")
            except Exception as e:
                logger.error(f"Error closing VectorDBManager: {e}")
        else:
            logger.info("No VectorDBManager instance to close.")
