import pytest

from conftest import FakeVectorDB, text_model
from store_assistant.agents.enricher import use_case_hint
from store_assistant.errors import InvalidTurnRequest
from store_assistant.models import IntentType, StructuredAnswer
from store_assistant.workflow.agent_workflow import AgentWorkflow


@pytest.fixture
def make_workflow(settings, vector_db, record_store, availability_service, state_store):
    def build(**overrides):
        components = dict(
            settings=settings,
            vector_db_manager=vector_db,
            record_store=record_store,
            availability_service=availability_service,
            state_store=state_store,
        )
        components.update(overrides)
        return AgentWorkflow(**components)

    return build


@pytest.mark.regression
@pytest.mark.asyncio
async def test_explicit_sku_turn_cites_only_that_sku(make_workflow):
    workflow = make_workflow()

    final = await workflow.run_turn({"question": "Is SKU 12345 good for gaming?"})

    assert final["intent"].intent == IntentType.PRODUCT_DEEPDIVE
    assert final["entities"].active_sku == "12345"
    answer = final["answer"]
    assert answer.citations
    assert all(cid.startswith("12345-") for cid in answer.citations)
    assert {c.sku for c in final["chunks"]} == {"12345"}


@pytest.mark.regression
@pytest.mark.asyncio
async def test_general_recommendation_spans_several_skus(make_workflow):
    workflow = make_workflow()

    final = await workflow.run_turn({"question": "laptop under 1000"})

    entities = final["entities"]
    assert entities.active_sku is None
    assert 1 <= len(entities.candidate_skus) <= 5
    assert final["conversation_state"].active_sku is None
    assert len({c.sku for c in final["chunks"]}) > 1
    assert final["answer"].shortlist_items


@pytest.mark.regression
@pytest.mark.asyncio
async def test_follow_up_keeps_the_active_product(make_workflow, state_store):
    workflow = make_workflow()
    request = {"conversation_id": "conv-3", "store_id": "akl-central"}

    first = await workflow.run_turn(dict(request, user_text="Tell me about the TV"))
    second = await workflow.run_turn(dict(request, user_text="what about nearby stores"))

    assert first["entities"].active_sku is not None
    assert second["entities"].active_sku == first["entities"].active_sku
    assert second["intent"].intent == IntentType.PRODUCT_DEEPDIVE
    assert second["answer"].stock_and_fulfilment.this_store_qty == 4
    assert [s.store_name for s in second["answer"].stock_and_fulfilment.nearby] == ["Newmarket"]

    saved = await state_store.get("conv-3")
    assert [t.question for t in saved.turn_history] == ["Tell me about the TV", "what about nearby stores"]
    assert saved.store_id == "akl-central"


@pytest.mark.asyncio
async def test_out_of_stock_offers_alternative(make_workflow):
    workflow = make_workflow()

    final = await workflow.run_turn({"user_text": "Tell me about SKU 23456", "store_id": "akl-central"})

    answer = final["answer"]
    assert answer.stock_and_fulfilment.this_store_qty == 0
    assert answer.alternative_if_oos.alt_sku not in (None, "23456")


@pytest.mark.asyncio
async def test_request_sku_overrides_text(make_workflow):
    workflow = make_workflow()
    final = await workflow.run_turn({"user_text": "is this one any good for movies?", "sku": "23456"})
    assert final["entities"].active_sku == "23456"
    assert {c.sku for c in final["chunks"]} == {"23456"}


@pytest.mark.asyncio
async def test_coaching_turn_skips_the_product_pipeline(make_workflow):
    workflow = make_workflow()

    final = await workflow.run_turn({"user_text": "What should I say if the customer says it's too expensive?"})

    assert final["intent"].intent == IntentType.SALES_COACHING
    assert final.get("entities") is None
    assert final["answer"].sales_script.lines
    assert final["answer"].coaching_tips


@pytest.mark.asyncio
async def test_process_turn_returns_every_answer_field(make_workflow):
    workflow = make_workflow()

    answer = await workflow.process_turn({"conversation_id": "c-1", "question": "Is SKU 12345 good for gaming?"})

    assert set(answer) == set(StructuredAnswer.model_fields)
    assert answer["conversation_id"] == "c-1"
    assert answer["summary"]


@pytest.mark.asyncio
async def test_model_answers_flow_through(make_workflow):
    model = text_model('{"summary": "Great gaming TV with 120Hz and HDMI 2.1.", "key_points": ["120Hz"]}')
    workflow = make_workflow(model=model)

    answer = await workflow.process_turn({"question": "Is SKU 12345 good for gaming?"})

    assert answer["summary"] == "Great gaming TV with 120Hz and HDMI 2.1."
    assert answer["key_points"] == ["120Hz"]
    assert answer["conversation_id"]


@pytest.mark.asyncio
async def test_pipeline_degrades_when_vector_index_is_down(make_workflow):
    workflow = make_workflow(vector_db_manager=FakeVectorDB(fail=True))

    final = await workflow.run_turn({"question": "Is SKU 12345 good for gaming?"})

    answer = final["answer"]
    assert final["entities"].active_sku == "12345"
    assert answer.citations == []
    assert answer.summary.startswith("The Samsung")
    assert answer.key_points


@pytest.mark.asyncio
async def test_missing_question_is_rejected(make_workflow):
    workflow = make_workflow()
    with pytest.raises(InvalidTurnRequest):
        await workflow.process_turn({"conversation_id": "c-1", "question": "   "})
    with pytest.raises(InvalidTurnRequest):
        await workflow.process_turn({"conversation_id": "c-1"})


@pytest.mark.asyncio
async def test_close_closes_vector_db(make_workflow, vector_db):
    workflow = make_workflow()
    await workflow.close()
    assert vector_db.closed is True


@pytest.mark.regression
@pytest.mark.asyncio
async def test_comparison_turn_retrieves_both_products(make_workflow, state_store):
    workflow = make_workflow()
    request = {"conversation_id": "conv-compare", "store_id": "akl-central"}

    await workflow.run_turn(dict(request, user_text="Tell me about SKU 12345"))
    second = await workflow.run_turn(dict(request, user_text="compare it with SKU 23456"))

    assert second["intent"].need_compare is True
    assert second["compare_list"] == ["12345", "23456"]
    assert {c.sku for c in second["chunks"]} == {"12345", "23456"}
    assert second["conversation_state"].active_sku == "12345"
    assert "23456" in second["conversation_state"].recent_skus
    citations = second["answer"].citations
    assert any(cid.startswith("12345-") for cid in citations)
    assert any(cid.startswith("23456-") for cid in citations)


@pytest.mark.asyncio
async def test_coaching_turn_survives_wrongly_typed_model_json(make_workflow, state_store):
    model = text_model('{"summary": "Acknowledge the price, then show the value.", "attachments": 5}')
    workflow = make_workflow(model=model)

    answer = await workflow.process_turn({
        "conversation_id": "conv-coach",
        "user_text": "What should I say if the customer says it's too expensive?",
    })

    assert answer["summary"] == "Acknowledge the price, then show the value."
    assert answer["attachments"] == []
    assert answer["sales_script"]["lines"]
    saved = await state_store.get("conv-coach")
    assert len(saved.turn_history) == 1


class BrokenFlow:
    async def run(self, text, state, history=None):
        raise RuntimeError("flow exploded")


@pytest.mark.asyncio
async def test_flow_failures_still_answer_and_save_the_turn(make_workflow, state_store):
    workflow = make_workflow()
    workflow.coaching_flow = BrokenFlow()
    workflow.general_info_flow = BrokenFlow()

    coaching = await workflow.run_turn({"conversation_id": "conv-broken",
                                        "user_text": "What should I say if the customer says it's too expensive?"})
    general = await workflow.run_turn({"conversation_id": "conv-broken", "user_text": "What is OLED?"})

    assert coaching["answer"].summary == "Let me check that for you."
    assert coaching["answer"].sales_script.lines
    assert coaching["answer"].coaching_tips
    assert "flow exploded" in coaching["error"]
    assert general["intent"].intent == IntentType.GENERAL_INFO
    assert general["answer"].summary == "Let me check that for you."
    saved = await state_store.get("conv-broken")
    assert len(saved.turn_history) == 2


@pytest.mark.asyncio
async def test_use_case_hint_joins_the_review_note(make_workflow):
    workflow = make_workflow()

    final = await workflow.run_turn({"question": "Is SKU 12345 good for gaming?"})

    assert final["review_summary"].endswith(use_case_hint("gaming"))
    assert final["answer"].sentiment_note == final["review_summary"]
