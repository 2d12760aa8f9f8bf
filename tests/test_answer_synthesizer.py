import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from conftest import CHUNKS, PRODUCT_RECORDS, failing_model, text_model
from store_assistant.agents.answer_synthesizer import (
    NO_DATA_SUMMARY, AnswerSynthesizerAgent, SynthesisTier, step_down,
)
from store_assistant.models import (
    Availability, Chunk, ConversationState, NearbyStock, ShortlistItem, StructuredAnswer,
)

RECORD = {k: v for k, v in PRODUCT_RECORDS[0].items() if k != "source_label"}
QUESTION = "Is SKU 12345 good for gaming?"


def chunks_for(sku: str):
    return [
        Chunk(sku=c["sku"], section_title=c["section_title"], section_type=c["section_type"],
              section_body=c["section_body"], search_score=0.8, chunk_id=c["chunk_id"])
        for c in CHUNKS if c["sku"] == sku
    ]


@pytest.fixture
def availability():
    return Availability(
        sku="12345", store_id="akl-central", this_store_qty=4,
        nearby=[NearbyStock(store_id="akl-newmarket", store_name="Newmarket", qty=1, distance_km=2.7)],
        fulfilment="Available in store (4 units)",
    )


def test_tiers_only_move_down():
    assert step_down(SynthesisTier.LLM_JSON, SynthesisTier.CONTEXT_ONLY, "test") == SynthesisTier.CONTEXT_ONLY
    with pytest.raises(ValueError):
        step_down(SynthesisTier.CONTEXT_ONLY, SynthesisTier.LLM_JSON, "test")


@pytest.mark.asyncio
async def test_no_data_answer_skips_the_model():
    calls = []
    agent = AnswerSynthesizerAgent(model=text_model('{"summary": "made up"}', calls))

    answer, tier = await agent.synthesize_with_tier("What about SKU 99999?", [])

    assert calls == []
    assert tier is None
    assert answer.summary == NO_DATA_SUMMARY
    assert answer.stock_and_fulfilment.fulfilment_summary == "Select a store to check availability"


@pytest.mark.asyncio
async def test_json_tier_maps_output_tolerantly(availability):
    calls = []
    model_json = json.dumps({
        "summary": "Yes, it's a strong gaming TV.",
        "key_points": ["120Hz refresh rate", "HDMI 2.1", None],
        "attachments": [
            {"sku": 90001, "name": "Premium HDMI 2.1 Cable", "why_sell": "Unlocks 4K 120Hz"},
            {"sku": "x", "name": None},
            "cable",
        ],
        "stock_and_fulfilment": {"this_store_qty": 99, "nearby": [], "fulfilment_summary": "made up"},
        "sales_script": ["Great choice for consoles."],
        "specs_fields": {"refresh": "120Hz", "hdmi_ports": 4},
        "shortlist_items": [{"sku": "1", "name": "ignored"}],
    })
    agent = AnswerSynthesizerAgent(model=text_model(model_json, calls))
    shortlist = [ShortlistItem(sku="12345", name=RECORD["name"])]
    history = [HumanMessage(content="Hi"), AIMessage(content="Hello, how can I help?")]

    answer, tier = await agent.synthesize_with_tier(
        QUESTION, chunks_for("12345"), product_record=RECORD, availability=availability,
        history=history, conversation_state=ConversationState(active_sku="12345"), shortlist_items=shortlist,
    )

    assert tier == SynthesisTier.LLM_JSON
    assert answer.summary == "Yes, it's a strong gaming TV."
    assert answer.key_points == ["120Hz refresh rate", "HDMI 2.1"]
    assert [a.sku for a in answer.attachments] == ["90001"]
    assert answer.stock_and_fulfilment.this_store_qty == 4
    assert answer.stock_and_fulfilment.fulfilment_summary == "Available in store (4 units)"
    assert answer.sales_script.lines == ["Great choice for consoles."]
    assert answer.specs_fields == {"refresh": "120Hz", "hdmi_ports": "4"}
    assert answer.shortlist_items == shortlist
    assert answer.citations == ["12345-1", "12345-2", "12345-3", "12345-4"]
    assert answer.product_metadata.price_band == "$1999"
    assert answer.product_metadata.sku == "12345"
    assert answer.sentiment_note

    prompt = calls[0]
    assert "Question: Is SKU 12345 good for gaming?" in prompt
    assert "Stock: This store has 4 units." in prompt
    assert "Newmarket (1 available, 2.7km)" in prompt
    assert "Premium HDMI 2.1 Cable (SKU: 90001)" in prompt
    assert "Staff: Hi" in prompt
    assert "Active product: SKU 12345" in prompt


@pytest.mark.asyncio
async def test_prose_output_uses_text_heuristics():
    reply = ("This TV is a great pick for gaming.\n"
             "• 120Hz refresh rate\n"
             "- HDMI 2.1 ports\n"
             "Most people also pick up a premium HDMI cable.")
    agent = AnswerSynthesizerAgent(model=text_model(reply))

    answer, tier = await agent.synthesize_with_tier(QUESTION, chunks_for("12345"), product_record=RECORD)

    assert tier == SynthesisTier.LLM_TEXT_HEURISTIC
    assert answer.summary == "This TV is a great pick for gaming."
    assert answer.key_points == ["120Hz refresh rate", "HDMI 2.1 ports"]
    assert [a.name for a in answer.attachments] == ["Premium HDMI 2.1 Cable"]


@pytest.mark.asyncio
async def test_json_without_summary_drops_to_text_tier():
    agent = AnswerSynthesizerAgent(model=text_model('{"key_points": ["only points"]}'))
    _, tier = await agent.synthesize_with_tier(QUESTION, chunks_for("12345"))
    assert tier == SynthesisTier.LLM_TEXT_HEURISTIC


@pytest.mark.asyncio
async def test_model_failure_builds_answer_from_context(availability):
    agent = AnswerSynthesizerAgent(model=failing_model())

    answer, tier = await agent.synthesize_with_tier(
        QUESTION, chunks_for("12345"), product_record=RECORD, availability=availability,
    )

    assert tier == SynthesisTier.CONTEXT_ONLY
    assert answer.summary == 'The Samsung 65" QLED Gaming TV ($1999) is a solid option for gaming.'
    assert answer.key_points[0].startswith("120Hz refresh rate")
    assert any("HDMI 2.1" in point for point in answer.key_points)
    assert any(point.startswith("Warranty:") for point in answer.key_points)
    assert answer.citations == ["12345-1", "12345-2", "12345-3", "12345-4"]

    dumped = answer.model_dump()
    assert set(dumped) == set(StructuredAnswer.model_fields)
    assert dumped["stock_and_fulfilment"]["this_store_qty"] == 4
    assert dumped["alternative_if_oos"] == {"alt_sku": None, "alt_name": None, "why_this_alt": None, "key_diff": None}
    assert dumped["attachments"][0]["sku"] == "90001"


@pytest.mark.asyncio
async def test_near_empty_output_counts_as_failure():
    agent = AnswerSynthesizerAgent(model=text_model("ok"))
    answer, tier = await agent.synthesize_with_tier("laptop for work?", chunks_for("34567"))

    assert tier == SynthesisTier.CONTEXT_ONLY
    assert answer.summary == "Based on our product catalogue, I have some options that match what you're looking for."
    assert answer.key_points


@pytest.mark.asyncio
async def test_placeholder_chunks_are_not_cited():
    placeholder = Chunk(section_title="Customer Intent", section_type="customer_intent",
                        section_body="Customer wants gaming.", chunk_id=None)
    agent = AnswerSynthesizerAgent()

    answer = await agent.synthesize("anything good for gaming?", [placeholder])

    assert answer.citations == []
    assert answer.key_points


@pytest.mark.asyncio
async def test_custom_prompt_is_sent_as_is():
    calls = []
    agent = AnswerSynthesizerAgent(model=text_model('{"summary": "Explain it simply."}', calls))

    answer = await agent.synthesize("What is HDR?", [], custom_user_prompt="Explain HDR for a customer.")

    assert calls == ["Explain HDR for a customer."]
    assert answer.summary == "Explain it simply."


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_fields", [
    {"attachments": 5},
    {"shortlist_items": "12345"},
    {"attachments": {"sku": "90001"}, "shortlist_items": 3},
    {"product_metadata": {"hero_features": 7, "name": ["x"]}},
])
async def test_wrongly_typed_json_fields_are_dropped(bad_fields):
    reply = json.dumps(dict({"summary": "Great TV for gaming.", "key_points": ["120Hz"]}, **bad_fields))
    agent = AnswerSynthesizerAgent(model=text_model(reply))

    answer, tier = await agent.synthesize_with_tier(QUESTION, chunks_for("12345"), product_record=RECORD)

    assert tier == SynthesisTier.LLM_JSON
    assert answer.summary == "Great TV for gaming."
    assert answer.attachments == []
    assert answer.shortlist_items == []
