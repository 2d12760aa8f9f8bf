import pytest

from conftest import failing_model, text_model
from store_assistant.agents.query_rewriter import QueryRewriterAgent
from store_assistant.models import ConversationState, Intent, IntentType, ResolvedEntities

COMPARE = Intent(intent=IntentType.COMPARISON, need_compare=True)
DEEPDIVE = Intent(intent=IntentType.PRODUCT_DEEPDIVE)


def test_fallback_rewrite_fills_in_thread_context():
    agent = QueryRewriterAgent()
    state = ConversationState(active_sku="12345", active_category="TV", active_brand="Samsung", budget_cap=2500)
    entities = ResolvedEntities(active_sku="12345", category="TV", brand="Samsung")

    rewritten = agent.fallback_rewrite("does it support 120hz?", state, entities, DEEPDIVE)

    assert rewritten.resolved_query == "does it support 120hz? TV Samsung"
    assert rewritten.filters.category == "TV"
    assert rewritten.filters.price_max == 2500
    assert rewritten.compare_list == []
    assert rewritten.constraints == ["120hz"]


def test_compare_list_puts_active_first_and_is_bounded():
    agent = QueryRewriterAgent(max_compare_skus=3)
    state = ConversationState(active_sku="12345")
    entities = ResolvedEntities(active_sku="12345", candidate_skus=["23456", "34567", "45678"])

    compare = agent.build_compare_list(["23456", "23456", 99], state, entities, COMPARE)

    assert compare == ["12345", "23456", "99"]


@pytest.mark.asyncio
async def test_rewrite_without_model_uses_fallback():
    agent = QueryRewriterAgent()
    rewritten = await agent.rewrite("laptop under 1000", ConversationState(),
                                    ResolvedEntities(category="Laptop", budget=1000), Intent())
    assert rewritten.resolved_query == "laptop under 1000 under $1000"
    assert rewritten.filters.price_max == 1000


@pytest.mark.asyncio
async def test_rewrite_uses_model_json_with_state_defaults():
    calls = []
    model_json = """```json
    {"resolved_query": "Samsung QLED TV 65 inch gaming 120Hz HDMI 2.1",
     "filters": {"category": null, "brand": "Samsung", "price_max": "2000"},
     "compare_list": [],
     "constraints": ["120hz", "hdmi 2.1"]}
    ```"""
    agent = QueryRewriterAgent(model=text_model(model_json, calls))
    state = ConversationState(active_sku="12345", active_category="TV")

    rewritten = await agent.rewrite("is it good for gaming", state, ResolvedEntities(active_sku="12345"), DEEPDIVE)

    assert len(calls) == 1
    assert "Active SKU: 12345" in calls[0]
    assert rewritten.resolved_query.startswith("Samsung QLED TV")
    assert rewritten.filters.category == "TV"
    assert rewritten.filters.brand == "Samsung"
    assert rewritten.filters.price_max == 2000
    assert rewritten.constraints == ["120hz", "hdmi 2.1"]


@pytest.mark.asyncio
async def test_short_model_query_is_enhanced():
    agent = QueryRewriterAgent(model=text_model('{"resolved_query": "tv", "filters": {}}'))
    entities = ResolvedEntities(category="TV", use_case="sports", budget=1500)

    rewritten = await agent.rewrite("best tv", ConversationState(), entities, Intent())

    assert rewritten.resolved_query == "best tv sports under $1500"


@pytest.mark.asyncio
async def test_unparseable_or_failed_model_output_falls_back():
    entities = ResolvedEntities(category="Laptop")
    for model in (text_model("I think you want laptops"), failing_model()):
        agent = QueryRewriterAgent(model=model)
        rewritten = await agent.rewrite("cheap laptop", ConversationState(), entities, Intent())
        assert rewritten.resolved_query == "cheap laptop"
        assert rewritten.filters.category == "Laptop"


def test_compare_list_keeps_newly_resolved_sku_after_active():
    agent = QueryRewriterAgent()
    state = ConversationState(active_sku="12345", recent_skus=["23456"])
    entities = ResolvedEntities(active_sku="23456", candidate_skus=[])

    rewritten = agent.fallback_rewrite("compare it with SKU 23456", state, entities,
                                       Intent(intent=IntentType.PRODUCT_DEEPDIVE, need_compare=True))

    assert rewritten.compare_list == ["12345", "23456"]


@pytest.mark.asyncio
async def test_model_compare_list_ignored_when_not_comparing():
    model_json = '{"resolved_query": "Samsung QLED TV warranty length", "compare_list": ["34567", "45678"]}'
    agent = QueryRewriterAgent(model=text_model(model_json))
    state = ConversationState(active_sku="12345")

    rewritten = await agent.rewrite("how long is the warranty", state, ResolvedEntities(active_sku="12345"), DEEPDIVE)

    assert rewritten.compare_list == []
