import pytest

from store_assistant.agents.context_manager import ContextManager, extract_features
from store_assistant.data.conversation_store import InMemoryConversationStore
from store_assistant.models import ConversationState, Intent, IntentType, ResolvedEntities

DEEPDIVE = Intent(intent=IntentType.PRODUCT_DEEPDIVE)
COMPARISON = Intent(intent=IntentType.COMPARISON, need_compare=True)


@pytest.fixture
def manager():
    return ContextManager()


def test_apply_is_idempotent(manager):
    state = ConversationState(conversation_id="c1", active_sku="23456", recent_skus=["34567"])
    entities = ResolvedEntities(active_sku="12345", category="TV", budget=2000, use_case="gaming")
    text = "65 inch for gaming, must have hdmi 2.1"

    once = manager.apply(state, entities, DEEPDIVE, text)
    twice = manager.apply(once, entities, DEEPDIVE, text)

    assert twice == once


def test_apply_does_not_mutate_input(manager):
    state = ConversationState(active_sku="23456")
    manager.apply(state, ResolvedEntities(active_sku="12345"), DEEPDIVE, "")
    assert state.active_sku == "23456"
    assert state.recent_skus == []


def test_switching_product_moves_previous_to_recent(manager):
    state = ConversationState(active_sku="23456", recent_skus=["12345", "34567"])
    updated = manager.apply(state, ResolvedEntities(active_sku="12345"), DEEPDIVE, "")

    assert updated.active_sku == "12345"
    assert "23456" in updated.recent_skus
    assert updated.active_sku not in updated.recent_skus


def test_comparison_keeps_active_product(manager):
    state = ConversationState(active_sku="12345")
    entities = ResolvedEntities(active_sku="23456", candidate_skus=["23456", "12345", "45678"])
    updated = manager.apply(state, entities, COMPARISON, "compare with the LG")

    assert updated.active_sku == "12345"
    assert updated.recent_skus == ["23456", "45678"]


def test_category_first_write_wins_budget_latest_wins(manager):
    state = ConversationState(active_category="TV", budget_cap=3000)
    entities = ResolvedEntities(category="Laptop", budget=1000, use_case="work from home")
    updated = manager.apply(state, entities, Intent(), "")

    assert updated.active_category == "TV"
    assert updated.budget_cap == 1000
    assert updated.customer_intent.budget_range == "1000"
    assert updated.customer_intent.use_cases == ["work from home"]


def test_constraints_merge_from_text(manager):
    updated = manager.apply(ConversationState(), ResolvedEntities(), Intent(), "65 inch tv, must have hdmi 2.1")
    updated = manager.apply(updated, ResolvedEntities(), Intent(), "would like dolby atmos")

    assert updated.constraints.size_inches == 65.0
    assert updated.constraints.must_have == ["hdmi 2.1"]
    assert updated.constraints.nice_to_have == ["dolby atmos"]
    assert updated.customer_intent.key_features == ["hdmi 2.1", "dolby atmos"]


def test_extract_features_normalises_whitespace():
    assert extract_features("Needs HDMI  2.1 and 120 Hz") == ["hdmi 2.1", "120 hz"]


@pytest.mark.asyncio
async def test_update_reads_and_writes_store():
    store = InMemoryConversationStore()
    manager = ContextManager(store)

    updated = await manager.update("c9", ResolvedEntities(active_sku="12345", category="TV"), DEEPDIVE, "")

    saved = await store.get("c9")
    assert updated.conversation_id == "c9"
    assert saved.active_sku == "12345"
    assert saved.active_category == "TV"


@pytest.mark.asyncio
async def test_update_without_store_raises(manager):
    with pytest.raises(RuntimeError):
        await manager.update("c1", ResolvedEntities(), Intent(), "")
