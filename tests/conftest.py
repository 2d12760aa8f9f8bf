import re
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from pydantic_ai.messages import ModelMessage, ModelResponse, TextPart
from pydantic_ai.models.function import AgentInfo, FunctionModel

from store_assistant.config import load_settings
from store_assistant.data.availability import AvailabilityService
from store_assistant.data.conversation_store import InMemoryConversationStore
from store_assistant.data.product_store import ProductRecordStore, ProductSearchService

WORD_RE = re.compile(r'[a-z0-9.]+')


PRODUCT_RECORDS = [
    {
        "sku": "12345",
        "name": "Samsung 65\" QLED Gaming TV",
        "brand": "Samsung",
        "category": "TV",
        "current_price": 1999.0,
        "key_features": ["120Hz refresh rate", "HDMI 2.1", "QLED panel"],
        "selling_points": ["Great for next-gen consoles", "Bright enough for sunny lounges"],
        "recommended_attachments": [
            {"sku": "90001", "name": "Premium HDMI 2.1 Cable", "why_sell": "Unlocks 4K 120Hz from consoles"},
        ],
        "source_label": "catalog-feed",
    },
    {
        "sku": "23456",
        "name": "LG 55\" OLED TV",
        "brand": "LG",
        "category": "TV",
        "current_price": 2499.0,
        "key_features": ["OLED panel", "Dolby Vision"],
    },
    {
        "sku": "34567",
        "name": "Dell Inspiron 15 Laptop",
        "brand": "Dell",
        "category": "Laptop",
        "current_price": 899.0,
        "key_features": ["16GB RAM", "512GB SSD"],
    },
    {
        "sku": "45678",
        "name": "Lenovo IdeaPad 5 Laptop",
        "brand": "Lenovo",
        "category": "Laptop",
        "current_price": 999.0,
        "key_features": ["Backlit keyboard", "All-day battery"],
    },
    {
        "sku": "56789",
        "name": "HP Pavilion 14 Laptop",
        "brand": "HP",
        "category": "Laptop",
        "current_price": 949.0,
        "key_features": ["Lightweight", "USB-C charging"],
    },
]


def _chunk(sku: str, n: int, title: str, body: str, **extra) -> Dict[str, Any]:
    record = next(r for r in PRODUCT_RECORDS if r["sku"] == sku)
    chunk = {
        "sku": sku,
        "section_title": title,
        "section_type": title.lower().replace(" ", "_"),
        "section_body": body,
        "importance_score": 0.8,
        "chunk_id": f"{sku}-{n}",
        "category": record["category"],
        "brand": record["brand"],
        "name": record["name"],
        "price": record["current_price"],
    }
    chunk.update(extra)
    return chunk


CHUNKS = [
    _chunk("12345", 1, "Product Overview", "Product: Samsung 65\" QLED Gaming TV (SKU: 12345). A bright QLED tv built for gaming."),
    _chunk("12345", 2, "Gaming", "Supports 120Hz refresh rate and HDMI 2.1 for next-gen consoles. Low input lag game mode for gaming."),
    _chunk("12345", 3, "Specifications", "65 inch 4K QLED display. Four HDMI ports. Dolby Atmos sound."),
    _chunk("12345", 4, "Warranty", "Covered by a 2-year warranty against manufacturing faults."),
    _chunk("23456", 1, "Product Overview", "Product: LG 55\" OLED TV (SKU: 23456). An OLED tv with deep blacks for movies."),
    _chunk("23456", 2, "Picture", "OLED panel with Dolby Vision and perfect blacks in dark rooms."),
    _chunk("34567", 1, "Product Overview", "Product: Dell Inspiron 15 Laptop (SKU: 34567). Everyday laptop for work and study."),
    _chunk("34567", 2, "Performance", "16GB RAM and 512GB SSD keep this laptop quick for multitasking."),
    _chunk("34567", 3, "Display", "15.6 inch Full HD laptop screen with an anti-glare finish."),
    _chunk("34567", 4, "Warranty", "This laptop carries a 1-year manufacturer warranty."),
    _chunk("45678", 1, "Product Overview", "Product: Lenovo IdeaPad 5 Laptop (SKU: 45678). Slim laptop with all-day battery."),
    _chunk("45678", 2, "Keyboard", "Backlit keyboard and a precise trackpad make this laptop comfortable for long sessions."),
    _chunk("45678", 3, "Performance", "Octa-core processor and 16GB RAM in a slim laptop chassis."),
    _chunk("45678", 4, "Warranty", "This laptop carries a 1-year manufacturer warranty."),
    _chunk("56789", 1, "Product Overview", "Product: HP Pavilion 14 Laptop (SKU: 56789). Lightweight laptop for students."),
    _chunk("56789", 2, "Charging", "USB-C charging and fast charge support on this laptop."),
    _chunk("56789", 3, "Display", "14 inch Full HD laptop display with slim bezels."),
    _chunk("56789", 4, "Warranty", "This laptop carries a 1-year manufacturer warranty."),
]

STORES = [
    {"store_id": "akl-central", "name": "Auckland Central", "coordinates": {"latitude": -36.8485, "longitude": 174.7633}},
    {"store_id": "akl-newmarket", "name": "Newmarket", "coordinates": {"latitude": -36.8697, "longitude": 174.7788}},
    {"store_id": "akl-albany", "name": "Albany", "coordinates": {"latitude": -36.7275, "longitude": 174.7003}},
    {"store_id": "hamilton", "name": "Hamilton", "coordinates": {"latitude": -37.7870, "longitude": 175.2793}},
]

INVENTORY = {
    "akl-central": {"12345": 4, "23456": 0, "34567": 2},
    "akl-newmarket": {"12345": 1, "23456": 3},
    "akl-albany": {"23456": 2},
    "hamilton": {"23456": 7},
}


class FakeVectorDB:
    """In-memory stand-in for VectorDBManager: word-overlap scoring and exact payload filters."""

    def __init__(self, chunks: Optional[List[Dict[str, Any]]] = None, fail: bool = False):
        self.chunks = list(CHUNKS if chunks is None else chunks)
        self.fail = fail
        self.searches: List[Dict[str, Any]] = []
        self.closed = False

    async def generate_embedding(self, text: str) -> List[float]:
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        return [0.1] * 8

    async def search_chunks(self, query_text: str, vector=None, filters=None, top: int = 10) -> List[Dict[str, Any]]:
        self.searches.append({"query": query_text, "filters": filters, "top": top})
        if self.fail:
            raise RuntimeError("vector index unavailable")

        words = set(WORD_RE.findall((query_text or "").lower()))
        results = []
        for chunk in self.chunks:
            if filters and not self._matches(chunk, filters):
                continue
            chunk_words = set(WORD_RE.findall(f"{chunk['section_title']} {chunk['section_body']}".lower()))
            overlap = len(words & chunk_words) / len(words) if words else 0.0
            results.append(dict(chunk, score=round(0.5 + 0.5 * overlap, 4)))
        results.sort(key=lambda r: r["score"], reverse=True)
        return results[:top]

    @staticmethod
    def _matches(chunk: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for key, value in filters.items():
            if value is None:
                continue
            if key == "price_max":
                if chunk.get("price") is None or chunk["price"] > value:
                    return False
            elif chunk.get(key) != value:
                return False
        return True

    async def close(self):
        self.closed = True


def last_user_prompt(messages: List[ModelMessage]) -> str:
    for part in messages[-1].parts:
        if part.part_kind == "user-prompt":
            return part.content
    return ""


def text_model(reply: Union[str, Callable[[str], str]], calls: Optional[List[str]] = None) -> FunctionModel:
    """A FunctionModel that answers every prompt with `reply` (or `reply(prompt)`)."""

    def respond(messages: List[ModelMessage], info: AgentInfo) -> ModelResponse:
        prompt = last_user_prompt(messages)
        if calls is not None:
            calls.append(prompt)
        text = reply(prompt) if callable(reply) else reply
        return ModelResponse(parts=[TextPart(text)])

    return FunctionModel(respond)


def failing_model(calls: Optional[List[str]] = None) -> FunctionModel:
    def respond(messages: List[ModelMessage], info: AgentInfo) -> ModelResponse:
        if calls is not None:
            calls.append(last_user_prompt(messages))
        raise RuntimeError("model endpoint down")

    return FunctionModel(respond)


@pytest.fixture
def vector_db():
    return FakeVectorDB()


@pytest.fixture
def record_store():
    return ProductRecordStore.from_records(PRODUCT_RECORDS)


@pytest.fixture
def product_search(vector_db, record_store):
    return ProductSearchService(vector_db, record_store)


@pytest.fixture
def availability_service():
    return AvailabilityService(STORES, INVENTORY)


@pytest.fixture
def state_store():
    return InMemoryConversationStore(max_entries=100, ttl_seconds=3600)


@pytest.fixture
def settings():
    return replace(load_settings(), openai_api_key=None, intent_classifier_use_llm=True, history_turns_in_prompt=3)
