import json

import pytest

from conftest import FakeVectorDB
from store_assistant.data.product_store import ProductRecordStore, ProductSearchService


@pytest.mark.asyncio
async def test_record_store_strips_internal_fields(record_store):
    record = await record_store.get_record("12345")
    assert record["name"].startswith("Samsung")
    assert "source_label" not in record
    assert await record_store.get_record("00000") is None
    assert await record_store.get_record(None) is None


@pytest.mark.asyncio
async def test_record_store_reads_per_sku_files_and_catalog_files(tmp_path):
    (tmp_path / "12345.json").write_text(json.dumps({"sku": 12345, "name": "Samsung TV"}))
    (tmp_path / "catalog.json").write_text(json.dumps({"products": [{"sku": "34567", "name": "Dell Laptop"}]}))
    (tmp_path / "broken.json").write_text("{not json")

    store = ProductRecordStore(tmp_path)

    assert (await store.get_record("12345"))["name"] == "Samsung TV"
    assert (await store.get_record("34567"))["name"] == "Dell Laptop"
    assert await store.get_record("broken") is None


@pytest.mark.asyncio
async def test_missing_catalog_dir_is_empty(tmp_path):
    store = ProductRecordStore(tmp_path / "missing")
    assert await store.get_record("12345") is None


@pytest.mark.asyncio
async def test_search_groups_chunks_by_sku(product_search):
    products = await product_search.search_products("laptop", limit=3)

    assert [p["sku"] for p in products] == ["34567", "45678", "56789"]
    assert products[0]["name"] == "Dell Inspiron 15 Laptop"
    assert products[0]["category"] == "Laptop"
    assert products[0]["preview"]


@pytest.mark.asyncio
async def test_search_extracts_names_from_chunk_text(record_store):
    bare_chunks = [{
        "sku": "77777", "section_title": "Product Overview",
        "section_body": "Product: Acme Soundbar 300 (SKU: 77777)\nCategory: Audio", "score": 0.9,
    }]
    service = ProductSearchService(FakeVectorDB(bare_chunks))

    products = await service.search_products("soundbar")

    assert products == [{"sku": "77777", "name": "Acme Soundbar 300", "category": "Audio",
                         "price": None, "preview": "Product: Acme Soundbar 300 (SKU: 77777)\nCategory: Audio"}]


@pytest.mark.asyncio
async def test_search_failure_returns_empty():
    assert await ProductSearchService(FakeVectorDB(fail=True)).search_products("tv") == []
