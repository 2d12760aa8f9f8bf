import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from store_assistant.data.vectordb_qdrant import VectorDBManager

logger = logging.getLogger(__name__)

CATALOG_FILE_NAMES = ("catalog.json", "products.json")

NAME_FROM_OVERVIEW_RE = re.compile(r'Product[:\s]+([^\n(]+?)(?:\s*\(SKU:|$)', re.IGNORECASE | re.MULTILINE)
NAME_FROM_TITLE_RE = re.compile(r'(?:Name|Title)[:\s]+([^\n(]+?)(?:\s*\(SKU:|$)', re.IGNORECASE | re.MULTILINE)
BRAND_LINE_RE = re.compile(r'Brand[:\s]+([^\n,;]+)', re.IGNORECASE)
MODEL_LINE_RE = re.compile(r'Model[:\s]+([^\n,;]+)', re.IGNORECASE)
CATEGORY_LINE_RE = re.compile(r'(?:Category|Type)[:\s]+([^\n]+)', re.IGNORECASE)
SKU_SUFFIX_RE = re.compile(r'\s*\(?SKU:\s*\d+\)?', re.IGNORECASE)
NOT_A_NAME_RE = re.compile(r'^(?:Features|Specifications|Key|Selling|Points|Category|Brand|SKU)', re.IGNORECASE)


class ProductRecordStore:
    """Structured product records keyed by SKU, loaded from JSON files.

    The directory may hold one `<sku>.json` file per product, or a single
    catalog file containing a list of records.
    """

    def __init__(self, catalog_dir: Path):
        self.catalog_dir = Path(catalog_dir)
        self._records: Optional[Dict[str, Dict[str, Any]]] = None

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]]) -> "ProductRecordStore":
        store = cls(Path("."))
        store._records = {str(r["sku"]): r for r in records if r.get("sku") is not None}
        return store

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._records is not None:
            return self._records

        records: Dict[str, Dict[str, Any]] = {}
        if not self.catalog_dir.is_dir():
            logger.warning(f"Catalog directory '{self.catalog_dir}' not found. Product records unavailable.")
            self._records = records
            return records

        for path in sorted(self.catalog_dir.glob("*.json")):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Skipping unreadable catalog file {path}: {e}")
                continue

            items = data if isinstance(data, list) else [data]
            if path.name in CATALOG_FILE_NAMES and isinstance(data, dict):
                items = data.get("products", [])
            for item in items:
                if isinstance(item, dict) and item.get("sku") is not None:
                    records[str(item["sku"])] = item

        logger.info(f"Loaded {len(records)} product records from {self.catalog_dir}")
        self._records = records
        return records

    async def get_record(self, sku: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the product record for `sku`, or None when unknown."""
        if not sku:
            return None
        record = self._load().get(str(sku))
        if record is None:
            logger.debug(f"No product record for SKU {sku}")
            return None
        return {k: v for k, v in record.items() if k not in ("source_label", "last_parsed_ts")}


class ProductSearchService:
    """Natural-language product search: chunk search grouped into distinct SKUs."""

    def __init__(self, vector_db: VectorDBManager, record_store: Optional[ProductRecordStore] = None):
        self.vector_db = vector_db
        self.record_store = record_store

    @staticmethod
    def _clean_name(name: str) -> str:
        name = re.sub(r'^[-•]\s*', '', name.strip())
        return SKU_SUFFIX_RE.sub('', name).strip()

    def _extract_name(self, title: str, body: str) -> Optional[str]:
        if 'product' in title.lower():
            match = NAME_FROM_OVERVIEW_RE.search(body)
            if match:
                name = self._clean_name(match.group(1))
                if len(name) > 3 and not NOT_A_NAME_RE.match(name):
                    return name

        if title.lower() == 'specifications':
            brand = BRAND_LINE_RE.search(body)
            model = MODEL_LINE_RE.search(body)
            if brand and model:
                return f"{brand.group(1).strip()} {model.group(1).strip()}"
            if model and len(model.group(1).strip()) > 3:
                return model.group(1).strip()

        match = NAME_FROM_TITLE_RE.search(body)
        if match:
            name = self._clean_name(match.group(1))
            if len(name) > 3 and not NOT_A_NAME_RE.match(name):
                return name
        return None

    async def search_products(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Return up to `limit` products as {sku, name, category, price, preview}, most-matched first."""
        try:
            chunks = await self.vector_db.search_chunks(query, top=limit * 5)
        except Exception as e:
            logger.exception(f"Product search failed for query '{query[:50]}': {e}")
            return []

        products: Dict[str, Dict[str, Any]] = {}
        for chunk in chunks:
            sku = chunk.get("sku")
            if not sku:
                continue
            product = products.setdefault(sku, {
                "sku": sku,
                "name": chunk.get("name"),
                "category": chunk.get("category"),
                "price": chunk.get("price"),
                "sections": [],
            })
            title = chunk.get("section_title") or ""
            body = chunk.get("section_body") or ""

            if not product["name"]:
                product["name"] = self._extract_name(title, body)
            if not product["category"]:
                match = CATEGORY_LINE_RE.search(body)
                if match:
                    product["category"] = match.group(1).strip()
            if len(body) > 10:
                product["sections"].append(body[:150].strip())

        if self.record_store is not None:
            for sku, product in products.items():
                if product["name"] and product["category"]:
                    continue
                record = await self.record_store.get_record(sku)
                if record:
                    product["name"] = product["name"] or record.get("name")
                    product["category"] = product["category"] or record.get("category")
                    product["price"] = product["price"] or record.get("current_price") or record.get("list_price")

        ranked = sorted(products.values(), key=lambda p: len(p["sections"]), reverse=True)[:limit]
        results = []
        for product in ranked:
            results.append({
                "sku": product["sku"],
                "name": product["name"] or f"Product {product['sku']}",
                "category": product["category"] or "Unknown",
                "price": product["price"],
                "preview": product["sections"][0] if product["sections"] else "",
            })
        logger.info(f"Product search '{query[:50]}' matched {len(results)} SKUs")
        return results
