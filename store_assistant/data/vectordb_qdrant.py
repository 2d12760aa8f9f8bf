import logging
from typing import List, Dict, Any, Optional

from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.models import Distance, VectorParams, Filter, FieldCondition, MatchValue, Range

from openai import AsyncOpenAI

from store_assistant.config import Settings

logger = logging.getLogger(__name__)

# --- Constants ---
QDRANT_HOST = "localhost"
QDRANT_PORT = 6333
COLLECTION_NAME = "product_chunks"
EMBEDDING_DIM = 3072
EMBEDDING_MODEL = "text-embedding-3-large"

# Payload keys matched exactly; numeric ceilings become range conditions
EXACT_FILTER_KEYS = ("sku", "category", "brand", "section_type")
RANGE_FILTER_KEYS = {"price_max": "price"}
CHUNK_PAYLOAD_KEYS = ("sku", "section_title", "section_type", "section_body", "importance_score",
                      "chunk_id", "category", "brand", "name", "price")


class VectorDBManager:
    """Manages searches against the Qdrant collection of product knowledge chunks"""

    def __init__(
        self,
        openai_client: AsyncOpenAI,
        qdrant_host: str = QDRANT_HOST,
        qdrant_port: int = QDRANT_PORT,
        collection_name: str = COLLECTION_NAME,
        embedding_model: str = EMBEDDING_MODEL,
        embedding_dim: int = EMBEDDING_DIM,
        client: Optional[AsyncQdrantClient] = None,
    ):
        self.client = client or AsyncQdrantClient(host=qdrant_host, port=qdrant_port)
        self.openai_client = openai_client
        self.collection_name = collection_name
        self.embedding_model = embedding_model
        self.embedding_dim = embedding_dim
        self._collection_checked = False

    @classmethod
    def from_settings(cls, settings: Settings, openai_client: AsyncOpenAI) -> "VectorDBManager":
        return cls(
            openai_client,
            qdrant_host=settings.qdrant_host,
            qdrant_port=settings.qdrant_port,
            collection_name=settings.collection_name,
            embedding_model=settings.embedding_model,
            embedding_dim=settings.embedding_dim,
        )

    async def _ensure_collection(self):
        """Ensure the collection exists in Qdrant"""
        if self._collection_checked:
            return
        try:
            collections = await self.client.get_collections()
            if self.collection_name not in [c.name for c in collections.collections]:
                logger.info(f"Collection '{self.collection_name}' not found. Creating...")
                await self.client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=VectorParams(size=self.embedding_dim, distance=Distance.COSINE)
                )
                logger.info(f"Created new collection: {self.collection_name}")
            else:
                logger.info(f"Using existing collection: {self.collection_name}")
            self._collection_checked = True
        except Exception as e:
            logger.exception(f"Error ensuring Qdrant collection '{self.collection_name}': {e}")
            raise

    async def generate_embedding(self, text: str) -> List[float]:
        """Generate an embedding for the given text using OpenAI"""
        if not text:
            logger.warning("Attempted to generate embedding for empty text.")
            return [0.0] * self.embedding_dim

        try:
            response = await self.openai_client.embeddings.create(
                model=self.embedding_model,
                input=text
            )
            return response.data[0].embedding
        except Exception as e:
            logger.exception(f"Error generating OpenAI embedding for text snippet '{text[:100]}...': {str(e)}")
            raise

    def _build_qdrant_filter(self, filters: Optional[Dict[str, Any]]) -> Optional[models.Filter]:
        """Converts a simple key-value filter dict to a Qdrant Filter object."""
        if not filters:
            return None

        must_conditions = []
        for key, value in filters.items():
            if value is None:
                continue
            if key in RANGE_FILTER_KEYS and isinstance(value, (int, float)):
                must_conditions.append(
                    FieldCondition(key=RANGE_FILTER_KEYS[key], range=Range(lte=float(value)))
                )
            elif key in EXACT_FILTER_KEYS and isinstance(value, (str, int, float, bool)):
                must_conditions.append(
                    FieldCondition(key=key, match=MatchValue(value=value))
                )
            else:
                logger.warning(f"Unsupported filter for key '{key}': {type(value)}. Skipping this filter condition.")

        if not must_conditions:
            return None

        return Filter(must=must_conditions)

    async def search_chunks(
        self,
        query_text: str,
        vector: Optional[List[float]] = None,
        filters: Optional[Dict[str, Any]] = None,
        top: int = 10,
    ) -> List[Dict[str, Any]]:
        """Similarity search over chunks. Results carry the chunk payload fields plus `score`.

        Unlike the retrieval stages built on top of it, this raises on failure.
        """
        await self._ensure_collection()

        if vector is None:
            if not query_text:
                logger.warning("Search query is empty.")
                return []
            vector = await self.generate_embedding(query_text)

        qdrant_filter = self._build_qdrant_filter(filters)
        logger.debug(f"Qdrant search: top={top}, filter={qdrant_filter.model_dump_json() if qdrant_filter else 'None'}")

        response = await self.client.query_points(
            collection_name=self.collection_name,
            query=vector,
            query_filter=qdrant_filter,
            limit=top,
            with_payload=True,
            with_vectors=False,
        )

        results = []
        for hit in response.points:
            payload = hit.payload or {}
            result = {key: payload.get(key) for key in CHUNK_PAYLOAD_KEYS}
            result["chunk_id"] = result["chunk_id"] or str(hit.id)
            result["sku"] = str(result["sku"]) if result["sku"] is not None else None
            result["score"] = float(hit.score or 0.0)
            results.append(result)

        logger.info(f"Found {len(results)} chunks via Qdrant for query: '{query_text[:50]}...' with filters: {filters}")
        return results

    async def close(self):
        """Close the Qdrant client connection."""
        await self.client.close()
        logger.info("Qdrant client closed.")
