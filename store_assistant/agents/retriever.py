import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Set

from store_assistant.config import Settings
from store_assistant.data.product_store import ProductRecordStore
from store_assistant.data.vectordb_qdrant import VectorDBManager
from store_assistant.models import AlternativeIfOOS, Chunk, MAX_CANDIDATE_SKUS, QueryFilters

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r'[a-z0-9][a-z0-9.+-]*', re.IGNORECASE)
STOPWORDS = {
    "the", "and", "for", "with", "this", "that", "what", "which", "about", "does", "have", "has",
    "are", "was", "can", "you", "your", "our", "how", "any", "good", "tell", "show", "customer",
    "wants", "under", "from", "more", "some", "there", "they", "them", "will", "would", "should",
}
METADATA_FILTER_KEYS = ("category", "brand", "price_max")


def query_terms(text: str) -> Set[str]:
    return {t.lower().rstrip('.') for t in TOKEN_RE.findall(text or "")
            if len(t) > 2 and t.lower() not in STOPWORDS}


def lexical_overlap(terms: Set[str], title: str, body: str) -> float:
    """Share of query terms found in the chunk title or body, in [0, 1]."""
    if not terms:
        return 0.0
    chunk_terms = {t.lower().rstrip('.') for t in TOKEN_RE.findall(f"{title} {body}")}
    return len(terms & chunk_terms) / len(terms)


class RetrievalAgent:
    """
    Hybrid retrieval over product knowledge chunks: vector search per target,
    lexical rescoring, thresholding, deduplication and diversification.
    """

    def __init__(
        self,
        vector_db_manager: VectorDBManager,
        max_chunks: int = 10,
        min_score: float = 0.3,
        overfetch_factor: int = 3,
        vector_weight: float = 0.7,
        lexical_weight: float = 0.3,
        max_concurrency: int = MAX_CANDIDATE_SKUS,
    ):
        self.vector_db_manager = vector_db_manager
        self.max_chunks = max_chunks
        self.min_score = min_score
        self.overfetch_factor = overfetch_factor
        self.vector_weight = vector_weight
        self.lexical_weight = lexical_weight
        self.max_concurrency = max_concurrency

    @classmethod
    def from_settings(cls, settings: Settings, vector_db_manager: VectorDBManager) -> "RetrievalAgent":
        return cls(
            vector_db_manager,
            max_chunks=settings.max_chunks_after_diversify,
            min_score=settings.min_chunk_score,
            overfetch_factor=settings.overfetch_factor,
            vector_weight=settings.vector_weight,
            lexical_weight=settings.lexical_weight,
            max_concurrency=settings.max_compare_skus,
        )

    # --- Search ---

    def _metadata_filters(self, filters: Optional[QueryFilters]) -> Optional[Dict[str, Any]]:
        if filters is None:
            return None
        values = {k: v for k, v in filters.as_dict().items() if k in METADATA_FILTER_KEYS}
        return values or None

    async def _search_targets(
        self,
        search_text: str,
        vector: List[float],
        sku: Optional[str],
        compare_list: List[str],
        filters: Optional[QueryFilters],
        top: int,
    ) -> List[Dict[str, Any]]:
        if len(compare_list) > 1:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def search_one(target: str) -> List[Dict[str, Any]]:
                async with semaphore:
                    return await self.vector_db_manager.search_chunks(
                        search_text, vector=vector, filters={"sku": target}, top=top
                    )

            logger.info(f"Fan-out search across {len(compare_list)} SKUs: {compare_list}")
            batches = await asyncio.gather(*(search_one(target) for target in compare_list))
            return [result for batch in batches for result in batch]

        target = sku or (compare_list[0] if compare_list else None)
        if target:
            return await self.vector_db_manager.search_chunks(
                search_text, vector=vector, filters={"sku": target}, top=top
            )

        return await self.vector_db_manager.search_chunks(
            search_text, vector=vector, filters=self._metadata_filters(filters), top=top
        )

    def _score(self, result: Dict[str, Any], terms: Set[str]) -> Chunk:
        title = result.get("section_title") or ""
        body = result.get("section_body") or ""
        vector_score = float(result.get("score") or 0.0)
        hybrid = self.vector_weight * vector_score + self.lexical_weight * lexical_overlap(terms, title, body)
        return Chunk(
            sku=result.get("sku"),
            section_title=result.get("section_title"),
            section_type=result.get("section_type") or result.get("section_title"),
            section_body=body,
            importance_score=float(result.get("importance_score") or 0.5),
            search_score=round(hybrid, 6),
            chunk_id=result.get("chunk_id"),
        )

    # --- Reranking ---

    @staticmethod
    def deduplicate(chunks: List[Chunk]) -> List[Chunk]:
        """Keep the best-scoring chunk per (sku, section type), sorted by score."""
        best: Dict[tuple, Chunk] = {}
        for chunk in chunks:
            key = (chunk.sku, chunk.section_key)
            if key not in best or chunk.search_score > best[key].search_score:
                best[key] = chunk
        return sorted(best.values(), key=lambda c: c.search_score, reverse=True)

    @staticmethod
    def diversify_compare(chunks: List[Chunk], compare_list: List[str], max_chunks: int) -> List[Chunk]:
        """Round-robin across the compared SKUs, best section first, then fill by score."""
        queues: Dict[str, List[Chunk]] = {sku: [] for sku in compare_list}
        leftovers: List[Chunk] = []
        for chunk in chunks:
            if chunk.sku in queues:
                queues[chunk.sku].append(chunk)
            else:
                leftovers.append(chunk)

        selected: List[Chunk] = []
        while len(selected) < max_chunks and any(queues.values()):
            for sku in compare_list:
                if len(selected) >= max_chunks:
                    break
                if queues[sku]:
                    selected.append(queues[sku].pop(0))

        for chunk in leftovers:
            if len(selected) >= max_chunks:
                break
            selected.append(chunk)
        return selected

    @staticmethod
    def diversify(chunks: List[Chunk], max_chunks: int) -> List[Chunk]:
        """Prefer unseen SKUs or section types while the list is at least half full, then fill by score."""
        selected: List[Chunk] = []
        sections_seen: Set[str] = set()
        skus_seen: Set[Optional[str]] = set()

        for chunk in chunks:
            if len(selected) >= max_chunks:
                break
            is_diverse = chunk.section_key not in sections_seen or chunk.sku not in skus_seen
            if is_diverse or len(selected) < max_chunks / 2:
                selected.append(chunk)
                sections_seen.add(chunk.section_key)
                skus_seen.add(chunk.sku)

        chosen = {(c.sku, c.section_key) for c in selected}
        for chunk in chunks:
            if len(selected) >= max_chunks:
                break
            if (chunk.sku, chunk.section_key) not in chosen:
                selected.append(chunk)
                chosen.add((chunk.sku, chunk.section_key))
        return selected

    # --- Entry points ---

    async def retrieve(
        self,
        sku: Optional[str] = None,
        query: str = "",
        limit: Optional[int] = None,
        filters: Optional[QueryFilters] = None,
        customer_intent_summary: Optional[str] = None,
        compare_list: Optional[List[str]] = None,
    ) -> List[Chunk]:
        """Ranked chunks for the query. Never raises; degrades to a plain vector search, then to []."""
        budget = limit or self.max_chunks
        compare_list = [s for s in (compare_list or []) if s][:self.max_concurrency]
        search_text = f"{query} {customer_intent_summary}".strip() if customer_intent_summary else query
        logger.info(f"Retrieving for sku={sku}, compare={compare_list}, budget={budget}, query='{search_text[:80]}'")

        try:
            vector = await self.vector_db_manager.generate_embedding(search_text)
            raw = await self._search_targets(
                search_text, vector, sku, compare_list, filters, budget * self.overfetch_factor
            )
            terms = query_terms(query)
            scored = [self._score(result, terms) for result in raw]
            above = [c for c in scored if c.search_score >= self.min_score]
            unique = self.deduplicate(above)
            logger.debug(f"Raw {len(raw)} -> above threshold {len(above)} -> unique {len(unique)}")

            if len(compare_list) > 1:
                diversified = self.diversify_compare(unique, compare_list, budget)
            else:
                diversified = self.diversify(unique, budget)
            final = sorted(diversified, key=lambda c: c.search_score, reverse=True)[:budget]

        except Exception as e:
            logger.exception(f"Hybrid retrieval failed, falling back to plain vector search: {e}")
            final = await self._fallback_retrieval(query, sku or (compare_list[0] if compare_list else None), budget)

        if not final and customer_intent_summary:
            logger.info("No chunks survived ranking, returning customer intent placeholder")
            final = [Chunk(
                sku=sku,
                section_title="Customer Intent",
                section_type="customer_intent",
                section_body=customer_intent_summary,
                importance_score=0.0,
                search_score=0.0,
                chunk_id=None,
            )]

        logger.info(f"Retrieved {len(final)} chunks across SKUs {sorted({str(c.sku) for c in final})}")
        return final

    async def _fallback_retrieval(self, query: str, sku: Optional[str], limit: int) -> List[Chunk]:
        try:
            results = await self.vector_db_manager.search_chunks(
                query, filters={"sku": sku} if sku else None, top=limit
            )
        except Exception as e:
            logger.exception(f"Fallback retrieval failed as well: {e}")
            return []
        return [
            Chunk(
                sku=r.get("sku"),
                section_title=r.get("section_title"),
                section_type=r.get("section_type") or r.get("section_title"),
                section_body=r.get("section_body") or "",
                search_score=float(r.get("score") or 0.0),
                chunk_id=r.get("chunk_id"),
            )
            for r in results
        ]

    async def find_alternative(self, sku: str, record_store: ProductRecordStore) -> Optional[AlternativeIfOOS]:
        """Nearest different SKU by vector similarity, for out-of-stock products."""
        try:
            primary = await record_store.get_record(sku)
            if not primary:
                return None
            query = f"{primary.get('name', '')} {primary.get('category', '')}".strip()
            results = await self.vector_db_manager.search_chunks(query, top=10)
            alt_sku = next((r["sku"] for r in results if r.get("sku") and r["sku"] != str(sku)), None)
            if not alt_sku:
                return None

            alternative = await record_store.get_record(alt_sku) or {}
            alt_category = alternative.get("category") or primary.get("category") or "product"
            if primary.get("category") and alternative.get("category") and primary["category"] != alternative["category"]:
                key_diff = f"Different category: {primary['category']} vs {alternative['category']}"
            else:
                key_diff = "Similar specifications with minor differences"
            return AlternativeIfOOS(
                alt_sku=alt_sku,
                alt_name=alternative.get("name") or f"Product {alt_sku}",
                why_this_alt=f"Similar {alt_category} with comparable features",
                key_diff=key_diff,
            )
        except Exception as e:
            logger.exception(f"Error finding alternative for SKU {sku}: {e}")
            return None
