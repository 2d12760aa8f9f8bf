import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the turn pipeline and its collaborators."""
    openai_api_key: Optional[str]
    main_llm_model: str
    main_llm_temperature: float
    query_rewriter_model: str
    query_rewriter_temperature: float
    query_rewriter_max_tokens: int
    summarization_model: str
    summarization_max_tokens: int
    intent_classifier_model: str
    intent_classifier_temperature: float
    intent_classifier_use_llm: bool
    embedding_model: str
    embedding_dim: int
    qdrant_host: str
    qdrant_port: int
    collection_name: str
    max_chunks_after_diversify: int
    min_chunk_score: float
    overfetch_factor: int
    vector_weight: float
    lexical_weight: float
    max_compare_skus: int
    condenser_max_tokens: int
    state_max_conversations: int
    state_ttl_seconds: float
    history_turns_in_prompt: int
    catalog_dir: Path
    stores_file: Path
    inventory_file: Path


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


def load_settings() -> Settings:
    """Build Settings from environment variables (a .env file is honoured)."""
    load_dotenv()

    data_dir = Path(os.getenv("DATA_DIR", str(BASE_DIR / ".." / "data"))).resolve()

    return Settings(
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        main_llm_model=os.getenv("MAIN_LLM_MODEL", "gpt-4o"),
        main_llm_temperature=float(os.getenv("MAIN_LLM_TEMPERATURE", "0.3")),
        query_rewriter_model=os.getenv("QUERY_REWRITER_MODEL", "gpt-4o-mini"),
        query_rewriter_temperature=float(os.getenv("QUERY_REWRITER_TEMPERATURE", "0.2")),
        query_rewriter_max_tokens=int(os.getenv("QUERY_REWRITER_MAX_TOKENS", "600")),
        summarization_model=os.getenv("SUMMARIZATION_MODEL", "gpt-4o-mini"),
        summarization_max_tokens=int(os.getenv("SUMMARIZATION_MAX_TOKENS", "900")),
        intent_classifier_model=os.getenv("INTENT_CLASSIFIER_MODEL", "gpt-4o-mini"),
        intent_classifier_temperature=float(os.getenv("INTENT_CLASSIFIER_TEMPERATURE", "0.1")),
        intent_classifier_use_llm=_env_bool("INTENT_CLASSIFIER_USE_LLM", True),
        embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-large"),
        embedding_dim=int(os.getenv("EMBEDDING_DIM", "3072")),
        qdrant_host=os.getenv("QDRANT_HOST", "localhost"),
        qdrant_port=int(os.getenv("QDRANT_PORT", "6333")),
        collection_name=os.getenv("QDRANT_COLLECTION", "product_chunks"),
        max_chunks_after_diversify=int(os.getenv("MAX_CHUNKS_AFTER_DIVERSIFY", "10")),
        min_chunk_score=float(os.getenv("MIN_CHUNK_SCORE", "0.3")),
        overfetch_factor=int(os.getenv("RETRIEVAL_OVERFETCH_FACTOR", "3")),
        vector_weight=float(os.getenv("HYBRID_VECTOR_WEIGHT", "0.7")),
        lexical_weight=float(os.getenv("HYBRID_LEXICAL_WEIGHT", "0.3")),
        max_compare_skus=int(os.getenv("MAX_COMPARE_SKUS", "5")),
        condenser_max_tokens=int(os.getenv("CONDENSER_MAX_TOKENS", "900")),
        state_max_conversations=int(os.getenv("STATE_MAX_CONVERSATIONS", "1000")),
        state_ttl_seconds=float(os.getenv("STATE_TTL_SECONDS", "86400")),
        history_turns_in_prompt=int(os.getenv("HISTORY_TURNS_IN_PROMPT", "3")),
        catalog_dir=Path(os.getenv("CATALOG_DIR", str(data_dir / "products"))),
        stores_file=Path(os.getenv("STORES_FILE", str(data_dir / "stores.json"))),
        inventory_file=Path(os.getenv("INVENTORY_FILE", str(data_dir / "inventory.json"))),
    )
