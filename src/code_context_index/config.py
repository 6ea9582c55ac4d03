from typing import Literal, Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Relational store; the ANN index file lives next to it
    database_path: str = ".code-index/embeddings.db"
    ann_index_filename: str = "embeddings.ann.idx"

    # ANN index
    similarity_metric: Literal["cosine"] = "cosine"
    ann_max_elements: int = 1_000_000
    ann_capacity_ceiling: int = 16_000_000
    ann_hnsw_m: int = 16
    ann_ef_construction: int = 200
    ann_ef_search: int = 64
    search_oversample_factor: int = 3
    # Rebuild the index once this share of its points has no embedding row
    ann_compact_orphan_ratio: float = 0.5

    # Search defaults
    default_search_limit: int = 5
    default_min_score: float = 0.65

    # Embedding model
    embedding_backend: Literal["http", "local"] = "http"
    embedding_model: str = "text-embedding-3-small"
    embedding_model_base_path: str = ".code-index/models"
    embedding_api_url: str = "https://api.openai.com/v1/embeddings"
    embedding_api_key: SecretStr = SecretStr("")
    embedding_timeout: float = 60.0
    context_length: int = 512
    embedding_pooling: Literal["mean", "cls", "none"] = "mean"
    embedding_normalize: bool = True

    # Concurrency
    max_concurrent_embedding_tasks: Optional[int] = None
    max_embedding_workers: int = 8
    high_memory_model: bool = False
    memory_reserve_gb: float = 4.0
    max_concurrent_files: int = 4

    # Context reconstruction
    structure_score_boost: float = 1.05
    adjacent_score_penalty: float = 0.95
    adjacent_chunk_window: int = 2

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8000

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CODE_INDEX_",
        extra="ignore"
    )

settings = Settings()
