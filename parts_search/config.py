"""Configuration via pydantic-settings (reads from .env or environment)."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "text"

    # PostgreSQL (structured catalog)
    database_url: str = ""

    # Qdrant (semantic index)
    qdrant_url: str = ""
    qdrant_api_key: str = ""
    qdrant_collection: str = "parts"
    qdrant_dense_vector: str = "dense"
    qdrant_sparse_vector: str = "sparse"

    # Neo4j (parts graph)
    neo4j_uri: str = ""
    neo4j_user: str = "neo4j"
    neo4j_password: str = ""
    neo4j_database: str = "neo4j"

    # Embeddings
    openai_api_key: str = ""
    embedding_model: str = "text-embedding-3-large"
    embedding_dimensions: int = 1024

    # Sparse (SPLADE) query encoder; empty disables the sparse prefetch
    sparse_model: str = "naver/splade-cocondenser-ensembledistil"
    sparse_max_length: int = 256
    sparse_top_k_tokens: int = 100
    sparse_min_weight: float = 0.01
    sparse_device: str = "auto"

    # LLM (OpenRouter-compatible endpoint)
    llm_api_key: str = ""
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "anthropic/claude-3.5-haiku"

    # Web search
    serper_api_key: str = ""
    serper_url: str = "https://google.serper.dev/search"
    web_timeout_s: float = 10.0

    # Vehicle mappings and readiness statuses (JSON list) for the CLI
    vehicle_registry_path: str = ""

    # Query understanding
    query_understanding_timeout_ms: int = 2000

    # Keyword search
    keyword_pool_size: int = 100
    keyword_top_k: int = 20

    # Semantic search
    semantic_top_k: int = 20
    semantic_score_threshold: float = 0.5

    # Graph search
    graph_top_k: int = 20
    graph_global_top_k: int = 10

    # Web search
    web_num_results: int = 10
    web_extract_top_n: int = 8
    web_escalation_threshold: int = 3

    # Reranking
    rerank_top_n: int = 30
    rerank_timeout_s: float = 20.0

    # Result envelope
    result_limit: int = 20
    web_result_limit: int = 10
    max_part_intents: int = 5
    group_result_limit: int = 10
    group_web_result_limit: int = 5

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


settings = Settings()
