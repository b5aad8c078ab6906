from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Settings for the evidence RAG service.

    All settings can be configured via environment variables or .env file.
    """

    # Read from .env and ignore unknown vars
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # OpenAI settings (embeddings + generation)
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_embedding_model: str = Field(
        default="text-embedding-3-small",
        alias="OPENAI_EMBEDDING_MODEL",
    )
    openai_chat_model: str = Field(
        default="gpt-4o-mini",
        alias="OPENAI_CHAT_MODEL",
    )
    openai_fallback_chat_model: str | None = Field(
        default=None,
        alias="OPENAI_FALLBACK_CHAT_MODEL",
        description="Chat model tried only when the primary model is rate limited",
    )

    # Search backend selection (resolved once at startup)
    search_backend: Literal["local", "qdrant"] = Field(default="local", alias="SEARCH_BACKEND")
    vector_index_path: str = Field(
        default="vectorstore/index.json",
        alias="VECTOR_INDEX_PATH",
    )

    # Qdrant settings (SEARCH_BACKEND=qdrant)
    qdrant_url: str = Field(default="http://localhost:6333", alias="QDRANT_URL")
    qdrant_api_key: str | None = Field(default=None, alias="QDRANT_API_KEY")
    qdrant_collection: str = Field(default="knowledge_base", alias="QDRANT_COLLECTION")

    # Retrieval settings
    rag_top_k: int = Field(default=3, alias="RAG_TOP_K")
    rag_min_score: float | None = Field(
        default=None,
        alias="RAG_MIN_SCORE",
        description="Inclusive score threshold; blank disables filtering",
    )
    rag_qvariants: int = Field(default=1, alias="RAG_QVARIANTS")
    rag_preview_length: int = Field(default=260, alias="RAG_PREVIEW_LENGTH")
    mmr_enabled: bool = Field(default=True, alias="MMR_ENABLED")
    mmr_lambda: float = Field(default=0.7, ge=0.0, le=1.0, alias="MMR_LAMBDA")
    rag_max_context_chars: int = Field(default=8000, alias="RAG_MAX_CONTEXT_CHARS")

    # Citation arbiter
    rag_arbiter: Literal["off", "rules", "llm"] = Field(default="rules", alias="RAG_ARBITER")
    rag_arbiter_partial: Literal["reject", "strip"] = Field(
        default="reject",
        alias="RAG_ARBITER_PARTIAL",
        description="Rules mode: reject the whole draft or strip unknown citations",
    )

    # Query embedding cache
    embed_cache_size: int = Field(default=200, ge=1, alias="EMBED_CACHE_SIZE")
    embed_cache_ttl_seconds: float = Field(default=30 * 60, gt=0, alias="EMBED_CACHE_TTL_SECONDS")

    # Deadlines and streaming
    request_timeout_seconds: float = Field(default=45.0, gt=0, alias="REQUEST_TIMEOUT_SECONDS")
    stream_split: Literal["chunk", "word", "char"] = Field(default="chunk", alias="STREAM_SPLIT")
    stream_delay_ms: int = Field(default=0, ge=0, alias="STREAM_DELAY_MS")
    stream_heartbeat_seconds: float = Field(default=15.0, alias="STREAM_HEARTBEAT_SECONDS")

    # Knowledge base (read-only file access + index builder)
    kb_dir: str = Field(default="knowledge_base", alias="KB_DIR")
    chunk_size: int = Field(default=800, alias="CHUNK_SIZE")
    chunk_overlap: int = Field(default=150, alias="CHUNK_OVERLAP")
    max_chars_per_chunk: int = Field(default=8000, alias="MAX_CHARS_PER_CHUNK")
    embed_batch: int = Field(default=128, ge=1, alias="EMBED_BATCH")

    # API Security
    api_key: str | None = Field(
        default=None,
        alias="API_KEY",
        description="API key for the administrative /kb/reload endpoint",
    )
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        alias="CORS_ORIGINS",
    )
    rate_limit_ask: str = Field(
        default="30/minute",
        alias="RATE_LIMIT_ASK",
        description="Rate limit for /ask endpoints (e.g., 30/minute)",
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Error reporting (disabled without a DSN)
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")
    sentry_environment: str = Field(default="dev", alias="SENTRY_ENVIRONMENT")
    sentry_traces_sample_rate: float = Field(default=0.0, ge=0.0, le=1.0, alias="SENTRY_TRACES_SAMPLE_RATE")

    @field_validator("rag_min_score", mode="before")
    @classmethod
    def _blank_min_score(cls, v):
        # An empty RAG_MIN_SCORE disables the threshold
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v

    @field_validator("sentry_dsn", "sentry_traces_sample_rate", mode="before")
    @classmethod
    def _blank_is_default(cls, v, info):
        if isinstance(v, str) and not v.strip():
            return None if info.field_name == "sentry_dsn" else 0.0
        return v

    @field_validator("rag_top_k")
    @classmethod
    def _clamp_top_k(cls, v: int) -> int:
        return max(1, min(10, v))

    @field_validator("rag_qvariants")
    @classmethod
    def _clamp_qvariants(cls, v: int) -> int:
        return max(1, min(3, v))

    @field_validator("rag_max_context_chars")
    @classmethod
    def _clamp_context(cls, v: int) -> int:
        return max(2000, min(40000, v))

    # ---- Compatibility properties ----

    @property
    def embedding_model(self) -> str:
        return self.openai_embedding_model

    @property
    def chat_model(self) -> str:
        return self.openai_chat_model


settings = Settings()
