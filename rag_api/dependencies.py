"""
Process-wide collaborators for the API, built once and injected with Depends.

Tests replace get_rag_deps through app.dependency_overrides.
"""
from dataclasses import dataclass
from functools import lru_cache

from rag_api.config import Settings, settings
from rag_api.logging_config import get_logger
from retrieval.arbiter import CitationArbiter
from retrieval.backends import SearchBackend, build_search_backend
from retrieval.embedding_cache import CachedEmbedder, EmbeddingCache
from retrieval.providers import GenerationProvider, OpenAIEmbeddingProvider, OpenAIGenerationProvider

logger = get_logger(__name__)


@dataclass
class RagDependencies:
    settings: Settings
    backend: SearchBackend
    generator: GenerationProvider
    arbiter: CitationArbiter


def build_rag_deps(cfg: Settings) -> RagDependencies:
    """Wire providers, cache, backend and arbiter from settings."""
    embedder = CachedEmbedder(
        OpenAIEmbeddingProvider(api_key=cfg.openai_api_key, model=cfg.embedding_model),
        EmbeddingCache(capacity=cfg.embed_cache_size, ttl_seconds=cfg.embed_cache_ttl_seconds),
    )
    generator = OpenAIGenerationProvider(
        api_key=cfg.openai_api_key,
        model=cfg.chat_model,
        fallback_model=cfg.openai_fallback_chat_model,
    )
    backend = build_search_backend(cfg, embedder)
    arbiter = CitationArbiter(
        mode=cfg.rag_arbiter,
        generator=generator,
        partial_policy=cfg.rag_arbiter_partial,
    )
    logger.info(
        f"rag_deps ready | backend={backend.name} | arbiter={arbiter.mode} | "
        f"chat_model={cfg.chat_model} | fallback={cfg.openai_fallback_chat_model}"
    )
    return RagDependencies(settings=cfg, backend=backend, generator=generator, arbiter=arbiter)


@lru_cache
def get_rag_deps() -> RagDependencies:
    return build_rag_deps(settings)
