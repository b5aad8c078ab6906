"""
Retrieval core: vector index, embedding cache, scoring, multi-query merge,
MMR diversification, context assembly and citation arbitration.
"""
from retrieval.arbiter import FALLBACK_MESSAGE, CitationArbiter, parse_sources_line
from retrieval.context import assemble_context, context_sources, format_context_blocks
from retrieval.embedding_cache import CachedEmbedder, EmbeddingCache
from retrieval.errors import (
    EmbedDimMismatch,
    EmbeddingProviderError,
    ErrorKind,
    GenerationError,
    GenerationTimeout,
    IndexInvalid,
    IndexNotFound,
    RateLimited,
    RetrievalError,
)
from retrieval.index_store import IndexStore, VectorIndex
from retrieval.merger import merge_max
from retrieval.mmr import mmr_select
from retrieval.models import ArbitrationResult, Evidence, IndexedDocument, ScoredCandidate, SearchRequest
from retrieval.scoring import cosine

__all__ = [
    "FALLBACK_MESSAGE",
    "CitationArbiter",
    "parse_sources_line",
    "assemble_context",
    "context_sources",
    "format_context_blocks",
    "CachedEmbedder",
    "EmbeddingCache",
    "EmbedDimMismatch",
    "EmbeddingProviderError",
    "ErrorKind",
    "GenerationError",
    "GenerationTimeout",
    "IndexInvalid",
    "IndexNotFound",
    "RateLimited",
    "RetrievalError",
    "IndexStore",
    "VectorIndex",
    "merge_max",
    "mmr_select",
    "ArbitrationResult",
    "Evidence",
    "IndexedDocument",
    "ScoredCandidate",
    "SearchRequest",
    "cosine",
]
