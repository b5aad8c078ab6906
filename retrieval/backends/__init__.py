"""
Search backends.

Available backends:
- LocalIndex: exhaustive cosine scan over a local index.json artifact
- QdrantVectorStore: remote Qdrant collection
"""
from retrieval.backends.base import SearchBackend
from retrieval.backends.local_index import LocalIndex
from retrieval.backends.qdrant_store import QdrantVectorStore
from retrieval.embedding_cache import CachedEmbedder
from retrieval.index_store import IndexStore

__all__ = [
    "SearchBackend",
    "LocalIndex",
    "QdrantVectorStore",
    "build_search_backend",
]


def build_search_backend(settings, embedder: CachedEmbedder) -> SearchBackend:
    """
    Create the backend selected by SEARCH_BACKEND.

    Called once at process start.
    """
    if settings.search_backend == "local":
        return LocalIndex(
            IndexStore(settings.vector_index_path),
            embedder,
            provider_configured=bool(settings.openai_api_key),
        )
    if settings.search_backend == "qdrant":
        from qdrant_client import QdrantClient

        client = QdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
        return QdrantVectorStore(
            client,
            settings.qdrant_collection,
            embedder,
            embedding_model=settings.embedding_model,
        )
    raise ValueError(f"Unknown search backend: {settings.search_backend}. Expected 'local' or 'qdrant'")
