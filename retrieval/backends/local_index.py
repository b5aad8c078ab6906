"""
Local exhaustive-scan backend over the index.json artifact.

Pipeline per search:
    variants -> embed (cache-checked) -> dimension check -> score every
    document for every variant -> merge by max -> MMR (or plain head) ->
    min_score filter -> Evidence
"""
import asyncio
import time

from rag_api.logging_config import get_logger
from retrieval.backends.base import SearchBackend, apply_min_score, to_evidence
from retrieval.embedding_cache import CachedEmbedder
from retrieval.errors import EmbedDimMismatch, EmbeddingProviderError
from retrieval.index_store import IndexStore
from retrieval.merger import dedupe_variants, merge_max
from retrieval.mmr import mmr_select
from retrieval.models import Evidence, SearchRequest

logger = get_logger(__name__)


class LocalIndex(SearchBackend):
    """Search backend reading vectors from a local IndexStore."""

    name = "local"

    def __init__(self, store: IndexStore, embedder: CachedEmbedder, provider_configured: bool = True):
        self.store = store
        self.embedder = embedder
        self.provider_configured = provider_configured

    def ensure_ready(self) -> dict:
        if not self.provider_configured:
            raise EmbeddingProviderError("Embedding provider is not configured (OPENAI_API_KEY missing)")
        return self.stats()

    def reload(self) -> dict:
        return {**self.store.reload().stats(), "backend": self.name}

    def stats(self) -> dict:
        return {
            **self.store.stats(),
            "backend": self.name,
            "cache": self.embedder.cache.stats(),
        }

    async def search(self, request: SearchRequest) -> list[Evidence]:
        # One snapshot for the whole request, even if a reload swaps it meanwhile.
        # The first load parses the whole artifact, so it runs in a worker thread.
        if self.store.loaded:
            snapshot = self.store.ensure()
        else:
            snapshot = await asyncio.to_thread(self.store.ensure)

        variants = dedupe_variants(request.query_variants)
        if not variants:
            return []

        query_vectors = await asyncio.gather(*(self.embedder.embed(v) for v in variants))

        for vec in query_vectors:
            if len(vec) != snapshot.dim:
                raise EmbedDimMismatch(
                    index_dim=snapshot.dim,
                    query_dim=len(vec),
                    index_model=snapshot.model,
                )

        started = time.perf_counter()
        top_k = max(1, int(request.top_k))
        ranked = merge_max(query_vectors, snapshot.vectors)

        if request.use_mmr and len(ranked) > top_k:
            picked = mmr_select(query_vectors[0], ranked, snapshot.vectors, top_k, request.mmr_lambda)
        else:
            picked = ranked[:top_k]

        results = [
            to_evidence(
                snapshot.docs[c.doc_index].text,
                c.score,
                snapshot.docs[c.doc_index].metadata,
                request.preview_length,
            )
            for c in picked
        ]
        results = apply_min_score(results, request.min_score)

        logger.info(
            f"search | backend={self.name} | variants={len(variants)} | docs={len(snapshot.docs)} | "
            f"top_k={top_k} | mmr={request.use_mmr} | returned={len(results)} | "
            f"top_score={results[0].score if results else None} | "
            f"ms={int((time.perf_counter() - started) * 1000)}"
        )
        return results
