"""
Remote search backend over a Qdrant collection.

Each query variant is sent as its own query_points call; results are merged
by keeping the best score per point id. With use_mmr the point vectors are
fetched too and MMR runs over the merged pool, as in the local backend.
"""
import asyncio
import time

from qdrant_client import QdrantClient

from rag_api.logging_config import get_logger
from retrieval.backends.base import SearchBackend, apply_min_score, to_evidence
from retrieval.embedding_cache import CachedEmbedder
from retrieval.errors import EmbedDimMismatch, IndexNotFound
from retrieval.merger import dedupe_variants
from retrieval.mmr import candidate_pool_size, mmr_select
from retrieval.models import Evidence, ScoredCandidate, SearchRequest

logger = get_logger(__name__)


def _vector_size(info) -> int | None:
    """Vector size from a collection info, for the unnamed-vector layout."""
    params = getattr(getattr(info, "config", None), "params", None)
    vectors = getattr(params, "vectors", None)
    return getattr(vectors, "size", None)


class QdrantVectorStore(SearchBackend):
    """Search backend querying a Qdrant collection with payload {text, source, ...}."""

    name = "qdrant"

    def __init__(
        self,
        client: QdrantClient,
        collection: str,
        embedder: CachedEmbedder,
        embedding_model: str = "",
    ):
        self.client = client
        self.collection = collection
        self.embedder = embedder
        self.embedding_model = embedding_model

    def collection_exists(self) -> bool:
        """Check if the configured collection exists."""
        collections = self.client.get_collections().collections
        return self.collection in [c.name for c in collections]

    def ensure_ready(self) -> dict:
        return self.stats()

    def reload(self) -> dict:
        # Nothing is held in memory: the collection is always live
        return self.stats()

    def stats(self) -> dict:
        if not self.collection_exists():
            raise IndexNotFound(f"qdrant://{self.collection}")
        info = self.client.get_collection(self.collection)
        return {
            "backend": self.name,
            "model": self.embedding_model,
            "dim": _vector_size(info),
            "doc_count": info.points_count,
            "vector_count": info.points_count,
            "created_at": None,
            "path": f"qdrant://{self.collection}",
            "cache": self.embedder.cache.stats(),
        }

    def _query(self, vector: list[float], limit: int, with_vectors: bool):
        resp = self.client.query_points(
            collection_name=self.collection,
            query=vector,
            limit=limit,
            with_payload=True,
            with_vectors=with_vectors,
        )
        return resp.points

    async def search(self, request: SearchRequest) -> list[Evidence]:
        variants = dedupe_variants(request.query_variants)
        if not variants:
            return []

        if not await asyncio.to_thread(self.collection_exists):
            raise IndexNotFound(f"qdrant://{self.collection}")
        info = await asyncio.to_thread(self.client.get_collection, self.collection)
        dim = _vector_size(info)

        query_vectors = await asyncio.gather(*(self.embedder.embed(v) for v in variants))
        if dim is not None:
            for vec in query_vectors:
                if len(vec) != dim:
                    raise EmbedDimMismatch(index_dim=dim, query_dim=len(vec), index_model=self.embedding_model)

        started = time.perf_counter()
        top_k = max(1, int(request.top_k))
        limit = candidate_pool_size(top_k)

        # point id -> (best score, payload, vector); dict keeps first-seen order for ties
        best: dict = {}
        for vec in query_vectors:
            points = await asyncio.to_thread(self._query, vec, limit, request.use_mmr)
            for p in points:
                current = best.get(p.id)
                if current is None or p.score > current[0]:
                    best[p.id] = (float(p.score), p.payload or {}, p.vector)

        pool = sorted(best.values(), key=lambda item: -item[0])
        vectors = [item[2] for item in pool]
        mmr = request.use_mmr and len(pool) > top_k and all(isinstance(v, list) for v in vectors)
        if mmr:
            ranked = [ScoredCandidate(doc_index=i, score=item[0]) for i, item in enumerate(pool)]
            picked = [
                pool[c.doc_index]
                for c in mmr_select(query_vectors[0], ranked, vectors, top_k, request.mmr_lambda)
            ]
        else:
            picked = pool[:top_k]

        results = []
        for score, payload, _ in picked:
            metadata = {k: v for k, v in payload.items() if k != "text"}
            results.append(to_evidence(str(payload.get("text") or ""), score, metadata, request.preview_length))
        results = apply_min_score(results, request.min_score)

        logger.info(
            f"search | backend={self.name} | collection={self.collection} | variants={len(variants)} | "
            f"pool={len(pool)} | mmr={mmr} | top_k={top_k} | returned={len(results)} | "
            f"ms={int((time.perf_counter() - started) * 1000)}"
        )
        return results
