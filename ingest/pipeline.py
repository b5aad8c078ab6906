"""
Index builder: knowledge-base files -> index.json artifact.

Features:
- Incremental: unchanged chunks reuse their previous vector (keyed by
  fullPath + chunk number + content hash), only new text is embedded
- Deterministic output order (source, chunk)
- Atomic write, so a running service reloading the file never sees a
  half-written artifact
- Optional push of the same chunks to a Qdrant collection
"""
import hashlib
import json
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from rag_api.config import settings
from rag_api.logging_config import get_logger
from ingest.chunking import Chunk, chunk_text
from ingest.embedder import get_embeddings
from ingest.loaders import iter_kb_files, load_text

logger = get_logger(__name__)

EmbedFn = Callable[[list[str]], list[list[float]]]


def content_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:16]


def reuse_key(doc: dict) -> str:
    """Identity of a chunk for vector reuse: fullPath#chunk#sha1(text)[:16]."""
    metadata = doc.get("metadata") or {}
    return f"{metadata.get('fullPath')}#{metadata.get('chunk')}#{content_hash(doc.get('text') or '')}"


def generate_point_id(doc: dict) -> str:
    """Deterministic Qdrant point id, stable across rebuilds of the same chunk."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, reuse_key(doc)))


@dataclass
class IndexBuildStats:
    """Statistics from an index build."""
    files_found: int = 0
    chunks: int = 0
    reused: int = 0
    computed: int = 0
    truncated: int = 0
    dim: int = 0
    duration_seconds: float | None = None
    errors: list[str] = field(default_factory=list)


def load_previous_vectors(out_path: Path, model: str) -> dict[str, list[float]]:
    """
    Map reuse_key -> vector from an existing artifact.

    An unreadable, inconsistent or other-model artifact gives no reuse.
    """
    if not out_path.exists():
        return {}
    try:
        prev = json.loads(out_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"previous index unreadable, full rebuild | path={out_path} | err={e}")
        return {}

    docs = prev.get("docs") or []
    vectors = prev.get("vectors") or []
    if len(docs) != len(vectors) or prev.get("model") != model:
        logger.info(f"previous index not reusable | model={prev.get('model')} | docs={len(docs)}")
        return {}
    return {reuse_key(d): v for d, v in zip(docs, vectors)}


def collect_chunks(kb_dir: Path, stats: IndexBuildStats) -> list[Chunk]:
    chunks: list[Chunk] = []
    for path in iter_kb_files(kb_dir):
        stats.files_found += 1
        try:
            text = load_text(path)
        except OSError as e:
            stats.errors.append(f"{path}: {e}")
            logger.error(f"Error reading {path}: {e}")
            continue

        pieces = chunk_text(
            text,
            metadata={"source": path.name, "fullPath": str(path)},
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )
        for c in pieces:
            if len(c["text"]) > settings.max_chars_per_chunk:
                c["text"] = c["text"][:settings.max_chars_per_chunk]
                stats.truncated += 1
            chunks.append(c)
    return chunks


def build_index(
    kb_dir: str | Path,
    out_path: str | Path,
    incremental: bool = True,
    embed_fn: EmbedFn | None = None,
    model: str | None = None,
) -> tuple[dict, IndexBuildStats]:
    """
    Build the index artifact and write it to out_path.

    Args:
        kb_dir: Knowledge-base directory to walk.
        out_path: Destination of index.json.
        incremental: Reuse vectors of unchanged chunks from the existing artifact.
        embed_fn: texts -> vectors (default: OpenAI, batched with backoff).
        model: Embedding model recorded in the artifact.

    Returns:
        (artifact dict, stats)
    """
    start = time.time()
    kb_dir = Path(kb_dir)
    out_path = Path(out_path)
    model = model or settings.embedding_model
    stats = IndexBuildStats()

    if not kb_dir.is_dir():
        raise FileNotFoundError(f"Knowledge base directory not found: {kb_dir}")

    if embed_fn is None:
        def embed_fn(texts: list[str]) -> list[list[float]]:
            return get_embeddings(texts, batch_size=settings.embed_batch, model=model)[0]

    logger.info(f"Reading knowledge base from: {kb_dir}")
    chunks = collect_chunks(kb_dir, stats)
    stats.chunks = len(chunks)
    logger.info(
        f"Chunks: {stats.chunks} from {stats.files_found} files "
        f"(chunk_size={settings.chunk_size}, overlap={settings.chunk_overlap})"
    )
    if stats.truncated:
        logger.warning(f"{stats.truncated} chunk(s) truncated to {settings.max_chars_per_chunk} characters")
    if not chunks:
        raise ValueError(f"No indexable content found in {kb_dir}")

    previous = load_previous_vectors(out_path, model) if incremental else {}
    if previous:
        logger.info(f"Previous index found: {len(previous)} reusable chunk(s)")

    vectors: list[list[float] | None] = [None] * len(chunks)
    missing: list[int] = []
    for i, c in enumerate(chunks):
        prev_vec = previous.get(reuse_key(c))
        if prev_vec is not None:
            vectors[i] = prev_vec
            stats.reused += 1
        else:
            missing.append(i)

    batch = settings.embed_batch
    for b in range(0, len(missing), batch):
        idx = missing[b:b + batch]
        computed = embed_fn([chunks[i]["text"] for i in idx])
        if len(computed) != len(idx):
            raise ValueError(f"Embedding provider returned {len(computed)} vectors for {len(idx)} texts")
        for i, vec in zip(idx, computed):
            vectors[i] = list(vec)
        stats.computed += len(idx)
        logger.info(f"  progress: {min(b + batch, len(missing))}/{len(missing)} embedded")

    stats.dim = len(vectors[0] or [])
    if not stats.dim:
        raise ValueError("Empty embeddings (check OPENAI_API_KEY / model)")
    for i, vec in enumerate(vectors):
        if len(vec) != stats.dim:
            raise ValueError(f"Chunk {i} has dim={len(vec)}, expected {stats.dim} (mixed models?)")

    order = sorted(range(len(chunks)), key=lambda i: (chunks[i]["metadata"]["source"], chunks[i]["metadata"]["chunk"]))
    artifact = {
        "model": model,
        "createdAt": datetime.now(timezone.utc).isoformat(),
        "dim": stats.dim,
        "docs": [chunks[i] for i in order],
        "vectors": [vectors[i] for i in order],
    }

    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = out_path.with_name(out_path.name + ".tmp")
    tmp_path.write_text(json.dumps(artifact, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
    os.replace(tmp_path, out_path)

    stats.duration_seconds = time.time() - start
    logger.info(
        f"index_built | path={out_path} | dim={stats.dim} | chunks={stats.chunks} | "
        f"reused={stats.reused} | computed={stats.computed} | seconds={stats.duration_seconds:.2f}"
    )
    return artifact, stats


def push_to_qdrant(artifact: dict, collection: str | None = None, recreate: bool = False, client=None) -> int:
    """
    Upsert the artifact's chunks into a Qdrant collection (SEARCH_BACKEND=qdrant).

    Returns the number of points written.
    """
    from qdrant_client import QdrantClient
    from qdrant_client.models import Distance, PointStruct, VectorParams

    collection = collection or settings.qdrant_collection
    client = client or QdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
    vectors_config = VectorParams(size=artifact["dim"], distance=Distance.COSINE)

    exists = collection in [c.name for c in client.get_collections().collections]
    if recreate and exists:
        logger.info(f"Deleting existing collection '{collection}'...")
        client.delete_collection(collection)
        exists = False
    if not exists:
        logger.info(f"Creating collection '{collection}' with dimension {artifact['dim']}...")
        client.create_collection(collection_name=collection, vectors_config=vectors_config)

    points = [
        PointStruct(
            id=generate_point_id(doc),
            vector=vec,
            payload={**doc["metadata"], "text": doc["text"]},
        )
        for doc, vec in zip(artifact["docs"], artifact["vectors"])
    ]
    for b in range(0, len(points), 256):
        client.upsert(collection_name=collection, points=points[b:b + 256])

    logger.info(f"qdrant_push | collection={collection} | points={len(points)}")
    return len(points)
