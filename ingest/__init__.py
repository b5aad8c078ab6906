"""
Index builder for the knowledge base.

Components:
- loaders: file discovery (allowed text extensions) and loading
- chunking: overlapping text chunks
- embedder: batched OpenAI embeddings with backoff
- pipeline: incremental build of the index.json artifact, optional Qdrant push

Usage:
    python -m ingest.ingest_cli --kb-dir knowledge_base --out vectorstore/index.json
"""
from ingest.loaders import ALLOWED_EXTENSIONS, iter_kb_files, load_text
from ingest.chunking import Chunk, chunk_text, split_text
from ingest.embedder import get_embeddings
from ingest.pipeline import IndexBuildStats, build_index, push_to_qdrant, reuse_key

__all__ = [
    # Loaders
    "ALLOWED_EXTENSIONS",
    "iter_kb_files",
    "load_text",
    # Chunking
    "Chunk",
    "chunk_text",
    "split_text",
    # Embeddings
    "get_embeddings",
    # Pipeline
    "IndexBuildStats",
    "build_index",
    "push_to_qdrant",
    "reuse_key",
]
