"""
Shared fixtures: a tiny 2-d index artifact and fake providers.

Environment is set before any project import so the module-level Settings
pick it up.
"""
import asyncio
import json
import os

os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ["RATE_LIMIT_ASK"] = "1000/minute"
os.environ.pop("SENTRY_DSN", None)

import pytest

from retrieval.errors import RateLimited

# doc0 [1,0], doc1 [0,1], doc2 [0.9,0.1]
SAMPLE_DOCS = [
    {"text": "Restart bind9 with systemctl restart bind9.", "metadata": {"source": "a.md", "fullPath": "kb/a.md", "chunk": 0}},
    {"text": "SSH hardening: disable password authentication.", "metadata": {"source": "b.md", "fullPath": "kb/b.md", "chunk": 0}},
    {"text": "Check bind9 zone files with named-checkzone.", "metadata": {"source": "c.md", "fullPath": "kb/c.md", "chunk": 0}},
]
SAMPLE_VECTORS = [[1.0, 0.0], [0.0, 1.0], [0.9, 0.1]]


def write_artifact(path, docs=None, vectors=None, dim=2, model="fake-embed"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({
        "model": model,
        "createdAt": "2024-05-01T10:00:00Z",
        "dim": dim,
        "docs": SAMPLE_DOCS if docs is None else docs,
        "vectors": SAMPLE_VECTORS if vectors is None else vectors,
    }))
    return path


@pytest.fixture
def index_path(tmp_path):
    return write_artifact(tmp_path / "vectorstore" / "index.json")


class FakeEmbeddingProvider:
    """Returns a fixed vector per text (default [1, 0]) and counts calls."""

    def __init__(self, vectors: dict | None = None, default=(1.0, 0.0), error: Exception | None = None, delay: float = 0):
        self.vectors = vectors or {}
        self.default = list(default)
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, self.default))


class FakeGenerator:
    """Generation provider returning a canned draft, or raising."""

    def __init__(self, reply: str = "", pieces: list[str] | None = None, error: Exception | None = None, delay: float = 0):
        self.reply = reply
        self.pieces = pieces if pieces is not None else [reply]
        self.error = error
        self.delay = delay
        self.prompts: list[str] = []
        self.stream_closed = False

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply

    async def stream(self, prompt: str):
        self.prompts.append(prompt)
        try:
            if self.error is not None:
                raise self.error
            for piece in self.pieces:
                yield piece
                if self.delay:
                    await asyncio.sleep(self.delay)
        finally:
            self.stream_closed = True


@pytest.fixture
def fake_embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def rate_limited():
    return RateLimited("Too Many Requests", retry_after=30)
