"""
HTTP surface: /ask, /ask/rag, /ask/stream, /agent and /kb/* with injected fakes.
"""
import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeEmbeddingProvider, FakeGenerator, write_artifact
from rag_api.config import Settings, settings
from rag_api.dependencies import RagDependencies, get_rag_deps
from rag_api.main import app
from rag_api.rag_service import ERROR_STATUS, NO_CONTEXT_REPLY
from retrieval.arbiter import FALLBACK_MESSAGE, CitationArbiter
from retrieval.backends import LocalIndex
from retrieval.embedding_cache import CachedEmbedder, EmbeddingCache
from retrieval.errors import ErrorKind, GenerationTimeout
from retrieval.index_store import IndexStore

QUESTION = {"messages": [{"role": "user", "content": "How do I restart bind?"}]}


@pytest.fixture
def kb_dir(tmp_path):
    kb = tmp_path / "knowledge_base"
    kb.mkdir()
    (kb / "a.md").write_text("# Bind\nRestart bind9 with systemctl restart bind9.\n")
    return kb


@pytest.fixture
def make_client(index_path, kb_dir):
    def factory(generator=None, embedding_provider=None, index=None, **overrides):
        cfg = Settings(
            OPENAI_API_KEY="test-key",
            VECTOR_INDEX_PATH=str(index or index_path),
            KB_DIR=str(kb_dir),
            RAG_TOP_K=2,
            STREAM_HEARTBEAT_SECONDS=0,
            **overrides,
        )
        generator = generator or FakeGenerator(reply="Use systemctl restart bind9.\nSources: a.md")
        embedder = CachedEmbedder(embedding_provider or FakeEmbeddingProvider(), EmbeddingCache(capacity=10))
        deps = RagDependencies(
            settings=cfg,
            backend=LocalIndex(IndexStore(cfg.vector_index_path), embedder),
            generator=generator,
            arbiter=CitationArbiter(mode=cfg.rag_arbiter, generator=generator, partial_policy=cfg.rag_arbiter_partial),
        )
        app.dependency_overrides[get_rag_deps] = lambda: deps
        return TestClient(app)

    yield factory
    app.dependency_overrides.clear()


def test_ask_rag_accepted_answer(make_client):
    generator = FakeGenerator(reply="Use systemctl restart bind9.\nSources: a.md")
    client = make_client(generator=generator)

    resp = client.post("/ask/rag", json=QUESTION, headers={"X-Request-ID": "rid-123"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["reply"] == "Use systemctl restart bind9.\nSources: a.md"
    assert body["accepted"] is True
    assert body["meta"]["rid"] == "rid-123"
    assert resp.headers["X-Request-ID"] == "rid-123"
    # MMR picks a.md then c.md (b.md is irrelevant to [1, 0])
    assert body["meta"]["sources"] == ["a.md", "c.md"]
    assert [e["source"] for e in body["meta"]["evidence"]] == ["a.md", "c.md"]
    assert '<<<DOC #1 source="a.md"' in generator.prompts[0]


def test_ask_rag_actions(make_client):
    body = make_client().post("/ask/rag", json=QUESTION).json()

    types = [a["type"] for a in body["actions"]]
    assert types[0] == "show_file"
    assert body["actions"][0]["payload"] == {"source": "a.md"}  # c.md is not in KB_DIR
    assert "propose_fix" in types  # question mentions bind
    assert types[-1] == "ask_followup"


def test_ask_rag_hallucinated_citation_replaced(make_client):
    client = make_client(generator=FakeGenerator(reply="Reinstall everything.\nSources: z.md"))

    resp = client.post("/ask/rag", json=QUESTION)

    assert resp.status_code == 200
    assert resp.json()["reply"] == FALLBACK_MESSAGE
    assert resp.json()["accepted"] is False


def test_ask_rag_no_context_skips_generation(make_client, tmp_path):
    empty_docs = [{"text": "", "metadata": {"source": "empty.md"}}]
    path = write_artifact(tmp_path / "empty" / "index.json", docs=empty_docs, vectors=[[1.0, 0.0]])
    generator = FakeGenerator(reply="should not be called")

    body = make_client(generator=generator, index=path).post("/ask/rag", json=QUESTION).json()

    assert body["reply"] == NO_CONTEXT_REPLY
    assert generator.prompts == []
    assert [a["type"] for a in body["actions"]] == ["ask_followup"]


@pytest.mark.parametrize("payload", [
    {"messages": []},
    {"messages": [{"role": "assistant", "content": "hi"}]},
    {"messages": [{"role": "user", "content": "   "}]},
])
def test_ask_rag_requires_a_question(make_client, payload):
    assert make_client().post("/ask/rag", json=payload).status_code == 400


def test_ask_rag_index_missing_is_503(make_client, tmp_path):
    resp = make_client(index=tmp_path / "missing.json").post("/ask/rag", json=QUESTION)

    assert resp.status_code == 503
    assert resp.json()["error"] == "index_not_found"
    assert "hint" in resp.json()["details"]


def test_ask_rag_rate_limited_is_429(make_client, rate_limited):
    resp = make_client(generator=FakeGenerator(error=rate_limited)).post("/ask/rag", json=QUESTION)

    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"
    assert resp.json()["details"]["retry_after_sec"] == 30
    assert resp.headers["Retry-After"] == "30"


def test_ask_rag_deadline_is_504(make_client):
    client = make_client(generator=FakeGenerator(reply="late", delay=2.0), REQUEST_TIMEOUT_SECONDS=0.05)

    resp = client.post("/ask/rag", json=QUESTION)

    assert resp.status_code == 504
    assert resp.json()["error"] == "generation_timeout"


def test_ask_rag_provider_timeout_is_504(make_client):
    client = make_client(generator=FakeGenerator(error=GenerationTimeout("provider timed out")))
    assert client.post("/ask/rag", json=QUESTION).status_code == 504


def test_ask_rag_referee_stays_within_deadline(make_client):
    class SlowReferee(FakeGenerator):
        async def generate(self, prompt):
            if self.prompts:
                await asyncio.sleep(5.0)
            return await super().generate(prompt)

    draft = "Use systemctl restart bind9.\nSources: a.md"
    client = make_client(generator=SlowReferee(reply=draft), RAG_ARBITER="llm", REQUEST_TIMEOUT_SECONDS=0.3)

    body = client.post("/ask/rag", json=QUESTION).json()

    assert body["reply"] == draft
    assert body["meta"]["arbiter"] == "llm"
    assert body["meta"]["duration_ms"] < 1000


def test_ask_rag_dim_mismatch_is_500(make_client):
    client = make_client(embedding_provider=FakeEmbeddingProvider(default=[1.0, 0.0, 0.0]))

    resp = client.post("/ask/rag", json=QUESTION)

    assert resp.status_code == 500
    assert resp.json()["error"] == "embed_dim_mismatch"
    assert resp.json()["details"]["query_dim"] == 3


def test_every_error_kind_has_a_status():
    assert set(ERROR_STATUS) == set(ErrorKind)


def test_ask_stream_events(make_client):
    client = make_client(generator=FakeGenerator(pieces=["Hello ", "world"]), STREAM_SPLIT="word")

    resp = client.post("/ask/stream", json=QUESTION)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
    assert "meta" in events[0]
    assert [e["delta"] for e in events if "delta" in e] == ["Hello", " ", "world"]
    assert events[-1]["done"] is True
    assert events[-1]["full"] == "Hello world"


def test_ask_stream_quota_error_event(make_client, rate_limited):
    resp = make_client(generator=FakeGenerator(error=rate_limited)).post("/ask/stream", json=QUESTION)

    events = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
    assert events[-1]["error"] == "quota_exceeded"


def test_kb_stats_and_ready(make_client):
    client = make_client()

    stats = client.get("/kb/stats").json()
    assert stats["backend"] == "local"
    assert stats["stats"]["doc_count"] == 3

    ready = client.get("/kb/ready")
    assert ready.status_code == 200
    assert ready.json()["ready"] is True


def test_kb_ready_without_index(make_client, tmp_path):
    resp = make_client(index=tmp_path / "missing.json").get("/kb/ready")
    assert resp.status_code == 503


def test_kb_reload_requires_api_key(make_client, monkeypatch):
    monkeypatch.setattr(settings, "api_key", "secret")
    client = make_client()

    assert client.post("/kb/reload").status_code == 401
    assert client.post("/kb/reload", headers={"X-API-Key": "wrong"}).status_code == 401

    resp = client.post("/kb/reload", headers={"X-API-Key": "secret"})
    assert resp.status_code == 200
    assert resp.json()["stats"]["doc_count"] == 3


def test_kb_file(make_client, kb_dir):
    client = make_client()

    resp = client.get("/kb/file", params={"source": "a.md"})
    assert resp.status_code == 200
    assert resp.json()["content"].startswith("# Bind")
    assert resp.json()["truncated"] is False

    # Only the basename is used: traversal ends up inside KB_DIR
    assert client.get("/kb/file", params={"source": "../../etc/passwd"}).status_code == 404
    assert client.get("/kb/file", params={"source": "sub/../a.md"}).status_code == 200
    assert client.get("/kb/file").status_code == 400


def test_kb_file_is_capped(make_client, kb_dir):
    (kb_dir / "big.log").write_text("x" * (250 * 1024))

    body = make_client().get("/kb/file", params={"source": "big.log"}).json()

    assert body["truncated"] is True
    assert body["size"] == 250 * 1024
    assert len(body["content"]) == 200 * 1024


def test_health(make_client):
    assert make_client().get("/health").json() == {"status": "healthy"}


class ScriptedGenerator(FakeGenerator):
    """Returns the given replies in order, one per generate call."""

    def __init__(self, *replies):
        super().__init__()
        self.replies = list(replies)

    async def generate(self, prompt):
        self.prompts.append(prompt)
        return self.replies.pop(0)


def tool_call(tool, **args):
    return json.dumps({"action": {"tool": tool, "args": args}})


def test_ask_plain_chat(make_client):
    generator = FakeGenerator(reply="  Hello there.  ")
    client = make_client(generator=generator)

    resp = client.post("/ask", json=QUESTION, headers={"X-Request-ID": "rid-chat"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["reply"] == "Hello there."
    assert body["meta"]["rid"] == "rid-chat"
    assert "USER: How do I restart bind?" in generator.prompts[0]
    # no retrieval, so no document blocks in the prompt
    assert "<<<DOC" not in generator.prompts[0]


@pytest.mark.parametrize("payload", [
    {"messages": []},
    {"messages": [{"role": "user", "content": "   "}]},
])
def test_ask_requires_content(make_client, payload):
    assert make_client().post("/ask", json=payload).status_code == 400


def test_ask_rate_limited_is_429(make_client, rate_limited):
    resp = make_client(generator=FakeGenerator(error=rate_limited)).post("/ask", json=QUESTION)

    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"
    assert resp.headers["Retry-After"] == "30"


def test_ask_deadline_is_504(make_client):
    client = make_client(generator=FakeGenerator(reply="late", delay=2.0), REQUEST_TIMEOUT_SECONDS=0.05)

    resp = client.post("/ask", json=QUESTION)

    assert resp.status_code == 504
    assert resp.json()["error"] == "generation_timeout"


def test_agent_searches_then_answers(make_client):
    generator = ScriptedGenerator(
        tool_call("search_kb", query="restart bind"),
        json.dumps({"final": "Run systemctl restart bind9."}),
    )
    client = make_client(generator=generator)

    resp = client.post("/agent", json={"question": "How do I restart bind?"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["reply"] == "Run systemctl restart bind9."
    assert body["meta"]["steps"] == 1
    assert body["actions"][0]["tool"] == "search_kb"
    assert body["actions"][0]["result"][0]["source"] == "a.md"
    # the second turn sees the search result
    second = json.loads(generator.prompts[1])
    assert second["context"][0]["tool"] == "search_kb"
    assert {t["name"] for t in second["tools"]} == {"search_kb", "show_file", "propose_fix", "ask_followup"}


def test_agent_show_file_and_tool_error(make_client):
    generator = ScriptedGenerator(
        "```json\n" + tool_call("show_file", source="../../a.md") + "\n```",
        tool_call("show_file", source="missing.md"),
        json.dumps({"final": "done"}),
    )

    body = make_client(generator=generator).post("/agent", json=QUESTION).json()

    shown, missing = body["actions"]
    assert shown["result"].startswith("# Bind")
    assert shown["error"] is None
    assert missing["result"] is None
    assert missing["error"] == "File not found."
    assert body["reply"] == "done"


def test_agent_invalid_output(make_client):
    body = make_client(generator=ScriptedGenerator("not json")).post("/agent", json=QUESTION).json()

    assert body["reply"] == "The agent returned an invalid response."
    assert body["actions"] == []


def test_agent_stops_at_step_limit(make_client):
    generator = ScriptedGenerator(*[tool_call("propose_fix", topic="dns_bind9")] * 5)

    body = make_client(generator=generator).post("/agent", json=QUESTION).json()

    assert body["reply"] == "I could not answer within the step limit."
    assert body["meta"]["steps"] == 3
    assert len(generator.prompts) == 3
    assert "named.conf" in body["actions"][0]["result"]


def test_agent_requires_a_question(make_client):
    client = make_client()
    assert client.post("/agent", json={}).status_code == 400
    assert client.post("/agent", json={"question": "  ", "messages": []}).status_code == 400


def test_agent_generation_error_is_mapped(make_client, rate_limited):
    resp = make_client(generator=FakeGenerator(error=rate_limited)).post("/agent", json={"question": "hi"})

    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"
