"""
Vector index store: validation on load, memoization, atomic reload.
"""
import pytest

from conftest import SAMPLE_DOCS, SAMPLE_VECTORS, write_artifact
from retrieval.errors import ErrorKind, IndexInvalid, IndexNotFound
from retrieval.index_store import IndexStore


def test_missing_artifact_raises_index_not_found(tmp_path):
    store = IndexStore(tmp_path / "nope.json")
    with pytest.raises(IndexNotFound) as exc:
        store.ensure()
    assert exc.value.kind == ErrorKind.INDEX_NOT_FOUND
    assert "ingest_cli" in exc.value.details()["hint"]


def test_load_snapshot(index_path):
    snapshot = IndexStore(index_path).load()

    assert snapshot.model == "fake-embed"
    assert snapshot.dim == 2
    assert len(snapshot.docs) == 3
    assert snapshot.vectors.shape == (3, 2)
    assert snapshot.docs[2].source == "c.md"
    assert not snapshot.vectors.flags.writeable


def test_ensure_is_memoized(index_path):
    store = IndexStore(index_path)
    first = store.ensure()
    write_artifact(index_path, docs=SAMPLE_DOCS[:1], vectors=SAMPLE_VECTORS[:1])

    assert store.ensure() is first


def test_vectors_docs_length_mismatch_is_invalid(tmp_path):
    path = write_artifact(tmp_path / "index.json", vectors=SAMPLE_VECTORS[:2])
    with pytest.raises(IndexInvalid):
        IndexStore(path).load()


def test_vector_length_must_equal_dim(tmp_path):
    path = write_artifact(tmp_path / "index.json", dim=3)
    with pytest.raises(IndexInvalid):
        IndexStore(path).load()


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_vector_is_invalid(tmp_path, bad):
    vectors = [[bad, 1.0], [0.0, 1.0], [0.9, 0.1]]
    path = write_artifact(tmp_path / "index.json", vectors=vectors)

    with pytest.raises(IndexInvalid):
        IndexStore(path).load()


def test_nan_vector_reason(tmp_path):
    path = write_artifact(tmp_path / "index.json", vectors=[[float("nan"), 1.0], [0.0, 1.0], [0.9, 0.1]])

    with pytest.raises(IndexInvalid) as exc_info:
        IndexStore(path).load()
    assert "non-finite" in exc_info.value.reason


def test_malformed_json_is_invalid(tmp_path):
    path = tmp_path / "index.json"
    path.write_text("{not json")
    with pytest.raises(IndexInvalid):
        IndexStore(path).load()


def test_reload_swaps_snapshot_without_touching_old_one(index_path):
    store = IndexStore(index_path)
    old = store.ensure()

    write_artifact(index_path, docs=SAMPLE_DOCS[:2], vectors=SAMPLE_VECTORS[:2])
    new = store.reload()

    assert new is not old
    assert store.ensure() is new
    assert len(new.docs) == 2
    # A request that captured the old snapshot still sees all of it
    assert len(old.docs) == 3
    assert old.vectors.shape == (3, 2)


def test_failed_reload_keeps_previous_snapshot(index_path):
    store = IndexStore(index_path)
    previous = store.ensure()

    index_path.write_text('{"model": "m", "dim": 2, "docs": [], "vectors": [[1, 0]]}')
    with pytest.raises(IndexInvalid):
        store.reload()

    assert store.ensure() is previous


def test_stats(index_path):
    store = IndexStore(index_path)
    assert not store.loaded

    stats = store.stats()

    assert store.loaded
    assert stats["model"] == "fake-embed"
    assert stats["dim"] == 2
    assert stats["doc_count"] == 3
    assert stats["vector_count"] == 3
    assert stats["created_at"] == "2024-05-01T10:00:00Z"
