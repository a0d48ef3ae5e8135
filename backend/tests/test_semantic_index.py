import json
from pathlib import Path

import pytest

from recall.errors import MemoryNotFoundError, SearchIndexError
from recall.index import IndexArtifactMismatch, IndexEntry, SemanticIndex, create_index
from recall.query_planner import IndexQuery


def _query(vector=None, text: str = "", tags=(), limit: int = 10) -> IndexQuery:
    return IndexQuery(
        text=text,
        tags=tuple(tags),
        limit=limit,
        vector=tuple(vector) if vector is not None else None,
    )


def _populated(path: Path = None) -> SemanticIndex:
    index = SemanticIndex(path, dimension=2)
    index.upsert(IndexEntry(id="east", embedding=[1.0, 0.0], tags=["axis"]))
    index.upsert(IndexEntry(id="north", embedding=[0.0, 2.0], tags=["axis"]))
    index.upsert(IndexEntry(id="diagonal", embedding=[3.0, 3.0], tags=["mixed"]))
    return index


def test_cosine_ranking_prefers_nearest_vector() -> None:
    index = _populated()

    results = index.query(_query([1.0, 0.1], text="east-ish"))

    assert [memory_id for memory_id, _ in results] == ["east", "diagonal", "north"]
    assert results[0][1] == pytest.approx(0.995, abs=1e-3)
    assert all(-1.0 <= score <= 1.0 for _, score in results)


def test_opposite_vector_scores_minus_one() -> None:
    index = _populated()
    results = dict(index.query(_query([-1.0, 0.0], text="west")))
    assert results["east"] == pytest.approx(-1.0)


def test_zero_vector_entry_scores_zero() -> None:
    index = SemanticIndex(dimension=2)
    index.upsert(IndexEntry(id="blank", embedding=[0.0, 0.0]))
    assert index.query(_query([1.0, 1.0], text="anything")) == [("blank", 0.0)]


def test_tag_filter_applies_before_ranking() -> None:
    index = _populated()

    results = index.query(_query([1.0, 1.0], text="q", tags=["axis"]))

    assert {memory_id for memory_id, _ in results} == {"east", "north"}


def test_query_without_vector_is_match_all() -> None:
    index = _populated()

    assert index.query(_query()) == [("east", 1.0), ("north", 1.0), ("diagonal", 1.0)]
    assert index.query(_query(tags=["mixed"])) == [("diagonal", 1.0)]


def test_text_query_without_vector_is_rejected() -> None:
    with pytest.raises(SearchIndexError, match="embedded"):
        _populated().query(_query(text="not embedded"))


def test_dimension_mismatch_is_rejected() -> None:
    index = _populated()

    with pytest.raises(SearchIndexError, match="dimension"):
        index.upsert(IndexEntry(id="bad", embedding=[1.0, 0.0, 0.0]))
    with pytest.raises(SearchIndexError, match="dimension"):
        index.query(_query([1.0, 0.0, 0.0], text="bad"))
    assert "bad" not in index


def test_dimension_is_fixed_by_first_vector() -> None:
    index = SemanticIndex()
    index.upsert(IndexEntry(id="a", embedding=[0.5, 0.5, 0.5]))
    assert index.dimension == 3
    with pytest.raises(SearchIndexError):
        index.upsert(IndexEntry(id="b", embedding=[0.5, 0.5]))


def test_entry_without_embedding_is_rejected() -> None:
    with pytest.raises(SearchIndexError, match="no embedding"):
        SemanticIndex(dimension=2).upsert(IndexEntry(id="a", content="text only"))


def test_remove_unknown_id_raises_not_found() -> None:
    index = _populated()
    index.remove("east")
    with pytest.raises(MemoryNotFoundError):
        index.remove("east")
    assert index.ids() == ["north", "diagonal"]


def test_artifact_round_trip_keeps_dimension(tmp_path: Path) -> None:
    path = tmp_path / "memory.db.index.json"
    original = _populated(path)

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["strategy"] == "semantic"
    assert payload["dimension"] == 2

    reloaded = SemanticIndex(path)
    assert reloaded.load() == 3
    assert reloaded.dimension == 2
    sample = _query([1.0, 0.2], text="sample")
    assert reloaded.query(sample) == original.query(sample)


def test_load_rejects_artifact_with_other_dimension(tmp_path: Path) -> None:
    path = tmp_path / "memory.db.index.json"
    _populated(path)

    with pytest.raises(IndexArtifactMismatch):
        SemanticIndex(path, dimension=3).load()


def test_load_rejects_artifact_from_other_embedding_model(tmp_path: Path) -> None:
    path = tmp_path / "memory.db.index.json"
    index = SemanticIndex(path, model_name="model-a")
    index.upsert(IndexEntry(id="a", embedding=[1.0, 0.0]))

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["embedding_model"] == "model-a"

    with pytest.raises(IndexArtifactMismatch, match="model-a"):
        SemanticIndex(path, model_name="model-b").load()
    assert SemanticIndex(path, model_name="model-a").load() == 1


def test_create_index_selects_strategy() -> None:
    assert create_index("semantic", dimension=8).requires_embeddings is True
    assert create_index("lexical").requires_embeddings is False
    with pytest.raises(ValueError, match="Unknown index strategy"):
        create_index("fuzzy")
