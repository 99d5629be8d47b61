"""
Tests for the in-memory cosine similarity index.
"""

import numpy as np
import pytest

from libsearch.core.cache import CacheSnapshot
from libsearch.core.documents import Document
from libsearch.core.errors import DimensionMismatchError, ValidationError
from libsearch.vector import DeterministicHashEmbedding, SimpleInMemoryVectorStore, VectorRecord, cosine_similarity


@pytest.fixture
def embedder():
    return DeterministicHashEmbedding(dimension=32)


@pytest.fixture
def populated(embedder):
    store = SimpleInMemoryVectorStore()
    texts = ["wipe marble with a damp cloth", "polish brass fittings", "oil teak furniture",
             "descale the kettle", "dust bookshelves weekly"]
    store.batch_add([VectorRecord(id=str(i + 1), text=t, vector=embedder.embed_text(t)) for i, t in enumerate(texts)])
    return store, texts


def test_cosine_similarity_basics():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_cosine_similarity_dimension_mismatch():
    with pytest.raises(DimensionMismatchError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_self_similarity_is_one(populated, embedder):
    store, texts = populated
    for i, text in enumerate(texts):
        top = store.search(embedder.embed_text(text), top_k=1)[0]
        assert top.id == str(i + 1)
        assert top.score == 1.0


def test_results_bounded_and_descending(populated, embedder):
    store, _ = populated
    results = store.search(embedder.embed_text("anything"), top_k=3)

    assert len(results) == 3
    scores = [r.score for r in results]
    assert scores == sorted(scores, reverse=True)
    assert all(-1.0 <= s <= 1.0 for s in scores)


def test_top_k_larger_than_corpus(populated, embedder):
    store, texts = populated
    assert len(store.search(embedder.embed_text("anything"), top_k=100)) == len(texts)


def test_non_positive_top_k_returns_nothing(populated, embedder):
    store, _ = populated
    assert store.search(embedder.embed_text("anything"), top_k=0) == []


def test_ties_keep_corpus_order():
    store = SimpleInMemoryVectorStore()
    store.batch_add([
        VectorRecord(id="a", text="a", vector=[1.0, 0.0]),
        VectorRecord(id="b", text="b", vector=[0.0, 1.0]),
        VectorRecord(id="c", text="c", vector=[2.0, 0.0]),
        VectorRecord(id="d", text="d", vector=[0.5, 0.0]),
    ])

    results = store.search([1.0, 0.0], top_k=4)

    assert [r.id for r in results] == ["a", "c", "d", "b"]
    assert [r.score for r in results] == [1.0, 1.0, 1.0, 0.0]


def test_repeated_searches_identical(populated, embedder):
    store, _ = populated
    query = embedder.embed_text("kettle")
    assert store.search(query, top_k=5) == store.search(query, top_k=5)


def test_scores_rounded_to_four_decimals():
    store = SimpleInMemoryVectorStore()
    store.add(VectorRecord(id="1", text="x", vector=[1.0, 2.0, 3.0]))

    score = store.search([3.0, 2.0, 1.0], top_k=1)[0].score

    assert score == round(10 / 14, 4)


def test_zero_query_returns_empty(populated):
    store, _ = populated
    assert store.search([0.0] * 32) == []


def test_zero_stored_vector_scores_zero():
    store = SimpleInMemoryVectorStore()
    store.batch_add([VectorRecord(id="z", text="zero", vector=[0.0, 0.0]),
                     VectorRecord(id="x", text="x", vector=[1.0, 0.0])])

    results = store.search([1.0, 0.0])

    assert results[-1].id == "z"
    assert results[-1].score == 0.0


def test_query_dimension_mismatch(populated):
    store, _ = populated
    with pytest.raises(DimensionMismatchError):
        store.search([1.0, 0.0])


def test_record_dimension_mismatch():
    store = SimpleInMemoryVectorStore(dimension=2)
    with pytest.raises(DimensionMismatchError):
        store.add(VectorRecord(id="1", text="x", vector=[1.0, 0.0, 0.0]))


def test_existing_id_updated_in_place():
    store = SimpleInMemoryVectorStore()
    store.add(VectorRecord(id="1", text="old", vector=[1.0, 0.0]))
    store.add(VectorRecord(id="2", text="other", vector=[0.0, 1.0]))
    store.add(VectorRecord(id="1", text="new", vector=[0.0, 1.0]))

    assert store.count() == 2
    results = store.search([0.0, 1.0], top_k=2)
    assert [(r.id, r.text) for r in results] == [("1", "new"), ("2", "other")]


def test_clear():
    store = SimpleInMemoryVectorStore()
    store.add(VectorRecord(id="1", text="x", vector=np.array([1.0, 0.0])))
    store.clear()
    assert store.count() == 0
    assert store.search([1.0, 0.0]) == []


def test_from_snapshot_requires_complete_snapshot():
    snapshot = CacheSnapshot(docs=[Document("1", "a"), Document("2", "b")],
                             embeddings=[[1.0, 0.0], None], model="m")
    with pytest.raises(ValidationError):
        SimpleInMemoryVectorStore.from_snapshot(snapshot)


def test_from_snapshot_serves_documents():
    snapshot = CacheSnapshot(docs=[Document("1", "a"), Document("2", "b")],
                             embeddings=[[1.0, 0.0], [0.0, 1.0]], model="m", dimensions=2)
    store = SimpleInMemoryVectorStore.from_snapshot(snapshot)

    top = store.search([0.0, 1.0], top_k=1)[0]
    assert top.to_dict() == {"id": "2", "text": "b", "score": 1.0}
