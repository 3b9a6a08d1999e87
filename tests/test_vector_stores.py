from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest

from rag_demo import LiteVectorStore, QdrantVectorStore, StartupError, point_id


def _payload(source, chunk_id, text, ts="2024-01-01T00:00:00"):
    return {"source": source, "chunk_id": chunk_id, "text": text, "timestamp": ts}


def _unit(i, dim=4):
    v = np.zeros(dim, dtype=np.float32)
    v[i] = 1.0
    return v


class TestLiteVectorStore:
    def test_search_respects_floor_and_k(self):
        store = LiteVectorStore(index_dir=None, dimension=4)
        vectors = np.stack([_unit(0), _unit(0) + _unit(1), _unit(2)])
        store.upsert([1, 2, 3], vectors, [_payload("a", i, f"t{i}") for i in range(3)])

        matches = store.search(_unit(0), k=3, min_score=0.5)
        assert [m.text for m in matches] == ["t0", "t1"]
        assert matches[0].score == pytest.approx(1.0)
        assert matches[1].score == pytest.approx(0.7071, abs=1e-3)

        assert [m.text for m in store.search(_unit(0), k=1, min_score=0.0)] == ["t0"]

    def test_ties_keep_insertion_order(self):
        store = LiteVectorStore(index_dir=None, dimension=4)
        store.upsert([1, 2], np.stack([_unit(0), _unit(0)]),
                     [_payload("a", 0, "first"), _payload("a", 1, "second")])
        assert [m.text for m in store.search(_unit(0), k=2)] == ["first", "second"]

    def test_upsert_replaces_existing_ids(self):
        store = LiteVectorStore(index_dir=None, dimension=4)
        store.upsert([1, 2], np.stack([_unit(0), _unit(1)]),
                     [_payload("a", 0, "old"), _payload("a", 1, "keep")])
        store.upsert([1], np.stack([_unit(2)]), [_payload("a", 0, "new")])

        assert store.count() == 2
        assert sorted(p["text"] for p in store.payloads) == ["keep", "new"]
        assert store.search(_unit(2), k=1)[0].text == "new"

    def test_persists_and_reloads(self, tmp_path):
        store = LiteVectorStore(index_dir=str(tmp_path), dimension=4)
        store.upsert([point_id("doc", 0)], np.stack([_unit(3)]), [_payload("doc", 0, "saved")])

        reopened = LiteVectorStore(index_dir=str(tmp_path), dimension=4)
        assert reopened.count() == 1
        assert reopened.search(_unit(3), k=1)[0].text == "saved"

    def test_reload_with_wrong_dimension_fails(self, tmp_path):
        store = LiteVectorStore(index_dir=str(tmp_path), dimension=4)
        store.upsert([1], np.stack([_unit(0)]), [_payload("doc", 0, "x")])
        with pytest.raises(StartupError):
            LiteVectorStore(index_dir=str(tmp_path), dimension=8)

    def test_reset_clears_files(self, tmp_path):
        store = LiteVectorStore(index_dir=str(tmp_path), dimension=4)
        store.upsert([1], np.stack([_unit(0)]), [_payload("doc", 0, "x")])
        store.reset()
        assert store.count() == 0
        assert store.search(_unit(0)) == []
        assert LiteVectorStore(index_dir=str(tmp_path), dimension=4).count() == 0

    def test_delete_source_only_touches_that_source(self, tmp_path):
        store = LiteVectorStore(index_dir=str(tmp_path), dimension=4)
        store.upsert(
            [1, 2, 3],
            np.stack([_unit(0), _unit(1), _unit(2)]),
            [_payload("a", 0, "a0"), _payload("b", 0, "b0"), _payload("a", 1, "a1")],
        )

        store.delete_source("a")
        store.delete_source("missing")

        assert store.count() == 1
        assert [m.text for m in store.search(_unit(1), k=3)] == ["b0"]
        assert LiteVectorStore(index_dir=str(tmp_path), dimension=4).count() == 1

    def test_list_sources(self):
        store = LiteVectorStore(index_dir=None, dimension=4)
        store.upsert(
            [1, 2, 3],
            np.stack([_unit(0), _unit(1), _unit(2)]),
            [
                _payload("b.txt", 0, "x", "2024-01-02"),
                _payload("a.md", 0, "y", "2024-01-01"),
                _payload("b.txt", 1, "z", "2024-01-03"),
            ],
        )
        assert store.list_sources() == [
            {"source": "a.md", "chunks": 1, "latest_timestamp": "2024-01-01"},
            {"source": "b.txt", "chunks": 2, "latest_timestamp": "2024-01-03"},
        ]


def test_point_id_is_stable_and_unsigned():
    assert point_id("doc", 0) == point_id("doc", 0)
    assert point_id("doc", 0) != point_id("doc", 1)
    assert 0 <= point_id("doc", 0) < 2 ** 64


class TestQdrantVectorStore:
    def test_creates_missing_collection(self):
        client = MagicMock()
        client.collection_exists.return_value = False

        QdrantVectorStore("kb", dimension=384, client=client)

        _, kwargs = client.create_collection.call_args
        assert kwargs["collection_name"] == "kb"
        assert kwargs["vectors_config"].size == 384

    def test_existing_collection_with_other_size_fails(self):
        client = MagicMock()
        client.collection_exists.return_value = True
        client.get_collection.return_value.config.params.vectors.size = 768

        with pytest.raises(StartupError, match="768"):
            QdrantVectorStore("kb", dimension=384, client=client)
        client.create_collection.assert_not_called()

    def test_upsert_and_search(self):
        client = MagicMock()
        client.collection_exists.return_value = True
        client.get_collection.return_value.config.params.vectors.size = 4
        client.query_points.return_value = SimpleNamespace(points=[
            SimpleNamespace(payload=_payload("a", 0, "hit"), score=0.91),
        ])
        store = QdrantVectorStore("kb", dimension=4, client=client)

        store.upsert([7], np.stack([_unit(1)]), [_payload("a", 0, "hit")])
        points = client.upsert.call_args.kwargs["points"]
        assert points[0].id == 7
        assert points[0].vector == [0.0, 1.0, 0.0, 0.0]

        matches = store.search(_unit(1), k=2, min_score=0.5)
        kwargs = client.query_points.call_args.kwargs
        assert kwargs["limit"] == 2
        assert kwargs["score_threshold"] == 0.5
        assert matches[0].text == "hit"
        assert matches[0].score == pytest.approx(0.91)
        assert matches[0].source == "a"

    def test_count_and_list_sources(self):
        client = MagicMock()
        client.collection_exists.return_value = True
        client.get_collection.return_value.config.params.vectors.size = 4
        client.count.return_value = SimpleNamespace(count=3)
        client.scroll.side_effect = [
            ([SimpleNamespace(payload=_payload("a", 0, "x")),
              SimpleNamespace(payload=_payload("a", 1, "y"))], "next"),
            ([SimpleNamespace(payload=_payload("b", 0, "z"))], None),
        ]
        store = QdrantVectorStore("kb", dimension=4, client=client)

        assert store.count() == 3
        assert [(s["source"], s["chunks"]) for s in store.list_sources()] == [("a", 2), ("b", 1)]

    def test_delete_source_filters_on_payload(self):
        client = MagicMock()
        client.collection_exists.return_value = True
        client.get_collection.return_value.config.params.vectors.size = 4
        store = QdrantVectorStore("kb", dimension=4, client=client)

        store.delete_source("notes.txt")

        kwargs = client.delete.call_args.kwargs
        assert kwargs["collection_name"] == "kb"
        condition = kwargs["points_selector"].filter.must[0]
        assert condition.key == "source"
        assert condition.match.value == "notes.txt"
