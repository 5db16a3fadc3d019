"""Tests for vector_store — scoring, affinity boost, candidate pool, floor."""

import pytest

from errors import ProviderError
from vector_store import (
    ContextMatch,
    SimilarityRetriever,
    candidate_pool_size,
    distance_to_similarity,
    rank_candidates,
)


def _row(content, distance, conversation_id="other", message_id=None):
    return {
        "message_id": message_id or content,
        "conversation_id": conversation_id,
        "content": content,
        "distance": distance,
    }


class TestScoring:
    def test_distance_to_similarity(self):
        assert distance_to_similarity(0.0) == pytest.approx(1.0)
        assert distance_to_similarity(0.25) == pytest.approx(0.75)
        assert distance_to_similarity(1.0) == pytest.approx(0.0)

    @pytest.mark.parametrize("top_k,expected", [(1, 16), (4, 16), (5, 20), (10, 40)])
    def test_candidate_pool_size(self, top_k, expected):
        assert candidate_pool_size(top_k) == expected


class TestRankCandidates:
    def test_same_similarity_differs_by_boost(self):
        rows = [_row("theirs", 0.4, "other"), _row("ours", 0.4, "current")]
        matches = rank_candidates(rows, "current", top_k=5, boost=1.5)
        by_content = {m.content: m for m in matches}
        assert by_content["ours"].score == pytest.approx(by_content["theirs"].score * 1.5)
        assert matches[0].content == "ours"

    def test_boost_promotes_candidate_outside_raw_top_k(self):
        rows = [
            _row("a", 0.10), _row("b", 0.12), _row("c", 0.14),
            _row("mine", 0.30, "current"),
        ]
        matches = rank_candidates(rows, "current", top_k=2, boost=1.5)
        # 0.70 * 1.5 = 1.05 beats 0.90
        assert [m.content for m in matches] == ["mine", "a"]

    def test_no_conversation_no_boost(self):
        rows = [_row("x", 0.2, "current")]
        (match,) = rank_candidates(rows, None, top_k=5, boost=1.5)
        assert match.score == pytest.approx(0.8)
        assert match.similarity == pytest.approx(0.8)

    def test_sorted_descending_and_limited(self):
        rows = [_row(str(d), d) for d in (0.5, 0.1, 0.3, 0.2, 0.4)]
        matches = rank_candidates(rows, None, top_k=3, boost=1.5)
        assert [m.content for m in matches] == ["0.1", "0.2", "0.3"]

    def test_no_floor_keeps_low_scores(self):
        rows = [_row("far", 0.9)]
        matches = rank_candidates(rows, None, top_k=5, boost=1.5, min_similarity=None)
        assert len(matches) == 1

    def test_floor_applies_to_boosted_score(self):
        rows = [_row("theirs", 0.4, "other"), _row("ours", 0.4, "current")]
        matches = rank_candidates(rows, "current", top_k=5, boost=1.5, min_similarity=0.75)
        # 0.6 is dropped; 0.6 * 1.5 = 0.9 survives
        assert [m.content for m in matches] == ["ours"]

    def test_empty(self):
        assert rank_candidates([], "c", top_k=5, boost=1.5) == []


class _Rows:
    def __init__(self, rows):
        self.rows = rows
        self.limits = []

    def search_embeddings(self, vector, limit):
        self.limits.append(limit)
        return self.rows[:limit]


class TestSimilarityRetriever:
    def test_find_similar_embeds_and_ranks(self, embedder):
        store = _Rows([_row("a", 0.2), _row("b", 0.1)])
        retriever = SimilarityRetriever(store, embedder, boost=1.5, enforce_min_similarity=False)
        matches = retriever.find_similar("query", "conv", top_k=5)
        assert embedder.calls == ["query"]
        assert [m.content for m in matches] == ["b", "a"]
        assert all(isinstance(m, ContextMatch) for m in matches)

    def test_asks_for_candidate_pool(self, embedder):
        store = _Rows([])
        SimilarityRetriever(store, embedder).find_similar_by_vector([1.0], "c", top_k=5)
        assert store.limits == [20]

    def test_floor_off_by_default(self, embedder):
        store = _Rows([_row("far", 0.9)])
        retriever = SimilarityRetriever(store, embedder, enforce_min_similarity=False)
        assert len(retriever.find_similar_by_vector([1.0], None, min_similarity=0.75)) == 1

    def test_floor_when_enforced(self, embedder):
        store = _Rows([_row("far", 0.9), _row("near", 0.05)])
        retriever = SimilarityRetriever(store, embedder, enforce_min_similarity=True)
        matches = retriever.find_similar_by_vector([1.0], None, min_similarity=0.75)
        assert [m.content for m in matches] == ["near"]

    def test_zero_top_k_skips_store(self, embedder):
        store = _Rows([_row("a", 0.1)])
        assert SimilarityRetriever(store, embedder).find_similar_by_vector([1.0], top_k=0) == []
        assert store.limits == []

    def test_embedding_failure_propagates(self, embedder):
        embedder.fail = True
        retriever = SimilarityRetriever(_Rows([]), embedder)
        with pytest.raises(ProviderError):
            retriever.find_similar("query")

    def test_against_fake_store(self, store, embedder):
        cid = store.create_conversation("t")
        other = store.create_conversation("u")
        near = store.store_message(other, "user", "close match")
        mine = store.store_message(cid, "user", "same conversation")
        store.store_embedding(near, [1.0, 0.0, 0.0, 0.0])
        store.store_embedding(mine, [0.8, 0.6, 0.0, 0.0])
        matches = SimilarityRetriever(store, embedder, boost=1.5).find_similar("q", cid)
        # 0.8 * 1.5 = 1.2 beats 1.0
        assert [m.content for m in matches] == ["same conversation", "close match"]
