"""Similarity retriever — prior messages related to the incoming one.

Similarity math is delegated to pgvector (cosine distance, ``<=>``).  This
module turns distances into scores, applies the conversation-affinity boost,
and picks the top candidates:

    score = (1 - distance) * (boost if same conversation else 1)

The store is asked for a wider candidate pool than ``top_k`` so that a
boosted same-conversation message just outside the raw top-k can still
make the cut.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextMatch:
    content: str
    score: float
    similarity: float = 0.0
    conversation_id: str | None = None
    message_id: str | None = None


def distance_to_similarity(distance: float) -> float:
    """Cosine distance (0 … 2) → cosine similarity (1 … -1)."""
    return 1.0 - distance


def candidate_pool_size(top_k: int) -> int:
    return max(top_k * 4, 16)


def rank_candidates(
    rows: list[dict],
    conversation_id: str | None,
    *,
    top_k: int,
    boost: float,
    min_similarity: float | None = None,
) -> list[ContextMatch]:
    """Score, boost, sort and cut store rows.

    When *min_similarity* is given, matches whose (boosted) score is below
    it are dropped; ``None`` means rank and limit only.
    """
    matches: list[ContextMatch] = []
    for row in rows:
        sim = distance_to_similarity(row["distance"])
        same_conv = conversation_id is not None and row.get("conversation_id") == conversation_id
        score = sim * boost if same_conv else sim
        if min_similarity is not None and score < min_similarity:
            continue
        matches.append(ContextMatch(
            content=row["content"],
            score=score,
            similarity=sim,
            conversation_id=row.get("conversation_id"),
            message_id=row.get("message_id"),
        ))
    matches.sort(key=lambda m: m.score, reverse=True)
    return matches[:top_k]


class SimilarityRetriever:
    """Ranks stored message vectors against a query."""

    def __init__(
        self,
        store,
        embedder,
        *,
        boost: float = settings.CONVERSATION_AFFINITY_BOOST,
        enforce_min_similarity: bool = settings.RETRIEVAL_ENFORCE_MIN_SIMILARITY,
    ):
        self.store = store
        self.embedder = embedder
        self.boost = boost
        self.enforce_min_similarity = enforce_min_similarity

    def find_similar(
        self,
        query_text: str,
        conversation_id: str | None = None,
        min_similarity: float = 0.75,
        top_k: int = 5,
    ) -> list[ContextMatch]:
        """Embed *query_text* and return the best matches, best first."""
        vector = self.embedder.embed(query_text)
        return self.find_similar_by_vector(
            vector, conversation_id, min_similarity=min_similarity, top_k=top_k,
        )

    def find_similar_by_vector(
        self,
        vector,
        conversation_id: str | None = None,
        min_similarity: float = 0.75,
        top_k: int = 5,
    ) -> list[ContextMatch]:
        if top_k <= 0:
            return []
        rows = self.store.search_embeddings(vector, limit=candidate_pool_size(top_k))
        matches = rank_candidates(
            rows,
            conversation_id,
            top_k=top_k,
            boost=self.boost,
            min_similarity=min_similarity if self.enforce_min_similarity else None,
        )
        top = f"{matches[0].score:.3f}" if matches else "-"
        logger.info(f"Retrieved {len(matches)}/{len(rows)} candidates (conv={conversation_id}, top={top})")
        return matches
