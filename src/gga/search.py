"""
GGA Hybrid Search -- lexical and semantic ranking fused into one list.

    score = alpha * lexical + (1 - alpha) * semantic

Lexical scores come from the store's bm25 ranks, min-max normalised so the
best hit scores 1.0. Semantic scores are cosine similarities between the query
embedding and every stored review embedding. An item missing from one side
scores 0 there. When no embedding provider answers, search is lexical only.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from gga.config import Settings
from gga.exceptions import MalformedInputError, ReviewNotFoundError

logger = logging.getLogger("gga.search")

__all__ = ["RetrievedItem", "HybridSearch", "cosine_similarity", "normalize_ranks"]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 for a zero vector or mismatched dimensions."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def normalize_ranks(ranks: Dict[int, float]) -> Dict[int, float]:
    """Map bm25 ranks (lower is better) into [0.1, 1.0], best -> 1.0."""
    if not ranks:
        return {}
    best = min(ranks.values())
    worst = max(ranks.values())
    if worst == best:
        return {item_id: 1.0 for item_id in ranks}
    span = worst - best
    return {item_id: 0.1 + 0.9 * (worst - rank) / span for item_id, rank in ranks.items()}


@dataclass
class RetrievedItem:
    id: int
    score: float
    project: str = ""
    status: str = ""
    snippet: str = ""
    lexical: float = 0.0
    semantic: float = 0.0


def _ranked(items: Dict[int, RetrievedItem], limit: int) -> List[RetrievedItem]:
    return sorted(items.values(), key=lambda r: (-r.score, r.id))[:limit]


class HybridSearch:
    """Search over a review store.

    ``embedder`` is anything with ``try_embed(text) -> list | None`` (normally
    an ``EmbeddingClient``); without one, the semantic side is always empty.
    """

    def __init__(self, store, settings: Settings, embedder=None):
        self.store = store
        self.settings = settings
        self.embedder = embedder

    # ------------------------------------------------------------------
    # Lexical
    # ------------------------------------------------------------------

    def lexical_search(self, query: str, limit: int, project: Optional[str] = None) -> List[RetrievedItem]:
        hits = self.store.text_search(query, limit, project=project)
        scores = normalize_ranks({h.id: h.rank for h in hits})
        items = {
            h.id: RetrievedItem(
                id=h.id, score=scores[h.id], project=h.project, status=h.status,
                snippet=h.snippet, lexical=scores[h.id],
            )
            for h in hits
        }
        return _ranked(items, limit)

    # ------------------------------------------------------------------
    # Semantic
    # ------------------------------------------------------------------

    def _query_vector(self, query: str) -> Optional[List[float]]:
        if self.embedder is None:
            return None
        return self.embedder.try_embed(query)

    def semantic_search_vector(
        self,
        vector: Sequence[float],
        limit: int,
        exclude_id: Optional[int] = None,
        project: Optional[str] = None,
        min_similarity: Optional[float] = None,
    ) -> List[RetrievedItem]:
        """Rank stored embeddings by cosine similarity to ``vector``."""
        threshold = self.settings.min_similarity if min_similarity is None else min_similarity
        query = np.asarray(vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if query.size == 0 or query_norm == 0:
            return []

        candidates = []
        skipped = 0
        for item in self.store.list_embedded_items():
            if item.id == exclude_id or (project and item.project != project):
                continue
            if len(item.vector) != query.size:
                skipped += 1
                continue
            candidates.append(item)
        if skipped:
            logger.debug("Skipped %d embeddings with a different dimension than the query (%d)", skipped, query.size)
        if not candidates:
            return []

        matrix = np.asarray([c.vector for c in candidates], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = (matrix @ query) / (norms * query_norm)
        sims = np.where(norms > 0, sims, 0.0)

        items = {}
        for cand, sim in zip(candidates, sims.tolist()):
            if sim < threshold:
                continue
            items[cand.id] = RetrievedItem(
                id=cand.id, score=sim, project=cand.project, status=cand.status, semantic=sim
            )
        return _ranked(items, limit)

    def semantic_search(self, query: str, limit: int, project: Optional[str] = None) -> List[RetrievedItem]:
        vector = self._query_vector(query)
        if vector is None:
            return []
        return self.semantic_search_vector(vector, limit, project=project)

    # ------------------------------------------------------------------
    # Fusion
    # ------------------------------------------------------------------

    def hybrid_search(
        self,
        query: str,
        alpha: Optional[float] = None,
        limit: Optional[int] = None,
        project: Optional[str] = None,
    ) -> List[RetrievedItem]:
        """Fused ranking, best first, ties broken by ascending id."""
        if not query or not query.strip():
            raise MalformedInputError("Search query must not be empty")
        alpha = self.settings.alpha if alpha is None else alpha
        if not 0.0 <= alpha <= 1.0:
            raise MalformedInputError(f"alpha must be within [0, 1], got {alpha}")
        limit = limit or self.settings.search_limit
        fetch = limit * 2

        lexical = self.lexical_search(query, fetch, project) if alpha > 0 else []
        semantic = self.semantic_search(query, fetch, project) if alpha < 1 else []
        logger.debug("hybrid_search %r: %d lexical, %d semantic", query[:60], len(lexical), len(semantic))

        fused: Dict[int, RetrievedItem] = {}
        for hit in lexical:
            fused[hit.id] = RetrievedItem(
                id=hit.id, score=0.0, project=hit.project, status=hit.status,
                snippet=hit.snippet, lexical=hit.lexical,
            )
        for hit in semantic:
            existing = fused.get(hit.id)
            if existing is None:
                fused[hit.id] = RetrievedItem(
                    id=hit.id, score=0.0, project=hit.project, status=hit.status, semantic=hit.semantic
                )
            else:
                existing.semantic = hit.semantic
        for item in fused.values():
            item.score = alpha * item.lexical + (1 - alpha) * item.semantic
        return _ranked(fused, limit)

    def find_similar(self, item_id: int, limit: int = 5) -> List[RetrievedItem]:
        """Reviews closest to ``item_id`` by embedding, excluding itself."""
        if self.store.get_item(item_id) is None:
            raise ReviewNotFoundError(f"Review #{item_id} not found", {"id": item_id})
        vector = self.store.get_embedding(item_id)
        if vector is None:
            logger.warning("Review #%d has no embedding; cannot find similar reviews", item_id)
            return []
        return self.semantic_search_vector(vector, limit, exclude_id=item_id)
