"""
GGA Associative Memory -- Hebbian learning over co-occurring concepts.

"Concepts that fire together wire together": every pair of concepts seen in
the same review gains ``learning_rate * act_a * act_b`` of weight (capped at
1.0, starting from the default 0.5). ``decay`` weakens every association and
prunes the ones that fall below the threshold.
"""

import logging
from collections import deque
from itertools import combinations
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from gga.concepts import concept_type, extract_concepts, is_valid_concept
from gga.config import Settings
from gga.exceptions import MalformedInputError, StorageError
from gga.sqlite_store import DEFAULT_CONTEXT

logger = logging.getLogger("gga.hebbian")

__all__ = ["AssociativeMemory"]

_PENDING_MAX = 256


class AssociativeMemory:
    """Learning, decay and neighbour lookup over the store's association table."""

    def __init__(self, store, settings: Settings):
        self.store = store
        self.settings = settings
        self._pending: Deque[Tuple[List[str], str, Dict[str, float]]] = deque(maxlen=_PENDING_MAX)

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def _validate(self, concepts: Iterable[str], context: str) -> List[str]:
        if not context or not context.strip():
            raise MalformedInputError("Association context must not be empty")
        unique = sorted(set(concepts))
        for concept in unique:
            if not is_valid_concept(concept):
                raise MalformedInputError(f"Invalid concept id {concept!r}; expected 'type:name'", {"concept": concept})
        return unique

    def _apply(self, concepts: List[str], context: str, activations: Dict[str, float]) -> int:
        rate = self.settings.learning_rate
        pairs = [
            (a, b, rate * activations.get(a, 1.0) * activations.get(b, 1.0))
            for a, b in combinations(concepts, 2)
        ]
        return self.store.apply_learning(
            [(c, concept_type(c)) for c in concepts],
            pairs,
            context=context,
            default_weight=self.settings.default_weight,
        )

    def learn(
        self,
        concepts: Iterable[str],
        context: str = DEFAULT_CONTEXT,
        activations: Optional[Dict[str, float]] = None,
    ) -> Dict[str, Any]:
        """Strengthen every pair in ``concepts`` as one co-occurrence event.

        A storage failure does not lose the event: it is queued and replayed
        before the next one (or by ``flush_pending``).
        """
        unique = self._validate(concepts, context)
        activations = dict(activations or {})
        if not unique:
            return {"concepts": 0, "associations": 0, "queued": False}

        self.flush_pending()
        try:
            touched = self._apply(unique, context, activations)
        except StorageError as e:
            if len(self._pending) == _PENDING_MAX:
                dropped = self._pending[0]
                logger.warning(
                    f"Learning queue full ({_PENDING_MAX}); dropping oldest event with {len(dropped[0])} concepts"
                )
            self._pending.append((unique, context, activations))
            logger.warning(f"Learning event queued after storage failure ({len(self._pending)} pending): {e}")
            return {"concepts": len(unique), "associations": 0, "queued": True}

        logger.debug("Learned %d associations across %d concepts (context=%s)", touched, len(unique), context)
        return {"concepts": len(unique), "associations": touched, "queued": False}

    def flush_pending(self) -> int:
        """Replay queued learning events in order. Returns how many were applied."""
        applied = 0
        while self._pending:
            concepts, context, activations = self._pending[0]
            try:
                self._apply(concepts, context, activations)
            except StorageError as e:
                logger.debug("Pending learning replay still failing: %s", e)
                break
            self._pending.popleft()
            applied += 1
        if applied:
            logger.info("Replayed %d queued learning events", applied)
        return applied

    def learn_from_review(self, files: str, diff: str, result: str, status: Optional[str] = None) -> Dict[str, Any]:
        """Learn from a finished review's files, diff, output and outcome."""
        if not self.settings.hebbian_enabled:
            return {"concepts": 0, "associations": 0, "queued": False, "disabled": True}
        if isinstance(files, (list, tuple)):
            files = " ".join(files)
        text = f"{files or ''} {diff or ''} {result or ''}"
        concepts = extract_concepts(text, max_files=self.settings.max_file_concepts)
        if status:
            concepts.add(f"status:{status.upper()}")
        if not concepts:
            return {"concepts": 0, "associations": 0, "queued": False}
        return self.learn(concepts, DEFAULT_CONTEXT)

    # ------------------------------------------------------------------
    # Decay
    # ------------------------------------------------------------------

    def decay(self, days: float = 1) -> Dict[str, Any]:
        """Multiply every weight by ``decay_rate ** days`` and prune weak links.

        The factor is flat: it does not depend on when each association was
        last updated.
        """
        if days < 0:
            raise MalformedInputError(f"Decay days must be >= 0, got {days}")
        factor = self.settings.decay_rate ** days
        decayed, removed = self.store.decay_and_prune(factor, self.settings.prune_threshold)
        logger.info("Decay applied: factor=%.4f, %d associations decayed, %d pruned", factor, decayed, removed)
        return {"factor": factor, "decayed": decayed, "removed": removed}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def related(self, concept: str, limit: Optional[int] = None) -> List[Tuple[str, float]]:
        if not is_valid_concept(concept):
            raise MalformedInputError(f"Invalid concept id {concept!r}; expected 'type:name'")
        return self.store.list_neighbors(concept, limit=limit)

    def neighbors(self, concept: str) -> List[Tuple[str, float]]:
        return self.store.list_neighbors(concept)

    def weight(self, concept_a: str, concept_b: str, context: str = DEFAULT_CONTEXT) -> Optional[float]:
        return self.store.get_association(concept_a, concept_b, context)

    def association_count(self) -> int:
        return self.store.count_associations()

    def stats(self) -> Dict[str, Any]:
        stats = self.store.association_stats()
        stats.update({
            "enabled": self.settings.hebbian_enabled,
            "learning_rate": self.settings.learning_rate,
            "decay_rate": self.settings.decay_rate,
            "threshold": self.settings.prune_threshold,
            "pending": len(self._pending),
        })
        return stats
