"""
GGA Activation Spreading -- predictions from the association graph.

Seed concepts start at activation 1.0. Each round, every active concept keeps
its own activation and passes ``activation * weight * decay`` to each
neighbour; contributions to the same concept are summed. Concepts that end up
strongly activated but were not in the input are the predictions.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Sequence, Tuple

from gga.concepts import extract_concepts
from gga.config import Settings
from gga.exceptions import MalformedInputError

logger = logging.getLogger("gga.activation")

__all__ = ["Prediction", "PredictionList", "Predictor", "spread_activation"]

ISSUE_TYPES = ("pattern", "error")


def spread_activation(
    seeds: Iterable[str],
    neighbors: Callable[[str], Sequence[Tuple[str, float]]],
    iterations: int,
    decay: float,
) -> Dict[str, float]:
    """Accumulated activation per concept after ``iterations`` rounds."""
    activation: Dict[str, float] = {seed: 1.0 for seed in seeds}
    # Neighbour lists do not change during one spread
    adjacency: Dict[str, Sequence[Tuple[str, float]]] = {}
    for _ in range(iterations):
        nxt: Dict[str, float] = {}
        for concept, level in activation.items():
            nxt[concept] = nxt.get(concept, 0.0) + level
            if concept not in adjacency:
                adjacency[concept] = neighbors(concept)
            for neighbor, weight in adjacency[concept]:
                nxt[neighbor] = nxt.get(neighbor, 0.0) + level * weight * decay
        activation = nxt
    return activation


@dataclass(frozen=True)
class Prediction:
    concept: str
    score: float

    @property
    def kind(self) -> str:
        return self.concept.split(":", 1)[0]

    @property
    def name(self) -> str:
        return self.concept.split(":", 1)[-1]


@dataclass
class PredictionList:
    """Ranked predictions, or an explicit ``insufficient`` outcome."""

    predictions: List[Prediction] = field(default_factory=list)
    status: str = "ok"
    seeds: List[str] = field(default_factory=list)
    reason: str = ""

    @property
    def insufficient(self) -> bool:
        return self.status == "insufficient"

    def issues(self, limit: int = 5) -> List[Prediction]:
        """Only pattern/error predictions: the potential issues to watch for."""
        return [p for p in self.predictions if p.kind in ISSUE_TYPES][:limit]

    def as_pairs(self) -> List[Tuple[str, float]]:
        return [(p.concept, p.score) for p in self.predictions]

    def __iter__(self) -> Iterator[Prediction]:
        return iter(self.predictions)

    def __len__(self) -> int:
        return len(self.predictions)

    def __bool__(self) -> bool:
        return bool(self.predictions)


class Predictor:
    def __init__(self, memory, settings: Settings):
        self.memory = memory
        self.settings = settings

    def predict(self, text: str, top_k: int = 10) -> PredictionList:
        """Concepts likely to come up for ``text``, strongest first."""
        if not text or not text.strip():
            raise MalformedInputError("Prediction input must not be empty")

        seeds = sorted(extract_concepts(text, max_files=self.settings.max_file_concepts))
        if not seeds:
            return PredictionList(status="insufficient", reason="No recognizable concepts found in input.")

        count = self.memory.association_count()
        if count < self.settings.min_associations:
            return PredictionList(
                status="insufficient",
                seeds=seeds,
                reason=f"Insufficient memory: {count} associations (minimum {self.settings.min_associations}).",
            )

        activation = spread_activation(
            seeds, self.memory.neighbors, self.settings.spread_iterations, self.settings.spread_decay
        )
        seed_set = set(seeds)
        ranked = sorted(
            ((c, a) for c, a in activation.items() if c not in seed_set and a > 0),
            key=lambda pair: (-pair[1], pair[0]),
        )
        predictions = [Prediction(c, a) for c, a in ranked[:top_k]]
        logger.debug("predict: %d seeds -> %d activated, %d returned", len(seeds), len(activation), len(predictions))
        return PredictionList(predictions=predictions, seeds=seeds)

    def predict_file(self, path, max_lines: int = 100, top_k: int = 10) -> PredictionList:
        """Predict from the first ``max_lines`` lines of a source file."""
        lines = []
        with open(Path(path), encoding="utf-8", errors="replace") as fh:
            for i, line in enumerate(fh):
                if i >= max_lines:
                    break
                lines.append(line)
        content = "".join(lines)
        if not content.strip():
            return PredictionList(status="insufficient", reason=f"{path} is empty.")
        return self.predict(content, top_k=top_k)
