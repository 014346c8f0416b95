"""
GGA Engine -- high-level API over the store, search, RAG and Hebbian memory.

``Engine`` wires one store, one embedding client and the four components
together around a single ``Settings``. The module-level functions below
delegate to a lazily created default engine, for callers (the shell tool's
hooks) that just want ``augment_prompt(...)`` or ``predict(...)``.

Usage:
    with Engine(Settings.from_env()) as engine:
        engine.record_review(project="api", files="auth.ts", result="...", status="FAILED")
        prompt = engine.augment_prompt(prompt, files, diff, commit_msg)
        issues = engine.predict("login token").issues()
"""

import atexit
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from gga import concepts as _concepts
from gga.activation import PredictionList, Predictor
from gga.config import Settings
from gga.embeddings import EmbeddingClient, review_embedding_text
from gga.exceptions import EmbeddingUnavailableError, ReviewNotFoundError
from gga.hebbian import AssociativeMemory
from gga.rag import RetrievalPipeline
from gga.search import HybridSearch, RetrievedItem
from gga.sqlite_store import DEFAULT_CONTEXT, ReviewStore

logger = logging.getLogger("gga.engine")


class Engine:
    def __init__(self, settings: Optional[Settings] = None, store=None, embedder=None):
        self.settings = settings or Settings.from_env()
        self.store = store if store is not None else ReviewStore(self.settings.db_path)
        self.embedder = embedder if embedder is not None else EmbeddingClient(self.settings)
        self.search = HybridSearch(self.store, self.settings, self.embedder)
        self.rag = RetrievalPipeline(self.store, self.search, self.settings)
        self.memory = AssociativeMemory(self.store, self.settings)
        self.predictor = Predictor(self.memory, self.settings)

    # ------------------------------------------------------------------
    # Writing history
    # ------------------------------------------------------------------

    def embed_review(self, review_id: int) -> bool:
        """Embed a stored review (files + result). False when no provider answers."""
        record = self.store.get_item(review_id)
        if record is None:
            raise ReviewNotFoundError(f"Review #{review_id} not found", {"id": review_id})
        text = review_embedding_text(record.files, record.result)
        if not text:
            return False
        try:
            vector, provider = self.embedder.embed_with_provider(text)
        except EmbeddingUnavailableError as e:
            logger.info("Review #%d stored without embedding: %s", review_id, e)
            return False
        return self.store.set_embedding(review_id, vector, provider=provider)

    def embed_missing(self, limit: int = 100) -> int:
        """Backfill embeddings for reviews saved while no provider was reachable."""
        embedded = 0
        for review_id in self.store.reviews_without_embedding(limit):
            if not self.embed_review(review_id):
                break
            embedded += 1
        return embedded

    def record_review(
        self,
        project: str,
        files,
        result: str,
        status: str,
        diff: str = "",
        **metadata: Any,
    ) -> Dict[str, Any]:
        """Persist a finished review, embed it (best effort) and learn from it."""
        review_id = self.store.save_review(project=project, files=files, result=result, status=status,
                                           diff=diff, **metadata)
        embedded = self.embed_review(review_id)
        learning = self.memory.learn_from_review(files, diff, result, status)
        logger.info("Recorded review #%d (%s, %s), embedded=%s", review_id, project, status, embedded)
        return {"id": review_id, "embedded": embedded, "learning": learning}

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    def extract_concepts(self, text: str) -> Set[str]:
        return _concepts.extract_concepts(text, max_files=self.settings.max_file_concepts)

    def hybrid_search(
        self, query: str, alpha: Optional[float] = None, limit: Optional[int] = None, project: Optional[str] = None
    ) -> List[RetrievedItem]:
        return self.search.hybrid_search(query, alpha=alpha, limit=limit, project=project)

    def find_similar(self, item_id: int, limit: int = 5) -> List[RetrievedItem]:
        return self.search.find_similar(item_id, limit)

    def augment_prompt(self, prompt: str, files="", diff: str = "", commit_msg: str = "") -> str:
        return self.rag.augment_prompt(prompt, files, diff, commit_msg)

    def ask(self, question: str, project: Optional[str] = None) -> str:
        return self.rag.ask(question, project)

    def learn_from_event(self, concepts: Iterable[str], context: str = DEFAULT_CONTEXT) -> Dict[str, Any]:
        if not self.settings.hebbian_enabled:
            return {"concepts": 0, "associations": 0, "queued": False, "disabled": True}
        return self.memory.learn(concepts, context)

    def decay(self, days: float = 1) -> Dict[str, Any]:
        return self.memory.decay(days)

    def related(self, concept: str, limit: Optional[int] = None) -> List[Tuple[str, float]]:
        return self.memory.related(concept, limit)

    def predict(self, text: str, top_k: int = 10) -> PredictionList:
        return self.predictor.predict(text, top_k)

    def predict_file(self, path, max_lines: int = 100, top_k: int = 10) -> PredictionList:
        return self.predictor.predict_file(path, max_lines=max_lines, top_k=top_k)

    def stats(self) -> Dict[str, Any]:
        return {
            "reviews": self.store.stats(),
            "projects": self.store.stats_by_project(),
            "rag": self.rag.available(),
            "hebbian": self.memory.stats(),
            "embeddings": self.embedder.info() if hasattr(self.embedder, "info") else {},
            "db_path": str(self.store.db_path),
        }

    def close(self) -> None:
        if hasattr(self.embedder, "close"):
            self.embedder.close()
        self.store.close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Lazy default engine
# ---------------------------------------------------------------------------

_engine_instance: Optional[Engine] = None
_engine_lock = threading.Lock()


def get_engine() -> Engine:
    """Get or create the default Engine from the environment (thread-safe)."""
    global _engine_instance
    if _engine_instance is not None:
        return _engine_instance
    with _engine_lock:
        if _engine_instance is None:
            _engine_instance = Engine(Settings.from_env())
            atexit.register(reset_engine)
    return _engine_instance


def reset_engine() -> None:
    """Close and forget the default engine (useful for testing)."""
    global _engine_instance
    if _engine_instance is not None:
        try:
            _engine_instance.close()
        except Exception as e:
            logger.debug("Engine close failed during reset: %s", e)
    _engine_instance = None


def hybrid_search(query: str, alpha: Optional[float] = None, limit: Optional[int] = None) -> List[RetrievedItem]:
    return get_engine().hybrid_search(query, alpha=alpha, limit=limit)


def find_similar(item_id: int, limit: int = 5) -> List[RetrievedItem]:
    return get_engine().find_similar(item_id, limit)


def augment_prompt(prompt: str, files="", diff: str = "", commit_msg: str = "") -> str:
    """Augmented prompt from the default engine; the prompt itself if the engine cannot start."""
    try:
        engine = get_engine()
    except Exception as e:
        logger.warning(f"RAG unavailable, using original prompt: {e}")
        return prompt
    return engine.augment_prompt(prompt, files, diff, commit_msg)


def learn_from_event(concepts: Iterable[str], context: str = DEFAULT_CONTEXT) -> Dict[str, Any]:
    return get_engine().learn_from_event(concepts, context)


def decay(days: float = 1) -> Dict[str, Any]:
    return get_engine().decay(days)


def predict(text: str, top_k: int = 10) -> PredictionList:
    return get_engine().predict(text, top_k)
