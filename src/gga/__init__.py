"""GGA Memory -- review history and associative memory for AI code review.

Direct Python API::

    from gga import Engine, Settings
    with Engine(Settings.from_env()) as engine:
        prompt = engine.augment_prompt(prompt, files, diff, commit_msg)
        predictions = engine.predict("login token refresh")

Install the in-process embedding model with ``pip install gga-memory[local]``.
"""

__version__ = "0.3.0"

from gga.activation import Prediction, PredictionList, Predictor, spread_activation
from gga.concepts import extract_concepts
from gga.config import Settings
from gga.embeddings import EmbeddingClient
from gga.engine import (
    Engine,
    augment_prompt,
    decay,
    find_similar,
    get_engine,
    hybrid_search,
    learn_from_event,
    predict,
    reset_engine,
)
from gga.exceptions import (
    ConfigError,
    EmbeddingUnavailableError,
    GGAError,
    MalformedInputError,
    ReviewNotFoundError,
    StorageError,
)
from gga.hebbian import AssociativeMemory
from gga.rag import RetrievalPipeline, extract_patterns
from gga.search import HybridSearch, RetrievedItem, cosine_similarity
from gga.sqlite_store import ReviewStore

__all__ = [
    "AssociativeMemory",
    "ConfigError",
    "EmbeddingClient",
    "EmbeddingUnavailableError",
    "Engine",
    "GGAError",
    "HybridSearch",
    "MalformedInputError",
    "Prediction",
    "PredictionList",
    "Predictor",
    "RetrievalPipeline",
    "RetrievedItem",
    "ReviewNotFoundError",
    "ReviewStore",
    "Settings",
    "StorageError",
    "augment_prompt",
    "cosine_similarity",
    "decay",
    "extract_concepts",
    "extract_patterns",
    "find_similar",
    "get_engine",
    "hybrid_search",
    "learn_from_event",
    "predict",
    "reset_engine",
    "spread_activation",
]
