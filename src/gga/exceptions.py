"""
GGA Exceptions -- error taxonomy shared by every component.

    GGAError
    ├── ConfigError             out-of-range settings (also ValueError)
    ├── MalformedInputError     empty query/text/concept (also ValueError)
    ├── StorageError            store unreachable or failing
    ├── ReviewNotFoundError     unknown review id (also KeyError)
    └── EmbeddingUnavailableError  no embedding provider answered

"Not enough data yet" is not an exception: it is reported as a status on the
result (see PredictionList.status and the RAG availability check).
"""

from typing import Any, Dict, Optional


class GGAError(Exception):
    """Base exception for GGA memory."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(GGAError, ValueError):
    """A setting is missing or outside its allowed range."""


class MalformedInputError(GGAError, ValueError):
    """Input rejected before any storage access."""


class StorageError(GGAError):
    """The review store could not be read or written."""


class ReviewNotFoundError(GGAError, KeyError):
    """No review with the requested id."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class EmbeddingUnavailableError(GGAError):
    """Every embedding provider in the chain failed or was skipped."""
