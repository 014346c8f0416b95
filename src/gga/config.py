"""
GGA Settings -- one immutable configuration value per engine.

Every component takes a ``Settings`` at construction; nothing reads the
environment behind the caller's back. ``Settings.from_env()`` is the optional
loader for the ``GGA_*`` variables the shell tool exports.

Usage:
    settings = Settings.from_env()
    engine = Engine(settings)
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from gga.exceptions import ConfigError

logger = logging.getLogger("gga.config")


def _default_home() -> Path:
    return Path(os.environ.get("GGA_HOME", str(Path.home() / ".gga")))


# Environment variable -> Settings field. Credentials keep their usual names.
_ENV_FIELDS: Dict[str, str] = {
    "GGA_DB_PATH": "db_path",
    "GGA_SEARCH_ALPHA": "alpha",
    "GGA_SEARCH_LIMIT": "search_limit",
    "GGA_RAG_ENABLED": "rag_enabled",
    "GGA_RAG_CONTEXT_LIMIT": "context_limit",
    "GGA_RAG_MIN_SIMILARITY": "min_similarity",
    "GGA_RAG_MAX_TOKENS": "max_tokens",
    "GGA_RAG_RECENCY_BOOST": "recency_boost",
    "GGA_RAG_RECENCY_DAYS": "recency_days",
    "GGA_HEBBIAN_ENABLED": "hebbian_enabled",
    "GGA_HEBBIAN_LEARNING_RATE": "learning_rate",
    "GGA_HEBBIAN_DECAY_RATE": "decay_rate",
    "GGA_HEBBIAN_THRESHOLD": "prune_threshold",
    "GGA_HEBBIAN_SPREAD_ITERATIONS": "spread_iterations",
    "GGA_HEBBIAN_SPREAD_DECAY": "spread_decay",
    "GGA_EMBED_PROVIDER": "embed_provider",
    "GGA_EMBED_TIMEOUT": "embed_timeout",
    "GGA_EMBED_TOTAL_TIMEOUT": "embed_total_timeout",
    "GGA_OPENAI_EMBED_MODEL": "openai_embed_model",
    "GGA_GEMINI_EMBED_MODEL": "gemini_embed_model",
    "GGA_OLLAMA_EMBED_MODEL": "ollama_embed_model",
    "GGA_GITHUB_EMBED_MODEL": "github_embed_model",
    "OLLAMA_HOST": "ollama_host",
    "OPENAI_API_KEY": "openai_api_key",
    "GOOGLE_API_KEY": "google_api_key",
    "GITHUB_TOKEN": "github_token",
}

_TRUTHY = ("1", "true", "yes", "on")
_FALSY = ("0", "false", "no", "off")

EMBED_PROVIDERS = ("auto", "ollama", "gemini", "github", "openai", "local")


@dataclass(frozen=True)
class Settings:
    """Tunable parameters for search, retrieval, learning and prediction."""

    db_path: Path = field(default_factory=lambda: _default_home() / "gga.db")

    # Hybrid search
    alpha: float = 0.5  # 0 = pure semantic, 1 = pure lexical
    search_limit: int = 20
    min_similarity: float = 0.3

    # Retrieval-augmented prompts
    rag_enabled: bool = True
    rag_alpha: float = 0.5
    rag_min_items: int = 3
    context_limit: int = 5
    max_tokens: int = 2000
    recency_boost: float = 0.1
    recency_days: int = 30
    result_char_cap: int = 400
    entry_token_overhead: int = 50

    # Hebbian memory
    hebbian_enabled: bool = True
    learning_rate: float = 0.1
    default_weight: float = 0.5
    decay_rate: float = 0.99
    prune_threshold: float = 0.1
    spread_iterations: int = 3
    spread_decay: float = 0.5
    min_associations: int = 3
    max_file_concepts: int = 10

    # Embedding providers
    embed_provider: str = "auto"
    embed_timeout: float = 30.0
    embed_total_timeout: float = 60.0
    openai_embed_model: str = "text-embedding-3-small"
    gemini_embed_model: str = "text-embedding-004"
    ollama_embed_model: str = "nomic-embed-text"
    github_embed_model: str = "text-embedding-3-small"
    ollama_host: str = "http://localhost:11434"
    openai_api_key: Optional[str] = field(default=None, repr=False)
    google_api_key: Optional[str] = field(default=None, repr=False)
    github_token: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())
        for name in ("alpha", "rag_alpha", "min_similarity", "learning_rate", "default_weight",
                     "prune_threshold", "spread_decay"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value}", {name: value})
        if not 0.0 < self.decay_rate <= 1.0:
            raise ConfigError(f"decay_rate must be within (0, 1], got {self.decay_rate}")
        if self.recency_boost < 0:
            raise ConfigError(f"recency_boost must be >= 0, got {self.recency_boost}")
        for name in ("search_limit", "context_limit", "max_tokens", "recency_days", "result_char_cap",
                     "max_file_concepts"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.spread_iterations < 0:
            raise ConfigError(f"spread_iterations must be >= 0, got {self.spread_iterations}")
        if self.embed_timeout <= 0 or self.embed_total_timeout <= 0:
            raise ConfigError("embedding timeouts must be positive")
        if self.embed_provider not in EMBED_PROVIDERS:
            raise ConfigError(
                f"Unknown embedding provider {self.embed_provider!r}; expected one of {', '.join(EMBED_PROVIDERS)}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "Settings":
        """Build settings from ``GGA_*`` variables; explicit overrides win."""
        env = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(cls)}
        values: Dict[str, Any] = {}
        home = env.get("GGA_HOME")
        if home:
            values["db_path"] = Path(home) / "gga.db"
        for var, name in _ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or raw.strip() == "":
                continue
            values[name] = _coerce(var, raw.strip(), types[name])
        values.update(overrides)
        logger.debug("Settings loaded from environment: %s", sorted(k for k in values if not k.endswith(("_key", "_token"))))
        return cls(**values)

    def with_overrides(self, **changes: Any) -> "Settings":
        return replace(self, **changes)


def _coerce(var: str, raw: str, annotation: Any) -> Any:
    """Convert an environment string to the field's declared type."""
    kind = annotation if isinstance(annotation, str) else getattr(annotation, "__name__", str(annotation))
    try:
        if kind == "bool":
            lowered = raw.lower()
            if lowered in _TRUTHY:
                return True
            if lowered in _FALSY:
                return False
            raise ValueError(raw)
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
        if kind == "Path":
            return Path(raw)
    except ValueError as e:
        raise ConfigError(f"{var}={raw!r} is not a valid {kind}") from e
    return raw
