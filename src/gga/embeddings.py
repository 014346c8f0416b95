"""
GGA Embeddings -- provider fallback chain for review and query vectors.

Remote providers are called over httpx; the optional ``local`` provider runs
an ONNX model in-process (``pip install gga-memory[local]``).

Auto order: Ollama -> Gemini -> GitHub Models -> OpenAI. A provider that is
not configured is skipped; one that fails is put on a cooldown so a dead
endpoint is not retried on every call. The whole chain shares one deadline.
"""

import hashlib
import logging
import os
import time as _time_module
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import numpy as np

from gga.config import Settings
from gga.exceptions import EmbeddingUnavailableError

logger = logging.getLogger("gga.embeddings")

__all__ = [
    "AUTO_ORDER",
    "EmbeddingClient",
    "EmbeddingProvider",
    "GeminiProvider",
    "GitHubModelsProvider",
    "LocalProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "review_embedding_text",
]

AUTO_ORDER = ("ollama", "gemini", "github", "openai")

_EMBEDDING_CACHE_MAX = 512
_CIRCUIT_BREAKER_COOLDOWN_S = 300  # 5 minutes
_OLLAMA_PING_TIMEOUT_S = 2.0


def review_embedding_text(files: str, result: str) -> str:
    """Text embedded for a stored review: its file list and the review output."""
    return f"{files or ''} {result or ''}".strip()


class EmbeddingProvider:
    """One embedding backend. Subclasses implement ``configured`` and ``_embed``."""

    name = "base"

    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        self.settings = settings
        self._http = http

    @property
    def model(self) -> str:
        return ""

    def configured(self) -> bool:
        return True

    def ping(self, timeout: float) -> None:
        """Raise ``EmbeddingUnavailableError`` if the backend is known to be down."""

    def embed(self, text: str, timeout: float) -> List[float]:
        try:
            vector = self._embed(text, timeout)
        except httpx.HTTPError as e:
            raise EmbeddingUnavailableError(f"{self.name} request failed: {e}", {"provider": self.name}) from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise EmbeddingUnavailableError(
                f"{self.name} returned an unexpected payload: {e}", {"provider": self.name}
            ) from e
        if not vector:
            raise EmbeddingUnavailableError(f"{self.name} returned an empty embedding", {"provider": self.name})
        return [float(x) for x in vector]

    def _embed(self, text: str, timeout: float) -> Sequence[float]:
        raise NotImplementedError

    def _post(self, url: str, payload: Dict[str, Any], timeout: float, headers=None) -> Any:
        response = self._http.post(url, json=payload, headers=headers, timeout=timeout)
        response.raise_for_status()
        return response.json()


class OllamaProvider(EmbeddingProvider):
    name = "ollama"

    @property
    def model(self) -> str:
        return self.settings.ollama_embed_model

    def ping(self, timeout: float) -> None:
        # A closed port should fail fast instead of eating the embed deadline
        host = self.settings.ollama_host.rstrip("/")
        try:
            response = self._http.get(f"{host}/api/tags", timeout=min(timeout, _OLLAMA_PING_TIMEOUT_S))
        except httpx.HTTPError as e:
            raise EmbeddingUnavailableError(
                f"ollama not reachable at {host}: {e}", {"provider": self.name}
            ) from e
        if response.status_code != 200:
            raise EmbeddingUnavailableError(
                f"ollama ping returned HTTP {response.status_code}", {"provider": self.name}
            )

    def _embed(self, text: str, timeout: float) -> Sequence[float]:
        data = self._post(
            f"{self.settings.ollama_host.rstrip('/')}/api/embeddings",
            {"model": self.model, "prompt": text},
            timeout,
        )
        return data["embedding"]


class GeminiProvider(EmbeddingProvider):
    name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1/models"

    @property
    def model(self) -> str:
        return self.settings.gemini_embed_model

    def configured(self) -> bool:
        return bool(self.settings.google_api_key)

    def _embed(self, text: str, timeout: float) -> Sequence[float]:
        response = self._http.post(
            f"{self.base_url}/{self.model}:embedContent",
            params={"key": self.settings.google_api_key},
            json={"model": f"models/{self.model}", "content": {"parts": [{"text": text}]}},
            timeout=timeout,
        )
        response.raise_for_status()
        return response.json()["embedding"]["values"]


class GitHubModelsProvider(EmbeddingProvider):
    name = "github"
    url = "https://models.inference.ai.azure.com/embeddings"

    @property
    def model(self) -> str:
        return self.settings.github_embed_model

    def configured(self) -> bool:
        return bool(self.settings.github_token)

    def _embed(self, text: str, timeout: float) -> Sequence[float]:
        data = self._post(
            self.url,
            {"model": self.model, "input": [text]},
            timeout,
            headers={"Authorization": f"Bearer {self.settings.github_token}"},
        )
        return data["data"][0]["embedding"]


class OpenAIProvider(EmbeddingProvider):
    name = "openai"
    url = "https://api.openai.com/v1/embeddings"

    @property
    def model(self) -> str:
        return self.settings.openai_embed_model

    def configured(self) -> bool:
        return bool(self.settings.openai_api_key)

    def _embed(self, text: str, timeout: float) -> Sequence[float]:
        data = self._post(
            self.url,
            {"model": self.model, "input": text},
            timeout,
            headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
        )
        return data["data"][0]["embedding"]


# ---------------------------------------------------------------------------
# Local provider: ONNX Runtime (~90MB) first, sentence-transformers fallback
# ---------------------------------------------------------------------------

_ONNX_DEFAULT_DIR = "~/.cache/gga/models/bge-small-en-v1.5-onnx"


def _has_module(name: str) -> bool:
    import importlib.util

    return importlib.util.find_spec(name) is not None


def _onnx_encode(tokenizer, session, texts: List[str]) -> "np.ndarray":
    """Encode texts using ONNX Runtime. Returns normalized embeddings."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    if "token_type_ids" in {i.name for i in session.get_inputs()}:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
    if embeddings.ndim == 3:
        # Mean-pool token states under the attention mask
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        embeddings = np.sum(embeddings * mask_expanded, axis=1) / np.clip(
            np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None
        )
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


class LocalProvider(EmbeddingProvider):
    """In-process bge-small embeddings; lazily loaded on first use."""

    name = "local"

    def __init__(self, settings: Settings, http: Optional[httpx.Client] = None):
        super().__init__(settings, http)
        self._model = None
        self._backend: Optional[str] = None
        self._load_failed = False

    @property
    def model(self) -> str:
        return "bge-small-en-v1.5"

    def _model_dir(self) -> Optional[Path]:
        for candidate in (os.environ.get("GGA_ONNX_MODEL_DIR"), os.path.expanduser(_ONNX_DEFAULT_DIR)):
            if candidate and (Path(candidate) / "model.onnx").exists():
                return Path(candidate)
        return None

    def configured(self) -> bool:
        if self._model is not None:
            return True
        if self._load_failed:
            return False
        return (_has_module("onnxruntime") and self._model_dir() is not None) or _has_module(
            "sentence_transformers"
        )

    def _load(self):
        if self._model is not None:
            return self._model
        os.environ.setdefault("TQDM_DISABLE", "1")
        onnx_dir = self._model_dir()
        if onnx_dir is not None and _has_module("onnxruntime"):
            try:
                import onnxruntime as ort
                from tokenizers import Tokenizer

                tokenizer = Tokenizer.from_file(str(onnx_dir / "tokenizer.json"))
                tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                tokenizer.enable_truncation(max_length=512)
                sess_opts = ort.SessionOptions()
                sess_opts.log_severity_level = 4
                sess_opts.enable_cpu_mem_arena = False
                session = ort.InferenceSession(
                    str(onnx_dir / "model.onnx"), sess_options=sess_opts, providers=["CPUExecutionProvider"]
                )
                self._model, self._backend = (tokenizer, session), "onnx"
                logger.info("Loaded ONNX embedding model from %s", onnx_dir)
                return self._model
            except Exception as e:
                logger.warning(f"Failed to load ONNX model: {e}")

        if _has_module("sentence_transformers"):
            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer("BAAI/bge-small-en-v1.5")
                self._backend = "sentence-transformers"
                logger.info("Loaded sentence-transformers model (PyTorch fallback)")
                return self._model
            except Exception as e:
                logger.warning(f"Failed to load sentence-transformers: {e}")

        self._load_failed = True
        raise EmbeddingUnavailableError("No local embedding backend could be loaded", {"provider": self.name})

    def _embed(self, text: str, timeout: float) -> Sequence[float]:
        model = self._load()
        if self._backend == "onnx":
            tokenizer, session = model
            return _onnx_encode(tokenizer, session, [text])[0].tolist()
        return model.encode(text, normalize_embeddings=True).tolist()


_PROVIDER_CLASSES = {
    "ollama": OllamaProvider,
    "gemini": GeminiProvider,
    "github": GitHubModelsProvider,
    "openai": OpenAIProvider,
    "local": LocalProvider,
}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class EmbeddingClient:
    """Embeds text with the first provider in the chain that answers.

    ``embed`` raises ``EmbeddingUnavailableError`` when the chain is
    exhausted; ``try_embed`` returns None instead, for callers that degrade to
    lexical-only behaviour.
    """

    def __init__(
        self,
        settings: Settings,
        providers: Optional[Sequence[EmbeddingProvider]] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.settings = settings
        self._owns_http = http is None
        self._http = http or httpx.Client()
        if providers is None:
            names = AUTO_ORDER if settings.embed_provider == "auto" else (settings.embed_provider,)
            providers = [_PROVIDER_CLASSES[n](settings, self._http) for n in names]
        self.providers: List[EmbeddingProvider] = list(providers)
        self._cache: "OrderedDict[str, Tuple[List[float], str]]" = OrderedDict()
        self._cooldown_until: Dict[str, float] = {}
        self.last_provider: Optional[str] = None

    def _cache_key(self, text: str) -> str:
        return hashlib.md5(text.encode()).hexdigest()

    def embed_with_provider(self, text: str) -> Tuple[List[float], str]:
        """Return ``(vector, provider_name)`` from the first working provider."""
        if not text or not text.strip():
            raise EmbeddingUnavailableError("Cannot embed empty text")

        cache_key = self._cache_key(text)
        if cache_key in self._cache:
            self._cache.move_to_end(cache_key)
            return self._cache[cache_key]

        start = _time_module.monotonic()
        errors: List[str] = []
        for provider in self.providers:
            now = _time_module.monotonic()
            remaining = self.settings.embed_total_timeout - (now - start)
            if remaining <= 0:
                errors.append("deadline exceeded")
                logger.warning("Embedding deadline of %.1fs exhausted", self.settings.embed_total_timeout)
                break
            if self._cooldown_until.get(provider.name, 0.0) > now:
                logger.debug("Skipping %s (cooling down)", provider.name)
                continue
            if not provider.configured():
                logger.debug("Skipping %s (not configured)", provider.name)
                continue
            try:
                provider.ping(remaining)
                remaining = self.settings.embed_total_timeout - (_time_module.monotonic() - start)
                if remaining <= 0:
                    raise EmbeddingUnavailableError(f"{provider.name} ping used up the deadline")
                vector = provider.embed(text, timeout=min(self.settings.embed_timeout, remaining))
            except EmbeddingUnavailableError as e:
                self._cooldown_until[provider.name] = _time_module.monotonic() + _CIRCUIT_BREAKER_COOLDOWN_S
                errors.append(str(e))
                logger.warning(f"Embedding provider {provider.name} failed, trying next: {e}")
                continue

            result = (vector, provider.name)
            self._cache[cache_key] = result
            while len(self._cache) > _EMBEDDING_CACHE_MAX:
                self._cache.popitem(last=False)
            self.last_provider = provider.name
            return result

        raise EmbeddingUnavailableError(
            "No embedding provider available", {"providers": [p.name for p in self.providers], "errors": errors}
        )

    def embed(self, text: str) -> List[float]:
        return self.embed_with_provider(text)[0]

    def try_embed(self, text: str) -> Optional[List[float]]:
        try:
            return self.embed(text)
        except EmbeddingUnavailableError as e:
            logger.debug("Embedding unavailable: %s", e)
            return None

    def reset(self) -> None:
        """Clear the cache and every provider cooldown."""
        self._cache.clear()
        self._cooldown_until.clear()

    def info(self) -> Dict[str, Any]:
        now = _time_module.monotonic()
        return {
            "mode": self.settings.embed_provider,
            "providers": [p.name for p in self.providers],
            "cooling_down": sorted(n for n, t in self._cooldown_until.items() if t > now),
            "last_provider": self.last_provider,
            "cache_size": len(self._cache),
        }

    def close(self) -> None:
        if self._owns_http:
            self._http.close()
