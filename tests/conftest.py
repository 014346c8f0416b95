"""GGA test configuration."""
import hashlib
import os
import sys
from pathlib import Path

import pytest

# Ensure gga package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from gga.concepts import detect_categories  # noqa: E402
from gga.exceptions import EmbeddingUnavailableError  # noqa: E402


class FakeEmbedder:
    """Deterministic embedder: one dimension per topic category plus a hashed tail.

    Texts about the same topics land close together, which is enough to
    exercise the semantic side without any network provider.
    """

    _TOPICS = ("authentication", "security", "database", "api", "validation", "error", "testing", "performance")

    def __init__(self, dim: int = 16, available: bool = True):
        self.dim = dim
        self.available = available
        self.calls = []

    def _vector(self, text: str):
        vec = [0.0] * self.dim
        for cat in detect_categories(text):
            vec[self._TOPICS.index(cat)] = 1.0
        digest = hashlib.sha256(text.encode()).digest()
        for i in range(len(self._TOPICS), self.dim):
            vec[i] = digest[i] / 2550.0
        return vec

    def embed_with_provider(self, text: str):
        self.calls.append(text)
        if not self.available:
            raise EmbeddingUnavailableError("fake provider offline")
        return self._vector(text), "fake"

    def embed(self, text: str):
        return self.embed_with_provider(text)[0]

    def try_embed(self, text: str):
        try:
            return self.embed(text)
        except EmbeddingUnavailableError:
            return None

    def info(self):
        return {"mode": "fake", "providers": ["fake"]}

    def close(self):
        pass


@pytest.fixture
def tmp_gga_dir(tmp_path):
    """Create a temporary GGA directory for testing."""
    gga_dir = tmp_path / ".gga"
    gga_dir.mkdir()
    old_home = os.environ.get("GGA_HOME")
    os.environ["GGA_HOME"] = str(gga_dir)
    yield gga_dir
    if old_home is not None:
        os.environ["GGA_HOME"] = old_home
    else:
        os.environ.pop("GGA_HOME", None)


@pytest.fixture
def settings(tmp_gga_dir):
    from gga.config import Settings
    return Settings(db_path=tmp_gga_dir / "test.db")


@pytest.fixture
def store(settings):
    """Create a fresh ReviewStore for testing."""
    from gga.sqlite_store import ReviewStore
    s = ReviewStore(db_path=settings.db_path)
    yield s
    s.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def offline_embedder():
    return FakeEmbedder(available=False)


@pytest.fixture
def engine(settings, store, embedder):
    from gga.engine import Engine
    e = Engine(settings, store=store, embedder=embedder)
    yield e


SAMPLE_REVIEWS = [
    {
        "project": "shop",
        "files": "src/auth/login.ts",
        "status": "FAILED",
        "result": "FAILED: authentication token is stored in localStorage where XSS can read it; "
                  "move the JWT to an httpOnly cookie.",
        "diff": "+ localStorage.setItem('jwt', token)",
    },
    {
        "project": "shop",
        "files": "src/auth/session.ts",
        "status": "FAILED",
        "result": "FAILED: authentication issues in session refresh; the JWT signature is never verified "
                  "and the CSRF check is missing.",
        "diff": "+ const claims = jwt.decode(token)",
    },
    {
        "project": "shop",
        "files": "src/api/users.ts",
        "status": "PASSED",
        "result": "PASSED: the users endpoint validates input with a zod schema before responding.",
        "diff": "+ const body = UserSchema.parse(req.body)",
    },
]


@pytest.fixture
def sample_reviews():
    return [dict(review) for review in SAMPLE_REVIEWS]


@pytest.fixture
def seeded_engine(engine):
    """Engine holding the two FAILED auth reviews and the PASSED api review."""
    ids = [engine.record_review(**review)["id"] for review in SAMPLE_REVIEWS]
    engine.sample_ids = ids
    return engine


@pytest.fixture(autouse=True)
def _reset_default_engine():
    """Forget the lazily created default engine between tests."""
    yield
    from gga.engine import reset_engine
    reset_engine()
