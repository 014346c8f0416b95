"""Tests for the GGA retrieval pipeline."""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from gga.exceptions import MalformedInputError, StorageError
from gga.rag import RetrievalPipeline, extract_patterns, recency_multiplier
from gga.search import RetrievedItem

PROMPT = "Review the following diff."


class StubSearch:
    """Returns canned candidates and records how it was called."""

    def __init__(self, items):
        self.items = items
        self.calls = []

    def hybrid_search(self, query, alpha=None, limit=None, project=None):
        self.calls.append({"query": query, "alpha": alpha, "limit": limit, "project": project})
        return [RetrievedItem(id=i.id, score=i.score, project=i.project) for i in self.items]


class TestExtractPatterns:
    def test_file_names_included(self):
        assert "auth.ts" in extract_patterns("auth.ts login.ts", "", "")

    @pytest.mark.parametrize("diff,expected", [
        ("jwt token validation login", "authentication"),
        ("SELECT * FROM users WHERE id", "database"),
        ("fetch('/api/users') axios.get endpoint", "api"),
        ("xss injection sanitize escape", "security"),
        ("zod schema validation assert", "validation"),
        ("try catch throw exception error", "error handling"),
    ])
    def test_diff_categories(self, diff, expected):
        assert expected in extract_patterns("", diff, "")

    def test_commit_message_included(self):
        assert "fix: resolve sql injection" in extract_patterns("", "", "fix: resolve sql injection")

    def test_combined(self):
        query = extract_patterns("api.ts", "jwt token SELECT query", "auth fix")
        assert "api.ts" in query
        assert "authentication" in query
        assert "database" in query
        assert query.endswith("auth fix")

    def test_empty(self):
        assert extract_patterns("", "", "") == ""

    def test_file_list(self):
        assert extract_patterns(["a.py", "b.py"]) == "a.py b.py"


class TestRecency:
    def test_multiplier(self):
        assert recency_multiplier(0, 0.1, 30) == pytest.approx(1.1)
        assert recency_multiplier(15, 0.1, 30) == pytest.approx(1.05)
        assert recency_multiplier(30, 0.1, 30) == 1.0
        assert recency_multiplier(90, 0.1, 30) == 1.0

    def test_boost_lifts_recent_item_over_threshold(self, store, settings):
        now = datetime.now(timezone.utc)
        old = store.save_review(project="p", files="a.ts", result="old", status="FAILED",
                                created_at=now - timedelta(days=60))
        new = store.save_review(project="p", files="a.ts", result="new", status="FAILED", created_at=now)
        search = StubSearch([RetrievedItem(id=old, score=0.29), RetrievedItem(id=new, score=0.29)])
        rag = RetrievalPipeline(store, search, settings)

        items = rag.retrieve("auth", now=now)
        assert [i.id for i in items] == [new]
        assert items[0].score == pytest.approx(0.29 * 1.1)
        assert search.calls[0]["alpha"] == 0.5
        assert search.calls[0]["limit"] == 15

    def test_recent_review_ranks_first(self, engine):
        now = datetime.now(timezone.utc)
        review = {"project": "shop", "files": "src/auth/login.ts", "status": "FAILED",
                  "result": "FAILED: authentication token leaks"}
        old = engine.record_review(created_at=now - timedelta(days=60), **review)["id"]
        new = engine.record_review(**review)["id"]
        ids = [i.id for i in engine.rag.retrieve("authentication token")]
        assert ids[:2] == [new, old]

    def test_missing_records_skipped(self, store, settings):
        rag = RetrievalPipeline(store, StubSearch([RetrievedItem(id=404, score=0.9)]), settings)
        assert rag.retrieve("anything") == []

    def test_empty_query_rejected(self, store, settings):
        rag = RetrievalPipeline(store, StubSearch([]), settings)
        with pytest.raises(MalformedInputError):
            rag.retrieve("  ")

    def test_project_passed_through(self, store, settings):
        search = StubSearch([])
        RetrievalPipeline(store, search, settings).retrieve("auth", project="billing", limit=2)
        assert search.calls[0]["project"] == "billing"
        assert search.calls[0]["limit"] == 6


class TestBuildContext:
    def _rag(self, store, settings, **overrides):
        return RetrievalPipeline(store, StubSearch([]), settings.with_overrides(**overrides))

    def test_entry_format(self, store, settings):
        rid = store.save_review(project="p", files="src/auth/login.ts", result="Token leaks", status="FAILED")
        context = self._rag(store, settings).build_context([RetrievedItem(id=rid, score=0.87)])
        assert context == (
            "### Review #1 (Relevance: 87%)\n"
            "- **Status:** FAILED\n"
            "- **Files:** src/auth/login.ts\n"
            "- **Findings:** Token leaks\n"
            "---"
        )

    def test_long_results_truncated(self, store, settings):
        rid = store.save_review(project="p", files="a.py", result="x" * 500, status="FAILED")
        context = self._rag(store, settings).build_context([RetrievedItem(id=rid, score=0.5)])
        assert "x" * 400 + "..." in context
        assert "x" * 401 not in context

    @pytest.mark.parametrize("max_tokens,entries", [(149, 0), (200, 1), (300, 2), (1000, 3)])
    def test_token_budget(self, store, settings, max_tokens, entries):
        ids = [store.save_review(project="p", files=f"f{i}.py", result="y" * 500, status="FAILED")
               for i in range(3)]
        # each entry: 403 chars // 4 + 50 = 150 tokens
        context = self._rag(store, settings, max_tokens=max_tokens).build_context(
            [RetrievedItem(id=i, score=0.9) for i in ids]
        )
        assert context.count("### Review #") == entries
        if entries:
            assert context.endswith("---")

    def test_numbering_skips_missing(self, store, settings):
        rid = store.save_review(project="p", files="a.py", result="ok", status="PASSED")
        context = self._rag(store, settings).build_context(
            [RetrievedItem(id=999, score=0.9), RetrievedItem(id=rid, score=0.8)]
        )
        assert context.startswith("### Review #1 (Relevance: 80%)")

    def test_empty(self, store, settings):
        assert self._rag(store, settings).build_context([]) == ""


class TestAugmentPrompt:
    DIFF = "+ const token = jwt.sign(user)"

    @pytest.mark.parametrize("count", [0, 1, 2])
    def test_small_history_leaves_prompt_unchanged(self, engine, sample_reviews, count):
        for review in sample_reviews[:count]:
            engine.record_review(**review)
        assert engine.augment_prompt(PROMPT, "src/auth/token.ts", self.DIFF) == PROMPT

    def test_augments_with_history(self, seeded_engine):
        out = seeded_engine.augment_prompt(PROMPT, "src/auth/token.ts", self.DIFF, "feat: sign tokens")
        assert out.startswith(PROMPT + "\n\n---\n## Project Historical Context\n")
        assert "The following are previous reviews relevant to the current code:" in out
        assert "### Review #1" in out
        assert "- Apply lessons learned from previous reviews" in out

    def test_disabled(self, seeded_engine):
        seeded_engine.rag.settings = seeded_engine.settings.with_overrides(rag_enabled=False)
        assert seeded_engine.augment_prompt(PROMPT, "src/auth/token.ts", self.DIFF) == PROMPT

    def test_nothing_to_search_for(self, seeded_engine):
        assert seeded_engine.augment_prompt(PROMPT, "", "nothing relevant here", "") == PROMPT

    def test_storage_failure_returns_prompt(self, seeded_engine):
        with patch.object(seeded_engine.store, "count_items", side_effect=StorageError("disk gone")):
            assert seeded_engine.augment_prompt(PROMPT, "src/auth/token.ts", self.DIFF) == PROMPT

    def test_unexpected_failure_returns_prompt(self, seeded_engine):
        with patch.object(seeded_engine.search, "hybrid_search", side_effect=RuntimeError("bug")):
            assert seeded_engine.augment_prompt(PROMPT, "src/auth/token.ts", self.DIFF) == PROMPT


class TestAsk:
    def test_returns_context(self, seeded_engine):
        answer = seeded_engine.ask("authentication")
        assert answer.startswith("## Relevant Historical Context")
        assert 'Based on your question: "authentication"' in answer
        assert "### Review #1" in answer

    def test_no_matches(self, seeded_engine):
        assert seeded_engine.ask("kubernetes helm chart") == "No relevant historical context found for your question."

    def test_empty_question(self, engine):
        with pytest.raises(MalformedInputError):
            engine.ask("")


class TestAvailability:
    def test_available(self, seeded_engine):
        status = seeded_engine.rag.available()
        assert status["available"] is True
        assert status["reviews"] == 3

    def test_insufficient(self, engine):
        status = engine.rag.available()
        assert status["available"] is False
        assert "Insufficient history" in status["reason"]

    def test_stats(self, seeded_engine):
        stats = seeded_engine.rag.stats()
        assert (stats["total_reviews"], stats["passed"], stats["failed"]) == (3, 1, 2)
