"""Tests for GGA hybrid search."""
import pytest

from gga.exceptions import MalformedInputError, ReviewNotFoundError
from gga.search import HybridSearch, cosine_similarity, normalize_ranks


class TestCosineSimilarity:
    def test_identical_unit_vectors(self):
        assert cosine_similarity([0.6, 0.8], [0.6, 0.8]) == pytest.approx(1.0, abs=1e-4)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_symmetric(self):
        a, b = [0.3, -0.2, 0.9], [0.1, 0.4, 0.5]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0


class TestNormalizeRanks:
    def test_best_is_one(self):
        scores = normalize_ranks({1: -9.0, 2: -3.0, 3: -1.0})
        assert scores[1] == pytest.approx(1.0)
        assert scores[3] == pytest.approx(0.1)
        assert scores[1] > scores[2] > scores[3]

    def test_single_or_equal(self):
        assert normalize_ranks({7: -2.0}) == {7: 1.0}
        assert normalize_ranks({1: -2.0, 2: -2.0}) == {1: 1.0, 2: 1.0}

    def test_empty(self):
        assert normalize_ranks({}) == {}


class TestHybridSearch:
    def test_failed_auth_reviews_rank_first(self, seeded_engine):
        failed_a, failed_b, passed = seeded_engine.sample_ids
        results = seeded_engine.hybrid_search("authentication issues", alpha=0.5)
        ids = [r.id for r in results]
        assert set(ids[:2]) == {failed_a, failed_b}
        if passed in ids:
            assert ids.index(passed) > 1

    def test_scores_sorted_and_components_recorded(self, seeded_engine):
        results = seeded_engine.hybrid_search("authentication jwt", alpha=0.5)
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        top = results[0]
        assert top.score == pytest.approx(0.5 * top.lexical + 0.5 * top.semantic)

    def test_alpha_one_is_pure_lexical(self, seeded_engine):
        search = seeded_engine.search
        hybrid = [r.id for r in search.hybrid_search("authentication session token", alpha=1.0, limit=10)]
        lexical = [r.id for r in search.lexical_search("authentication session token", 10)]
        assert hybrid == lexical

    def test_alpha_zero_is_pure_semantic(self, seeded_engine):
        search = seeded_engine.search
        hybrid = [r.id for r in search.hybrid_search("authentication token", alpha=0.0, limit=10)]
        semantic = [r.id for r in search.semantic_search("authentication token", 10)]
        assert hybrid == semantic
        assert hybrid

    def test_lexical_only_when_embeddings_unavailable(self, seeded_engine, settings, offline_embedder):
        search = HybridSearch(seeded_engine.store, settings, offline_embedder)
        results = search.hybrid_search("authentication")
        assert results
        assert all(r.semantic == 0.0 for r in results)

    def test_no_embedder_at_all(self, seeded_engine, settings):
        search = HybridSearch(seeded_engine.store, settings)
        assert search.semantic_search("authentication", 5) == []
        assert search.hybrid_search("authentication")

    def test_project_filter(self, seeded_engine):
        other = seeded_engine.store.save_review(
            project="other", files="auth.py", result="authentication audit", status="PASSED"
        )
        results = seeded_engine.hybrid_search("authentication", project="other")
        assert [r.id for r in results] == [other]

    def test_project_filter_survives_stronger_hits_elsewhere(self, engine):
        store = engine.store
        for i in range(5):
            store.save_review(project="a", files=f"auth{i}.py", status="FAILED",
                              result="authentication authentication authentication bypass")
        target = store.save_review(project="b", files="notes.md", status="PASSED",
                                   result="one authentication remark in a much longer review of other things")
        results = engine.hybrid_search("authentication", alpha=1.0, limit=1, project="b")
        assert [r.id for r in results] == [target]

    def test_limit(self, seeded_engine):
        assert len(seeded_engine.hybrid_search("authentication token api", limit=1)) == 1

    @pytest.mark.parametrize("query", ["", "   "])
    def test_empty_query_rejected(self, engine, query):
        with pytest.raises(MalformedInputError):
            engine.hybrid_search(query)

    def test_invalid_alpha_rejected(self, engine):
        with pytest.raises(MalformedInputError):
            engine.hybrid_search("auth", alpha=1.5)

    def test_mismatched_dimensions_skipped(self, seeded_engine):
        odd = seeded_engine.store.save_review(
            project="shop", files="x.ts", result="authentication", status="PASSED"
        )
        seeded_engine.store.set_embedding(odd, [1.0, 0.0, 0.0])
        ids = [r.id for r in seeded_engine.search.semantic_search("authentication", 10)]
        assert odd not in ids


class TestFindSimilar:
    def test_excludes_itself(self, seeded_engine):
        failed_a, failed_b, _ = seeded_engine.sample_ids
        results = seeded_engine.find_similar(failed_a)
        ids = [r.id for r in results]
        assert failed_a not in ids
        assert ids[0] == failed_b

    def test_unknown_id(self, engine):
        with pytest.raises(ReviewNotFoundError):
            engine.find_similar(12345)

    def test_item_without_embedding(self, engine):
        rid = engine.store.save_review(project="p", files="a.py", result="ok", status="PASSED")
        assert engine.find_similar(rid) == []
