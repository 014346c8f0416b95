"""Tests for GGA activation spreading and prediction."""
import pytest

from gga.activation import Prediction, PredictionList, Predictor, spread_activation
from gga.exceptions import MalformedInputError
from gga.hebbian import AssociativeMemory

AUTH = "pattern:authentication"
SEC = "pattern:security"
ERR = "error:null_reference"
FILE = "file:src/auth/login.ts"


def _graph(edges):
    adjacency = {}
    for a, b, w in edges:
        adjacency.setdefault(a, []).append((b, w))
        adjacency.setdefault(b, []).append((a, w))
    return lambda concept: adjacency.get(concept, [])


@pytest.fixture
def memory(store, settings):
    return AssociativeMemory(store, settings)


@pytest.fixture
def predictor(memory, settings):
    return Predictor(memory, settings)


class TestSpreadActivation:
    def test_one_round(self):
        act = spread_activation(["a"], _graph([("a", "b", 0.5)]), iterations=1, decay=0.5)
        assert act == {"a": pytest.approx(1.0), "b": pytest.approx(0.25)}

    def test_two_rounds_accumulate(self):
        act = spread_activation(["a"], _graph([("a", "b", 0.5)]), iterations=2, decay=0.5)
        # b keeps 0.25 and receives 0.25 again; a gets 0.25 * 0.5 * 0.5 back
        assert act["a"] == pytest.approx(1.0625)
        assert act["b"] == pytest.approx(0.5)

    def test_zero_iterations_returns_seeds(self):
        assert spread_activation(["a", "b"], _graph([]), iterations=0, decay=0.5) == {"a": 1.0, "b": 1.0}

    def test_reaches_indirect_neighbors(self):
        act = spread_activation(["a"], _graph([("a", "b", 1.0), ("b", "c", 1.0)]), iterations=2, decay=0.5)
        assert act["c"] > 0

    def test_neighbors_looked_up_once_per_concept(self):
        calls = []
        graph = _graph([("a", "b", 0.5)])

        def counting(concept):
            calls.append(concept)
            return graph(concept)

        spread_activation(["a"], counting, iterations=3, decay=0.5)
        assert sorted(calls) == ["a", "b"]


class TestPredictionList:
    def test_issues_only_patterns_and_errors(self):
        plist = PredictionList(predictions=[
            Prediction(FILE, 0.9),
            Prediction(SEC, 0.8),
            Prediction("status:FAILED", 0.7),
            Prediction(ERR, 0.6),
        ])
        assert [p.concept for p in plist.issues()] == [SEC, ERR]
        assert plist.issues(limit=1)[0].name == "security"

    def test_empty_list_is_falsy(self):
        plist = PredictionList(status="insufficient", reason="nothing yet")
        assert not plist
        assert plist.insufficient
        assert len(plist) == 0


class TestPredictor:
    def _train(self, memory):
        memory.learn([AUTH, SEC, FILE, "status:FAILED"])
        memory.learn([AUTH, SEC, "status:FAILED"])

    def test_insufficient_memory(self, predictor, memory):
        memory.learn([AUTH, SEC])
        memory.learn([AUTH, FILE])
        result = predictor.predict("login token")
        assert result.status == "insufficient"
        assert result.predictions == []
        assert "Insufficient memory" in result.reason

    def test_no_concepts(self, predictor, memory):
        self._train(memory)
        result = predictor.predict("lorem ipsum dolor")
        assert result.insufficient
        assert result.seeds == []

    def test_empty_text_rejected(self, predictor):
        with pytest.raises(MalformedInputError):
            predictor.predict("  ")

    def test_predicts_associated_concepts(self, predictor, memory):
        self._train(memory)
        result = predictor.predict("login token")
        assert result.status == "ok"
        assert result.seeds == [AUTH]
        concepts = [p.concept for p in result]
        assert SEC in concepts
        assert AUTH not in concepts
        assert all(p.score > 0 for p in result)
        scores = [p.score for p in result]
        assert scores == sorted(scores, reverse=True)

    def test_stronger_association_ranks_higher(self, predictor, memory):
        self._train(memory)
        pairs = dict(predictor.predict("login token").as_pairs())
        # AUTH-SEC was learned twice, AUTH-FILE once
        assert pairs[SEC] > pairs[FILE]

    def test_top_k(self, predictor, memory):
        self._train(memory)
        assert len(predictor.predict("login token", top_k=1)) == 1

    def test_predict_file_reads_head(self, predictor, memory, tmp_path):
        self._train(memory)
        source = tmp_path / "handler.py"
        lines = ["def refresh(session):\n"] + ["    pass\n"] * 150 + ["# xss\n"]
        source.write_text("".join(lines))
        result = predictor.predict_file(source)
        assert result.seeds == [AUTH]
        assert SEC in [p.concept for p in result]

    def test_predict_file_max_lines(self, predictor, memory, tmp_path):
        self._train(memory)
        source = tmp_path / "late.py"
        source.write_text("x = 1\n" * 5 + "token = get()\n")
        assert predictor.predict_file(source, max_lines=5).insufficient

    def test_predict_empty_file(self, predictor, tmp_path):
        source = tmp_path / "empty.py"
        source.write_text("")
        assert predictor.predict_file(source).insufficient
