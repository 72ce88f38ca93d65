"""
Unit tests for segmentation metrics.
"""

import pytest

from spacesplice import DictionaryModel, compute_boundary_prf, evaluate_model, evaluate_predictions
from spacesplice.evaluation import (
    aggregate_boundary_metrics,
    boundary_positions_from_segments,
    compute_cv_summary,
    compute_word_count_metrics
)


class TestBoundaryMetrics:
    """Test boundary precision, recall and F1."""

    def test_positions(self):
        assert boundary_positions_from_segments(["the", "cat", "sat"]) == {2, 5}
        assert boundary_positions_from_segments(["thecat"]) == set()
        assert boundary_positions_from_segments([]) == set()

    def test_prf(self):
        p, r, f1, tp, fp, fn = compute_boundary_prf({2, 5, 7}, {2, 5, 9, 11})
        assert (tp, fp, fn) == (2, 1, 2)
        assert p == pytest.approx(2 / 3)
        assert r == pytest.approx(0.5)
        assert f1 == pytest.approx(2 * p * r / (p + r))

    def test_nothing_to_find(self):
        metrics = aggregate_boundary_metrics(0, 0, 0)
        assert metrics["precision"] == metrics["recall"] == metrics["f1"] == 1.0

    def test_all_wrong(self):
        assert aggregate_boundary_metrics(0, 3, 2)["f1"] == 0.0


class TestWordCounts:

    def test_counts(self):
        assert compute_word_count_metrics(["a", "b"], ["ab"]) == {
            "exact": False, "plus1": True, "minus1": False, "pm1": True
        }


class TestEvaluatePredictions:
    """Test corpus-level aggregation."""

    def test_perfect(self):
        results = evaluate_predictions(
            ["thecat", "asat"], [["the", "cat"], ["a", "sat"]], [["the", "cat"], ["a", "sat"]]
        )
        assert results["exact_match_rate"] == 1.0
        assert results["boundary_metrics"]["f1"] == 1.0
        assert results["count_exact_rate"] == 1.0

    def test_partial(self):
        results = evaluate_predictions(
            ["thecat", "asat"], [["the", "cat"], ["asat"]], [["the", "cat"], ["a", "sat"]]
        )
        assert results["exact_matches"] == 1
        assert results["boundary_metrics"]["recall"] == pytest.approx(0.5)
        assert results["boundary_metrics"]["precision"] == 1.0
        assert results["macro_f1"] == pytest.approx(0.5)
        assert results["count_pm1_rate"] == 1.0

    def test_empty(self):
        results = evaluate_predictions([], [], [])
        assert results["n_runs"] == 0
        assert results["exact_match_rate"] == 0

    def test_evaluate_model(self):
        model = DictionaryModel(["the", "cat", "sat", "on", "mat"])
        results = evaluate_model(model, ["the cat sat on the mat", "  "])
        assert results["n_runs"] == 1
        assert results["exact_match_rate"] == 1.0

    def test_cv_summary(self):
        folds = [
            {"exact_match_rate": 0.5, "macro_f1": 0.6, "boundary_metrics": {"f1": 0.8}},
            {"exact_match_rate": 0.7, "macro_f1": 0.8, "boundary_metrics": {"f1": 0.6}},
        ]
        summary = compute_cv_summary(folds)
        assert summary["exact_match_rate_mean"] == pytest.approx(0.6)
        assert summary["boundary_f1_mean"] == pytest.approx(0.7)
        assert summary["boundary_f1_std"] == pytest.approx(0.1)
