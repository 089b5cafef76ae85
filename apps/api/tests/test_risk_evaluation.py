"""
Tests for confusion-matrix evaluation
"""

import pytest

from services.risk_evaluation import EvaluationMetrics, evaluate, format_metrics


def test_confusion_matrix_and_ratios():
    metrics = evaluate([0.9, 0.8, 0.2, 0.6], [1, 0, 0, 1])

    assert metrics.confusion_matrix.to_dict() == {"TP": 2, "FP": 1, "TN": 1, "FN": 0}
    assert metrics.precision == 0.667
    assert metrics.recall == 1.0
    assert metrics.f1_score == 0.8
    assert metrics.accuracy == 0.75
    assert metrics.total_samples == 4
    assert metrics.total_positives == 2
    assert metrics.total_negatives == 2


def test_threshold_is_inclusive():
    metrics = evaluate([0.5], [1])
    assert metrics.confusion_matrix.TP == 1


def test_custom_threshold():
    metrics = evaluate([0.6, 0.6], [1, 0], threshold=0.7)
    assert metrics.confusion_matrix.to_dict() == {"TP": 0, "FP": 0, "TN": 1, "FN": 1}
    assert metrics.threshold == 0.7


def test_zero_denominators_give_zero():
    metrics = evaluate([0.1, 0.2], [0, 0])
    assert metrics.precision == 0.0
    assert metrics.recall == 0.0
    assert metrics.f1_score == 0.0
    assert metrics.accuracy == 1.0

    empty = evaluate([], [])
    assert empty.accuracy == 0.0
    assert empty.total_samples == 0


def test_length_mismatch():
    with pytest.raises(ValueError):
        evaluate([0.1, 0.9], [1])


def test_dict_shape_and_round_trip():
    metrics = evaluate([0.9, 0.1, 0.7], [1, 1, 0])
    data = metrics.to_dict()

    assert set(data) == {
        "precision", "recall", "f1Score", "accuracy", "confusionMatrix",
        "totalSamples", "totalPositives", "totalNegatives", "threshold",
    }
    assert EvaluationMetrics.from_dict(data) == metrics
    assert EvaluationMetrics.from_dict(None) is None


def test_format_metrics():
    assert format_metrics(None) == "No metrics available"
    assert "TP=2" in format_metrics(evaluate([0.9, 0.8], [1, 1]))
