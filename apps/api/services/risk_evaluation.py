"""
Risk Model Evaluation

Confusion matrix and ratio metrics for the relapse classifier.

- Precision: when the model says "high risk", how often is it right?
- Recall: of all actual relapse days, how many did it catch?
- F1: harmonic mean of the two.

Note: the headline metrics are computed over the full training set, which
is not a generalization estimate. The held-out validation subset is scored
separately (see PredictionOrchestrator.train) when it is non-empty.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence
import logging

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.5


@dataclass
class ConfusionMatrix:
    TP: int = 0
    FP: int = 0
    TN: int = 0
    FN: int = 0

    @property
    def total(self) -> int:
        return self.TP + self.FP + self.TN + self.FN

    def to_dict(self) -> Dict[str, int]:
        return {"TP": self.TP, "FP": self.FP, "TN": self.TN, "FN": self.FN}


@dataclass
class EvaluationMetrics:
    precision: float
    recall: float
    f1_score: float
    accuracy: float
    confusion_matrix: ConfusionMatrix = field(default_factory=ConfusionMatrix)
    threshold: float = DEFAULT_THRESHOLD

    @property
    def total_samples(self) -> int:
        return self.confusion_matrix.total

    @property
    def total_positives(self) -> int:
        return self.confusion_matrix.TP + self.confusion_matrix.FN

    @property
    def total_negatives(self) -> int:
        return self.confusion_matrix.TN + self.confusion_matrix.FP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "precision": self.precision,
            "recall": self.recall,
            "f1Score": self.f1_score,
            "accuracy": self.accuracy,
            "confusionMatrix": self.confusion_matrix.to_dict(),
            "totalSamples": self.total_samples,
            "totalPositives": self.total_positives,
            "totalNegatives": self.total_negatives,
            "threshold": self.threshold,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["EvaluationMetrics"]:
        if not data:
            return None
        matrix = data.get("confusionMatrix") or {}
        return cls(
            precision=float(data.get("precision", 0.0)),
            recall=float(data.get("recall", 0.0)),
            f1_score=float(data.get("f1Score", 0.0)),
            accuracy=float(data.get("accuracy", 0.0)),
            confusion_matrix=ConfusionMatrix(
                TP=int(matrix.get("TP", 0)),
                FP=int(matrix.get("FP", 0)),
                TN=int(matrix.get("TN", 0)),
                FN=int(matrix.get("FN", 0)),
            ),
            threshold=float(data.get("threshold", DEFAULT_THRESHOLD)),
        )


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def evaluate(
    predictions: Sequence[float],
    labels: Sequence[int],
    threshold: float = DEFAULT_THRESHOLD,
) -> EvaluationMetrics:
    """
    Binarize probabilities at `threshold` and score against labels.

    Every ratio is 0 when its denominator is 0.

    Raises:
        ValueError: if lengths differ
    """
    if len(predictions) != len(labels):
        raise ValueError(
            f"predictions ({len(predictions)}) and labels ({len(labels)}) differ in length"
        )

    matrix = ConfusionMatrix()
    for probability, actual in zip(predictions, labels):
        predicted = 1 if probability >= threshold else 0
        if predicted == 1 and actual == 1:
            matrix.TP += 1
        elif predicted == 1:
            matrix.FP += 1
        elif actual == 0:
            matrix.TN += 1
        else:
            matrix.FN += 1

    precision = _ratio(matrix.TP, matrix.TP + matrix.FP)
    recall = _ratio(matrix.TP, matrix.TP + matrix.FN)
    f1 = _ratio(2 * precision * recall, precision + recall)
    accuracy = _ratio(matrix.TP + matrix.TN, matrix.total)

    return EvaluationMetrics(
        precision=round(precision, 3),
        recall=round(recall, 3),
        f1_score=round(f1, 3),
        accuracy=round(accuracy, 3),
        confusion_matrix=matrix,
        threshold=threshold,
    )


def format_metrics(metrics: Optional[EvaluationMetrics]) -> str:
    """One-line summary for logs."""
    if metrics is None:
        return "No metrics available"
    cm = metrics.confusion_matrix
    return (
        f"precision={metrics.precision:.1%} recall={metrics.recall:.1%} "
        f"f1={metrics.f1_score:.1%} accuracy={metrics.accuracy:.1%} "
        f"TP={cm.TP} FP={cm.FP} TN={cm.TN} FN={cm.FN}"
    )
