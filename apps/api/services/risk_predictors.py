"""
Risk Predictors

Two strategies behind one interface, chosen by a single readiness check:

- ModelPredictor: the trained classifier over normalized features.
- HeuristicPredictor: rule-based score used whenever the model is not
  trained, normalization stats are missing, or fewer than 2 benefit days
  exist. Capped at 85 and reported with low confidence.

Both attach the same factors/patterns so callers can explain the score.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from services.risk_features import (
    UserData,
    apply_normalization,
    extract_features,
    in_purge_window,
)
from services.risk_model_store import ModelState
from services.risk_patterns import (
    ENERGY_DROP_ALERT,
    active_factor_names,
    analyze_patterns,
    build_factors,
    generate_reason,
    is_evening,
    is_late_afternoon,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

MIN_BENEFIT_DAYS_FOR_MODEL = 2

# Heuristic score components
HEURISTIC_BASE = 30
HEURISTIC_PURGE = 15
HEURISTIC_EVENING = 20
HEURISTIC_LATE_AFTERNOON = 10
HEURISTIC_WEEKEND = 8
HEURISTIC_RELAPSE_HISTORY = 10
HEURISTIC_RELAPSE_HISTORY_MIN = 4
HEURISTIC_ENERGY_DROP = 10
HEURISTIC_CAP = 85
HEURISTIC_MAX_CONFIDENCE = 0.4

# Model confidence blend
MODEL_MAX_CONFIDENCE = 0.9
CONFIDENCE_FULL_SAMPLES = 60
CONFIDENCE_WEIGHTS = {"samples": 0.4, "accuracy": 0.3, "f1": 0.3}


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class RiskPrediction:
    risk_score: int
    confidence: float
    reason: str
    used_ml: bool
    factors: Dict[str, Any] = field(default_factory=dict)
    patterns: Dict[str, Any] = field(default_factory=dict)
    data_context: Dict[str, Any] = field(default_factory=dict)
    probability: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "riskScore": self.risk_score,
            "confidence": self.confidence,
            "reason": self.reason,
            "usedML": self.used_ml,
            "factors": self.factors,
            "patterns": self.patterns,
            "dataContext": self.data_context,
        }


def _data_context(user_data: UserData) -> Dict[str, Any]:
    return {
        "trackingDays": len(user_data.benefit_days()),
        "relapseCount": len(user_data.relapses()),
        "hasEmotionalData": bool(user_data.emotional_tracking),
    }


def _latest_raw_features(user_data: UserData, now: datetime) -> List[float]:
    days = user_data.benefit_days()
    current = days[-1] if days else None
    previous = days[-2] if len(days) >= 2 else None
    return extract_features(current, previous, now, user_data)


# =============================================================================
# STRATEGIES
# =============================================================================

class Predictor(ABC):
    name = "base"

    @abstractmethod
    def predict(self, user_data: UserData, now: datetime) -> RiskPrediction:
        raise NotImplementedError

    @staticmethod
    def _explain(user_data: UserData, raw: List[float], now: datetime, risk_score: int):
        factors = build_factors(raw)
        logger.debug(f"Active risk factors: {active_factor_names(factors)}")
        patterns = analyze_patterns(user_data, factors, now)
        return factors, patterns, generate_reason(patterns, factors, risk_score)


class HeuristicPredictor(Predictor):
    """Rule-based fallback. Never touches the classifier."""

    name = "heuristic"

    def predict(self, user_data: UserData, now: datetime) -> RiskPrediction:
        score = HEURISTIC_BASE
        days = user_data.benefit_days()

        if in_purge_window(user_data.streak_day):
            score += HEURISTIC_PURGE

        if is_evening(now.hour):
            score += HEURISTIC_EVENING
        elif is_late_afternoon(now.hour):
            score += HEURISTIC_LATE_AFTERNOON

        if now.weekday() >= 5:
            score += HEURISTIC_WEEKEND

        if len(user_data.relapses()) >= HEURISTIC_RELAPSE_HISTORY_MIN:
            score += HEURISTIC_RELAPSE_HISTORY

        if len(days) >= 2:
            drop = days[-2].value("energy") - days[-1].value("energy")
            if drop >= ENERGY_DROP_ALERT:
                score += HEURISTIC_ENERGY_DROP

        score = min(score, HEURISTIC_CAP)

        raw = _latest_raw_features(user_data, now)
        factors, patterns, reason = self._explain(user_data, raw, now, score)

        return RiskPrediction(
            risk_score=int(score),
            confidence=self._confidence(user_data),
            reason=reason,
            used_ml=False,
            factors=factors,
            patterns=patterns,
            data_context=_data_context(user_data),
        )

    @staticmethod
    def _confidence(user_data: UserData) -> float:
        data_points = (
            len(user_data.benefit_tracking)
            + len(user_data.emotional_tracking)
            + 2 * len(user_data.streak_history)
        )
        return round(min(data_points / 30, 1.0) * HEURISTIC_MAX_CONFIDENCE, 3)


class ModelPredictor(Predictor):
    """Trained classifier over normalized features."""

    name = "model"

    def __init__(self, state: ModelState):
        self.state = state

    def predict(self, user_data: UserData, now: datetime) -> RiskPrediction:
        raw = _latest_raw_features(user_data, now)
        normalized = apply_normalization(raw, self.state.normalization_stats)
        probability = self.state.classifier.predict(normalized)
        score = max(0, min(100, int(round(probability * 100))))

        factors, patterns, reason = self._explain(user_data, raw, now, score)

        return RiskPrediction(
            risk_score=score,
            confidence=self._confidence(),
            reason=reason,
            used_ml=True,
            factors=factors,
            patterns=patterns,
            data_context=_data_context(user_data),
            probability=probability,
        )

    def _confidence(self) -> float:
        history = self.state.history
        metrics = history.metrics or {}
        sample_factor = min(history.samples / CONFIDENCE_FULL_SAMPLES, 1.0)
        accuracy = float(history.final_accuracy or 0.0)
        f1 = float(metrics.get("f1Score") or 0.0)
        blended = (
            CONFIDENCE_WEIGHTS["samples"] * sample_factor
            + CONFIDENCE_WEIGHTS["accuracy"] * accuracy
            + CONFIDENCE_WEIGHTS["f1"] * f1
        )
        return round(min(MODEL_MAX_CONFIDENCE, max(0.0, blended)), 3)


def choose_predictor(state: Optional[ModelState], user_data: UserData) -> Predictor:
    """The one readiness check deciding which strategy scores this request."""
    if (
        state is not None
        and state.is_trained
        and len(user_data.benefit_days()) >= MIN_BENEFIT_DAYS_FOR_MODEL
    ):
        return ModelPredictor(state)
    return HeuristicPredictor()
