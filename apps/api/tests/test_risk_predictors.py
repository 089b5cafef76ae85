"""
Tests for heuristic and model-based risk predictors
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from services.risk_features import (
    NUM_FEATURES,
    BenefitEntry,
    NormalizationStats,
    StreakRecord,
    UserData,
)
from services.risk_model_store import ModelState, TrainingHistory
from services.risk_predictors import (
    HEURISTIC_CAP,
    HeuristicPredictor,
    ModelPredictor,
    choose_predictor,
)


WEDNESDAY_MORNING = datetime(2024, 1, 24, 10, 0)


def _trained_state(probability=0.42, samples=30, accuracy=0.8, f1=0.5):
    classifier = MagicMock()
    classifier.predict.return_value = probability
    return ModelState(
        classifier=classifier,
        normalization_stats=NormalizationStats(means=[0.0] * NUM_FEATURES, stds=[1.0] * NUM_FEATURES),
        history=TrainingHistory(
            last_trained=datetime(2024, 1, 20, tzinfo=timezone.utc),
            samples=samples,
            final_accuracy=accuracy,
            metrics={"f1Score": f1},
        ),
        version=1,
    )


class TestHeuristicPredictor:

    def test_base_score_without_data(self):
        prediction = HeuristicPredictor().predict(UserData(), WEDNESDAY_MORNING)

        assert prediction.risk_score == 30
        assert prediction.used_ml is False
        assert prediction.confidence == 0.0
        assert prediction.reason == "Conditions appear stable"
        assert prediction.to_dict()["dataContext"] == {
            "trackingDays": 0,
            "relapseCount": 0,
            "hasEmotionalData": False,
        }

    def test_late_afternoon(self):
        prediction = HeuristicPredictor().predict(UserData(), datetime(2024, 1, 24, 18, 0))
        assert prediction.risk_score == 40

    def test_everything_firing_is_capped(self):
        data = UserData(
            benefit_tracking=[
                BenefitEntry(date="2024-01-05", energy=8),
                BenefitEntry(date="2024-01-06", energy=3),
            ],
            streak_history=[
                StreakRecord(start="2023-09-01", end=end, days=10, reason="relapse")
                for end in ("2023-09-11", "2023-10-01", "2023-11-01", "2023-12-01")
            ],
            current_streak=20,
        )
        # Saturday night: 30 + 15 + 20 + 8 + 10 + 10
        prediction = HeuristicPredictor().predict(data, datetime(2024, 1, 6, 21, 0))
        assert prediction.risk_score == HEURISTIC_CAP

    def test_confidence_grows_with_data(self, user_data):
        prediction = HeuristicPredictor().predict(user_data, WEDNESDAY_MORNING)
        # 20 benefit + 3 emotional + 2 * 3 streaks = 29 data points
        assert prediction.confidence == pytest.approx(round(29 / 30 * 0.4, 3))
        assert prediction.confidence <= 0.4


class TestModelPredictor:

    def test_score_is_rounded_probability(self, user_data):
        prediction = ModelPredictor(_trained_state(probability=0.426)).predict(user_data, WEDNESDAY_MORNING)

        assert prediction.risk_score == 43
        assert prediction.used_ml is True
        assert prediction.probability == 0.426
        assert "patterns" in prediction.to_dict()

    def test_confidence_blend(self, user_data):
        prediction = ModelPredictor(_trained_state()).predict(user_data, WEDNESDAY_MORNING)
        # 0.4 * 30/60 + 0.3 * 0.8 + 0.3 * 0.5
        assert prediction.confidence == pytest.approx(0.59)

    def test_confidence_is_capped(self, user_data):
        state = _trained_state(samples=500, accuracy=1.0, f1=1.0)
        prediction = ModelPredictor(state).predict(user_data, WEDNESDAY_MORNING)
        assert prediction.confidence == 0.9


class TestChoosePredictor:

    def test_trained_model_with_data(self, user_data):
        assert isinstance(choose_predictor(_trained_state(), user_data), ModelPredictor)

    def test_no_state(self, user_data):
        assert isinstance(choose_predictor(None, user_data), HeuristicPredictor)

    def test_untrained_shell(self, user_data):
        shell = ModelState(classifier=MagicMock())
        assert isinstance(choose_predictor(shell, user_data), HeuristicPredictor)

    def test_missing_stats(self, user_data):
        state = _trained_state()
        state.normalization_stats = None
        assert isinstance(choose_predictor(state, user_data), HeuristicPredictor)

    def test_too_few_benefit_days(self):
        data = UserData(benefit_tracking=[BenefitEntry(date="2024-01-01", energy=5)])
        assert isinstance(choose_predictor(_trained_state(), data), HeuristicPredictor)
