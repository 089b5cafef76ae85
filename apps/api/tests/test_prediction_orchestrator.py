"""
Tests for the prediction orchestrator

Tests:
1. End-to-end training, persistence and reload
2. Training refusals (insufficient data, concurrent run, cancellation, failure)
3. Aggregate sharing never affects or delays the training result
4. Intervention feedback reaches the sample weights
5. Prediction routing, inference fallback and high-risk events
6. Model reset and history summaries
"""

import threading
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from core.events import (
    EVENT_HIGH_RISK_PREDICTION,
    subscribe,
    unsubscribe,
)
from core.exceptions import AggregateSubmissionError
from models import Intervention, RiskModelState
from services.aggregate_submission import (
    AggregateSubmitter,
    last_submission_at,
    record_submission,
)
from services.risk_classifier import CancellationToken
from services.risk_features import BenefitEntry, StreakRecord, UserData
from services.prediction_orchestrator import PredictionOrchestrator, TrainingRegistry


SEED = 42
SATURDAY_NIGHT = datetime(2024, 1, 20, 21, 0)


@pytest.fixture
def orchestrator(db_session, user_id):
    engine = PredictionOrchestrator(db_session, user_id, share_aggregates=False, seed=SEED)
    engine.initialize()
    yield engine
    engine.teardown()


@pytest.fixture
def listener():
    """Subscribe a mock to an event for the duration of a test."""
    subscribed = []

    def _listen(event_name):
        handler = MagicMock()
        subscribe(event_name, handler)
        subscribed.append((event_name, handler))
        return handler

    yield _listen
    for event_name, handler in subscribed:
        unsubscribe(event_name, handler)


def _model_rows(db_session, user_id):
    return db_session.query(RiskModelState).filter(RiskModelState.user_id == user_id).all()


# =============================================================================
# TRAINING
# =============================================================================

class TestTraining:

    def test_end_to_end(self, orchestrator, user_data):
        result = orchestrator.train(user_data)

        assert result["success"] is True
        assert result["error"] is None
        assert result["trainingExamples"] == 19
        assert result["version"] == 1
        assert result["message"] == "Model trained on 19 examples"
        assert sum(result["metrics"]["confusionMatrix"].values()) == 19
        assert result["metrics"]["totalPositives"] == 2
        assert result["validationMetrics"]["totalSamples"] == 3
        assert 0.0 <= result["accuracy"] <= 1.0
        assert orchestrator.is_ready

    def test_model_info_after_training(self, orchestrator, user_data):
        orchestrator.train(user_data)
        info = orchestrator.get_model_info()

        assert info["isReady"] is True
        assert info["isTraining"] is False
        assert info["version"] == 1
        assert info["samples"] == 19
        assert info["lastTrained"] is not None
        assert info["needsRetraining"] is False

    def test_predictions_use_trained_model(self, orchestrator, user_data):
        orchestrator.train(user_data)
        prediction = orchestrator.predict(user_data, now=SATURDAY_NIGHT)

        assert prediction["usedML"] is True
        assert 0 <= prediction["riskScore"] <= 100
        assert 0 < prediction["confidence"] <= 0.9

    def test_model_survives_reload(self, db_session, user_id, orchestrator, user_data):
        orchestrator.train(user_data)

        with PredictionOrchestrator(db_session, user_id, share_aggregates=False) as reloaded:
            assert reloaded.is_ready
            assert reloaded.state.version == 1
            assert reloaded.predict(user_data, now=SATURDAY_NIGHT)["usedML"] is True

    def test_retraining_bumps_version(self, db_session, user_id, orchestrator, user_data):
        orchestrator.train(user_data)
        result = orchestrator.train(user_data)

        assert result["version"] == 2
        assert len(_model_rows(db_session, user_id)) == 1


class TestTrainingRefusals:

    def test_insufficient_data_touches_nothing(self, db_session, user_id, orchestrator, user_data):
        user_data.benefit_tracking = user_data.benefit_tracking[:5]
        result = orchestrator.train(user_data)

        assert result["success"] is False
        assert result["error"] == "insufficient_data"
        assert result["reason"] == "insufficient_benefit_days"
        assert result["observed"] == 5
        assert result["required"] == 14
        assert _model_rows(db_session, user_id) == []
        assert not orchestrator.is_ready

    def test_concurrent_run_is_refused(self, db_session, user_id, user_data):
        registry = TrainingRegistry()
        registry.begin(user_id, CancellationToken())

        with PredictionOrchestrator(db_session, user_id, registry=registry, share_aggregates=False) as engine:
            result = engine.train(user_data)
            assert result["success"] is False
            assert result["error"] == "training_in_progress"
            assert engine.get_model_info()["isTraining"] is True

        assert registry.is_training(user_id)

    def test_registry_is_released_after_training(self, orchestrator, user_data, user_id):
        orchestrator.train(user_data)
        assert not orchestrator.registry.is_training(user_id)
        assert orchestrator.cancel_training() is False

    def test_cancellation(self, db_session, user_id, orchestrator, user_data):
        epochs_seen = []

        def cancel_after_first_epoch(logs):
            epochs_seen.append(logs["epoch"])
            orchestrator.cancel_training()

        result = orchestrator.train(user_data, on_progress=cancel_after_first_epoch)

        assert result["success"] is False
        assert result["error"] == "training_cancelled"
        assert epochs_seen == [1]
        assert _model_rows(db_session, user_id) == []

    def test_fit_failure_keeps_previous_model(self, orchestrator, user_data):
        orchestrator.train(user_data)
        previous = orchestrator.state.classifier

        with patch("services.prediction_orchestrator.RiskClassifier.fit", side_effect=RuntimeError("NaN loss")):
            result = orchestrator.train(user_data)

        assert result["success"] is False
        assert result["error"] == "training_failure"
        assert orchestrator.state.classifier is previous
        assert orchestrator.state.version == 1


# =============================================================================
# AGGREGATE SHARING
# =============================================================================

class TestAggregateSharing:

    @pytest.fixture
    def sink(self):
        sink = MagicMock()
        sink.url = "https://aggregates.example/v1"
        return sink

    @pytest.fixture
    def submitter(self, sink):
        submitter = AggregateSubmitter(sink)
        yield submitter
        submitter.shutdown()

    def _engine(self, db_session, user_id, submitter, share):
        return PredictionOrchestrator(
            db_session, user_id, aggregate_submitter=submitter, share_aggregates=share, seed=SEED
        )

    def test_shared_after_training(self, db_session, user_id, user_data, sink, submitter):
        result = self._engine(db_session, user_id, submitter, True).train(user_data)
        submitter.shutdown()

        assert result["success"] is True
        sink.submit.assert_called_once()
        payload = sink.submit.call_args[0][0]
        assert payload["totalRelapses"] == 2
        assert "userId" not in payload

    def test_sink_failure_is_ignored(self, db_session, user_id, user_data, sink, submitter):
        sink.submit.side_effect = AggregateSubmissionError("sink offline")

        result = self._engine(db_session, user_id, submitter, True).train(user_data)
        submitter.shutdown()

        assert result["success"] is True
        sink.submit.assert_called_once()

    def test_not_shared_without_opt_in(self, db_session, user_id, user_data, sink, submitter):
        self._engine(db_session, user_id, submitter, False).train(user_data)
        submitter.shutdown()

        sink.submit.assert_not_called()

    def test_per_run_override(self, db_session, user_id, user_data, sink, submitter):
        self._engine(db_session, user_id, submitter, False).train(user_data, share_aggregates=True)
        submitter.shutdown()

        sink.submit.assert_called_once()

    def test_not_queued_without_sink_url(self, db_session, user_id, user_data, sink, submitter):
        sink.url = ""

        self._engine(db_session, user_id, submitter, True).train(user_data)
        submitter.shutdown()

        sink.submit.assert_not_called()
        assert last_submission_at(db_session, user_id) is None

    def test_teardown_does_not_wait_for_delivery(self, db_session, user_id, user_data, sink, submitter):
        release, delivered = threading.Event(), threading.Event()

        def _slow_submit(payload):
            release.wait(timeout=10)
            delivered.set()
            return True

        sink.submit.side_effect = _slow_submit
        engine = self._engine(db_session, user_id, submitter, True)
        try:
            result = engine.train(user_data)
            engine.teardown()
            assert result["success"] is True
            assert not delivered.is_set()
        finally:
            release.set()
        assert delivered.wait(timeout=10)

    def test_cooldown_spans_orchestrator_instances(self, db_session, user_id, user_data, sink, submitter):
        first = self._engine(db_session, user_id, submitter, True)
        assert first.train(user_data)["success"] is True
        first.teardown()

        second = self._engine(db_session, user_id, submitter, True)
        assert second.train(user_data)["success"] is True
        second.teardown()
        submitter.shutdown()

        sink.submit.assert_called_once()
        assert last_submission_at(db_session, user_id) is not None

    def test_cooldown_expires_after_a_day(self, db_session, user_id, user_data, sink, submitter):
        record_submission(db_session, user_id, now=datetime.now(timezone.utc) - timedelta(hours=25))

        self._engine(db_session, user_id, submitter, True).train(user_data)
        submitter.shutdown()

        sink.submit.assert_called_once()


# =============================================================================
# INTERVENTION FEEDBACK
# =============================================================================

def test_resolved_false_alarm_is_used_as_feedback(orchestrator, user_data):
    orchestrator.create_intervention({"riskScore": 80}, now=datetime(2024, 1, 5, 12, 0))
    assert orchestrator.check_successful_interventions() == 1

    result = orchestrator.train(user_data)

    assert result["success"] is True
    assert result["feedbackSamplesUsed"] == 1


def test_pending_interventions_are_not_feedback(orchestrator, user_data):
    orchestrator.create_intervention({"riskScore": 80}, now=datetime(2024, 1, 5, 12, 0))

    result = orchestrator.train(user_data)

    assert result["feedbackSamplesUsed"] == 0


# =============================================================================
# PREDICTION
# =============================================================================

class TestPrediction:

    def test_untrained_uses_heuristic(self, orchestrator, user_data):
        prediction = orchestrator.predict(user_data, now=SATURDAY_NIGHT)
        assert prediction["usedML"] is False
        assert prediction["confidence"] <= 0.4

    def test_single_entry_stays_bounded(self, orchestrator):
        data = UserData(benefit_tracking=[BenefitEntry(date="2024-01-20", energy=1)], current_streak=30)
        prediction = orchestrator.predict(data, now=SATURDAY_NIGHT)
        assert prediction["usedML"] is False
        assert 0 <= prediction["riskScore"] <= 85

    def test_high_risk_model_prediction_emits(self, orchestrator, user_data, listener, user_id):
        handler = listener(EVENT_HIGH_RISK_PREDICTION)
        orchestrator.train(user_data)

        with patch.object(orchestrator.state.classifier, "predict", return_value=0.95):
            prediction = orchestrator.predict(user_data, now=SATURDAY_NIGHT)

        assert prediction["riskScore"] == 95
        handler.assert_called_once()
        kwargs = handler.call_args.kwargs
        assert kwargs["user_id"] == str(user_id)
        assert kwargs["risk_score"] == 95

    def test_low_model_score_does_not_emit(self, orchestrator, user_data, listener):
        handler = listener(EVENT_HIGH_RISK_PREDICTION)
        orchestrator.train(user_data)

        with patch.object(orchestrator.state.classifier, "predict", return_value=0.2):
            orchestrator.predict(user_data, now=SATURDAY_NIGHT)

        handler.assert_not_called()

    def test_heuristic_never_emits(self, orchestrator, listener):
        handler = listener(EVENT_HIGH_RISK_PREDICTION)
        data = UserData(
            benefit_tracking=[
                BenefitEntry(date="2024-01-19", energy=8),
                BenefitEntry(date="2024-01-20", energy=3),
            ],
            streak_history=[
                StreakRecord(start="2023-09-01", end=end, days=10, reason="relapse")
                for end in ("2023-09-11", "2023-10-01", "2023-11-01", "2023-12-01")
            ],
            current_streak=20,
        )

        prediction = orchestrator.predict(data, now=SATURDAY_NIGHT)

        assert prediction["riskScore"] == 85
        handler.assert_not_called()

    @pytest.mark.parametrize("error", [RuntimeError("shape mismatch"), ValueError("nan in input")])
    def test_inference_failure_falls_back_to_heuristic(self, orchestrator, user_data, listener, error):
        handler = listener(EVENT_HIGH_RISK_PREDICTION)
        orchestrator.train(user_data)

        with patch.object(orchestrator.state.classifier, "predict", side_effect=error):
            prediction = orchestrator.predict(user_data, now=SATURDAY_NIGHT)

        assert prediction["usedML"] is False
        assert 0 <= prediction["riskScore"] <= 85
        handler.assert_not_called()


# =============================================================================
# LIFECYCLE
# =============================================================================

def test_relapse_resolves_interventions(orchestrator):
    intervention_id = orchestrator.create_intervention({"riskScore": 75}, now=datetime(2024, 3, 1, 20, 0))

    marked = orchestrator.on_relapse(relapse_at=datetime(2024, 3, 2, 1, 0), relapse_id="relapse-1")

    assert marked == 1
    assert orchestrator.ledger.get_intervention(intervention_id).outcome_status == "relapse"


def test_initialize_is_idempotent(orchestrator):
    state = orchestrator.state
    orchestrator.initialize()
    assert orchestrator.state is state


def test_corrupt_model_falls_back_to_shell(db_session, user_id, orchestrator, user_data):
    orchestrator.train(user_data)
    row = _model_rows(db_session, user_id)[0]
    row.weights = b"not a model"
    db_session.commit()

    with PredictionOrchestrator(db_session, user_id, share_aggregates=False) as reloaded:
        assert reloaded.state.classifier is not None
        assert not reloaded.is_ready
        assert reloaded.predict(user_data, now=SATURDAY_NIGHT)["usedML"] is False
        assert reloaded.get_model_info()["needsRetraining"] is True


# =============================================================================
# RESET
# =============================================================================

class TestReset:

    def test_reset_removes_stored_model(self, db_session, user_id, orchestrator, user_data):
        orchestrator.train(user_data)
        orchestrator.train(user_data)

        result = orchestrator.reset_model()

        assert result["success"] is True
        assert result["versionsRemoved"] == 1
        assert _model_rows(db_session, user_id) == []
        assert orchestrator.is_ready is False
        assert orchestrator.predict(user_data, now=SATURDAY_NIGHT)["usedML"] is False

    def test_reset_keeps_intervention_history(self, db_session, user_id, orchestrator, user_data):
        orchestrator.create_intervention({"riskScore": 80})
        orchestrator.train(user_data)

        orchestrator.reset_model()

        rows = db_session.query(Intervention).filter(Intervention.user_id == user_id).count()
        assert rows == 1

    def test_retrain_after_reset_starts_at_version_one(self, db_session, user_id, orchestrator, user_data):
        orchestrator.train(user_data)
        orchestrator.reset_model()

        orchestrator.train(user_data)

        assert orchestrator.get_model_info()["version"] == 1
        assert len(_model_rows(db_session, user_id)) == 1

    def test_reset_without_model(self, orchestrator):
        result = orchestrator.reset_model()
        assert result["success"] is True
        assert result["versionsRemoved"] == 0

    def test_reset_refused_while_training(self, db_session, user_id, user_data):
        registry = TrainingRegistry()
        engine = PredictionOrchestrator(db_session, user_id, registry=registry, share_aggregates=False, seed=SEED)
        engine.train(user_data)
        registry.begin(user_id, CancellationToken())
        try:
            result = engine.reset_model()
        finally:
            registry.end(user_id)

        assert result["success"] is False
        assert result["error"] == "training_in_progress"
        assert len(_model_rows(db_session, user_id)) == 1
        assert engine.is_ready is True


# =============================================================================
# HISTORY SUMMARIES
# =============================================================================

def test_data_quality(orchestrator, user_data):
    report = orchestrator.get_data_quality(user_data)
    assert report["qualityScore"] == 100
    assert report["canTrain"] is True


def test_insights(orchestrator, user_data):
    insights = orchestrator.get_insights(user_data)
    assert insights["benefitCorrelations"][0]["metric"] == "focus"


def test_no_insights_for_short_history(orchestrator):
    data = UserData(benefit_tracking=[BenefitEntry(date="2024-01-20", energy=5)], current_streak=3)
    assert orchestrator.get_insights(data) is None
