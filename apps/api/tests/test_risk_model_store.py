"""
Tests for risk model persistence (write-then-swap, corrupt state handling)
"""

from datetime import datetime, timedelta, timezone

from models import RiskModelState
from services.risk_classifier import RiskClassifier
from services.risk_features import NUM_FEATURES, NormalizationStats
from services.risk_model_store import ModelState, RiskModelStore, TrainingHistory


def _stats():
    return NormalizationStats(means=[1.0] * NUM_FEATURES, stds=[2.0] * NUM_FEATURES)


def _history(samples=19):
    return TrainingHistory(
        last_trained=datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc),
        samples=samples,
        final_loss=0.41,
        final_accuracy=0.842,
        metrics={"f1Score": 0.5},
        class_weights={"weight0": 0.559, "weight1": 4.75},
    )


def _rows(db_session, user_id):
    return db_session.query(RiskModelState).filter(RiskModelState.user_id == user_id).all()


def test_load_without_model(db_session, user_id):
    assert RiskModelStore(db_session).load(user_id) is None


def test_save_and_load(db_session, user_id):
    store = RiskModelStore(db_session)
    classifier = RiskClassifier(seed=5)

    version = store.save(user_id, classifier, _stats(), _history())
    state = store.load(user_id)

    assert version == 1
    assert state.version == 1
    assert state.is_trained
    assert state.normalization_stats == _stats()
    assert state.history.samples == 19
    assert state.history.last_trained == datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)
    assert state.history.class_weights == {"weight0": 0.559, "weight1": 4.75}
    vector = [0.1] * NUM_FEATURES
    assert abs(state.classifier.predict(vector) - classifier.predict(vector)) < 1e-6


def test_new_version_replaces_old(db_session, user_id):
    store = RiskModelStore(db_session)
    store.save(user_id, RiskClassifier(seed=1), _stats(), _history(samples=10))

    version = store.save(user_id, RiskClassifier(seed=2), _stats(), _history(samples=25))

    rows = _rows(db_session, user_id)
    assert version == 2
    assert len(rows) == 1
    assert rows[0].is_current is True
    assert store.load(user_id).history.samples == 25


def test_users_do_not_share_versions(db_session, user_id):
    from uuid import uuid4

    store = RiskModelStore(db_session)
    other = uuid4()
    store.save(user_id, RiskClassifier(seed=1), _stats(), _history())
    assert store.save(other, RiskClassifier(seed=1), _stats(), _history()) == 1
    assert len(_rows(db_session, user_id)) == 1


def test_corrupt_weights_are_discarded(db_session, user_id):
    store = RiskModelStore(db_session)
    store.save(user_id, RiskClassifier(seed=1), _stats(), _history())
    row = _rows(db_session, user_id)[0]
    row.weights = b"\x00garbage"
    db_session.commit()

    assert store.load(user_id) is None
    assert _rows(db_session, user_id) == []


def test_malformed_stats_are_discarded(db_session, user_id):
    store = RiskModelStore(db_session)
    store.save(user_id, RiskClassifier(seed=1), _stats(), _history())
    row = _rows(db_session, user_id)[0]
    row.normalization_stats = {"means": [0.0] * NUM_FEATURES, "stds": [0.0] * NUM_FEATURES}
    db_session.commit()

    assert store.load(user_id) is None


class TestTrainingHistory:

    def test_dict_round_trip(self):
        history = _history()
        assert TrainingHistory.from_dict(history.to_dict()) == history
        assert TrainingHistory.from_dict(None) == TrainingHistory()

    def test_staleness(self):
        history = _history()
        assert not history.is_stale(7, now=datetime(2024, 2, 5, tzinfo=timezone.utc))
        assert history.is_stale(7, now=datetime(2024, 2, 9, tzinfo=timezone.utc))
        assert TrainingHistory().is_stale(7)

    def test_naive_timestamps_are_utc(self):
        history = TrainingHistory(last_trained=datetime(2024, 2, 1))
        now = datetime(2024, 2, 1, tzinfo=timezone.utc) + timedelta(days=8)
        assert history.is_stale(7, now=now)


def test_shell_is_not_trained():
    assert not ModelState(classifier=RiskClassifier()).is_trained
    assert not ModelState().is_trained
