"""
Prediction Orchestrator

Per-user façade over the risk engine: owns the loaded model state and the
intervention ledger, runs training end to end and serves predictions.

One instance per user and unit of work. There is no module-level
orchestrator; anything shared between instances (the in-flight training
registry, the aggregate submitter) is passed in explicitly.

Training pipeline:
    history -> samples -> minimum-data check -> normalization fit
    -> class + feedback weights -> fit -> evaluate -> persist -> swap

The in-memory model is only replaced after persistence succeeds, so a
failed or cancelled run leaves the previous model serving predictions.

Usage:
    with PredictionOrchestrator(db, user_id) as orchestrator:
        result = orchestrator.train(user_data)
        prediction = orchestrator.predict(user_data)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID
import logging
import threading
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.events import EVENT_HIGH_RISK_PREDICTION, emit
from core.exceptions import (
    AggregateSubmissionError,
    InsufficientDataError,
    MissingNormalizationStats,
    TrainingCancelled,
    TrainingFailure,
)
from core.logging import log_context
from services.aggregate_submission import (
    AggregateSubmitter,
    build_aggregate_payload,
    can_submit,
    get_aggregate_submitter,
    is_worth_sharing,
    record_submission,
)
from services.intervention_ledger import InterventionLedger
from services.risk_classifier import CancellationToken, ProgressCallback, RiskClassifier
from services.risk_evaluation import evaluate, format_metrics
from services.risk_features import (
    UserData,
    apply_normalization_many,
    fit_normalization,
)
from services.risk_model_store import ModelState, RiskModelStore, TrainingHistory
from services.risk_patterns import extract_model_insights
from services.risk_predictors import HeuristicPredictor, choose_predictor
from services.risk_training_lock import (
    acquire_training_lock,
    release_training_lock,
    training_lock_held,
)
from services.risk_training_set import (
    apply_feedback_weights,
    build_training_samples,
    check_minimum_data,
    compute_class_weights,
    compute_sample_weights,
    data_quality_report,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

HIGH_RISK_NOTIFY_THRESHOLD = 70


# =============================================================================
# IN-FLIGHT TRAINING REGISTRY
# =============================================================================

class TrainingRegistry:
    """
    Tracks which users have a training run in progress.

    Threads in one process share a registry (the API keeps one on app.state,
    the worker one per process); other processes are excluded through the
    Redis training lock. begin() never blocks: a second run for the same
    user is refused, not queued.

    Cancellation only reaches runs started in this process.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, CancellationToken] = {}

    def begin(self, user_id: UUID, token: CancellationToken) -> bool:
        key = str(user_id)
        with self._lock:
            if key in self._active:
                return False
            if not acquire_training_lock(key):
                logger.info(f"Training for user {key} is running in another process")
                return False
            self._active[key] = token
            return True

    def end(self, user_id: UUID) -> None:
        key = str(user_id)
        with self._lock:
            if self._active.pop(key, None) is not None:
                release_training_lock(key)

    def cancel(self, user_id: UUID) -> bool:
        with self._lock:
            token = self._active.get(str(user_id))
        if token is None:
            return False
        token.cancel()
        return True

    def is_training(self, user_id: UUID) -> bool:
        key = str(user_id)
        with self._lock:
            if key in self._active:
                return True
        return training_lock_held(key)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class PredictionOrchestrator:
    """Risk engine for one user."""

    def __init__(
        self,
        db: Session,
        user_id: UUID,
        registry: Optional[TrainingRegistry] = None,
        aggregate_submitter: Optional[AggregateSubmitter] = None,
        share_aggregates: Optional[bool] = None,
        seed: Optional[int] = None,
    ):
        self.db = db
        self.user_id = user_id
        self.registry = registry or TrainingRegistry()
        self.aggregate_submitter = aggregate_submitter or get_aggregate_submitter()
        self.share_aggregates = (
            settings.AGGREGATE_SHARING_ENABLED if share_aggregates is None else share_aggregates
        )
        self.seed = settings.RISK_TRAINING_SEED if seed is None else seed

        self.store = RiskModelStore(db)
        self.ledger = InterventionLedger(db, user_id)
        self.state: Optional[ModelState] = None

        self._initialized = False
        self._log = log_context(user_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Load the persisted model, or build an untrained shell, and resolve
        intervention outcomes whose window has elapsed. Idempotent.
        """
        if self._initialized:
            return

        state = self.store.load(self.user_id)
        if state is None:
            logger.info(f"No usable model for user {self.user_id}, starting untrained", extra=self._log)
            state = ModelState(classifier=RiskClassifier(seed=self.seed))
        self.state = state

        self.ledger.check_successful_interventions()
        self._initialized = True

    def teardown(self) -> None:
        """Drop in-memory state. Queued aggregate submissions are not waited on."""
        self.state = None
        self._initialized = False

    def __enter__(self) -> "PredictionOrchestrator":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    @property
    def is_ready(self) -> bool:
        return self.state is not None and self.state.is_trained

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def train(
        self,
        user_data: UserData,
        on_progress: Optional[ProgressCallback] = None,
        share_aggregates: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Train a fresh classifier on the user's full history.

        Args:
            user_data: History snapshot to learn from
            on_progress: Optional per-epoch callback (silent training when None)
            share_aggregates: Overrides the instance opt-in for this run

        Returns:
            {success, accuracy, loss, metrics, validationMetrics,
             trainingExamples, feedbackSamplesUsed, trainingTime, error, message}
        """
        self.initialize()

        token = CancellationToken()
        if not self.registry.begin(self.user_id, token):
            logger.info(f"Training already in progress for user {self.user_id}, refusing", extra=self._log)
            return self._failure("training_in_progress", "Training is already running for this user")

        try:
            return self._train(user_data, on_progress, token, share_aggregates)
        except InsufficientDataError as e:
            logger.info(f"Training refused for user {self.user_id}: {e}", extra=self._log)
            return {**self._failure(e.code, str(e)), **e.to_dict()}
        except TrainingCancelled as e:
            logger.info(f"Training cancelled for user {self.user_id}", extra=self._log)
            return self._failure(e.code, str(e))
        except TrainingFailure as e:
            logger.error(f"Training failed for user {self.user_id}: {e}", exc_info=True, extra=self._log)
            return self._failure(e.code, str(e))
        finally:
            self.registry.end(self.user_id)

    def _train(
        self,
        user_data: UserData,
        on_progress: Optional[ProgressCallback],
        token: CancellationToken,
        share_aggregates: Optional[bool],
    ) -> Dict[str, Any]:
        started = time.monotonic()

        samples = build_training_samples(user_data)
        check_minimum_data(user_data, samples)

        raw = [s.features for s in samples]
        labels = [s.label for s in samples]
        dates = [s.date for s in samples]

        stats = fit_normalization(raw)
        normalized = apply_normalization_many(raw, stats)

        class_weights = compute_class_weights(labels)
        weights = compute_sample_weights(labels, class_weights)
        weights, feedback_used = apply_feedback_weights(
            weights, self.ledger.get_training_feedback(), dates
        )

        logger.info(
            f"Training risk model for user {self.user_id}: {len(samples)} samples, "
            f"{sum(labels)} relapse days, class weights {class_weights.to_dict()}",
            extra=log_context(self.user_id, samples=len(samples), feedback_samples=feedback_used),
        )

        classifier = RiskClassifier(seed=self.seed)
        try:
            fit = classifier.fit(
                normalized,
                labels,
                weights,
                on_progress=on_progress,
                cancel_token=token,
                seed=self.seed,
            )
        except TrainingCancelled:
            raise
        except Exception as e:
            raise TrainingFailure(f"Model fit failed: {e}") from e

        probabilities = classifier.predict_many(normalized)
        metrics = evaluate(probabilities, labels)
        validation_metrics = None
        if fit.validation_indices:
            validation_metrics = evaluate(
                [probabilities[i] for i in fit.validation_indices],
                [labels[i] for i in fit.validation_indices],
            )
        logger.info(f"Training metrics for user {self.user_id}: {format_metrics(metrics)}", extra=self._log)

        elapsed = round(time.monotonic() - started, 2)
        history = TrainingHistory(
            last_trained=datetime.now(timezone.utc),
            samples=len(samples),
            final_loss=round(fit.final_loss, 4),
            final_accuracy=round(fit.final_accuracy, 3),
            metrics=metrics.to_dict(),
            validation_metrics=validation_metrics.to_dict() if validation_metrics else None,
            class_weights=class_weights.to_dict(),
            feedback_samples_used=feedback_used,
            training_time_seconds=elapsed,
        )

        # A run cancelled after its last epoch still must not replace the model
        token.raise_if_cancelled()
        try:
            version = self.store.save(self.user_id, classifier, stats, history)
        except SQLAlchemyError as e:
            raise TrainingFailure(f"Could not persist trained model: {e}") from e

        self.state = ModelState(
            classifier=classifier,
            normalization_stats=stats,
            history=history,
            version=version,
        )

        self._share_aggregates(user_data, history.metrics, share_aggregates)

        return {
            "success": True,
            "accuracy": history.final_accuracy,
            "loss": history.final_loss,
            "metrics": history.metrics,
            "validationMetrics": history.validation_metrics,
            "trainingExamples": history.samples,
            "feedbackSamplesUsed": feedback_used,
            "trainingTime": elapsed,
            "version": version,
            "error": None,
            "message": f"Model trained on {history.samples} examples",
        }

    def cancel_training(self) -> bool:
        """Signal the running fit for this user. False if nothing is running."""
        cancelled = self.registry.cancel(self.user_id)
        if cancelled:
            logger.info(f"Cancellation requested for user {self.user_id}", extra=self._log)
        return cancelled

    @staticmethod
    def _failure(error: str, message: str) -> Dict[str, Any]:
        return {"success": False, "error": error, "message": message}

    # -------------------------------------------------------------------------
    # Aggregate sharing (fire-and-forget)
    # -------------------------------------------------------------------------

    def _share_aggregates(
        self,
        user_data: UserData,
        metrics: Optional[Dict[str, Any]],
        share_aggregates: Optional[bool],
        now: Optional[datetime] = None,
    ) -> bool:
        """Queue an anonymized summary for delivery. True if queued."""
        share = self.share_aggregates if share_aggregates is None else share_aggregates
        if not share or not self.aggregate_submitter.enabled:
            return False

        try:
            payload = build_aggregate_payload(user_data, metrics)
        except AggregateSubmissionError as e:
            logger.warning(f"Aggregate payload rejected for user {self.user_id}: {e}", extra=self._log)
            return False
        if not is_worth_sharing(payload):
            logger.debug(f"Not enough history to share aggregates for user {self.user_id}")
            return False

        try:
            if not can_submit(self.db, self.user_id, now):
                logger.info(f"Aggregate sharing for user {self.user_id} is cooling down, skipping", extra=self._log)
                return False
            record_submission(self.db, self.user_id, now)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Could not check aggregate cooldown for user {self.user_id}: {e}", extra=self._log)
            return False

        self.aggregate_submitter.submit(payload)
        return True

    # -------------------------------------------------------------------------
    # Prediction
    # -------------------------------------------------------------------------

    def predict(self, user_data: UserData, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Score current relapse risk.

        Args:
            user_data: Current history snapshot
            now: Local time of the request; drives hour-of-day and weekend

        Returns:
            {riskScore, confidence, reason, factors, patterns, usedML, dataContext}
        """
        self.initialize()
        now = now or datetime.now()

        predictor = choose_predictor(self.state, user_data)
        try:
            prediction = predictor.predict(user_data, now)
        except MissingNormalizationStats:
            logger.warning(f"Normalization stats unusable for user {self.user_id}, using heuristic", extra=self._log)
            prediction = HeuristicPredictor().predict(user_data, now)
        except (RuntimeError, ValueError) as e:
            if isinstance(predictor, HeuristicPredictor):
                raise
            logger.error(
                f"Model inference failed for user {self.user_id}, using heuristic: {e}",
                exc_info=True,
                extra=self._log,
            )
            prediction = HeuristicPredictor().predict(user_data, now)

        logger.debug(
            f"Risk for user {self.user_id}: {prediction.risk_score} "
            f"({'model' if prediction.used_ml else 'heuristic'})"
        )

        if prediction.used_ml and prediction.risk_score >= HIGH_RISK_NOTIFY_THRESHOLD:
            emit(
                EVENT_HIGH_RISK_PREDICTION,
                user_id=str(self.user_id),
                risk_score=prediction.risk_score,
                reason=prediction.reason,
            )

        return prediction.to_dict()

    def get_model_info(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        self.initialize()
        history = self.state.history if self.state else None
        metrics = (history.metrics if history else None) or {}
        ready = self.is_ready

        return {
            "isReady": ready,
            "isTraining": self.registry.is_training(self.user_id),
            "version": self.state.version if self.state else 0,
            "lastTrained": history.last_trained.isoformat() if history and history.last_trained else None,
            "samples": history.samples if history else 0,
            "accuracy": history.final_accuracy if history else None,
            "precision": metrics.get("precision"),
            "recall": metrics.get("recall"),
            "f1Score": metrics.get("f1Score"),
            "validationMetrics": history.validation_metrics if history else None,
            "needsRetraining": (
                not ready or history.is_stale(settings.MODEL_RETRAIN_AFTER_DAYS, now)
            ),
        }

    def reset_model(self) -> Dict[str, Any]:
        """
        Forget the trained model and start again from an untrained shell.

        Refused while a training run is in flight. The intervention ledger
        is untouched, so past outcomes still weight the next training run.
        """
        self.initialize()

        token = CancellationToken()
        if not self.registry.begin(self.user_id, token):
            return self._failure("training_in_progress", "Cannot reset while training is running")
        try:
            removed = self.store.delete(self.user_id)
        finally:
            self.registry.end(self.user_id)

        self.state = ModelState(classifier=RiskClassifier(seed=self.seed))
        logger.info(f"Risk model reset for user {self.user_id}", extra=log_context(self.user_id, versions_removed=removed))
        return {
            "success": True,
            "versionsRemoved": removed,
            "error": None,
            "message": "Model reset",
        }

    # -------------------------------------------------------------------------
    # History summaries
    # -------------------------------------------------------------------------

    def get_data_quality(self, user_data: UserData) -> Dict[str, Any]:
        return data_quality_report(user_data)

    def get_insights(self, user_data: UserData) -> Optional[Dict[str, Any]]:
        return extract_model_insights(user_data)

    # -------------------------------------------------------------------------
    # Intervention ledger
    # -------------------------------------------------------------------------

    def create_intervention(self, prediction: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> str:
        return self.ledger.create_intervention(prediction, now=now)

    def record_response(self, intervention_id: str, response_type: str, now: Optional[datetime] = None):
        return self.ledger.record_response(intervention_id, response_type, now=now)

    def start_session(self, intervention_id: Optional[str], tool: str, now: Optional[datetime] = None) -> str:
        return self.ledger.start_session(intervention_id, tool, now=now)

    def complete_session(self, intervention_id: str, duration_s: Optional[int], now: Optional[datetime] = None):
        return self.ledger.complete_session(intervention_id, duration_s, now=now)

    def on_relapse(
        self,
        relapse_at: Optional[datetime] = None,
        relapse_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Resolve interventions from the 48h before a relapse as failed."""
        return self.ledger.on_relapse(relapse_at=relapse_at, relapse_id=relapse_id, now=now)

    def check_successful_interventions(self, now: Optional[datetime] = None) -> int:
        return self.ledger.check_successful_interventions(now=now)
