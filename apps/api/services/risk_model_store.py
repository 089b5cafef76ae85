"""
Risk Model Store

Persists the per-user model state: classifier weights, normalization stats
and training history, always as one unit.

Write-then-swap: save() inserts the new version, then removes superseded
versions and flips is_current in the same transaction. A crash mid-write
leaves the previous version intact; weights and stats can never come from
different training runs.

A blob that fails to deserialize is discarded on load and the caller falls
back to an untrained shell.

Usage:
    store = RiskModelStore(db)
    state = store.load(user_id)          # None when nothing usable is stored
    version = store.save(user_id, classifier, stats, history)
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.exceptions import CorruptPersistedStateError
from models import RiskModelState
from services.risk_classifier import ARCHITECTURE_ID, RiskClassifier
from services.risk_features import NormalizationStats

logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class TrainingHistory:
    """Summary of the training run that produced the current model."""
    last_trained: Optional[datetime] = None
    samples: int = 0
    final_loss: Optional[float] = None
    final_accuracy: Optional[float] = None
    metrics: Optional[Dict[str, Any]] = None
    validation_metrics: Optional[Dict[str, Any]] = None
    class_weights: Dict[str, float] = field(default_factory=dict)
    feedback_samples_used: int = 0
    training_time_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastTrained": self.last_trained.isoformat() if self.last_trained else None,
            "samples": self.samples,
            "finalLoss": self.final_loss,
            "finalAccuracy": self.final_accuracy,
            "metrics": self.metrics,
            "validationMetrics": self.validation_metrics,
            "classWeights": self.class_weights,
            "feedbackSamplesUsed": self.feedback_samples_used,
            "trainingTimeSeconds": self.training_time_seconds,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrainingHistory":
        if not data:
            return cls()
        last_trained = data.get("lastTrained")
        return cls(
            last_trained=datetime.fromisoformat(last_trained) if last_trained else None,
            samples=int(data.get("samples") or 0),
            final_loss=data.get("finalLoss"),
            final_accuracy=data.get("finalAccuracy"),
            metrics=data.get("metrics"),
            validation_metrics=data.get("validationMetrics"),
            class_weights=data.get("classWeights") or {},
            feedback_samples_used=int(data.get("feedbackSamplesUsed") or 0),
            training_time_seconds=float(data.get("trainingTimeSeconds") or 0.0),
        )

    def is_stale(self, max_age_days: int, now: Optional[datetime] = None) -> bool:
        if self.last_trained is None:
            return True
        now = now or datetime.now(timezone.utc)
        last = self.last_trained
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last > timedelta(days=max_age_days)


@dataclass
class ModelState:
    """In-memory model state. An untrained shell has a classifier but no history."""
    classifier: Optional[RiskClassifier] = None
    normalization_stats: Optional[NormalizationStats] = None
    history: Optional[TrainingHistory] = None
    version: int = 0

    @property
    def is_trained(self) -> bool:
        """
        A constructed-but-never-fit classifier does not count: a real
        history with samples and a training timestamp is required, along
        with valid normalization stats.
        """
        return (
            self.classifier is not None
            and self.normalization_stats is not None
            and self.normalization_stats.is_valid()
            and self.history is not None
            and self.history.samples > 0
            and self.history.last_trained is not None
        )


# =============================================================================
# STORE
# =============================================================================

class RiskModelStore:
    """Database-backed persistence for ModelState."""

    def __init__(self, db: Session):
        self.db = db

    def _current_row(self, user_id: UUID) -> Optional[RiskModelState]:
        return (
            self.db.query(RiskModelState)
            .filter(RiskModelState.user_id == user_id, RiskModelState.is_current.is_(True))
            .first()
        )

    def load(self, user_id: UUID) -> Optional[ModelState]:
        """
        Load the current model for a user.

        Returns None if nothing is stored or the stored state is corrupt
        (corrupt rows are removed).
        """
        row = self._current_row(user_id)
        if row is None:
            return None

        try:
            state = self._decode(row)
        except CorruptPersistedStateError as e:
            logger.warning(f"Discarding corrupt model state v{row.version} for user {user_id}: {e}")
            self.db.delete(row)
            self.db.commit()
            return None

        logger.info(f"Loaded risk model v{state.version} for user {user_id}")
        return state

    @staticmethod
    def _decode(row: RiskModelState) -> ModelState:
        if row.architecture != ARCHITECTURE_ID:
            raise CorruptPersistedStateError(f"Stored architecture {row.architecture!r} is not supported")
        classifier = RiskClassifier.deserialize(row.weights)
        stats = NormalizationStats.from_dict(row.normalization_stats)
        if stats is None:
            raise CorruptPersistedStateError("Stored normalization stats are malformed")
        try:
            history = TrainingHistory.from_dict(row.training_history)
        except (TypeError, ValueError) as e:
            raise CorruptPersistedStateError(f"Stored training history is malformed: {e}") from e
        return ModelState(
            classifier=classifier,
            normalization_stats=stats,
            history=history,
            version=row.version,
        )

    def save(
        self,
        user_id: UUID,
        classifier: RiskClassifier,
        stats: NormalizationStats,
        history: TrainingHistory,
    ) -> int:
        """
        Persist a new model version and make it current.

        Returns:
            The new version number
        """
        blob = classifier.serialize()
        try:
            latest = (
                self.db.query(func.max(RiskModelState.version))
                .filter(RiskModelState.user_id == user_id)
                .scalar()
            ) or 0

            row = RiskModelState(
                user_id=user_id,
                version=latest + 1,
                architecture=ARCHITECTURE_ID,
                weights=blob,
                normalization_stats=stats.to_dict(),
                training_history=history.to_dict(),
                is_current=False,
            )
            self.db.add(row)
            self.db.flush()

            # Swap: drop superseded versions, then promote the new row
            self.db.query(RiskModelState).filter(
                RiskModelState.user_id == user_id,
                RiskModelState.id != row.id,
            ).delete(synchronize_session=False)
            row.is_current = True

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Saved risk model v{row.version} for user {user_id} ({len(blob)} bytes)")
        return row.version

    def delete(self, user_id: UUID) -> int:
        """
        Remove every stored model version for a user.

        Returns:
            Number of rows removed
        """
        try:
            removed = (
                self.db.query(RiskModelState)
                .filter(RiskModelState.user_id == user_id)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Deleted {removed} risk model version(s) for user {user_id}")
        return removed
