from sqlalchemy import Column, Integer, Boolean, Float, DateTime, LargeBinary, Text, String, Index, JSON, Uuid
from sqlalchemy.sql import func
from core.database import Base
import uuid


class RiskModelState(Base):
    """
    Persisted relapse-risk model for one user.

    Exactly one row per user has is_current = True. A retrain inserts a new
    row and flips the pointer in the same transaction (write-then-swap), so
    weights, normalization stats and history always come from one version.
    """
    __tablename__ = "risk_model_state"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    architecture = Column(Text, nullable=False)
    weights = Column(LargeBinary, nullable=False)  # RiskClassifier.serialize()
    normalization_stats = Column(JSON, nullable=False)  # {"means": [12], "stds": [12]}
    # {lastTrained, samples, finalLoss, finalAccuracy, metrics, validationMetrics,
    #  classWeights, feedbackSamplesUsed, trainingTimeSeconds}
    training_history = Column(JSON, nullable=False)
    is_current = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("uq_risk_model_user_version", "user_id", "version", unique=True),
        Index("ix_risk_model_user_current", "user_id", "is_current"),
    )


class AggregateSubmission(Base):
    """Last anonymized aggregate queued for a user (drives the 24h cooldown)."""
    __tablename__ = "aggregate_submission"

    user_id = Column(Uuid(as_uuid=True), primary_key=True)
    last_submitted_at = Column(DateTime, nullable=False)  # naive UTC


class Intervention(Base):
    """
    One alert -> response -> toolkit session -> outcome record.

    Append-only: rows are never deleted. outcome_status only moves from
    'pending' to 'success' or 'relapse', once.
    """
    __tablename__ = "intervention"

    id = Column(String(64), primary_key=True)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)

    # Prediction context (null for self-initiated toolkit sessions)
    prediction_risk_score = Column(Float, nullable=True)
    prediction = Column(JSON, nullable=True)  # {riskScore, factors, patterns, reason, usedML}

    # User response: 'struggling' | 'fine' | 'dismissed' | 'self_initiated'
    response_type = Column(Text, nullable=True)
    responded_at = Column(DateTime, nullable=True)

    # Toolkit session
    tool_used = Column(Text, nullable=True)
    session_started_at = Column(DateTime, nullable=True)
    session_completed = Column(Boolean, nullable=False, default=False)
    session_completed_at = Column(DateTime, nullable=True)
    session_duration_s = Column(Integer, nullable=True)

    # Outcome: 'pending' | 'success' | 'relapse'
    outcome_status = Column(Text, nullable=False, default="pending")
    outcome_window_hours = Column(Integer, nullable=False, default=48)
    outcome_determined_at = Column(DateTime, nullable=True)
    relapse_id = Column(Text, nullable=True)
    hours_until_relapse = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_intervention_user_status", "user_id", "outcome_status"),
        Index("ix_intervention_user_created", "user_id", "created_at"),
    )

    @property
    def has_session(self) -> bool:
        return self.tool_used is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "prediction": self.prediction,
            "response": {
                "type": self.response_type,
                "respondedAt": self.responded_at.isoformat() if self.responded_at else None,
            } if self.response_type else None,
            "session": {
                "toolUsed": self.tool_used,
                "startedAt": self.session_started_at.isoformat() if self.session_started_at else None,
                "completed": bool(self.session_completed),
                "completedAt": self.session_completed_at.isoformat() if self.session_completed_at else None,
                "duration": self.session_duration_s,
            } if self.has_session else None,
            "outcome": {
                "status": self.outcome_status,
                "windowHours": self.outcome_window_hours,
                "determinedAt": self.outcome_determined_at.isoformat() if self.outcome_determined_at else None,
                "relapseId": self.relapse_id,
                "hoursUntilRelapse": self.hours_until_relapse,
            },
        }
