from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Optional, List, Dict, Any

from services.risk_features import (
    BenefitEntry,
    EmotionalEntry,
    StreakRecord,
    UserData,
)


class CamelModel(BaseModel):
    """Accepts camelCase (as sent by the app) or snake_case field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# USER DATA (input snapshot)
# =============================================================================

class BenefitEntryIn(CamelModel):
    # Dates are ISO strings; unparseable ones are dropped by the engine
    date: str
    energy: Optional[float] = None
    focus: Optional[float] = None
    confidence: Optional[float] = None
    aura: Optional[float] = None
    sleep_quality: Optional[float] = None
    workout_quality: Optional[float] = None


class EmotionalEntryIn(CamelModel):
    date: str
    anxiety: Optional[float] = None
    mood_stability: Optional[float] = None
    mental_clarity: Optional[float] = None
    emotional_processing: Optional[float] = None


class StreakRecordIn(CamelModel):
    start: Optional[str] = None
    end: Optional[str] = None  # null = active streak
    days: int = 0
    reason: Optional[str] = None  # 'relapse' marks the labeled event
    trigger: Optional[str] = None


class UserDataPayload(CamelModel):
    benefit_tracking: List[BenefitEntryIn] = Field(default_factory=list)
    emotional_tracking: List[EmotionalEntryIn] = Field(default_factory=list)
    streak_history: List[StreakRecordIn] = Field(default_factory=list)
    current_streak: int = 0

    def to_user_data(self) -> UserData:
        return UserData(
            benefit_tracking=[BenefitEntry(**entry.model_dump()) for entry in self.benefit_tracking],
            emotional_tracking=[EmotionalEntry(**entry.model_dump()) for entry in self.emotional_tracking],
            streak_history=[StreakRecord(**record.model_dump()) for record in self.streak_history],
            current_streak=self.current_streak,
        )


# =============================================================================
# TRAINING
# =============================================================================

class TrainRequest(CamelModel):
    user_data: UserDataPayload
    share_aggregates: Optional[bool] = None  # None = use AGGREGATE_SHARING_ENABLED
    background: bool = False  # enqueue on the worker instead of training in-request


class TrainResponse(CamelModel):
    success: bool
    accuracy: Optional[float] = None
    loss: Optional[float] = None
    metrics: Optional[Dict[str, Any]] = None
    validation_metrics: Optional[Dict[str, Any]] = None
    training_examples: Optional[int] = None
    feedback_samples_used: Optional[int] = None
    training_time: Optional[float] = None
    version: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None
    # Insufficient data details
    reason: Optional[str] = None
    observed: Optional[int] = None
    required: Optional[int] = None
    # Background training
    task_id: Optional[str] = None


class CancelResponse(BaseModel):
    cancelled: bool


# =============================================================================
# PREDICTION
# =============================================================================

class PredictionResponse(BaseModel):
    riskScore: int = Field(ge=0, le=100)
    confidence: float
    reason: str
    usedML: bool
    factors: Dict[str, Any]
    patterns: Dict[str, Any]
    dataContext: Dict[str, Any]


class ModelInfoResponse(BaseModel):
    isReady: bool
    isTraining: bool
    version: int
    lastTrained: Optional[str] = None
    samples: int
    accuracy: Optional[float] = None
    precision: Optional[float] = None
    recall: Optional[float] = None
    f1Score: Optional[float] = None
    validationMetrics: Optional[Dict[str, Any]] = None
    needsRetraining: bool


# =============================================================================
# INTERVENTIONS
# =============================================================================

class InterventionCreate(CamelModel):
    prediction: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class InterventionCreated(BaseModel):
    id: str


class ResponseRecord(CamelModel):
    type: str  # struggling | fine | dismissed | self_initiated


class SessionStart(CamelModel):
    tool: str


class SessionComplete(CamelModel):
    duration: Optional[int] = None  # seconds


class RelapseEvent(CamelModel):
    relapse_at: Optional[datetime] = None
    relapse_id: Optional[str] = None


class OutcomeUpdate(BaseModel):
    marked: int
