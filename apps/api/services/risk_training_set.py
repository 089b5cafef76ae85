"""
Risk Training Set

Walks a user's history into labeled samples and weights them for training.

- One sample per consecutive pair of logged benefit days (N days -> N-1 samples).
- Label 1 iff a relapse StreakRecord ended on that exact calendar day.
- Class imbalance is handled with inverse-frequency weights (capped).
- Past prediction errors recorded in the intervention ledger boost the
  weight of samples near them. Labels are never changed and no sample is
  dropped.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from core.exceptions import InsufficientDataError
from services.risk_features import (
    UserData,
    extract_features,
    to_date,
    to_datetime,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

# Minimum viable dataset
MIN_BENEFIT_DAYS = 14
MIN_RELAPSES = 2
MIN_SAMPLES = 10

# Class balancing
MAX_CLASS_WEIGHT = 10.0

# Outcome feedback
FEEDBACK_BOOST = 1.5
FEEDBACK_MATCH_HOURS = 24
HIGH_RISK_THRESHOLD = 50  # riskScore at or above this counted as "predicted relapse"


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class TrainingSample:
    """One labeled day. `date` is required: feedback matching depends on it."""
    features: List[float]
    label: int
    date: date


@dataclass
class ClassWeights:
    weight0: float
    weight1: float

    def to_dict(self) -> Dict[str, float]:
        return {"weight0": round(self.weight0, 4), "weight1": round(self.weight1, 4)}


@dataclass
class FeedbackEntry:
    """Resolved intervention outcome, flattened for the weighting step."""
    created_at: datetime
    risk_score: Optional[float]
    outcome: str

    @property
    def was_false_positive(self) -> bool:
        return (
            self.risk_score is not None
            and self.risk_score >= HIGH_RISK_THRESHOLD
            and self.outcome == "success"
        )

    @property
    def was_false_negative(self) -> bool:
        return (
            self.risk_score is not None
            and self.risk_score < HIGH_RISK_THRESHOLD
            and self.outcome == "relapse"
        )

    @property
    def was_error(self) -> bool:
        return self.was_false_positive or self.was_false_negative


# =============================================================================
# SAMPLE BUILDING
# =============================================================================

def relapse_dates(user_data: UserData) -> set:
    """Calendar days on which a relapse ended a streak. A set, so no day counts twice."""
    return {to_date(record.end) for record in user_data.relapses()}


def build_training_samples(user_data: UserData) -> List[TrainingSample]:
    """
    Build one sample per consecutive benefit-day pair.

    Each sample describes the later day of the pair, using the earlier day
    only for the energy drop.
    """
    days = user_data.benefit_days()
    if len(days) < 2:
        return []

    relapse_days = relapse_dates(user_data)
    samples = []
    for previous, current in zip(days, days[1:]):
        day = to_date(current.date)
        features = extract_features(current, previous, to_datetime(current.date), user_data)
        samples.append(TrainingSample(
            features=features,
            label=1 if day in relapse_days else 0,
            date=day,
        ))

    positives = sum(s.label for s in samples)
    logger.debug(f"Built {len(samples)} training samples ({positives} relapse days)")
    return samples


def check_minimum_data(user_data: UserData, samples: Sequence[TrainingSample]) -> None:
    """
    Enforce the minimum viable dataset before any training state is touched.

    Raises:
        InsufficientDataError: with the first failing reason
    """
    benefit_days = len(user_data.benefit_days())
    if benefit_days < MIN_BENEFIT_DAYS:
        raise InsufficientDataError("insufficient_benefit_days", benefit_days, MIN_BENEFIT_DAYS)

    relapse_count = len(user_data.relapses())
    if relapse_count < MIN_RELAPSES:
        raise InsufficientDataError("insufficient_relapses", relapse_count, MIN_RELAPSES)

    if len(samples) < MIN_SAMPLES:
        raise InsufficientDataError("insufficient_samples", len(samples), MIN_SAMPLES)


def data_quality_report(user_data: UserData) -> Dict[str, Any]:
    """
    Readiness of a history for training: a 0-100 score and a hint.

    canTrain agrees with check_minimum_data (MIN_BENEFIT_DAYS logged days
    always yield at least MIN_SAMPLES samples).
    """
    benefit_days = len(user_data.benefit_days())
    emotional_days = len({
        day for day in (to_date(e.date) for e in user_data.emotional_tracking) if day is not None
    })
    relapse_count = len(user_data.relapses())
    current_streak = user_data.streak_day

    has_minimum_data = benefit_days >= MIN_BENEFIT_DAYS
    has_relapse_data = relapse_count >= MIN_RELAPSES
    has_emotional_data = emotional_days > 0
    can_train = has_minimum_data and has_relapse_data

    quality_score = (
        (40 if has_minimum_data else 0)
        + (30 if has_relapse_data else 0)
        + (20 if has_emotional_data else 0)
        + (10 if current_streak > 0 else 0)
    )

    if not has_minimum_data:
        recommendation = f"Keep tracking daily benefits. Need {MIN_BENEFIT_DAYS}+ days for training."
    elif not has_relapse_data:
        recommendation = f"Need at least {MIN_RELAPSES} logged relapses to learn risk patterns."
    elif not has_emotional_data:
        recommendation = "Model can be trained. Add emotional check-ins for better predictions."
    elif quality_score >= 80:
        recommendation = "Excellent data quality! Model will perform well."
    else:
        recommendation = "Good data quality. Model can be trained."

    return {
        "qualityScore": quality_score,
        "benefitDays": benefit_days,
        "emotionalDays": emotional_days,
        "relapseCount": relapse_count,
        "currentStreak": current_streak,
        "hasMinimumData": has_minimum_data,
        "hasRelapseData": has_relapse_data,
        "hasEmotionalData": has_emotional_data,
        "canTrain": can_train,
        "recommendation": recommendation,
    }


# =============================================================================
# CLASS BALANCING
# =============================================================================

def compute_class_weights(labels: Sequence[int]) -> ClassWeights:
    """
    Inverse class frequency: weight_c = N / (2 * count_c), capped.

    With only one class present there is nothing to balance, so both
    weights are 1.0.
    """
    total = len(labels)
    positives = sum(1 for label in labels if label == 1)
    negatives = total - positives

    if positives == 0 or negatives == 0:
        return ClassWeights(weight0=1.0, weight1=1.0)

    return ClassWeights(
        weight0=min(total / (2 * negatives), MAX_CLASS_WEIGHT),
        weight1=min(total / (2 * positives), MAX_CLASS_WEIGHT),
    )


def compute_sample_weights(labels: Sequence[int], class_weights: ClassWeights) -> List[float]:
    return [class_weights.weight1 if label == 1 else class_weights.weight0 for label in labels]


def apply_feedback_weights(
    sample_weights: Sequence[float],
    feedback: Sequence[FeedbackEntry],
    sample_dates: Sequence[date],
) -> Tuple[List[float], int]:
    """
    Boost samples dated within 24h of a mispredicted intervention.

    Each false positive / false negative multiplies the weight of every
    matching sample by FEEDBACK_BOOST; boosts from separate interventions
    compound.

    Returns:
        (new weights, number of feedback entries that boosted at least one sample)
    """
    weights = list(sample_weights)
    if not feedback:
        return weights, 0

    sample_times = [to_datetime(d) for d in sample_dates]
    used = 0

    for entry in feedback:
        if not entry.was_error:
            continue
        created = _naive(entry.created_at)
        matched = False
        for idx, sample_time in enumerate(sample_times):
            if sample_time is None:
                continue
            hours_diff = abs((created - sample_time).total_seconds()) / 3600.0
            if hours_diff <= FEEDBACK_MATCH_HOURS:
                weights[idx] *= FEEDBACK_BOOST
                matched = True
        if matched:
            used += 1

    if used:
        logger.info(f"Outcome feedback boosted samples from {used} mispredicted interventions")
    return weights, used


def _naive(value: datetime) -> datetime:
    """Sample dates are naive local days; compare against naive timestamps."""
    return value.replace(tzinfo=None) if value.tzinfo is not None else value
