"""
Anonymized Aggregate Submission

Builds a privacy-preserving summary of one user's patterns after a
successful training run and posts it to an opt-in collection endpoint.

PRIVACY: the payload never contains user ids, dates, or free text. Streak
lengths are bucketed into a histogram; everything else is an average, a
ratio or a count.

Submission is best-effort. Failures raise AggregateSubmissionError inside
the sink and are only logged by the background submitter; a training
result never depends on delivery. At most one payload per user is queued
every 24 hours, tracked in the aggregate_submission table.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID
import logging
import threading

import requests
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import AggregateSubmissionError
from models import AggregateSubmission
from services.risk_features import (
    UserData,
    resolve_emotional_entry,
    to_date,
)
from services.risk_patterns import EVENING_TRIGGERS, HIGH_ANXIETY

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

SCHEMA_VERSION = 1

# Below these, the summary is too thin to be useful to anyone
MIN_RELAPSES_TO_SHARE = 2
MIN_DAYS_TO_SHARE = 14
MIN_DAYS_FOR_BENEFIT_AVERAGES = 3
MIN_DAYS_FOR_CORRELATIONS = 7

DAYS_BEFORE_RELAPSE = 3
LOW_BENEFIT_CUTOFF = 4  # strictly below

MAX_TOTAL_RELAPSES = 9999
MAX_TOTAL_DAYS = 99999

SUBMISSION_COOLDOWN = timedelta(hours=24)

STREAK_BUCKETS = (
    ("1-7", 1, 7),
    ("8-14", 8, 14),
    ("15-30", 15, 30),
    ("31-60", 31, 60),
    ("61-90", 61, 90),
    ("90+", 91, None),
)

# Benefit field -> payload key
AVERAGED_BENEFITS = {
    "energy": "energy",
    "focus": "focus",
    "confidence": "confidence",
    "aura": "aura",
    "sleepQuality": "sleep",
    "workoutQuality": "workout",
}

ALLOWED_KEYS = frozenset({
    "streakLengthHistogram",
    "avgBenefitsBeforeRelapse",
    "riskFactorCorrelations",
    "totalRelapses",
    "totalDaysTracked",
    "modelMetrics",
    "schemaVersion",
})
FORBIDDEN_KEYS = frozenset({"userId", "user_id", "email", "username", "dates", "date", "journalContent"})


# =============================================================================
# PAYLOAD
# =============================================================================

def streak_length_histogram(user_data: UserData) -> Dict[str, int]:
    """Counts of relapse streak lengths per bucket. Lengths of 0 are skipped."""
    histogram = {name: 0 for name, _, _ in STREAK_BUCKETS}
    for record in user_data.relapses():
        days = int(record.days or 0)
        if days <= 0:
            continue
        for name, low, high in STREAK_BUCKETS:
            if days >= low and (high is None or days <= high):
                histogram[name] += 1
                break
    return histogram


def average_benefits_before_relapse(user_data: UserData) -> Optional[Dict[str, float]]:
    """Mean benefit levels over the 3 days up to and including each relapse day."""
    days = user_data.benefit_days()
    relapses = user_data.relapses()
    if len(days) < MIN_DAYS_FOR_BENEFIT_AVERAGES or not relapses:
        return None

    totals = {key: 0.0 for key in AVERAGED_BENEFITS.values()}
    counts = {key: 0 for key in AVERAGED_BENEFITS.values()}

    for relapse in relapses:
        relapse_day = to_date(relapse.end)
        for entry in days:
            delta = (relapse_day - to_date(entry.date)).days
            if 0 <= delta <= DAYS_BEFORE_RELAPSE:
                for field_name, key in AVERAGED_BENEFITS.items():
                    totals[key] += entry.value(field_name)
                    counts[key] += 1

    averages = {
        key: round(totals[key] / counts[key], 2)
        for key in totals
        if counts[key]
    }
    return averages or None


def risk_factor_correlations(user_data: UserData) -> Optional[Dict[str, float]]:
    """
    Share of relapses (0-1) that coincided with each risk factor.

    evening: trigger points at evening hours
    weekend: relapse day fell on Saturday/Sunday
    lowEnergy / lowFocus: logged value below 4 on the relapse day
    emotionalLoad: anxiety at or above 7 in the check-in resolved for that day
    """
    days = user_data.benefit_days()
    relapses = user_data.relapses()
    if len(days) < MIN_DAYS_FOR_CORRELATIONS or not relapses:
        return None

    by_day = {to_date(entry.date): entry for entry in days}
    counts = {"evening": 0, "weekend": 0, "lowEnergy": 0, "lowFocus": 0, "emotionalLoad": 0}

    for relapse in relapses:
        relapse_day = to_date(relapse.end)
        if relapse.trigger in EVENING_TRIGGERS:
            counts["evening"] += 1
        if relapse_day.weekday() >= 5:
            counts["weekend"] += 1

        entry = by_day.get(relapse_day)
        if entry is not None:
            if entry.value("energy") < LOW_BENEFIT_CUTOFF:
                counts["lowEnergy"] += 1
            if entry.value("focus") < LOW_BENEFIT_CUTOFF:
                counts["lowFocus"] += 1

        emotional = resolve_emotional_entry(user_data.emotional_tracking, relapse_day)
        if emotional is not None and emotional.value("anxiety") >= HIGH_ANXIETY:
            counts["emotionalLoad"] += 1

    total = len(relapses)
    return {key: round(min(count / total, 1.0), 3) for key, count in counts.items()}


def _model_metrics(metrics: Optional[Dict[str, Any]]) -> Optional[Dict[str, float]]:
    if not metrics:
        return None
    cleaned = {}
    for key in ("precision", "recall", "f1Score", "accuracy"):
        value = metrics.get(key)
        if isinstance(value, (int, float)) and 0 <= value <= 1:
            cleaned[key] = round(float(value), 3)
    return cleaned or None


def build_aggregate_payload(user_data: UserData, metrics: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Anonymized summary of one user's history and model quality.

    Args:
        user_data: The snapshot the model was just trained on
        metrics: EvaluationMetrics.to_dict() from that run (optional)
    """
    payload = {
        "streakLengthHistogram": streak_length_histogram(user_data),
        "avgBenefitsBeforeRelapse": average_benefits_before_relapse(user_data),
        "riskFactorCorrelations": risk_factor_correlations(user_data),
        "totalRelapses": min(len(user_data.relapses()), MAX_TOTAL_RELAPSES),
        "totalDaysTracked": min(len(user_data.benefit_days()), MAX_TOTAL_DAYS),
        "modelMetrics": _model_metrics(metrics),
        "schemaVersion": SCHEMA_VERSION,
    }
    validate_payload(payload)
    return payload


def validate_payload(payload: Dict[str, Any]) -> None:
    """
    Raises:
        AggregateSubmissionError: if any key is outside the allowed set
    """
    leaked = set(payload) & FORBIDDEN_KEYS
    if leaked:
        raise AggregateSubmissionError(f"Payload contains identifying fields: {sorted(leaked)}")
    unexpected = set(payload) - ALLOWED_KEYS
    if unexpected:
        raise AggregateSubmissionError(f"Payload contains unexpected fields: {sorted(unexpected)}")


def is_worth_sharing(payload: Dict[str, Any]) -> bool:
    return (
        payload["totalRelapses"] >= MIN_RELAPSES_TO_SHARE
        and payload["totalDaysTracked"] >= MIN_DAYS_TO_SHARE
    )


# =============================================================================
# SINK
# =============================================================================

class AggregateSink:
    """HTTP delivery of one payload. Holds no per-user state."""

    def __init__(self, url: Optional[str] = None, timeout: Optional[int] = None):
        self.url = url if url is not None else settings.AGGREGATE_SINK_URL
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_API_TIMEOUT

    def submit(self, payload: Dict[str, Any]) -> bool:
        """
        Post the payload.

        Returns:
            True if delivered, False if skipped (no URL, too little data)

        Raises:
            AggregateSubmissionError: on transport or HTTP errors
        """
        if not self.url:
            logger.debug("Aggregate sharing: no sink URL configured, skipping")
            return False
        if not is_worth_sharing(payload):
            logger.info("Aggregate sharing: insufficient data for useful patterns")
            return False

        validate_payload(payload)
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise AggregateSubmissionError(f"Aggregate submission failed: {e}") from e

        logger.info(
            f"Aggregate patterns submitted ({payload['totalRelapses']} relapses, "
            f"{payload['totalDaysTracked']} days)"
        )
        return True


# =============================================================================
# COOLDOWN
# =============================================================================

def _naive_utc(value: Optional[datetime]) -> datetime:
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def last_submission_at(db: Session, user_id: UUID) -> Optional[datetime]:
    record = db.get(AggregateSubmission, user_id)
    return record.last_submitted_at if record else None


def can_submit(db: Session, user_id: UUID, now: Optional[datetime] = None) -> bool:
    """False while the user's last submission is less than 24h old."""
    last = last_submission_at(db, user_id)
    if last is None:
        return True
    return _naive_utc(now) - _naive_utc(last) >= SUBMISSION_COOLDOWN


def record_submission(db: Session, user_id: UUID, now: Optional[datetime] = None) -> None:
    """Start the user's cooldown. Recorded when a payload is queued for delivery."""
    when = _naive_utc(now)
    record = db.get(AggregateSubmission, user_id)
    if record is None:
        db.add(AggregateSubmission(user_id=user_id, last_submitted_at=when))
    else:
        record.last_submitted_at = when
    db.commit()


# =============================================================================
# BACKGROUND DELIVERY
# =============================================================================

class AggregateSubmitter:
    """
    Delivers payloads on one background thread that outlives any request.

    Callers get a Future back and never wait on it; pending deliveries are
    flushed by the interpreter at exit.
    """

    def __init__(self, sink: Optional[AggregateSink] = None):
        self.sink = sink or AggregateSink()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="aggregate-submit")

    @property
    def enabled(self) -> bool:
        return bool(self.sink.url)

    def submit(self, payload: Dict[str, Any]) -> Future:
        return self._executor.submit(self._deliver, payload)

    def _deliver(self, payload: Dict[str, Any]) -> bool:
        try:
            return self.sink.submit(payload)
        except AggregateSubmissionError as e:
            logger.warning(f"Aggregate submission failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected aggregate submission error: {e}", exc_info=True)
        return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


_submitter: Optional[AggregateSubmitter] = None
_submitter_lock = threading.Lock()


def get_aggregate_submitter() -> AggregateSubmitter:
    """Process-wide submitter (created on first use)."""
    global _submitter
    with _submitter_lock:
        if _submitter is None:
            _submitter = AggregateSubmitter()
        return _submitter
