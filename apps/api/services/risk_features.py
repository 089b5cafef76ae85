"""
Risk Feature Extraction

Turns one day of self-reported tracking into the fixed 12-element vector the
risk classifier consumes, and fits/applies z-score normalization over those
vectors.

Vector layout (order is part of the persisted model contract):

    0  energy               benefit log, 0-10
    1  focus                benefit log, 0-10
    2  confidence           benefit log, 0-10
    3  energyDrop           previous energy - current energy
    4  hourOfDay            0-23, from the as-of timestamp
    5  isWeekend            0/1
    6  streakDay            live streak counter (what the user sees)
    7  inPurgeWindow        0/1, streakDay within [15, 45]
    8  anxiety              emotional check-in, 1-10
    9  moodStability        emotional check-in, 1-10
    10 mentalClarity        emotional check-in, 1-10
    11 emotionalProcessing  emotional check-in, 1-10

Every scalar goes through FIELD_SPECS. Missing or invalid values default
silently; extraction never raises.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Sequence, Union
import logging
import math

import numpy as np

from core.exceptions import MissingNormalizationStats

logger = logging.getLogger(__name__)


# =============================================================================
# FIELD VALIDATION TABLE
# =============================================================================

@dataclass(frozen=True)
class FieldSpec:
    """Domain bounds and default for one scalar input or feature."""
    name: str
    low: float
    high: float
    default: float

    def clean(self, value: Any) -> float:
        """Return value as float if valid and in range, else the default."""
        if value is None or isinstance(value, bool):
            return self.default
        try:
            number = float(value)
        except (TypeError, ValueError):
            return self.default
        if not math.isfinite(number) or number < self.low or number > self.high:
            return self.default
        return number


MAX_STREAK_DAYS = 36500

FIELD_SPECS: Dict[str, FieldSpec] = {
    spec.name: spec for spec in (
        # Benefit tracking (daily)
        FieldSpec("energy", 0, 10, 5),
        FieldSpec("focus", 0, 10, 5),
        FieldSpec("confidence", 0, 10, 5),
        FieldSpec("aura", 0, 10, 5),
        FieldSpec("sleepQuality", 0, 10, 5),
        FieldSpec("workoutQuality", 0, 10, 5),
        # Derived
        FieldSpec("energyDrop", -10, 10, 0),
        FieldSpec("hourOfDay", 0, 23, 0),
        FieldSpec("isWeekend", 0, 1, 0),
        FieldSpec("streakDay", 0, MAX_STREAK_DAYS, 0),
        FieldSpec("inPurgeWindow", 0, 1, 0),
        # Emotional check-in (sparse)
        FieldSpec("anxiety", 1, 10, 5),
        FieldSpec("moodStability", 1, 10, 5),
        FieldSpec("mentalClarity", 1, 10, 5),
        FieldSpec("emotionalProcessing", 1, 10, 5),
    )
}

FEATURE_NAMES = (
    "energy",
    "focus",
    "confidence",
    "energyDrop",
    "hourOfDay",
    "isWeekend",
    "streakDay",
    "inPurgeWindow",
    "anxiety",
    "moodStability",
    "mentalClarity",
    "emotionalProcessing",
)
NUM_FEATURES = len(FEATURE_NAMES)

BENEFIT_FIELDS = ("energy", "focus", "confidence", "aura", "sleepQuality", "workoutQuality")
EMOTIONAL_FIELDS = ("anxiety", "moodStability", "mentalClarity", "emotionalProcessing")

PURGE_WINDOW = (15, 45)
EMOTIONAL_LOOKBACK_DAYS = 3

# Columns with std below this are treated as constant (std := 1.0).
STD_FLOOR = 1e-6


# =============================================================================
# DATA STRUCTURES
# =============================================================================

DateLike = Union[date, datetime, str, None]


def to_date(value: DateLike) -> Optional[date]:
    """Coerce a date/datetime/ISO string to a calendar date. None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        return None


def to_datetime(value: DateLike) -> Optional[datetime]:
    """Coerce to a datetime. Plain dates become midnight."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class BenefitEntry:
    """One day of benefit tracking. Values are raw; cleaning happens at extraction."""
    date: DateLike
    energy: Optional[float] = None
    focus: Optional[float] = None
    confidence: Optional[float] = None
    aura: Optional[float] = None
    sleep_quality: Optional[float] = None
    workout_quality: Optional[float] = None

    def value(self, name: str) -> float:
        raw = {
            "energy": self.energy,
            "focus": self.focus,
            "confidence": self.confidence,
            "aura": self.aura,
            "sleepQuality": self.sleep_quality,
            "workoutQuality": self.workout_quality,
        }.get(name)
        return FIELD_SPECS[name].clean(raw)


@dataclass
class EmotionalEntry:
    """Emotional check-in. Sparser than benefit tracking."""
    date: DateLike
    anxiety: Optional[float] = None
    mood_stability: Optional[float] = None
    mental_clarity: Optional[float] = None
    emotional_processing: Optional[float] = None

    def value(self, name: str) -> float:
        raw = {
            "anxiety": self.anxiety,
            "moodStability": self.mood_stability,
            "mentalClarity": self.mental_clarity,
            "emotionalProcessing": self.emotional_processing,
        }.get(name)
        return FIELD_SPECS[name].clean(raw)


@dataclass
class StreakRecord:
    """A streak. end=None marks the active one; reason='relapse' is the labeled event."""
    start: DateLike
    end: DateLike = None
    days: int = 0
    reason: Optional[str] = None
    trigger: Optional[str] = None

    @property
    def is_relapse(self) -> bool:
        return self.reason == "relapse"


@dataclass
class UserData:
    """Read-only snapshot handed in by the user-data provider."""
    benefit_tracking: List[BenefitEntry] = field(default_factory=list)
    emotional_tracking: List[EmotionalEntry] = field(default_factory=list)
    streak_history: List[StreakRecord] = field(default_factory=list)
    current_streak: int = 0

    def benefit_days(self) -> List[BenefitEntry]:
        """
        Benefit entries ordered by day, one per calendar day.

        Same-day edits overwrite: the last entry supplied for a day wins.
        Entries with an unparseable date are dropped.
        """
        by_day: Dict[date, BenefitEntry] = {}
        for entry in self.benefit_tracking:
            day = to_date(entry.date)
            if day is None:
                logger.debug(f"Dropping benefit entry with invalid date: {entry.date!r}")
                continue
            by_day[day] = entry
        return [by_day[d] for d in sorted(by_day)]

    def relapses(self) -> List[StreakRecord]:
        """Streak records that ended in a relapse (end date present)."""
        return [s for s in self.streak_history if s.is_relapse and to_date(s.end) is not None]

    @property
    def streak_day(self) -> int:
        return int(FIELD_SPECS["streakDay"].clean(self.current_streak))


@dataclass
class NormalizationStats:
    """Per-column z-score statistics, fit once per training run."""
    means: List[float]
    stds: List[float]

    def is_valid(self) -> bool:
        return (
            len(self.means) == NUM_FEATURES
            and len(self.stds) == NUM_FEATURES
            and all(math.isfinite(m) for m in self.means)
            and all(math.isfinite(s) and s > 0 for s in self.stds)
        )

    def to_dict(self) -> Dict[str, List[float]]:
        return {"means": list(self.means), "stds": list(self.stds)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["NormalizationStats"]:
        if not data:
            return None
        try:
            stats = cls(
                means=[float(m) for m in data["means"]],
                stds=[float(s) for s in data["stds"]],
            )
        except (KeyError, TypeError, ValueError):
            return None
        return stats if stats.is_valid() else None


# =============================================================================
# FEATURE EXTRACTION
# =============================================================================

def resolve_emotional_entry(
    entries: Sequence[EmotionalEntry],
    target_day: date,
    lookback_days: int = EMOTIONAL_LOOKBACK_DAYS,
) -> Optional[EmotionalEntry]:
    """
    Pick the emotional check-in for a day.

    Exact date match wins; otherwise the closest earlier entry no more than
    `lookback_days` before. Later entries are never used.
    """
    best: Optional[EmotionalEntry] = None
    best_delta = lookback_days + 1
    for entry in entries:
        day = to_date(entry.date)
        if day is None:
            continue
        delta = (target_day - day).days
        if delta == 0:
            # Last exact match wins, mirroring same-day overwrite for benefits
            best, best_delta = entry, 0
        elif 0 < delta <= lookback_days and delta < best_delta:
            best, best_delta = entry, delta
    return best


def in_purge_window(streak_day: float) -> bool:
    return PURGE_WINDOW[0] <= streak_day <= PURGE_WINDOW[1]


def extract_features(
    current: Optional[BenefitEntry],
    previous: Optional[BenefitEntry],
    as_of: DateLike,
    context: UserData,
) -> List[float]:
    """
    Build the 12-element feature vector for one day.

    Args:
        current: Benefit entry for the day being scored
        previous: Benefit entry for the prior logged day (may be None)
        as_of: Timestamp the vector describes; drives hour/weekend/emotional lookup
        context: User snapshot providing the live streak and emotional check-ins

    Returns:
        List of 12 finite floats, each within its FIELD_SPECS domain
    """
    when = to_datetime(as_of)
    if when is None:
        when = to_datetime(current.date) if current is not None else None
    if when is None:
        when = datetime.combine(date.today(), time())

    def benefit(entry: Optional[BenefitEntry], name: str) -> float:
        return entry.value(name) if entry is not None else FIELD_SPECS[name].default

    energy = benefit(current, "energy")
    focus = benefit(current, "focus")
    confidence = benefit(current, "confidence")
    energy_drop = FIELD_SPECS["energyDrop"].clean(benefit(previous, "energy") - energy)

    hour = float(when.hour)
    is_weekend = 1.0 if when.weekday() >= 5 else 0.0

    streak_day = float(context.streak_day)
    purge = 1.0 if in_purge_window(streak_day) else 0.0

    emotional = resolve_emotional_entry(context.emotional_tracking or [], when.date())
    emotional_values = [
        emotional.value(name) if emotional is not None else FIELD_SPECS[name].default
        for name in EMOTIONAL_FIELDS
    ]

    vector = [
        energy,
        focus,
        confidence,
        energy_drop,
        hour,
        is_weekend,
        streak_day,
        purge,
        *emotional_values,
    ]
    # Final pass through the table guarantees domain and finiteness
    return [FIELD_SPECS[name].clean(v) for name, v in zip(FEATURE_NAMES, vector)]


def describe_features(vector: Sequence[float]) -> Dict[str, float]:
    """Name each element of a raw feature vector."""
    return {name: float(value) for name, value in zip(FEATURE_NAMES, vector)}


# =============================================================================
# NORMALIZATION
# =============================================================================

def fit_normalization(vectors: Sequence[Sequence[float]]) -> NormalizationStats:
    """
    Population mean/std per column over the full training matrix.

    Near-constant columns get std 1.0 so they normalize to 0 at training
    time and stay bounded at inference time.
    """
    matrix = np.asarray(vectors, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[0] == 0 or matrix.shape[1] != NUM_FEATURES:
        raise ValueError(f"Expected an (N, {NUM_FEATURES}) matrix, got shape {matrix.shape}")

    means = matrix.mean(axis=0)
    stds = matrix.std(axis=0)  # ddof=0: population std
    stds = np.where(stds < STD_FLOOR, 1.0, stds)

    return NormalizationStats(means=means.tolist(), stds=stds.tolist())


def apply_normalization(vector: Sequence[float], stats: NormalizationStats) -> List[float]:
    """Elementwise (x - mean) / std."""
    if stats is None or not stats.is_valid():
        raise MissingNormalizationStats("Normalization statistics are missing or malformed")
    values = np.asarray(vector, dtype=np.float64)
    normalized = (values - np.asarray(stats.means)) / np.asarray(stats.stds)
    return normalized.tolist()


def apply_normalization_many(
    vectors: Sequence[Sequence[float]],
    stats: NormalizationStats,
) -> List[List[float]]:
    return [apply_normalization(v, stats) for v in vectors]
