"""
Risk Pattern Analysis

Human-readable justification for a risk score. Nothing here feeds the
classifier; these are thresholds over RAW (un-normalized) values and simple
summaries of the user's relapse history.

- Factors: flags such as lowEnergy, lateNight, purgePhase, highAnxiety.
- Patterns: where the current streak sits relative to past relapse streaks,
  share of relapses tied to evening triggers, multi-metric benefit drops over
  the trailing 3 logged days, the closest historical match, top triggers.
- Insights: history-wide summary (risk factors, timing, streak danger
  zone, benefit gaps) shown alongside the model status.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from services.risk_features import (
    BENEFIT_FIELDS,
    FEATURE_NAMES,
    UserData,
    describe_features,
    to_date,
    to_datetime,
)


# =============================================================================
# THRESHOLDS
# =============================================================================

LOW_BENEFIT = 4          # energy/focus/confidence at or below
ENERGY_DROP_ALERT = 2    # day-over-day energy drop at or above
HIGH_ANXIETY = 7
LOW_MOOD_STABILITY = 4

EVENING_START_HOUR = 20
EVENING_END_HOUR = 2     # wraps past midnight
LATE_AFTERNOON_HOURS = (17, 20)

SIMILAR_DAY_RANGE = 5
HISTORICAL_MATCH_RANGE = 7
BENEFIT_DROP_ALERT = 2
TRAILING_DAYS = 3

EVENING_TRIGGERS = {"evening", "night", "late_night", "boredom"}

STREAK_RANGES = (
    ("early", 1, 14),
    ("mid", 15, 30),
    ("late", 31, 60),
    ("veteran", 61, None),
)

TRIGGER_NAMES = {
    "stress": "Stress",
    "boredom": "Boredom",
    "loneliness": "Loneliness",
    "social_media": "Social Media",
    "evening": "Evening Hours",
    "night": "Night",
    "late_night": "Late Night",
    "home_environment": "Home Environment",
    "relationship": "Relationship",
    "lustful_thoughts": "Lustful Thoughts",
    "anxiety": "Anxiety",
}


def is_evening(hour: int) -> bool:
    return hour >= EVENING_START_HOUR or hour <= EVENING_END_HOUR


def is_late_afternoon(hour: int) -> bool:
    return LATE_AFTERNOON_HOURS[0] <= hour < LATE_AFTERNOON_HOURS[1]


# =============================================================================
# FACTORS
# =============================================================================

def build_factors(raw_vector: Sequence[float]) -> Dict[str, Any]:
    """Raw named values plus boolean flags derived from them."""
    values = describe_features(raw_vector)
    hour = int(values["hourOfDay"])

    flags = {
        "lowEnergy": values["energy"] <= LOW_BENEFIT,
        "lowFocus": values["focus"] <= LOW_BENEFIT,
        "lowConfidence": values["confidence"] <= LOW_BENEFIT,
        "energyDropped": values["energyDrop"] >= ENERGY_DROP_ALERT,
        "lateNight": is_evening(hour),
        "lateAfternoon": is_late_afternoon(hour),
        "weekend": values["isWeekend"] == 1,
        "purgePhase": values["inPurgeWindow"] == 1,
        "highAnxiety": values["anxiety"] >= HIGH_ANXIETY,
        "lowMoodStability": values["moodStability"] <= LOW_MOOD_STABILITY,
    }
    return {**values, **flags}


def active_factor_names(factors: Dict[str, Any]) -> List[str]:
    """Names of flags that fired (raw values excluded)."""
    return [k for k, v in factors.items() if k not in FEATURE_NAMES and v is True]


# =============================================================================
# PATTERNS
# =============================================================================

def _relapse_streak_lengths(user_data: UserData) -> List[int]:
    return [int(s.days) for s in user_data.relapses() if s.days]


def _range_for(day: int) -> str:
    for name, low, high in STREAK_RANGES:
        if high is None or day <= high:
            return name
    return STREAK_RANGES[-1][0]


def analyze_streak_patterns(user_data: UserData) -> Optional[Dict[str, Any]]:
    """How close is the current streak to lengths at which past relapses happened?"""
    lengths = _relapse_streak_lengths(user_data)
    if len(lengths) < 2:
        return None

    current_day = user_data.streak_day
    similar = [d for d in lengths if abs(d - current_day) <= SIMILAR_DAY_RANGE]
    current_range = _range_for(current_day)
    in_range = sum(1 for d in lengths if _range_for(d) == current_range)
    range_percentage = round(in_range / len(lengths) * 100)
    bounds = next((low, high) for name, low, high in STREAK_RANGES if name == current_range)

    return {
        "currentDay": current_day,
        "similarDayRelapses": len(similar),
        "totalRelapses": len(lengths),
        "relapsesInRange": in_range,
        "rangePercentage": range_percentage,
        "rangeDays": [bounds[0], bounds[1]],
        "isHighRiskDay": len(similar) >= 2 or range_percentage >= 40,
    }


def analyze_time_patterns(user_data: UserData, now: datetime) -> Optional[Dict[str, Any]]:
    """Share of relapses whose trigger points to evening hours."""
    relapses = [s for s in user_data.relapses() if s.trigger]
    if len(relapses) < 2:
        return None

    evening_relapses = sum(1 for s in relapses if s.trigger in EVENING_TRIGGERS)
    evening_percentage = round(evening_relapses / len(relapses) * 100)
    evening = is_evening(now.hour)

    return {
        "currentHour": now.hour,
        "isEvening": evening,
        "isLateAfternoon": is_late_afternoon(now.hour),
        "eveningRelapses": evening_relapses,
        "totalRelapses": len(relapses),
        "eveningPercentage": evening_percentage,
        "isHighRiskTime": evening and evening_percentage >= 40,
    }


def analyze_benefit_drops(user_data: UserData) -> Optional[Dict[str, Any]]:
    """Metrics that fell by BENEFIT_DROP_ALERT or more across the trailing 3 logged days."""
    days = user_data.benefit_days()
    if len(days) < TRAILING_DAYS:
        return None

    recent = days[-TRAILING_DAYS:]
    first, last = recent[0], recent[-1]
    drops = []
    for metric in ("energy", "focus", "confidence"):
        start, end = first.value(metric), last.value(metric)
        if start - end >= BENEFIT_DROP_ALERT:
            drops.append({
                "metric": metric.capitalize(),
                "from": start,
                "to": end,
                "change": start - end,
            })

    return {
        "drops": drops,
        "hasSignificantDrop": bool(drops),
        "multiMetricDrop": len(drops) >= 2,
        "daysCovered": len(recent),
    }


def find_historical_match(user_data: UserData) -> Optional[Dict[str, Any]]:
    """Most recent relapse whose streak length is within a week of the current day."""
    relapses = sorted(
        (s for s in user_data.relapses() if s.days),
        key=lambda s: to_date(s.end),
        reverse=True,
    )
    current_day = user_data.streak_day
    for relapse in relapses:
        if abs(int(relapse.days) - current_day) <= HISTORICAL_MATCH_RANGE:
            return {
                "matchDay": int(relapse.days),
                "trigger": relapse.trigger,
                "daysUntilRelapse": max(0, int(relapse.days) - current_day),
                "matchType": "day_in_streak",
            }
    return None


def format_trigger_name(trigger: str) -> str:
    return TRIGGER_NAMES.get(trigger, trigger.replace("_", " ").title())


def get_top_triggers(user_data: UserData, limit: int = 3) -> List[Dict[str, Any]]:
    relapses = [s for s in user_data.relapses() if s.trigger]
    if not relapses:
        return []
    counts = Counter(s.trigger for s in relapses)
    return [
        {
            "trigger": format_trigger_name(trigger),
            "count": count,
            "percentage": round(count / len(relapses) * 100),
        }
        for trigger, count in counts.most_common(limit)
    ]


def generate_suggestions(patterns: Dict[str, Any], factors: Dict[str, Any]) -> List[Dict[str, Any]]:
    """At most two toolkit suggestions matched to what fired."""
    suggestions = []
    time_pattern = patterns.get("time") or {}
    benefits = patterns.get("benefits") or {}
    streak = patterns.get("streak") or {}

    if time_pattern.get("isHighRiskTime") or time_pattern.get("isEvening"):
        suggestions.append({
            "focus": "Evening routine",
            "reason": "Your high-risk window",
            "tools": ["breathing", "meditation"],
        })

    if any(d["metric"] == "Energy" for d in benefits.get("drops", [])):
        suggestions.append({
            "focus": "Physical activity",
            "reason": "Counters energy drops",
            "tools": ["cold_shower", "exercise"],
        })

    if streak.get("isHighRiskDay"):
        suggestions.append({
            "focus": "Extra vigilance",
            "reason": f"Day {streak['currentDay']} is in your danger zone",
            "tools": ["timer", "affirmation"],
        })

    if factors.get("highAnxiety"):
        suggestions.append({
            "focus": "Stress management",
            "reason": "Elevated anxiety detected",
            "tools": ["breathing", "meditation"],
        })

    if not suggestions:
        suggestions.append({
            "focus": "Stay present",
            "reason": "General awareness",
            "tools": ["breathing", "timer"],
        })

    return suggestions[:2]


def analyze_patterns(user_data: UserData, factors: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """All pattern summaries for one prediction."""
    patterns = {
        "streak": analyze_streak_patterns(user_data),
        "time": analyze_time_patterns(user_data, now),
        "benefits": analyze_benefit_drops(user_data),
        "historical": find_historical_match(user_data),
        "triggers": get_top_triggers(user_data),
    }
    patterns["suggestions"] = generate_suggestions(patterns, factors)
    return patterns


def generate_reason(patterns: Dict[str, Any], factors: Dict[str, Any], risk_score: int) -> str:
    """Up to two short reasons, joined for display."""
    reasons = []
    streak = patterns.get("streak") or {}
    time_pattern = patterns.get("time") or {}
    benefits = patterns.get("benefits") or {}

    if streak.get("isHighRiskDay"):
        reasons.append(f"Day {streak['currentDay']} in your danger zone")
    if time_pattern.get("isHighRiskTime"):
        reasons.append("Evening hours (your high-risk window)")
    if benefits.get("hasSignificantDrop"):
        drop = benefits["drops"][0]
        reasons.append(f"{drop['metric']} dropped from {drop['from']:g} to {drop['to']:g}")
    if factors.get("purgePhase") or factors.get("inPurgeWindow") == 1:
        reasons.append("Currently in purge phase (days 15-45)")
    if factors.get("highAnxiety"):
        reasons.append("Elevated anxiety detected")

    if not reasons:
        reasons.append("Multiple subtle factors combined" if risk_score >= 50 else "Conditions appear stable")

    return " • ".join(reasons[:2])


# =============================================================================
# MODEL INSIGHTS
# =============================================================================

INSIGHT_MIN_RELAPSES = 2
INSIGHT_MIN_BENEFIT_DAYS = 14
RISK_FACTOR_MIN_DAYS = 7
RISK_FACTOR_WINDOW_DAYS = (1, 3)   # days before a relapse
RISK_FACTOR_LOW_VALUE = 5          # strictly below
RISK_FACTOR_MIN_SHARE = 0.3
EVENING_FACTOR_MIN_SHARE = 0.4
VULNERABILITY_MIN_RELAPSES = 3
CORRELATION_MIN_DAYS = 10
CORRELATION_MIN_DIFFERENCE = 0.5

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

FACTOR_LABELS = {
    "energy": "energy",
    "focus": "focus",
    "confidence": "confidence",
    "aura": "aura",
    "sleepQuality": "sleep",
    "workoutQuality": "workout",
}


def _relapse_time(value) -> Optional[datetime]:
    """Relapse timestamp, or None when only a calendar date was logged."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and "T" in value:
        return to_datetime(value)
    return None


def _top_risk_factors(user_data: UserData) -> List[Dict[str, Any]]:
    days = user_data.benefit_days()
    if len(days) < RISK_FACTOR_MIN_DAYS:
        return []

    relapses = user_data.relapses()
    low, high = RISK_FACTOR_WINDOW_DAYS
    factors = []
    for metric in BENEFIT_FIELDS:
        checked = dropped = 0
        for relapse in relapses:
            relapse_day = to_date(relapse.end)
            before = [d for d in days if low <= (relapse_day - to_date(d.date)).days <= high]
            if not before:
                continue
            checked += 1
            if sum(d.value(metric) for d in before) / len(before) < RISK_FACTOR_LOW_VALUE:
                dropped += 1
        if not checked:
            continue
        share = dropped / checked
        if share > RISK_FACTOR_MIN_SHARE:
            factors.append({
                "factor": metric,
                "correlation": round(share, 2),
                "description": f"Low {FACTOR_LABELS[metric]} correlates with {round(share * 100)}% of relapses",
            })

    timed = [t for t in (_relapse_time(r.end) for r in relapses) if t is not None]
    if relapses and timed:
        evening_share = sum(1 for t in timed if is_evening(t.hour)) / len(relapses)
        if evening_share > EVENING_FACTOR_MIN_SHARE:
            factors.append({
                "factor": "evening_hours",
                "correlation": round(evening_share, 2),
                "description": f"{round(evening_share * 100)}% of relapses occur in evening",
            })

    return sorted(factors, key=lambda f: f["correlation"], reverse=True)[:3]


def _temporal_patterns(user_data: UserData) -> Dict[str, Any]:
    relapses = user_data.relapses()
    timed = [t for t in (_relapse_time(r.end) for r in relapses) if t is not None]

    hour_counts = Counter(t.hour for t in timed)
    day_counts = Counter(to_date(r.end).weekday() for r in relapses)

    risky_hours = [hour for hour, count in hour_counts.most_common(3) if count >= 2]
    risky_days = [WEEKDAY_NAMES[day] for day, count in day_counts.most_common(2) if count >= 2]
    evening = sum(1 for t in timed if is_evening(t.hour))

    return {
        "riskyHours": risky_hours,
        "riskyDays": risky_days,
        "eveningPercentage": round(evening / len(relapses) * 100) if relapses else 0,
        "peakHour": risky_hours[0] if risky_hours else None,
    }


def _streak_vulnerability(user_data: UserData) -> Dict[str, Any]:
    relapses = user_data.relapses()
    if len(relapses) < VULNERABILITY_MIN_RELAPSES:
        return {"dangerZone": None, "ranges": {}}

    counts = Counter(_range_for(int(r.days or 0)) for r in relapses)
    ranges = {
        name: {"start": low, "end": high, "count": counts.get(name, 0)}
        for name, low, high in STREAK_RANGES
    }
    name, top = max(ranges.items(), key=lambda item: item[1]["count"])
    danger_zone = None
    if top["count"] >= 2:
        danger_zone = {
            "name": name,
            "start": top["start"],
            "end": top["end"],
            "count": top["count"],
            "percentage": round(top["count"] / len(relapses) * 100),
        }
    return {"dangerZone": danger_zone, "ranges": ranges}


def _benefit_correlations(user_data: UserData) -> Optional[List[Dict[str, Any]]]:
    """Metrics that sit clearly lower on relapse days than on other days."""
    days = user_data.benefit_days()
    if len(days) < CORRELATION_MIN_DAYS:
        return None

    relapse_days = {to_date(r.end) for r in user_data.relapses()}
    correlations = []
    for metric in ("energy", "focus", "confidence"):
        on_relapse = [d.value(metric) for d in days if to_date(d.date) in relapse_days]
        normal = [d.value(metric) for d in days if to_date(d.date) not in relapse_days]
        if not on_relapse or not normal:
            continue
        relapse_avg = sum(on_relapse) / len(on_relapse)
        normal_avg = sum(normal) / len(normal)
        difference = normal_avg - relapse_avg
        if difference > CORRELATION_MIN_DIFFERENCE:
            correlations.append({
                "metric": metric,
                "normalAvg": round(normal_avg, 1),
                "relapseAvg": round(relapse_avg, 1),
                "difference": round(difference, 1),
            })

    return sorted(correlations, key=lambda c: c["difference"], reverse=True)


def extract_model_insights(user_data: UserData) -> Optional[Dict[str, Any]]:
    """
    What the user's history says about their relapses, independent of the
    classifier. None until there are 2 relapses and 14 logged days.

    Relapses logged with a date only (no time) count toward day-of-week and
    streak patterns but not toward hour-of-day ones.
    """
    if (
        len(user_data.relapses()) < INSIGHT_MIN_RELAPSES
        or len(user_data.benefit_days()) < INSIGHT_MIN_BENEFIT_DAYS
    ):
        return None

    return {
        "topRiskFactors": _top_risk_factors(user_data),
        "temporalPatterns": _temporal_patterns(user_data),
        "streakVulnerability": _streak_vulnerability(user_data),
        "benefitCorrelations": _benefit_correlations(user_data),
        "triggerAnalysis": get_top_triggers(user_data),
    }
