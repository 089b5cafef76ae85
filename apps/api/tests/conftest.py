"""
Pytest configuration and fixtures

Every test gets its own in-memory SQLite database, created from the ORM
metadata and dropped afterwards. Nothing persists between tests.
"""
import pytest
import sys
import os
from uuid import uuid4
from datetime import date, timedelta

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Never touch the on-device database file from tests
os.environ.setdefault("DATABASE_URL", "sqlite://")
# No Redis in tests: training locks fall back to the in-process registry
os.environ["REDIS_URL"] = ""

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.database import Base, init_db  # noqa: E402
from services.risk_features import (  # noqa: E402
    BenefitEntry,
    EmotionalEntry,
    StreakRecord,
    UserData,
)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Fresh session on an empty schema."""
    session = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture
def user_id():
    return uuid4()


# =============================================================================
# USER DATA
# =============================================================================

START_DAY = date(2024, 1, 1)  # Monday
TRACKED_DAYS = 20
RELAPSE_DAYS = (8, 16)  # day-of-month of the two relapses


def _iso(day: date) -> str:
    return day.isoformat()


def history_rows():
    """
    Twenty days of tracking with relapses on Jan 8 and Jan 16.

    Benefits sag on and before relapse days so there is something to learn.
    Returned as plain dicts (camelCase) so API tests can post them as JSON.
    """
    benefits = []
    for offset in range(TRACKED_DAYS):
        day = START_DAY + timedelta(days=offset)
        low = day.day in RELAPSE_DAYS
        dipping = day.day + 1 in RELAPSE_DAYS
        energy = 3 if low else (5 if dipping else 7)
        benefits.append({
            "date": _iso(day),
            "energy": energy,
            "focus": 3 if low else 7,
            "confidence": 4 if low else 7,
            "aura": 6,
            "sleepQuality": 5 if low else 7,
            "workoutQuality": 6,
        })

    emotional = [
        {"date": "2024-01-07", "anxiety": 8, "moodStability": 3, "mentalClarity": 4, "emotionalProcessing": 4},
        {"date": "2024-01-12", "anxiety": 3, "moodStability": 8, "mentalClarity": 7, "emotionalProcessing": 7},
        {"date": "2024-01-16", "anxiety": 9, "moodStability": 2, "mentalClarity": 3, "emotionalProcessing": 3},
    ]

    streaks = [
        {"start": "2023-12-25", "end": "2024-01-08", "days": 14, "reason": "relapse", "trigger": "evening"},
        {"start": "2024-01-08", "end": "2024-01-16", "days": 8, "reason": "relapse", "trigger": "stress"},
        {"start": "2024-01-16", "end": None, "days": 4, "reason": None, "trigger": None},
    ]

    return {
        "benefitTracking": benefits,
        "emotionalTracking": emotional,
        "streakHistory": streaks,
        "currentStreak": 4,
    }


def to_user_data(rows) -> UserData:
    return UserData(
        benefit_tracking=[
            BenefitEntry(
                date=b["date"],
                energy=b.get("energy"),
                focus=b.get("focus"),
                confidence=b.get("confidence"),
                aura=b.get("aura"),
                sleep_quality=b.get("sleepQuality"),
                workout_quality=b.get("workoutQuality"),
            )
            for b in rows["benefitTracking"]
        ],
        emotional_tracking=[
            EmotionalEntry(
                date=e["date"],
                anxiety=e.get("anxiety"),
                mood_stability=e.get("moodStability"),
                mental_clarity=e.get("mentalClarity"),
                emotional_processing=e.get("emotionalProcessing"),
            )
            for e in rows["emotionalTracking"]
        ],
        streak_history=[StreakRecord(**s) for s in rows["streakHistory"]],
        current_streak=rows["currentStreak"],
    )


@pytest.fixture
def history_json():
    return history_rows()


@pytest.fixture
def user_data():
    return to_user_data(history_rows())
