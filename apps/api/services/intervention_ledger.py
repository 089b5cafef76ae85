"""
Intervention Ledger

Tracks risk alerts -> user response -> toolkit session -> outcome, per user,
and feeds resolved outcomes back into the next training run.

Lifecycle of one intervention:

    created (pending)
      -> responded: struggling | fine | dismissed | self_initiated   (optional)
      -> session started -> session completed(duration)              (optional)
      -> outcome: success | relapse                                  (terminal)

Outcome rules (48h window from creation):
- A relapse logged 0-48h after creation marks the intervention 'relapse'.
- A pending intervention whose window has fully elapsed becomes 'success'.
- Terminal outcomes are never revisited. Rows are never deleted.

Usage:
    ledger = InterventionLedger(db, user_id)
    intervention_id = ledger.create_intervention(prediction)
    ledger.record_response(intervention_id, "struggling")
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging
import uuid

from sqlalchemy.orm import Session

from core.exceptions import InterventionNotFound, InvalidInterventionUpdate
from models import Intervention
from services.risk_training_set import FeedbackEntry

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

OUTCOME_WINDOW_HOURS = 48
MIN_TOOL_USES = 2

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_RELAPSE = "relapse"

RESPONSE_TYPES = {"struggling", "fine", "dismissed", "self_initiated"}
IGNORED_RESPONSES = {"fine", "dismissed"}


def utcnow() -> datetime:
    """Naive UTC; the ledger stores naive UTC timestamps throughout."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


# =============================================================================
# LEDGER
# =============================================================================

class InterventionLedger:
    """Append-only intervention record for one user."""

    def __init__(self, db: Session, user_id: UUID):
        self.db = db
        self.user_id = user_id

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _query(self):
        return self.db.query(Intervention).filter(Intervention.user_id == self.user_id)

    def _pending(self) -> List[Intervention]:
        return self._query().filter(Intervention.outcome_status == STATUS_PENDING).all()

    def get_intervention(self, intervention_id: str) -> Optional[Intervention]:
        return self._query().filter(Intervention.id == intervention_id).first()

    def _require(self, intervention_id: str) -> Intervention:
        intervention = self.get_intervention(intervention_id)
        if intervention is None:
            raise InterventionNotFound(intervention_id)
        return intervention

    def list_interventions(self) -> List[Intervention]:
        return self._query().order_by(Intervention.created_at).all()

    def get_current_intervention(self) -> Optional[Intervention]:
        """Most recent pending intervention, for continuing a session."""
        return (
            self._query()
            .filter(Intervention.outcome_status == STATUS_PENDING)
            .order_by(Intervention.created_at.desc())
            .first()
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create_intervention(
        self,
        prediction: Optional[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> str:
        """
        Record that a risk alert was shown.

        Args:
            prediction: The prediction result that triggered the alert
            now: Creation time (defaults to current UTC)

        Returns:
            The new intervention id
        """
        created_at = _as_naive_utc(now)
        snapshot = None
        risk_score = None
        if prediction is not None:
            risk_score = float(prediction.get("riskScore") or 0)
            snapshot = {
                "riskScore": risk_score,
                "factors": prediction.get("factors") or {},
                "patterns": prediction.get("patterns") or {},
                "reason": prediction.get("reason") or "",
                "usedML": bool(prediction.get("usedML", False)),
            }

        intervention = Intervention(
            id=self._generate_id(created_at),
            user_id=self.user_id,
            created_at=created_at,
            prediction_risk_score=risk_score,
            prediction=snapshot,
            outcome_status=STATUS_PENDING,
            outcome_window_hours=OUTCOME_WINDOW_HOURS,
        )
        self.db.add(intervention)
        self.db.commit()

        logger.info(f"Intervention {intervention.id} created for user {self.user_id} (risk={risk_score})")
        return intervention.id

    def record_response(
        self,
        intervention_id: str,
        response_type: str,
        now: Optional[datetime] = None,
    ) -> Intervention:
        """How the user reacted to the alert."""
        if response_type not in RESPONSE_TYPES:
            raise InvalidInterventionUpdate(
                f"Unknown response type '{response_type}'. Expected one of {sorted(RESPONSE_TYPES)}"
            )
        intervention = self._require(intervention_id)
        intervention.response_type = response_type
        intervention.responded_at = _as_naive_utc(now)
        self.db.commit()
        return intervention

    def start_session(
        self,
        intervention_id: Optional[str],
        tool: str,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Start a toolkit session for an intervention.

        An unknown (or missing) intervention id means the user opened the
        toolkit on their own; that is recorded as a self-initiated
        intervention with no prediction.

        Returns:
            The id of the intervention the session is attached to
        """
        if not tool:
            raise InvalidInterventionUpdate("Session requires a tool name")
        started_at = _as_naive_utc(now)

        intervention = self.get_intervention(intervention_id) if intervention_id else None
        if intervention is None:
            return self._create_orphan_session(tool, started_at)

        intervention.tool_used = tool
        intervention.session_started_at = started_at
        intervention.session_completed = False
        intervention.session_completed_at = None
        intervention.session_duration_s = None
        self.db.commit()
        return intervention.id

    def _create_orphan_session(self, tool: str, started_at: datetime) -> str:
        intervention = Intervention(
            id=self._generate_id(started_at),
            user_id=self.user_id,
            created_at=started_at,
            prediction=None,
            response_type="self_initiated",
            responded_at=started_at,
            tool_used=tool,
            session_started_at=started_at,
            session_completed=False,
            outcome_status=STATUS_PENDING,
            outcome_window_hours=OUTCOME_WINDOW_HOURS,
        )
        self.db.add(intervention)
        self.db.commit()
        logger.info(f"Self-initiated session {intervention.id} ({tool}) for user {self.user_id}")
        return intervention.id

    def complete_session(
        self,
        intervention_id: str,
        duration_s: Optional[int],
        now: Optional[datetime] = None,
    ) -> Intervention:
        """Mark the toolkit session finished."""
        intervention = self._require(intervention_id)
        if not intervention.has_session:
            raise InvalidInterventionUpdate(f"Intervention {intervention_id} has no session to complete")
        if duration_s is not None and duration_s < 0:
            raise InvalidInterventionUpdate("Session duration cannot be negative")

        intervention.session_completed = True
        intervention.session_completed_at = _as_naive_utc(now)
        intervention.session_duration_s = duration_s
        self.db.commit()
        return intervention

    # -------------------------------------------------------------------------
    # Outcome determination
    # -------------------------------------------------------------------------

    def on_relapse(
        self,
        relapse_at: Optional[datetime] = None,
        relapse_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Mark pending interventions created within 48h before the relapse as failed.

        Returns:
            Number of interventions marked 'relapse'
        """
        relapse_time = _as_naive_utc(relapse_at)
        determined_at = _as_naive_utc(now)
        marked = 0

        for intervention in self._pending():
            hours_since = _hours_between(intervention.created_at, relapse_time)
            if 0 <= hours_since <= OUTCOME_WINDOW_HOURS:
                intervention.outcome_status = STATUS_RELAPSE
                intervention.outcome_determined_at = determined_at
                intervention.relapse_id = relapse_id
                intervention.hours_until_relapse = int(round(hours_since))
                marked += 1

        if marked:
            self.db.commit()
            logger.info(f"Marked {marked} interventions as relapse for user {self.user_id}")
        return marked

    def check_successful_interventions(self, now: Optional[datetime] = None) -> int:
        """
        Pending interventions whose window elapsed without a relapse become 'success'.

        Returns:
            Number of interventions marked 'success'
        """
        current = _as_naive_utc(now)
        marked = 0

        for intervention in self._pending():
            if _hours_between(intervention.created_at, current) > OUTCOME_WINDOW_HOURS:
                intervention.outcome_status = STATUS_SUCCESS
                intervention.outcome_determined_at = current
                marked += 1

        if marked:
            self.db.commit()
            logger.info(f"Marked {marked} interventions as successful for user {self.user_id}")
        return marked

    # -------------------------------------------------------------------------
    # Analytics
    # -------------------------------------------------------------------------

    def get_tool_effectiveness(self) -> List[Dict[str, Any]]:
        """
        Success rate per toolkit technique.

        Only completed sessions with a resolved outcome count, and a tool
        needs at least MIN_TOOL_USES of them to be reported.
        """
        stats: Dict[str, Dict[str, Any]] = {}
        for intervention in self.list_interventions():
            if not intervention.has_session or not intervention.session_completed:
                continue
            if intervention.outcome_status == STATUS_PENDING:
                continue

            tool = stats.setdefault(intervention.tool_used, {
                "tool": intervention.tool_used,
                "totalUses": 0,
                "successes": 0,
                "relapses": 0,
                "totalDuration": 0,
            })
            tool["totalUses"] += 1
            if intervention.outcome_status == STATUS_SUCCESS:
                tool["successes"] += 1
            else:
                tool["relapses"] += 1
            tool["totalDuration"] += intervention.session_duration_s or 0

        results = []
        for tool in stats.values():
            if tool["totalUses"] < MIN_TOOL_USES:
                continue
            tool["successRate"] = round(tool["successes"] / tool["totalUses"] * 100)
            tool["avgDuration"] = round(tool["totalDuration"] / tool["totalUses"])
            results.append(tool)

        return sorted(results, key=lambda t: t["successRate"], reverse=True)

    def get_most_effective_tool(self) -> Optional[Dict[str, Any]]:
        effectiveness = self.get_tool_effectiveness()
        return effectiveness[0] if effectiveness else None

    def get_intervention_stats(self) -> Dict[str, Any]:
        """Overall alert, session and outcome counts."""
        stats = {
            "totalAlerts": 0,
            "alertsAcknowledged": 0,
            "alertsIgnored": 0,
            "sessionsStarted": 0,
            "sessionsCompleted": 0,
            "successfulInterventions": 0,
            "failedInterventions": 0,
            "pendingInterventions": 0,
            "acknowledgeRate": 0,
            "completionRate": 0,
            "successRate": 0,
        }

        for intervention in self.list_interventions():
            # Only alert-triggered interventions count as alerts
            if intervention.prediction is not None:
                stats["totalAlerts"] += 1
                if intervention.response_type == "struggling":
                    stats["alertsAcknowledged"] += 1
                elif intervention.response_type in IGNORED_RESPONSES:
                    stats["alertsIgnored"] += 1

            if intervention.has_session:
                stats["sessionsStarted"] += 1
                if intervention.session_completed:
                    stats["sessionsCompleted"] += 1

            if intervention.outcome_status == STATUS_SUCCESS:
                stats["successfulInterventions"] += 1
            elif intervention.outcome_status == STATUS_RELAPSE:
                stats["failedInterventions"] += 1
            else:
                stats["pendingInterventions"] += 1

        if stats["totalAlerts"]:
            stats["acknowledgeRate"] = round(stats["alertsAcknowledged"] / stats["totalAlerts"] * 100)
        if stats["sessionsStarted"]:
            stats["completionRate"] = round(stats["sessionsCompleted"] / stats["sessionsStarted"] * 100)
        determined = stats["successfulInterventions"] + stats["failedInterventions"]
        if determined:
            stats["successRate"] = round(stats["successfulInterventions"] / determined * 100)

        return stats

    def get_response_effectiveness(self) -> Dict[str, Dict[str, Any]]:
        """Outcomes when the user engaged with an alert ('struggling') vs did not."""
        responded = {"total": 0, "success": 0, "relapse": 0}
        ignored = {"total": 0, "success": 0, "relapse": 0}

        for intervention in self.list_interventions():
            if intervention.prediction is None:
                continue
            if intervention.outcome_status == STATUS_PENDING:
                continue
            bucket = responded if intervention.response_type == "struggling" else ignored
            bucket["total"] += 1
            bucket[intervention.outcome_status] += 1

        def with_rate(bucket):
            rate = round(bucket["success"] / bucket["total"] * 100) if bucket["total"] else None
            return {**bucket, "successRate": rate}

        return {"responded": with_rate(responded), "ignored": with_rate(ignored)}

    def get_training_feedback(self) -> List[FeedbackEntry]:
        """Resolved, alert-triggered interventions flattened for sample weighting."""
        return [
            FeedbackEntry(
                created_at=intervention.created_at,
                risk_score=intervention.prediction_risk_score,
                outcome=intervention.outcome_status,
            )
            for intervention in self.list_interventions()
            if intervention.prediction is not None
            and intervention.outcome_status != STATUS_PENDING
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _generate_id(created_at: datetime) -> str:
        millis = int(created_at.replace(tzinfo=timezone.utc).timestamp() * 1000)
        return f"int_{millis}_{uuid.uuid4().hex[:9]}"
