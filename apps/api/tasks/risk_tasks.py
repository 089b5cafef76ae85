"""
Risk Engine Tasks

Background work for the relapse-risk engine:

- train_risk_model: a full training run, off the interactive path.
  Enqueued by POST /v1/risk/{user_id}/train with background=true.
- check_intervention_outcomes: beat-scheduled sweep that marks pending
  interventions successful once their 48h window has elapsed.

Each user is processed independently; one user's failure does not block
the others.
"""

from typing import Any, Dict, Optional
from uuid import UUID
import logging

from celery import Task
from sqlalchemy import distinct

from tasks import celery_app
from core.database import get_db_sync
from models import Intervention
from schemas import UserDataPayload
from services.intervention_ledger import STATUS_PENDING, InterventionLedger
from services.prediction_orchestrator import PredictionOrchestrator, TrainingRegistry

logger = logging.getLogger(__name__)

# Runs in this worker process; other processes are excluded by the Redis lock
_training_registry = TrainingRegistry()


@celery_app.task(
    name="tasks.train_risk_model",
    bind=True,
    max_retries=0,  # A failed run keeps the previous model; the next trigger retries
    soft_time_limit=600,
    time_limit=720,
)
def train_risk_model(
    self: Task,
    user_id: str,
    user_data: Dict[str, Any],
    share_aggregates: Optional[bool] = None,
) -> Dict:
    """
    Train the risk model for one user.

    Args:
        user_id: UUID string
        user_data: UserDataPayload as JSON (camelCase or snake_case keys)
        share_aggregates: Per-run override of the aggregate sharing opt-in

    Returns:
        The orchestrator's training result dict
    """
    payload = UserDataPayload.model_validate(user_data)
    db = get_db_sync()
    try:
        with PredictionOrchestrator(db, UUID(user_id), registry=_training_registry) as orchestrator:
            result = orchestrator.train(payload.to_user_data(), share_aggregates=share_aggregates)
    finally:
        db.close()

    if result["success"]:
        logger.info(f"Background training complete for user {user_id}: {result['message']}")
    else:
        logger.info(f"Background training for user {user_id} did not complete: {result['error']}")
    return result


@celery_app.task(
    name="tasks.check_intervention_outcomes",
    bind=True,
    max_retries=0,
    soft_time_limit=120,
    time_limit=180,
)
def check_intervention_outcomes(self: Task) -> Dict:
    """
    Resolve elapsed intervention windows for every user with pending ones.

    Returns:
        {users, marked, errors}
    """
    db = get_db_sync()
    summary = {"users": 0, "marked": 0, "errors": 0}
    try:
        user_ids = [
            row[0]
            for row in db.query(distinct(Intervention.user_id))
            .filter(Intervention.outcome_status == STATUS_PENDING)
            .all()
        ]
        for user_id in user_ids:
            summary["users"] += 1
            try:
                summary["marked"] += InterventionLedger(db, user_id).check_successful_interventions()
            except Exception as e:
                db.rollback()
                summary["errors"] += 1
                logger.error(f"Outcome sweep failed for user {user_id}: {e}", exc_info=True)
    finally:
        db.close()

    if summary["marked"]:
        logger.info(f"Outcome sweep: {summary['marked']} interventions marked successful across {summary['users']} users")
    return summary
