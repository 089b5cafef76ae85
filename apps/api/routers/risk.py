"""
Relapse Risk API Router

Training, prediction, model status and the intervention feedback loop for
one user. The caller supplies the user's tracking snapshot with every
train/predict request; this service keeps only the model and the ledger.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging

from core.database import get_db
from core.exceptions import (
    ConflictError,
    InterventionNotFound,
    InvalidInterventionUpdate,
    NotFoundError,
    ValidationError,
)
from schemas import (
    CancelResponse,
    InterventionCreate,
    InterventionCreated,
    ModelInfoResponse,
    OutcomeUpdate,
    PredictionResponse,
    RelapseEvent,
    ResponseRecord,
    SessionComplete,
    SessionStart,
    TrainRequest,
    TrainResponse,
    UserDataPayload,
)
from services.prediction_orchestrator import PredictionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/risk/{user_id}", tags=["Relapse Risk"])


def get_orchestrator(user_id: UUID, request: Request, db: Session = Depends(get_db)):
    """Per-request orchestrator sharing the app-wide in-flight training registry."""
    orchestrator = PredictionOrchestrator(
        db,
        user_id,
        registry=request.app.state.training_registry,
    )
    orchestrator.initialize()
    try:
        yield orchestrator
    finally:
        orchestrator.teardown()


def _ledger_call(fn, *args, **kwargs):
    """Run a ledger mutator, mapping domain errors onto HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except InterventionNotFound as e:
        raise NotFoundError("Intervention", e.intervention_id)
    except InvalidInterventionUpdate as e:
        raise ValidationError(str(e))


# =============================================================================
# MODEL
# =============================================================================

@router.post("/train", response_model=TrainResponse)
def train_model(
    user_id: UUID,
    body: TrainRequest,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
):
    """
    Train the user's risk model on their full history.

    Runs in-request by default. With background=true the run is enqueued on
    the worker and the task id is returned. Refusals for insufficient data
    come back as success=false with the failing reason.
    """
    if body.background:
        from tasks.risk_tasks import train_risk_model

        task = train_risk_model.delay(
            str(user_id),
            body.user_data.model_dump(by_alias=True),
            body.share_aggregates,
        )
        return TrainResponse(success=True, message="Training queued", task_id=task.id)

    result = orchestrator.train(
        body.user_data.to_user_data(),
        share_aggregates=body.share_aggregates,
    )
    if result.get("error") == "training_in_progress":
        raise ConflictError(result["message"])
    return result


@router.post("/train/cancel", response_model=CancelResponse)
def cancel_training(orchestrator: PredictionOrchestrator = Depends(get_orchestrator)):
    """Request cancellation of an in-process training run."""
    return {"cancelled": orchestrator.cancel_training()}


@router.post("/predict", response_model=PredictionResponse)
def predict_risk(
    body: UserDataPayload,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
):
    """Current relapse risk (model-based when trained, heuristic otherwise)."""
    return orchestrator.predict(body.to_user_data())


@router.get("/model", response_model=ModelInfoResponse)
def get_model_info(orchestrator: PredictionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_model_info()


@router.delete("/model")
def reset_model(orchestrator: PredictionOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """Delete the trained model. Intervention history is kept."""
    result = orchestrator.reset_model()
    if result.get("error") == "training_in_progress":
        raise ConflictError(result["message"])
    return result


@router.post("/data-quality")
def get_data_quality(
    body: UserDataPayload,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Score how ready the supplied history is for training."""
    return orchestrator.get_data_quality(body.to_user_data())


@router.post("/insights")
def get_insights(
    body: UserDataPayload,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
) -> Optional[Dict[str, Any]]:
    """History-wide relapse patterns. null until there is enough history."""
    return orchestrator.get_insights(body.to_user_data())


# =============================================================================
# INTERVENTIONS
# =============================================================================

@router.post("/interventions", response_model=InterventionCreated, status_code=201)
def create_intervention(
    body: InterventionCreate,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
):
    """Record that a risk alert was shown to the user."""
    intervention_id = orchestrator.create_intervention(body.prediction, now=body.created_at)
    return {"id": intervention_id}


@router.post("/interventions/check", response_model=OutcomeUpdate)
def check_interventions(orchestrator: PredictionOrchestrator = Depends(get_orchestrator)):
    """Mark pending interventions whose 48h window elapsed as successful."""
    return {"marked": orchestrator.check_successful_interventions()}


@router.get("/interventions/stats")
def get_intervention_stats(orchestrator: PredictionOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.ledger.get_intervention_stats()


@router.get("/interventions/tools")
def get_tool_effectiveness(orchestrator: PredictionOrchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    """Success rate per toolkit technique (tools with at least 2 completed uses)."""
    return orchestrator.ledger.get_tool_effectiveness()


@router.get("/interventions/response-effectiveness")
def get_response_effectiveness(orchestrator: PredictionOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.ledger.get_response_effectiveness()


@router.get("/interventions/{intervention_id}")
def get_intervention(
    intervention_id: str,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    intervention = orchestrator.ledger.get_intervention(intervention_id)
    if intervention is None:
        raise NotFoundError("Intervention", intervention_id)
    return intervention.to_dict()


@router.post("/interventions/{intervention_id}/response")
def record_response(
    intervention_id: str,
    body: ResponseRecord,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    intervention = _ledger_call(orchestrator.record_response, intervention_id, body.type)
    return intervention.to_dict()


@router.post("/interventions/{intervention_id}/session", response_model=InterventionCreated)
def start_session(
    intervention_id: str,
    body: SessionStart,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
):
    """
    Start a toolkit session. An unknown intervention id records a
    self-initiated session; the returned id is the one to complete.
    """
    return {"id": _ledger_call(orchestrator.start_session, intervention_id, body.tool)}


@router.post("/interventions/{intervention_id}/session/complete")
def complete_session(
    intervention_id: str,
    body: SessionComplete,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    intervention = _ledger_call(orchestrator.complete_session, intervention_id, body.duration)
    return intervention.to_dict()


@router.post("/relapse", response_model=OutcomeUpdate)
def log_relapse(
    body: RelapseEvent,
    orchestrator: PredictionOrchestrator = Depends(get_orchestrator),
):
    """Resolve interventions from the previous 48h as failed."""
    return {"marked": orchestrator.on_relapse(relapse_at=body.relapse_at, relapse_id=body.relapse_id)}
