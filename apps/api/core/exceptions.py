"""
Custom exception classes and error handling.

Two families live here:
- RiskEngineError and subclasses: raised by the risk engine services.
- APIException and subclasses: consistent HTTP error responses.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


# =============================================================================
# RISK ENGINE ERRORS
# =============================================================================

class RiskEngineError(Exception):
    """Base class for risk engine errors. `code` is a stable machine-readable reason."""

    code = "risk_engine_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class InsufficientDataError(RiskEngineError):
    """Training refused: not enough history. No state is touched."""

    code = "insufficient_data"

    def __init__(self, reason: str, observed: int, required: int):
        super().__init__(
            f"Insufficient data ({reason}): have {observed}, need {required}",
            code="insufficient_data",
        )
        self.reason = reason
        self.observed = observed
        self.required = required

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "observed": self.observed,
            "required": self.required,
        }


class MissingNormalizationStats(RiskEngineError):
    """Inference requested without usable normalization statistics."""

    code = "missing_normalization_stats"


class CorruptPersistedStateError(RiskEngineError):
    """Persisted model blob could not be deserialized."""

    code = "corrupt_persisted_state"


class TrainingFailure(RiskEngineError):
    """An exception escaped the fit loop."""

    code = "training_failure"


class TrainingCancelled(TrainingFailure):
    """A running fit observed its cancellation token."""

    code = "training_cancelled"


class AggregateSubmissionError(RiskEngineError):
    """Anonymized aggregate could not be delivered. Logged only."""

    code = "aggregate_submission_failure"


class InterventionNotFound(RiskEngineError):
    code = "intervention_not_found"

    def __init__(self, intervention_id: str):
        super().__init__(f"Intervention not found: {intervention_id}")
        self.intervention_id = intervention_id


class InvalidInterventionUpdate(RiskEngineError):
    code = "invalid_intervention_update"


# =============================================================================
# API ERRORS
# =============================================================================

class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class ConflictError(APIException):
    """Resource conflict (e.g., training already running)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )
