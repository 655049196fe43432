"""
Error taxonomy for the proposal intake service.

Every domain failure carries a machine-readable ``code`` and the HTTP status
the request boundary maps it to. Handlers in main.py turn these into
``{"detail": ..., "error": code}`` responses.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError


class IntakeError(Exception):
    code = "intake_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.code}


class NotFound(IntakeError):
    code = "not_found"
    status_code = 404


class Conflict(IntakeError):
    code = "conflict"
    status_code = 409


class PreconditionFailed(IntakeError):
    """A transition was attempted from a state that does not allow it."""

    code = "precondition_failed"
    status_code = 409


class ValidationFailed(IntakeError):
    code = "validation_failed"
    status_code = 422

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.errors:
            out["errors"] = self.errors
        return out


class StoreUnavailable(IntakeError):
    code = "store_unavailable"
    status_code = 503


def validate_model(model: type, data: Any, what: str) -> BaseModel:
    """Validate ``data`` against a pydantic model, raising ValidationFailed."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        fields = ", ".join(".".join(str(p) for p in e["loc"]) or "<root>" for e in errors)
        raise ValidationFailed(f"Invalid {what}: {fields}", errors=errors) from exc
