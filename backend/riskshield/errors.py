"""
Compliance engine error taxonomy.

ValidationError, InvalidTransition and NotFound abort the single operation
before any state changes. DeliveryFailure is recorded per recipient and never
escapes the dispatcher. DependencyUnavailable aborts the current unit of work
(one assignment during a sweep) but not the batch.
"""
from typing import Any, Dict, Optional


class ComplianceError(Exception):
    """Base class for all engine errors."""

    http_status = 500
    code = "compliance_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(ComplianceError):
    """Bad input shape, rejected before any state change."""

    http_status = 400
    code = "validation_error"


class InvalidTransition(ComplianceError):
    """A state machine guard was violated."""

    http_status = 409
    code = "invalid_transition"

    def __init__(self, entity: str, from_state: str, to_state: str):
        super().__init__(
            f"Cannot transition {entity} from {from_state} to {to_state}",
            {"from_state": from_state, "to_state": to_state},
        )
        self.from_state = from_state
        self.to_state = to_state


class ConflictError(ComplianceError):
    """A uniqueness guard lost a race, e.g. a second active exception."""

    http_status = 409
    code = "conflict"


class NotFound(ComplianceError):
    http_status = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": str(entity_id)})


class DeliveryFailure(ComplianceError):
    """A single recipient/channel send failed."""

    http_status = 502
    code = "delivery_failure"


class DependencyUnavailable(ComplianceError):
    """Persistence or a provider could not be reached."""

    http_status = 503
    code = "dependency_unavailable"
