"""
Engine-wide exception hierarchy.

Every workflow service raises one of these types. They carry a
machine-readable ``code`` and an ``http_status`` hint so a calling layer
(HTTP handler, worker, CLI) can translate them without string matching.
Raising any of them is expected to abort the caller's transaction.

Usage:
    from matterflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="MatterStage", resource_id=stage_id)
    raise ValidationError("Workflow template is not active", details={"template_id": tid})
"""


class MatterflowError(Exception):
    """Base class for all workflow engine errors."""

    code = "ERR_INTERNAL"
    http_status = 500

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class NotFoundError(MatterflowError):
    """Raised when a referenced template, stage or workflow instance does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowTemplate", "MatterStage").
        resource_id: The PK that was looked up.
    """

    code = "ERR_NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(MatterflowError):
    """Raised when input is well-formed but violates a business rule.

    Covers precondition violations such as activating an inactive template,
    unknown enum values read from storage and invalid template definitions.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    code = "ERR_VALIDATION"
    http_status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "details": self.details}


class ConflictError(MatterflowError):
    """Raised when an operation would duplicate a unique record.

    Args:
        resource: Model name.
        field: The unique field (or field combination) that would be duplicated.
        value: The conflicting value.
    """

    code = "ERR_CONFLICT_DUPLICATE"
    http_status = 409

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class StageTransitionError(MatterflowError):
    """Raised when a stage is asked to make a transition its state machine forbids."""

    code = "ERR_CONFLICT_STATE"
    http_status = 409

    def __init__(self, message: str, stage_id: str | None = None) -> None:
        self.stage_id = stage_id
        super().__init__(message)


class GateBlockedError(StageTransitionError):
    """Raised when a gate-enforcing transition is blocked by an earlier hard-gated stage."""

    code = "ERR_GATE_BLOCKED"

    def __init__(self, stage_id: str, stage_name: str, reason: str) -> None:
        self.stage_name = stage_name
        self.reason = reason
        super().__init__(f"Blocked by {stage_name}: {reason}", stage_id=stage_id)
