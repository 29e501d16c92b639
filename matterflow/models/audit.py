"""
Matterflow — Exception audit log.

Models:
    - TaskException: immutable, append-only record of every compliance
      exception the engine decides on (stage skipped as not applicable,
      gate overridden). Rows are never updated or deleted.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from matterflow.models import db


class ExceptionType(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    GATE_OVERRIDE = "gate_override"


class DecisionSource(str, Enum):
    SYSTEM = "system"
    USER = "user"


class TaskException(db.Model):
    """
    Append-only exception record for a task or stage.

    ``object_type`` + ``object_id`` form a polymorphic reference
    (``stage`` -> matter_stages.id, ``task`` -> tasks.id).
    """

    __tablename__ = "task_exceptions"
    __table_args__ = (
        db.Index("ix_task_exceptions_object", "object_type", "object_id"),
        db.Index("ix_task_exceptions_firm", "firm_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    firm_id = db.Column(db.String(36), nullable=False)
    object_type = db.Column(db.String(20), nullable=False, comment="stage | task")
    object_id = db.Column(db.String(36), nullable=False)
    exception_type = db.Column(db.String(30), nullable=False,
                               comment="not_applicable | gate_override")
    reason = db.Column(db.Text, nullable=False)
    decision_source = db.Column(db.String(10), nullable=False, default=DecisionSource.SYSTEM.value)
    approved_by_id = db.Column(db.String(36), nullable=True)
    # "metadata" is reserved on declarative models
    exception_metadata = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "firm_id": self.firm_id,
            "object_type": self.object_type,
            "object_id": self.object_id,
            "exception_type": self.exception_type,
            "reason": self.reason,
            "decision_source": self.decision_source,
            "approved_by_id": self.approved_by_id,
            "metadata": self.exception_metadata or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TaskException {self.exception_type} on {self.object_type}/{self.object_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_exception(
    session,
    *,
    firm_id: str,
    object_type: str,
    object_id: str,
    exception_type: ExceptionType,
    reason: str,
    decision_source: DecisionSource,
    approved_by_id: str | None = None,
    metadata: dict | None = None,
) -> TaskException:
    """
    Append a single exception row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) TaskException instance.
    """
    record = TaskException(
        firm_id=firm_id,
        object_type=object_type,
        object_id=str(object_id),
        exception_type=ExceptionType(exception_type).value,
        reason=reason,
        decision_source=DecisionSource(decision_source).value,
        approved_by_id=approved_by_id,
        exception_metadata=metadata,
    )
    session.add(record)
    session.flush()
    return record
