"""
Matterflow — Task instances.

Tasks are created from WorkflowTaskTemplate rows at activation and are
bound to exactly one MatterStage. The surrounding task subsystem owns the
task lifecycle; the engine only reads ``status`` / ``is_mandatory`` and
reacts to status changes (see services.stage_progression).

A task is *resolved* when its status is completed, skipped or
not_applicable. Skipped and not_applicable tasks are expected to carry a
TaskException explaining the decision.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from matterflow.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"                # deliberately skipped, exception logged
    NOT_APPLICABLE = "not_applicable"  # does not apply to this matter, exception logged


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


RESOLVED_TASK_STATUSES = frozenset({
    TaskStatus.COMPLETED.value,
    TaskStatus.SKIPPED.value,
    TaskStatus.NOT_APPLICABLE.value,
})


def is_task_resolved(status) -> bool:
    """True when a task in ``status`` no longer holds up stage completion."""
    if isinstance(status, TaskStatus):
        status = status.value
    return status in RESOLVED_TASK_STATUSES


class Task(db.Model):
    """Unit of work on a matter; optionally bound to a workflow stage."""

    __tablename__ = "tasks"
    __table_args__ = (
        db.Index("ix_tasks_matter_stage", "matter_stage_id"),
        db.Index("ix_tasks_matter", "matter_id"),
        db.Index("ix_tasks_firm_status", "firm_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    firm_id = db.Column(db.String(36), nullable=False)
    matter_id = db.Column(db.String(36), nullable=False)
    matter_stage_id = db.Column(
        db.String(36),
        db.ForeignKey("matter_stages.id", ondelete="SET NULL"),
        nullable=True,
    )
    workflow_task_template_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_task_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(20), nullable=False, default="manual", comment="manual | workflow")
    status = db.Column(db.String(20), nullable=False, default=TaskStatus.PENDING.value)
    priority = db.Column(db.String(10), nullable=False, default=TaskPriority.MEDIUM.value)

    # Compliance flags copied from the task template
    is_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    requires_evidence = db.Column(db.Boolean, nullable=False, default=False)
    required_evidence_types = db.Column(db.JSON, nullable=True)
    requires_verified_evidence = db.Column(db.Boolean, nullable=False, default=True)
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    required_approver_role = db.Column(db.String(30), nullable=True)
    client_visible = db.Column(db.Boolean, nullable=False, default=False)
    regulatory_basis = db.Column(db.Text, nullable=True)

    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    task_template = db.relationship("WorkflowTaskTemplate", lazy="select")

    @property
    def is_resolved(self) -> bool:
        return is_task_resolved(self.status)

    def to_dict(self):
        return {
            "id": self.id,
            "firm_id": self.firm_id,
            "matter_id": self.matter_id,
            "matter_stage_id": self.matter_stage_id,
            "workflow_task_template_id": self.workflow_task_template_id,
            "title": self.title,
            "description": self.description,
            "source": self.source,
            "status": self.status,
            "priority": self.priority,
            "is_mandatory": self.is_mandatory,
            "requires_evidence": self.requires_evidence,
            "requires_approval": self.requires_approval,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.title} [{self.status}]>"
