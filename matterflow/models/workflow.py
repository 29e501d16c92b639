"""
Matterflow — Workflow templates & stage instances.

System-defined workflow templates with gated stages for compliance
workflows. A matter pins to the template version current at activation;
later template edits never reach an already-activated instance.

Tables (in dependency order):
    1. workflow_templates       — versioned templates, unique (key, version)
    2. workflow_stages          — stages with gate type, completion criteria
                                  and applicability conditions
    3. workflow_task_templates  — task blueprints inside a stage
    4. matter_workflows         — instance pinned to matter + version
    5. matter_stages            — stage instances with status tracking

Stage state machine (STAGE_TRANSITIONS):
    pending     -> in_progress | completed | skipped
    in_progress -> completed
    completed   -> (terminal)
    skipped     -> (terminal, set at activation only)
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from matterflow.core.exceptions import ValidationError
from matterflow.models import db

__all__ = [
    "GateType",
    "CompletionCriteria",
    "StageStatus",
    "DueDateAnchor",
    "STAGE_TRANSITIONS",
    "coerce_enum",
    "WorkflowTemplate",
    "WorkflowStage",
    "WorkflowTaskTemplate",
    "MatterWorkflow",
    "MatterStage",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Vocabularies
# ═════════════════════════════════════════════════════════════════════════════

class GateType(str, Enum):
    """How an incomplete stage affects stages after it."""
    HARD = "hard"   # later stages cannot start until this one is complete
    SOFT = "soft"   # later stages may start; a warning is reported
    NONE = "none"   # informational only


class CompletionCriteria(str, Enum):
    ALL_MANDATORY_TASKS = "all_mandatory_tasks"
    ALL_TASKS = "all_tasks"
    CUSTOM = "custom"  # evaluated as all_mandatory_tasks


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class DueDateAnchor(str, Enum):
    """What a relative task due date is counted from."""
    TASK_CREATED = "task_created"
    MATTER_CREATED = "matter_created"
    MATTER_OPENED = "matter_opened"
    STAGE_STARTED = "stage_started"


STAGE_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.IN_PROGRESS, StageStatus.COMPLETED, StageStatus.SKIPPED},
    StageStatus.IN_PROGRESS: {StageStatus.COMPLETED},
    StageStatus.COMPLETED: set(),
    StageStatus.SKIPPED: set(),
}


def coerce_enum(enum_cls, value, default=None):
    """Parse a stored string into ``enum_cls``.

    ``None`` or an empty string yields ``default``. Any other value that is
    not a member raises ValidationError rather than degrading silently.
    """
    if value is None or value == "":
        if default is None:
            raise ValidationError(f"{enum_cls.__name__} value is required")
        return default
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Unknown {enum_cls.__name__} {value!r}. Must be one of: {allowed}",
            details={"value": value, "allowed": [m.value for m in enum_cls]},
        ) from None


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowTemplate(db.Model):
    """
    System-defined workflow template (versioned, immutable once released).

    Identity is (key, version). ``is_active`` controls whether new matters
    may activate this version.
    """

    __tablename__ = "workflow_templates"
    __table_args__ = (
        db.UniqueConstraint("key", "version", name="uq_workflow_templates_key_version"),
        db.Index("ix_workflow_templates_practice_area", "practice_area"),
        db.Index("ix_workflow_templates_active", "is_active"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    key = db.Column(db.String(100), nullable=False, comment="e.g. residential-purchase")
    version = db.Column(db.String(30), nullable=False, comment="Semantic version, e.g. 2.3.0")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    practice_area = db.Column(db.String(50), nullable=True)
    sub_types = db.Column(db.JSON, nullable=True, comment="list[str] | null = all sub-types")
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    stages = db.relationship(
        "WorkflowStage",
        backref="template",
        order_by="WorkflowStage.sort_order",
        cascade="all, delete-orphan",
        lazy="select",
    )

    @property
    def is_released(self) -> bool:
        return self.released_at is not None

    def to_dict(self, include_stages=False):
        d = {
            "id": self.id,
            "key": self.key,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "practice_area": self.practice_area,
            "sub_types": self.sub_types,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "released_at": _iso(self.released_at),
            "created_at": _iso(self.created_at),
        }
        if include_stages:
            d["stages"] = [s.to_dict(include_tasks=True) for s in self.stages]
        return d

    def __repr__(self):
        return f"<WorkflowTemplate {self.key}@{self.version}>"


class WorkflowStage(db.Model):
    """
    Stage within a workflow template.

    ``applicability_conditions`` is an ordered key -> primitive mapping
    (null = always applies); stored as JSON, not JSONB, so declaration order
    survives a round trip.
    """

    __tablename__ = "workflow_stages"
    __table_args__ = (
        db.Index("ix_workflow_stages_template_sort", "workflow_template_id", "sort_order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workflow_template_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False)
    gate_type = db.Column(db.String(10), nullable=False, default=GateType.NONE.value,
                          comment="hard | soft | none")
    completion_criteria = db.Column(
        db.String(30), nullable=False, default=CompletionCriteria.ALL_MANDATORY_TASKS.value,
        comment="all_mandatory_tasks | all_tasks | custom",
    )
    applicability_conditions = db.Column(db.JSON, nullable=True)
    client_visible = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    task_templates = db.relationship(
        "WorkflowTaskTemplate",
        backref="stage",
        order_by="WorkflowTaskTemplate.sort_order",
        cascade="all, delete-orphan",
        lazy="select",
    )

    @property
    def gate(self) -> GateType:
        return coerce_enum(GateType, self.gate_type, GateType.NONE)

    @property
    def criteria(self) -> CompletionCriteria:
        return coerce_enum(CompletionCriteria, self.completion_criteria,
                           CompletionCriteria.ALL_MANDATORY_TASKS)

    def to_dict(self, include_tasks=False):
        d = {
            "id": self.id,
            "workflow_template_id": self.workflow_template_id,
            "name": self.name,
            "description": self.description,
            "sort_order": self.sort_order,
            "gate_type": self.gate_type,
            "completion_criteria": self.completion_criteria,
            "applicability_conditions": self.applicability_conditions,
            "client_visible": self.client_visible,
        }
        if include_tasks:
            d["task_templates"] = [t.to_dict() for t in self.task_templates]
        return d

    def __repr__(self):
        return f"<WorkflowStage {self.sort_order}: {self.name}>"


class WorkflowTaskTemplate(db.Model):
    """Task blueprint inside a stage; one Task is created per template at activation."""

    __tablename__ = "workflow_task_templates"
    __table_args__ = (
        db.Index("ix_workflow_task_templates_stage_sort", "stage_id", "sort_order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    stage_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_stages.id", ondelete="CASCADE"),
        nullable=False,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    requires_evidence = db.Column(db.Boolean, nullable=False, default=False)
    required_evidence_types = db.Column(db.JSON, nullable=True)
    requires_verified_evidence = db.Column(db.Boolean, nullable=False, default=True)
    requires_approval = db.Column(db.Boolean, nullable=False, default=False)
    required_approver_role = db.Column(db.String(30), nullable=True)
    default_assignee_role = db.Column(db.String(30), nullable=True)
    default_priority = db.Column(db.String(10), nullable=False, default="medium")
    relative_due_days = db.Column(db.Integer, nullable=True)
    due_date_relative_to = db.Column(
        db.String(20), nullable=True,
        comment="task_created | matter_created | matter_opened | stage_started",
    )
    client_visible = db.Column(db.Boolean, nullable=False, default=False)
    regulatory_basis = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "title": self.title,
            "description": self.description,
            "is_mandatory": self.is_mandatory,
            "requires_evidence": self.requires_evidence,
            "required_evidence_types": self.required_evidence_types,
            "requires_verified_evidence": self.requires_verified_evidence,
            "requires_approval": self.requires_approval,
            "required_approver_role": self.required_approver_role,
            "default_assignee_role": self.default_assignee_role,
            "default_priority": self.default_priority,
            "relative_due_days": self.relative_due_days,
            "due_date_relative_to": self.due_date_relative_to,
            "client_visible": self.client_visible,
            "regulatory_basis": self.regulatory_basis,
            "sort_order": self.sort_order,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════════

class MatterWorkflow(db.Model):
    """
    Workflow instance on a matter, pinned to a template version.

    ``current_stage_id`` is the first stage in sort order that is neither
    completed nor skipped; null once every stage is resolved. No uniqueness
    on matter_id; duplicate activation is governed by
    WORKFLOW_DUPLICATE_ACTIVATION.
    """

    __tablename__ = "matter_workflows"
    __table_args__ = (
        db.Index("ix_matter_workflows_matter", "matter_id"),
        db.Index("ix_matter_workflows_firm", "firm_id"),
        db.Index("ix_matter_workflows_template", "workflow_template_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    matter_id = db.Column(db.String(36), nullable=False)
    firm_id = db.Column(db.String(36), nullable=False)
    workflow_template_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_templates.id", ondelete="RESTRICT"),
        nullable=False,
    )
    workflow_version = db.Column(db.String(30), nullable=False, comment="Pinned version (denormalised)")
    activated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    activated_by_id = db.Column(db.String(36), nullable=True)
    current_stage_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    template = db.relationship("WorkflowTemplate", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "matter_id": self.matter_id,
            "firm_id": self.firm_id,
            "workflow_template_id": self.workflow_template_id,
            "workflow_version": self.workflow_version,
            "activated_at": _iso(self.activated_at),
            "activated_by_id": self.activated_by_id,
            "current_stage_id": self.current_stage_id,
        }

    def __repr__(self):
        return f"<MatterWorkflow {self.id} matter={self.matter_id} v{self.workflow_version}>"


class MatterStage(db.Model):
    """
    Stage instance on a matter.

    ``sort_order`` mirrors the template stage and never changes.
    ``skipped_reason`` is set iff status is skipped; ``started_at`` and
    ``completed_at`` are written once, at the matching transition.
    """

    __tablename__ = "matter_stages"
    __table_args__ = (
        db.Index("ix_matter_stages_workflow", "matter_workflow_id"),
        db.Index("ix_matter_stages_workflow_sort", "matter_workflow_id", "sort_order"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    matter_workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("matter_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    workflow_stage_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_stages.id", ondelete="RESTRICT"),
        nullable=True,
    )
    name = db.Column(db.String(200), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=StageStatus.PENDING.value,
                       comment="pending | in_progress | completed | skipped")
    skipped_reason = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    template_stage = db.relationship("WorkflowStage", lazy="select")

    @property
    def state(self) -> StageStatus:
        return coerce_enum(StageStatus, self.status)

    @property
    def is_resolved(self) -> bool:
        """Completed and skipped stages never block and never become current."""
        return self.state in (StageStatus.COMPLETED, StageStatus.SKIPPED)

    def can_transition_to(self, target: StageStatus) -> bool:
        return target in STAGE_TRANSITIONS[self.state]

    def to_dict(self):
        return {
            "id": self.id,
            "matter_workflow_id": self.matter_workflow_id,
            "workflow_stage_id": self.workflow_stage_id,
            "name": self.name,
            "sort_order": self.sort_order,
            "status": self.status,
            "skipped_reason": self.skipped_reason,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<MatterStage {self.sort_order}: {self.name} [{self.status}]>"
