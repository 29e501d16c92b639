"""
Workflow template authoring and the matter workflow read model.

Templates are defined as nested dicts (the shape used by the seed script
and by template definition files):

    {
        "key": "residential-purchase",
        "version": "1.0.0",
        "name": "Residential Purchase",
        "practice_area": "conveyancing",
        "stages": [
            {
                "name": "Client Onboarding",
                "sort_order": 1,
                "gate_type": "hard",
                "completion_criteria": "all_mandatory_tasks",
                "applicability_conditions": {"has_mortgage": True},
                "tasks": [
                    {"title": "Send client care letter", "is_mandatory": True,
                     "relative_due_days": 2, "due_date_relative_to": "matter_opened"},
                ],
            },
        ],
    }

The whole definition is validated before anything is written. A released
template version is immutable: redefining its key+version is refused.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import select

from matterflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from matterflow.models.task import TaskPriority
from matterflow.models.workflow import (
    CompletionCriteria,
    DueDateAnchor,
    GateType,
    MatterWorkflow,
    WorkflowStage,
    WorkflowTaskTemplate,
    WorkflowTemplate,
    coerce_enum,
)
from matterflow.services.stage_completion import (
    calculate_workflow_progress,
    check_stage_completion,
    list_workflow_stages,
)

logger = logging.getLogger(__name__)

_VERSION_PART = re.compile(r"\d+")

_CONDITION_VALUE_TYPES = (str, int, float, bool)


# ── Validation ───────────────────────────────────────────────────────────────

def _require(mapping: dict, field: str, where: str):
    value = mapping.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{where}: '{field}' is required", details={"field": field})
    return value


def _validate_conditions(conditions, where: str) -> dict | None:
    if conditions is None:
        return None
    if not isinstance(conditions, dict):
        raise ValidationError(f"{where}: applicability_conditions must be a mapping")
    for key, value in conditions.items():
        if not isinstance(key, str) or not key:
            raise ValidationError(f"{where}: condition keys must be non-empty strings")
        if not isinstance(value, _CONDITION_VALUE_TYPES):
            raise ValidationError(
                f"{where}: condition {key!r} must be a string, number or boolean",
                details={"key": key, "value": repr(value)},
            )
    return dict(conditions) or None


def _validate_definition(definition: dict) -> None:
    _require(definition, "key", "template")
    _require(definition, "version", "template")
    _require(definition, "name", "template")

    stages = definition.get("stages") or []
    if not stages:
        raise ValidationError("template: at least one stage is required")

    seen_orders: set[int] = set()
    for index, stage in enumerate(stages, start=1):
        where = f"stage #{index}"
        _require(stage, "name", where)
        sort_order = stage.get("sort_order", index)
        if not isinstance(sort_order, int) or isinstance(sort_order, bool):
            raise ValidationError(f"{where}: sort_order must be an integer")
        if sort_order in seen_orders:
            raise ValidationError(
                f"{where}: duplicate sort_order {sort_order}", details={"sort_order": sort_order}
            )
        seen_orders.add(sort_order)

        coerce_enum(GateType, stage.get("gate_type"), GateType.NONE)
        coerce_enum(CompletionCriteria, stage.get("completion_criteria"),
                    CompletionCriteria.ALL_MANDATORY_TASKS)
        _validate_conditions(stage.get("applicability_conditions"), where)

        for task_index, task in enumerate(stage.get("tasks") or [], start=1):
            task_where = f"{where} task #{task_index}"
            _require(task, "title", task_where)
            coerce_enum(TaskPriority, task.get("default_priority"), TaskPriority.MEDIUM)
            coerce_enum(DueDateAnchor, task.get("due_date_relative_to"), DueDateAnchor.TASK_CREATED)
            days = task.get("relative_due_days")
            if days is not None and (not isinstance(days, int) or isinstance(days, bool) or days < 0):
                raise ValidationError(f"{task_where}: relative_due_days must be a non-negative integer")


def _version_key(version: str) -> tuple:
    """Sort key for semantic versions; non-numeric parts sort as zero."""
    parts = [int(p) for p in _VERSION_PART.findall(version or "")]
    return tuple(parts + [0] * (3 - len(parts)))


# ── Authoring ────────────────────────────────────────────────────────────────

def create_workflow_template(session, definition: dict) -> WorkflowTemplate:
    """
    Create a template with its stages and task templates from ``definition``.

    Raises:
        ValidationError: the definition is incomplete or uses unknown values.
        ConflictError: key+version already exists.
    """
    _validate_definition(definition)
    key = definition["key"].strip()
    version = str(definition["version"]).strip()

    existing = session.scalars(
        select(WorkflowTemplate).where(
            WorkflowTemplate.key == key, WorkflowTemplate.version == version
        )
    ).first()
    if existing is not None:
        raise ConflictError(resource="WorkflowTemplate", field="key+version", value=f"{key}@{version}")

    template = WorkflowTemplate(
        key=key,
        version=version,
        name=definition["name"],
        description=definition.get("description"),
        practice_area=definition.get("practice_area"),
        sub_types=definition.get("sub_types"),
        is_default=bool(definition.get("is_default", False)),
        is_active=bool(definition.get("is_active", True)),
    )
    session.add(template)
    session.flush()

    task_count = 0
    for index, stage_def in enumerate(definition["stages"], start=1):
        stage = WorkflowStage(
            workflow_template_id=template.id,
            name=stage_def["name"],
            description=stage_def.get("description"),
            sort_order=stage_def.get("sort_order", index),
            gate_type=coerce_enum(GateType, stage_def.get("gate_type"), GateType.NONE).value,
            completion_criteria=coerce_enum(
                CompletionCriteria, stage_def.get("completion_criteria"),
                CompletionCriteria.ALL_MANDATORY_TASKS,
            ).value,
            applicability_conditions=_validate_conditions(
                stage_def.get("applicability_conditions"), stage_def["name"]
            ),
            client_visible=bool(stage_def.get("client_visible", True)),
        )
        session.add(stage)
        session.flush()

        for task_index, task_def in enumerate(stage_def.get("tasks") or [], start=1):
            session.add(WorkflowTaskTemplate(
                stage_id=stage.id,
                title=task_def["title"],
                description=task_def.get("description"),
                is_mandatory=bool(task_def.get("is_mandatory", False)),
                requires_evidence=bool(task_def.get("requires_evidence", False)),
                required_evidence_types=task_def.get("required_evidence_types"),
                requires_verified_evidence=bool(task_def.get("requires_verified_evidence", True)),
                requires_approval=bool(task_def.get("requires_approval", False)),
                required_approver_role=task_def.get("required_approver_role"),
                default_assignee_role=task_def.get("default_assignee_role"),
                default_priority=coerce_enum(
                    TaskPriority, task_def.get("default_priority"), TaskPriority.MEDIUM
                ).value,
                relative_due_days=task_def.get("relative_due_days"),
                due_date_relative_to=coerce_enum(
                    DueDateAnchor, task_def.get("due_date_relative_to"), DueDateAnchor.TASK_CREATED
                ).value,
                client_visible=bool(task_def.get("client_visible", False)),
                regulatory_basis=task_def.get("regulatory_basis"),
                sort_order=task_def.get("sort_order", task_index),
            ))
            task_count += 1

    session.flush()
    logger.info(
        "Workflow template %s@%s created: %d stage(s), %d task template(s)",
        key, version, len(definition["stages"]), task_count,
        extra={"template_key": key},
    )
    return template


def get_active_template(session, key: str, version: str | None = None) -> WorkflowTemplate:
    """Newest active version of ``key`` (or exactly ``version`` when given)."""
    stmt = select(WorkflowTemplate).where(
        WorkflowTemplate.key == key, WorkflowTemplate.is_active.is_(True)
    )
    if version is not None:
        stmt = stmt.where(WorkflowTemplate.version == version)

    candidates = session.scalars(stmt).all()
    if not candidates:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=f"{key}@{version or 'active'}")
    return max(candidates, key=lambda t: _version_key(t.version))


def _get_template(session, template_id: str) -> WorkflowTemplate:
    template = session.get(WorkflowTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


def release_template(session, template_id: str) -> WorkflowTemplate:
    """Stamp ``released_at``; releasing twice keeps the first timestamp."""
    template = _get_template(session, template_id)
    if template.released_at is None:
        template.released_at = datetime.now(timezone.utc)
        session.flush()
        logger.info("Workflow template %s@%s released", template.key, template.version,
                    extra={"template_key": template.key})
    return template


def deactivate_template(session, template_id: str) -> WorkflowTemplate:
    """Stop new activations of this version. Existing instances are unaffected."""
    template = _get_template(session, template_id)
    template.is_active = False
    session.flush()
    logger.info("Workflow template %s@%s deactivated", template.key, template.version,
                extra={"template_key": template.key})
    return template


# ── Read model ───────────────────────────────────────────────────────────────

def get_matter_workflow_overview(session, matter_id: str) -> dict | None:
    """
    The matter's earliest-activated workflow with per-stage progress.

    Returns None when the matter has no workflow.

    Returns:
        {"workflow": {...}, "template": {"key", "name", "version", "practice_area"},
         "stages": [{...stage, "gate_type", "completion_criteria",
                     "total_tasks", "resolved_tasks", "mandatory_tasks",
                     "resolved_mandatory_tasks", "is_complete"}],
         "progress": {...calculate_workflow_progress}}
    """
    workflow = session.scalars(
        select(MatterWorkflow)
        .where(MatterWorkflow.matter_id == matter_id)
        .order_by(MatterWorkflow.activated_at, MatterWorkflow.id)
        .limit(1)
    ).first()
    if workflow is None:
        return None

    template = workflow.template
    stages = []
    for stage in list_workflow_stages(session, workflow.id):
        completion = check_stage_completion(session, stage.id)
        template_stage = stage.template_stage
        stages.append({
            **stage.to_dict(),
            "gate_type": template_stage.gate.value if template_stage else GateType.NONE.value,
            "completion_criteria": (
                template_stage.criteria.value if template_stage
                else CompletionCriteria.ALL_MANDATORY_TASKS.value
            ),
            "total_tasks": completion["total_tasks"],
            "resolved_tasks": completion["resolved_tasks"],
            "mandatory_tasks": completion["mandatory_tasks"],
            "resolved_mandatory_tasks": completion["resolved_mandatory_tasks"],
            "is_complete": completion["is_complete"],
        })

    return {
        "workflow": workflow.to_dict(),
        "template": {
            "key": template.key,
            "name": template.name,
            "version": workflow.workflow_version,
            "practice_area": template.practice_area,
        },
        "stages": stages,
        "progress": calculate_workflow_progress(session, workflow.id),
    }
