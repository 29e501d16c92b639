"""
Workflow activation.

Activates a workflow template on a matter in a single pass:
    1. validate the template exists and is active
    2. create the MatterWorkflow pinned to the template version
    3. for each template stage, in sort order, evaluate applicability:
         applicable     -> pending MatterStage + one Task per task template
         not applicable -> skipped MatterStage, not_applicable exception,
                           stage_skipped timeline event
    4. point current_stage_id at the first applicable stage
    5. emit one workflow_activated timeline event

Nothing is committed here. Every write is flushed into the caller's
transaction; any raised error must roll the whole activation back.

Duplicate activation of the same template key on a matter is governed by
WORKFLOW_DUPLICATE_ACTIVATION (allow | reject | reuse).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from matterflow.config import DUPLICATE_ACTIVATION_POLICIES, get_setting
from matterflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from matterflow.models.audit import DecisionSource, ExceptionType, write_exception
from matterflow.models.task import Task, TaskPriority, TaskStatus
from matterflow.models.timeline import TimelineEventType, create_timeline_event
from matterflow.models.workflow import (
    MatterStage,
    MatterWorkflow,
    StageStatus,
    WorkflowStage,
    WorkflowTemplate,
    coerce_enum,
)
from matterflow.services.applicability import build_skip_reason, evaluate_applicability_conditions
from matterflow.services.due_dates import calculate_due_date

logger = logging.getLogger(__name__)


def activate_workflow(
    session,
    *,
    firm_id: str,
    matter_id: str,
    workflow_template_id: str,
    activated_by_id: str,
    conditions: dict | None = None,
    matter_created_at: datetime | None = None,
    matter_opened_at: datetime | None = None,
    duplicate_policy: str | None = None,
    known_condition_keys: frozenset | None = None,
) -> dict:
    """
    Activate a workflow template on a matter.

    Args:
        session:              SQLAlchemy session carrying the caller's transaction.
        firm_id, matter_id:   Owning firm and matter.
        workflow_template_id: Template to activate (must be active).
        activated_by_id:      Acting user; recorded on the instance and events.
        conditions:           Matter condition set for stage applicability.
        matter_created_at:    Anchor for matter_created due dates.
        matter_opened_at:     Anchor for matter_opened due dates.
        duplicate_policy:     Overrides WORKFLOW_DUPLICATE_ACTIVATION.
        known_condition_keys: Overrides WORKFLOW_CONDITION_KEYS.

    Returns:
        {"matter_workflow": MatterWorkflow, "stages": [MatterStage],
         "tasks": [Task], "skipped_stages": [{"stage_id", "name", "reason"}],
         "reused": bool}

    Raises:
        NotFoundError:   template does not exist.
        ValidationError: template inactive, or a stored enum value is unknown.
        ConflictError:   duplicate activation under the ``reject`` policy.
    """
    conditions = dict(conditions or {})
    if known_condition_keys is None:
        known_condition_keys = get_setting("WORKFLOW_CONDITION_KEYS")
    policy = duplicate_policy or get_setting("WORKFLOW_DUPLICATE_ACTIVATION")
    if policy not in DUPLICATE_ACTIVATION_POLICIES:
        raise ValidationError(
            f"Unknown duplicate activation policy {policy!r}",
            details={"allowed": list(DUPLICATE_ACTIVATION_POLICIES)},
        )

    template = session.get(WorkflowTemplate, workflow_template_id)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=workflow_template_id)
    if not template.is_active:
        raise ValidationError(
            "Workflow template is not active",
            details={"workflow_template_id": workflow_template_id, "version": template.version},
        )

    if policy != "allow":
        existing = _find_existing_instance(session, matter_id, template.key)
        if existing is not None:
            if policy == "reject":
                raise ConflictError(
                    resource="MatterWorkflow", field="matter_id+template_key",
                    value=f"{matter_id}+{template.key}",
                )
            logger.info(
                "Workflow %s already active on matter, reusing instance %s",
                template.key, existing.id,
                extra={"firm_id": firm_id, "matter_id": matter_id, "template_key": template.key},
            )
            return _existing_activation_result(session, existing)

    now = datetime.now(timezone.utc)

    matter_workflow = MatterWorkflow(
        matter_id=matter_id,
        firm_id=firm_id,
        workflow_template_id=template.id,
        workflow_version=template.version,
        activated_by_id=activated_by_id,
        activated_at=now,
    )
    session.add(matter_workflow)
    session.flush()

    template_stages = session.scalars(
        select(WorkflowStage)
        .where(WorkflowStage.workflow_template_id == template.id)
        .order_by(WorkflowStage.sort_order)
    ).all()

    created_stages: list[MatterStage] = []
    created_tasks: list[Task] = []
    skipped_stages: list[dict] = []
    first_applicable_stage_id = None

    for template_stage in template_stages:
        stage_conditions = template_stage.applicability_conditions

        if evaluate_applicability_conditions(stage_conditions, conditions, known_condition_keys):
            matter_stage = MatterStage(
                matter_workflow_id=matter_workflow.id,
                workflow_stage_id=template_stage.id,
                name=template_stage.name,
                sort_order=template_stage.sort_order,
                status=StageStatus.PENDING.value,
            )
            session.add(matter_stage)
            session.flush()
            created_stages.append(matter_stage)

            if first_applicable_stage_id is None:
                first_applicable_stage_id = matter_stage.id

            created_tasks.extend(
                _create_tasks_for_stage(
                    session,
                    template_stage,
                    matter_stage,
                    firm_id=firm_id,
                    matter_id=matter_id,
                    activated_by_id=activated_by_id,
                    reference_date=now,
                    matter_created_at=matter_created_at,
                    matter_opened_at=matter_opened_at,
                )
            )
            continue

        skip_reason = build_skip_reason(stage_conditions, conditions, known_condition_keys)
        matter_stage = MatterStage(
            matter_workflow_id=matter_workflow.id,
            workflow_stage_id=template_stage.id,
            name=template_stage.name,
            sort_order=template_stage.sort_order,
            status=StageStatus.SKIPPED.value,
            skipped_reason=skip_reason,
        )
        session.add(matter_stage)
        session.flush()
        created_stages.append(matter_stage)
        skipped_stages.append(
            {"stage_id": matter_stage.id, "name": template_stage.name, "reason": skip_reason}
        )

        write_exception(
            session,
            firm_id=firm_id,
            object_type="stage",
            object_id=matter_stage.id,
            exception_type=ExceptionType.NOT_APPLICABLE,
            reason=skip_reason,
            decision_source=DecisionSource.SYSTEM,
            approved_by_id=activated_by_id,
        )
        create_timeline_event(
            session,
            firm_id=firm_id,
            matter_id=matter_id,
            event_type=TimelineEventType.STAGE_SKIPPED,
            title=f"Stage skipped: {template_stage.name}",
            description=skip_reason,
            actor_type="system",
            actor_id=activated_by_id,
            entity_type="matter_stage",
            entity_id=matter_stage.id,
            metadata={"workflow_stage_id": template_stage.id, "conditions": conditions},
            occurred_at=now,
        )
        logger.info(
            "Stage %r skipped: %s", template_stage.name, skip_reason,
            extra={"matter_id": matter_id, "stage_id": matter_stage.id},
        )

    if first_applicable_stage_id is not None:
        matter_workflow.current_stage_id = first_applicable_stage_id
        session.flush()

    create_timeline_event(
        session,
        firm_id=firm_id,
        matter_id=matter_id,
        event_type=TimelineEventType.WORKFLOW_ACTIVATED,
        title=f"Workflow activated: {template.name}",
        description=f"Version {template.version}",
        actor_type="user",
        actor_id=activated_by_id,
        entity_type="matter_workflow",
        entity_id=matter_workflow.id,
        metadata={
            "template_key": template.key,
            "version": template.version,
            "total_stages": len(template_stages),
            "skipped_stages": len(skipped_stages),
            "total_tasks": len(created_tasks),
        },
        occurred_at=now,
    )

    logger.info(
        "Workflow %s@%s activated: %d stage(s), %d skipped, %d task(s)",
        template.key, template.version, len(created_stages), len(skipped_stages), len(created_tasks),
        extra={
            "firm_id": firm_id,
            "matter_id": matter_id,
            "matter_workflow_id": matter_workflow.id,
            "template_key": template.key,
        },
    )

    return {
        "matter_workflow": matter_workflow,
        "stages": created_stages,
        "tasks": created_tasks,
        "skipped_stages": skipped_stages,
        "reused": False,
    }


def _create_tasks_for_stage(
    session,
    template_stage: WorkflowStage,
    matter_stage: MatterStage,
    *,
    firm_id: str,
    matter_id: str,
    activated_by_id: str,
    reference_date: datetime,
    matter_created_at: datetime | None,
    matter_opened_at: datetime | None,
) -> list[Task]:
    """Create one Task per task template of ``template_stage``, in template order."""
    created: list[Task] = []

    for task_template in template_stage.task_templates:
        due_date = None
        if task_template.relative_due_days is not None:
            due_date = calculate_due_date(
                task_template.relative_due_days,
                task_template.due_date_relative_to,
                reference_date,
                matter_created_at=matter_created_at,
                matter_opened_at=matter_opened_at,
            )

        priority = coerce_enum(TaskPriority, task_template.default_priority, TaskPriority.MEDIUM)

        task = Task(
            firm_id=firm_id,
            matter_id=matter_id,
            matter_stage_id=matter_stage.id,
            workflow_task_template_id=task_template.id,
            title=task_template.title,
            description=task_template.description,
            source="workflow",
            status=TaskStatus.PENDING.value,
            priority=priority.value,
            is_mandatory=task_template.is_mandatory,
            requires_evidence=task_template.requires_evidence,
            required_evidence_types=task_template.required_evidence_types,
            requires_verified_evidence=task_template.requires_verified_evidence,
            requires_approval=task_template.requires_approval,
            required_approver_role=task_template.required_approver_role,
            client_visible=task_template.client_visible,
            regulatory_basis=task_template.regulatory_basis,
            due_date=due_date,
            created_by_id=activated_by_id,
            created_at=reference_date,
        )
        session.add(task)
        created.append(task)

    session.flush()
    return created


def _find_existing_instance(session, matter_id: str, template_key: str) -> MatterWorkflow | None:
    """Earliest workflow instance on the matter activated from any version of ``template_key``."""
    return session.scalars(
        select(MatterWorkflow)
        .join(WorkflowTemplate, MatterWorkflow.workflow_template_id == WorkflowTemplate.id)
        .where(MatterWorkflow.matter_id == matter_id, WorkflowTemplate.key == template_key)
        .order_by(MatterWorkflow.activated_at, MatterWorkflow.id)
        .limit(1)
    ).first()


def _existing_activation_result(session, matter_workflow: MatterWorkflow) -> dict:
    stages = session.scalars(
        select(MatterStage)
        .where(MatterStage.matter_workflow_id == matter_workflow.id)
        .order_by(MatterStage.sort_order)
    ).all()
    stage_ids = [s.id for s in stages]
    tasks = (
        session.scalars(
            select(Task).where(Task.matter_stage_id.in_(stage_ids)).order_by(Task.created_at, Task.id)
        ).all()
        if stage_ids
        else []
    )
    return {
        "matter_workflow": matter_workflow,
        "stages": list(stages),
        "tasks": list(tasks),
        "skipped_stages": [
            {"stage_id": s.id, "name": s.name, "reason": s.skipped_reason}
            for s in stages
            if s.status == StageStatus.SKIPPED.value
        ],
        "reused": True,
    }
