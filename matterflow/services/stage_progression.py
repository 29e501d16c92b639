"""
Stage progression controller.

Moves matter stages through their state machine in response to task
status changes and manual advances:

    pending --(first bound task enters in_progress)--> in_progress
    in_progress --(completion criteria met)--> completed
    pending --(criteria met before any task started)--> completed

When a stage completes, the next non-skipped stage is started unless a
hard gate earlier in the workflow blocks it. ``current_stage_id`` on the
workflow always points at the first stage that is neither completed nor
skipped, or is None once every stage is resolved.

Usage:
    from matterflow.services.stage_progression import handle_task_status_change

    task.status = "completed"
    result = handle_task_status_change(
        db.session,
        firm_id=task.firm_id,
        matter_id=task.matter_id,
        matter_stage_id=task.matter_stage_id,
        task_status=task.status,
        user_id="user-1",
    )
    db.session.commit()

Callers must serialise calls per stage; concurrent task updates on the same
stage are not deconflicted here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from matterflow.core.exceptions import (
    GateBlockedError,
    NotFoundError,
    StageTransitionError,
    ValidationError,
)
from matterflow.models.task import Task, TaskStatus
from matterflow.models.timeline import TimelineEventType, create_timeline_event
from matterflow.models.workflow import (
    DueDateAnchor,
    MatterStage,
    MatterWorkflow,
    StageStatus,
)
from matterflow.services.due_dates import calculate_due_date
from matterflow.services.stage_completion import check_stage_completion
from matterflow.services.stage_gating import check_gate, list_hard_blockers, override_gate

logger = logging.getLogger(__name__)


def _next_runnable_stage(session, matter_workflow_id: str, after_sort_order: int):
    """First non-skipped stage strictly after ``after_sort_order``."""
    return session.scalars(
        select(MatterStage)
        .where(
            MatterStage.matter_workflow_id == matter_workflow_id,
            MatterStage.sort_order > after_sort_order,
            MatterStage.status != StageStatus.SKIPPED.value,
        )
        .order_by(MatterStage.sort_order)
        .limit(1)
    ).first()


def _ensure_transition(stage: MatterStage, target: StageStatus):
    if not stage.can_transition_to(target):
        raise StageTransitionError(
            f"Cannot move stage '{stage.name}' from {stage.status} to {target.value}",
            stage_id=stage.id,
        )


# ═════════════════════════════════════════════════════════════════════════════
# Stage transitions
# ═════════════════════════════════════════════════════════════════════════════

def start_stage(
    session,
    *,
    firm_id: str,
    matter_id: str,
    stage_id: str,
    user_id: str,
    enforce_gate: bool = False,
) -> MatterStage:
    """
    Move a pending stage to in_progress and make it the workflow's current stage.

    Tasks in the stage whose template anchors their due date on
    ``stage_started`` are re-dated from the new ``started_at``.

    Raises:
        NotFoundError: the stage does not exist.
        StageTransitionError: the stage is not pending.
        GateBlockedError: ``enforce_gate`` is set and a hard gate blocks.
    """
    stage = session.get(MatterStage, stage_id)
    if stage is None:
        raise NotFoundError(resource="MatterStage", resource_id=stage_id)
    _ensure_transition(stage, StageStatus.IN_PROGRESS)

    if enforce_gate:
        gate = check_gate(session, stage_id)
        if not gate["can_proceed"]:
            blocked_by = gate["blocked_by"]
            raise GateBlockedError(
                stage_id=blocked_by["stage_id"],
                stage_name=blocked_by["stage_name"],
                reason=blocked_by["reason"],
            )

    now = datetime.now(timezone.utc)
    stage.status = StageStatus.IN_PROGRESS.value
    stage.started_at = now

    workflow = session.get(MatterWorkflow, stage.matter_workflow_id)
    if workflow is not None:
        workflow.current_stage_id = stage.id

    redated = _redate_stage_started_tasks(session, stage)
    session.flush()

    create_timeline_event(
        session,
        firm_id=firm_id,
        matter_id=matter_id,
        event_type=TimelineEventType.STAGE_STARTED,
        title=f"Stage started: {stage.name}",
        actor_type="system",
        actor_id=user_id,
        entity_type="matter_stage",
        entity_id=stage.id,
        occurred_at=now,
    )
    logger.info(
        "Stage %r started (%d task(s) re-dated)", stage.name, redated,
        extra={"matter_id": matter_id, "stage_id": stage.id,
               "matter_workflow_id": stage.matter_workflow_id},
    )
    return stage


def complete_stage(
    session,
    *,
    firm_id: str,
    matter_id: str,
    stage_id: str,
    user_id: str,
) -> MatterStage:
    """
    Mark a stage completed.

    Raises:
        NotFoundError: the stage does not exist.
        StageTransitionError: the stage is already completed or skipped.
    """
    stage = session.get(MatterStage, stage_id)
    if stage is None:
        raise NotFoundError(resource="MatterStage", resource_id=stage_id)
    _ensure_transition(stage, StageStatus.COMPLETED)

    now = datetime.now(timezone.utc)
    stage.status = StageStatus.COMPLETED.value
    stage.completed_at = now
    session.flush()

    create_timeline_event(
        session,
        firm_id=firm_id,
        matter_id=matter_id,
        event_type=TimelineEventType.STAGE_COMPLETED,
        title=f"Stage completed: {stage.name}",
        actor_type="system",
        actor_id=user_id,
        entity_type="matter_stage",
        entity_id=stage.id,
        occurred_at=now,
    )
    logger.info(
        "Stage %r completed", stage.name,
        extra={"matter_id": matter_id, "stage_id": stage.id,
               "matter_workflow_id": stage.matter_workflow_id},
    )
    return stage


def _redate_stage_started_tasks(session, stage: MatterStage) -> int:
    """Recompute due dates of unresolved tasks anchored on the stage start."""
    tasks = session.scalars(
        select(Task).where(
            Task.matter_stage_id == stage.id,
            Task.status.in_([TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value]),
        )
    ).all()

    count = 0
    for task in tasks:
        template = task.task_template
        if template is None or template.relative_due_days is None:
            continue
        # Unknown stored anchors keep their creation-time due date
        if template.due_date_relative_to != DueDateAnchor.STAGE_STARTED.value:
            continue
        task.due_date = calculate_due_date(
            template.relative_due_days,
            DueDateAnchor.STAGE_STARTED,
            stage.started_at,
            stage_started_at=stage.started_at,
        )
        count += 1
    return count


# ═════════════════════════════════════════════════════════════════════════════
# Automatic progression
# ═════════════════════════════════════════════════════════════════════════════

def handle_task_status_change(
    session,
    *,
    firm_id: str,
    matter_id: str,
    matter_stage_id: str,
    task_status: str,
    user_id: str,
) -> dict:
    """
    React to a task status change on ``matter_stage_id``.

    Call after the task's new status has been written. Starts the stage
    when its first task goes in_progress, completes it once its criteria
    are met, then tries to start the next stage.

    Returns:
        {"stage_started": bool, "stage_completed": bool,
         "next_stage_started": bool, "current_stage_id": str | None}
    """
    result = {
        "stage_started": False,
        "stage_completed": False,
        "next_stage_started": False,
        "current_stage_id": None,
    }

    stage = session.get(MatterStage, matter_stage_id)
    if stage is None or stage.status == StageStatus.SKIPPED.value:
        return result

    if isinstance(task_status, TaskStatus):
        task_status = task_status.value

    if task_status == TaskStatus.IN_PROGRESS.value and stage.status == StageStatus.PENDING.value:
        start_stage(
            session, firm_id=firm_id, matter_id=matter_id, stage_id=stage.id, user_id=user_id
        )
        result["stage_started"] = True

    completion = check_stage_completion(session, stage.id)

    if completion["is_complete"] and stage.status != StageStatus.COMPLETED.value:
        complete_stage(
            session, firm_id=firm_id, matter_id=matter_id, stage_id=stage.id, user_id=user_id
        )
        result["stage_completed"] = True

        started, current_stage_id = _try_start_next_stage(
            session,
            firm_id=firm_id,
            matter_id=matter_id,
            completed_stage=stage,
            user_id=user_id,
        )
        result["next_stage_started"] = started
        result["current_stage_id"] = current_stage_id
    else:
        result["current_stage_id"] = _refresh_current_stage_id(session, stage.matter_workflow_id)

    return result


def _try_start_next_stage(
    session,
    *,
    firm_id: str,
    matter_id: str,
    completed_stage: MatterStage,
    user_id: str,
) -> tuple[bool, str | None]:
    """Start the stage after ``completed_stage`` if the gates allow it.

    Returns (started, current_stage_id).
    """
    workflow_id = completed_stage.matter_workflow_id
    next_stage = _next_runnable_stage(session, workflow_id, completed_stage.sort_order)

    if next_stage is None:
        return False, _refresh_current_stage_id(session, workflow_id)

    gate = check_gate(session, next_stage.id)
    if not gate["can_proceed"]:
        logger.info(
            "Next stage %r held by gate on %r", next_stage.name, gate["blocked_by"]["stage_name"],
            extra={"matter_id": matter_id, "stage_id": next_stage.id, "gate_type": gate["gate_type"]},
        )
        return False, _refresh_current_stage_id(session, workflow_id)

    if next_stage.status == StageStatus.PENDING.value:
        start_stage(
            session, firm_id=firm_id, matter_id=matter_id, stage_id=next_stage.id, user_id=user_id
        )
        return True, next_stage.id

    return False, _refresh_current_stage_id(session, workflow_id)


def _refresh_current_stage_id(session, matter_workflow_id: str) -> str | None:
    """Persist and return the first stage that is neither completed nor skipped."""
    current = session.scalars(
        select(MatterStage)
        .where(
            MatterStage.matter_workflow_id == matter_workflow_id,
            MatterStage.status.notin_([StageStatus.COMPLETED.value, StageStatus.SKIPPED.value]),
        )
        .order_by(MatterStage.sort_order)
        .limit(1)
    ).first()

    current_stage_id = current.id if current is not None else None

    workflow = session.get(MatterWorkflow, matter_workflow_id)
    if workflow is not None and workflow.current_stage_id != current_stage_id:
        workflow.current_stage_id = current_stage_id
        session.flush()
    return current_stage_id


# ═════════════════════════════════════════════════════════════════════════════
# Manual advance
# ═════════════════════════════════════════════════════════════════════════════

def _advance_failure(error: str, **extra) -> dict:
    return {"success": False, "new_stage_id": None, "error": error, "warnings": [], **extra}


def advance_to_next_stage(
    session,
    *,
    firm_id: str,
    matter_id: str,
    matter_workflow_id: str,
    user_id: str,
    override_reason: str | None = None,
) -> dict:
    """
    Manually move a workflow on to the stage after its current one.

    The current stage is not completed by this call. If a hard gate blocks
    and ``override_reason`` is given, an override is recorded against every
    incomplete hard-gated stage before the next one, and the next stage is
    started in the same transaction. Without a reason a blocked advance
    writes nothing.

    Returns:
        {"success": bool, "new_stage_id": str | None, "error": str | None,
         "warnings": [str], "overrides": [TaskException]}

    Raises:
        NotFoundError: the workflow does not exist.
    """
    workflow = session.get(MatterWorkflow, matter_workflow_id)
    if workflow is None:
        raise NotFoundError(resource="MatterWorkflow", resource_id=matter_workflow_id)

    if not workflow.current_stage_id:
        return _advance_failure("No current stage")

    current_stage = session.get(MatterStage, workflow.current_stage_id)
    if current_stage is None:
        return _advance_failure("Current stage not found")

    next_stage = _next_runnable_stage(session, matter_workflow_id, current_stage.sort_order)
    if next_stage is None:
        return _advance_failure("No next stage available")

    gate = check_gate(session, next_stage.id)
    reason = (override_reason or "").strip()
    overrides = []

    if not gate["can_proceed"]:
        blocked_by = gate["blocked_by"]
        if not reason:
            return _advance_failure(
                f"Blocked by {blocked_by['stage_name']}: {blocked_by['reason']}",
                blocked_by=blocked_by,
            )
        # One audit record per bypassed hard gate, not only the first blocker
        for blocker in list_hard_blockers(session, next_stage.id):
            overrides.append(override_gate(
                session,
                firm_id=firm_id,
                matter_id=matter_id,
                stage_id=blocker["stage_id"],
                reason=reason,
                overridden_by_id=user_id,
            ))

    if next_stage.status == StageStatus.PENDING.value:
        start_stage(
            session, firm_id=firm_id, matter_id=matter_id, stage_id=next_stage.id, user_id=user_id
        )

    logger.info(
        "Workflow advanced to stage %r (%d gate override(s))", next_stage.name, len(overrides),
        extra={"matter_id": matter_id, "matter_workflow_id": matter_workflow_id,
               "stage_id": next_stage.id},
    )
    return {
        "success": True,
        "new_stage_id": next_stage.id,
        "error": None,
        "warnings": gate["warnings"],
        "overrides": overrides,
    }


def advance_with_override(
    session,
    *,
    firm_id: str,
    matter_id: str,
    matter_workflow_id: str,
    user_id: str,
    reason: str,
) -> dict:
    """Advance past a hard gate, recording the override. ``reason`` is required."""
    if not (reason or "").strip():
        raise ValidationError("An override reason is required", details={"reason": "required"})
    return advance_to_next_stage(
        session,
        firm_id=firm_id,
        matter_id=matter_id,
        matter_workflow_id=matter_workflow_id,
        user_id=user_id,
        override_reason=reason,
    )
