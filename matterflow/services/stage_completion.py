"""
Stage completion predicates.

Determines when a stage is complete based on its template's completion
criteria:

    all_mandatory_tasks  every mandatory task is resolved
    all_tasks            every task is resolved
    custom               evaluated as all_mandatory_tasks

A task is resolved when its status is completed, skipped or not_applicable
(see ``models.task.is_task_resolved``). Only tasks currently bound to the
stage are considered. An empty requirement set is trivially satisfied.

Usage:
    from matterflow.services.stage_completion import check_stage_completion

    status = check_stage_completion(db.session, stage_id)
    if status["is_complete"]: ...
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from matterflow.core.exceptions import NotFoundError
from matterflow.models.task import Task, is_task_resolved
from matterflow.models.workflow import (
    CompletionCriteria,
    MatterStage,
    MatterWorkflow,
    StageStatus,
    WorkflowStage,
    coerce_enum,
)

logger = logging.getLogger(__name__)


def _stage_criteria(session, stage: MatterStage) -> CompletionCriteria:
    """Completion criteria from the stage template; all_mandatory_tasks when it is gone."""
    template_stage = (
        session.get(WorkflowStage, stage.workflow_stage_id) if stage.workflow_stage_id else None
    )
    if template_stage is None:
        return CompletionCriteria.ALL_MANDATORY_TASKS
    return coerce_enum(
        CompletionCriteria, template_stage.completion_criteria, CompletionCriteria.ALL_MANDATORY_TASKS
    )


def check_stage_completion(session, matter_stage_id: str) -> dict:
    """
    Evaluate a stage's completion criteria against its bound tasks.

    Returns:
        {"is_complete", "total_tasks", "resolved_tasks", "mandatory_tasks",
         "resolved_mandatory_tasks",
         "pending_tasks": [{"id", "title", "status", "is_mandatory"}, ...]}

    Raises:
        NotFoundError: the stage does not exist.
    """
    stage = session.get(MatterStage, matter_stage_id)
    if stage is None:
        raise NotFoundError(resource="MatterStage", resource_id=matter_stage_id)

    criteria = _stage_criteria(session, stage)

    stage_tasks = session.scalars(
        select(Task)
        .where(Task.matter_stage_id == matter_stage_id)
        .order_by(Task.created_at, Task.id)
    ).all()

    total_tasks = len(stage_tasks)
    mandatory_tasks = sum(1 for t in stage_tasks if t.is_mandatory)
    resolved_tasks = sum(1 for t in stage_tasks if is_task_resolved(t.status))
    resolved_mandatory_tasks = sum(
        1 for t in stage_tasks if t.is_mandatory and is_task_resolved(t.status)
    )
    pending_tasks = [
        {"id": t.id, "title": t.title, "status": t.status, "is_mandatory": t.is_mandatory}
        for t in stage_tasks
        if not is_task_resolved(t.status)
    ]

    if criteria is CompletionCriteria.ALL_TASKS:
        is_complete = resolved_tasks == total_tasks
    else:
        # all_mandatory_tasks; custom is evaluated the same way
        is_complete = resolved_mandatory_tasks == mandatory_tasks

    return {
        "is_complete": is_complete,
        "total_tasks": total_tasks,
        "resolved_tasks": resolved_tasks,
        "mandatory_tasks": mandatory_tasks,
        "resolved_mandatory_tasks": resolved_mandatory_tasks,
        "pending_tasks": pending_tasks,
    }


def list_workflow_stages(session, matter_workflow_id: str, *, include_skipped: bool = True):
    stmt = select(MatterStage).where(MatterStage.matter_workflow_id == matter_workflow_id)
    if not include_skipped:
        stmt = stmt.where(MatterStage.status != StageStatus.SKIPPED.value)
    return session.scalars(stmt.order_by(MatterStage.sort_order)).all()


def get_workflow_completion_status(session, matter_workflow_id: str) -> dict[str, dict]:
    """Completion status of every stage in a workflow, keyed by stage id (sort order)."""
    if session.get(MatterWorkflow, matter_workflow_id) is None:
        raise NotFoundError(resource="MatterWorkflow", resource_id=matter_workflow_id)

    return {
        stage.id: check_stage_completion(session, stage.id)
        for stage in list_workflow_stages(session, matter_workflow_id)
    }


def calculate_workflow_progress(session, matter_workflow_id: str) -> dict:
    """
    Overall progress across non-skipped stages, by mandatory tasks.

    ``progress_percent`` is 100 when nothing is mandatory.

    Returns:
        {"total_mandatory_tasks", "resolved_mandatory_tasks", "progress_percent"}
    """
    if session.get(MatterWorkflow, matter_workflow_id) is None:
        raise NotFoundError(resource="MatterWorkflow", resource_id=matter_workflow_id)

    total = 0
    resolved = 0
    for stage in list_workflow_stages(session, matter_workflow_id, include_skipped=False):
        status = check_stage_completion(session, stage.id)
        total += status["mandatory_tasks"]
        resolved += status["resolved_mandatory_tasks"]

    # round-half-up, so 2/3 -> 67 and 1/8 -> 13
    progress_percent = 100 if total == 0 else int(resolved * 100 / total + 0.5)

    logger.debug(
        "Workflow progress %s/%s (%s%%)", resolved, total, progress_percent,
        extra={"matter_workflow_id": matter_workflow_id},
    )
    return {
        "total_mandatory_tasks": total,
        "resolved_mandatory_tasks": resolved,
        "progress_percent": progress_percent,
    }
