"""
Stage gate checking.

Decides whether a target stage may start, given the stages before it in
the same workflow instance:

    hard  an incomplete earlier stage blocks; the earliest one is reported
    soft  an incomplete earlier stage adds a warning; scanning continues
    none  never blocks

Completed and skipped earlier stages never block. Overriding a gate is an
audited decision: ``override_gate`` appends a ``gate_override``
TaskException and a ``stage_gate_overridden`` timeline event but does not
move any stage itself.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from matterflow.core.exceptions import NotFoundError, ValidationError
from matterflow.models.audit import DecisionSource, ExceptionType, write_exception
from matterflow.models.timeline import TimelineEventType, create_timeline_event
from matterflow.models.workflow import GateType, MatterStage, WorkflowStage, coerce_enum
from matterflow.services.stage_completion import check_stage_completion

logger = logging.getLogger(__name__)


def _template_gate_type(session, stage: MatterStage) -> GateType:
    template_stage = (
        session.get(WorkflowStage, stage.workflow_stage_id) if stage.workflow_stage_id else None
    )
    if template_stage is None:
        return GateType.NONE
    return coerce_enum(GateType, template_stage.gate_type, GateType.NONE)


def _pending_mandatory(completion: dict) -> list[dict]:
    return [t for t in completion["pending_tasks"] if t["is_mandatory"]]


def _incomplete_gated_stages(session, target: MatterStage):
    """Yield (stage, gate_type, incomplete_count) for unresolved gated stages before ``target``."""
    previous_stages = session.scalars(
        select(MatterStage)
        .where(
            MatterStage.matter_workflow_id == target.matter_workflow_id,
            MatterStage.sort_order < target.sort_order,
        )
        .order_by(MatterStage.sort_order)
    ).all()

    for stage in previous_stages:
        if stage.is_resolved:
            continue

        gate_type = _template_gate_type(session, stage)
        if gate_type is GateType.NONE:
            continue

        completion = check_stage_completion(session, stage.id)
        if completion["is_complete"]:
            continue

        yield stage, gate_type, len(_pending_mandatory(completion))


def _get_stage(session, stage_id: str) -> MatterStage:
    stage = session.get(MatterStage, stage_id)
    if stage is None:
        raise NotFoundError(resource="MatterStage", resource_id=stage_id)
    return stage


def check_gate(session, target_stage_id: str) -> dict:
    """
    Check whether progression to ``target_stage_id`` is blocked by an earlier gate.

    Returns:
        {"can_proceed": bool, "gate_type": "hard" | "soft" | "none",
         "is_blocked": bool,
         "blocked_by": {"stage_id", "stage_name", "reason"} | None,
         "warnings": [str, ...]}

    Raises:
        NotFoundError: the target stage does not exist.
    """
    target = _get_stage(session, target_stage_id)
    warnings: list[str] = []

    for stage, gate_type, incomplete in _incomplete_gated_stages(session, target):
        if gate_type is GateType.HARD:
            reason = f"{incomplete} mandatory task(s) incomplete"
            logger.info(
                "Gate blocked by stage %r: %s", stage.name, reason,
                extra={"stage_id": target_stage_id, "gate_type": gate_type.value},
            )
            return {
                "can_proceed": False,
                "gate_type": GateType.HARD.value,
                "is_blocked": True,
                "blocked_by": {
                    "stage_id": stage.id,
                    "stage_name": stage.name,
                    "reason": reason,
                },
                "warnings": warnings,
            }

        warnings.append(f'Stage "{stage.name}" has {incomplete} incomplete mandatory task(s)')

    return {
        "can_proceed": True,
        "gate_type": (GateType.SOFT if warnings else GateType.NONE).value,
        "is_blocked": False,
        "blocked_by": None,
        "warnings": warnings,
    }


def list_hard_blockers(session, target_stage_id: str) -> list[dict]:
    """
    Every incomplete hard-gated stage before ``target_stage_id``, in sort order.

    ``check_gate`` stops at the first of these; starting the target past
    its gates means overriding all of them.

    Returns:
        [{"stage_id", "stage_name", "reason"}, ...]

    Raises:
        NotFoundError: the target stage does not exist.
    """
    target = _get_stage(session, target_stage_id)
    return [
        {
            "stage_id": stage.id,
            "stage_name": stage.name,
            "reason": f"{incomplete} mandatory task(s) incomplete",
        }
        for stage, gate_type, incomplete in _incomplete_gated_stages(session, target)
        if gate_type is GateType.HARD
    ]


def get_stage_gate_type(session, matter_stage_id: str) -> GateType:
    """Gate type of the stage's own template; ``none`` for an unknown stage."""
    stage = session.get(MatterStage, matter_stage_id)
    if stage is None:
        return GateType.NONE
    return _template_gate_type(session, stage)


def override_gate(
    session,
    *,
    firm_id: str,
    matter_id: str,
    stage_id: str,
    reason: str,
    overridden_by_id: str,
):
    """
    Record a user decision to proceed past ``stage_id``'s gate.

    Writes the exception log entry (gate type, blocked mandatory task ids)
    and a timeline event. Callers start the next stage separately, or use
    ``stage_progression.advance_with_override`` to do both at once.

    Returns:
        The flushed TaskException.

    Raises:
        NotFoundError: the stage does not exist.
        ValidationError: the reason is empty.
    """
    if not (reason or "").strip():
        raise ValidationError("An override reason is required", details={"reason": "required"})

    stage = session.get(MatterStage, stage_id)
    if stage is None:
        raise NotFoundError(resource="MatterStage", resource_id=stage_id)

    gate_type = _template_gate_type(session, stage)
    completion = check_stage_completion(session, stage_id)
    blocked_task_ids = [t["id"] for t in _pending_mandatory(completion)]
    reason = reason.strip()

    record = write_exception(
        session,
        firm_id=firm_id,
        object_type="stage",
        object_id=stage_id,
        exception_type=ExceptionType.GATE_OVERRIDE,
        reason=reason,
        decision_source=DecisionSource.USER,
        approved_by_id=overridden_by_id,
        metadata={
            "gate_type": gate_type.value,
            "blocked_tasks": blocked_task_ids,
            "pending_mandatory_count": len(blocked_task_ids),
        },
    )

    create_timeline_event(
        session,
        firm_id=firm_id,
        matter_id=matter_id,
        event_type=TimelineEventType.STAGE_GATE_OVERRIDDEN,
        title=f"Gate overridden: {stage.name}",
        description=reason,
        actor_type="user",
        actor_id=overridden_by_id,
        entity_type="matter_stage",
        entity_id=stage_id,
        metadata={"gate_type": gate_type.value, "blocked_task_ids": blocked_task_ids},
    )

    logger.info(
        "Gate overridden on stage %r (%d mandatory task(s) outstanding)",
        stage.name, len(blocked_task_ids),
        extra={
            "firm_id": firm_id,
            "matter_id": matter_id,
            "stage_id": stage_id,
            "gate_type": gate_type.value,
        },
    )
    return record
