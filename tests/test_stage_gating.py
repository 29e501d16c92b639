"""
Tests: gate checks between stages and audited gate overrides.

Covers:
    - hard gates block and report the earliest blocking stage
    - soft gates warn without blocking
    - completed / skipped earlier stages never block
    - override_gate writes the exception log entry and timeline event
"""

import pytest
from sqlalchemy import select

from matterflow.core.exceptions import NotFoundError, ValidationError
from matterflow.models.audit import TaskException
from matterflow.models.timeline import TimelineEvent
from matterflow.models.workflow import GateType
from matterflow.services.stage_gating import check_gate, get_stage_gate_type, override_gate

FIRM_ID = "firm-0001"
MATTER_ID = "matter-0001"
USER_ID = "user-0001"


# ── Helpers ──────────────────────────────────────────────────────────────────


def _stage(name, gate, mandatory=1, **extra):
    return {
        "name": name,
        "gate_type": gate,
        "tasks": [{"title": f"{name} task {i}", "is_mandatory": True} for i in range(mandatory)],
        **extra,
    }


def _complete_stage_tasks(session, result, stage):
    for task in result["tasks"]:
        if task.matter_stage_id == stage.id:
            task.status = "completed"
    session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# check_gate
# ═════════════════════════════════════════════════════════════════════════════


def test_hard_gate_blocks_next_stage(session, make_template, activate):
    result = activate(make_template([_stage("S1", "hard"), _stage("S2", "none")]))
    s1, s2 = result["stages"]

    gate = check_gate(session, s2.id)
    assert gate["can_proceed"] is False
    assert gate["is_blocked"] is True
    assert gate["gate_type"] == "hard"
    assert gate["blocked_by"] == {
        "stage_id": s1.id,
        "stage_name": "S1",
        "reason": "1 mandatory task(s) incomplete",
    }


def test_first_stage_is_never_blocked(session, make_template, activate):
    result = activate(make_template([_stage("S1", "hard")]))
    gate = check_gate(session, result["stages"][0].id)
    assert gate == {
        "can_proceed": True,
        "gate_type": "none",
        "is_blocked": False,
        "blocked_by": None,
        "warnings": [],
    }


def test_blocked_by_points_at_earliest_hard_stage(session, make_template, activate):
    template = make_template([
        _stage("Soft", "soft"),
        _stage("Early hard", "hard", mandatory=2),
        _stage("Late hard", "hard"),
        _stage("Target", "none"),
    ])
    result = activate(template)
    target = result["stages"][3]

    gate = check_gate(session, target.id)
    assert gate["blocked_by"]["stage_name"] == "Early hard"
    assert gate["blocked_by"]["reason"] == "2 mandatory task(s) incomplete"
    # Soft warnings gathered before the block are kept
    assert gate["warnings"] == ['Stage "Soft" has 1 incomplete mandatory task(s)']


def test_soft_gate_warns_but_allows(session, make_template, activate):
    result = activate(make_template([_stage("Searches", "soft", mandatory=2), _stage("Next", "none")]))
    gate = check_gate(session, result["stages"][1].id)

    assert gate["can_proceed"] is True
    assert gate["gate_type"] == "soft"
    assert gate["blocked_by"] is None
    assert gate["warnings"] == ['Stage "Searches" has 2 incomplete mandatory task(s)']


def test_none_gate_never_blocks(session, make_template, activate):
    result = activate(make_template([_stage("Info", "none", mandatory=3), _stage("Next", "hard")]))
    gate = check_gate(session, result["stages"][1].id)
    assert gate["can_proceed"] is True
    assert gate["warnings"] == []


def test_completed_hard_stage_does_not_block(session, make_template, activate):
    result = activate(make_template([_stage("S1", "hard"), _stage("S2", "none")]))
    s1, s2 = result["stages"]
    _complete_stage_tasks(session, result, s1)

    assert check_gate(session, s2.id)["can_proceed"] is True


def test_hard_stage_with_only_optional_tasks_does_not_block(session, make_template, activate):
    template = make_template([
        {"name": "Optional only", "gate_type": "hard", "tasks": [{"title": "Nice to have"}]},
        _stage("Next", "none"),
    ])
    result = activate(template)
    assert check_gate(session, result["stages"][1].id)["can_proceed"] is True


def test_skipped_hard_stage_does_not_block(session, make_template, activate):
    template = make_template([
        _stage("Lender", "hard", applicability_conditions={"has_mortgage": True}),
        _stage("Exchange", "none"),
    ])
    result = activate(template, conditions={})
    lender, exchange = result["stages"]
    assert lender.status == "skipped"

    assert check_gate(session, exchange.id)["can_proceed"] is True


def test_later_stages_are_not_considered(session, make_template, activate):
    result = activate(make_template([_stage("S1", "none"), _stage("S2", "hard")]))
    assert check_gate(session, result["stages"][0].id)["can_proceed"] is True


def test_check_gate_unknown_stage(session):
    with pytest.raises(NotFoundError):
        check_gate(session, "missing-stage")


def test_get_stage_gate_type(session, make_template, activate):
    result = activate(make_template([_stage("S1", "hard"), _stage("S2", "soft")]))
    assert get_stage_gate_type(session, result["stages"][0].id) is GateType.HARD
    assert get_stage_gate_type(session, result["stages"][1].id) is GateType.SOFT
    assert get_stage_gate_type(session, "missing-stage") is GateType.NONE


# ═════════════════════════════════════════════════════════════════════════════
# override_gate
# ═════════════════════════════════════════════════════════════════════════════


def test_override_gate_records_exception_and_timeline(session, make_template, activate):
    result = activate(make_template([_stage("S1", "hard", mandatory=2), _stage("S2", "none")]))
    s1 = result["stages"][0]
    blocked_ids = sorted(t.id for t in result["tasks"] if t.matter_stage_id == s1.id)

    record = override_gate(
        session,
        firm_id=FIRM_ID,
        matter_id=MATTER_ID,
        stage_id=s1.id,
        reason="  Partner approved early exchange  ",
        overridden_by_id=USER_ID,
    )

    assert record.exception_type == "gate_override"
    assert record.decision_source == "user"
    assert record.object_type == "stage"
    assert record.object_id == s1.id
    assert record.reason == "Partner approved early exchange"
    assert record.approved_by_id == USER_ID
    assert record.exception_metadata["gate_type"] == "hard"
    assert sorted(record.exception_metadata["blocked_tasks"]) == blocked_ids
    assert record.exception_metadata["pending_mandatory_count"] == 2

    events = session.scalars(
        select(TimelineEvent).where(TimelineEvent.event_type == "stage_gate_overridden")
    ).all()
    assert len(events) == 1
    assert events[0].entity_id == s1.id
    assert events[0].actor_type == "user"


def test_override_gate_does_not_move_stages(session, make_template, activate):
    result = activate(make_template([_stage("S1", "hard"), _stage("S2", "none")]))
    s1, s2 = result["stages"]
    override_gate(session, firm_id=FIRM_ID, matter_id=MATTER_ID, stage_id=s1.id,
                  reason="ok", overridden_by_id=USER_ID)

    assert s1.status == "pending"
    assert s2.status == "pending"


@pytest.mark.parametrize("reason", ["", "   ", None])
def test_override_gate_requires_reason(session, make_template, activate, reason):
    result = activate(make_template([_stage("S1", "hard")]))
    with pytest.raises(ValidationError):
        override_gate(session, firm_id=FIRM_ID, matter_id=MATTER_ID,
                      stage_id=result["stages"][0].id, reason=reason, overridden_by_id=USER_ID)

    assert session.scalars(
        select(TaskException).where(TaskException.exception_type == "gate_override")
    ).all() == []


def test_override_gate_unknown_stage(session):
    with pytest.raises(NotFoundError):
        override_gate(session, firm_id=FIRM_ID, matter_id=MATTER_ID, stage_id="missing",
                      reason="because", overridden_by_id=USER_ID)
