"""
Tests: stage completion criteria and workflow progress.

Setup strategy:
    Templates are built with the ``make_template`` fixture and activated
    on the test matter; task statuses are then set directly on the ORM
    rows, the way the task subsystem would before notifying the engine.
"""

import pytest

from matterflow.core.exceptions import NotFoundError, ValidationError
from matterflow.models.workflow import MatterStage
from matterflow.services.stage_completion import (
    calculate_workflow_progress,
    check_stage_completion,
    get_workflow_completion_status,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _tasks_of(result, stage):
    return [t for t in result["tasks"] if t.matter_stage_id == stage.id]


def _set_status(session, tasks, status):
    for task in tasks:
        task.status = status
    session.flush()


def _single_stage(make_template, activate, criteria, tasks):
    template = make_template([{"name": "Only", "completion_criteria": criteria, "tasks": tasks}])
    result = activate(template)
    return result, result["stages"][0]


# ═════════════════════════════════════════════════════════════════════════════
# check_stage_completion
# ═════════════════════════════════════════════════════════════════════════════


def test_mandatory_criteria_ignores_optional_tasks(session, make_template, activate):
    result, stage = _single_stage(make_template, activate, "all_mandatory_tasks", [
        {"title": "Mandatory", "is_mandatory": True},
        {"title": "Optional", "is_mandatory": False},
    ])
    mandatory = [t for t in _tasks_of(result, stage) if t.is_mandatory]

    before = check_stage_completion(session, stage.id)
    assert before["is_complete"] is False
    assert before["total_tasks"] == 2
    assert before["mandatory_tasks"] == 1
    assert before["resolved_mandatory_tasks"] == 0

    _set_status(session, mandatory, "completed")
    after = check_stage_completion(session, stage.id)
    assert after["is_complete"] is True
    assert after["resolved_tasks"] == 1
    assert [t["title"] for t in after["pending_tasks"]] == ["Optional"]


@pytest.mark.parametrize("criteria", ["all_mandatory_tasks", "custom"])
def test_zero_mandatory_tasks_is_complete(session, make_template, activate, criteria):
    _, stage = _single_stage(make_template, activate, criteria, [
        {"title": "Optional A"},
        {"title": "Optional B"},
    ])
    status = check_stage_completion(session, stage.id)
    assert status["is_complete"] is True
    assert status["mandatory_tasks"] == 0
    assert len(status["pending_tasks"]) == 2


def test_all_tasks_with_zero_tasks_is_complete(session, make_template, activate):
    _, stage = _single_stage(make_template, activate, "all_tasks", [])
    status = check_stage_completion(session, stage.id)
    assert status["is_complete"] is True
    assert status["total_tasks"] == 0


def test_all_tasks_requires_optional_tasks_too(session, make_template, activate):
    result, stage = _single_stage(make_template, activate, "all_tasks", [
        {"title": "Mandatory", "is_mandatory": True},
        {"title": "Optional"},
    ])
    tasks = _tasks_of(result, stage)
    _set_status(session, [t for t in tasks if t.is_mandatory], "completed")
    assert check_stage_completion(session, stage.id)["is_complete"] is False

    _set_status(session, [t for t in tasks if not t.is_mandatory], "not_applicable")
    assert check_stage_completion(session, stage.id)["is_complete"] is True


@pytest.mark.parametrize("status,resolved", [
    ("completed", True),
    ("skipped", True),
    ("not_applicable", True),
    ("cancelled", False),
    ("in_progress", False),
    ("pending", False),
])
def test_resolved_statuses(session, make_template, activate, status, resolved):
    result, stage = _single_stage(make_template, activate, "all_mandatory_tasks", [
        {"title": "Mandatory", "is_mandatory": True},
    ])
    _set_status(session, _tasks_of(result, stage), status)
    assert check_stage_completion(session, stage.id)["is_complete"] is resolved


def test_only_tasks_bound_to_the_stage_count(session, make_template, activate):
    result, stage = _single_stage(make_template, activate, "all_mandatory_tasks", [
        {"title": "Mandatory", "is_mandatory": True},
    ])
    task = _tasks_of(result, stage)[0]
    task.matter_stage_id = None
    session.flush()

    status = check_stage_completion(session, stage.id)
    assert status["total_tasks"] == 0
    assert status["is_complete"] is True


def test_unknown_stage_raises_not_found(session):
    with pytest.raises(NotFoundError):
        check_stage_completion(session, "no-such-stage")


def test_stage_without_template_defaults_to_mandatory_criteria(session, make_template, activate):
    result, _ = _single_stage(make_template, activate, "all_tasks", [])
    orphan = MatterStage(
        matter_workflow_id=result["matter_workflow"].id,
        workflow_stage_id=None,
        name="Ad hoc",
        sort_order=99,
    )
    session.add(orphan)
    session.flush()

    assert check_stage_completion(session, orphan.id)["is_complete"] is True


def test_unrecognised_stored_criteria_raises(session, make_template, activate):
    _, stage = _single_stage(make_template, activate, "all_tasks", [])
    stage.template_stage.completion_criteria = "majority_vote"
    session.flush()

    with pytest.raises(ValidationError):
        check_stage_completion(session, stage.id)


# ═════════════════════════════════════════════════════════════════════════════
# Workflow-level aggregates
# ═════════════════════════════════════════════════════════════════════════════


def test_completion_status_keyed_by_stage_in_order(session, make_template, activate):
    template = make_template([
        {"name": "First", "tasks": [{"title": "A", "is_mandatory": True}]},
        {"name": "Second", "tasks": []},
    ])
    result = activate(template)
    statuses = get_workflow_completion_status(session, result["matter_workflow"].id)

    assert list(statuses) == [s.id for s in result["stages"]]
    assert statuses[result["stages"][0].id]["is_complete"] is False
    assert statuses[result["stages"][1].id]["is_complete"] is True


def test_progress_rounds_half_up_and_excludes_skipped(session, make_template, activate):
    template = make_template([
        {"name": "One", "tasks": [
            {"title": "A", "is_mandatory": True},
            {"title": "B", "is_mandatory": True},
        ]},
        {"name": "Two", "tasks": [{"title": "C", "is_mandatory": True}]},
        {"name": "Lender", "applicability_conditions": {"has_mortgage": True}, "tasks": [
            {"title": "D", "is_mandatory": True},
        ]},
    ])
    result = activate(template, conditions={"has_mortgage": False})
    first, second = result["stages"][0], result["stages"][1]
    _set_status(session, _tasks_of(result, first), "completed")

    progress = calculate_workflow_progress(session, result["matter_workflow"].id)
    assert progress == {
        "total_mandatory_tasks": 3,
        "resolved_mandatory_tasks": 2,
        "progress_percent": 67,
    }
    assert second.status == "pending"


def test_progress_is_full_when_nothing_mandatory(session, make_template, activate):
    template = make_template([{"name": "Only", "tasks": [{"title": "Optional"}]}])
    result = activate(template)
    progress = calculate_workflow_progress(session, result["matter_workflow"].id)
    assert progress["progress_percent"] == 100
    assert progress["total_mandatory_tasks"] == 0


def test_workflow_aggregates_raise_for_unknown_workflow(session):
    with pytest.raises(NotFoundError):
        get_workflow_completion_status(session, "missing")
    with pytest.raises(NotFoundError):
        calculate_workflow_progress(session, "missing")
