"""
Tests: workflow template authoring, version lookup and the matter overview.
"""

from datetime import timedelta

import pytest

from matterflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from matterflow.models.workflow import WorkflowTemplate
from matterflow.services.workflow_template_service import (
    create_workflow_template,
    deactivate_template,
    get_active_template,
    get_matter_workflow_overview,
    release_template,
)


def _definition(**overrides):
    definition = {
        "key": "sale",
        "version": "1.0.0",
        "name": "Sale",
        "practice_area": "conveyancing",
        "stages": [
            {"name": "Instruction", "gate_type": "hard", "tasks": [
                {"title": "Record instruction", "is_mandatory": True},
            ]},
            {"name": "Exchange", "tasks": [
                {"title": "Exchange contracts", "is_mandatory": True, "default_priority": "urgent"},
            ]},
        ],
    }
    definition.update(overrides)
    return definition


# ═════════════════════════════════════════════════════════════════════════════
# create_workflow_template
# ═════════════════════════════════════════════════════════════════════════════


def test_create_applies_defaults(session):
    template = create_workflow_template(session, _definition())

    assert template.is_active is True
    assert template.is_released is False
    first, second = template.stages
    assert first.sort_order == 1
    assert second.sort_order == 2
    assert second.gate_type == "none"
    assert second.completion_criteria == "all_mandatory_tasks"
    assert second.client_visible is True
    assert second.applicability_conditions is None

    task = first.task_templates[0]
    assert task.default_priority == "medium"
    assert task.due_date_relative_to == "task_created"
    assert task.requires_verified_evidence is True
    assert task.client_visible is False
    assert second.task_templates[0].default_priority == "urgent"


def test_create_keeps_condition_declaration_order(session):
    definition = _definition(stages=[{
        "name": "Lender",
        "applicability_conditions": {"has_mortgage": True, "lender": "Acme", "ltv": 0.9},
    }])
    stage = create_workflow_template(session, definition).stages[0]
    assert list(stage.applicability_conditions) == ["has_mortgage", "lender", "ltv"]


def test_duplicate_key_and_version_is_rejected(session):
    create_workflow_template(session, _definition())
    with pytest.raises(ConflictError):
        create_workflow_template(session, _definition())

    create_workflow_template(session, _definition(version="1.1.0"))
    assert len(session.query(WorkflowTemplate).all()) == 2


@pytest.mark.parametrize("overrides,message", [
    ({"key": ""}, "'key' is required"),
    ({"name": None}, "'name' is required"),
    ({"stages": []}, "at least one stage"),
    ({"stages": [{"gate_type": "hard"}]}, "'name' is required"),
    ({"stages": [{"name": "A", "gate_type": "blocking"}]}, "Unknown GateType"),
    ({"stages": [{"name": "A", "completion_criteria": "most"}]}, "Unknown CompletionCriteria"),
    ({"stages": [{"name": "A", "sort_order": 1}, {"name": "B", "sort_order": 1}]},
     "duplicate sort_order"),
    ({"stages": [{"name": "A", "sort_order": "1"}]}, "sort_order must be an integer"),
    ({"stages": [{"name": "A", "applicability_conditions": {"x": [1, 2]}}]},
     "must be a string, number or boolean"),
    ({"stages": [{"name": "A", "applicability_conditions": ["x"]}]}, "must be a mapping"),
    ({"stages": [{"name": "A", "tasks": [{"title": "T", "relative_due_days": -1}]}]},
     "non-negative integer"),
    ({"stages": [{"name": "A", "tasks": [{"title": "T", "due_date_relative_to": "tomorrow"}]}]},
     "Unknown DueDateAnchor"),
    ({"stages": [{"name": "A", "tasks": [{"title": "T", "default_priority": "asap"}]}]},
     "Unknown TaskPriority"),
    ({"stages": [{"name": "A", "tasks": [{"is_mandatory": True}]}]}, "'title' is required"),
])
def test_invalid_definitions_write_nothing(session, overrides, message):
    with pytest.raises(ValidationError, match=message):
        create_workflow_template(session, _definition(**overrides))
    assert session.query(WorkflowTemplate).count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Version lookup and lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def test_get_active_template_picks_highest_semver(session):
    for version in ("1.2.0", "1.10.0", "1.9.3"):
        create_workflow_template(session, _definition(version=version))

    assert get_active_template(session, "sale").version == "1.10.0"
    assert get_active_template(session, "sale", version="1.2.0").version == "1.2.0"


def test_get_active_template_ignores_inactive_versions(session):
    create_workflow_template(session, _definition(version="1.0.0"))
    newer = create_workflow_template(session, _definition(version="2.0.0"))
    deactivate_template(session, newer.id)

    assert get_active_template(session, "sale").version == "1.0.0"
    with pytest.raises(NotFoundError):
        get_active_template(session, "sale", version="2.0.0")


def test_get_active_template_unknown_key(session):
    with pytest.raises(NotFoundError):
        get_active_template(session, "probate")


def test_release_is_stamped_once(session):
    template = create_workflow_template(session, _definition())
    released_at = release_template(session, template.id).released_at

    assert released_at is not None
    assert release_template(session, template.id).released_at == released_at


def test_lifecycle_operations_on_unknown_template(session):
    with pytest.raises(NotFoundError):
        release_template(session, "missing")
    with pytest.raises(NotFoundError):
        deactivate_template(session, "missing")


# ═════════════════════════════════════════════════════════════════════════════
# get_matter_workflow_overview
# ═════════════════════════════════════════════════════════════════════════════


def test_overview_without_workflow_is_none(session):
    assert get_matter_workflow_overview(session, "matter-without-workflow") is None


def test_overview_reports_stages_and_progress(session, make_template, activate):
    template = make_template([
        {"name": "Onboarding", "gate_type": "hard", "tasks": [
            {"title": "A", "is_mandatory": True},
            {"title": "B"},
        ]},
        {"name": "Lender", "applicability_conditions": {"has_mortgage": True}},
    ], version="3.1.0", practice_area="conveyancing")
    result = activate(template, conditions={"has_mortgage": False})
    result["tasks"][0].status = "completed"
    session.flush()

    overview = get_matter_workflow_overview(session, "matter-0001")

    assert overview["workflow"]["id"] == result["matter_workflow"].id
    assert overview["template"] == {
        "key": template.key,
        "name": "Test Workflow",
        "version": "3.1.0",
        "practice_area": "conveyancing",
    }
    onboarding, lender = overview["stages"]
    assert onboarding["gate_type"] == "hard"
    assert onboarding["total_tasks"] == 2
    assert onboarding["resolved_mandatory_tasks"] == 1
    assert onboarding["is_complete"] is True
    assert lender["status"] == "skipped"
    assert lender["completion_criteria"] == "all_mandatory_tasks"
    assert overview["progress"]["progress_percent"] == 100


def test_overview_uses_earliest_workflow(session, make_template, activate):
    first = activate(make_template([{"name": "First"}]))
    activate(make_template([{"name": "Second"}]))
    first["matter_workflow"].activated_at -= timedelta(hours=1)
    session.flush()

    overview = get_matter_workflow_overview(session, "matter-0001")
    assert overview["workflow"]["id"] == first["matter_workflow"].id
    assert [s["name"] for s in overview["stages"]] == ["First"]
