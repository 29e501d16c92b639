import importlib

from matterflow.models.workflow import WorkflowStage, WorkflowTemplate

SEED_KEY = "residential-purchase"


def _seed_module():
    return importlib.import_module("scripts.seed_workflow_templates")


def _seeded():
    return WorkflowTemplate.query.filter_by(key=SEED_KEY).all()


def test_seed_dry_run_does_not_persist(session):
    mod = _seed_module()
    result = mod.seed_workflow_templates(apply=False)

    assert result["mode"] == "dry-run"
    assert result["would_create"] == len(mod.TEMPLATES)
    assert result["created"] == 0
    assert _seeded() == []


def test_seed_apply_is_idempotent(session, capsys):
    mod = _seed_module()

    first = mod.seed_workflow_templates(apply=True)
    assert first["created"] == 1
    assert first["errors"] == 0

    templates = _seeded()
    assert len(templates) == 1
    assert templates[0].released_at is None
    stage_count = WorkflowStage.query.filter_by(workflow_template_id=templates[0].id).count()
    assert stage_count == len(mod.RESIDENTIAL_PURCHASE["stages"])

    second = mod.seed_workflow_templates(apply=True)
    assert second["created"] == 0
    assert second["skipped_existing"] == 1
    assert len(_seeded()) == 1
    assert "[SKIP] key=residential-purchase" in capsys.readouterr().out


def test_seed_release_stamps_released_at(session):
    mod = _seed_module()
    mod.seed_workflow_templates(apply=True, release=True)

    templates = _seeded()
    assert len(templates) == 1
    assert templates[0].released_at is not None


def test_seed_invalid_definition_is_rolled_back(session, monkeypatch):
    mod = _seed_module()
    broken = {**mod.RESIDENTIAL_PURCHASE, "key": "broken-purchase", "stages": []}
    monkeypatch.setattr(mod, "TEMPLATES", [broken, mod.RESIDENTIAL_PURCHASE])

    result = mod.seed_workflow_templates(apply=True)

    assert result["errors"] == 1
    assert result["created"] == 1
    assert WorkflowTemplate.query.filter_by(key="broken-purchase").count() == 0
    assert len(_seeded()) == 1
