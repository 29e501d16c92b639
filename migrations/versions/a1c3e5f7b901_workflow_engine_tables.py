"""workflow_engine_tables

Create workflow template, matter workflow instance, task, exception log and
timeline tables.

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c3e5f7b901"
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.func.now())


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "workflow_templates" not in existing_tables:
        op.create_table(
            "workflow_templates",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("key", sa.String(length=100), nullable=False),
            sa.Column("version", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("practice_area", sa.String(length=50), nullable=True),
            sa.Column("sub_types", sa.JSON(), nullable=True),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("key", "version", name="uq_workflow_templates_key_version"),
        )
        op.create_index("ix_workflow_templates_practice_area", "workflow_templates", ["practice_area"])
        op.create_index("ix_workflow_templates_active", "workflow_templates", ["is_active"])

    if "workflow_stages" not in existing_tables:
        op.create_table(
            "workflow_stages",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workflow_template_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False),
            sa.Column("gate_type", sa.String(length=10), nullable=False, server_default="none"),
            sa.Column("completion_criteria", sa.String(length=30), nullable=False,
                      server_default="all_mandatory_tasks"),
            sa.Column("applicability_conditions", sa.JSON(), nullable=True),
            sa.Column("client_visible", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            sa.ForeignKeyConstraint(["workflow_template_id"], ["workflow_templates.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_stages_template_sort", "workflow_stages",
                        ["workflow_template_id", "sort_order"])

    if "workflow_task_templates" not in existing_tables:
        op.create_table(
            "workflow_task_templates",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("stage_id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_evidence", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("required_evidence_types", sa.JSON(), nullable=True),
            sa.Column("requires_verified_evidence", sa.Boolean(), nullable=False,
                      server_default=sa.true()),
            sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("required_approver_role", sa.String(length=30), nullable=True),
            sa.Column("default_assignee_role", sa.String(length=30), nullable=True),
            sa.Column("default_priority", sa.String(length=10), nullable=False,
                      server_default="medium"),
            sa.Column("relative_due_days", sa.Integer(), nullable=True),
            sa.Column("due_date_relative_to", sa.String(length=20), nullable=True),
            sa.Column("client_visible", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("regulatory_basis", sa.Text(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
            sa.ForeignKeyConstraint(["stage_id"], ["workflow_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_task_templates_stage_sort", "workflow_task_templates",
                        ["stage_id", "sort_order"])

    if "matter_workflows" not in existing_tables:
        op.create_table(
            "matter_workflows",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("matter_id", sa.String(length=36), nullable=False),
            sa.Column("firm_id", sa.String(length=36), nullable=False),
            sa.Column("workflow_template_id", sa.String(length=36), nullable=False),
            sa.Column("workflow_version", sa.String(length=30), nullable=False),
            sa.Column("activated_at", sa.DateTime(timezone=True), nullable=False,
                      server_default=sa.func.now()),
            sa.Column("activated_by_id", sa.String(length=36), nullable=True),
            sa.Column("current_stage_id", sa.String(length=36), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["workflow_template_id"], ["workflow_templates.id"],
                                    ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_matter_workflows_matter", "matter_workflows", ["matter_id"])
        op.create_index("ix_matter_workflows_firm", "matter_workflows", ["firm_id"])
        op.create_index("ix_matter_workflows_template", "matter_workflows", ["workflow_template_id"])

    if "matter_stages" not in existing_tables:
        op.create_table(
            "matter_stages",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("matter_workflow_id", sa.String(length=36), nullable=False),
            sa.Column("workflow_stage_id", sa.String(length=36), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("skipped_reason", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["matter_workflow_id"], ["matter_workflows.id"],
                                    ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workflow_stage_id"], ["workflow_stages.id"],
                                    ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_matter_stages_workflow", "matter_stages", ["matter_workflow_id"])
        op.create_index("ix_matter_stages_workflow_sort", "matter_stages",
                        ["matter_workflow_id", "sort_order"])

    if "tasks" not in existing_tables:
        op.create_table(
            "tasks",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("firm_id", sa.String(length=36), nullable=False),
            sa.Column("matter_id", sa.String(length=36), nullable=False),
            sa.Column("matter_stage_id", sa.String(length=36), nullable=True),
            sa.Column("workflow_task_template_id", sa.String(length=36), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("source", sa.String(length=20), nullable=False, server_default="manual"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_evidence", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("required_evidence_types", sa.JSON(), nullable=True),
            sa.Column("requires_verified_evidence", sa.Boolean(), nullable=False,
                      server_default=sa.true()),
            sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("required_approver_role", sa.String(length=30), nullable=True),
            sa.Column("client_visible", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("regulatory_basis", sa.Text(), nullable=True),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by_id", sa.String(length=36), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["matter_stage_id"], ["matter_stages.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["workflow_task_template_id"], ["workflow_task_templates.id"],
                                    ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_tasks_matter_stage", "tasks", ["matter_stage_id"])
        op.create_index("ix_tasks_matter", "tasks", ["matter_id"])
        op.create_index("ix_tasks_firm_status", "tasks", ["firm_id", "status"])

    if "task_exceptions" not in existing_tables:
        op.create_table(
            "task_exceptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("firm_id", sa.String(length=36), nullable=False),
            sa.Column("object_type", sa.String(length=20), nullable=False),
            sa.Column("object_id", sa.String(length=36), nullable=False),
            sa.Column("exception_type", sa.String(length=30), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("decision_source", sa.String(length=10), nullable=False,
                      server_default="system"),
            sa.Column("approved_by_id", sa.String(length=36), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_task_exceptions_object", "task_exceptions", ["object_type", "object_id"])
        op.create_index("ix_task_exceptions_firm", "task_exceptions", ["firm_id"])

    if "timeline_events" not in existing_tables:
        op.create_table(
            "timeline_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("firm_id", sa.String(length=36), nullable=False),
            sa.Column("matter_id", sa.String(length=36), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("actor_type", sa.String(length=10), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.String(length=36), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False,
                      server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_timeline_events_matter_ts", "timeline_events",
                        ["matter_id", "occurred_at"])
        op.create_index("ix_timeline_events_entity", "timeline_events",
                        ["entity_type", "entity_id"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    # Reverse dependency order
    for table in (
        "timeline_events",
        "task_exceptions",
        "tasks",
        "matter_stages",
        "matter_workflows",
        "workflow_task_templates",
        "workflow_stages",
        "workflow_templates",
    ):
        if table in existing_tables:
            op.drop_table(table)
