"""
Matterflow — SQLAlchemy models.

``db`` is the shared Flask-SQLAlchemy extension. Model modules import it
from here; ``create_app`` imports each module so its tables register on
``db.metadata``.

Modules:
    workflow  — templates (WorkflowTemplate, WorkflowStage, WorkflowTaskTemplate)
                and instances (MatterWorkflow, MatterStage), plus the closed
                vocabularies used by the engine
    task      — Task instances bound to matter stages
    audit     — TaskException, the append-only exception log
    timeline  — TimelineEvent and the default timeline sink
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
