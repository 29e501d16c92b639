"""
Startup diagnostics — runs once when the Flask app starts.

Checks database connectivity and logs a summary banner with the
workflow engine policies in effect.
"""

import logging
import sys

from flask import Flask

from matterflow.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = "FAILED"
            issues.append(f"Database unreachable: {exc}")

        # ── Workflow tables ──────────────────────────────────────────
        try:
            from sqlalchemy import inspect as sa_inspect
            tables = set(sa_inspect(db.engine).get_table_names())
            missing = sorted({
                "workflow_templates", "workflow_stages", "workflow_task_templates",
                "matter_workflows", "matter_stages", "tasks", "task_exceptions",
                "timeline_events",
            } - tables)
            if missing:
                issues.append(f"Missing tables {', '.join(missing)} — run 'flask db upgrade'")
        except Exception:
            missing = []

        condition_keys = app.config.get("WORKFLOW_CONDITION_KEYS")
        logger.info(
            "Matterflow startup: python=%s database=%s (%s) duplicate_activation=%s condition_keys=%s",
            py,
            db_type,
            db_status,
            app.config.get("WORKFLOW_DUPLICATE_ACTIVATION"),
            ",".join(sorted(condition_keys)) if condition_keys else "unrestricted",
        )

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  %s", issue)
        else:
            logger.info("All startup checks passed")
