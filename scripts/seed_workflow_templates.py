#!/usr/bin/env python3
"""Seed the demo workflow templates (idempotent per key+version)."""

import argparse
import sys

sys.path.insert(0, ".")

from matterflow import create_app
from matterflow.core.exceptions import MatterflowError
from matterflow.models import db
from matterflow.models.workflow import WorkflowTemplate
from matterflow.services.workflow_template_service import (
    create_workflow_template,
    release_template,
)


def _task(title, days, anchor="stage_started", mandatory=True, **extra):
    return {
        "title": title,
        "is_mandatory": mandatory,
        "relative_due_days": days,
        "due_date_relative_to": anchor,
        **extra,
    }


RESIDENTIAL_PURCHASE = {
    "key": "residential-purchase",
    "version": "1.0.0",
    "name": "Residential Purchase",
    "description": (
        "Standard workflow for residential property purchases including freehold, "
        "leasehold, auction and new-build transactions."
    ),
    "practice_area": "conveyancing",
    "sub_types": ["freehold_purchase", "leasehold_purchase", "auction_purchase", "new_build"],
    "is_default": True,
    "stages": [
        {
            "name": "Client Onboarding & Instruction",
            "description": "Initial client engagement, retainer and file opening",
            "sort_order": 1,
            "gate_type": "hard",
            "tasks": [
                _task("Record client instruction", 1, "matter_created"),
                _task("Issue client care letter", 2, "matter_created", client_visible=True),
                _task("Complete conflict check", 1, "matter_created"),
            ],
        },
        {
            "name": "AML / Compliance",
            "description": "Anti-money laundering checks and customer due diligence",
            "sort_order": 2,
            "gate_type": "hard",
            "tasks": [
                _task("Verify client identity", 3, requires_evidence=True,
                      required_evidence_types=["id_document"],
                      regulatory_basis="MLR 2017 reg. 28"),
                _task("Verify source of funds", 5, requires_evidence=True),
                _task("Complete AML risk assessment", 5, requires_approval=True,
                      required_approver_role="supervisor"),
            ],
        },
        {
            "name": "Investigation / Due Diligence",
            "description": "Title investigation, searches and enquiries",
            "sort_order": 3,
            "gate_type": "soft",
            "tasks": [
                _task("Obtain official copies from Land Registry", 2),
                _task("Order property searches", 3),
                _task("Raise enquiries with seller's solicitor", 7),
                _task("Report to client on title", 14, client_visible=True),
            ],
        },
        {
            "name": "Mortgage / Lender Compliance",
            "description": "Lender requirements and certificate of title",
            "sort_order": 4,
            "gate_type": "hard",
            "applicability_conditions": {"has_mortgage": True},
            "tasks": [
                _task("Review mortgage offer", 3),
                _task("Prepare certificate of title", 7),
            ],
        },
        {
            "name": "Contract / Exchange",
            "description": "Contract approval, deposit and exchange",
            "sort_order": 5,
            "gate_type": "hard",
            "tasks": [
                _task("Review and approve contract", 7),
                _task("Obtain authority to exchange", 10),
                _task("Exchange contracts", 14),
            ],
        },
        {
            "name": "Completion",
            "description": "Pre-completion, funds transfer and keys",
            "sort_order": 6,
            "gate_type": "hard",
            "tasks": [
                _task("Request completion funds from client", 5),
                _task("Send completion statement", 3, mandatory=False, client_visible=True),
            ],
        },
    ],
}

TEMPLATES = [RESIDENTIAL_PURCHASE]


def seed_workflow_templates(*, apply: bool = False, release: bool = False) -> dict:
    """Create each template unless its key+version already exists."""
    summary = {
        "mode": "apply" if apply else "dry-run",
        "created": 0,
        "would_create": 0,
        "skipped_existing": 0,
        "errors": 0,
    }

    print(f"[INFO] mode={summary['mode']} templates={len(TEMPLATES)}")

    for definition in TEMPLATES:
        prefix = f"key={definition['key']} version={definition['version']}"

        exists = WorkflowTemplate.query.filter_by(
            key=definition["key"], version=definition["version"]
        ).first()
        if exists:
            summary["skipped_existing"] += 1
            print(f"[SKIP] {prefix} reason=already_exists id={exists.id}")
            continue

        if not apply:
            summary["would_create"] += 1
            print(f"[PLAN] {prefix} stages={len(definition['stages'])}")
            continue

        try:
            template = create_workflow_template(db.session, definition)
            if release:
                release_template(db.session, template.id)
            db.session.commit()
        except MatterflowError as exc:
            db.session.rollback()
            summary["errors"] += 1
            print(f"[ERROR] {prefix} code={exc.code} error={exc}")
            continue

        summary["created"] += 1
        print(f"[CREATE] {prefix} id={template.id}")

    print(
        "[SUMMARY] "
        f"mode={summary['mode']} "
        f"created={summary['created']} "
        f"would_create={summary['would_create']} "
        f"skipped={summary['skipped_existing']} "
        f"errors={summary['errors']}"
    )
    return summary


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed demo workflow templates (idempotent).")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Preview only; do not write data")
    mode.add_argument("--apply", action="store_true", help="Persist templates")
    parser.add_argument("--release", action="store_true", help="Mark created templates as released")
    parser.add_argument("--env", default="development", help="Config name (default: development)")
    args = parser.parse_args()

    if not args.dry_run and not args.apply:
        print("[INFO] No mode specified; defaulting to --dry-run")

    app = create_app(args.env)
    with app.app_context():
        result = seed_workflow_templates(apply=bool(args.apply), release=args.release)

    return 1 if result["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
