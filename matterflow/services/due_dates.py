"""
Relative due-date calculation for workflow tasks.

Task templates express due dates as "N days after <anchor>". Anchors fall
back along a fixed chain so a calculation never fails:

    task_created   -> reference_date
    matter_created -> matter_created_at, else reference_date
    matter_opened  -> matter_opened_at, else matter_created_at, else reference_date
    stage_started  -> stage_started_at, else reference_date

Calendar days are added to the anchor as-is (time of day is preserved).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from matterflow.models.workflow import DueDateAnchor

logger = logging.getLogger(__name__)


def _resolve_anchor(relative_to) -> DueDateAnchor:
    if relative_to is None or relative_to == "":
        return DueDateAnchor.TASK_CREATED
    try:
        return DueDateAnchor(relative_to)
    except ValueError:
        logger.warning("Unknown due-date anchor %r, counting from the reference date", relative_to)
        return DueDateAnchor.TASK_CREATED


def calculate_due_date(
    relative_days: int,
    relative_to: DueDateAnchor | str | None,
    reference_date: datetime,
    matter_created_at: datetime | None = None,
    matter_opened_at: datetime | None = None,
    stage_started_at: datetime | None = None,
) -> datetime:
    """Return the anchor date plus ``relative_days`` calendar days."""
    anchor = _resolve_anchor(relative_to)

    if anchor is DueDateAnchor.MATTER_CREATED:
        base = matter_created_at or reference_date
    elif anchor is DueDateAnchor.MATTER_OPENED:
        base = matter_opened_at or matter_created_at or reference_date
    elif anchor is DueDateAnchor.STAGE_STARTED:
        base = stage_started_at or reference_date
    else:
        base = reference_date

    return base + timedelta(days=relative_days)


def calculate_business_days(start: datetime, business_days: int) -> datetime:
    """Advance ``start`` until ``business_days`` weekdays (Mon–Fri) have been added.

    Intended for SLA-sized offsets; the loop is linear in the offset.
    """
    result = start
    added = 0
    while added < business_days:
        result += timedelta(days=1)
        if result.weekday() < 5:
            added += 1
    return result
