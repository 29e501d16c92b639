"""
Stage applicability evaluation.

A stage template may declare applicability conditions, e.g.
``{"has_mortgage": True, "tenure": "leasehold"}``. The stage applies to a
matter only when every condition is met by the matter's own condition set;
otherwise it is created as skipped with a reason built here.

Rules:
    - null / empty conditions  -> always applies
    - conditions are AND-ed, each an exact equality check
    - a key missing from the matter context is unmet, never an error
    - when a key schema is supplied (WORKFLOW_CONDITION_KEYS), keys outside
      it are unmet as well

Both functions are pure; neither touches the database.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

logger = logging.getLogger(__name__)

_MISSING = object()
_UNRECOGNISED = object()

_GENERIC_SKIP_REASON = "Stage applicability conditions not met"


def _values_equal(actual, required) -> bool:
    """Exact equality: booleans only ever match booleans (``True != 1`` here)."""
    if isinstance(actual, bool) or isinstance(required, bool):
        return isinstance(actual, bool) and isinstance(required, bool) and actual is required
    return actual == required


def _format_value(value) -> str:
    """Render a condition value the way it is written in template definitions."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _unmet_conditions(conditions, matter_conditions, known_keys):
    """Yield (key, required, actual) for each unmet condition, in declaration order."""
    for key, required in conditions.items():
        if known_keys is not None and key not in known_keys:
            yield key, required, _UNRECOGNISED
            continue
        actual = matter_conditions.get(key, _MISSING)
        if actual is _MISSING or actual is None:
            # An explicit None is unmet but is reported as a value, not as absent
            yield key, required, actual
        elif not _values_equal(actual, required):
            yield key, required, actual


def evaluate_applicability_conditions(
    conditions: Mapping | None,
    matter_conditions: Mapping | None,
    known_keys: frozenset | None = None,
) -> bool:
    """Return True when the stage applies to a matter with ``matter_conditions``."""
    if not conditions:
        return True
    matter_conditions = matter_conditions or {}

    for key, _required, actual in _unmet_conditions(conditions, matter_conditions, known_keys):
        if actual is _UNRECOGNISED:
            logger.warning("Applicability condition key %r is not a recognised condition", key)
        return False
    return True


def build_skip_reason(
    conditions: Mapping | None,
    matter_conditions: Mapping | None,
    known_keys: frozenset | None = None,
) -> str:
    """Human-readable audit text listing every unmet condition.

    Example:
        "Applicability conditions not met: has_mortgage is not defined (required: true)"
    """
    if not conditions:
        return _GENERIC_SKIP_REASON
    matter_conditions = matter_conditions or {}

    unmet: list[str] = []
    for key, required, actual in _unmet_conditions(conditions, matter_conditions, known_keys):
        if actual is _UNRECOGNISED:
            unmet.append(f"{key} is not a recognised condition (required: {_format_value(required)})")
        elif actual is _MISSING:
            unmet.append(f"{key} is not defined (required: {_format_value(required)})")
        else:
            unmet.append(f"{key} = {_format_value(actual)} (required: {_format_value(required)})")

    if not unmet:
        return _GENERIC_SKIP_REASON
    return f"Applicability conditions not met: {', '.join(unmet)}"
