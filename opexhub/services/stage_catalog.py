"""
Stage Catalog — read-only lookups over the fixed 11-stage sequence.

The master data lives in ``opexhub.models.workflow`` and is never mutated.
Path planning is a pure function of the two conditional flags chosen at
stage 3:

    plan_path(False, False)
    → [(1, "active"), (2, "active"), (3, "active"), (4, "bypassed"),
       (5, "bypassed"), (6, "active"), (7, "active"), ... (11, "active")]

Usage:
    from opexhub.services import stage_catalog

    stage_catalog.stage_by_number(8).required_role_code   # "CTSD"
    stage_catalog.next_stage(3, requires_engineering_change=False,
                             requires_capital_approval=True)   # 5
"""

from opexhub.core.exceptions import UnknownStageError
from opexhub.models.workflow import (
    FINAL_STAGE,
    STAGE_BY_NUMBER,
    STAGE_DEFINITIONS,
    STAGE_SLOTS,
    ConditionalSlot,
    StageDefinition,
)

ACTIVE = "active"
BYPASSED = "bypassed"

_SLOT_BY_NUMBER = {s.definition.stage_number: s for s in STAGE_SLOTS}


def all_stages() -> tuple[StageDefinition, ...]:
    return STAGE_DEFINITIONS


def is_known_stage(stage_number) -> bool:
    return stage_number in STAGE_BY_NUMBER


def stage_by_number(stage_number: int) -> StageDefinition:
    """Return the StageDefinition for ``stage_number``.

    Raises:
        UnknownStageError: if the number is not in the catalog.
    """
    try:
        return STAGE_BY_NUMBER[stage_number]
    except (KeyError, TypeError):
        raise UnknownStageError(stage_number) from None


def stage_name(stage_number: int) -> str:
    return stage_by_number(stage_number).stage_name


def required_role(stage_number: int) -> str:
    """Role-for-stage lookup (the first of the two authorization lookups)."""
    return stage_by_number(stage_number).required_role_code


def slot_for(stage_number: int):
    stage_by_number(stage_number)
    return _SLOT_BY_NUMBER[stage_number]


def is_dynamically_bound(stage_number: int) -> bool:
    return slot_for(stage_number).dynamically_bound


def slot_state(slot, flags: dict) -> str:
    if isinstance(slot, ConditionalSlot) and not flags.get(slot.gating_flag):
        return BYPASSED
    return ACTIVE


def plan_path(requires_engineering_change: bool, requires_capital_approval: bool) -> list[tuple[int, str]]:
    """Ordered (stage_number, "active" | "bypassed") for the whole sequence."""
    flags = {
        "requires_engineering_change": bool(requires_engineering_change),
        "requires_capital_approval": bool(requires_capital_approval),
    }
    return [(slot.definition.stage_number, slot_state(slot, flags)) for slot in STAGE_SLOTS]


def bypassed_stages(requires_engineering_change: bool, requires_capital_approval: bool) -> list[int]:
    return [
        n for n, state in plan_path(requires_engineering_change, requires_capital_approval)
        if state == BYPASSED
    ]


def next_stage(
    current: int,
    requires_engineering_change: bool = False,
    requires_capital_approval: bool = False,
) -> int | None:
    """Next active stage after ``current``; None once the final stage is done."""
    stage_by_number(current)
    if current >= FINAL_STAGE:
        return None
    for number, state in plan_path(requires_engineering_change, requires_capital_approval):
        if number > current and state == ACTIVE:
            return number
    return None


def skipped_between(
    current: int,
    target: int | None,
    requires_engineering_change: bool = False,
    requires_capital_approval: bool = False,
) -> list[int]:
    """Bypassed stages strictly between ``current`` and ``target``."""
    upper = target if target is not None else FINAL_STAGE + 1
    return [
        n for n, state in plan_path(requires_engineering_change, requires_capital_approval)
        if current < n < upper and state == BYPASSED
    ]
