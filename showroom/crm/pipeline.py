"""Opportunity stage and urgency vocabularies, and the statistics derived from them.

Stages form a funnel ordered by declaration. ``CLOSED_WON`` and ``CLOSED_LOST``
are terminal by convention only: any stage may be set to any other stage.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum

from sqlalchemy import ColumnElement, case
from sqlalchemy.orm import InstrumentedAttribute


class Urgency(StrEnum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class Stage(StrEnum):
    LEAD = "LEAD"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    TEST_DRIVE = "TEST_DRIVE"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


URGENCY_RANK: dict[Urgency, int] = {
    Urgency.LOW: 0,
    Urgency.NORMAL: 1,
    Urgency.HIGH: 2,
}

CLOSED_STAGES = frozenset({Stage.CLOSED_WON, Stage.CLOSED_LOST})


def is_closed(stage: Stage) -> bool:
    return stage in CLOSED_STAGES


OPEN_STAGES = tuple(stage for stage in Stage if not is_closed(stage))


def urgency_rank_expr(column: InstrumentedAttribute[Urgency]) -> ColumnElement[int]:
    """SQL expression sorting urgency by priority rather than by its text value."""

    return case(
        *[(column == urgency, rank) for urgency, rank in URGENCY_RANK.items()],
        else_=-1,
    )


def empty_stage_counts() -> dict[Stage, int]:
    return {stage: 0 for stage in Stage}


def empty_urgency_counts() -> dict[Urgency, int]:
    return {urgency: 0 for urgency in Urgency}


def tally_opportunities(rows: Iterable[tuple[Stage, Urgency]]) -> dict[str, object]:
    by_stage = empty_stage_counts()
    by_urgency = empty_urgency_counts()
    total = 0
    for stage, urgency in rows:
        by_stage[Stage(stage)] += 1
        by_urgency[Urgency(urgency)] += 1
        total += 1
    return {"total": total, "by_stage": by_stage, "by_urgency": by_urgency}


def tally_clients(rows: Iterable[tuple[Urgency, int]]) -> dict[str, object]:
    """Aggregate ``(urgency, opportunity_count)`` pairs, one per client."""

    by_urgency = empty_urgency_counts()
    total = 0
    with_opportunities = 0
    total_opportunities = 0
    for urgency, opportunity_count in rows:
        total += 1
        by_urgency[Urgency(urgency)] += 1
        total_opportunities += opportunity_count
        if opportunity_count > 0:
            with_opportunities += 1
    return {
        "total": total,
        "by_urgency": by_urgency,
        "with_opportunities": with_opportunities,
        "without_opportunities": total - with_opportunities,
        "total_opportunities": total_opportunities,
    }
