from __future__ import annotations

from showroom.crm.pipeline import (
    OPEN_STAGES,
    Stage,
    Urgency,
    is_closed,
    tally_clients,
    tally_opportunities,
)


def test_open_stages_exclude_terminal_ones() -> None:
    assert Stage.CLOSED_WON not in OPEN_STAGES
    assert Stage.CLOSED_LOST not in OPEN_STAGES
    assert len(OPEN_STAGES) == 6
    assert is_closed(Stage.CLOSED_LOST)
    assert not is_closed(Stage.NEGOTIATION)


def test_stages_declared_in_funnel_order() -> None:
    assert list(Stage)[0] == Stage.LEAD
    assert list(Stage).index(Stage.TEST_DRIVE) < list(Stage).index(Stage.PROPOSAL)
    assert list(Stage)[-2:] == [Stage.CLOSED_WON, Stage.CLOSED_LOST]


def test_tally_opportunities_reports_empty_buckets() -> None:
    result = tally_opportunities([])
    assert result["total"] == 0
    assert set(result["by_stage"]) == set(Stage)
    assert all(count == 0 for count in result["by_stage"].values())
    assert result["by_urgency"] == {Urgency.LOW: 0, Urgency.NORMAL: 0, Urgency.HIGH: 0}


def test_tally_opportunities_accepts_raw_values() -> None:
    result = tally_opportunities(
        [
            (Stage.LEAD, Urgency.HIGH),
            ("LEAD", "NORMAL"),
            (Stage.CLOSED_WON, Urgency.HIGH),
        ]
    )
    assert result["total"] == 3
    assert result["by_stage"][Stage.LEAD] == 2
    assert result["by_stage"][Stage.CLOSED_WON] == 1
    assert result["by_urgency"][Urgency.HIGH] == 2


def test_tally_clients_splits_by_opportunity_presence() -> None:
    result = tally_clients([(Urgency.HIGH, 3), (Urgency.NORMAL, 0), (Urgency.NORMAL, 1)])
    assert result == {
        "total": 3,
        "by_urgency": {Urgency.LOW: 0, Urgency.NORMAL: 2, Urgency.HIGH: 1},
        "with_opportunities": 2,
        "without_opportunities": 1,
        "total_opportunities": 4,
    }
