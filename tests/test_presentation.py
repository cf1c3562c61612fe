"""
tests/test_presentation.py

Display sections built from a final report.
"""

from __future__ import annotations

from app.presentation import build_card, build_sections
from llm_synthesis.schema import BiggestMove, HistoricalAnomaly, InsightReport, SteadyTrend


def _move(key: str) -> BiggestMove:
    return BiggestMove(
        sku_channel=key,
        percent_change_mom=-12.34,
        direction="down",
        likely_drivers=("promotion ended", "driver unknown"),
        explanation=f"{key} drops.",
        planner_action="Reduce orders.",
    )


def test_sections_use_fixed_titles_and_skip_empty_collections() -> None:
    report = InsightReport(
        biggest_moves=(_move("SKU 1 - Amazon"),),
        historical_anomalies=(
            HistoricalAnomaly(
                sku_channel="SKU 2 - Target",
                pattern="zero run then spike",
                possible_cause="restock",
                explanation="Spike after stockout.",
                planner_action="Check inventory.",
            ),
        ),
    )
    sections = build_sections(report)
    assert [section.title for section in sections] == ["Biggest Demand Movements", "Historical Anomalies"]


def test_preview_count_splits_visible_and_collapsed() -> None:
    report = InsightReport(biggest_moves=tuple(_move(f"SKU {index} - Amazon") for index in range(5)))
    (section,) = build_sections(report, preview_count=3)
    assert len(section.visible) == 3
    assert len(section.collapsed) == 2
    assert section.total == 5


def test_card_filters_unknown_drivers_and_formats_change() -> None:
    card = build_card(_move("SKU 1 - Amazon"))
    assert card.title == "SKU 1 - Amazon"
    assert "Change: -12.3% down" in card.details
    assert "Drivers: promotion ended" in card.details
    assert card.action == "Reduce orders."


def test_trend_card_and_followup_title() -> None:
    trend = SteadyTrend(
        sku_channel="Multiple SKUs",
        cagr_6p=4.0,
        trend="growth",
        explanation="Growth across the group.",
        planner_action="Review individually.",
        needs_followup=True,
    )
    card = build_card(trend)
    assert card.title == "Multiple SKUs (needs individual follow-up)"
    assert card.details == ("6-Period CAGR: 4.0% (growth)",)
    assert card.needs_followup is True


def test_empty_report_has_no_sections() -> None:
    assert build_sections(InsightReport()) == []
