"""
app/presentation.py

Maps a final insight report into display sections for the UI layers.
"""

from __future__ import annotations

from dataclasses import dataclass

from llm_synthesis.schema import (
    BiggestMove,
    FinalReport,
    HistoricalAnomaly,
    InsightItem,
    SteadyTrend,
)

_SECTION_TITLES: tuple[tuple[str, str], ...] = (
    ("biggest_moves", "Biggest Demand Movements"),
    ("steady_trends", "Steady Growth/Decline Trends"),
    ("historical_anomalies", "Historical Anomalies"),
)


@dataclass(frozen=True)
class InsightCard:
    title: str
    details: tuple[str, ...]
    explanation: str
    action: str
    needs_followup: bool = False


@dataclass(frozen=True)
class InsightSection:
    key: str
    title: str
    visible: tuple[InsightCard, ...]
    collapsed: tuple[InsightCard, ...]

    @property
    def total(self) -> int:
        return len(self.visible) + len(self.collapsed)


def build_sections(report: FinalReport, preview_count: int = 3) -> list[InsightSection]:
    """
    Group report items into titled sections.

    Empty collections produce no section. The first ``preview_count`` cards
    of a section are visible; the remainder sit in its collapsed group.
    """

    preview_count = max(0, preview_count)
    sections: list[InsightSection] = []
    for key, title in _SECTION_TITLES:
        cards = [build_card(item) for item in getattr(report, key)]
        if not cards:
            continue
        sections.append(
            InsightSection(
                key=key,
                title=title,
                visible=tuple(cards[:preview_count]),
                collapsed=tuple(cards[preview_count:]),
            )
        )
    return sections


def build_card(item: InsightItem) -> InsightCard:
    details: list[str] = []
    if isinstance(item, BiggestMove) and item.percent_change_mom is not None:
        direction = f" {item.direction}" if item.direction else ""
        details.append(f"Change: {item.percent_change_mom:.1f}%{direction}")
    if isinstance(item, SteadyTrend) and item.cagr_6p is not None:
        trend = f" ({item.trend})" if item.trend else ""
        details.append(f"6-Period CAGR: {item.cagr_6p:.1f}%{trend}")
    if isinstance(item, HistoricalAnomaly):
        if item.pattern:
            details.append(f"Pattern: {item.pattern}")
        if item.possible_cause:
            details.append(f"Possible Cause: {item.possible_cause}")

    drivers = [driver for driver in item.likely_drivers if "unknown" not in driver.lower()]
    if drivers:
        details.append(f"Drivers: {', '.join(drivers)}")

    title = item.sku_channel
    if item.needs_followup:
        title = f"{title} (needs individual follow-up)"

    return InsightCard(
        title=title,
        details=tuple(details),
        explanation=item.explanation,
        action=item.planner_action,
        needs_followup=item.needs_followup,
    )
