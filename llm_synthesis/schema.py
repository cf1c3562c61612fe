"""Structured output schema for chunk and merged insight reports."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

REPORT_COLLECTIONS = ("biggest_moves", "steady_trends", "historical_anomalies")


class ResponseMode(str, Enum):
    """How chunk responses are requested from the model."""

    STRUCTURED = "structured"
    NARRATIVE = "narrative"


class InsightItem(BaseModel):
    """One finding about a single SKU x channel entity."""

    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        str_strip_whitespace=True,
    )

    sku_channel: str = Field(min_length=1)
    explanation: str = Field(min_length=1)
    planner_action: str = Field(min_length=1)
    likely_drivers: Tuple[str, ...] = ()
    needs_followup: bool = False


class BiggestMove(InsightItem):
    percent_change_mom: Optional[float] = None
    direction: Optional[str] = None


class SteadyTrend(InsightItem):
    cagr_6p: Optional[float] = None
    trend: Optional[str] = None


class HistoricalAnomaly(InsightItem):
    pattern: Optional[str] = None
    possible_cause: Optional[str] = None


class InsightReport(BaseModel):
    """Three-collection report produced per chunk and after merging."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    biggest_moves: Tuple[BiggestMove, ...] = ()
    steady_trends: Tuple[SteadyTrend, ...] = ()
    historical_anomalies: Tuple[HistoricalAnomaly, ...] = ()

    @property
    def item_count(self) -> int:
        return sum(len(getattr(self, name)) for name in REPORT_COLLECTIONS)

    def is_empty(self) -> bool:
        return self.item_count == 0

    @classmethod
    def concatenate(cls, reports: Iterable["InsightReport"]) -> "InsightReport":
        """Concatenate each collection across ``reports`` in order.

        Exact duplicates, which overlapping row windows tend to produce,
        are kept once at their first position.
        """
        merged: Dict[str, Dict[InsightItem, None]] = {name: {} for name in REPORT_COLLECTIONS}
        for report in reports:
            for name in REPORT_COLLECTIONS:
                for item in getattr(report, name):
                    merged[name].setdefault(item, None)
        return cls(**{name: tuple(items) for name, items in merged.items()})


FinalReport = InsightReport


@dataclass(frozen=True)
class StructuredResult:
    """Chunk response decoded into an ``InsightReport``."""

    chunk_index: int
    report: InsightReport


@dataclass(frozen=True)
class NarrativeResult:
    """Free-text chunk response, structured later by the merge call."""

    chunk_index: int
    text: str


PartialReport = Union[StructuredResult, NarrativeResult]


# ---------------------------------------------------------------------------
# Response schema in the OpenAPI subset accepted by generateContent.
# ---------------------------------------------------------------------------

_STRING = {"type": "string"}
_NUMBER = {"type": "number"}
_STRING_LIST = {"type": "array", "items": _STRING}

_ITEM_PROPERTIES: Dict[str, Dict[str, Dict[str, Any]]] = {
    "biggest_moves": {
        "sku_channel": _STRING,
        "percent_change_mom": _NUMBER,
        "direction": _STRING,
        "likely_drivers": _STRING_LIST,
        "explanation": _STRING,
        "planner_action": _STRING,
    },
    "steady_trends": {
        "sku_channel": _STRING,
        "cagr_6p": _NUMBER,
        "trend": _STRING,
        "likely_drivers": _STRING_LIST,
        "explanation": _STRING,
        "planner_action": _STRING,
    },
    "historical_anomalies": {
        "sku_channel": _STRING,
        "pattern": _STRING,
        "possible_cause": _STRING,
        "explanation": _STRING,
        "planner_action": _STRING,
    },
}


def report_response_schema() -> Dict[str, Any]:
    """Return the JSON schema constraining structured report responses."""
    properties = {
        name: {
            "type": "array",
            "items": {
                "type": "object",
                "properties": dict(fields),
                "required": list(fields),
            },
        }
        for name, fields in _ITEM_PROPERTIES.items()
    }
    return {
        "type": "object",
        "properties": properties,
        "required": list(REPORT_COLLECTIONS),
    }
