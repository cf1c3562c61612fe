"""
tests/conftest.py

Shared fixtures: scripted LLM adapters, recorded delays and row builders.
No test touches the network or sleeps for real.
"""

from __future__ import annotations

import json
from types import MappingProxyType
from typing import Any, Callable, Optional

import pytest

from llm_synthesis.adapter import BaseLLMAdapter


def report_json(*sku_channels: str, collection: str = "biggest_moves") -> str:
    """Build a valid structured report with one item per SKU-channel."""
    items = [
        {
            "sku_channel": sku_channel,
            "percent_change_mom": 12.5,
            "direction": "up",
            "cagr_6p": 3.0,
            "trend": "growth",
            "pattern": "zero-demand run then spike",
            "possible_cause": "promotion",
            "likely_drivers": ["promotion"],
            "explanation": f"{sku_channel} forecast rises above its historical value.",
            "planner_action": "Increase safety stock.",
        }
        for sku_channel in sku_channels
    ]
    payload: dict[str, list[Any]] = {
        "biggest_moves": [],
        "steady_trends": [],
        "historical_anomalies": [],
    }
    payload[collection] = items
    return json.dumps(payload)


class ScriptedAdapter(BaseLLMAdapter):
    """Adapter that replays a script of responses or exceptions in order.

    A script entry may be a string (returned), an exception instance
    (raised) or a callable taking the prompt (its return value is used).
    When the script runs out, ``default`` is used.
    """

    def __init__(self, script: Optional[list[Any]] = None, default: Any = None) -> None:
        self.script = list(script or [])
        self.default = default
        self.calls: list[tuple[str, Optional[dict[str, Any]]]] = []

    def generate(self, prompt: str, response_schema: Optional[dict[str, Any]] = None) -> str:
        self.calls.append((prompt, response_schema))
        entry = self.script.pop(0) if self.script else self.default
        if callable(entry) and not isinstance(entry, BaseException):
            entry = entry(prompt)
        if isinstance(entry, BaseException):
            raise entry
        if entry is None:
            raise AssertionError("ScriptedAdapter ran out of responses.")
        return entry


class RecordingDelay:
    """Delay stand-in that records requested waits instead of sleeping."""

    def __init__(self, on_wait: Optional[Callable[[float], None]] = None) -> None:
        self.waits: list[float] = []
        self._on_wait = on_wait

    def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)
        if self._on_wait is not None:
            self._on_wait(seconds)


def make_rows(count: int) -> list[MappingProxyType]:
    return [
        MappingProxyType(
            {
                "sheet": "Acme",
                "item": f"SKU {index}",
                "model": "prophet",
                "ds": f"2024-{(index % 12) + 1:02d}-01",
                "forecast": str(100 + index),
                "historical_value": str(90 + index),
            }
        )
        for index in range(count)
    ]


@pytest.fixture()
def rows() -> Callable[[int], list[MappingProxyType]]:
    return make_rows


@pytest.fixture()
def recording_delay() -> RecordingDelay:
    return RecordingDelay()
