"""Prompt builders for chunk analysis and report merging."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

from chunking.partitioner import Chunk
from ingestion.loader import rows_to_delimited
from llm_synthesis.schema import (
    NarrativeResult,
    PartialReport,
    ResponseMode,
    StructuredResult,
    report_response_schema,
)

REPORT_SEPARATOR = "\n\n---\n\n"

COLUMN_GLOSSARY: Dict[str, str] = {
    "sheet": "The company that sells the product.",
    "item": "A unique identifier for the product.",
    "model": "The model used to generate the forecast values.",
    "ds": "The date associated with the forecast.",
    "forecast": "The predicted number of sales for the product on the given date.",
    "historical_value": "The most recent actual number of sales for the product.",
}

_SCHEMA_JSON = json.dumps(report_response_schema(), indent=2)

_ROLE = """\
### ROLE
You are a meticulous Supply-Chain Data Analyst embedded in a forecasting
platform. Write for demand planners and business managers who want quick,
actionable takeaways.
"""

_GOAL = """\
### GOAL
From the forecast data below (chunk {position} of {total} of the full
dataset), surface the top insights that help users:
1. Understand material demand swings (biggest month-over-month jumps and drops) and their likely drivers.
2. Spot SKU x Channel combinations with consistent growth or decline trends.
3. Detect unusual patterns in history (e.g. long zero-demand periods followed by spikes).
4. Explain why these trends or patterns likely happened.
5. Decide what to act on now.
"""

_INSTRUCTIONS = """\
### INSTRUCTIONS
* Work at SKU-Channel granularity (e.g. "SKU 12345 - Amazon.com"). Every
  finding must name exactly one SKU-Channel; never group several entities
  into one finding.
* Compute month-over-month % change on the forecast, comparing it to the
  historical_value column.
* Identify the largest increases and the largest decreases.
* Flag SKU-Channels with a steady CAGR over the last 6 periods.
* Find runs of >= 3 periods of ~0 demand followed by a spike, and abrupt
  structural breaks.
* Link each insight to plausible drivers when evidence exists; otherwise say
  "driver unknown".
* Other chunks are analysed separately. Keep this response self-contained and
  consistent in format so the reports can be combined later.
* Keep numeric values to one decimal. Limit each insight to 40 words.
"""

_STRUCTURED_CONTRACT = """\
### OUTPUT
Return strictly valid JSON matching this schema, with no text outside the
JSON object:

```json
{schema}
```
"""

_NARRATIVE_CONTRACT = """\
### OUTPUT
Write a plain-text report with three headed sections: Biggest Moves,
Steady Trends, Historical Anomalies. End with a "Planner Actions" list.
"""

_MERGE_PROMPT = """\
You are a Supply-Chain Data Analyst. Combine and summarize the following
insight reports into a single, coherent report. Each report covers one
slice of the same dataset; slices overlap slightly.

Here are the reports:
{reports}

### TASK
Keep the most important trends and anomalies across all reports, removing
duplicates and clustering similar insights. Every finding must name exactly
one SKU-Channel.

{contract}"""


@dataclass(frozen=True)
class AnalysisRequest:
    """Self-contained request for one model call."""

    chunk_index: Optional[int]
    prompt: str
    response_schema: Optional[Dict[str, Any]] = None


class ChunkPromptBuilder:
    """Builds the analysis request for one chunk of rows."""

    def __init__(self, glossary: Optional[Mapping[str, str]] = None) -> None:
        self._glossary = dict(glossary if glossary is not None else COLUMN_GLOSSARY)

    def build(self, chunk: Chunk, total_chunks: int, mode: ResponseMode) -> AnalysisRequest:
        structured = mode is ResponseMode.STRUCTURED
        prompt = (
            f"{_ROLE}\n"
            f"{_GOAL.format(position=chunk.index + 1, total=total_chunks)}\n"
            f"### DATA\n```csv\n{rows_to_delimited(chunk.rows)}```\n\n"
            f"### COLUMNS\n{self._format_glossary()}\n"
            f"Use historical_value as the historical baseline.\n\n"
            f"{_INSTRUCTIONS}\n"
            f"{self._contract(structured)}"
        )
        return AnalysisRequest(
            chunk_index=chunk.index,
            prompt=prompt,
            response_schema=report_response_schema() if structured else None,
        )

    def _format_glossary(self) -> str:
        return "\n".join(f"- {column}: {meaning}" for column, meaning in self._glossary.items())

    @staticmethod
    def _contract(structured: bool) -> str:
        if structured:
            return _STRUCTURED_CONTRACT.format(schema=_SCHEMA_JSON)
        return _NARRATIVE_CONTRACT


class MergePromptBuilder:
    """Builds the single request that structures all partial reports."""

    def build(self, partials: Sequence[PartialReport]) -> AnalysisRequest:
        reports = REPORT_SEPARATOR.join(self.render_partial(partial) for partial in partials)
        prompt = _MERGE_PROMPT.format(
            reports=reports,
            contract=_STRUCTURED_CONTRACT.format(schema=_SCHEMA_JSON),
        )
        return AnalysisRequest(
            chunk_index=None,
            prompt=prompt,
            response_schema=report_response_schema(),
        )

    @staticmethod
    def render_partial(partial: PartialReport) -> str:
        if isinstance(partial, NarrativeResult):
            return partial.text.strip()
        if isinstance(partial, StructuredResult):
            return partial.report.model_dump_json(indent=2)
        raise TypeError(f"Unsupported partial report type: {type(partial).__name__}")
