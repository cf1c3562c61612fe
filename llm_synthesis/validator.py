"""Decoding of raw model text into an ``InsightReport``.

Models asked for JSON still occasionally wrap it in a markdown fence or a
sentence of preamble. Both are peeled off before parsing; anything else
that is not the three-collection object fails with ``DecodeError``.
"""

import json
import re
from typing import Any, Dict, List

from pydantic import ValidationError

from llm_synthesis.errors import DecodeError
from llm_synthesis.schema import REPORT_COLLECTIONS, InsightReport

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


def _unwrap(text: str) -> str:
    """Return the JSON candidate inside ``text``.

    Strips a surrounding code fence, then any prose before the first ``{``
    and after the last ``}``.
    """
    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    if candidate.startswith("{"):
        return candidate
    first, last = candidate.find("{"), candidate.rfind("}")
    if first != -1 and last > first:
        return candidate[first:last + 1]
    return candidate


def _schema_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]


def decode_report(raw_response: str) -> InsightReport:
    """Decode a structured response into a validated report.

    Keys other than the three collections are ignored; a missing
    collection is a schema error, not an empty one.

    Raises:
        DecodeError: ``json_parse`` when the text is not JSON, ``schema``
            when the JSON is not a valid report object.
    """
    try:
        data: Any = json.loads(_unwrap(raw_response))
    except (json.JSONDecodeError, TypeError) as exc:
        raise DecodeError(stage="json_parse", errors=[str(exc)], raw_response=raw_response) from exc

    if not isinstance(data, dict):
        raise DecodeError(
            stage="schema",
            errors=[f"expected a JSON object, got {type(data).__name__}"],
            raw_response=raw_response,
        )

    collections: Dict[str, Any] = {name: data.get(name) for name in REPORT_COLLECTIONS}
    try:
        return InsightReport.model_validate(collections)
    except ValidationError as exc:
        raise DecodeError(stage="schema", errors=_schema_errors(exc), raw_response=raw_response) from exc
