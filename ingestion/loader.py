"""
ingestion/loader.py

Tabular loader for uploaded forecast files.

Both accepted formats end up in the same delimited-text row parser:
spreadsheets are reduced to their ``forecast`` sheet and rendered as CSV
before parsing, so column handling never diverges between formats.
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd

logger = logging.getLogger(__name__)

RowRecord = Mapping[str, str]

FORECAST_SHEET_NAME = "forecast"

SPREADSHEET_CONTENT_TYPES = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

# Browsers on Windows label .csv uploads as application/vnd.ms-excel.
DELIMITED_CONTENT_TYPES = {
    "text/csv",
    "application/csv",
    "application/vnd.ms-excel",
    "text/plain",
}


class ParseError(ValueError):
    """
    Raised when an uploaded file cannot be turned into row records.
    """


class TabularFormat(str, Enum):
    DELIMITED = "delimited"
    SPREADSHEET = "spreadsheet"


def detect_format(filename: str | None, content_type: str | None = None) -> TabularFormat:
    """
    Resolve the declared file type from its name or MIME type.
    """

    name = (filename or "").strip().lower()
    mime = (content_type or "").strip().lower()

    if name.endswith(".xlsx") or mime in SPREADSHEET_CONTENT_TYPES:
        return TabularFormat.SPREADSHEET
    if name.endswith(".csv") or mime in DELIMITED_CONTENT_TYPES:
        return TabularFormat.DELIMITED
    raise ParseError("Only CSV or Excel (.xlsx) files are supported.")


def load_rows(data: bytes, file_format: TabularFormat) -> list[RowRecord]:
    """
    Parse raw file bytes into an ordered list of read-only row records.

    Raises:
        ParseError: empty content, missing header, no data rows, or a
            workbook without a ``forecast`` sheet.
    """

    if not data or not data.strip():
        raise ParseError("Uploaded file is empty.")

    if file_format is TabularFormat.SPREADSHEET:
        text = spreadsheet_to_delimited(data)
    else:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ParseError("CSV file must be UTF-8 encoded.") from exc

    rows = parse_delimited(text)
    logger.info("Loaded %d rows from %s upload", len(rows), file_format.value)
    return rows


def spreadsheet_to_delimited(data: bytes) -> str:
    """
    Extract the ``forecast`` sheet of an .xlsx workbook as CSV text.
    """

    try:
        workbook = pd.ExcelFile(io.BytesIO(data), engine="openpyxl")
    except (ValueError, OSError, zipfile.BadZipFile) as exc:
        raise ParseError(
            f'Failed to read Excel file. Please ensure it contains a valid "{FORECAST_SHEET_NAME}" sheet.'
        ) from exc

    with workbook:
        if FORECAST_SHEET_NAME not in workbook.sheet_names:
            raise ParseError(f'Excel file must contain a sheet named "{FORECAST_SHEET_NAME}".')
        frame = workbook.parse(FORECAST_SHEET_NAME, dtype=str, keep_default_na=False)

    if len(frame.columns) == 0:
        raise ParseError(f'The "{FORECAST_SHEET_NAME}" sheet has no header row.')
    return frame.to_csv(index=False)


def parse_delimited(text: str) -> list[RowRecord]:
    """
    Parse CSV text with a header row, skipping fully empty lines.
    """

    reader = csv.DictReader(io.StringIO(text, newline=""))
    headers = [header for header in (reader.fieldnames or []) if header is not None]
    if not headers or all(not header.strip() for header in headers):
        raise ParseError("CSV header row is missing.")

    rows: list[RowRecord] = []
    for raw_row in reader:
        if _is_completely_empty_row(raw_row):
            continue
        rows.append(_freeze_row(raw_row, headers))

    if not rows:
        raise ParseError("CSV parsing failed or file is empty.")
    return rows


def rows_to_delimited(rows: Sequence[RowRecord]) -> str:
    """
    Serialize row records back to CSV text with a header row.

    Field order follows the first row, with columns that only appear in later
    rows appended in first-seen order.
    """

    fieldnames = _collect_fieldnames(rows)
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({name: row.get(name, "") for name in fieldnames})
    return buffer.getvalue()


def _collect_fieldnames(rows: Iterable[RowRecord]) -> list[str]:
    seen: dict[str, None] = {}
    for row in rows:
        for name in row:
            seen.setdefault(name, None)
    return list(seen)


def _freeze_row(raw_row: Mapping[Any, Any], headers: list[str]) -> RowRecord:
    # DictReader files overflow cells under the None key; they have no column.
    values = {header: _clean(raw_row.get(header)) for header in headers}
    return MappingProxyType(values)


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _is_completely_empty_row(row: Mapping[Any, Any]) -> bool:
    for value in row.values():
        if isinstance(value, list):
            if any(str(item).strip() for item in value):
                return False
        elif value is not None and str(value).strip():
            return False
    return True
