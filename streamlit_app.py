"""Streamlit frontend for chunked forecast insight runs."""

from __future__ import annotations

import hashlib
import io
import time
from typing import Any, Optional

import pandas as pd
import streamlit as st

from app.config import (
    get_chunking_settings,
    get_forecast_backend_settings,
    get_llm_settings,
    get_rate_limit_settings,
)
from app.connectors.forecast_backend import ForecastBackendClient, ForecastBackendError, ForecastJobStatus
from app.presentation import InsightCard, build_sections
from ingestion.loader import ParseError, detect_format, load_rows
from llm_synthesis.adapter import build_adapter
from llm_synthesis.schema import ResponseMode
from pipeline.cancellation import CancellationToken
from pipeline.orchestrator import InsightPipeline
from pipeline.state import RunProgress, RunResult

st.set_page_config(page_title="Forecast Insights", page_icon="FI", layout="wide")


@st.cache_data(show_spinner=False)
def _load_preview(data: bytes, filename: str, preview_rows: int) -> pd.DataFrame:
    """Load bounded row preview from the parsed upload."""
    rows = load_rows(data, detect_format(filename))
    return pd.DataFrame([dict(row) for row in rows[:preview_rows]])


@st.cache_resource(show_spinner=False)
def _forecast_client() -> ForecastBackendClient:
    return ForecastBackendClient(settings=get_forecast_backend_settings())


def _render_card(card: InsightCard) -> None:
    st.markdown(f"**{card.title}**")
    for line in card.details:
        st.caption(line)
    st.write(card.explanation)
    st.markdown(f"*Action:* {card.action}")


def _run_analysis(data: bytes, filename: str, token: CancellationToken) -> RunResult:
    """Run one pipeline in-process, streaming progress into the page."""
    llm_settings = get_llm_settings()
    progress_bar = st.progress(0, text="Starting...")

    def _on_progress(progress: RunProgress) -> None:
        progress_bar.progress(progress.percent, text=progress.message or progress.phase.value)

    pipeline = InsightPipeline(
        adapter=build_adapter(llm_settings),
        chunking_settings=get_chunking_settings(),
        rate_limit_settings=get_rate_limit_settings(),
        response_mode=ResponseMode(llm_settings.response_mode),
        cancel_token=token,
        on_progress=_on_progress,
    )
    rows = load_rows(data, detect_format(filename))
    return pipeline.run(rows)


def _retry_analysis(previous: RunResult, token: CancellationToken) -> RunResult:
    llm_settings = get_llm_settings()
    progress_bar = st.progress(0, text="Retrying unfinished chunks...")
    pipeline = InsightPipeline(
        adapter=build_adapter(llm_settings),
        chunking_settings=get_chunking_settings(),
        rate_limit_settings=get_rate_limit_settings(),
        response_mode=ResponseMode(llm_settings.response_mode),
        cancel_token=token,
        on_progress=lambda progress: progress_bar.progress(progress.percent, text=progress.message),
    )
    return pipeline.retry_failed(previous)


def _reset_state() -> None:
    token: Optional[CancellationToken] = st.session_state.get("cancel_token")
    if token is not None:
        token.cancel()
    st.session_state.uploaded_bytes = None
    st.session_state.uploaded_name = None
    st.session_state.uploaded_hash = None
    st.session_state.run_result = None
    st.session_state.run_error = None
    st.session_state.execution_time_s = None
    st.session_state.cancel_token = None


_DEFAULT_STATE: dict[str, Any] = {
    "uploaded_bytes": None,
    "uploaded_name": None,
    "uploaded_hash": None,
    "run_result": None,
    "run_error": None,
    "execution_time_s": None,
    "cancel_token": None,
}
for _key, _value in _DEFAULT_STATE.items():
    if _key not in st.session_state:
        st.session_state[_key] = _value


with st.sidebar:
    st.header("Controls")
    chunking = get_chunking_settings()
    rate_limits = get_rate_limit_settings()
    st.caption(f"Chunk size: {chunking.chunk_size} rows (overlap {chunking.overlap_size})")
    st.caption(f"Cooldown: {rate_limits.cooldown_seconds:.0f}s, {rate_limits.max_attempts} attempts per request")
    run_clicked = st.button("Generate Insights", type="primary", use_container_width=True)
    if st.button("Reset", use_container_width=True):
        _reset_state()
        st.rerun()


st.title("Forecast Insights")

st.subheader("Section 1: Forecast Data Upload")
uploaded_file = st.file_uploader("Upload forecast file", type=["csv", "xlsx"])
preview_rows = st.slider("Preview rows", min_value=5, max_value=100, value=20, step=5)
if uploaded_file is not None:
    uploaded_bytes = uploaded_file.getvalue()
    upload_hash = hashlib.sha256(uploaded_bytes).hexdigest()
    if upload_hash != st.session_state.uploaded_hash:
        st.session_state.run_result = None
        st.session_state.run_error = None
    st.session_state.uploaded_bytes = uploaded_bytes
    st.session_state.uploaded_name = uploaded_file.name
    st.session_state.uploaded_hash = upload_hash

if st.session_state.uploaded_bytes is not None:
    try:
        preview_df = _load_preview(
            st.session_state.uploaded_bytes,
            st.session_state.uploaded_name,
            preview_rows,
        )
        st.dataframe(preview_df, use_container_width=True)
        st.caption(f"Showing first {len(preview_df)} row(s).")
    except ParseError as exc:
        st.error(str(exc))
else:
    st.info("Upload a CSV file or an Excel workbook with a 'forecast' sheet.")

if run_clicked:
    if st.session_state.uploaded_bytes is None:
        st.session_state.run_error = "Upload a forecast file before generating insights."
    else:
        st.session_state.cancel_token = CancellationToken()
        started = time.perf_counter()
        try:
            st.session_state.run_result = _run_analysis(
                st.session_state.uploaded_bytes,
                st.session_state.uploaded_name,
                st.session_state.cancel_token,
            )
            st.session_state.run_error = st.session_state.run_result.error
            st.session_state.execution_time_s = time.perf_counter() - started
        except ParseError as exc:
            st.session_state.run_result = None
            st.session_state.run_error = str(exc)
        except Exception as exc:  # noqa: BLE001
            st.session_state.run_result = None
            st.session_state.run_error = f"Analysis error: {exc}"


st.subheader("Section 2: Insights")
result: Optional[RunResult] = st.session_state.run_result
if st.session_state.run_error:
    st.error(st.session_state.run_error)

if result is None:
    if not st.session_state.run_error:
        st.info("Generate insights to view results.")
else:
    st.caption(result.progress.message)
    if st.session_state.execution_time_s is not None:
        st.caption(f"Execution time: {st.session_state.execution_time_s:.2f}s")

    if result.failures:
        st.warning(f"{len(result.failures)} chunk(s) could not be analysed.")
        for failure in result.failures:
            st.caption(
                f"Chunk {failure.chunk_index + 1}: {failure.error_type} after "
                f"{failure.attempts} attempt(s). {failure.message}"
            )
    if result.chunks and result.pending_chunk_indices:
        if st.button(f"Retry {len(result.pending_chunk_indices)} unfinished chunk(s)"):
            st.session_state.cancel_token = CancellationToken()
            try:
                st.session_state.run_result = _retry_analysis(result, st.session_state.cancel_token)
                st.session_state.run_error = st.session_state.run_result.error
            except Exception as exc:  # noqa: BLE001
                st.session_state.run_error = f"Retry error: {exc}"
            st.rerun()

    if result.report is not None:
        sections = build_sections(result.report)
        if not sections:
            st.info("No insights were found in this dataset.")
        for section in sections:
            with st.expander(f"{section.title} ({section.total})", expanded=True):
                for card in section.visible:
                    _render_card(card)
                if section.collapsed:
                    with st.popover(f"Show {len(section.collapsed)} more"):
                        for card in section.collapsed:
                            _render_card(card)

        st.download_button(
            "Download insights JSON",
            data=result.report.model_dump_json(indent=2),
            file_name="forecast_insights.json",
            mime="application/json",
        )


st.subheader("Section 3: Forecast Backend")
archive = st.file_uploader("Upload sales data archive", type=["zip"], key="forecast_archive")
col_upload, col_status, col_download = st.columns(3)
with col_upload:
    if st.button("Start forecast", disabled=archive is None, use_container_width=True):
        try:
            _forecast_client().upload_archive(archive.getvalue(), archive.name)
            st.success(ForecastJobStatus.STARTED.message)
        except ForecastBackendError as exc:
            st.error(str(exc))
with col_status:
    if st.button("Check status", use_container_width=True):
        try:
            status = _forecast_client().get_status()
            st.info(status.message)
        except ForecastBackendError as exc:
            st.error(str(exc))
with col_download:
    if st.button("Fetch forecast", use_container_width=True):
        try:
            workbook = _forecast_client().download_forecast()
            st.download_button(
                "Download forecast_results.xlsx",
                data=io.BytesIO(workbook),
                file_name="forecast_results.xlsx",
                mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            )
        except ForecastBackendError as exc:
            st.error(str(exc))
