"""
Chunked insight run endpoints.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, UploadFile, status

from app.api.dependencies import get_tabular_upload, require_allowed_user
from app.schemas.insight_runs import (
    ChunkFailureResponse,
    InsightRunAcceptedResponse,
    InsightRunListResponse,
    InsightRunProgressResponse,
    InsightRunStatusResponse,
)
from app.services.insight_run_service import (
    FastAPIBackgroundTaskExecutor,
    InsightRunConflictError,
    InsightRunNotFoundError,
    InsightRunRecord,
    InsightRunService,
    get_insight_run_service,
)
from ingestion.loader import ParseError

router = APIRouter(tags=["insight-runs"], dependencies=[Depends(require_allowed_user)])


@router.post(
    "/insight-runs",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=InsightRunAcceptedResponse,
)
def create_insight_run(
    background_tasks: BackgroundTasks,
    file: UploadFile = Depends(get_tabular_upload),
    service: InsightRunService = Depends(get_insight_run_service),
) -> InsightRunAcceptedResponse:
    """
    Parse one forecast file and start analysing it in the background.
    """

    try:
        record = service.create_run(
            executor=FastAPIBackgroundTaskExecutor(background_tasks),
            data=file.file.read(),
            file_name=file.filename,
            content_type=file.content_type,
        )
    except ParseError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    finally:
        file.file.close()

    return _to_accepted_response(record)


@router.get("/insight-runs", response_model=InsightRunListResponse)
def list_insight_runs(
    limit: int = Query(default=20, ge=1, le=100, description="Max runs returned, newest first"),
    service: InsightRunService = Depends(get_insight_run_service),
) -> InsightRunListResponse:
    return InsightRunListResponse(runs=[_to_status_response(record) for record in service.list_runs(limit)])


@router.get("/insight-runs/{run_id}", response_model=InsightRunStatusResponse)
def get_insight_run(
    run_id: UUID,
    service: InsightRunService = Depends(get_insight_run_service),
) -> InsightRunStatusResponse:
    record = service.get_run(run_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Insight run not found: {run_id}",
        )
    return _to_status_response(record)


@router.post("/insight-runs/{run_id}/cancel", response_model=InsightRunStatusResponse)
def cancel_insight_run(
    run_id: UUID,
    service: InsightRunService = Depends(get_insight_run_service),
) -> InsightRunStatusResponse:
    try:
        record = service.cancel_run(run_id)
    except InsightRunNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _to_status_response(record)


@router.post(
    "/insight-runs/{run_id}/retry-failed",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=InsightRunAcceptedResponse,
)
def retry_failed_chunks(
    run_id: UUID,
    background_tasks: BackgroundTasks,
    service: InsightRunService = Depends(get_insight_run_service),
) -> InsightRunAcceptedResponse:
    """
    Re-submit only the chunks that failed in a finished run.
    """

    try:
        record = service.retry_failed(
            executor=FastAPIBackgroundTaskExecutor(background_tasks),
            run_id=run_id,
        )
    except InsightRunNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InsightRunConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _to_accepted_response(record)


def _to_accepted_response(record: InsightRunRecord) -> InsightRunAcceptedResponse:
    return InsightRunAcceptedResponse(
        run_id=record.run_id,
        status=record.phase.value,
        file_name=record.file_name,
        row_count=record.row_count,
        created_at=record.created_at,
        retry_of=record.retry_of,
    )


def _to_status_response(record: InsightRunRecord) -> InsightRunStatusResponse:
    result = record.result
    progress = record.progress
    return InsightRunStatusResponse(
        run_id=record.run_id,
        status=record.phase.value,
        file_name=record.file_name,
        row_count=record.row_count,
        created_at=record.created_at,
        updated_at=record.updated_at,
        progress=InsightRunProgressResponse(
            phase=progress.phase.value,
            message=progress.message,
            percent=progress.percent,
            chunk_index=progress.chunk_index,
            total_chunks=progress.total_chunks,
        ),
        failures=[
            ChunkFailureResponse(
                chunk_index=failure.chunk_index,
                error_type=failure.error_type,
                message=failure.message,
                attempts=failure.attempts,
            )
            for failure in (result.failures if result is not None else ())
        ],
        report=result.report if result is not None else None,
        error_message=record.error_message,
        retry_of=record.retry_of,
    )
