"""
Schemas for insight run trigger and status endpoints.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from llm_synthesis.schema import InsightReport


class InsightRunProgressResponse(BaseModel):
    phase: str
    message: str
    percent: int = Field(..., ge=0, le=100)
    chunk_index: int | None = None
    total_chunks: int = Field(..., ge=0)


class ChunkFailureResponse(BaseModel):
    chunk_index: int = Field(..., ge=0)
    error_type: str
    message: str
    attempts: int = Field(..., ge=0)


class InsightRunAcceptedResponse(BaseModel):
    run_id: UUID
    status: str
    file_name: str
    row_count: int = Field(..., ge=0)
    created_at: datetime
    retry_of: UUID | None = None


class InsightRunStatusResponse(BaseModel):
    run_id: UUID
    status: str
    file_name: str
    row_count: int = Field(..., ge=0)
    created_at: datetime
    updated_at: datetime
    progress: InsightRunProgressResponse
    failures: list[ChunkFailureResponse] = Field(default_factory=list)
    report: InsightReport | None = None
    error_message: str | None = None
    retry_of: UUID | None = None


class InsightRunListResponse(BaseModel):
    runs: list[InsightRunStatusResponse] = Field(default_factory=list)
