"""
app/schemas package marker.
"""

from app.schemas.insight_runs import (
    ChunkFailureResponse,
    InsightRunAcceptedResponse,
    InsightRunListResponse,
    InsightRunProgressResponse,
    InsightRunStatusResponse,
)

__all__ = [
    "ChunkFailureResponse",
    "InsightRunAcceptedResponse",
    "InsightRunListResponse",
    "InsightRunProgressResponse",
    "InsightRunStatusResponse",
]
