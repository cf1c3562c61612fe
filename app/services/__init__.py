"""
app/services package marker.
"""

from app.services.insight_run_service import (
    InsightRunConflictError,
    InsightRunNotFoundError,
    InsightRunService,
    get_insight_run_service,
)

__all__ = [
    "InsightRunConflictError",
    "InsightRunNotFoundError",
    "InsightRunService",
    "get_insight_run_service",
]
