"""
app/api/routers package marker.
"""

from app.api.routers.insight_runs import router as insight_runs_router

__all__ = [
    "insight_runs_router",
]
