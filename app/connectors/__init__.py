"""
app/connectors package marker.
"""

from app.connectors.forecast_backend import (
    ForecastBackendClient,
    ForecastBackendError,
    ForecastJobStatus,
)

__all__ = [
    "ForecastBackendClient",
    "ForecastBackendError",
    "ForecastJobStatus",
]
