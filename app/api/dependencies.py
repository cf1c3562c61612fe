"""
app/api/dependencies.py

Shared FastAPI dependencies for request validation.
"""

from __future__ import annotations

from fastapi import Depends, File, Header, HTTPException, UploadFile, status

from app.config import AccessSettings, get_access_settings
from ingestion.loader import ParseError, detect_format


def get_tabular_upload(file: UploadFile = File(...)) -> UploadFile:
    """
    Validate that the uploaded file is a CSV or .xlsx by extension or MIME type.

    Uses the same detection as parsing, so an upload admitted here is never
    rejected later for its declared type.
    """

    try:
        detect_format(file.filename, file.content_type)
    except ParseError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return file


def require_allowed_user(
    x_user_id: str | None = Header(default=None),
    access: AccessSettings = Depends(get_access_settings),
) -> str:
    """
    Admit requests carrying an authenticated user id from the allow-list.
    """

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required.",
        )
    if access.allowed_user_ids and user_id not in access.allowed_user_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not allowed to access this resource.",
        )
    return user_id
