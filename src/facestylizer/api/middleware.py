"""Request guards: API key authentication and upload size limits."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from facestylizer.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require 'Authorization: Bearer <key>' when FACESTYLIZER_API_KEY is set.

    Without a configured key every request passes.
    """
    expected = get_settings_from_request(request).api_key
    if expected is None:
        return

    presented = b"" if credentials is None else credentials.credentials.encode()
    if not secrets.compare_digest(presented, expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def limit_upload_size(request: Request) -> None:
    """Reject uploads whose declared Content-Length exceeds FACESTYLIZER_MAX_FILE_SIZE.

    The stylize route re-checks the actual byte count after reading.
    """
    declared = request.headers.get("content-length")
    if declared is None or not declared.isdigit():
        return
    limit = get_settings_from_request(request).max_file_size
    if int(declared) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds the {limit} byte limit",
        )
