"""Request guards: API key authentication and upload size limits."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from alignx.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)


def _settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require 'Authorization: Bearer <key>' when ALIGNX_API_KEY is set.

    Without a configured key every request passes.
    """
    api_key = _settings(request).api_key
    if api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def limit_request_size(
    request: Request,
    content_length: Annotated[int | None, Header()] = None,
) -> None:
    """Reject bodies larger than a full batch of maximum-size files up front."""
    settings = _settings(request)
    limit = settings.max_file_size * settings.max_batch_size
    if content_length is not None and content_length > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request body of {content_length} bytes exceeds {limit} bytes",
        )
