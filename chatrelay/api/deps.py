"""
Shared route dependencies: service access, the three auth classes and the
trigger side-dispatch.

Routes list auth first and triggers second in ``dependencies=[...]``;
FastAPI resolves them in order, and handlers read the body themselves, so a
request that fails auth is rejected before its body is read.

- key routes: ``x-api-key`` must equal ``API_KEY`` (no key configured: 401)
- session routes: JWT from the session cookie or ``Authorization: Bearer``
- public routes: the platform's shared-secret header, checked when a secret
  is configured
"""

import json
import logging
from typing import Any, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.agent.channels.base import ChannelType
from chatrelay.config import settings
from chatrelay.container import RelayServices
from chatrelay.db import get_db
from chatrelay.db.models import User
from chatrelay.services.auth_service import (
    decode_access_token,
    get_user_by_id,
    secrets_match,
    verify_api_key,
)

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)  # Cookie is checked too


def get_services(request: Request) -> RelayServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


# ── Key auth ─────────────────────────────────────────────

async def require_api_key(x_api_key: Optional[str] = Header(None)) -> None:
    if not verify_api_key(x_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


# ── Session auth ─────────────────────────────────────────

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """The logged-in user. Checks the Bearer token, then the session cookie."""
    user_id = None

    if credentials and credentials.credentials:
        user_id = decode_access_token(credentials.credentials)

    if not user_id:
        cookie_token = request.cookies.get(settings.session_cookie_name)
        if cookie_token:
            user_id = decode_access_token(cookie_token)

    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user


# ── Public routes (shared secrets) ───────────────────────

def _check_public_secret(
    services: RelayServices, channel: ChannelType, provided: Optional[str], expected: Optional[str]
) -> None:
    if expected and not secrets_match(provided, expected):
        services.orchestrator.reject(channel, "secret mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def verify_telegram_secret(
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
    services: RelayServices = Depends(get_services),
) -> None:
    _check_public_secret(
        services,
        ChannelType.TELEGRAM,
        x_telegram_bot_api_secret_token,
        services.settings.telegram_webhook_secret,
    )


async def verify_github_secret(
    x_github_webhook_secret_token: Optional[str] = Header(None),
    services: RelayServices = Depends(get_services),
) -> None:
    _check_public_secret(
        services,
        ChannelType.GITHUB_JOB,
        x_github_webhook_secret_token,
        services.settings.gh_webhook_secret,
    )


# ── Request body + triggers ──────────────────────────────

async def read_json(request: Request) -> Any:
    """Parsed JSON body, or ``None`` when it is missing or invalid."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None


async def fire_triggers(
    request: Request,
    services: RelayServices = Depends(get_services),
) -> None:
    """Hand the request to the trigger rules. Never fails the request."""
    try:
        path = request.url.path
        prefix = services.settings.api_prefix
        if prefix and path.startswith(prefix):
            path = path[len(prefix):] or "/"
        body = await read_json(request)
        services.triggers.fire(path, body, request.query_params, request.headers)
    except Exception:
        logger.exception("[TRIGGER] Side-dispatch failed")
