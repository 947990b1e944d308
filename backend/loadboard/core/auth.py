"""Actor resolution dependency for API routes."""
from __future__ import annotations

from typing import Dict

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from loadboard.core.config import get_settings
from loadboard.core.logging import logger
from loadboard.models.accounts import AccountRecord
from loadboard.services.accounts import account_service


security = HTTPBearer(auto_error=False)


def _parse_actor_tokens(raw: str) -> Dict[str, str]:
    """Parse `token:account_id` comma-separated values from env."""
    mapping: Dict[str, str] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        if ":" not in item:
            logger.warning("Ignoring malformed actor token mapping entry", entry=item)
            continue
        token, account_id = item.split(":", 1)
        token = token.strip()
        account_id = account_id.strip()
        if token and account_id:
            mapping[token] = account_id
    return mapping


def _resolve_account_id(
    credentials: HTTPAuthorizationCredentials | None,
    x_actor_id: str | None,
) -> str | None:
    settings = get_settings()
    if not settings.auth_enabled:
        return (x_actor_id or "").strip() or None

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )
    account_id = _parse_actor_tokens(settings.actor_tokens).get(credentials.credentials.strip())
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )
    if x_actor_id and x_actor_id.strip() and x_actor_id.strip() != account_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token actor mismatch",
        )
    return account_id


def get_optional_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
) -> AccountRecord | None:
    """Resolve the caller when one is identified; anonymous callers get None."""
    if credentials is None and not (x_actor_id or "").strip():
        return None
    account_id = _resolve_account_id(credentials, x_actor_id)
    if account_id is None:
        return None
    account = account_service.find(account_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown actor '{account_id}'",
        )
    return account


def get_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
) -> AccountRecord:
    """Resolve the calling account from the bearer token or the X-Actor-Id header."""
    account_id = _resolve_account_id(credentials, x_actor_id)
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id header required",
        )
    account = account_service.find(account_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown actor '{account_id}'",
        )
    return account
