"""
keygate.api.deps — FastAPI dependency injection
================================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from keygate.config import KeyGateConfig, load_config
from keygate.database.engine import create_db_engine
from keygate.services.admin_console import AdminConsole
from keygate.services.relay import NotificationRelay, RestRelay

_WEAK_SECRETS = frozenset({
    "keygate-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> KeyGateConfig:
    return load_config(os.getenv("KEYGATE_CONFIG", "config.yaml"))


@lru_cache(maxsize=1)
def get_relay() -> NotificationRelay:
    return RestRelay()


def get_console(
    engine: Annotated[Engine, Depends(get_engine)],
    cfg: Annotated[KeyGateConfig, Depends(get_config)],
    relay: Annotated[NotificationRelay, Depends(get_relay)],
) -> AdminConsole:
    return AdminConsole(engine, cfg, relay)


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
    cfg: KeyGateConfig = Depends(get_config),
) -> dict:
    """Validate the bearer JWT; ``sub`` must be on the admin allow-list.

    401 for a missing or invalid token, 403 for a valid token whose
    subject is not an administrator.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    try:
        admin_id = int(payload.get("sub", ""))
    except (TypeError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token subject")
    if not cfg.is_admin(admin_id):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    payload["admin_id"] = admin_id
    return payload
