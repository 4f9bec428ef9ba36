"""
keygate.api.auth — Admin JWT issuance
======================================

There is no login flow: an operator with shell access mints a token for
an id on ``admin_user_ids``::

    python -m keygate.api.auth 123456789012345678 --hours 12

The token is sent as ``Authorization: Bearer <token>``.  Removing the id
from ``config.yaml`` revokes it on the next request.
"""

from __future__ import annotations

import argparse
import sys
from datetime import UTC, datetime, timedelta

import jwt
from dotenv import load_dotenv
from fastapi import APIRouter, Depends

load_dotenv()

from keygate.api.deps import (  # noqa: E402
    JWT_ALGORITHM,
    JWT_SECRET,
    get_config,
    get_current_admin,
)
from keygate.config import KeyGateConfig  # noqa: E402

router = APIRouter(prefix="/auth", tags=["auth"])

DEFAULT_TOKEN_HOURS = 12


def issue_admin_token(
    admin_id: int,
    cfg: KeyGateConfig,
    hours: int = DEFAULT_TOKEN_HOURS,
) -> str:
    """Sign a JWT for *admin_id*.  Refuses ids not on the allow-list."""
    if not cfg.is_admin(admin_id):
        raise ValueError(f"{admin_id} is not in admin_user_ids")
    payload = {
        "sub": str(admin_id),
        "is_admin": True,
        "exp": datetime.now(UTC) + timedelta(hours=hours),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


@router.get("/me")
async def me(admin: dict = Depends(get_current_admin)):
    """Return the current authenticated admin's id."""
    return {"id": str(admin["admin_id"]), "is_admin": True}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Mint an admin API token.")
    parser.add_argument("admin_id", type=int)
    parser.add_argument("--hours", type=int, default=DEFAULT_TOKEN_HOURS)
    args = parser.parse_args(argv)

    cfg = get_config()
    try:
        token = issue_admin_token(args.admin_id, cfg, args.hours)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
