"""
keygate.config — YAML Configuration Loader
===========================================

**Why this file exists:**
This module reads ``config.yaml`` for non-secret settings (bot prefix,
administrator allow-list, grant defaults, reminder tuning).  Secrets
(``DISCORD_TOKEN``, ``DATABASE_URL``, ``JWT_SECRET``) stay in ``.env``.

The administrator allow-list is resolved once at process start and handed
to the core as an opaque ``is_admin(user_id)`` predicate.  It is never
stored in the database.

Usage::

    from keygate.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.service_name)      # "Skayfol Analytics"
    print(cfg.is_admin(1234))    # False
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class KeyGateConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    service_name: str

    # Discord
    bot_prefix: str

    # Administrators (Discord user snowflakes)
    admin_user_ids: frozenset[int]

    # HTTP API
    api_port: int

    # Access grants
    default_grant_days: int = 30

    # Shown to denied users and on the support menu item
    support_contact: str = ""

    # Reminders
    stale_funnel_hours: int = 24
    reminder_interval_minutes: int = 60

    def is_admin(self, user_id: int) -> bool:
        """Return True if *user_id* is on the administrator allow-list."""
        return user_id in self.admin_user_ids


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_admin_ids(raw: object) -> frozenset[int]:
    """Accept a YAML list or a comma-separated string of user ids."""
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        items = [part.strip() for part in raw.split(",")]
    elif isinstance(raw, int):
        items = [raw]
    else:
        items = list(raw)
    return frozenset(int(item) for item in items if str(item).strip())


def load_config(path: str | Path = "config.yaml") -> KeyGateConfig:
    """Read *path* and return a :class:`KeyGateConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    return KeyGateConfig(
        service_name=raw["service_name"],
        bot_prefix=raw["bot_prefix"],
        admin_user_ids=parse_admin_ids(raw["admin_user_ids"]),
        api_port=int(raw["api_port"]),
        default_grant_days=int(raw.get("default_grant_days", 30)),
        support_contact=raw.get("support_contact") or "",
        stale_funnel_hours=int(raw.get("stale_funnel_hours", 24)),
        reminder_interval_minutes=int(raw.get("reminder_interval_minutes", 60)),
    )
