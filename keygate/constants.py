"""
keygate.constants — Shared Constants & Helpers
================================================

Single source of truth for menu tokens and small helpers used by the bot,
the router, and the API.  Import from here instead of duplicating.
"""

from __future__ import annotations

from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Menu tokens — the labels users send to navigate.  Anything in
# RESERVED_TOKENS is navigation and must never be stored as funnel data.
# ---------------------------------------------------------------------------
MENU_SUBMIT_KEY = "\U0001f511 Submit API key"   # 🔑
MENU_STATUS = "\U0001f4ca My status"            # 📊
MENU_SUPPORT = "\U0001f4de Support"             # 📞
MENU_MAIN = "\U0001f3e0 Main menu"              # 🏠
MENU_BACK = "\u21a9\ufe0f Back"                # ↩️

MAIN_MENU: list[str] = [MENU_SUBMIT_KEY, MENU_STATUS, MENU_SUPPORT, MENU_MAIN]

# Plain-word aliases so users without the emoji keyboard can navigate
MENU_ALIASES: dict[str, str] = {
    "submit": MENU_SUBMIT_KEY,
    "status": MENU_STATUS,
    "support": MENU_SUPPORT,
    "menu": MENU_MAIN,
    "back": MENU_BACK,
}

START_COMMANDS = frozenset({"/start"})
MY_ID_COMMANDS = frozenset({"/myid", "/id"})

RESERVED_TOKENS: frozenset[str] = frozenset(
    [*MAIN_MENU, MENU_BACK, *MENU_ALIASES]
)

# days_remaining reported for administrators (they never expire)
UNLIMITED_DAYS = 999

# Soonest-expiring window used by stats
EXPIRING_SOON_DAYS = 7


def resolve_menu_token(text: str) -> str | None:
    """Map *text* to its canonical menu label, or None if it isn't one."""
    stripped = text.strip()
    if stripped in RESERVED_TOKENS and stripped not in MENU_ALIASES:
        return stripped
    return MENU_ALIASES.get(stripped.lower())


def is_reserved_token(text: str) -> bool:
    """True for menu labels, their aliases, and slash or bang commands."""
    stripped = text.strip()
    return stripped.startswith(("/", "!")) or resolve_menu_token(stripped) is not None


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------
def mask_key(key_text: str | None) -> str | None:
    """Show only the first and last four characters of a secret."""
    if key_text is None:
        return None
    if len(key_text) <= 8:
        return "*" * len(key_text)
    return f"{key_text[:4]}…{key_text[-4:]}"


def format_menu(options: list[str]) -> str:
    """Render menu options as a single line of plain-text tokens."""
    return " · ".join(options)
