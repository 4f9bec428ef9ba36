"""
keygate.engine.funnel — Funnel Step Table
==========================================

Pure step table for the key-intake dialogue.  No Discord I/O, no DB I/O
inside the engine.

Pipeline:
  category → geography → source → price → key → (completed)

Each step has a parser that turns raw user text into a typed value or a
corrective error message.  The orchestration (persistence, compare-and-set
transitions, relay) lives in :mod:`keygate.services.funnel_engine`.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from keygate.constants import MENU_BACK, MENU_MAIN, format_menu
from keygate.database.models import Category, FunnelStep, SourcePlatform

STEP_ORDER: tuple[FunnelStep, ...] = (
    FunnelStep.CATEGORY,
    FunnelStep.GEOGRAPHY,
    FunnelStep.SOURCE,
    FunnelStep.PRICE,
    FunnelStep.KEY,
)

# Column on FunnelState written by each step
STEP_FIELDS: dict[FunnelStep, str] = {
    FunnelStep.CATEGORY: "category",
    FunnelStep.GEOGRAPHY: "geography",
    FunnelStep.SOURCE: "source_platform",
    FunnelStep.PRICE: "conversion_price",
    FunnelStep.KEY: "submitted_key",
}

GEOGRAPHY_MAX_LENGTH = 100

# Numeric(10, 2): eight integer digits
PRICE_MAX = Decimal("99999999.99")
_CENTS = Decimal("0.01")

KEY_PATTERN = re.compile(r"^[A-Za-z0-9._-]{25,2048}$")

PRICE_ERROR = "Please enter a valid positive number, e.g. 75.5"
KEY_ERROR = (
    "That doesn't look like an API key.  Paste the full secret string: "
    "at least 25 characters of letters, digits, '.', '_' or '-'."
)


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of parsing one step's input."""

    ok: bool
    value: Any = None
    error: str | None = None


def _ok(value: Any) -> StepResult:
    return StepResult(ok=True, value=value)


def _fail(error: str) -> StepResult:
    return StepResult(ok=False, error=error)


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------
def next_step(step: FunnelStep) -> FunnelStep | None:
    """Step after *step*, or None when *step* is the last one."""
    idx = STEP_ORDER.index(FunnelStep(step))
    if idx + 1 < len(STEP_ORDER):
        return STEP_ORDER[idx + 1]
    return None


def previous_step(step: FunnelStep) -> FunnelStep | None:
    """Step before *step*, or None from the first step."""
    idx = STEP_ORDER.index(FunnelStep(step))
    if idx == 0:
        return None
    return STEP_ORDER[idx - 1]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------
_CATEGORY_LOOKUP = {c.value.lower(): c for c in Category}
_SOURCE_LOOKUP = {p.value.lower(): p for p in SourcePlatform}


def parse_category(text: str) -> StepResult:
    found = _CATEGORY_LOOKUP.get(text.strip().lower())
    if found is None:
        return _fail("Please pick one of the listed categories.")
    return _ok(found)


def parse_geography(text: str) -> StepResult:
    value = text.strip()
    if not value:
        return _fail("Please enter a country or region, e.g. DE.")
    if len(value) > GEOGRAPHY_MAX_LENGTH:
        return _fail(f"Please keep the geography under {GEOGRAPHY_MAX_LENGTH} characters.")
    return _ok(value)


def parse_source(text: str) -> StepResult:
    # "Tik Tok", " tiktok " and "TIKTOK" all match
    normalized = "".join(text.split()).lower()
    found = _SOURCE_LOOKUP.get(normalized)
    if found is None:
        return _fail("Please pick one of the listed platforms.")
    return _ok(found)


def parse_price(text: str) -> StepResult:
    """Parse a positive price; ``,`` is accepted as the decimal separator."""
    raw = text.strip().replace(",", ".")
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return _fail(PRICE_ERROR)
    if not value.is_finite() or value <= 0 or value > PRICE_MAX:
        return _fail(PRICE_ERROR)
    value = value.quantize(_CENTS, rounding=ROUND_HALF_UP)
    # 0.001 rounds to zero cents
    if value <= 0:
        return _fail(PRICE_ERROR)
    return _ok(value)


def parse_key(text: str) -> StepResult:
    value = text.strip()
    if not KEY_PATTERN.match(value):
        return _fail(KEY_ERROR)
    return _ok(value)


PARSERS: dict[FunnelStep, Callable[[str], StepResult]] = {
    FunnelStep.CATEGORY: parse_category,
    FunnelStep.GEOGRAPHY: parse_geography,
    FunnelStep.SOURCE: parse_source,
    FunnelStep.PRICE: parse_price,
    FunnelStep.KEY: parse_key,
}


def validate(step: FunnelStep, text: str) -> StepResult:
    """Run the parser registered for *step*."""
    return PARSERS[FunnelStep(step)](text)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------
_PROMPTS: dict[FunnelStep, str] = {
    FunnelStep.CATEGORY: "Step 1/5 — Choose your advertising category:",
    FunnelStep.GEOGRAPHY: "Step 2/5 — Which geography do you target? (e.g. DE, US, BR)",
    FunnelStep.SOURCE: "Step 3/5 — Which ad platform is the key for?",
    FunnelStep.PRICE: "Step 4/5 — What is your target conversion price? (e.g. 75.5)",
    FunnelStep.KEY: "Step 5/5 — Paste your API key.",
}

_OPTIONS: dict[FunnelStep, list[str]] = {
    FunnelStep.CATEGORY: [c.value for c in Category],
    FunnelStep.SOURCE: [p.value for p in SourcePlatform],
}


def prompt_for(step: FunnelStep) -> str:
    """Prompt text for *step*, with its choices and navigation tokens."""
    step = FunnelStep(step)
    lines = [_PROMPTS[step]]
    if step in _OPTIONS:
        lines.append(format_menu(_OPTIONS[step]))
    lines.append(format_menu([MENU_BACK, MENU_MAIN]))
    return "\n".join(lines)


def format_price(value: Decimal | None) -> str | None:
    """Render a price without trailing zeros: ``75.50`` → ``75.5``."""
    if value is None:
        return None
    return format(Decimal(value).normalize(), "f")
