"""
keygate.services.funnel_engine — Funnel State Machine
======================================================

Drives one user through category → geography → source → price → key.

The engine holds no per-user memory: every call reads the persisted
funnel, validates against the pure step table in
:mod:`keygate.engine.funnel`, and applies the transition with a single
compare-and-set in :mod:`keygate.services.funnel_store`.  A transition
that loses a race is not retried; the user is shown the step the funnel
is actually on.

All DB work goes through :func:`run_db` so the event loop never blocks.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine

from keygate.constants import is_reserved_token
from keygate.database.engine import run_db
from keygate.database.models import FunnelState, FunnelStep
from keygate.engine.funnel import (
    format_price,
    next_step,
    previous_step,
    prompt_for,
    validate,
)
from keygate.services import funnel_store
from keygate.services.funnel_store import CasResult, CasStatus
from keygate.services.key_store import Duplicate
from keygate.services.relay import NotificationRelay, notify

logger = logging.getLogger(__name__)


class OutcomeKind(enum.StrEnum):
    PROMPT = "prompt"          # next (or current) step prompt
    SAVED = "saved"            # key stored, funnel closed
    DUPLICATE = "duplicate"    # key already stored, funnel closed
    INVALID = "invalid"        # validation failed, step unchanged
    RESERVED = "reserved"      # menu token sent as step data
    NO_FUNNEL = "no_funnel"
    EXITED = "exited"          # backed out of the first step
    REPLAY = "replay"          # same input id delivered again


@dataclass(frozen=True, slots=True)
class FunnelOutcome:
    kind: OutcomeKind
    text: str
    step: FunnelStep | None = None
    funnel: FunnelState | None = None
    since: datetime | None = None
    # True when the completion text was already pushed through the relay
    notified: bool = False

    @property
    def completed(self) -> bool:
        return self.kind in (OutcomeKind.SAVED, OutcomeKind.DUPLICATE)


NO_FUNNEL_TEXT = "You have no key submission in progress."
RESERVED_TEXT = "That's a menu command, not an answer."
EXITED_TEXT = "Key submission cancelled."


def _saved_text(funnel: FunnelState) -> str:
    return (
        "✅ Key saved!\n"
        f"Platform: {funnel.source_platform} · Category: {funnel.category} · "
        f"Geo: {funnel.geography} · Price: {format_price(funnel.conversion_price)}\n"
        "We'll message you here when processing finishes."
    )


def _duplicate_text(since: datetime) -> str:
    return (
        f"ℹ️ You already submitted this key on {since:%Y-%m-%d %H:%M} UTC. "
        "Nothing was changed."
    )


def _column_value(value):
    # Category / SourcePlatform members are stored by their value
    return value.value if isinstance(value, enum.Enum) else value


def is_replay(input_id: str | None, last_input_id: str | None) -> bool:
    """True when *input_id* was already applied to this funnel.

    Discord message ids are snowflakes and grow with time, so a numeric id
    at or below the last applied one is a redelivery.  Other ids only
    match on equality.
    """
    if input_id is None or last_input_id is None:
        return False
    try:
        return int(input_id) <= int(last_input_id)
    except ValueError:
        return input_id == last_input_id


class FunnelEngine:
    """Async orchestration over the funnel store, key store and relay."""

    def __init__(self, engine: Engine, relay: NotificationRelay | None = None) -> None:
        self.engine = engine
        self.relay = relay

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    async def current_step(self, user_id: int) -> FunnelStep | None:
        funnel = await run_db(funnel_store.get_open_funnel, self.engine, user_id)
        return FunnelStep(funnel.current_step) if funnel is not None else None

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    async def begin(self, user_id: int, now: datetime | None = None) -> FunnelOutcome:
        """Resume the open funnel, or start a new one at the category step."""
        funnel, created = await run_db(funnel_store.begin_funnel, self.engine, user_id, now)
        step = FunnelStep(funnel.current_step)
        text = prompt_for(step)
        if not created:
            text = "Picking up where you left off.\n" + text
        return FunnelOutcome(OutcomeKind.PROMPT, text, step=step, funnel=funnel)

    async def advance(
        self,
        user_id: int,
        raw_input: str,
        input_id: str | None = None,
        now: datetime | None = None,
    ) -> FunnelOutcome:
        """Apply one answer to the user's open funnel."""
        funnel = await run_db(funnel_store.get_open_funnel, self.engine, user_id)
        if funnel is None:
            return FunnelOutcome(OutcomeKind.NO_FUNNEL, NO_FUNNEL_TEXT)

        step = FunnelStep(funnel.current_step)

        if is_reserved_token(raw_input):
            return FunnelOutcome(
                OutcomeKind.RESERVED,
                f"{RESERVED_TEXT}\n{prompt_for(step)}",
                step=step,
                funnel=funnel,
            )

        if is_replay(input_id, funnel.last_input_id):
            return FunnelOutcome(OutcomeKind.REPLAY, prompt_for(step), step=step, funnel=funnel)

        parsed = validate(step, raw_input)
        if not parsed.ok:
            return FunnelOutcome(
                OutcomeKind.INVALID,
                f"{parsed.error}\n{prompt_for(step)}",
                step=step,
                funnel=funnel,
            )

        if step is FunnelStep.KEY:
            return await self._complete(user_id, parsed.value, input_id, now)

        target = next_step(step)
        result = await run_db(
            funnel_store.advance_step,
            self.engine,
            user_id,
            step,
            _column_value(parsed.value),
            target,
            input_id=input_id,
            now=now,
        )
        if result.status is CasStatus.APPLIED:
            return FunnelOutcome(
                OutcomeKind.PROMPT, prompt_for(target), step=target, funnel=result.funnel,
            )
        return self._lost_race(user_id, result)

    async def go_back(self, user_id: int, now: datetime | None = None) -> FunnelOutcome:
        """Step back once, keeping captured answers.  From the first step the
        open funnel is discarded."""
        funnel = await run_db(funnel_store.get_open_funnel, self.engine, user_id)
        if funnel is None:
            return FunnelOutcome(OutcomeKind.NO_FUNNEL, NO_FUNNEL_TEXT)

        step = FunnelStep(funnel.current_step)
        previous = previous_step(step)
        if previous is None:
            deleted = await run_db(
                funnel_store.discard_open_funnel, self.engine, user_id, step,
            )
            if deleted:
                logger.info("Funnel %s discarded by user %s", funnel.id, user_id)
                return FunnelOutcome(OutcomeKind.EXITED, EXITED_TEXT)
            current = await run_db(funnel_store.get_open_funnel, self.engine, user_id)
            status = CasStatus.STALE if current is not None else CasStatus.MISSING
            return self._lost_race(user_id, CasResult(status, current))

        result = await run_db(
            funnel_store.retreat_step, self.engine, user_id, step, previous, now,
        )
        if result.status is CasStatus.APPLIED:
            return FunnelOutcome(
                OutcomeKind.PROMPT, prompt_for(previous), step=previous, funnel=result.funnel,
            )
        return self._lost_race(user_id, result)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    async def _complete(
        self,
        user_id: int,
        key_text: str,
        input_id: str | None,
        now: datetime | None,
    ) -> FunnelOutcome:
        completion = await run_db(
            funnel_store.complete_with_key,
            self.engine,
            user_id,
            key_text,
            input_id=input_id,
            now=now,
        )
        if isinstance(completion, CasResult):
            return self._lost_race(user_id, completion)

        funnel = completion.funnel
        if isinstance(completion.result, Duplicate):
            since = completion.result.since
            kind, text = OutcomeKind.DUPLICATE, _duplicate_text(since)
        else:
            since = None
            kind, text = OutcomeKind.SAVED, _saved_text(funnel)

        relayed = await notify(self.relay, user_id, text)
        return FunnelOutcome(
            kind,
            text,
            funnel=funnel,
            since=since,
            notified=relayed.delivered,
        )

    def _lost_race(self, user_id: int, result: CasResult) -> FunnelOutcome:
        if result.status is CasStatus.MISSING or result.funnel is None:
            return FunnelOutcome(OutcomeKind.NO_FUNNEL, NO_FUNNEL_TEXT)
        step = FunnelStep(result.funnel.current_step)
        logger.info("Funnel transition for user %s superseded; now at %s", user_id, step)
        return FunnelOutcome(
            OutcomeKind.PROMPT, prompt_for(step), step=step, funnel=result.funnel,
        )
