"""Daily and monthly caps on assisted (remote-enriched) recomputations.

Counters reset at the start of the next UTC day and the next UTC month. State
persists through a ``QuotaStore``: in-memory for single-process use, or the
``dose_assisted_usage`` table via psycopg.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row

from .errors import QuotaStoreUnavailable
from .models import QuotaState, RemainingAssisted

logger = logging.getLogger(__name__)

DEFAULT_SCOPE_KEY = "default"

QUOTA_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS dose_assisted_usage (
    scope_key TEXT PRIMARY KEY,
    daily_count INTEGER NOT NULL DEFAULT 0,
    daily_reset_at TIMESTAMPTZ NOT NULL,
    monthly_count INTEGER NOT NULL DEFAULT 0,
    monthly_reset_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_day_start(now: datetime) -> datetime:
    now = _as_utc(now)
    return datetime(now.year, now.month, now.day, tzinfo=UTC) + timedelta(days=1)


def next_month_start(now: datetime) -> datetime:
    now = _as_utc(now)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=UTC)
    return datetime(now.year, now.month + 1, 1, tzinfo=UTC)


def fresh_state(now: datetime) -> QuotaState:
    return QuotaState(
        daily_count=0,
        daily_reset_at=next_day_start(now),
        monthly_count=0,
        monthly_reset_at=next_month_start(now),
    )


def roll_forward(state: QuotaState, now: datetime) -> QuotaState:
    """Zero any counter whose reset boundary has passed."""
    now = _as_utc(now)
    daily_count, daily_reset_at = state.daily_count, _as_utc(state.daily_reset_at)
    monthly_count, monthly_reset_at = state.monthly_count, _as_utc(state.monthly_reset_at)
    if now >= daily_reset_at:
        daily_count, daily_reset_at = 0, next_day_start(now)
    if now >= monthly_reset_at:
        monthly_count, monthly_reset_at = 0, next_month_start(now)
    return QuotaState(
        daily_count=daily_count,
        daily_reset_at=daily_reset_at,
        monthly_count=monthly_count,
        monthly_reset_at=monthly_reset_at,
    )


class QuotaStore(Protocol):
    async def load(self) -> QuotaState | None: ...

    async def save(self, state: QuotaState) -> None: ...


class InMemoryQuotaStore:
    def __init__(self, state: QuotaState | None = None) -> None:
        self.state = state

    async def load(self) -> QuotaState | None:
        return self.state

    async def save(self, state: QuotaState) -> None:
        self.state = state


class PostgresQuotaStore:
    """Quota persistence in ``dose_assisted_usage``, one row per scope key."""

    def __init__(self, conn: psycopg.AsyncConnection[Any], scope_key: str = DEFAULT_SCOPE_KEY) -> None:
        self.conn = conn
        self.scope_key = scope_key

    async def ensure_table(self) -> None:
        async with self.conn.cursor() as cur:
            await cur.execute(QUOTA_TABLE_DDL)

    async def load(self) -> QuotaState | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT daily_count, daily_reset_at, monthly_count, monthly_reset_at
                FROM dose_assisted_usage
                WHERE scope_key = %s
                """,
                (self.scope_key,),
            )
            row = await cur.fetchone()

        if row is None:
            return None
        return QuotaState(
            daily_count=int(row["daily_count"]),
            daily_reset_at=_as_utc(row["daily_reset_at"]),
            monthly_count=int(row["monthly_count"]),
            monthly_reset_at=_as_utc(row["monthly_reset_at"]),
        )

    async def save(self, state: QuotaState) -> None:
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO dose_assisted_usage (
                    scope_key, daily_count, daily_reset_at,
                    monthly_count, monthly_reset_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, now())
                ON CONFLICT (scope_key) DO UPDATE SET
                    daily_count = EXCLUDED.daily_count,
                    daily_reset_at = EXCLUDED.daily_reset_at,
                    monthly_count = EXCLUDED.monthly_count,
                    monthly_reset_at = EXCLUDED.monthly_reset_at,
                    updated_at = now()
                """,
                (
                    self.scope_key,
                    state.daily_count,
                    state.daily_reset_at,
                    state.monthly_count,
                    state.monthly_reset_at,
                ),
            )


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: str = ""
    code: str | None = None


class QuotaLedger:
    """Checks and charges the assisted-run caps.

    Store failures (psycopg errors, dropped connections) surface as
    ``QuotaStoreUnavailable`` so callers can degrade instead of crashing.
    """

    def __init__(
        self,
        store: QuotaStore | None = None,
        *,
        max_per_day: int = 10,
        max_per_month: int = 60,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store if store is not None else InMemoryQuotaStore()
        self.max_per_day = max_per_day
        self.max_per_month = max_per_month
        self._clock = clock

    async def _load(self) -> QuotaState | None:
        try:
            return await self.store.load()
        except (psycopg.Error, OSError) as exc:
            raise QuotaStoreUnavailable(f"Could not read assisted usage: {exc}") from exc

    async def _save(self, state: QuotaState) -> None:
        try:
            await self.store.save(state)
        except (psycopg.Error, OSError) as exc:
            raise QuotaStoreUnavailable(f"Could not record assisted usage: {exc}") from exc

    async def current(self) -> QuotaState:
        now = self._clock()
        state = await self._load()
        if state is None:
            return fresh_state(now)
        return roll_forward(state, now)

    async def evaluate(self) -> QuotaDecision:
        state = await self.current()
        if state.daily_count >= self.max_per_day:
            return QuotaDecision(
                allowed=False,
                reason=(
                    f"Daily assisted model limit reached ({self.max_per_day}/{self.max_per_day}). "
                    "Resets tomorrow."
                ),
                code="quota_daily_exhausted",
            )
        if state.monthly_count >= self.max_per_month:
            return QuotaDecision(
                allowed=False,
                reason=(
                    f"Monthly assisted model limit reached ({self.max_per_month}/{self.max_per_month}). "
                    "Resets next month."
                ),
                code="quota_monthly_exhausted",
            )
        return QuotaDecision(allowed=True)

    async def check(self) -> tuple[bool, str]:
        """Return (allowed, limit_reason)."""
        decision = await self.evaluate()
        return decision.allowed, decision.reason

    async def record(self) -> QuotaState:
        state = await self.current()
        updated = QuotaState(
            daily_count=state.daily_count + 1,
            daily_reset_at=state.daily_reset_at,
            monthly_count=state.monthly_count + 1,
            monthly_reset_at=state.monthly_reset_at,
        )
        await self._save(updated)
        logger.info(
            "Charged assisted run (%d/%d today, %d/%d this month)",
            updated.daily_count,
            self.max_per_day,
            updated.monthly_count,
            self.max_per_month,
        )
        return updated

    async def remaining(self) -> RemainingAssisted:
        state = await self.current()
        return RemainingAssisted(
            daily_remaining=max(0, self.max_per_day - state.daily_count),
            monthly_remaining=max(0, self.max_per_month - state.monthly_count),
        )
