"""Daily call quota bookkeeping for sources.

Everything here is pure: callers load a :class:`QuotaState` from the source
row, ask for a plan, and persist the state returned by :func:`consume`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date

DEFAULT_PER_RUN_CEILING = 3


@dataclass(frozen=True)
class QuotaState:
    calls_used_today: int
    daily_call_quota: int
    quota_reset_date: str | None


@dataclass(frozen=True)
class QuotaPlan:
    allowed_pages: int
    remaining: int

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


def reset_if_stale(state: QuotaState, today: date) -> QuotaState:
    today_iso = today.isoformat()
    if state.quota_reset_date is None or state.quota_reset_date < today_iso:
        return replace(state, calls_used_today=0, quota_reset_date=today_iso)
    return state


def remaining(state: QuotaState) -> int:
    return state.daily_call_quota - state.calls_used_today


def plan_pages(
    state: QuotaState, max_pages: int, per_run_ceiling: int = DEFAULT_PER_RUN_CEILING
) -> QuotaPlan:
    left = remaining(state)
    if left <= 0:
        return QuotaPlan(allowed_pages=0, remaining=left)
    return QuotaPlan(allowed_pages=max(0, min(left, max_pages, per_run_ceiling)), remaining=left)


def consume(state: QuotaState, calls_used: int) -> QuotaState:
    if calls_used < 0:
        raise ValueError("calls_used must be >= 0")
    return replace(state, calls_used_today=state.calls_used_today + calls_used)
