"""Process-wide daily call budget for the market data provider.

Fixed window keyed by calendar day rather than elapsed time: the counter is
zeroed lazily on the first access whose date string differs from the stored
one, so a process suspended across midnight self-corrects on wake-up.

Usage pattern:
    if not budget.try_reserve():
        ...  # exhausted: serve stale data or raise BudgetExhaustedError
    try:
        response = await do_call()
    except TransportError:
        budget.release()   # nothing reached the provider
        raise
    budget.commit()        # provider answered; the call is spent

Reservations make the check-and-increment atomic across concurrent callers
hitting *distinct* cache keys: a slot is held from the check until the call
resolves, so ``count + reserved`` never exceeds ``limit`` and ``count`` (calls
actually spent) never does either.

Thread-safety: one ``threading.Lock`` guards all mutations; no await happens
while it is held.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable


@dataclass
class BudgetWindow:
    reset_date: str
    count: int = 0
    reserved: int = 0


def _local_today() -> str:
    return datetime.now().date().isoformat()


class DailyCallBudget:
    def __init__(self, limit: int, *, today: Callable[[], str] | None = None):
        if limit < 0:
            raise ValueError("limit must be >= 0")
        self.limit = limit
        self._today = today or _local_today
        self._lock = threading.Lock()
        self._window = BudgetWindow(reset_date=self._today())
        self.on_reset: Callable[[str], None] | None = None

    def _roll_if_needed(self) -> None:
        today = self._today()
        if self._window.reset_date != today:
            # Reservations from yesterday still resolve against the new window
            self._window = BudgetWindow(reset_date=today, reserved=self._window.reserved)
            if self.on_reset is not None:
                self.on_reset(today)

    def try_reserve(self) -> bool:
        """Hold one call slot if the day's budget allows it."""
        with self._lock:
            self._roll_if_needed()
            if self._window.count + self._window.reserved >= self.limit:
                return False
            self._window.reserved += 1
            return True

    def commit(self) -> int:
        """Convert a held slot into a spent call; returns the new daily count."""
        with self._lock:
            self._roll_if_needed()
            if self._window.reserved > 0:
                self._window.reserved -= 1
            self._window.count += 1
            return self._window.count

    def release(self) -> None:
        """Return a held slot unused."""
        with self._lock:
            self._roll_if_needed()
            if self._window.reserved > 0:
                self._window.reserved -= 1

    def set_count(self, count: int) -> None:
        """Seed the day's counter (restoring persisted usage, tests)."""
        with self._lock:
            self._roll_if_needed()
            self._window.count = max(0, min(count, self.limit))

    @property
    def count(self) -> int:
        with self._lock:
            self._roll_if_needed()
            return self._window.count

    @property
    def remaining(self) -> int:
        with self._lock:
            self._roll_if_needed()
            return max(0, self.limit - self._window.count)

    def snapshot(self) -> dict:
        with self._lock:
            self._roll_if_needed()
            return {
                "limit": self.limit,
                "count": self._window.count,
                "reserved": self._window.reserved,
                "remaining": max(0, self.limit - self._window.count),
                "reset_date": self._window.reset_date,
            }


__all__ = ["DailyCallBudget", "BudgetWindow"]
