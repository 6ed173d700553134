from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Iterator

from ..db.engine import lock_wait_budget
from ..errors import PersistenceError, PersistenceTimeout


class Deadline:
    """Caller-supplied time budget shared by every persistence call of one draw."""

    def __init__(self, seconds: float, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._monotonic = monotonic
        self._expires_at = monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._monotonic())

    @property
    def expired(self) -> bool:
        return self._monotonic() >= self._expires_at

    def check(self, operation: str) -> None:
        """Raise :class:`PersistenceTimeout` if the budget is spent before ``operation``."""
        if self.expired:
            raise PersistenceTimeout(f"Deadline exceeded before {operation}")

    @contextmanager
    def bound(self, operation: str) -> Iterator[None]:
        """Run one persistence call within the remaining budget.

        Lock waits of the transactions begun inside the block are capped at
        :meth:`remaining`. A storage failure raised once the budget is spent
        is reported as :class:`PersistenceTimeout`.
        """
        self.check(operation)
        try:
            with lock_wait_budget(self.remaining()):
                yield
        except PersistenceTimeout:
            raise
        except PersistenceError as exc:
            if self.expired:
                raise PersistenceTimeout(f"Deadline exceeded during {operation}") from exc
            raise
