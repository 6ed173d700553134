"""Shared fixtures for the draw engine tests."""

from __future__ import annotations

import random
import threading
from datetime import datetime, timezone
from typing import Iterable, Optional

from instantwin.db.engine import get_sessionmaker, make_engine
from instantwin.models import Base, Campaign
from instantwin.types import DrawContext

MEMORY_URL = "sqlite+pysqlite:///:memory:"
T0 = datetime(2026, 7, 1, 10, 0, tzinfo=timezone.utc)


class SequenceRandomSource:
    """Return pre-programmed values in order; fails the test when it runs dry."""

    def __init__(self, values: Iterable[float] = ()) -> None:
        self._values = list(values)
        self._lock = threading.Lock()
        self.calls: list[tuple[float, float]] = []

    def uniform(self, low: float, high: float) -> float:
        with self._lock:
            self.calls.append((low, high))
            if not self._values:
                raise AssertionError(f"unexpected random draw over [{low}, {high})")
            return self._values.pop(0)


class SeededRandomSource:
    """Reproducible uniform source for statistical and concurrency tests."""

    def __init__(self, seed: int) -> None:
        self._random = random.Random(seed)
        self._lock = threading.Lock()

    def uniform(self, low: float, high: float) -> float:
        with self._lock:
            return low + (high - low) * self._random.random()


def create_database(url: str = MEMORY_URL):
    engine = make_engine(url)
    Base.metadata.create_all(engine)
    return engine, get_sessionmaker(engine)


def seed_campaign(session_factory, **kwargs) -> Campaign:
    """Persist a campaign built from ``Campaign(**kwargs)`` and return it with ids loaded."""
    kwargs.setdefault("name", "Test campaign")
    with session_factory.begin() as session:
        campaign = Campaign(**kwargs)
        session.add(campaign)
        session.flush()
    return campaign


def make_ctx(
    participation_id: str,
    campaign_id: int,
    at: datetime = T0,
    *,
    identity: Optional[str] = None,
) -> DrawContext:
    return DrawContext(
        participation_id=participation_id,
        campaign_id=campaign_id,
        server_timestamp=at,
        identity_fingerprint=identity or f"device-{participation_id}",
        trace_id=f"trace-{participation_id}",
    )
