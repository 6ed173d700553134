"""Runtime settings for the draw engine, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .db.engine import DEFAULT_SQLITE_BUSY_TIMEOUT, DEFAULT_SQLITE_URL, ROOT_DIR
from .db.utils import resolve_sqlite_url
from .errors import ValidationError

DEFAULT_PROBABILITY_RETRY_BUDGET = 3
DEFAULT_CALENDAR_ATTEMPT_LIMIT = 16
DEFAULT_PERSISTENCE_TIMEOUT = 5.0
DEFAULT_DUPLICATE_POLL_INTERVAL = 0.05
DEFAULT_CLAIM_LEASE_GRACE = 5.0

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class EngineSettings:
    """Tunables for :class:`~instantwin.draw.engine.DrawOrchestrator`.

    Attributes
    ----------
    database_url : str
        SQLAlchemy URL of the persistence collaborator.
    probability_retry_budget : int
        Number of re-draws allowed after a probability prize turns out to be
        exhausted at reservation time. Once spent, the result is a loss.
    calendar_attempt_limit : int
        Maximum number of calendar slot reservations tried per draw.
    persistence_timeout : float
        Default deadline, in seconds, for all persistence calls of one draw.
    sqlite_busy_timeout : float
        Seconds a SQLite connection waits for the write lock.
    duplicate_poll_interval : float
        Seconds between lookups while a concurrent duplicate is undecided.
    claim_lease_grace : float
        Seconds a pending claim outlives its draw deadline. Past that, a
        resubmission of the participation id takes the claim over.
    audit_async : bool
        Append audit records from a background worker instead of inline.
    log_level : str
        Level name passed to :func:`~instantwin.logging_utils.configure_logging`.
    """

    database_url: str = DEFAULT_SQLITE_URL
    probability_retry_budget: int = DEFAULT_PROBABILITY_RETRY_BUDGET
    calendar_attempt_limit: int = DEFAULT_CALENDAR_ATTEMPT_LIMIT
    persistence_timeout: float = DEFAULT_PERSISTENCE_TIMEOUT
    sqlite_busy_timeout: float = DEFAULT_SQLITE_BUSY_TIMEOUT
    duplicate_poll_interval: float = DEFAULT_DUPLICATE_POLL_INTERVAL
    claim_lease_grace: float = DEFAULT_CLAIM_LEASE_GRACE
    audit_async: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.probability_retry_budget < 0:
            raise ValidationError("probability_retry_budget must be >= 0")
        if self.calendar_attempt_limit < 1:
            raise ValidationError("calendar_attempt_limit must be >= 1")
        if self.persistence_timeout <= 0:
            raise ValidationError("persistence_timeout must be positive")
        if self.sqlite_busy_timeout <= 0:
            raise ValidationError("sqlite_busy_timeout must be positive")
        if self.duplicate_poll_interval <= 0:
            raise ValidationError("duplicate_poll_interval must be positive")
        if self.claim_lease_grace < 0:
            raise ValidationError("claim_lease_grace must be >= 0")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Build settings from ``environ`` (``os.environ`` after loading ``.env``)."""
        if environ is None:
            load_dotenv()
            environ = os.environ

        database_url = environ.get("DB_URL")
        return cls(
            database_url=(
                resolve_sqlite_url(database_url, ROOT_DIR)
                if database_url
                else DEFAULT_SQLITE_URL
            ),
            probability_retry_budget=_int(
                environ,
                "DRAW_PROBABILITY_RETRY_BUDGET",
                DEFAULT_PROBABILITY_RETRY_BUDGET,
            ),
            calendar_attempt_limit=_int(
                environ, "DRAW_CALENDAR_ATTEMPT_LIMIT", DEFAULT_CALENDAR_ATTEMPT_LIMIT
            ),
            persistence_timeout=_float(
                environ, "DRAW_PERSISTENCE_TIMEOUT", DEFAULT_PERSISTENCE_TIMEOUT
            ),
            sqlite_busy_timeout=_float(
                environ, "DB_SQLITE_BUSY_TIMEOUT", DEFAULT_SQLITE_BUSY_TIMEOUT
            ),
            duplicate_poll_interval=_float(
                environ,
                "DRAW_DUPLICATE_POLL_INTERVAL",
                DEFAULT_DUPLICATE_POLL_INTERVAL,
            ),
            claim_lease_grace=_float(
                environ, "DRAW_CLAIM_LEASE_GRACE", DEFAULT_CLAIM_LEASE_GRACE
            ),
            audit_async=_bool(environ, "DRAW_AUDIT_ASYNC", True),
            log_level=environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{key} must be an integer, got {raw!r}") from exc


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValidationError(f"{key} must be a number, got {raw!r}") from exc


def _bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValidationError(f"{key} must be a boolean flag, got {raw!r}")


__all__ = ["EngineSettings"]
