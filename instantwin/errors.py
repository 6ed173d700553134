"""Exception taxonomy for the instant-win draw engine.

Only validation failures, rate-limit rejections and infrastructure faults
cross the public :meth:`DrawOrchestrator.draw` boundary. Stock exhaustion is
an expected result of the reservation primitive and is handled internally.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError


class DrawError(Exception):
    """Base class for every error raised by the draw engine."""

    retryable: bool = False


class ValidationError(DrawError, ValueError):
    """Raised when campaign configuration or a draw context is malformed.

    No resolver runs and nothing is written when this is raised.
    """


class RateLimited(DrawError):
    """Raised when the anti-fraud gate rejects a participation.

    The gate fails closed: no draw is performed and no stock is touched.

    Attributes
    ----------
    reason : str
        One of ``"cooldown"``, ``"max_participations"`` or
        ``"concurrent_participation"``.
    """

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or f"Participation rejected: {reason}")


class PersistenceError(DrawError):
    """Transient infrastructure fault. Callers may retry the same request."""

    retryable = True


class PersistenceTimeout(PersistenceError):
    """Raised when the caller-supplied deadline expires before a persistence call."""


class DrawInProgress(PersistenceError):
    """A concurrent request with the same participation id is still undecided."""


class RngUnavailable(DrawError):
    """Raised when no trustworthy random value can be produced.

    The draw is aborted; the engine never falls back to a predictable source.
    """


@contextmanager
def persistence_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures raised inside the block into :class:`PersistenceError`."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise PersistenceError(f"{operation} failed: {exc}") from exc


__all__ = [
    "DrawError",
    "DrawInProgress",
    "PersistenceError",
    "PersistenceTimeout",
    "RateLimited",
    "RngUnavailable",
    "ValidationError",
    "persistence_errors",
]
