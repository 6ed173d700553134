"""Random source capability used by the resolvers.

Draw outcomes are a security property: participants must not be able to
predict or bias them. Production code therefore only ships an OS-entropy
backed source; deterministic sources belong in tests.
"""

from __future__ import annotations

import logging
import math
import random
from typing import Callable, Optional, Protocol, runtime_checkable

from ..errors import RngUnavailable

logger = logging.getLogger(__name__)

# Rounding can push low + span * u up to ``high``; give up after this many redraws.
_MAX_REDRAWS = 8


@runtime_checkable
class RandomSource(Protocol):
    def uniform(self, low: float, high: float) -> float:
        """Return a value uniformly distributed over ``[low, high)``."""
        ...


class SystemRandomSource:
    """:class:`RandomSource` backed by ``os.urandom`` via :class:`random.SystemRandom`."""

    def __init__(self, generator: Optional[Callable[[], float]] = None) -> None:
        self._generator = generator or random.SystemRandom().random

    def uniform(self, low: float, high: float) -> float:
        if not (math.isfinite(low) and math.isfinite(high)) or high <= low:
            raise ValueError(f"Invalid range [{low}, {high})")
        span = high - low
        for _ in range(_MAX_REDRAWS):
            try:
                unit = self._generator()
            except (NotImplementedError, OSError) as exc:
                logger.critical(f"Entropy source unavailable: {exc}")
                raise RngUnavailable("Operating system entropy source is unavailable") from exc
            value = low + span * unit
            if low <= value < high:
                return value
        raise RngUnavailable(f"Could not draw a value inside [{low}, {high})")


def checked_uniform(source: RandomSource, low: float, high: float) -> float:
    """Draw from ``source`` and reject values outside ``[low, high)``.

    A misbehaving source must abort the draw rather than be clamped into a
    result, so any out-of-range value raises :class:`RngUnavailable`.
    """
    try:
        value = source.uniform(low, high)
    except RngUnavailable:
        raise
    except (NotImplementedError, OSError) as exc:
        raise RngUnavailable(f"Random source failed: {exc}") from exc
    if not isinstance(value, (int, float)) or not low <= value < high:
        raise RngUnavailable(
            f"Random source returned {value!r}, outside the requested range [{low}, {high})"
        )
    return float(value)


__all__ = ["RandomSource", "SystemRandomSource", "checked_uniform"]
