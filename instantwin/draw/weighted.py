"""Probability-weighted draws among the prizes that still have stock."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AbstractSet, Any, Iterable, Optional

from .random_source import RandomSource, checked_uniform
from ..types import CampaignSnapshot, PrizeKind, PrizeSnapshot, RngDraw

logger = logging.getLogger(__name__)

PROBABILITY_DRAW_PURPOSE = "probability"


@dataclass(frozen=True)
class WeightInterval:
    """Half-open share ``[low, high)`` of the partition owned by one prize."""

    prize: PrizeSnapshot
    low: float
    high: float

    def contains(self, value: float) -> bool:
        return self.low <= value < self.high


@dataclass(frozen=True)
class WeightPartition:
    """Cumulative partition of ``[0, total)``.

    Prize intervals come first, in campaign declaration order, followed by the
    trailing no-win interval ``[no_win_low, total)``.
    """

    intervals: tuple[WeightInterval, ...]
    no_win_low: float
    total: float

    @property
    def is_empty(self) -> bool:
        return not self.intervals

    def locate(self, value: float) -> Optional[PrizeSnapshot]:
        """Return the prize whose interval contains ``value``; ``None`` means no win."""
        if not 0 <= value < self.total:
            raise ValueError(f"{value!r} is outside the partition [0, {self.total})")
        for interval in self.intervals:
            if interval.contains(value):
                return interval.prize
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "intervals": [
                [interval.prize.id, interval.low, interval.high]
                for interval in self.intervals
            ],
            "no_win": [self.no_win_low, self.total],
            "total": self.total,
        }


@dataclass(frozen=True)
class WeightedDraw:
    """Outcome of one weighted draw.

    ``rng`` is ``None`` when no prize was eligible and no value was drawn.
    """

    partition: WeightPartition
    rng: Optional[RngDraw]
    prize: Optional[PrizeSnapshot]

    def to_payload(self) -> dict[str, Any]:
        payload = self.partition.to_payload()
        payload["value"] = self.rng.value if self.rng is not None else None
        payload["prize_id"] = self.prize.id if self.prize is not None else None
        return payload


def build_partition(prizes: Iterable[PrizeSnapshot], no_win_weight: float) -> WeightPartition:
    """Lay ``prizes`` out on ``[0, W)`` in the order given, no-win remainder last."""
    intervals: list[WeightInterval] = []
    cumulative = 0.0
    for prize in prizes:
        weight = float(prize.weight or 0.0)
        if weight <= 0:
            continue
        low = cumulative
        cumulative += weight
        intervals.append(WeightInterval(prize=prize, low=low, high=cumulative))
    return WeightPartition(
        intervals=tuple(intervals),
        no_win_low=cumulative,
        total=cumulative + float(no_win_weight),
    )


class WeightedDrawResolver:
    """Resolve a probability win from the current eligible-weight snapshot.

    Only probability prizes that are active and still have stock take part,
    so an exhausted prize drops out of every later partition. Weights are not
    normalised: ``W = sum(weights) + no_win_weight`` and each prize wins with
    probability ``weight / W``.
    """

    def __init__(self, random_source: RandomSource) -> None:
        self._random_source = random_source

    def eligible(
        self,
        campaign: CampaignSnapshot,
        now: datetime,
        *,
        exclude_prizes: AbstractSet[int] = frozenset(),
    ) -> list[PrizeSnapshot]:
        return [
            prize
            for prize in sorted(
                campaign.prizes_of_kind(PrizeKind.PROBABILITY),
                key=lambda p: (p.position, p.id),
            )
            if prize.id not in exclude_prizes
            and prize.has_stock
            and prize.is_available_at(now)
        ]

    def partition(
        self,
        campaign: CampaignSnapshot,
        now: datetime,
        *,
        exclude_prizes: Iterable[int] = (),
    ) -> WeightPartition:
        prizes = self.eligible(campaign, now, exclude_prizes=frozenset(exclude_prizes))
        return build_partition(prizes, campaign.no_win_weight)

    def resolve(
        self,
        campaign: CampaignSnapshot,
        now: datetime,
        *,
        exclude_prizes: Iterable[int] = (),
    ) -> WeightedDraw:
        """Draw once from the partition.

        Raises
        ------
        RngUnavailable
            If the random source fails or returns an out-of-range value.
        """
        partition = self.partition(campaign, now, exclude_prizes=exclude_prizes)
        if partition.is_empty:
            logger.debug(f"No probability prize eligible in campaign {campaign.id}")
            return WeightedDraw(partition=partition, rng=None, prize=None)

        value = checked_uniform(self._random_source, 0.0, partition.total)
        prize = partition.locate(value)
        logger.debug(
            f"Weighted draw value={value:.6f} total={partition.total:.6f} "
            f"prize={prize.id if prize is not None else None}"
        )
        return WeightedDraw(
            partition=partition,
            rng=RngDraw(
                purpose=PROBABILITY_DRAW_PURPOSE,
                low=0.0,
                high=partition.total,
                value=value,
            ),
            prize=prize,
        )


__all__ = [
    "WeightInterval",
    "WeightPartition",
    "WeightedDraw",
    "WeightedDrawResolver",
    "build_partition",
]
