"""Choose the wheel segment displayed for a decided draw.

The segment is cosmetic: it is picked after the win/loss decision and can
never change it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..types import CampaignSnapshot, PrizeSnapshot, RngDraw, SegmentSnapshot
from .random_source import RandomSource, checked_uniform

logger = logging.getLogger(__name__)

SEGMENT_DRAW_PURPOSE = "segment"


@dataclass(frozen=True)
class SegmentChoice:
    segment: Optional[SegmentSnapshot]
    rng: Optional[RngDraw]


class SegmentPicker:
    def __init__(self, random_source: RandomSource) -> None:
        self._random_source = random_source

    def pick(
        self, campaign: CampaignSnapshot, prize: Optional[PrizeSnapshot]
    ) -> SegmentChoice:
        """Pick a segment for a win on ``prize``, or for a loss when ``prize`` is ``None``."""
        segments = sorted(campaign.segments, key=lambda s: (s.position, s.id))
        if not segments:
            return SegmentChoice(segment=None, rng=None)
        if prize is not None:
            pool = self._winning_pool(segments, prize)
        else:
            pool = self._losing_pool(segments, campaign)
        return self._choose(pool)

    @staticmethod
    def _winning_pool(
        segments: Sequence[SegmentSnapshot], prize: PrizeSnapshot
    ) -> list[SegmentSnapshot]:
        assigned = set(prize.assigned_segments)
        pool = [segment for segment in segments if segment.id in assigned]
        if pool:
            return pool
        return [segment for segment in segments if segment.is_winning]

    @staticmethod
    def _losing_pool(
        segments: Sequence[SegmentSnapshot], campaign: CampaignSnapshot
    ) -> list[SegmentSnapshot]:
        # Segments showing a prize that can still be won would read as a win.
        taken = {
            segment_id
            for prize in campaign.prizes
            if prize.has_stock
            for segment_id in prize.assigned_segments
        }
        free = [segment for segment in segments if segment.id not in taken]
        losing = [segment for segment in free if not segment.is_winning]
        return losing or free or list(segments)

    def _choose(self, pool: Sequence[SegmentSnapshot]) -> SegmentChoice:
        if not pool:
            return SegmentChoice(segment=None, rng=None)
        high = float(len(pool))
        value = checked_uniform(self._random_source, 0.0, high)
        segment = pool[min(int(value), len(pool) - 1)]
        logger.debug(f"Segment {segment.id} chosen among {len(pool)}")
        return SegmentChoice(
            segment=segment,
            rng=RngDraw(purpose=SEGMENT_DRAW_PURPOSE, low=0.0, high=high, value=value),
        )


__all__ = ["SegmentChoice", "SegmentPicker"]
