"""Calendar (time-slot) instant-win candidate selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AbstractSet, Iterable, Optional

from ..types import CampaignSnapshot, PrizeKind, PrizeSnapshot, SlotSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotCandidate:
    prize: PrizeSnapshot
    slot: SlotSnapshot

    @property
    def key(self) -> tuple[int, int]:
        return (self.prize.id, self.slot.id)


class SlotResolver:
    """Pick the calendar slot a participation may claim at ``now``.

    Eligibility is ``start <= now < end``, slot not consumed and prize with
    remaining stock. Among eligible slots the earliest ``start`` wins; ties are
    broken by the prize's declaration order, then the slot's. The resolver
    has no side effects; reservation is the stock ledger's job.
    """

    def eligible(
        self,
        campaign: CampaignSnapshot,
        now: datetime,
        *,
        exclude_slots: AbstractSet[int] = frozenset(),
    ) -> list[SlotCandidate]:
        """Return every eligible candidate, best first."""
        candidates = [
            SlotCandidate(prize=prize, slot=slot)
            for prize in campaign.prizes_of_kind(PrizeKind.CALENDAR)
            if prize.has_stock and prize.is_available_at(now)
            for slot in prize.slots
            if slot.id not in exclude_slots and not slot.consumed and slot.is_open_at(now)
        ]
        candidates.sort(
            key=lambda c: (
                c.slot.start, c.prize.position, c.prize.id, c.slot.position, c.slot.id
            )
        )
        return candidates

    def resolve(
        self,
        campaign: CampaignSnapshot,
        now: datetime,
        *,
        exclude_slots: Iterable[int] = (),
    ) -> Optional[SlotCandidate]:
        """Return the single best candidate, or ``None`` when no slot is open."""
        candidates = self.eligible(campaign, now, exclude_slots=frozenset(exclude_slots))
        if not candidates:
            logger.debug(f"No calendar slot open for campaign {campaign.id} at {now.isoformat()}")
            return None
        best = candidates[0]
        logger.debug(
            f"Calendar candidate prize={best.prize.id} slot={best.slot.id} "
            f"({len(candidates)} eligible)"
        )
        return best


__all__ = ["SlotCandidate", "SlotResolver"]
