from __future__ import annotations

import unittest

from instantwin.draw.segments import SegmentPicker
from instantwin.types import CampaignSnapshot, PrizeKind, PrizeSnapshot, SegmentSnapshot

from .support import SequenceRandomSource

SEGMENTS = (
    SegmentSnapshot(id=1, label="Voucher", is_winning=True, position=0),
    SegmentSnapshot(id=2, label="Try again", position=1),
    SegmentSnapshot(id=3, label="T-shirt", is_winning=True, position=2),
    SegmentSnapshot(id=4, label="So close", position=3),
    SegmentSnapshot(id=5, label="Bonus", is_winning=True, position=4),
)


def _prize(prize_id: int, segments=(), remaining: int = 5) -> PrizeSnapshot:
    return PrizeSnapshot(
        id=prize_id,
        campaign_id=1,
        position=prize_id,
        label=f"prize-{prize_id}",
        kind=PrizeKind.PROBABILITY,
        total_stock=5,
        remaining_stock=remaining,
        weight=1.0,
        assigned_segments=tuple(segments),
    )


class SegmentPickerTests(unittest.TestCase):
    def test_campaign_without_segments(self) -> None:
        source = SequenceRandomSource()
        choice = SegmentPicker(source).pick(CampaignSnapshot(id=1, prizes=()), None)
        self.assertIsNone(choice.segment)
        self.assertIsNone(choice.rng)
        self.assertEqual(source.calls, [])

    def test_win_lands_on_assigned_segment(self) -> None:
        prize = _prize(1, segments=[1, 5])
        campaign = CampaignSnapshot(id=1, prizes=(prize,), segments=SEGMENTS)
        source = SequenceRandomSource([1.5])
        choice = SegmentPicker(source).pick(campaign, prize)
        self.assertEqual(choice.segment.id, 5)
        self.assertEqual(source.calls, [(0.0, 2.0)])
        self.assertEqual(choice.rng.purpose, "segment")

    def test_win_without_assignment_uses_winning_segments(self) -> None:
        prize = _prize(1)
        campaign = CampaignSnapshot(id=1, prizes=(prize,), segments=SEGMENTS)
        choice = SegmentPicker(SequenceRandomSource([1.2])).pick(campaign, prize)
        self.assertEqual(choice.segment.id, 3)

    def test_loss_avoids_segments_of_prizes_in_stock(self) -> None:
        in_stock = _prize(1, segments=[2])
        depleted = _prize(2, segments=[4], remaining=0)
        campaign = CampaignSnapshot(id=1, prizes=(in_stock, depleted), segments=SEGMENTS)
        source = SequenceRandomSource([0.7])
        choice = SegmentPicker(source).pick(campaign, None)
        self.assertEqual(choice.segment.id, 4)
        self.assertEqual(source.calls, [(0.0, 1.0)])

    def test_loss_falls_back_to_any_free_segment(self) -> None:
        winning_only = tuple(s for s in SEGMENTS if s.is_winning)
        campaign = CampaignSnapshot(
            id=1, prizes=(_prize(1, segments=[1]),), segments=winning_only
        )
        source = SequenceRandomSource([0.0])
        choice = SegmentPicker(source).pick(campaign, None)
        self.assertEqual(choice.segment.id, 3)
        self.assertEqual(source.calls, [(0.0, 2.0)])


if __name__ == "__main__":
    unittest.main()
