from __future__ import annotations

import unittest
from datetime import timedelta

from instantwin.draw.weighted import WeightedDrawResolver, build_partition
from instantwin.types import CampaignSnapshot, PrizeKind, PrizeSnapshot

from .support import T0, SeededRandomSource, SequenceRandomSource


def _prize(prize_id: int, weight: float, *, position: int, remaining: int = 10, **extra):
    return PrizeSnapshot(
        id=prize_id,
        campaign_id=1,
        position=position,
        label=f"prize-{prize_id}",
        kind=PrizeKind.PROBABILITY,
        total_stock=10,
        remaining_stock=remaining,
        weight=weight,
        **extra,
    )


def _campaign(*prizes: PrizeSnapshot, no_win_weight: float = 60.0) -> CampaignSnapshot:
    return CampaignSnapshot(id=1, prizes=tuple(prizes), no_win_weight=no_win_weight)


class PartitionTests(unittest.TestCase):
    def test_prize_intervals_follow_declaration_order(self) -> None:
        a = _prize(1, 30, position=0)
        b = _prize(2, 10, position=1)
        partition = build_partition([a, b], 60)
        self.assertEqual(partition.total, 100.0)
        self.assertEqual(
            partition.to_payload()["intervals"], [[1, 0.0, 30.0], [2, 30.0, 40.0]]
        )
        self.assertEqual(partition.to_payload()["no_win"], [40.0, 100.0])

    def test_locate_boundaries(self) -> None:
        a = _prize(1, 30, position=0)
        b = _prize(2, 10, position=1)
        partition = build_partition([a, b], 60)
        self.assertIs(partition.locate(0.0), a)
        self.assertIs(partition.locate(29.999), a)
        self.assertIs(partition.locate(30.0), b)
        self.assertIsNone(partition.locate(40.0))
        with self.assertRaises(ValueError):
            partition.locate(100.0)


class WeightedDrawResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.a = _prize(1, 30, position=0)
        self.b = _prize(2, 10, position=1)
        self.campaign = _campaign(self.b, self.a)

    def _resolve(self, value: float, campaign=None, **kwargs):
        resolver = WeightedDrawResolver(SequenceRandomSource([value]))
        return resolver.resolve(campaign or self.campaign, T0, **kwargs)

    def test_documented_boundaries(self) -> None:
        self.assertEqual(self._resolve(25).prize, self.a)
        self.assertEqual(self._resolve(35).prize, self.b)
        self.assertIsNone(self._resolve(50).prize)

    def test_draw_is_recorded(self) -> None:
        draw = self._resolve(35)
        self.assertEqual(draw.rng.value, 35.0)
        self.assertEqual((draw.rng.low, draw.rng.high), (0.0, 100.0))
        self.assertEqual(draw.to_payload()["prize_id"], 2)

    def test_exhausted_prize_drops_out(self) -> None:
        campaign = _campaign(_prize(1, 30, position=0, remaining=0), self.b)
        source = SequenceRandomSource([5])
        draw = WeightedDrawResolver(source).resolve(campaign, T0)
        self.assertEqual(source.calls, [(0.0, 70.0)])
        self.assertEqual(draw.prize, self.b)

    def test_excluded_prize_drops_out(self) -> None:
        draw = self._resolve(5, exclude_prizes=[1])
        self.assertEqual(draw.prize, self.b)
        self.assertEqual(draw.partition.total, 70.0)

    def test_no_eligible_prize_draws_nothing(self) -> None:
        source = SequenceRandomSource()
        campaign = _campaign(_prize(1, 30, position=0, remaining=0))
        draw = WeightedDrawResolver(source).resolve(campaign, T0)
        self.assertIsNone(draw.prize)
        self.assertIsNone(draw.rng)
        self.assertEqual(source.calls, [])

    def test_inactive_or_out_of_window_prizes_are_ignored(self) -> None:
        campaign = _campaign(
            _prize(1, 30, position=0, is_active=False),
            _prize(2, 10, position=1, active_from=T0 + timedelta(hours=1)),
            _prize(3, 10, position=2, active_until=T0),
            _prize(4, 20, position=3, active_from=T0, active_until=T0 + timedelta(hours=1)),
        )
        resolver = WeightedDrawResolver(SequenceRandomSource())
        self.assertEqual([p.id for p in resolver.eligible(campaign, T0)], [4])

    def test_statistical_convergence(self) -> None:
        resolver = WeightedDrawResolver(SeededRandomSource(20260701))
        counts = {1: 0, 2: 0, None: 0}
        draws = 100_000
        for _ in range(draws):
            prize = resolver.resolve(self.campaign, T0).prize
            counts[prize.id if prize is not None else None] += 1
        # Standard error is below 0.0016 for every share; allow about six of them.
        self.assertAlmostEqual(counts[1] / draws, 0.30, delta=0.01)
        self.assertAlmostEqual(counts[2] / draws, 0.10, delta=0.01)
        self.assertAlmostEqual(counts[None] / draws, 0.60, delta=0.01)


if __name__ == "__main__":
    unittest.main()
