from __future__ import annotations

import math
import unittest

from instantwin.draw.random_source import RandomSource, SystemRandomSource, checked_uniform
from instantwin.errors import RngUnavailable

from .support import SequenceRandomSource


class SystemRandomSourceTests(unittest.TestCase):
    def test_values_stay_inside_half_open_range(self) -> None:
        source = SystemRandomSource()
        for _ in range(2000):
            value = source.uniform(0.0, 100.0)
            self.assertGreaterEqual(value, 0.0)
            self.assertLess(value, 100.0)

    def test_satisfies_protocol(self) -> None:
        self.assertIsInstance(SystemRandomSource(), RandomSource)

    def test_redraws_when_rounding_reaches_high(self) -> None:
        units = iter([1.0, 0.25])
        source = SystemRandomSource(generator=lambda: next(units))
        self.assertEqual(source.uniform(0.0, 40.0), 10.0)

    def test_gives_up_instead_of_clamping(self) -> None:
        source = SystemRandomSource(generator=lambda: 1.0)
        with self.assertRaises(RngUnavailable):
            source.uniform(0.0, 1.0)

    def test_entropy_failure_is_fatal(self) -> None:
        def broken() -> float:
            raise OSError("no entropy")

        source = SystemRandomSource(generator=broken)
        with self.assertRaises(RngUnavailable) as ctx:
            source.uniform(0.0, 1.0)
        self.assertIsInstance(ctx.exception.__cause__, OSError)

    def test_invalid_range(self) -> None:
        source = SystemRandomSource()
        with self.assertRaises(ValueError):
            source.uniform(5.0, 5.0)
        with self.assertRaises(ValueError):
            source.uniform(0.0, math.inf)


class CheckedUniformTests(unittest.TestCase):
    def test_passes_in_range_value(self) -> None:
        self.assertEqual(checked_uniform(SequenceRandomSource([12]), 0.0, 100.0), 12.0)

    def test_rejects_upper_bound(self) -> None:
        with self.assertRaises(RngUnavailable):
            checked_uniform(SequenceRandomSource([100.0]), 0.0, 100.0)

    def test_rejects_negative_and_nan(self) -> None:
        with self.assertRaises(RngUnavailable):
            checked_uniform(SequenceRandomSource([-0.5]), 0.0, 100.0)
        with self.assertRaises(RngUnavailable):
            checked_uniform(SequenceRandomSource([math.nan]), 0.0, 100.0)


if __name__ == "__main__":
    unittest.main()
