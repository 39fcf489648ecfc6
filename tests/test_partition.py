"""Tests for the static projection split."""

import unittest

from cbct_backprojection import partition_projections


class TestPartitionProjections(unittest.TestCase):
    """Test partition_projections."""

    def test_even_split(self):
        """320 projections over 4 workers give 80 each."""
        ranges = [partition_projections(320, 4, r) for r in range(4)]
        self.assertEqual(ranges, [range(0, 80), range(80, 160), range(160, 240), range(240, 320)])

    def test_last_worker_takes_remainder(self):
        ranges = [partition_projections(10, 3, r) for r in range(3)]
        self.assertEqual(ranges, [range(0, 3), range(3, 6), range(6, 10)])

    def test_fewer_projections_than_workers(self):
        """Only the last worker gets work when P < W."""
        ranges = [partition_projections(3, 5, r) for r in range(5)]
        for r in range(4):
            self.assertEqual(len(ranges[r]), 0)
        self.assertEqual(ranges[4], range(0, 3))

    def test_coverage_without_gaps_or_overlaps(self):
        """Every projection is owned by exactly one worker."""
        for num_projections in (0, 1, 7, 64, 320, 321):
            for num_workers in (1, 2, 3, 4, 7, 16):
                owned = []
                for rank in range(num_workers):
                    owned.extend(partition_projections(num_projections, num_workers, rank))
                self.assertEqual(owned, list(range(num_projections)),
                                 f"P={num_projections} W={num_workers}")

    def test_single_worker_owns_everything(self):
        self.assertEqual(partition_projections(320, 1, 0), range(0, 320))

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            partition_projections(10, 0, 0)
        with self.assertRaises(ValueError):
            partition_projections(10, 4, 4)
        with self.assertRaises(ValueError):
            partition_projections(10, 4, -1)
        with self.assertRaises(ValueError):
            partition_projections(-1, 4, 0)


if __name__ == '__main__':
    unittest.main()
