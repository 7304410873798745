"""Tests for refseg/overlap.py — confusion counts and overlap measures."""

import math

import numpy as np
import pytest

from refseg.errors import GridMismatch
from refseg.overlap import OVERLAP_FIELDS, compute_overlap, confusion_counts


# ---------------------------------------------------------------------------
# confusion_counts
# ---------------------------------------------------------------------------
class TestConfusionCounts:
    def test_shifted_cube(self, make_cube):
        tp, fp, fn, tn = confusion_counts(make_cube(start=(4, 3, 3)), make_cube())
        assert (tp, fp, fn) == (18, 9, 9)
        assert tn == 1000 - 36

    def test_counts_cover_grid(self, make_volume):
        rng = np.random.default_rng(7)
        a = make_volume(rng.integers(0, 3, size=(5, 6, 7)))
        b = make_volume(rng.integers(0, 3, size=(5, 6, 7)))
        assert sum(confusion_counts(a, b, label=2)) == 5 * 6 * 7


# ---------------------------------------------------------------------------
# compute_overlap
# ---------------------------------------------------------------------------
class TestComputeOverlap:
    def test_self_overlap(self, make_cube):
        res = compute_overlap(make_cube(), make_cube())
        assert res.jaccard == 1.0
        assert res.dice == 1.0
        assert res.mean_overlap == 1.0
        assert res.volume_similarity == 0.0
        assert res.false_negative == 0.0
        assert res.false_positive == 0.0

    def test_disjoint(self, make_cube):
        res = compute_overlap(make_cube(start=(0, 0, 0)), make_cube(start=(6, 6, 6)))
        assert res.jaccard == 0.0
        assert res.dice == 0.0
        assert res.mean_overlap == 0.0
        assert res.false_negative == 1.0
        assert res.false_positive == 1.0

    def test_partial(self, make_cube):
        res = compute_overlap(make_cube(start=(4, 3, 3)), make_cube())
        assert res.jaccard == pytest.approx(0.5)
        assert res.dice == pytest.approx(2.0 / 3.0)
        assert res.volume_similarity == pytest.approx(0.0)
        assert res.false_negative == pytest.approx(1.0 / 3.0)
        assert res.false_positive == pytest.approx(1.0 / 3.0)

    def test_volume_similarity_sign(self, make_cube):
        big = make_cube(size=4)
        small = make_cube(size=3)
        res = compute_overlap(big, small)
        assert res.volume_similarity == pytest.approx(2 * (64 - 27) / 91)
        assert res.false_negative == 0.0
        assert res.false_positive == pytest.approx(37 / 64)
        assert compute_overlap(small, big).volume_similarity < 0

    def test_both_empty(self, make_volume):
        empty = make_volume(np.zeros((4, 4, 4), dtype=np.uint8))
        res = compute_overlap(empty, empty)
        assert res.jaccard == 0.0
        assert res.dice == 0.0
        assert res.volume_similarity == 0.0
        assert math.isnan(res.false_negative)
        assert math.isnan(res.false_positive)

    def test_empty_candidate(self, make_cube, make_volume):
        empty = make_volume(np.zeros((10, 10, 10), dtype=np.uint8))
        res = compute_overlap(empty, make_cube())
        assert res.false_negative == 1.0
        assert math.isnan(res.false_positive)
        assert res.volume_similarity == pytest.approx(-2.0)

    def test_mean_overlap_equals_dice(self, make_volume):
        rng = np.random.default_rng(3)
        a = make_volume(rng.random((8, 8, 8)) > 0.5)
        b = make_volume(rng.random((8, 8, 8)) > 0.4)
        res = compute_overlap(a, b, label=True)
        assert res.mean_overlap == pytest.approx(res.dice)

    def test_label_selection(self, make_volume):
        data = np.zeros((4, 4, 4), dtype=np.uint8)
        data[:2] = 1
        data[2:] = 2
        vol = make_volume(data)
        other = make_volume(np.where(data == 2, 2, 0).astype(np.uint8))
        assert compute_overlap(vol, other, label=2).dice == 1.0
        assert compute_overlap(vol, other, label=1).dice == 0.0

    def test_grid_mismatch_spacing(self, make_cube):
        with pytest.raises(GridMismatch):
            compute_overlap(make_cube(), make_cube(spacing=(1.0, 1.0, 1.5)))

    def test_as_dict_fields(self, make_cube):
        d = compute_overlap(make_cube(), make_cube()).as_dict()
        assert tuple(d) == OVERLAP_FIELDS
