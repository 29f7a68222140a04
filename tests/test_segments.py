"""Tests for segment-based temporal sampling."""

import numpy as np
import pytest

from feedline.errors import ConfigurationError
from feedline.segments import SegmentSampler


class TestEvaluationOffsets:
    def test_centered(self):
        sampler = SegmentSampler(num_segments=3, new_length=5, train=False)
        assert sampler.offsets(90) == [12, 42, 72]

    def test_deterministic(self):
        sampler = SegmentSampler(num_segments=4, new_length=3, train=False)
        assert sampler.offsets(77) == sampler.offsets(77)

    def test_exact_fit(self):
        sampler = SegmentSampler(num_segments=2, new_length=5, train=False)
        assert sampler.offsets(10) == [0, 5]


class TestTrainingOffsets:
    @pytest.mark.parametrize("duration", [15, 16, 47, 90, 301])
    def test_in_range(self, duration):
        sampler = SegmentSampler(3, 5, train=True, rng=np.random.default_rng(0))
        average = duration // 3
        for _ in range(50):
            offsets = sampler.offsets(duration)
            assert len(offsets) == 3
            for i, offset in enumerate(offsets):
                assert i * average <= offset <= i * average + average - 5
                assert 0 <= offset <= duration - 5

    def test_varies(self):
        sampler = SegmentSampler(3, 1, train=True, rng=np.random.default_rng(0))
        draws = {tuple(sampler.offsets(300)) for _ in range(20)}
        assert len(draws) > 1

    def test_seeded(self):
        a = SegmentSampler(3, 2, train=True, rng=np.random.default_rng(9))
        b = SegmentSampler(3, 2, train=True, rng=np.random.default_rng(9))
        assert [a.offsets(60) for _ in range(5)] == [b.offsets(60) for _ in range(5)]


class TestDegenerate:
    def test_clip_too_short(self):
        sampler = SegmentSampler(3, 5, train=False)
        with pytest.raises(ConfigurationError, match="new_length=5"):
            sampler.offsets(14)

    def test_check(self):
        sampler = SegmentSampler(2, 4)
        sampler.check(8)
        with pytest.raises(ConfigurationError):
            sampler.check(7)

    def test_bad_arguments(self):
        with pytest.raises(ConfigurationError):
            SegmentSampler(0, 1)
