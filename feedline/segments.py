"""Segment-based temporal sampling for video clips.

A clip of ``duration`` frames is split into ``num_segments`` windows of
``duration // num_segments`` frames. One snippet of ``new_length``
consecutive frames is taken from each window:

- training: a uniformly random start inside the window
- evaluation: the start that centers the snippet in the window

Offsets are absolute, 0-based frame indices, so every offset lies in
``[0, duration - new_length]``.

Usage:
    sampler = SegmentSampler(num_segments=3, new_length=5, train=False)
    sampler.offsets(90)  # [12, 42, 72]
"""

from __future__ import annotations

import numpy as np

from feedline.errors import ConfigurationError


class SegmentSampler:
    """Draw one snippet offset per temporal segment.

    Args:
        num_segments: Number of equal windows per clip
        new_length: Frames per snippet
        train: Randomize offsets (True) or center them (False)
        rng: Generator for training jitter
    """

    def __init__(
        self,
        num_segments: int,
        new_length: int,
        train: bool = True,
        rng: np.random.Generator | None = None,
    ) -> None:
        if num_segments <= 0 or new_length <= 0:
            raise ConfigurationError(
                f"num_segments and new_length must be positive "
                f"(got {num_segments}, {new_length})"
            )
        self.num_segments = num_segments
        self.new_length = new_length
        self.train = train
        self.rng = rng if rng is not None else np.random.default_rng()

    def average_duration(self, duration: int) -> int:
        return duration // self.num_segments

    def check(self, duration: int) -> None:
        """Raise ConfigurationError if a clip is too short to sample."""
        average = self.average_duration(duration)
        if average < self.new_length:
            raise ConfigurationError(
                f"Clip of {duration} frames split into {self.num_segments} segments "
                f"gives {average} frames per segment, fewer than new_length={self.new_length}"
            )

    def offsets(self, duration: int) -> list[int]:
        self.check(duration)
        average = self.average_duration(duration)
        span = average - self.new_length
        if self.train:
            jitter = self.rng.integers(0, span + 1, size=self.num_segments)
        else:
            jitter = np.full(self.num_segments, span // 2)
        return [int(i * average + j) for i, j in enumerate(jitter)]

    def __repr__(self) -> str:
        return (
            f"SegmentSampler(num_segments={self.num_segments}, "
            f"new_length={self.new_length}, train={self.train})"
        )


__all__ = ["SegmentSampler"]
