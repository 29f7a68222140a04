"""VideoDataLayer: segment-sampled snippets from frame directories.

Each record is a clip directory with a known frame count. Per sample the
layer draws one snippet of ``new_length`` frames from each of
``num_segments`` equal windows (random in TRAIN, centered in TEST) and
stacks them along the channel axis.

Record formats (``param.flow_pairs``):

    False:  <frame_dir> <num_frames> <label>
    True:   <mvs_dir> <tvl1_dir> <frame_dir> <num_frames> <label>

With flow pairs and the FLOW modality, the flow frames are read from the
motion-vector and TV-L1 directories of the record instead of the frame
directory, giving four channels per frame.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np

from feedline.config import Modality, Phase, VideoDataParameter
from feedline.cursors import IndexListCursor
from feedline.decoders import read_segment_flow, read_segment_flow_pair, read_segment_rgb
from feedline.errors import ConfigurationError
from feedline.layers.base import PrefetchingDataLayer
from feedline.prefetch import CursorSampleSource
from feedline.records import FlowPairRecord, VideoRecord, read_record_list
from feedline.segments import SegmentSampler

ClipRecord = VideoRecord | FlowPairRecord


class VideoDataLayer(PrefetchingDataLayer):
    """Segment-sampled video clips (RGB or optical flow).

    Every clip's frame count is checked at setup: a clip whose segments are
    shorter than ``new_length`` frames is a ConfigurationError naming the
    record, never a silent wrap at training time.
    """

    type_name = "VideoData"

    def __init__(self, param: VideoDataParameter, **kwargs: Any) -> None:
        super().__init__(param, **kwargs)
        self.sampler = SegmentSampler(
            param.num_segments,
            param.new_length,
            train=self.phase == Phase.TRAIN,
            rng=self.sample_rng,
        )
        self.cursor: IndexListCursor[ClipRecord] | None = None

    def _path(self, name: str) -> Path:
        return Path(self.param.root_folder) / name

    def decode(self, record: ClipRecord) -> tuple[np.ndarray, int]:
        p = self.param
        offsets = self.sampler.offsets(record.duration)
        if p.modality == Modality.RGB:
            clip = read_segment_rgb(
                self._path(record.path), offsets,
                p.new_height, p.new_width, p.new_length, pattern=p.rgb_pattern,
            )
        elif isinstance(record, FlowPairRecord):
            clip = read_segment_flow_pair(
                self._path(record.mvs_dir), self._path(record.tvl1_dir), offsets,
                p.new_height, p.new_width, p.new_length,
                x_pattern=p.flow_x_pattern, y_pattern=p.flow_y_pattern,
            )
        else:
            clip = read_segment_flow(
                self._path(record.path), offsets,
                p.new_height, p.new_width, p.new_length,
                x_pattern=p.flow_x_pattern, y_pattern=p.flow_y_pattern,
            )
        return clip, record.label

    def _check_durations(self, records: list[ClipRecord]) -> None:
        for index, record in enumerate(records):
            try:
                self.sampler.check(record.duration)
            except ConfigurationError as e:
                raise ConfigurationError(
                    f"{self.param.source}: record {index} ({record.path}): {e}"
                ) from None

    def build_source(self) -> CursorSampleSource:
        record_type = FlowPairRecord if self.param.flow_pairs else VideoRecord
        records = read_record_list(self.param.source, record_type)
        self._check_durations(records)
        self.cursor = IndexListCursor(records, self.param.shuffle, self.shuffle_rng)
        return CursorSampleSource(
            self.cursor,
            self.decoder or self.decode,
            self.transformer,
            locate=lambda record: str(self._path(record.path)),
        )


__all__ = ["VideoDataLayer"]
