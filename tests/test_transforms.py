"""Tests for DataTransformer: mean subtraction, crop, mirror, scale."""

import numpy as np
import pytest

from feedline.config import Phase, TransformParameter
from feedline.errors import ConfigurationError, DecodeError
from feedline.transforms import DataTransformer, load_mean_file


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _sample(channels: int = 3, height: int = 6, width: int = 8) -> np.ndarray:
    return np.arange(channels * height * width, dtype=np.uint8).reshape(channels, height, width)


def _transformer(phase=Phase.TRAIN, seed=0, **kwargs) -> DataTransformer:
    return DataTransformer(TransformParameter(**kwargs), phase, rng=np.random.default_rng(seed))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestIdentity:
    def test_float32_copy(self):
        sample = _sample()
        out = DataTransformer()(sample)
        assert out.dtype == np.float32
        np.testing.assert_array_equal(out, sample.astype(np.float32))
        assert out.flags["C_CONTIGUOUS"]

    def test_rejects_non_chw(self):
        with pytest.raises(DecodeError):
            DataTransformer()(np.zeros((4, 4), dtype=np.uint8))


class TestCrop:
    def test_center_crop_in_test_phase(self):
        sample = _sample()
        out = _transformer(Phase.TEST, crop_size=4)(sample)
        np.testing.assert_array_equal(out, sample[:, 1:5, 2:6])

    def test_random_crop_in_train_phase(self):
        sample = _sample()
        t = _transformer(Phase.TRAIN, crop_size=4)
        windows = set()
        for _ in range(30):
            out = t(sample)
            assert out.shape == (3, 4, 4)
            # the top-left value identifies the window
            windows.add(int(out[0, 0, 0]))
        assert len(windows) > 1

    def test_infer_shape(self):
        assert _transformer(crop_size=4).infer_shape((3, 6, 8)) == (3, 4, 4)
        assert _transformer().infer_shape((3, 6, 8)) == (3, 6, 8)

    def test_crop_larger_than_data(self):
        with pytest.raises(ConfigurationError, match="crop_size"):
            _transformer(crop_size=10).infer_shape((3, 6, 8))
        with pytest.raises(DecodeError):
            _transformer(crop_size=10)(_sample())


class TestMirror:
    def test_train_flips_sometimes(self):
        sample = _sample()
        t = _transformer(Phase.TRAIN, mirror=True)
        outs = [t(sample) for _ in range(30)]
        flipped = [np.array_equal(o, sample[:, :, ::-1]) for o in outs]
        assert any(flipped) and not all(flipped)

    def test_test_phase_never_flips(self):
        sample = _sample()
        t = _transformer(Phase.TEST, mirror=True)
        for _ in range(10):
            np.testing.assert_array_equal(t(sample), sample)


class TestMeanAndScale:
    def test_mean_values_per_channel(self):
        sample = np.full((3, 2, 2), 10, dtype=np.uint8)
        out = _transformer(mean_value=(1, 2, 3))(sample)
        np.testing.assert_array_equal(out[:, 0, 0], [9, 8, 7])

    def test_mean_values_cycle_over_stacked_frames(self):
        sample = np.full((6, 2, 2), 10, dtype=np.uint8)
        out = _transformer(mean_value=(1, 2, 3))(sample)
        np.testing.assert_array_equal(out[:, 0, 0], [9, 8, 7, 9, 8, 7])

    def test_single_mean_value(self):
        sample = np.full((2, 2, 2), 10, dtype=np.uint8)
        out = _transformer(mean_value=(4,))(sample)
        assert (out == 6).all()

    def test_scale_after_mean(self):
        sample = np.full((1, 2, 2), 10, dtype=np.uint8)
        out = _transformer(mean_value=(2,), scale=0.5)(sample)
        assert (out == 4).all()

    def test_mean_file_cropped_with_data(self, tmp_path):
        mean = np.ones((3, 6, 8), dtype=np.float32)
        np.save(tmp_path / "mean.npy", mean)
        sample = _sample()
        out = _transformer(Phase.TEST, crop_size=4, mean_file=str(tmp_path / "mean.npy"))(sample)
        np.testing.assert_array_equal(out, sample[:, 1:5, 2:6].astype(np.float32) - 1)

    def test_mean_file_shape_mismatch(self, tmp_path):
        np.save(tmp_path / "mean.npy", np.zeros((3, 5, 5), dtype=np.float32))
        t = _transformer(mean_file=str(tmp_path / "mean.npy"))
        with pytest.raises(ConfigurationError, match="Mean file"):
            t.infer_shape((3, 6, 8))


class TestLoadMeanFile:
    def test_batch_axis_dropped(self, tmp_path):
        np.save(tmp_path / "mean.npy", np.zeros((1, 3, 4, 4)))
        assert load_mean_file(tmp_path / "mean.npy").shape == (3, 4, 4)

    def test_wrong_rank(self, tmp_path):
        np.save(tmp_path / "mean.npy", np.zeros((4, 4)))
        with pytest.raises(ConfigurationError):
            load_mean_file(tmp_path / "mean.npy")

    def test_missing(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot load"):
            load_mean_file(tmp_path / "missing.npy")
