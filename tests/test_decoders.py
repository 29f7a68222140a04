"""Tests for the PIL-backed sample decoders."""

import io

import numpy as np
import pytest
from PIL import Image

from feedline.db import Datum
from feedline.decoders import (
    decode_datum,
    decode_image_bytes,
    read_image,
    read_image_window,
    read_segment_flow,
    read_segment_rgb,
)
from feedline.errors import DecodeError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _png_bytes(width: int, height: int, color) -> bytes:
    mode = "L" if isinstance(color, int) else "RGB"
    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestReadImage:
    def test_chw_rgb(self, tmp_path):
        (tmp_path / "a.png").write_bytes(_png_bytes(5, 3, (1, 2, 3)))
        image = read_image(tmp_path / "a.png")
        assert image.shape == (3, 3, 5)
        assert image.dtype == np.uint8
        assert image[:, 0, 0].tolist() == [1, 2, 3]

    def test_gray_and_resize(self, tmp_path):
        (tmp_path / "a.png").write_bytes(_png_bytes(5, 3, (9, 9, 9)))
        image = read_image(tmp_path / "a.png", height=4, width=6, is_color=False)
        assert image.shape == (1, 4, 6)
        assert (image == 9).all()

    def test_missing_file(self, tmp_path):
        with pytest.raises(DecodeError) as excinfo:
            read_image(tmp_path / "missing.jpg")
        assert excinfo.value.locator == tmp_path / "missing.jpg"

    def test_not_an_image(self, tmp_path):
        (tmp_path / "bad.jpg").write_bytes(b"garbage")
        with pytest.raises(DecodeError):
            read_image(tmp_path / "bad.jpg")


class TestReadImageWindow:
    def _striped(self) -> bytes:
        # left half 10, right half 200
        img = Image.new("L", (8, 4), 10)
        img.paste(200, (4, 0, 8, 4))
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    def test_crop_and_mirror_from_bytes(self):
        window = read_image_window(self._striped(), (2, 0, 5, 3), (4, 4), is_color=False)
        assert window.shape == (1, 4, 4)
        assert window[0, 0].tolist() == [10, 10, 200, 200]
        flipped = read_image_window(self._striped(), (2, 0, 5, 3), (4, 4), mirror=True, is_color=False)
        assert flipped[0, 0].tolist() == [200, 200, 10, 10]

    def test_resize_from_path(self, tmp_path):
        (tmp_path / "a.png").write_bytes(_png_bytes(6, 6, (7, 8, 9)))
        window = read_image_window(tmp_path / "a.png", (0, 0, 2, 2), (5, 4))
        assert window.shape == (3, 4, 5)
        assert window[:, 0, 0].tolist() == [7, 8, 9]

    def test_box_outside_image(self, tmp_path):
        (tmp_path / "a.png").write_bytes(_png_bytes(4, 4, 1))
        with pytest.raises(DecodeError, match="outside"):
            read_image_window(tmp_path / "a.png", (0, 0, 4, 3), (2, 2))


class TestDecodeDatum:
    def test_raw(self):
        array = np.arange(12, dtype=np.uint8).reshape(3, 2, 2)
        sample, label = decode_datum(Datum.from_array(array, label=4).to_bytes())
        np.testing.assert_array_equal(sample, array)
        assert label == 4

    def test_encoded(self):
        datum = Datum(data=_png_bytes(2, 2, (5, 6, 7)), label=1, encoded=True)
        sample, label = decode_datum(datum)
        assert sample[:, 0, 0].tolist() == [5, 6, 7]
        assert label == 1

    def test_encoded_gray(self):
        datum = Datum(data=_png_bytes(2, 2, (5, 5, 5)), encoded=True)
        sample, _ = decode_datum(datum, is_color=False)
        assert sample.shape == (1, 2, 2)

    def test_corrupt_payload(self):
        with pytest.raises(DecodeError, match="Corrupt"):
            decode_datum(b"\x00\x01garbage")

    def test_geometry_mismatch(self):
        datum = Datum(data=b"\x00" * 5, channels=3, height=2, width=2)
        with pytest.raises(DecodeError, match="geometry"):
            decode_datum(datum)

    def test_bad_encoded_bytes(self):
        with pytest.raises(DecodeError):
            decode_image_bytes(b"not an image")


class TestSegments:
    def test_rgb_frame_order(self, tmp_path):
        for n in range(1, 5):
            (tmp_path / f"img_{n:05d}.png").write_bytes(_png_bytes(2, 2, (n, n, n)))
        clip = read_segment_rgb(tmp_path, [0, 2], new_length=2, pattern="img_{:05d}.png")
        assert clip.shape == (12, 2, 2)
        assert clip[::3, 0, 0].tolist() == [1, 2, 3, 4]

    def test_flow_channels(self, tmp_path):
        for n in range(1, 3):
            (tmp_path / f"x_{n}.png").write_bytes(_png_bytes(2, 2, n))
            (tmp_path / f"y_{n}.png").write_bytes(_png_bytes(2, 2, 100 + n))
        clip = read_segment_flow(tmp_path, [0, 1], x_pattern="x_{}.png", y_pattern="y_{}.png")
        assert clip[:, 0, 0].tolist() == [1, 101, 2, 102]

    def test_missing_frame(self, tmp_path):
        with pytest.raises(DecodeError):
            read_segment_rgb(tmp_path, [0])

    def test_frame_size_mismatch(self, tmp_path):
        (tmp_path / "img_00001.png").write_bytes(_png_bytes(2, 2, (1, 1, 1)))
        (tmp_path / "img_00002.png").write_bytes(_png_bytes(3, 3, (1, 1, 1)))
        with pytest.raises(DecodeError, match="differ"):
            read_segment_rgb(tmp_path, [0], new_length=2, pattern="img_{:05d}.png")
