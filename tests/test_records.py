"""Tests for record-list parsing and writing."""

import pytest

from feedline.errors import ConfigurationError
from feedline.records import (
    FlowPairRecord,
    ImageRecord,
    VideoRecord,
    Window,
    parse_records,
    read_record_list,
    read_window_file,
    write_record_list,
)


class TestParse:
    def test_image_record(self):
        assert ImageRecord.parse("cat/001.jpg 3") == ImageRecord("cat/001.jpg", 3)

    def test_image_path_with_spaces(self):
        assert ImageRecord.parse("my photos/a b.jpg 1") == ImageRecord("my photos/a b.jpg", 1)

    def test_video_record(self):
        assert VideoRecord.parse("v_Archery_g01_c01 151 2") == VideoRecord("v_Archery_g01_c01", 151, 2)

    def test_flow_pair_record(self):
        record = FlowPairRecord.parse("mvs/clip tvl1/clip frames/clip 90 4")
        assert record == FlowPairRecord("mvs/clip", "tvl1/clip", "frames/clip", 90, 4)

    def test_skips_blank_and_comment_lines(self):
        lines = ["# header", "", "a.jpg 0", "   ", "b.jpg 1"]
        assert parse_records(lines, ImageRecord) == [ImageRecord("a.jpg", 0), ImageRecord("b.jpg", 1)]

    def test_malformed_line_reports_line_number(self):
        with pytest.raises(ConfigurationError, match="list.txt:2"):
            parse_records(["a.jpg 0", "b.jpg one"], ImageRecord, source="list.txt")

    def test_missing_field(self):
        with pytest.raises(ConfigurationError):
            parse_records(["clip 10"], VideoRecord)


class TestFiles:
    @pytest.mark.parametrize("record_type, records, text", [
        (
            ImageRecord,
            [ImageRecord("cat/001.jpg", 3), ImageRecord("my photos/a b.jpg", 1)],
            "cat/001.jpg 3\nmy photos/a b.jpg 1\n",
        ),
        (
            VideoRecord,
            [VideoRecord("a", 10, 0), VideoRecord("b", 20, 1)],
            "a 10 0\nb 20 1\n",
        ),
        (
            FlowPairRecord,
            [FlowPairRecord("mvs/a", "tvl1/a", "frames/a", 90, 4)],
            "mvs/a tvl1/a frames/a 90 4\n",
        ),
    ])
    def test_write_then_read(self, tmp_path, record_type, records, text):
        path = tmp_path / "list.txt"
        write_record_list(path, records)
        assert path.read_text() == text
        assert read_record_list(path, record_type) == records

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            read_record_list(tmp_path / "nope.txt", ImageRecord)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.txt"
        path.write_text("# nothing here\n")
        with pytest.raises(ConfigurationError, match="no records"):
            read_record_list(path, ImageRecord)


WINDOW_FILE = """\
# 0
images/a.jpg
3
480
640
2
1 0.9 10 20 110 220
0 0.1 0 0 50 50

# 1
images/b.jpg
1
100
100
0
"""


class TestWindowFile:
    def test_read(self, tmp_path):
        path = tmp_path / "windows.txt"
        path.write_text(WINDOW_FILE)
        images = read_window_file(path)
        assert [image.path for image in images] == ["images/a.jpg", "images/b.jpg"]
        first = images[0]
        assert (first.channels, first.height, first.width) == (3, 480, 640)
        assert first.windows == (Window(1, 0.9, 10, 20, 110, 220), Window(0, 0.1, 0, 0, 50, 50))
        assert images[1].windows == ()

    def test_truncated(self, tmp_path):
        path = tmp_path / "windows.txt"
        path.write_text("# 0\nimages/a.jpg\n3\n480\n640\n2\n1 0.9 10 20 110 220\n")
        with pytest.raises(ConfigurationError, match="unexpected end"):
            read_window_file(path)

    def test_malformed_window(self, tmp_path):
        path = tmp_path / "windows.txt"
        path.write_text("# 0\nimages/a.jpg\n3\n480\n640\n1\n1 0.9 10 20\n")
        with pytest.raises(ConfigurationError, match="windows.txt:7"):
            read_window_file(path)

    def test_missing_header(self, tmp_path):
        path = tmp_path / "windows.txt"
        path.write_text("images/a.jpg\n3\n")
        with pytest.raises(ConfigurationError, match="# <index>"):
            read_window_file(path)
