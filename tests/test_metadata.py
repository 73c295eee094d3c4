import io
import subprocess

import pytest
from PIL import Image

import video_dedup.metadata.extract as extract_module
import video_dedup.metadata.thumbnails as thumbnails_module
from video_dedup.metadata.extract import MetadataExtractor
from video_dedup.metadata.thumbnails import ThumbnailExtractor
from video_dedup.models import ZERO_DURATION


# Mock MediaInfo class structure
class MockTrack:
    def __init__(self, track_type="General", **kwargs):
        self.track_type = track_type
        for k, v in kwargs.items():
            setattr(self, k, v)


class MockMediaInfo:
    tracks_for_parse = [MockTrack(duration=5000)]

    def __init__(self, tracks):
        self.tracks = tracks

    @classmethod
    def parse(cls, path):
        return cls(cls.tracks_for_parse)


class FailingMediaInfo:
    @classmethod
    def parse(cls, path):
        raise OSError("libmediainfo not found")


def test_duration_from_mediainfo(monkeypatch, tmp_path):
    monkeypatch.setattr(extract_module, "MediaInfo", MockMediaInfo)

    vid = tmp_path / "test.mp4"
    vid.touch()

    assert MetadataExtractor().get_duration(vid) == 5.0


def test_duration_falls_back_to_exiftool(monkeypatch, tmp_path):
    class NoDuration(MockMediaInfo):
        tracks_for_parse = [MockTrack(), MockTrack(track_type="Video", duration=9000)]

    monkeypatch.setattr(extract_module, "MediaInfo", NoDuration)
    monkeypatch.setattr(extract_module.subprocess, "check_output",
                        lambda cmd, **kw: '[{"SourceFile": "x", "Duration": 12.5}]')

    assert MetadataExtractor().get_duration(tmp_path / "test.mp4") == 12.5


def test_duration_is_zero_when_every_probe_fails(monkeypatch, tmp_path):
    def missing_tool(cmd, **kw):
        raise FileNotFoundError("exiftool")

    monkeypatch.setattr(extract_module, "MediaInfo", FailingMediaInfo)
    monkeypatch.setattr(extract_module.subprocess, "check_output", missing_tool)

    assert MetadataExtractor().get_duration(tmp_path / "test.mp4") == ZERO_DURATION


def test_file_size(tmp_path):
    vid = tmp_path / "test.mp4"
    vid.write_bytes(b"x" * 123)
    extractor = MetadataExtractor()

    assert extractor.get_file_size(vid) == 123
    assert extractor.get_file_size(tmp_path / "missing.mp4") == 0


def png_bytes(size=(640, 480), color=(10, 20, 30)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def test_frame_is_decoded_and_shrunk(monkeypatch, tmp_path):
    seen = {}

    def fake_run(cmd, **kw):
        seen["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 0, stdout=png_bytes(), stderr=b"")

    monkeypatch.setattr(thumbnails_module.subprocess, "run", fake_run)

    frame = ThumbnailExtractor().extract(tmp_path / "test.mp4", 12.0)

    assert frame.mode == "RGB"
    assert max(frame.size) <= 256
    assert seen["cmd"][seen["cmd"].index("-ss") + 1] == "12.000"


@pytest.mark.parametrize("error", [
    subprocess.CalledProcessError(1, "ffmpeg", stderr=b"moov atom not found"),
    subprocess.TimeoutExpired("ffmpeg", 60),
    FileNotFoundError("ffmpeg"),
])
def test_failed_frame_grab_returns_none(monkeypatch, tmp_path, error):
    def fake_run(cmd, **kw):
        raise error

    monkeypatch.setattr(thumbnails_module.subprocess, "run", fake_run)

    assert ThumbnailExtractor().extract(tmp_path / "test.mp4", 1.0) is None


def test_empty_ffmpeg_output_returns_none(monkeypatch, tmp_path):
    monkeypatch.setattr(thumbnails_module.subprocess, "run",
                        lambda cmd, **kw: subprocess.CompletedProcess(cmd, 0, stdout=b"", stderr=b""))

    assert ThumbnailExtractor().extract(tmp_path / "test.mp4", 1.0) is None
