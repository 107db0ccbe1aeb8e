from concurrent.futures import Future
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from videos.ladder import Ladder
from videos.s3 import Publisher, S3Config

DEFAULT_RUNGS = [
    {"width": 426, "height": 240, "video_bitrate": "400k", "audio_bitrate": "96k"},
    {"width": 854, "height": 480, "video_bitrate": "800k", "audio_bitrate": "128k"},
    {"width": 1280, "height": 720, "video_bitrate": "2800k", "audio_bitrate": "128k"},
    {"width": 1920, "height": 1080, "video_bitrate": "5000k", "audio_bitrate": "192k"},
]


def write_hls_tree(root: Path, ladder: Ladder, segments: int = 2) -> list[str]:
    """Lay out what ffmpeg writes for `ladder`; returns the relative paths."""
    rels = [ladder.packaging.master_playlist]
    for v in ladder:
        rels.append(v.playlist_path)
        rels += [f"{v.playlist_dir}/segment_{n:03d}.ts" for n in range(segments)]
    for rel in rels:
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(b"#EXTM3U\n" if rel.endswith(".m3u8") else b"\x47" * 188)
    return rels


class FakeRun:
    def __init__(self, error: Exception | None = None, finished: bool = True):
        self.future = Future()
        self.cancel = MagicMock(name="cancel")
        if finished:
            if error is None:
                self.future.set_result(None)
            else:
                self.future.set_exception(error)

    def result(self, timeout=None):
        return self.future.result(timeout=timeout)


class FakeEngine:
    """Stands in for FFmpegEngine: writes a synthetic tree instead of encoding."""

    def __init__(self, error: Exception | None = None, finished: bool = True, write_tree: bool = True):
        self.error = error
        self.finished = finished
        self.write_tree = write_tree
        self.calls = []
        self.runs = []

    def start(self, source, output_root, ladder):
        self.calls.append((Path(source), Path(output_root), ladder))
        Path(output_root).mkdir(parents=True, exist_ok=True)
        if self.write_tree and self.error is None and self.finished:
            write_hls_tree(Path(output_root), ladder)
        run = FakeRun(self.error, self.finished)
        self.runs.append(run)
        return run


@pytest.fixture
def ladder():
    return Ladder.from_config(DEFAULT_RUNGS)


@pytest.fixture
def s3_config():
    return S3Config(bucket="media-test", region="eu-west-1", upload_concurrency=4)


@pytest.fixture
def s3_client():
    client = MagicMock(name="s3_client")
    client.delete_objects.return_value = {}
    return client


@pytest.fixture
def publisher(s3_config, s3_client):
    return Publisher(s3_config, client=s3_client)


@pytest.fixture
def source_file(tmp_path):
    src = tmp_path / "clip.mp4"
    src.write_bytes(b"\x00\x00\x00\x18ftypmp42")
    return src
