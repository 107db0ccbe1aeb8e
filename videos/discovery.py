"""
Artifact discovery over a finished HLS output tree.

`build_artifacts()` is the pure part: given a root and the relative paths found
under it, it returns the ordered artifact list. `discover()` only adds the
directory walk.
"""
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable

from .errors import DiscoveryError

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/MP2T"
BINARY_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class Artifact:
    relative_path: str   # POSIX form, e.g. "hls_0/index.m3u8"
    local_path: Path
    content_type: str

    @property
    def is_playlist(self) -> bool:
        return self.content_type == PLAYLIST_CONTENT_TYPE


def content_type_for(path: str) -> str:
    """Content type from the extension only; matches what ffmpeg is told to write."""
    suf = PurePosixPath(path).suffix.lower()
    if suf == ".m3u8":
        return PLAYLIST_CONTENT_TYPE
    if suf in (".ts", ".m2ts"):
        return SEGMENT_CONTENT_TYPE
    return BINARY_CONTENT_TYPE


def build_artifacts(root: Path, relative_paths: Iterable[str]) -> list[Artifact]:
    """Sorted, de-duplicated artifacts for the given relative paths."""
    rels = sorted({str(PurePosixPath(p.replace("\\", "/"))) for p in relative_paths})
    return [Artifact(rel, Path(root).joinpath(*PurePosixPath(rel).parts), content_type_for(rel)) for rel in rels]


def list_files(root: Path) -> list[str]:
    """Relative POSIX paths of every regular file beneath root."""
    base = Path(root)
    return [p.relative_to(base).as_posix() for p in base.rglob("*") if p.is_file()]


def discover(output_root: Path) -> list[Artifact]:
    output_root = Path(output_root)
    if not output_root.is_dir():
        raise DiscoveryError(f"output directory {output_root} does not exist")

    artifacts = build_artifacts(output_root, list_files(output_root))
    if not artifacts:
        raise DiscoveryError(f"transcoder produced no files in {output_root}")
    return artifacts
