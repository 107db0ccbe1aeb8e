"""
Variant ladder: the ordered set of HLS renditions and packaging parameters.

The ladder is plain data loaded from settings (see HLS_LADDER / HLS_LADDER_JSON),
so rungs can be added or removed without touching the pipeline code.
"""
import re
from dataclasses import dataclass

from django.core.exceptions import ImproperlyConfigured

_BITRATE_RE = re.compile(r"^(\d+)([kKmM]?)$")


def parse_bitrate(value) -> int:
    """'800k' -> 800000, '5M' -> 5000000, 96000 -> 96000."""
    if isinstance(value, bool):
        raise ImproperlyConfigured(f"Invalid bitrate: {value!r}")
    if isinstance(value, int):
        bps = value
    else:
        m = _BITRATE_RE.match(str(value).strip())
        if not m:
            raise ImproperlyConfigured(f"Invalid bitrate: {value!r}")
        bps = int(m.group(1)) * {"": 1, "k": 1000, "m": 1000_000}[m.group(2).lower()]
    if bps <= 0:
        raise ImproperlyConfigured(f"Bitrate must be positive: {value!r}")
    return bps


@dataclass(frozen=True)
class Variant:
    index: int
    width: int
    height: int
    video_bitrate: int       # bits per second
    audio_sample_rate: int   # Hz
    audio_bitrate: int       # bits per second

    @property
    def playlist_dir(self) -> str:
        return f"hls_{self.index}"

    @property
    def playlist_path(self) -> str:
        return f"{self.playlist_dir}/index.m3u8"


@dataclass(frozen=True)
class Packaging:
    segment_seconds: int = 6
    playlist_type: str = "vod"
    master_playlist: str = "master.m3u8"
    variant_playlist: str = "index.m3u8"
    segment_pattern: str = "segment_%03d.ts"


@dataclass(frozen=True)
class Ladder:
    variants: tuple[Variant, ...]
    packaging: Packaging = Packaging()

    def __len__(self) -> int:
        return len(self.variants)

    def __iter__(self):
        return iter(self.variants)

    @classmethod
    def from_config(cls, rungs, packaging: Packaging | None = None) -> "Ladder":
        """
        Build a ladder from a list of rung dicts:
            {"width": 854, "height": 480, "video_bitrate": "800k",
             "audio_sample_rate": 48000, "audio_bitrate": "128k"}
        Position in the list becomes the stream index.
        """
        if not rungs:
            raise ImproperlyConfigured("HLS ladder must contain at least one variant")

        variants = []
        for idx, rung in enumerate(rungs):
            try:
                width = int(rung["width"])
                height = int(rung["height"])
                video_bitrate = parse_bitrate(rung["video_bitrate"])
                audio_bitrate = parse_bitrate(rung.get("audio_bitrate", "128k"))
                sample_rate = int(rung.get("audio_sample_rate", 48000))
            except (KeyError, TypeError, ValueError) as e:
                raise ImproperlyConfigured(f"Invalid ladder rung #{idx}: {rung!r} ({e})")
            if width <= 0 or height <= 0 or sample_rate <= 0:
                raise ImproperlyConfigured(f"Ladder rung #{idx} must use positive values: {rung!r}")
            # libx264 with yuv420p rejects odd dimensions
            if width % 2 or height % 2:
                raise ImproperlyConfigured(f"Ladder rung #{idx} needs even dimensions, got {width}x{height}")
            variants.append(Variant(idx, width, height, video_bitrate, sample_rate, audio_bitrate))

        return cls(tuple(variants), packaging or Packaging())

    @classmethod
    def from_settings(cls) -> "Ladder":
        from django.conf import settings

        packaging = Packaging(
            segment_seconds=settings.HLS_SEGMENT_SECONDS,
            playlist_type=settings.HLS_PLAYLIST_TYPE,
            master_playlist=settings.HLS_MASTER_PLAYLIST,
        )
        if packaging.segment_seconds <= 0:
            raise ImproperlyConfigured("HLS_SEGMENT_SECONDS must be positive")
        return cls.from_config(settings.HLS_LADDER, packaging)
