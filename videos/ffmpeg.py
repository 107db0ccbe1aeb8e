"""
FFmpeg adapter: turns a variant ladder into one multi-variant HLS encode.

`FFmpegEngine.start()` launches ffmpeg and returns a `TranscodeRun` whose
future resolves when the process exits. The process handle stays on the run
so a caller can terminate it (cancel / deadline) instead of leaking it.
"""
import logging
import shutil
import subprocess
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path

from .errors import EngineError
from .ladder import Ladder

logger = logging.getLogger(__name__)

STDERR_TAIL = 4000


@dataclass(frozen=True)
class EngineConfig:
    ffmpeg_bin: str = "ffmpeg"
    preset: str = "veryfast"
    kill_grace_seconds: float = 5.0

    @classmethod
    def from_settings(cls) -> "EngineConfig":
        from django.conf import settings

        return cls(
            ffmpeg_bin=settings.FFMPEG_BIN,
            preset=settings.FFMPEG_PRESET,
            kill_grace_seconds=settings.FFMPEG_KILL_GRACE_SECONDS,
        )


def var_stream_map(ladder: Ladder) -> str:
    """'v:0,a:0 v:1,a:1 ...' binding each video+audio pair to hls_<n>/."""
    return " ".join(f"v:{v.index},a:{v.index}" for v in ladder)


def build_hls_command(source: Path, output_root: Path, ladder: Ladder, config: EngineConfig) -> list[str]:
    pkg = ladder.packaging
    cmd = [
        config.ffmpeg_bin,
        "-hide_banner",
        "-nostdin",
        "-loglevel", "warning",
        "-y",
        "-i", str(source),
    ]

    # One video + one audio output stream per rung, both from the first input streams
    for _ in ladder:
        cmd += ["-map", "0:v:0", "-map", "0:a:0"]

    for v in ladder:
        i = v.index
        cmd += [
            f"-filter:v:{i}", f"scale=w={v.width}:h={v.height}",
            f"-c:v:{i}", "libx264",
            f"-b:v:{i}", str(v.video_bitrate),
            f"-c:a:{i}", "aac",
            f"-ar:a:{i}", str(v.audio_sample_rate),
            f"-b:a:{i}", str(v.audio_bitrate),
        ]

    cmd += [
        "-preset", config.preset,
        "-pix_fmt", "yuv420p",
        # Keyframe on every segment boundary so all variants cut at the same times
        "-force_key_frames", f"expr:gte(t,n_forced*{pkg.segment_seconds})",
        "-f", "hls",
        "-hls_time", str(pkg.segment_seconds),
        "-hls_playlist_type", pkg.playlist_type,
        "-hls_segment_filename", str(output_root / "hls_%v" / pkg.segment_pattern),
        "-master_pl_name", pkg.master_playlist,
        "-var_stream_map", var_stream_map(ladder),
        str(output_root / "hls_%v" / pkg.variant_playlist),
    ]
    return cmd


class TranscodeRun:
    """
    Handle for one running encode.

    `result(timeout)` blocks until ffmpeg exits and raises EngineError on
    failure, or concurrent.futures.TimeoutError if it is still running.
    """

    def __init__(self, process: subprocess.Popen, output_root: Path, config: EngineConfig):
        self.process = process
        self.output_root = output_root
        self.config = config
        self.future: Future = Future()
        self._cancelled = threading.Event()
        self._watcher = threading.Thread(
            target=self._watch, name=f"ffmpeg-{process.pid}", daemon=True
        )
        self._watcher.start()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> None:
        return self.future.result(timeout=timeout)

    def _watch(self) -> None:
        try:
            _, stderr = self.process.communicate()
        except Exception as e:
            self._discard_output()
            self.future.set_exception(EngineError(f"ffmpeg monitoring failed: {e}"))
            return

        err = (stderr or b"").decode("utf-8", errors="ignore")[-STDERR_TAIL:]
        rc = self.process.returncode
        if rc == 0:
            logger.debug("ffmpeg finished for %s", self.output_root)
            self.future.set_result(None)
            return

        self._discard_output()
        if self.cancelled:
            detail = "ffmpeg terminated on request"
        else:
            detail = err.strip() or f"ffmpeg exited with status {rc}"
        self.future.set_exception(EngineError(detail, returncode=rc))

    def _discard_output(self) -> None:
        # Partial HLS output is never valid
        shutil.rmtree(self.output_root, ignore_errors=True)

    def cancel(self) -> None:
        """Terminate ffmpeg (SIGTERM, then SIGKILL after the grace period)."""
        if self.process.poll() is not None:
            return
        self._cancelled.set()
        logger.info("Terminating ffmpeg pid=%s", self.process.pid)
        self.process.terminate()
        try:
            self.process.wait(timeout=self.config.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("ffmpeg pid=%s ignored SIGTERM; killing", self.process.pid)
            self.process.kill()
            self.process.wait()


class FFmpegEngine:
    def __init__(self, config: EngineConfig | None = None):
        self.config = config or EngineConfig()

    def start(self, source: Path, output_root: Path, ladder: Ladder) -> TranscodeRun:
        source = Path(source)
        output_root = Path(output_root)

        # A retried job replaces whatever an earlier attempt left behind
        if output_root.exists():
            shutil.rmtree(output_root)
        for v in ladder:
            (output_root / v.playlist_dir).mkdir(parents=True, exist_ok=True)

        cmd = build_hls_command(source, output_root, ladder, self.config)
        logger.debug("Running: %s", subprocess.list2cmdline(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            shutil.rmtree(output_root, ignore_errors=True)
            raise EngineError(f"could not start {self.config.ffmpeg_bin}: {e}") from e
        return TranscodeRun(process, output_root, self.config)

    def transcode(self, source: Path, output_root: Path, ladder: Ladder, timeout: float | None = None) -> None:
        """Blocking convenience wrapper around start()."""
        run = self.start(source, output_root, ladder)
        try:
            run.result(timeout=timeout)
        except BaseException:
            run.cancel()
            raise
