"""
Job orchestrator: transcode -> discover -> publish for one job.

Each job gets its own state machine; the orchestrator holds no per-job state
between runs, so one instance can serve any number of jobs.
"""
import logging
import os
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .discovery import discover
from .errors import (
    DiscoveryError,
    InputError,
    JobCancelledError,
    JobTimeoutError,
    PipelineError,
)
from .ffmpeg import FFmpegEngine, TranscodeRun
from .ladder import Ladder
from .s3 import Publisher

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Video converted and uploaded"


class JobState(str, Enum):
    PENDING = "PENDING"
    TRANSCODING = "TRANSCODING"
    DISCOVERING = "DISCOVERING"
    PUBLISHING = "PUBLISHING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


TRANSITIONS = {
    JobState.PENDING: {JobState.TRANSCODING, JobState.FAILED},
    JobState.TRANSCODING: {JobState.DISCOVERING, JobState.FAILED},
    JobState.DISCOVERING: {JobState.PUBLISHING, JobState.FAILED},
    JobState.PUBLISHING: {JobState.SUCCEEDED, JobState.FAILED},
    JobState.SUCCEEDED: set(),
    JobState.FAILED: set(),
}


class IllegalTransition(RuntimeError):
    pass


@dataclass
class JobResult:
    job_id: str
    state: JobState = JobState.PENDING
    master_url: Optional[str] = None
    error: Optional[PipelineError] = None

    def to_response(self) -> tuple[dict, int]:
        """Caller-visible body and HTTP status for the current state."""
        if self.state is JobState.SUCCEEDED:
            return {"message": SUCCESS_MESSAGE, "masterPlaylist": self.master_url}, 200
        if self.state is JobState.FAILED:
            return {"error": self.error.category}, self.error.http_status
        return {"status": self.state.value}, 202


TransitionCallback = Callable[[JobState, JobResult], None]


class JobStateMachine:
    def __init__(self, job_id: str, on_transition: Optional[TransitionCallback] = None):
        self.result = JobResult(job_id=job_id)
        self._on_transition = on_transition

    @property
    def state(self) -> JobState:
        return self.result.state

    def advance(self, new_state: JobState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.state.value} -> {new_state.value}")
        logger.info("Job %s: %s -> %s", self.result.job_id, self.state.value, new_state.value)
        self.result.state = new_state
        if self._on_transition:
            self._on_transition(new_state, self.result)

    def succeed(self, master_url: str) -> None:
        self.result.master_url = master_url
        self.advance(JobState.SUCCEEDED)

    def fail(self, error: PipelineError) -> None:
        self.result.error = error
        self.advance(JobState.FAILED)


class JobOrchestrator:
    def __init__(
        self,
        engine: FFmpegEngine,
        publisher: Publisher,
        ladder: Ladder,
        timeout: float | None = None,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.publisher = publisher
        self.ladder = ladder
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock

    def run(
        self,
        job_id: str,
        source_path: Path,
        output_root: Path,
        on_transition: Optional[TransitionCallback] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> JobResult:
        machine = JobStateMachine(str(job_id), on_transition)
        deadline = self.clock() + self.timeout if self.timeout else None
        master_name = self.ladder.packaging.master_playlist

        try:
            source_path = self._check_source(source_path)

            machine.advance(JobState.TRANSCODING)
            run = self.engine.start(source_path, Path(output_root), self.ladder)
            self._await_transcode(run, deadline, should_cancel)

            machine.advance(JobState.DISCOVERING)
            artifacts = discover(output_root)
            if not any(a.relative_path == master_name for a in artifacts):
                raise DiscoveryError(f"{master_name} missing from {output_root}")

            machine.advance(JobState.PUBLISHING)
            published = self.publisher.publish(
                str(job_id), artifacts, master_name, timeout=self._remaining(deadline)
            )
            machine.succeed(published.master_url)

        except PipelineError as e:
            logger.warning("Job %s failed in %s: %s: %s", job_id, machine.state.value, e.kind, e.detail)
            machine.fail(e)
        except FuturesTimeoutError:
            logger.warning("Job %s exceeded its %ss deadline in %s", job_id, self.timeout, machine.state.value)
            machine.fail(JobTimeoutError(f"deadline of {self.timeout}s exceeded during {machine.state.value.lower()}"))
        except Exception as e:
            logger.exception("Job %s crashed in %s", job_id, machine.state.value)
            if not machine.state.is_terminal:
                machine.fail(PipelineError(str(e)))
            raise

        return machine.result

    def _check_source(self, source_path) -> Path:
        if not source_path:
            raise InputError("no source file given")
        path = Path(source_path)
        if not path.is_file():
            raise InputError(f"source file {path} does not exist")
        if not os.access(path, os.R_OK):
            raise InputError(f"source file {path} is not readable")
        return path

    def _remaining(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(0.0, deadline - self.clock())

    def _await_transcode(
        self,
        run: TranscodeRun,
        deadline: float | None,
        should_cancel: Optional[Callable[[], bool]],
    ) -> None:
        """Suspend on the engine future, polling for cancellation and the deadline."""
        try:
            while True:
                if should_cancel and should_cancel():
                    run.cancel()
                    raise JobCancelledError("cancelled while transcoding")
                wait = self.poll_interval
                remaining = self._remaining(deadline)
                if remaining is not None:
                    if remaining <= 0:
                        run.cancel()
                        raise FuturesTimeoutError()
                    wait = min(wait, remaining)
                try:
                    run.result(timeout=wait)
                    return
                except FuturesTimeoutError:
                    continue
        except BaseException:
            # Never leave ffmpeg running behind a failed or interrupted job
            run.cancel()
            raise
