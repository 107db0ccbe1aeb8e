import logging
import shutil
from pathlib import Path

from celery import shared_task
from django.conf import settings

from .ffmpeg import EngineConfig, FFmpegEngine
from .ladder import Ladder
from .models import Job
from .pipeline import JobOrchestrator, JobResult, JobState
from .s3 import Publisher, S3Config

logger = logging.getLogger(__name__)


def build_orchestrator() -> JobOrchestrator:
    """Wire the pipeline from Django settings into explicit config values."""
    return JobOrchestrator(
        engine=FFmpegEngine(EngineConfig.from_settings()),
        publisher=Publisher(S3Config.from_settings()),
        ladder=Ladder.from_settings(),
        timeout=settings.HLS_JOB_TIMEOUT_SECONDS,
    )


def _persist(job: Job, state: JobState, result: JobResult) -> None:
    job.status = state.value
    fields = ["status", "updated_at"]
    if state is JobState.SUCCEEDED:
        job.master_playlist_url = result.master_url
        fields.append("master_playlist_url")
    elif state is JobState.FAILED:
        job.error = result.error.detail[:4000]
        job.error_kind = result.error.kind
        fields += ["error", "error_kind"]
    job.save(update_fields=fields)


def _cancel_requested(job_id) -> bool:
    return Job.objects.filter(pk=job_id, cancel_requested=True).exists()


def _cleanup(*paths: Path) -> None:
    for p in paths:
        if p.is_dir():
            shutil.rmtree(p, ignore_errors=True)
        elif p.exists():
            p.unlink(missing_ok=True)


@shared_task(bind=True)
def process_upload(self, job_id: str) -> dict:
    """
    Run one job end to end. Returns the caller-visible body; the job row holds
    the same outcome for polling clients.
    """
    job = Job.objects.get(pk=job_id)
    if job.is_terminal:
        logger.warning("Job %s is already %s; not reprocessing", job_id, job.status)
        return job.to_response()[0]
    if job.status != Job.Status.PENDING:
        # Redelivered after a worker died mid-run: stale output is wiped and keys overwritten
        logger.warning("Job %s was interrupted in %s; restarting", job_id, job.status)

    media_root = Path(settings.MEDIA_ROOT)
    source_abs = media_root / job.source_path if job.source_path else None
    output_abs = media_root / job.output_dir_rel()

    try:
        result = build_orchestrator().run(
            job_id=str(job.id),
            source_path=source_abs,
            output_root=output_abs,
            on_transition=lambda state, res: _persist(job, state, res),
            should_cancel=lambda: _cancel_requested(job.id),
        )
    finally:
        # Local output is only needed until the job is terminal
        if settings.HLS_CLEANUP_LOCAL:
            _cleanup(output_abs)
        if settings.HLS_DELETE_SOURCE and source_abs is not None:
            _cleanup(source_abs)

    body, status = result.to_response()
    logger.info("Job %s finished %s (%s)", job_id, result.state.value, status)
    return body
