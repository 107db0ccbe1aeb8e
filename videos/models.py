import uuid
from django.db import models

from .errors import ERROR_KINDS, PipelineError
from .pipeline import JobResult, JobState


class Job(models.Model):
    class Status(models.TextChoices):
        PENDING = JobState.PENDING.value
        TRANSCODING = JobState.TRANSCODING.value
        DISCOVERING = JobState.DISCOVERING.value
        PUBLISHING = JobState.PUBLISHING.value
        SUCCEEDED = JobState.SUCCEEDED.value
        FAILED = JobState.FAILED.value

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    source_path = models.CharField(max_length=512)    # relative to MEDIA_ROOT
    original_name = models.CharField(max_length=255, blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    master_playlist_url = models.URLField(max_length=1024, blank=True, default="")
    error = models.TextField(blank=True, default="")
    error_kind = models.CharField(max_length=32, blank=True, default="")  # e.g. "EngineError"
    cancel_requested = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Job {self.id} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return JobState(self.status).is_terminal

    def output_dir_rel(self) -> str:
        """Local HLS output, relative to MEDIA_ROOT; owned by this job only."""
        return f"hls/{self.id}"

    def to_response(self) -> tuple[dict, int]:
        """Same body/status contract as JobResult.to_response(), from the stored row."""
        if self.status == self.Status.FAILED:
            cls = ERROR_KINDS.get(self.error_kind, PipelineError)
            return {"error": cls.category}, cls.http_status
        return JobResult(
            job_id=str(self.id),
            state=JobState(self.status),
            master_url=self.master_playlist_url or None,
        ).to_response()
