import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Iterable
from urllib.parse import quote, unquote, urlsplit

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .discovery import Artifact
from .errors import PublishError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class S3Config:
    bucket: str
    region: str = "us-east-1"
    endpoint_url: str | None = None      # API endpoint (MinIO etc.); None -> AWS
    public_endpoint: str | None = None   # host clients use for playback; None -> AWS virtual-hosted
    access_key: str | None = None
    secret_key: str | None = None
    key_prefix: str = "videos"
    upload_concurrency: int = 4
    cleanup_on_failure: bool = True
    max_attempts: int = 3
    settle_seconds: float = 5.0          # wait for in-flight PUTs after a failed publish

    @classmethod
    def from_settings(cls) -> "S3Config":
        from django.conf import settings

        return cls(
            bucket=settings.S3_BUCKET,
            region=settings.S3_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
            public_endpoint=settings.S3_PUBLIC_ENDPOINT,
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY,
            key_prefix=settings.S3_KEY_PREFIX.strip("/"),
            upload_concurrency=max(1, settings.S3_UPLOAD_CONCURRENCY),
            cleanup_on_failure=settings.S3_CLEANUP_ON_FAILURE,
            max_attempts=settings.S3_MAX_ATTEMPTS,
            settle_seconds=settings.S3_SETTLE_SECONDS,
        )


def get_s3_client(config: S3Config):
    """
    SDK client for server-side upload/delete. boto3 clients are thread-safe,
    so one client serves the whole upload pool.
    """
    session = boto3.session.Session(
        aws_access_key_id=config.access_key,
        aws_secret_access_key=config.secret_key,
        region_name=config.region,
    )
    addressing = "path" if config.endpoint_url else "auto"
    return session.client(
        "s3",
        endpoint_url=config.endpoint_url,  # e.g. http://127.0.0.1:9000
        config=BotoConfig(
            s3={"addressing_style": addressing},
            signature_version="s3v4",
            retries={"max_attempts": config.max_attempts, "mode": "standard"},
            max_pool_connections=max(10, config.upload_concurrency * 2),
        ),
    )


def object_url(config: S3Config, key: str) -> str:
    """
    Public address of an object. Path-style against S3_PUBLIC_ENDPOINT when one
    is configured (MinIO), otherwise the AWS virtual-hosted form.
    """
    quoted = quote(key, safe="/")
    if config.public_endpoint:
        return f"{config.public_endpoint.rstrip('/')}/{config.bucket}/{quoted}"
    return f"https://{config.bucket}.s3.{config.region}.amazonaws.com/{quoted}"


def key_from_url(config: S3Config, url: str) -> str:
    """Inverse of object_url(); raises ValueError for URLs outside the bucket."""
    expected = object_url(config, "")
    if not url.startswith(expected):
        raise ValueError(f"{url} is not an object URL for bucket {config.bucket}")
    return unquote(urlsplit(url).path[len(urlsplit(expected).path):])


@dataclass
class UploadOutcome:
    key: str
    location: str | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.location is not None


@dataclass
class PublishResult:
    master_url: str | None
    outcomes: list[UploadOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.master_url is not None and all(o.ok for o in self.outcomes)


class _Skipped(Exception):
    """Upload not attempted because another upload in the batch already failed."""


class Publisher:
    """
    Uploads one job's artifacts under <prefix>/<job_id>/ with bounded parallelism.
    All-or-nothing: any failed upload fails the whole publish.
    """

    def __init__(self, config: S3Config, client=None):
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client(self.config)
        return self._client

    def key_for(self, job_id: str, relative_path: str) -> str:
        return f"{self.config.key_prefix}/{job_id}/{relative_path}"

    def master_url(self, job_id: str, master_playlist: str = "master.m3u8") -> str:
        return object_url(self.config, self.key_for(job_id, master_playlist))

    def upload_file(self, local_path: Path, key: str, content_type: str) -> str:
        """Upload a single file with its Content-Type and return its address."""
        self.client.upload_file(
            str(local_path), self.config.bucket, key, ExtraArgs={"ContentType": content_type}
        )
        logger.debug("Uploaded s3://%s/%s (%s)", self.config.bucket, key, content_type)
        return object_url(self.config, key)

    def publish(
        self,
        job_id: str,
        artifacts: Iterable[Artifact],
        master_playlist: str = "master.m3u8",
        timeout: float | None = None,
    ) -> PublishResult:
        """
        Raises PublishError on the first failed upload, or
        concurrent.futures.TimeoutError if the batch outlives `timeout`.
        Uploads still running `settle_seconds` after that are abandoned and
        their objects deleted once they land.
        """
        artifacts = list(artifacts)
        keys = [self.key_for(job_id, a.relative_path) for a in artifacts]
        if len(set(keys)) != len(keys):
            dup = next(k for k in keys if keys.count(k) > 1)
            raise PublishError(dup, "duplicate object key in artifact set")

        abort = threading.Event()

        def _upload(artifact: Artifact, key: str) -> str:
            if abort.is_set():
                raise _Skipped(key)
            try:
                return self.upload_file(artifact.local_path, key, artifact.content_type)
            except BaseException:
                # Set before the future resolves so queued workers see it
                abort.set()
                raise

        pool = ThreadPoolExecutor(
            max_workers=self.config.upload_concurrency, thread_name_prefix=f"s3-{job_id}"
        )
        timed_out = False
        try:
            futures = [pool.submit(_upload, a, k) for a, k in zip(artifacts, keys)]
            _, pending = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)
            timed_out = bool(pending) and not any(
                f.done() and not f.cancelled() and f.exception() for f in futures
            )
            if pending:
                abort.set()
                pool.shutdown(wait=False, cancel_futures=True)
                # A PUT cannot be interrupted; in-flight uploads get a bounded window
                wait(futures, timeout=self.config.settle_seconds)
        finally:
            pool.shutdown(wait=False)

        outcomes = []
        first_error = None
        late = []
        for f, key in zip(futures, keys):
            if f.cancelled():
                outcomes.append(UploadOutcome(key, error=_Skipped(key)))
                continue
            if not f.done():
                outcomes.append(UploadOutcome(key, error=FuturesTimeoutError(key)))
                late.append((f, key))
                continue
            exc = f.exception()
            if exc is None:
                outcomes.append(UploadOutcome(key, location=f.result()))
                continue
            outcomes.append(UploadOutcome(key, error=exc))
            if first_error is None and not isinstance(exc, _Skipped):
                first_error = PublishError(key, exc)

        if first_error is None and not timed_out and not late:
            url = self.master_url(job_id, master_playlist)
            logger.info("Published %d objects for job %s", len(outcomes), job_id)
            return PublishResult(master_url=url, outcomes=outcomes)

        self._compensate(job_id, [o.key for o in outcomes if o.ok])
        for f, key in late:
            logger.warning("Upload of %s still running after job %s was abandoned", key, job_id)
            f.add_done_callback(partial(self._discard_late_upload, job_id, key))
        if first_error is None:
            raise FuturesTimeoutError(f"publish of job {job_id} exceeded {timeout}s")
        first_error.result = PublishResult(master_url=None, outcomes=outcomes)
        raise first_error

    def _discard_late_upload(self, job_id: str, key: str, future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        self._compensate(job_id, [key])

    def _compensate(self, job_id: str, stored_keys: list[str]) -> None:
        """Delete what a failed publish already stored, so no half-published job remains."""
        if not stored_keys:
            return
        if not self.config.cleanup_on_failure:
            logger.warning("Leaving %d orphaned objects for failed job %s", len(stored_keys), job_id)
            return

        for start in range(0, len(stored_keys), 1000):  # DeleteObjects limit
            batch = stored_keys[start:start + 1000]
            try:
                resp = self.client.delete_objects(
                    Bucket=self.config.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError):
                logger.exception("Cleanup of job %s failed; orphaned keys: %s", job_id, batch)
                continue
            errors = resp.get("Errors") or []
            if errors:
                logger.error(
                    "Cleanup of job %s left orphaned keys: %s",
                    job_id, [e.get("Key") for e in errors],
                )
        logger.info("Removed %d partial uploads for failed job %s", len(stored_keys), job_id)
