"""
Failure taxonomy for the transcode-and-publish pipeline.

Each component raises its own subclass; the orchestrator is the only place
that turns them into a caller-visible response.
"""


class PipelineError(Exception):
    kind = "PipelineError"
    category = "Processing failed"
    http_status = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.category)
        self.detail = detail or self.category


class InputError(PipelineError):
    """Missing, unreadable or empty source file."""
    kind = "InputError"
    category = "Invalid input"
    http_status = 400


class EngineError(PipelineError):
    """The codec engine failed; `detail` holds its diagnostic output."""
    kind = "EngineError"
    category = "Conversion failed"
    http_status = 500

    def __init__(self, detail: str = "", returncode: int | None = None):
        super().__init__(detail)
        self.returncode = returncode


class DiscoveryError(PipelineError):
    # Reported like an engine failure: the engine "succeeded" with no output.
    kind = "DiscoveryError"
    category = "Conversion failed"
    http_status = 500


class PublishError(PipelineError):
    kind = "PublishError"
    result = None  # PublishResult with per-object outcomes, when known
    category = "Upload failed"
    http_status = 502

    def __init__(self, key: str, cause: BaseException | str):
        super().__init__(f"upload of {key} failed: {cause}")
        self.key = key
        self.cause = cause


class JobTimeoutError(PipelineError):
    kind = "JobTimeoutError"
    category = "Processing timed out"
    http_status = 504


class JobCancelledError(PipelineError):
    kind = "JobCancelledError"
    category = "Processing cancelled"
    http_status = 409


ERROR_KINDS = {
    cls.kind: cls
    for cls in (InputError, EngineError, DiscoveryError, PublishError, JobTimeoutError, JobCancelledError)
}
