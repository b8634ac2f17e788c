class PipelineError(Exception):
    """Base class for failures surfaced to the caller of a conversion request."""

    code = "pipeline_error"
    status_code = 500
    default_stage: str | None = None

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage

    def to_detail(self) -> dict[str, object]:
        return {"code": self.code, "message": self.message, "stage": self.stage}


class RequestMalformed(PipelineError):
    code = "request_malformed"
    status_code = 400


class JobBusy(PipelineError):
    code = "busy"
    status_code = 409


class FetchFailed(PipelineError):
    code = "fetch_failed"
    default_stage = "downloading"


class PersistFailed(PipelineError):
    code = "persist_failed"
    default_stage = "downloading"


class ConversionFailed(PipelineError):
    code = "conversion_failed"
    default_stage = "converting"

    def __init__(self, message: str, output: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.output = output
        self.returncode = returncode


class ReadBackFailed(PipelineError):
    code = "read_back_failed"
    default_stage = "uploading"


class UploadFailed(PipelineError):
    code = "upload_failed"
    default_stage = "uploading"


class StageTimeout(PipelineError):
    code = "stage_timeout"
    status_code = 504


class JobCancelled(PipelineError):
    code = "cancelled"
    status_code = 409


class CleanupFailed(PipelineError):
    # Never raised to the caller; recorded on the result and logged.
    code = "cleanup_failed"
    default_stage = "cleaning"
