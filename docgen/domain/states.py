from enum import StrEnum


class JobStatus(StrEnum):
    QUEUED = "QUEUED"          # Waiting to be claimed (possibly in back-off)
    PROCESSING = "PROCESSING"  # Claimed by a poller, lease held
    SUCCEEDED = "SUCCEEDED"    # Artifact uploaded, outputFileId set
    FAILED = "FAILED"          # Terminal failure, error set


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})


class OutputFormat(StrEnum):
    PDF = "PDF"
    DOCX = "DOCX"


class ErrorKind(StrEnum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    FATAL = "fatal"


class JobOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRIED = "retried"
    SKIPPED = "skipped"      # Another worker owns or finished the job
    ABANDONED = "abandoned"  # Outcome could not be written; lease will lapse
