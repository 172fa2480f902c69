from typing import Optional


class DocgenError(Exception):
    """Base exception for document generation worker errors."""
    pass


class ConfigurationError(DocgenError):
    pass


class EnvelopeError(DocgenError):
    """The stored request envelope could not be decoded at all."""

    def __init__(self, job_id, reason):
        super().__init__(f"Request envelope for job {job_id} is unparseable: {reason}")


class InvalidRequestError(DocgenError):
    """The envelope decoded but does not describe a valid generation request."""
    pass


class RenderKind:
    TEMPLATE_NOT_FOUND = "template_not_found"
    INVALID_TEMPLATE = "invalid_template"
    INVALID_REQUEST = "invalid_request"
    UNSUPPORTED_FORMAT = "unsupported_format"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class _CollaboratorError(DocgenError):
    def __init__(self, kind: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code


class RenderError(_CollaboratorError):
    pass


class UploadError(_CollaboratorError):
    pass


class JobStoreError(DocgenError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreUnavailableError(JobStoreError):
    pass


class JobNotFoundError(JobStoreError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found", status_code=404)
