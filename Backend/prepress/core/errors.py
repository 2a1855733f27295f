"""
errors.py
~~~~~~~~~
Exception hierarchy for the preflight service.

Tool failures never reach this hierarchy: every call site converts them to
issues. These exceptions mark the conditions that must fail a job or reject
a request.
"""


class PrepressError(Exception):
    """Base class. `code` is persisted in the job's error column."""
    code = "PROCESSING_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InputMissingError(PrepressError):
    code = "INPUT_MISSING"


class OutputMissingError(PrepressError):
    """A stored artifact the job manifest lists is gone."""
    code = "OUTPUT_MISSING"


class UploadTooLargeError(PrepressError):
    code = "FILE_TOO_LARGE"


class EmptyUploadError(PrepressError):
    code = "EMPTY_FILE"


class FindingsLockedError(PrepressError):
    """Raised when writing a finding or fix log for a finalized job."""
    code = "JOB_FINALIZED"
