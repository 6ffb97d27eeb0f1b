"""Error taxonomy shared by the HTTP layer and the event stream.

Every error carries a stable ``code`` and a ``retryable`` flag so that a
client receiving an ``error`` event can decide whether to resubmit.
"""

from fastapi import status


class StudyGenError(Exception):
    """Base class for all service errors."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class InputValidationError(StudyGenError):
    code = "VALIDATION"
    status_code = status.HTTP_400_BAD_REQUEST


class SecurityViolationError(StudyGenError):
    code = "SECURITY_VIOLATION"
    status_code = status.HTTP_400_BAD_REQUEST


class BillingInsufficientError(StudyGenError):
    """Caller lacks tokens. Retrying only helps after a top-up."""

    code = "BILLING_INSUFFICIENT"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, message: str, *, required: int = 0, available: int = 0):
        super().__init__(message)
        self.required = required
        self.available = available


class NotFoundError(StudyGenError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class StorageError(StudyGenError):
    code = "STORAGE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = True


class GenerationError(StudyGenError):
    code = "GENERATION_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = True


class ContentFilterError(GenerationError):
    """Provider refused the request under its safety filter."""

    code = "CONTENT_FILTER"


class GenerationTimeoutError(StudyGenError):
    code = "TIMEOUT"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    retryable = True
