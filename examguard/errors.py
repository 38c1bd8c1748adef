"""
Proctoring error taxonomy.

Invariant errors are raised synchronously and leave state untouched.
Retryable errors carry ``retryable = True`` so callers can offer a retry.
"""
from typing import Optional


class ExamGuardError(Exception):
    retryable = False

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.cause = cause


class StartRejected(ExamGuardError):
    """A mandatory start precondition failed; the session stays not started."""


class UploadFailed(ExamGuardError):
    retryable = True


class SubmissionFailed(ExamGuardError):
    retryable = True


class CollaboratorError(ExamGuardError):
    """Transport or protocol failure talking to the exam server."""


class PipelineLocked(ExamGuardError):
    pass


class ArtifactRequired(ExamGuardError):
    pass


class EmptyArtifact(ExamGuardError):
    pass


class UnsupportedPageType(ExamGuardError):
    pass


class PageNotFound(ExamGuardError):
    pass


class InvalidTransition(ExamGuardError):
    pass


class LocalCaptureDisabled(ExamGuardError):
    pass


class HandoffActive(ExamGuardError):
    pass


class CaptureFailed(ExamGuardError):
    retryable = True
