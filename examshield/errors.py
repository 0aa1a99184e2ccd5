"""
Error taxonomy for exam sessions.

Every failure the session core reports is an ExamError subclass so callers can
tell domain rejections apart from transient persistence problems.
"""


class ExamError(Exception):
    """Base class for all exam session errors."""
    retryable = False


class ExamNotFound(ExamError):
    """No exam matches the given id or exam code."""


class AttemptsExhausted(ExamError):
    """The candidate already used every allowed attempt."""


class ExamNotLive(ExamError):
    """The exam window has not opened yet."""


class ExamExpired(ExamError):
    """The exam window has already closed."""


class SubmissionNotFound(ExamError):
    """No attempt record exists to attach data to."""


class PersistenceFailure(ExamError):
    """A record store call failed or timed out. Safe to retry."""
    retryable = True


class AlreadyFinalized(ExamError):
    """The session (or phase) was already finalized by another call."""


class SessionStateError(ExamError):
    """The operation is not valid in the current session phase."""
