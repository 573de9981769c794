"""Typed domain errors raised by the quiz services.

The HTTP layer maps each class to a status code; nothing here is fatal
to the process and nothing is retried internally.
"""


class QuizError(Exception):
    """Base class for all domain errors."""
    status_code = 400


class NotFoundError(QuizError):
    """An id reference (user, quiz, question, option, attempt) did not resolve."""
    status_code = 404


class ValidationError(QuizError):
    """Malformed question/option set or bad field values."""
    status_code = 422


class ForbiddenError(QuizError):
    """Non-owner access or a non-admin attempting an admin action."""
    status_code = 403


class AlreadyCompletedError(QuizError):
    """The quiz was already taken, or the attempt is already completed."""
    status_code = 409
