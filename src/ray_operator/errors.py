"""Error taxonomy shared by the reconcilers and the API gateway."""


class OperatorError(Exception):
    """Base error. ``reason`` is the machine-readable condition reason."""

    reason = "InternalError"

    def __init__(self, message, reason=None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class ConfigurationError(OperatorError):
    """Invalid spec or unknown policy. Not retried until the input changes."""

    reason = "InvalidSpec"


class TransientError(OperatorError):
    """API timeouts, throttling, server errors. Retried with backoff."""

    reason = "TransientError"


class ConflictError(TransientError):
    """Optimistic-concurrency version conflict."""

    reason = "Conflict"


class AlreadyExistsError(ConflictError):
    reason = "AlreadyExists"


class NotFoundError(OperatorError):
    reason = "NotFound"


class ConvergenceError(OperatorError):
    """Retry budget exhausted. Needs a spec change or manual intervention."""

    reason = "ConvergenceFailed"
