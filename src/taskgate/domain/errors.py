from __future__ import annotations


class LifecycleError(Exception):
    """Recoverable engine failure reported to the caller as a structured response."""

    code = 'lifecycle_error'

    def __init__(self, message: str, *, field: str | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field
        if code:
            self.code = code


class InvalidTransition(LifecycleError):
    code = 'invalid_transition'


class Forbidden(LifecycleError):
    code = 'forbidden'


class StaleState(LifecycleError):
    code = 'stale_state'

    def __init__(self, message: str, *, expected: str | None = None, actual: str | None = None):
        super().__init__(message, field='expected_state')
        self.expected = expected
        self.actual = actual


class NotFound(LifecycleError):
    code = 'not_found'


class ValidationError(LifecycleError, ValueError):
    code = 'validation_error'
