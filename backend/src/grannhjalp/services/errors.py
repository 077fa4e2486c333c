"""Service-layer error taxonomy.

Routes translate these into HTTP responses via ``status_code``. Only
``UpstreamError`` is worth retrying. ``UpstreamTimeout`` means the outcome is
unknown, and only a retry with the same idempotency key is safe.
"""


class ServiceError(Exception):
    """Base class for errors surfaced to the caller as a terminal result."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(ServiceError):
    """A referenced entity does not exist."""

    status_code = 404


class Forbidden(ServiceError):
    """The caller lacks the required relationship to the entity."""

    status_code = 403


class Conflict(ServiceError):
    """A state precondition does not hold (duplicate offer, re-paying, ...)."""

    status_code = 409


class Invalid(ServiceError):
    """Malformed input, including incomplete webhook metadata."""

    status_code = 422


class UpstreamError(ServiceError):
    """The payment processor failed or timed out. Local state is unchanged."""

    status_code = 502


class UpstreamTimeout(UpstreamError):
    """The payment processor did not give a definite answer.

    The request may or may not have taken effect, so a retry must reuse the
    same idempotency key.
    """
