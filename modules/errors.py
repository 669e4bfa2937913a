"""
Error taxonomy for the resolution verification pipeline.

Rejections raised before any signal work (validation, authorization,
unknown report, duplicate) map to 4xx responses. Persistence failures are
retryable and map to 5xx. Upstream (oracle / image fetch) failures are
normally recovered as fail-closed fallback signals and only escape when a
caller asks for them explicitly.
"""


class VerificationError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500
    kind = "verification_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(VerificationError):
    """Malformed or missing input (coordinates, image, identity)."""

    status_code = 400
    kind = "validation_error"


class InvalidCoordinate(ValidationError):
    """Latitude/longitude not finite or out of range."""

    kind = "invalid_coordinate"


class AuthorizationError(VerificationError):
    """Unknown or inactive submitter."""

    status_code = 403
    kind = "authorization_error"


class NotFoundError(VerificationError):
    """Unknown report."""

    status_code = 404
    kind = "not_found"


class ConflictError(VerificationError):
    """Duplicate submission or report already closed."""

    status_code = 409
    kind = "conflict"


class UpstreamUnavailable(VerificationError):
    """Oracle or image fetch failure."""

    status_code = 503
    kind = "upstream_unavailable"


class OracleCredentialsError(UpstreamUnavailable):
    """The oracle rejected our credentials (permanent integration problem)."""

    kind = "invalid_credentials"


class OracleQuotaError(UpstreamUnavailable):
    """The oracle quota is exhausted (permanent until reset)."""

    kind = "quota_exceeded"


class PersistenceError(VerificationError):
    """Store write failure. Retryable."""

    status_code = 503
    kind = "persistence_error"


class StorageError(PersistenceError):
    """Object storage upload failure."""

    kind = "storage_error"
