"""Application-level exception types.

Convention:
- ``FileShareError`` subclasses carry a ``kind`` and an HTTP ``status_code``.
  Their message is safe to forward to clients; the global handler in
  ``backend/main.py`` returns ``{"detail": message, "kind": kind}``.
- ``InternalServerError`` is for errors whose details must never reach clients.
  The global handler logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client.
- ``ValidationFailure`` is also a ``ValueError`` so business-rule validation
  helpers can be used outside the HTTP layer without importing this module.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class FileShareError(Exception):
    """Base class for errors reported to clients with a kind and a message."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailure(FileShareError, ValueError):
    """Disallowed file type, size or malformed upload parameters."""

    kind = "validation_failure"
    status_code = 422

    def __init__(self, message: str, *, status_code: int = 422) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFound(FileShareError):
    """Unknown file, missing blob or unknown device reference."""

    kind = "not_found"
    status_code = 404


class IncompleteUpload(FileShareError):
    """Merge requested before all declared chunks were received."""

    kind = "incomplete_upload"
    status_code = 409

    def __init__(self, message: str, missing: list[int]) -> None:
        super().__init__(message)
        self.missing = missing


class StorageFailure(FileShareError):
    """Backing store I/O error."""

    kind = "storage_failure"
    status_code = 500


class Unauthorized(FileShareError):
    """Wrong or missing password on a protected file."""

    kind = "unauthorized"
    status_code = 401


class ServiceUnavailable(FileShareError):
    """Metadata store unreachable; clients may retry."""

    kind = "service_unavailable"
    status_code = 503
