"""Error taxonomy shared by the service layer and the HTTP surface.

Each error carries the HTTP status it maps to and a stable ``code`` string so
clients can branch on something other than the message text.
"""

from __future__ import annotations


class ServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"


class InvalidScore(ValidationError):
    code = "invalid_score"


class AuthError(ServiceError):
    status_code = 401
    code = "auth_error"


class ForbiddenError(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"


class AlreadySubmitted(ConflictError):
    code = "already_submitted"

    def __init__(self, message: str = "Submission is already submitted") -> None:
        super().__init__(message)


class TestcaseLocked(ConflictError):
    __test__ = False
    code = "testcase_locked"


class UpstreamError(ServiceError):
    status_code = 502
    code = "upstream_error"


class InternalError(ServiceError):
    status_code = 500
    code = "internal_error"


class TooManyRequests(ServiceError):
    status_code = 429
    code = "rate_limited"
