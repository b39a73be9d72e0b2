"""Error taxonomy shared by services and routers.

Services raise these; the app factory maps them onto HTTP responses so
routers stay free of status-code bookkeeping.
"""


class BilloError(Exception):
    status_code = 500

    def __init__(self, message: str, field: str | None = None, details: list | None = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or []

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        if self.field:
            body["field"] = self.field
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BilloError):
    """Malformed input: bad amounts, missing required fields, unknown currency."""
    status_code = 400


class AccessDeniedError(BilloError):
    status_code = 403


class NotFoundError(BilloError):
    status_code = 404


class StateConflictError(BilloError):
    """The target is not in the state the caller expected; refresh and retry."""
    status_code = 409


class IdentityError(BilloError):
    """Identity provider rejected or could not verify the caller."""
    status_code = 401


class CounterStoreUnavailable(BilloError):
    """The usage counter store could not be reached. Never surfaced over HTTP."""
    status_code = 503
