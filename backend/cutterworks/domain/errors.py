from typing import Any, Dict, Optional


class OrderError(Exception):
    """Base class for every rejected order operation.

    `kind` is the stable machine-readable name surfaced to clients and
    `status_code` the HTTP status the API layer answers with. `details`
    carries extra fields a client needs to render a precise message.
    """

    kind = "order_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.message, **self.details}


class Unauthorized(OrderError):
    kind = "unauthorized"
    status_code = 403


class ForbiddenTransition(OrderError):
    kind = "forbidden_transition"
    status_code = 409


class ValidationFailed(OrderError):
    kind = "validation"
    status_code = 422


class PreconditionFailed(OrderError):
    kind = "precondition_failed"
    status_code = 412


class Locked(PreconditionFailed):
    kind = "locked"
    status_code = 423


class NotFound(OrderError):
    kind = "not_found"
    status_code = 404


class Conflict(OrderError):
    kind = "conflict"
    status_code = 409
