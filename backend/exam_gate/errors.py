"""
Domain error taxonomy.

Services raise ServiceError with a stable machine-readable code and the HTTP
status the API should answer with. Callers branch on the code:
validation and state errors are recovered by the client (re-prompt, switch
to resume, accept the terminal state); infrastructure failures never reach
the candidate as anything but INTERNAL_ERROR.
"""


class ServiceError(Exception):
    """Base class for every error a candidate or admin caller can branch on."""

    code = "SERVICE_ERROR"
    status_code = 400

    def __init__(self, code: str = None, status_code: int = None,
                 message: str = None, details: dict = None):
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.message = message or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class ValidationFailed(ServiceError):
    code = "INVALID_INPUT"
    status_code = 400


class NotFound(ServiceError):
    status_code = 404


class StateConflict(ServiceError):
    status_code = 409


class InvalidPin(ServiceError):
    code = "INVALID_PIN"
    status_code = 401


class RateLimited(ServiceError):
    code = "RATE_LIMITED"
    status_code = 429


class CapacityExceeded(ServiceError):
    code = "USAGE_LIMIT_EXCEEDED"
    status_code = 429


class AttemptNotEditable(ServiceError):
    code = "ATTEMPT_NOT_EDITABLE"
    status_code = 400


class SubmitInProgress(StateConflict):
    code = "SUBMIT_IN_PROGRESS"
