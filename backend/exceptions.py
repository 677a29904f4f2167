# exceptions.py - Business errors raised by the service layer
# main.py turns every StackFlowError into a JSON response carrying
# its status_code and detail.


class StackFlowError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(StackFlowError):
    """Malformed or missing input."""
    status_code = 400


class AuthenticationFailed(StackFlowError):
    status_code = 401


class Forbidden(StackFlowError):
    """The actor's role does not allow the action."""
    status_code = 403


class NotFound(StackFlowError):
    status_code = 404


class Conflict(StackFlowError):
    """Duplicate values, stale versions, or state that forbids the action."""
    status_code = 409


class TooManyAttempts(StackFlowError):
    status_code = 429
