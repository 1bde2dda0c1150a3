# incident_capture/errors.py


class IncidentCaptureError(Exception):
    error_code = "internal_error"

    def __init__(self, message: str = "", *, correlation_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id


class AuthError(IncidentCaptureError):
    error_code = "auth_denied"


class NotFoundError(IncidentCaptureError):
    error_code = "not_found"


class ValidationError(IncidentCaptureError):
    error_code = "validation_error"


class AnswerValidationError(ValidationError):
    error_code = "answer_validation_error"


class WorkflowClosedError(IncidentCaptureError):
    """
    Mutation attempted after the incident capture was finalized.
    Kept apart from ValidationError so the caller can explain why.
    """
    error_code = "workflow_closed"


class ParseError(IncidentCaptureError):
    error_code = "parse_error"


class RetryExhaustedError(IncidentCaptureError):
    error_code = "retry_exhausted"

    def __init__(self, label: str, attempts: int, last_error: BaseException | None):
        super().__init__(f"{label}: all {attempts} attempts failed: {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


# Errors the caller can act on; retrying them changes nothing.
TERMINAL_ERRORS = (AuthError, NotFoundError, ValidationError, WorkflowClosedError)
