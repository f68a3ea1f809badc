from typing import Any, Dict, Optional


class TakeawayError(Exception):
    """Base class for errors that map onto a JSON error response."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(TakeawayError):
    status_code = 400
    code = "validation_error"


class InvalidRangeError(ValidationError):
    """Raised when an event update would leave startDate >= endDate."""

    code = "invalid_range"


class FileTooLargeError(ValidationError):
    code = "file_too_large"


class UnsupportedTypeError(ValidationError):
    code = "unsupported_type"


class AuthError(TakeawayError):
    status_code = 401
    code = "unauthenticated"


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("Invalid username or password")


class InvalidTokenError(AuthError):
    status_code = 403
    code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


class InvalidLinkError(AuthError):
    status_code = 403
    code = "invalid_link"

    def __init__(self, message: str = "Invalid or expired shareable link") -> None:
        super().__init__(message)


class AccessDeniedError(TakeawayError):
    """Event window denial. Carries the status and boundaries for the client."""

    status_code = 403
    code = "event_unavailable"

    def __init__(
        self,
        message: str,
        *,
        event_status: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.event_status = event_status
        self.start_date = start_date
        self.end_date = end_date

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["eventStatus"] = self.event_status
        payload["startDate"] = self.start_date
        payload["endDate"] = self.end_date
        return payload


class NotFoundError(TakeawayError):
    status_code = 404
    code = "not_found"


class RangeNotSatisfiableError(TakeawayError):
    status_code = 416
    code = "range_not_satisfiable"

    def __init__(self, size: int, message: str = "Range not satisfiable") -> None:
        super().__init__(message)
        self.size = size


class InternalError(TakeawayError):
    status_code = 500
    code = "internal_error"
