"""Error types shared by the token refresher, provider client and orchestrator."""

from typing import Optional

__all__ = [
    "TimeDoctorError",
    "AuthError",
    "NotConnectedError",
    "RefreshError",
    "TransientProviderError",
    "PermanentProviderError",
    "ValidationError",
    "PersistenceError",
]


class TimeDoctorError(Exception):
    """Base error for the TimeDoctor integration."""

    pass


class AuthError(TimeDoctorError):
    """Credential invalid or expired; only a refresh can recover."""

    pass


class NotConnectedError(AuthError):
    """No credential stored for the provider connection."""

    def __init__(self, message: str = "Time Doctor is not connected"):
        super().__init__(message)


class RefreshError(TimeDoctorError):
    """Token refresh failed."""

    def __init__(
        self,
        message: str,
        exhausted: bool = False,
        attempts: int = 0,
        last_error: Optional[Exception] = None,
    ):
        self.exhausted = exhausted
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class TransientProviderError(TimeDoctorError):
    """Network failure, timeout, 5xx or rate limit."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class PermanentProviderError(TimeDoctorError):
    """4xx response other than an authentication failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ValidationError(TimeDoctorError):
    """Request rejected locally before any network call."""

    pass


class PersistenceError(TimeDoctorError):
    """Local upsert failed."""

    pass
