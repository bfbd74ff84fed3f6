# core/exceptions.py

from typing import Any

from fastapi import HTTPException, status

GENERIC_SECOND_FACTOR_MESSAGE = "Invalid verification code"


class MFAEngineException(Exception):
    def __init__(
        self, message: str, error_code: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(MFAEngineException):
    pass


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message, error_code="INVALID_CREDENTIALS")


class UserNotFoundError(AuthenticationError):
    def __init__(self, message: str = "User not found"):
        super().__init__(message, error_code="USER_NOT_FOUND")


class InvalidTokenError(AuthenticationError):
    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message, error_code="INVALID_TOKEN")


class ServiceDisabledError(MFAEngineException):
    def __init__(
        self, message: str = "Multi-factor authentication is not enabled on this server"
    ):
        super().__init__(message, error_code="SERVICE_DISABLED")


class MethodNotFoundError(MFAEngineException):
    def __init__(self, message: str = "Multi-factor authentication method not found"):
        super().__init__(message, error_code="METHOD_NOT_FOUND")


class AlreadyEnabledError(MFAEngineException):
    def __init__(self, message: str = "Multi-factor authentication method is already enabled"):
        super().__init__(message, error_code="ALREADY_ENABLED")


class InvalidFormatError(MFAEngineException):
    def __init__(self, message: str = "Malformed verification code or response"):
        super().__init__(message, error_code="INVALID_FORMAT")


class InvalidSecondFactorError(AuthenticationError):
    """Wrong code, bad signature or no matching method. Deliberately undifferentiated."""

    def __init__(self, message: str = GENERIC_SECOND_FACTOR_MESSAGE, error_code: str | None = None):
        super().__init__(message, error_code=error_code or "INVALID_SECOND_FACTOR")


class ReplayDetectedError(InvalidSecondFactorError):
    """Passkey sign counter did not increase. Logged distinctly, shown as a generic failure."""

    def __init__(self, message: str = "Passkey sign counter regression"):
        super().__init__(message, error_code="REPLAY_DETECTED")


class PasskeyRejectedError(AuthenticationError):
    def __init__(self, message: str = "Passkey response rejected"):
        super().__init__(message, error_code="PASSKEY_REJECTED")


class ChallengeExpiredError(MFAEngineException):
    def __init__(self, message: str = "Challenge expired or does not match"):
        super().__init__(message, error_code="CHALLENGE_EXPIRED")


class DecryptionFailedError(MFAEngineException):
    def __init__(self, message: str = "Stored secret could not be decrypted"):
        super().__init__(message, error_code="DECRYPTION_FAILED")


class NotifierUnavailableError(MFAEngineException):
    def __init__(self, message: str = "Could not deliver the verification code"):
        super().__init__(message, error_code="NOTIFIER_UNAVAILABLE")


class CredentialConflictError(MFAEngineException):
    def __init__(self, message: str = "This passkey is already registered"):
        super().__init__(message, error_code="CREDENTIAL_CONFLICT")


class ConcurrentUpdateError(MFAEngineException):
    """Lost a compare-and-swap race on the user record. Safe to retry the whole operation."""

    def __init__(self, message: str = "The account was modified concurrently, please retry"):
        super().__init__(message, error_code="CONCURRENT_UPDATE", details={"retryable": True})


# Codes that must look identical to the caller
_SECOND_FACTOR_CODES = {"INVALID_SECOND_FACTOR", "REPLAY_DETECTED", "PASSKEY_REJECTED"}


# HTTP Exception converters
def convert_to_http_exception(exc: MFAEngineException) -> HTTPException:
    status_map = {
        "INVALID_CREDENTIALS": status.HTTP_401_UNAUTHORIZED,
        "USER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
        "INVALID_TOKEN": status.HTTP_401_UNAUTHORIZED,
        "SERVICE_DISABLED": status.HTTP_403_FORBIDDEN,
        "METHOD_NOT_FOUND": status.HTTP_404_NOT_FOUND,
        "ALREADY_ENABLED": status.HTTP_409_CONFLICT,
        "INVALID_FORMAT": status.HTTP_400_BAD_REQUEST,
        "INVALID_SECOND_FACTOR": status.HTTP_401_UNAUTHORIZED,
        "CHALLENGE_EXPIRED": status.HTTP_400_BAD_REQUEST,
        "DECRYPTION_FAILED": status.HTTP_500_INTERNAL_SERVER_ERROR,
        "NOTIFIER_UNAVAILABLE": status.HTTP_502_BAD_GATEWAY,
        "CONCURRENT_UPDATE": status.HTTP_409_CONFLICT,
        "CREDENTIAL_CONFLICT": status.HTTP_409_CONFLICT,
    }

    error_code = exc.error_code or ""
    message = exc.message
    details = exc.details
    if error_code in _SECOND_FACTOR_CODES:
        error_code = "INVALID_SECOND_FACTOR"
        message = GENERIC_SECOND_FACTOR_MESSAGE
        details = {}

    status_code = status_map.get(error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    return HTTPException(
        status_code=status_code,
        detail={"message": message, "error_code": error_code, "details": details},
    )
