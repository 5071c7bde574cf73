from typing import Any


class CoreException(Exception):
    default_code: str = "CORE_ERROR"

    def __init__(
        self,
        message: str | None = None,
        additional_info: dict[str, Any] | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.additional_info = additional_info
        self.code = code or self.default_code


class InfrastructureException(CoreException):
    default_code = "INFRASTRUCTURE_ERROR"


class UnauthorizedException(CoreException):
    default_code = "UNAUTHORIZED"


class AccessForbiddenException(CoreException):
    default_code = "FORBIDDEN"


class ConfigurationError(CoreException):
    default_code = "JWT_CONFIGURATION_ERROR"


# ----- Token errors ----- #
class TokenException(UnauthorizedException):
    default_code = "JWT_ERROR"


class MalformedTokenError(TokenException):
    default_code = "JWT_MALFORMED_TOKEN"


class SignatureError(TokenException):
    default_code = "JWT_SIGNATURE_INVALID"


class ExpiredTokenError(TokenException):
    default_code = "JWT_TOKEN_EXPIRED"


class NotYetValidError(TokenException):
    default_code = "JWT_TOKEN_NOT_YET_VALID"


class ClaimValidationError(TokenException):
    default_code = "JWT_INVALID_CLAIM"


class ReplayError(TokenException):
    default_code = "JWT_REPLAY_DETECTED"


# ----- Key errors ----- #
class SigningKeyError(CoreException):
    default_code = "JWT_KEY_ERROR"


class KeyGenerationError(SigningKeyError):
    default_code = "JWT_KEY_GENERATION_FAILED"


class CacheUnavailableError(InfrastructureException):
    default_code = "CACHE_UNAVAILABLE"


class BlockedError(AccessForbiddenException):
    default_code = "SECURITY_BLOCKED"
