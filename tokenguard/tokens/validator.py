from collections.abc import Iterable
from typing import Any

from tokenguard.core.errors.exceptions import ClaimValidationError, TokenException
from tokenguard.tokens.claims import ClaimsManager
from tokenguard.tokens.decoder import JwtDecoder
from tokenguard.tokens.keys import SigningKey

TOKEN_TYPES = (
    "auth",
    "api",
    "refresh",
    "session",
    "password_reset",
    "email_verification",
)


def _require_list(claims: ClaimsManager, name: str, code: str) -> set[str]:
    held = claims.get_claim(name, [])
    if not isinstance(held, list):
        raise ClaimValidationError(
            f"Claim '{name}' must be a list", code=code + "_FORMAT"
        )
    return {str(item) for item in held}


class TokenValidator:
    """
    Kind-specific validation on top of ``JwtDecoder``.

    Every ``validate_*`` method verifies the token against ``keys`` and returns
    its claims, or raises a ``TokenException`` subclass.
    """

    def __init__(self, decoder: JwtDecoder) -> None:
        self.decoder = decoder

    def validate(self, token: str, keys: Iterable[SigningKey]) -> ClaimsManager:
        return self.decoder.decode(token, keys)

    def is_valid(self, token: str, keys: Iterable[SigningKey]) -> bool:
        try:
            self.validate(token, keys)
        except TokenException:
            return False
        return True

    def extract_claims(self, token: str) -> dict[str, Any]:
        """Claims of a token without any verification."""
        return self.decoder.decode_without_verification(token).payload

    # ----- Checks ----- #
    @staticmethod
    def validate_token_type(claims: ClaimsManager, expected: str) -> None:
        actual = claims.get_claim("type")
        if actual != expected:
            raise ClaimValidationError(
                f"Invalid token type: expected {expected}, got {actual}",
                additional_info={"expected": expected, "actual": actual},
                code="JWT_INVALID_TOKEN_TYPE",
            )

    @staticmethod
    def validate_user(claims: ClaimsManager, expected_user_id: Any) -> None:
        """Accept a match on either the ``user_id`` claim or ``sub``."""
        if expected_user_id is None:
            return
        expected = str(expected_user_id)
        candidates = (claims.get_claim("user_id"), claims.get_subject())
        if not any(v is not None and str(v) == expected for v in candidates):
            raise ClaimValidationError(
                "Token does not belong to the expected user",
                code="JWT_INVALID_USER_ID",
            )

    @staticmethod
    def validate_scopes(claims: ClaimsManager, required: Iterable[str]) -> None:
        missing = set(required) - _require_list(claims, "scopes", "JWT_INVALID_SCOPES")
        if missing:
            raise ClaimValidationError(
                f"Insufficient scopes, missing: {', '.join(sorted(missing))}",
                additional_info={"missing": sorted(missing)},
                code="JWT_INSUFFICIENT_SCOPES",
            )

    @staticmethod
    def validate_roles(claims: ClaimsManager, required: Iterable[str]) -> None:
        missing = set(required) - _require_list(claims, "roles", "JWT_INVALID_ROLES")
        if missing:
            raise ClaimValidationError(
                f"Insufficient roles, missing: {', '.join(sorted(missing))}",
                additional_info={"missing": sorted(missing)},
                code="JWT_INSUFFICIENT_ROLES",
            )

    @staticmethod
    def validate_permissions(claims: ClaimsManager, required: Iterable[str]) -> None:
        missing = set(required) - _require_list(
            claims, "permissions", "JWT_INVALID_PERMISSIONS"
        )
        if missing:
            raise ClaimValidationError(
                f"Insufficient permissions, missing: {', '.join(sorted(missing))}",
                additional_info={"missing": sorted(missing)},
                code="JWT_INSUFFICIENT_PERMISSIONS",
            )

    @staticmethod
    def _validate_email(claims: ClaimsManager, expected_email: str | None) -> None:
        email = claims.get_claim("email")
        if not isinstance(email, str) or not email:
            raise ClaimValidationError(
                "Token is missing the email claim", code="JWT_INVALID_EMAIL"
            )
        if expected_email is not None and email.lower() != expected_email.lower():
            raise ClaimValidationError(
                "Token email does not match", code="JWT_INVALID_EMAIL"
            )

    # ----- Token kinds ----- #
    def validate_auth_token(
        self,
        token: str,
        keys: Iterable[SigningKey],
        expected_user_id: Any = None,
        *,
        required_roles: Iterable[str] | None = None,
        required_permissions: Iterable[str] | None = None,
    ) -> ClaimsManager:
        claims = self.validate(token, keys)
        self.validate_token_type(claims, "auth")
        self.validate_user(claims, expected_user_id)
        if required_roles:
            self.validate_roles(claims, required_roles)
        if required_permissions:
            self.validate_permissions(claims, required_permissions)
        return claims

    def validate_api_token(
        self,
        token: str,
        keys: Iterable[SigningKey],
        required_scopes: Iterable[str] | None = None,
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        claims = self.validate(token, keys)
        self.validate_token_type(claims, "api")
        self.validate_user(claims, expected_user_id)
        if required_scopes:
            self.validate_scopes(claims, required_scopes)
        return claims

    def validate_refresh_token(
        self,
        token: str,
        keys: Iterable[SigningKey],
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        claims = self.validate(token, keys)
        self.validate_token_type(claims, "refresh")
        self.validate_user(claims, expected_user_id)
        if not claims.get_jwt_id():
            raise ClaimValidationError(
                "Refresh token is missing its token id", code="JWT_MISSING_JTI"
            )
        return claims

    def validate_session_token(
        self,
        token: str,
        keys: Iterable[SigningKey],
        expected_session_id: str | None = None,
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        claims = self.validate(token, keys)
        self.validate_token_type(claims, "session")
        self.validate_user(claims, expected_user_id)
        session_id = claims.get_claim("session_id")
        if not session_id or (
            expected_session_id is not None and session_id != expected_session_id
        ):
            raise ClaimValidationError(
                "Invalid session id", code="JWT_INVALID_SESSION_ID"
            )
        return claims

    def validate_password_reset_token(
        self,
        token: str,
        keys: Iterable[SigningKey],
        expected_email: str | None = None,
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        claims = self.validate(token, keys)
        self.validate_token_type(claims, "password_reset")
        self.validate_user(claims, expected_user_id)
        self._validate_email(claims, expected_email)
        return claims

    def validate_email_verification_token(
        self,
        token: str,
        keys: Iterable[SigningKey],
        expected_email: str | None = None,
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        claims = self.validate(token, keys)
        self.validate_token_type(claims, "email_verification")
        self.validate_user(claims, expected_user_id)
        self._validate_email(claims, expected_email)
        return claims
