from collections.abc import Iterable, Mapping
from typing import Any

from loggers import get_logger
from tokenguard.core.errors.exceptions import ClaimValidationError
from tokenguard.tokens.blacklist import TokenBlacklist
from tokenguard.tokens.claims import ClaimsManager
from tokenguard.tokens.generator import TokenGenerator
from tokenguard.tokens.keys import KeyProvider
from tokenguard.tokens.validator import TokenValidator

logger = get_logger(__name__)


class TokenService:
    """
    Async entry point for boundary layers.

    Resolves signing and verification keys from ``key_provider`` on every
    call, so key rotation is picked up without restarting. When a blacklist is
    given every verified token is checked against it.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        generator: TokenGenerator,
        validator: TokenValidator,
        *,
        blacklist: TokenBlacklist | None = None,
    ) -> None:
        self.key_provider = key_provider
        self.generator = generator
        self.validator = validator
        self.blacklist = blacklist

    # ----- Issuance ----- #
    async def generate_auth_token(
        self,
        user_id: Any,
        claims: Mapping[str, Any] | None = None,
        *,
        permissions: Iterable[str] | None = None,
        roles: Iterable[str] | None = None,
        ttl: int | None = None,
    ) -> str:
        key = await self.key_provider.get_current_key()
        return self.generator.generate_auth_token(
            user_id, claims, key=key, permissions=permissions, roles=roles, ttl=ttl
        )

    async def generate_api_token(
        self,
        user_id: Any,
        scopes: Iterable[str] = (),
        client_id: str | None = None,
        ttl: int | None = None,
    ) -> str:
        key = await self.key_provider.get_current_key()
        return self.generator.generate_api_token(
            user_id, key=key, scopes=scopes, client_id=client_id, ttl=ttl
        )

    async def generate_session_token(self, user_id: Any, session_id: str) -> str:
        key = await self.key_provider.get_current_key()
        return self.generator.generate_session_token(user_id, session_id, key=key)

    async def generate_password_reset_token(self, user_id: Any, email: str) -> str:
        key = await self.key_provider.get_current_key()
        return self.generator.generate_password_reset_token(user_id, email, key=key)

    async def generate_email_verification_token(
        self, user_id: Any, email: str
    ) -> str:
        key = await self.key_provider.get_current_key()
        return self.generator.generate_email_verification_token(
            user_id, email, key=key
        )

    async def generate_custom_token(
        self,
        claims: Mapping[str, Any],
        expires_in: int | None = None,
        header: Mapping[str, Any] | None = None,
    ) -> str:
        key = await self.key_provider.get_current_key()
        return self.generator.generate_custom_token(
            claims, key=key, expires_in=expires_in, header=header
        )

    async def encode(self, claims: ClaimsManager | Mapping[str, Any]) -> str:
        """Sign ``claims`` as given, without stamping any defaults."""
        key = await self.key_provider.get_current_key()
        return self.generator.encoder.encode(claims, key)

    # ----- Verification ----- #
    async def _check_revoked(self, claims: ClaimsManager) -> ClaimsManager:
        if self.blacklist is not None and await self.blacklist.is_revoked(
            claims.get_jwt_id()
        ):
            raise ClaimValidationError(
                "Token has been revoked", code="JWT_TOKEN_REVOKED"
            )
        return claims

    async def decode(self, token: str, verify: bool = True) -> ClaimsManager:
        """
        Decode ``token``. With ``verify=False`` neither the signature nor the
        claims are checked, and the blacklist is not consulted.
        """
        if not verify:
            return self.validator.decoder.decode(
                token, (), verify=False, validate_claims=False
            )
        keys = await self.key_provider.get_valid_keys()
        return await self._check_revoked(self.validator.validate(token, keys))

    async def validate_auth_token(
        self,
        token: str,
        expected_user_id: Any = None,
        *,
        required_roles: Iterable[str] | None = None,
        required_permissions: Iterable[str] | None = None,
    ) -> ClaimsManager:
        keys = await self.key_provider.get_valid_keys()
        claims = self.validator.validate_auth_token(
            token,
            keys,
            expected_user_id,
            required_roles=required_roles,
            required_permissions=required_permissions,
        )
        return await self._check_revoked(claims)

    async def validate_api_token(
        self,
        token: str,
        required_scopes: Iterable[str] | None = None,
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        keys = await self.key_provider.get_valid_keys()
        claims = self.validator.validate_api_token(
            token, keys, required_scopes, expected_user_id
        )
        return await self._check_revoked(claims)

    async def validate_refresh_token(
        self, token: str, expected_user_id: Any = None
    ) -> ClaimsManager:
        keys = await self.key_provider.get_valid_keys()
        claims = self.validator.validate_refresh_token(token, keys, expected_user_id)
        return await self._check_revoked(claims)

    async def validate_session_token(
        self,
        token: str,
        expected_session_id: str | None = None,
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        keys = await self.key_provider.get_valid_keys()
        claims = self.validator.validate_session_token(
            token, keys, expected_session_id, expected_user_id
        )
        return await self._check_revoked(claims)

    async def validate_password_reset_token(
        self,
        token: str,
        expected_email: str | None = None,
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        keys = await self.key_provider.get_valid_keys()
        claims = self.validator.validate_password_reset_token(
            token, keys, expected_email, expected_user_id
        )
        return await self._check_revoked(claims)

    async def validate_email_verification_token(
        self,
        token: str,
        expected_email: str | None = None,
        expected_user_id: Any = None,
    ) -> ClaimsManager:
        keys = await self.key_provider.get_valid_keys()
        claims = self.validator.validate_email_verification_token(
            token, keys, expected_email, expected_user_id
        )
        return await self._check_revoked(claims)

    async def revoke(self, token: str) -> bool:
        """
        Revoke a verified token.

        Returns:
            bool: False when the blacklist is disabled or the token cannot be
            revoked (no ``jti`` or already expired)
        """
        if self.blacklist is None:
            logger.warning("Token revocation requested but the blacklist is disabled")
            return False
        keys = await self.key_provider.get_valid_keys()
        claims = self.validator.validate(token, keys)
        return await self.blacklist.revoke(claims)
