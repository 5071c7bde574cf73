from collections.abc import Iterable, Mapping
from typing import Any
from uuid import uuid4

from tokenguard.main.config import JWTConfig
from tokenguard.tokens.encoder import JwtEncoder
from tokenguard.tokens.keys import SigningKey
from tokenguard.tokens.validator import TOKEN_TYPES

SESSION_TOKEN_TTL = 900
PASSWORD_RESET_TOKEN_TTL = 3600
EMAIL_VERIFICATION_TOKEN_TTL = 86_400


def new_token_id() -> str:
    return uuid4().hex


class TokenGenerator:
    """
    Builds the claim sets of each token kind and signs them.

    Every token carries ``sub`` (string user id), ``user_id``, ``type`` and a
    fresh ``jti`` on top of the configured registered claims.
    """

    def __init__(self, encoder: JwtEncoder) -> None:
        self.encoder = encoder

    @property
    def config(self) -> JWTConfig:
        return self.encoder.config

    @staticmethod
    def is_valid_token_type(token_type: str) -> bool:
        return token_type in TOKEN_TYPES

    def get_expiration_time(self, ttl: int | None = None) -> int:
        return self.encoder.clock() + (ttl or self.config.JWT_TTL)

    @staticmethod
    def _base_claims(user_id: Any, token_type: str) -> dict[str, Any]:
        return {
            "sub": str(user_id),
            "user_id": user_id,
            "type": token_type,
            "jti": new_token_id(),
        }

    def _sign(
        self,
        claims: Mapping[str, Any],
        key: SigningKey,
        ttl: int | None = None,
        header: Mapping[str, Any] | None = None,
    ) -> str:
        return self.encoder.encode_with_defaults(claims, key, ttl=ttl, header=header)

    def generate_auth_token(
        self,
        user_id: Any,
        claims: Mapping[str, Any] | None = None,
        *,
        key: SigningKey,
        permissions: Iterable[str] | None = None,
        roles: Iterable[str] | None = None,
        ttl: int | None = None,
    ) -> str:
        """
        Access token for an authenticated user. ``claims`` are merged at top level.
        """
        payload = self._base_claims(user_id, "auth")
        if permissions is not None:
            payload["permissions"] = list(permissions)
        if roles is not None:
            payload["roles"] = list(roles)
        payload.update(claims or {})
        payload["type"] = "auth"
        return self._sign(payload, key, ttl)

    def generate_api_token(
        self,
        user_id: Any,
        *,
        key: SigningKey,
        scopes: Iterable[str] = (),
        client_id: str | None = None,
        ttl: int | None = None,
    ) -> str:
        payload = self._base_claims(user_id, "api")
        payload["scopes"] = list(scopes)
        if client_id is not None:
            payload["client_id"] = client_id
        return self._sign(payload, key, ttl)

    def generate_refresh_token(
        self,
        user_id: Any,
        token_id: str,
        *,
        key: SigningKey,
        extra: Mapping[str, Any] | None = None,
        ttl: int | None = None,
    ) -> str:
        payload = self._base_claims(user_id, "refresh")
        payload.update(extra or {})
        payload["type"] = "refresh"
        payload["jti"] = token_id
        return self._sign(payload, key, ttl or self.config.JWT_REFRESH_TTL)

    def generate_session_token(
        self,
        user_id: Any,
        session_id: str,
        *,
        key: SigningKey,
        ttl: int = SESSION_TOKEN_TTL,
    ) -> str:
        payload = self._base_claims(user_id, "session")
        payload["session_id"] = session_id
        return self._sign(payload, key, ttl)

    def generate_password_reset_token(
        self,
        user_id: Any,
        email: str,
        *,
        key: SigningKey,
        ttl: int = PASSWORD_RESET_TOKEN_TTL,
    ) -> str:
        payload = self._base_claims(user_id, "password_reset")
        payload["email"] = email
        return self._sign(payload, key, ttl)

    def generate_email_verification_token(
        self,
        user_id: Any,
        email: str,
        *,
        key: SigningKey,
        ttl: int = EMAIL_VERIFICATION_TOKEN_TTL,
    ) -> str:
        payload = self._base_claims(user_id, "email_verification")
        payload["email"] = email
        return self._sign(payload, key, ttl)

    def generate_custom_token(
        self,
        claims: Mapping[str, Any],
        *,
        key: SigningKey,
        expires_in: int | None = None,
        header: Mapping[str, Any] | None = None,
    ) -> str:
        return self._sign(claims, key, expires_in, header)
