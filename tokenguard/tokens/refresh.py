"""
Refresh token issuance and rotation with family tracking.

Every refresh token carries ``family_id`` (the ``jti`` of the first token of
the chain), ``refresh_count`` and ``parent_token_id``. Consumed token ids and
revoked families are tracked in ``RefreshFamilyStore`` on the shared cache.
Unlike breach detection, this store fails closed: cache errors propagate and
the refresh is refused.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from loggers import get_logger
from tokenguard.core.errors.exceptions import (
    BlockedError,
    ClaimValidationError,
    MalformedTokenError,
    ReplayError,
    TokenException,
)
from tokenguard.core.redis.cache.backend.interface import CacheBackend
from tokenguard.core.utils.datetime_utils import Clock, unix_now
from tokenguard.main.config import RefreshConfig
from tokenguard.security.breach import AlertType, BreachDetectionManager
from tokenguard.tokens.claims import ClaimsManager
from tokenguard.tokens.generator import TokenGenerator, new_token_id
from tokenguard.tokens.keys import KeyProvider
from tokenguard.tokens.validator import TokenValidator

logger = get_logger(__name__)


class RefreshRecord(BaseModel):
    user_id: Any
    token_id: str
    family_id: str
    refresh_count: int = Field(ge=0)
    parent_token_id: str | None = None

    @classmethod
    def from_claims(cls, claims: ClaimsManager) -> "RefreshRecord":
        family_id = claims.get_claim("family_id")
        refresh_count = claims.get_claim("refresh_count")
        parent = claims.get_claim("parent_token_id")
        if not isinstance(family_id, str) or not family_id:
            raise ClaimValidationError(
                "Refresh token has no family", code="JWT_INVALID_REFRESH_FAMILY"
            )
        if (
            isinstance(refresh_count, bool)
            or not isinstance(refresh_count, int)
            or refresh_count < 0
        ):
            raise ClaimValidationError(
                "Refresh token has an invalid refresh count",
                code="JWT_INVALID_REFRESH_COUNT",
            )
        if parent is not None and not isinstance(parent, str):
            raise ClaimValidationError(
                "Refresh token has an invalid parent", code="JWT_INVALID_REFRESH_PARENT"
            )
        return cls(
            user_id=claims.get_claim("user_id", claims.get_subject()),
            token_id=str(claims.get_jwt_id()),
            family_id=family_id,
            refresh_count=refresh_count,
            parent_token_id=parent,
        )


class IssuedRefreshToken(BaseModel):
    token: str
    token_id: str
    family_id: str
    refresh_count: int
    parent_token_id: str | None = None
    expires_at: int


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefreshTokenStatus(BaseModel):
    valid: bool
    error: str | None = None
    code: str | None = None
    claims: dict[str, Any] | None = None


class RefreshFamilyStore:
    def __init__(self, cache: CacheBackend, *, clock: Clock = unix_now) -> None:
        self.cache = cache
        self.clock = clock

    @staticmethod
    def _consumed_key(token_id: str) -> str:
        return f"refresh:consumed:{token_id}"

    @staticmethod
    def _revoked_key(family_id: str) -> str:
        return f"refresh:family:{family_id}:revoked"

    async def consume(self, token_id: str, family_id: str, ttl: int) -> int | None:
        """
        Atomically mark ``token_id`` as consumed.

        Returns:
            None when this call consumed the token, otherwise the timestamp of
            the earlier consumption
        """
        now = self.clock()
        stored = await self.cache.add_value(
            self._consumed_key(token_id),
            {"family_id": family_id, "consumed_at": now},
            ttl=max(ttl, 1),
        )
        if stored:
            return None
        previous = await self.cache.get_value(self._consumed_key(token_id))
        if not previous:
            return now
        return int(previous.get("consumed_at", now))

    async def is_consumed(self, token_id: str) -> bool:
        return await self.cache.has(self._consumed_key(token_id))

    async def revoke_family(self, family_id: str, ttl: int) -> None:
        await self.cache.set_value(
            self._revoked_key(family_id), {"revoked_at": self.clock()}, ttl=max(ttl, 1)
        )

    async def is_family_revoked(self, family_id: str) -> bool:
        return await self.cache.has(self._revoked_key(family_id))


class RefreshTokenManager:
    def __init__(
        self,
        key_provider: KeyProvider,
        generator: TokenGenerator,
        validator: TokenValidator,
        family_store: RefreshFamilyStore,
        config: RefreshConfig,
        *,
        breach: BreachDetectionManager | None = None,
        clock: Clock = unix_now,
    ) -> None:
        self.key_provider = key_provider
        self.generator = generator
        self.validator = validator
        self.family_store = family_store
        self.config = config
        self.breach = breach
        self.clock = clock

    @property
    def access_ttl(self) -> int:
        return self.generator.config.JWT_TTL

    @property
    def refresh_ttl(self) -> int:
        return self.generator.config.JWT_REFRESH_TTL

    # ----- Issuance ----- #
    async def generate_refresh_token(
        self,
        user_id: Any,
        family_id: str | None = None,
        parent_token_id: str | None = None,
        refresh_count: int = 0,
    ) -> IssuedRefreshToken:
        key = await self.key_provider.get_current_key()
        token_id = new_token_id()
        family_id = family_id or token_id
        token = self.generator.generate_refresh_token(
            user_id,
            token_id,
            key=key,
            extra={
                "family_id": family_id,
                "refresh_count": refresh_count,
                "parent_token_id": parent_token_id,
            },
        )
        return IssuedRefreshToken(
            token=token,
            token_id=token_id,
            family_id=family_id,
            refresh_count=refresh_count,
            parent_token_id=parent_token_id,
            expires_at=self.clock() + self.refresh_ttl,
        )

    async def generate_token_pair(
        self, user_id: Any, claims: Mapping[str, Any] | None = None
    ) -> TokenPair:
        """
        Issue an access token and the first refresh token of a new family.
        """
        key = await self.key_provider.get_current_key()
        access_token = self.generator.generate_auth_token(user_id, claims, key=key)
        refresh = await self.generate_refresh_token(user_id)
        logger.info(
            "Issued token pair for user %s (family %s)", user_id, refresh.family_id
        )
        return self._pair(access_token, refresh)

    def _pair(self, access_token: str, refresh: IssuedRefreshToken) -> TokenPair:
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh.token,
            expires_in=self.access_ttl,
            refresh_expires_in=max(0, refresh.expires_at - self.clock()),
            metadata={
                "family_id": refresh.family_id,
                "refresh_count": refresh.refresh_count,
                "refresh_token_id": refresh.token_id,
                "parent_token_id": refresh.parent_token_id,
                "issued_at": self.clock(),
            },
        )

    # ----- Rotation ----- #
    async def _validate(
        self, refresh_token: str
    ) -> tuple[ClaimsManager, RefreshRecord]:
        keys = await self.key_provider.get_valid_keys()
        claims = self.validator.validate_refresh_token(refresh_token, keys)
        return claims, RefreshRecord.from_claims(claims)

    async def refresh_access_token(
        self,
        refresh_token: str,
        additional_claims: Mapping[str, Any] | None = None,
        ip: str | None = None,
    ) -> TokenPair:
        """
        Exchange a refresh token for a new access token and, with rotation
        enabled, a new refresh token of the same family.

        Args:
            refresh_token: Refresh token presented by the client
            additional_claims: Extra claims for the new access token
            ip: Client IP, feeds the token-usage replay window when given

        Returns:
            TokenPair: New tokens. Without rotation the presented refresh token
            is returned unchanged.

        Raises:
            TokenException: The refresh token is invalid
            ReplayError: Reuse, revoked family or refresh limit reached
            BlockedError: The user is blocked by breach detection
            CacheUnavailableError: Family state cannot be read or written
        """
        claims, record = await self._validate(refresh_token)
        now = self.clock()

        if self.breach is not None and await self.breach.is_user_blocked(
            record.user_id
        ):
            raise BlockedError(
                "User is temporarily blocked",
                additional_info={"user_id": record.user_id},
            )

        if self.config.REFRESH_FAMILY_TRACKING and (
            await self.family_store.is_family_revoked(record.family_id)
        ):
            logger.warning(
                "Refresh attempted with revoked family %s (user %s)",
                record.family_id,
                record.user_id,
            )
            raise ReplayError(
                "Refresh token family has been revoked",
                code="JWT_REFRESH_FAMILY_REVOKED",
            )

        if record.refresh_count + 1 > self.config.REFRESH_MAX_COUNT:
            raise ReplayError(
                "Refresh token has reached the maximum number of refreshes",
                additional_info={"max_refresh_count": self.config.REFRESH_MAX_COUNT},
                code="JWT_REFRESH_LIMIT_EXCEEDED",
            )

        if self.breach is not None and ip:
            detection = await self.breach.record_token_usage(
                record.token_id, record.user_id, ip
            )
            if detection.has_alert(AlertType.TOKEN_REPLAY):
                await self.revoke_family(record.family_id)
                raise ReplayError(
                    "Token replay detected", code="JWT_TOKEN_REPLAY_DETECTED"
                )

        key = await self.key_provider.get_current_key()
        access_token = self.generator.generate_auth_token(
            record.user_id, additional_claims, key=key
        )

        if not self.config.REFRESH_ROTATION_ENABLED:
            return TokenPair(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=self.access_ttl,
                refresh_expires_in=max(0, (claims.get_expiration() or now) - now),
                metadata={
                    "family_id": record.family_id,
                    "refresh_count": record.refresh_count,
                    "refresh_token_id": record.token_id,
                    "parent_token_id": record.parent_token_id,
                    "issued_at": now,
                },
            )

        refresh = await self.generate_refresh_token(
            record.user_id,
            family_id=record.family_id,
            parent_token_id=record.token_id,
            refresh_count=record.refresh_count + 1,
        )

        # The presented token is consumed only after its successor is signed.
        exp = claims.get_expiration() or now + self.refresh_ttl
        consumed_at = await self.family_store.consume(
            record.token_id, record.family_id, ttl=exp - now
        )
        if consumed_at is not None:
            await self._reject_reuse(record, now - consumed_at)
        return self._pair(access_token, refresh)

    async def _reject_reuse(self, record: RefreshRecord, since_rotation: int) -> None:
        if since_rotation <= self.config.REFRESH_GRACE_PERIOD:
            logger.warning(
                "Refresh token %s presented again %ss after rotation (within grace)",
                record.token_id,
                since_rotation,
            )
            raise ReplayError(
                "Refresh token has already been rotated",
                code="JWT_REFRESH_TOKEN_ROTATED",
            )

        if self.config.REFRESH_FAMILY_TRACKING:
            await self.revoke_family(record.family_id)
        logger.warning(
            "Refresh token reuse detected for user %s, token %s (family %s)",
            record.user_id,
            record.token_id,
            record.family_id,
        )
        raise ReplayError(
            "Refresh token reuse detected", code="JWT_REFRESH_TOKEN_REUSED"
        )

    async def revoke_family(self, family_id: str) -> None:
        await self.family_store.revoke_family(family_id, ttl=self.refresh_ttl)
        logger.warning("Refresh token family %s revoked", family_id)

    # ----- Inspection ----- #
    async def validate_refresh_token(self, refresh_token: str) -> RefreshTokenStatus:
        try:
            claims, record = await self._validate(refresh_token)
            if self.config.REFRESH_FAMILY_TRACKING and (
                await self.family_store.is_family_revoked(record.family_id)
            ):
                raise ReplayError(
                    "Refresh token family has been revoked",
                    code="JWT_REFRESH_FAMILY_REVOKED",
                )
        except TokenException as exc:
            return RefreshTokenStatus(valid=False, error=exc.message, code=exc.code)
        return RefreshTokenStatus(valid=True, claims=claims.to_dict())

    def is_near_expiration(self, refresh_token: str, threshold: int = 3600) -> bool:
        """Unreadable tokens count as near expiration."""
        try:
            exp = self.validator.extract_claims(refresh_token).get("exp")
        except MalformedTokenError:
            return True
        if not isinstance(exp, int):
            return True
        return exp - self.clock() <= threshold

    def get_token_metadata(self, refresh_token: str) -> dict[str, Any]:
        """Unverified metadata of a refresh token, for display only."""
        try:
            payload = self.validator.extract_claims(refresh_token)
        except MalformedTokenError as exc:
            return {"error": exc.message, "code": exc.code}
        refresh_count = payload.get("refresh_count")
        exp = payload.get("exp")
        return {
            "user_id": payload.get("user_id", payload.get("sub")),
            "token_id": payload.get("jti"),
            "family_id": payload.get("family_id"),
            "refresh_count": refresh_count,
            "parent_token_id": payload.get("parent_token_id"),
            "issued_at": payload.get("iat"),
            "expires_at": exp,
            "expires_in": exp - self.clock() if isinstance(exp, int) else None,
            "remaining_refreshes": (
                max(0, self.config.REFRESH_MAX_COUNT - refresh_count)
                if isinstance(refresh_count, int)
                else None
            ),
        }
