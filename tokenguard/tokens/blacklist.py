from loggers import get_logger
from tokenguard.core.redis.cache.backend.interface import CacheBackend
from tokenguard.core.utils.datetime_utils import Clock, unix_now
from tokenguard.main.config import JWTConfig
from tokenguard.tokens.claims import ClaimsManager

logger = get_logger(__name__)


def blacklist_key(jti: str) -> str:
    return f"jwt:blacklist:{jti}"


class TokenBlacklist:
    """
    Revocation list keyed by ``jti``.

    A revoked token keeps working for ``JWT_BLACKLIST_GRACE_PERIOD`` seconds
    after revocation; entries expire together with the token.
    """

    def __init__(
        self, cache: CacheBackend, jwt_config: JWTConfig, *, clock: Clock = unix_now
    ) -> None:
        self.cache = cache
        self.config = jwt_config
        self.clock = clock

    @property
    def grace_period(self) -> int:
        return self.config.JWT_BLACKLIST_GRACE_PERIOD

    async def revoke(self, claims: ClaimsManager) -> bool:
        """Revoke the token. Returns False when there is nothing to revoke."""
        jti = claims.get_jwt_id()
        if not jti:
            logger.warning(
                "Cannot revoke a token without jti (sub=%s)", claims.get_subject()
            )
            return False

        now = self.clock()
        exp = claims.get_expiration()
        remaining = exp - now if exp is not None else self.config.JWT_REFRESH_TTL
        if remaining <= 0:
            return False

        await self.cache.set_value(
            blacklist_key(jti), {"revoked_at": now}, ttl=remaining + self.grace_period
        )
        logger.info("Token %s revoked", jti)
        return True

    async def is_revoked(self, jti: str | None) -> bool:
        if not jti:
            return False
        entry = await self.cache.get_value(blacklist_key(jti))
        if not entry:
            return False
        return self.clock() >= entry["revoked_at"] + self.grace_period
