from dataclasses import dataclass

from loggers import get_logger
from tokenguard.core.redis.cache.backend.interface import CacheBackend
from tokenguard.core.utils.datetime_utils import Clock, unix_now
from tokenguard.main.config import Config
from tokenguard.security.breach import BreachDetectionManager
from tokenguard.tokens.algorithms import AlgorithmProvider
from tokenguard.tokens.blacklist import TokenBlacklist
from tokenguard.tokens.decoder import JwtDecoder
from tokenguard.tokens.encoder import JwtEncoder
from tokenguard.tokens.generator import TokenGenerator
from tokenguard.tokens.introspection import TokenIntrospector
from tokenguard.tokens.keys import KeyProvider, StaticKeyProvider
from tokenguard.tokens.refresh import RefreshFamilyStore, RefreshTokenManager
from tokenguard.tokens.rotation import KeyRotationManager
from tokenguard.tokens.service import TokenService
from tokenguard.tokens.validator import TokenValidator

logger = get_logger(__name__)


@dataclass(frozen=True)
class Components:
    config: Config
    key_provider: KeyProvider
    tokens: TokenService
    refresh: RefreshTokenManager
    breach: BreachDetectionManager
    introspector: TokenIntrospector


def build_key_provider(
    config: Config, cache: CacheBackend, *, clock: Clock = unix_now
) -> KeyProvider:
    """
    Rotating keys kept in the shared cache, or the fixed configured key when
    rotation is disabled.
    """
    if not config.keys.KEY_ROTATION_ENABLED:
        logger.info("Key rotation disabled, using the configured signing key")
        return StaticKeyProvider(config.jwt, clock=clock)
    return KeyRotationManager(
        cache,
        config.keys,
        storage_secret=config.keys.KEY_STORAGE_SECRET or config.jwt.JWT_SECRET,
        algorithms=(config.jwt.JWT_ALGORITHM,),
        clock=clock,
    )


def build_components(
    config: Config, cache: CacheBackend, *, clock: Clock = unix_now
) -> Components:
    """
    Wire every token component on top of one shared cache.

    Args:
        config: Validated configuration
        cache: Shared cache backend
        clock: Time source handed to every component

    Returns:
        Components: The wired components
    """
    algorithms = AlgorithmProvider()
    key_provider = build_key_provider(config, cache, clock=clock)
    encoder = JwtEncoder(config.jwt, algorithms=algorithms, clock=clock)
    decoder = JwtDecoder(config.jwt, algorithms=algorithms, clock=clock)
    generator = TokenGenerator(encoder)
    validator = TokenValidator(decoder)
    breach = BreachDetectionManager(cache, config.breach, clock=clock)

    blacklist = (
        TokenBlacklist(cache, config.jwt, clock=clock)
        if config.jwt.JWT_BLACKLIST_ENABLED
        else None
    )
    refresh = RefreshTokenManager(
        key_provider,
        generator,
        validator,
        RefreshFamilyStore(cache, clock=clock),
        config.refresh,
        breach=breach if config.breach.BREACH_ENABLED else None,
        clock=clock,
    )
    return Components(
        config=config,
        key_provider=key_provider,
        tokens=TokenService(key_provider, generator, validator, blacklist=blacklist),
        refresh=refresh,
        breach=breach,
        introspector=TokenIntrospector(decoder),
    )
