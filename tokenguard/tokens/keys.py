import hashlib
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tokenguard.core.errors.exceptions import ConfigurationError, SigningKeyError
from tokenguard.core.utils.datetime_utils import Clock, unix_now
from tokenguard.main.config import JWTConfig

# 9999-12-31T23:59:59Z, used as the expiry of keys that never rotate
NEVER_EXPIRES = 253_402_300_799


class SigningKey(BaseModel):
    id: str
    algorithm: str
    secret: str | None = Field(None, repr=False)
    private_key: str | None = Field(None, repr=False)
    public_key: str | None = Field(None, repr=False)
    created_at: int
    expires_at: int
    grace_expires_at: int

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_lifetime(self) -> "SigningKey":
        if not self.created_at < self.expires_at < self.grace_expires_at:
            raise ValueError(
                "Signing key requires created_at < expires_at < grace_expires_at"
            )
        return self

    @property
    def is_symmetric(self) -> bool:
        return self.algorithm.startswith("HS")

    @property
    def has_material(self) -> bool:
        if self.is_symmetric:
            return bool(self.secret)
        return bool(self.private_key or self.public_key)

    @property
    def can_sign(self) -> bool:
        return bool(self.secret if self.is_symmetric else self.private_key)

    def signing_material(self) -> str:
        material = self.secret if self.is_symmetric else self.private_key
        if not material:
            raise SigningKeyError(
                f"Key {self.id} has no signing material",
                code="JWT_KEY_CANNOT_SIGN",
            )
        return material

    def verification_material(self) -> str | None:
        if self.is_symmetric:
            return self.secret
        return self.public_key or self.private_key

    def needs_rotation(self, now: int) -> bool:
        return now >= self.expires_at

    def is_expired(self, now: int) -> bool:
        return now >= self.grace_expires_at

    def is_usable_for_verification(self, now: int) -> bool:
        return self.has_material and not self.is_expired(now)


class KeyProvider(Protocol):
    """Source of signing and verification keys."""

    async def get_current_key(self, algorithm: str | None = None) -> SigningKey: ...

    async def get_valid_keys(self) -> list[SigningKey]: ...


def _fingerprint(material: str) -> str:
    return hashlib.sha256(material.encode()).hexdigest()[:16]


class StaticKeyProvider:
    """
    Fixed key taken from configuration, for deployments without key rotation.
    """

    def __init__(self, jwt_config: JWTConfig, *, clock: Clock = unix_now) -> None:
        jwt_config.validate_key_material()
        self.algorithm = jwt_config.JWT_ALGORITHM
        material = (
            jwt_config.JWT_SECRET
            or jwt_config.JWT_PUBLIC_KEY
            or jwt_config.JWT_PRIVATE_KEY
            or ""
        )
        self._key = SigningKey(
            id=f"static_{_fingerprint(material)}",
            algorithm=self.algorithm,
            secret=jwt_config.JWT_SECRET if self.algorithm == "HS256" else None,
            private_key=jwt_config.JWT_PRIVATE_KEY,
            public_key=jwt_config.JWT_PUBLIC_KEY,
            created_at=clock(),
            expires_at=NEVER_EXPIRES,
            grace_expires_at=NEVER_EXPIRES + 1,
        )

    @property
    def key(self) -> SigningKey:
        return self._key

    async def get_current_key(self, algorithm: str | None = None) -> SigningKey:
        if algorithm is not None and algorithm != self.algorithm:
            raise ConfigurationError(
                f"Algorithm {algorithm} is not configured",
                code="JWT_UNSUPPORTED_ALGORITHM",
            )
        return self._key

    async def get_valid_keys(self) -> list[SigningKey]:
        return [self._key]
