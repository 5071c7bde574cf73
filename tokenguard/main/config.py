from collections.abc import Mapping
from functools import lru_cache
import json
import os
from typing import Any, Literal

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from tokenguard.core.errors.exceptions import ConfigurationError

SUPPORTED_ALGORITHMS = ("HS256", "RS256", "ES256")
MIN_SECRET_LENGTH = 32


def parse_list(v: Any) -> list[str]:
    """
    Parse a list value coming from the environment.

    Accepts a real list, a JSON array string, or a comma/semicolon separated string.
    """
    if v is None:
        return []
    if isinstance(v, (list, tuple, set)):
        return [str(item) for item in v]
    if isinstance(v, str) and v.strip().startswith("[") and v.strip().endswith("]"):
        try:
            parsed = json.loads(v)
            if isinstance(parsed, list):
                return [str(item) for item in parsed]
        except json.JSONDecodeError:
            pass
    text = str(v)
    sep = "," if "," in text else ";"
    return [item.strip() for item in text.split(sep) if item.strip()]


class AppConfig(BaseModel):
    PROJECT_NAME: str = "tokenguard"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    TESTING: bool = False

    LOG_LEVEL: str = "INFO"
    LOG_LEVEL_FILE: str = "WARNING"
    LOG_TO_FILE: bool = False
    LOG_DIR: str = "logs"

    TRUST_PROXY_HEADERS: bool = False

    model_config = ConfigDict(extra="ignore")


class RedisConfig(BaseModel):
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str = ""
    REDIS_DATABASE: str = "0"
    REDIS_KEY_PREFIX: str = "tokenguard"
    REDIS_SOCKET_TIMEOUT: float = Field(5.0, gt=0)

    model_config = ConfigDict(extra="ignore")

    @property
    def dsn(self) -> str:
        return (
            f"redis://:"
            f"{self.REDIS_PASSWORD}@"
            f"{self.REDIS_HOST}:"
            f"{self.REDIS_PORT}/"
            f"{self.REDIS_DATABASE}"
        )


class SentryConfig(BaseModel):
    SENTRY_DSN: str | None = None
    SENTRY_ENV: str = "development"
    SENTRY_ENABLED: bool = False

    model_config = ConfigDict(extra="ignore")


class JWTConfig(BaseModel):
    JWT_SECRET: str | None = None
    JWT_ALGORITHM: Literal["HS256", "RS256", "ES256"] = "HS256"

    JWT_TTL: int = Field(900, gt=0)
    JWT_REFRESH_TTL: int = Field(1_209_600, gt=0)

    JWT_ISSUER: str | None = "tokenguard"
    JWT_AUDIENCE: list[str] = Field(default_factory=list)
    JWT_SUBJECT: str | None = None
    JWT_LEEWAY: int = Field(0, ge=0)
    JWT_REQUIRED_CLAIMS: list[str] = Field(
        default_factory=lambda: ["iss", "iat", "exp", "nbf", "sub"]
    )

    JWT_PRIVATE_KEY: str | None = None
    JWT_PUBLIC_KEY: str | None = None

    JWT_BLACKLIST_ENABLED: bool = True
    JWT_BLACKLIST_GRACE_PERIOD: int = Field(0, ge=0)

    model_config = ConfigDict(extra="ignore")

    @field_validator("JWT_AUDIENCE", "JWT_REQUIRED_CLAIMS", mode="before")
    @classmethod
    def parse_claim_list(cls, v: Any) -> list[str]:
        return parse_list(v)

    @field_validator("JWT_SECRET", "JWT_ISSUER", "JWT_SUBJECT", mode="before")
    @classmethod
    def empty_as_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("JWT_SECRET")
    @classmethod
    def check_secret_length(cls, v: str | None) -> str | None:
        if v is not None and len(v) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT secret must be at least {MIN_SECRET_LENGTH} characters long"
            )
        return v

    @model_validator(mode="after")
    def check_refresh_ttl(self) -> "JWTConfig":
        if self.JWT_REFRESH_TTL <= self.JWT_TTL:
            raise ValueError("JWT_REFRESH_TTL must be greater than JWT_TTL")
        return self

    def validate_key_material(self) -> None:
        """
        Check that the configured algorithm has the key material it needs.

        Raises:
            ConfigurationError: HS256 without a secret, or RS256/ES256 without a key
        """
        if self.JWT_ALGORITHM == "HS256":
            if not self.JWT_SECRET:
                raise ConfigurationError(
                    "JWT secret is required for HS256",
                    code="JWT_MISSING_SECRET",
                )
            return
        if not self.JWT_PRIVATE_KEY and not self.JWT_PUBLIC_KEY:
            raise ConfigurationError(
                f"Private or public key is required for {self.JWT_ALGORITHM}",
                code="JWT_MISSING_KEY",
            )


class KeyRotationConfig(BaseModel):
    KEY_ROTATION_ENABLED: bool = True
    KEY_ROTATION_INTERVAL: int = Field(2_592_000, gt=0)
    KEY_GRACE_PERIOD: int = Field(604_800, gt=0)
    KEY_MAX_KEYS: int = Field(10, gt=0)
    KEY_AUTO_ROTATION: bool = True
    KEY_STRENGTH: int = Field(256, ge=128)
    KEY_STORAGE_SECRET: str | None = None
    KEY_LOCK_TIMEOUT: int = Field(10, gt=0)

    model_config = ConfigDict(extra="ignore")


class RefreshConfig(BaseModel):
    REFRESH_ROTATION_ENABLED: bool = True
    REFRESH_FAMILY_TRACKING: bool = True
    REFRESH_MAX_COUNT: int = Field(50, gt=0)
    REFRESH_GRACE_PERIOD: int = Field(300, ge=0)

    model_config = ConfigDict(extra="ignore")


class BreachDetectionConfig(BaseModel):
    BREACH_ENABLED: bool = True

    BREACH_FAILED_AUTH_THRESHOLD: int = Field(5, gt=0)
    BREACH_FAILED_AUTH_WINDOW: int = Field(300, gt=0)
    BREACH_TOKEN_REUSE_THRESHOLD: int = Field(3, gt=0)
    BREACH_TOKEN_REUSE_WINDOW: int = Field(60, gt=0)
    BREACH_IP_REQUEST_THRESHOLD: int = Field(100, gt=0)
    BREACH_IP_REQUEST_WINDOW: int = Field(3600, gt=0)

    BREACH_AUTO_BLOCK_ENABLED: bool = True
    BREACH_BLOCK_IP_DURATION: int = Field(3600, gt=0)
    BREACH_BLOCK_USER_DURATION: int = Field(1800, gt=0)
    BREACH_ALERT_RETENTION: int = Field(604_800, gt=0)
    BREACH_LOG_ALL_ATTEMPTS: bool = False

    model_config = ConfigDict(extra="ignore")


class Config(BaseModel):
    app: AppConfig
    jwt: JWTConfig
    keys: KeyRotationConfig
    refresh: RefreshConfig
    breach: BreachDetectionConfig
    redis: RedisConfig
    sentry: SentryConfig

    model_config = ConfigDict(extra="ignore")


def build_config(env: Mapping[str, Any]) -> Config:
    """
    Build the full configuration from a flat environment mapping.

    Args:
        env: Flat mapping of UPPER_CASE setting names to raw values

    Returns:
        Config: Validated configuration

    Raises:
        ConfigurationError: If any section fails validation
    """
    values = dict(env)
    try:
        return Config(
            app=AppConfig(**values),
            jwt=JWTConfig(**values),
            keys=KeyRotationConfig(**values),
            refresh=RefreshConfig(**values),
            breach=BreachDetectionConfig(**values),
            redis=RedisConfig(**values),
            sentry=SentryConfig(**values),
        )
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
        raise ConfigurationError(
            f"Invalid configuration: {', '.join(fields) or exc.title}",
            additional_info={"errors": exc.errors(include_url=False)},
        ) from exc


@lru_cache
def get_settings() -> Config:
    """
    Settings from the process environment over ``.env`` (``.env.test`` when
    TESTING=true). Cached; call ``get_settings.cache_clear()`` after changing
    the environment.
    """
    env_filename = ".env.test" if os.getenv("TESTING") == "true" else ".env"
    env_file_values = dotenv_values(env_filename)
    merged_env: dict[str, Any] = {
        k: v
        for k, v in {**env_file_values, **dict(os.environ)}.items()
        if v is not None
    }
    return build_config(merged_env)
