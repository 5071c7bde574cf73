from collections.abc import AsyncGenerator, Generator
from typing import Any

from fastapi import FastAPI
import httpx
import pytest
import pytest_asyncio

from tests.fakes.cache import FakeCacheBackend
from tests.fakes.clock import FrozenClock
from tests.fakes.redis import InMemoryRedis
from tests.helpers.overrides import DependencyOverrides
from tokenguard.main.components import Components, build_components
from tokenguard.main.config import Config, build_config
from tokenguard.main.presentation import include_exceptions_handlers
from tokenguard.tokens.algorithms import AlgorithmProvider
from tokenguard.tokens.decoder import JwtDecoder
from tokenguard.tokens.encoder import JwtEncoder
from tokenguard.tokens.generator import TokenGenerator
from tokenguard.tokens.keys import SigningKey
from tokenguard.tokens.validator import TokenValidator

SECRET = "s" * 32
OTHER_SECRET = "o" * 32
NOW = 1_700_000_000


def make_config(**overrides: Any) -> Config:
    env: dict[str, Any] = {
        "JWT_SECRET": SECRET,
        "KEY_STORAGE_SECRET": "storage-secret-for-tests",
        "TESTING": True,
    }
    env.update(overrides)
    return build_config(env)


def make_hmac_key(
    secret: str = SECRET,
    *,
    key_id: str = "key-1",
    created_at: int = NOW - 10,
    expires_at: int = NOW + 3600,
    grace_expires_at: int = NOW + 7200,
) -> SigningKey:
    return SigningKey(
        id=key_id,
        algorithm="HS256",
        secret=secret,
        created_at=created_at,
        expires_at=expires_at,
        grace_expires_at=grace_expires_at,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def settings() -> Config:
    return make_config()


@pytest.fixture
def cache(clock: FrozenClock) -> FakeCacheBackend:
    return FakeCacheBackend(clock)


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def hmac_key() -> SigningKey:
    return make_hmac_key()


@pytest.fixture
def algorithms() -> AlgorithmProvider:
    return AlgorithmProvider()


@pytest.fixture
def encoder(
    settings: Config, algorithms: AlgorithmProvider, clock: FrozenClock
) -> JwtEncoder:
    return JwtEncoder(settings.jwt, algorithms=algorithms, clock=clock)


@pytest.fixture
def decoder(
    settings: Config, algorithms: AlgorithmProvider, clock: FrozenClock
) -> JwtDecoder:
    return JwtDecoder(settings.jwt, algorithms=algorithms, clock=clock)


@pytest.fixture
def generator(encoder: JwtEncoder) -> TokenGenerator:
    return TokenGenerator(encoder)


@pytest.fixture
def validator(decoder: JwtDecoder) -> TokenValidator:
    return TokenValidator(decoder)


@pytest.fixture
def components(
    settings: Config, cache: FakeCacheBackend, clock: FrozenClock
) -> Components:
    return build_components(settings, cache, clock=clock)


@pytest.fixture
def app(components: Components) -> FastAPI:
    application = FastAPI()
    include_exceptions_handlers(application)
    application.state.components = components
    return application


@pytest.fixture
def dependency_overrides(app: FastAPI) -> Generator[DependencyOverrides]:
    overrides = DependencyOverrides(app)
    yield overrides
    overrides.reset()


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as client:
        yield client
