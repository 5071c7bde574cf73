from unittest.mock import Mock

from fastapi import FastAPI
import pytest

from tests.conftest import make_config
from tests.fakes.redis import InMemoryRedis
from tokenguard.core.redis import lifecycle
from tokenguard.core.redis.cache.backend.redis_backend import RedisCacheBackend
from tokenguard.main import lifespan as lifespan_module
from tokenguard.main.components import Components
from tokenguard.main.lifespan import lifespan


@pytest.mark.asyncio
async def test_lifespan_wires_components_on_redis(
    monkeypatch: pytest.MonkeyPatch, fake_redis: InMemoryRedis
) -> None:
    config = make_config(REDIS_KEY_PREFIX="svc")
    init_sentry = Mock(return_value=False)
    monkeypatch.setattr(lifespan_module, "get_settings", lambda: config)
    monkeypatch.setattr(lifespan_module, "init_sentry", init_sentry)
    monkeypatch.setattr(lifecycle, "create_redis_client", lambda cfg: fake_redis)

    app = FastAPI()
    async with lifespan(app):
        components = app.state.components
        assert isinstance(components, Components)
        assert components.config is config
        token = await components.tokens.generate_auth_token(1)
        await components.tokens.validate_auth_token(token)
        cache = components.breach.cache
        assert isinstance(cache, RedisCacheBackend)
        assert cache.prefix == "svc"
        assert await fake_redis.exists("svc:jwt:keys:current:HS256") == 1

    init_sentry.assert_called_once_with(config)
    assert fake_redis.closed is True
