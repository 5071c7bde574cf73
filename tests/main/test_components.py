from fastapi import FastAPI
import pytest

from tests.conftest import SECRET, make_config
from tests.fakes.cache import FakeCacheBackend
from tests.fakes.clock import FrozenClock
from tests.helpers.requests import build_request
from tokenguard.core.utils.encryption import SecretCipher
from tokenguard.main.components import Components, build_components
from tokenguard.main.dependencies import get_components
from tokenguard.tokens.keys import StaticKeyProvider
from tokenguard.tokens.rotation import KeyRotationManager


def test_default_wiring(components: Components) -> None:
    assert isinstance(components.key_provider, KeyRotationManager)
    assert components.tokens.blacklist is not None
    assert components.refresh.breach is components.breach
    assert components.refresh.key_provider is components.key_provider
    assert components.tokens.key_provider is components.key_provider


def test_features_can_be_switched_off(
    cache: FakeCacheBackend, clock: FrozenClock
) -> None:
    config = make_config(
        KEY_ROTATION_ENABLED=False,
        JWT_BLACKLIST_ENABLED=False,
        BREACH_ENABLED=False,
    )

    components = build_components(config, cache, clock=clock)

    assert isinstance(components.key_provider, StaticKeyProvider)
    assert components.tokens.blacklist is None
    assert components.refresh.breach is None
    assert components.breach.enabled is False


def test_storage_secret_falls_back_to_jwt_secret(
    cache: FakeCacheBackend, clock: FrozenClock
) -> None:
    config = make_config(KEY_STORAGE_SECRET="")

    components = build_components(config, cache, clock=clock)

    assert isinstance(components.key_provider, KeyRotationManager)
    sealed = SecretCipher(SECRET).encrypt("key material")
    assert components.key_provider.cipher.decrypt(sealed) == "key material"


@pytest.mark.asyncio
async def test_get_components_requires_startup(components: Components) -> None:
    request = build_request()
    request.scope["app"] = FastAPI()

    with pytest.raises(RuntimeError, match="not initialized"):
        await get_components(request)

    request.scope["app"].state.components = components
    assert await get_components(request) is components
