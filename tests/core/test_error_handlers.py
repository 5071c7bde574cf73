import logging

from fastapi import FastAPI
import httpx
import pytest

from tests.helpers.requests import build_request
from tokenguard.core.errors import handlers
from tokenguard.core.errors.exceptions import (
    BlockedError,
    CacheUnavailableError,
    ClaimValidationError,
    ConfigurationError,
    CoreException,
    ExpiredTokenError,
    KeyGenerationError,
    ReplayError,
)


@pytest.fixture(autouse=True)
def _capture_response_log(monkeypatch: pytest.MonkeyPatch) -> logging.Logger:
    logger = logging.getLogger("response_logger_test")
    logger.handlers = []
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    monkeypatch.setattr(handlers, "response_logger", logger)
    return logger


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> list[BaseException]:
    events: list[BaseException] = []
    monkeypatch.setattr(handlers.sentry_sdk, "capture_exception", events.append)
    return events


@pytest.fixture
def raising_app(app: FastAPI) -> FastAPI:
    errors: dict[str, CoreException] = {
        "expired": ExpiredTokenError("Token has expired"),
        "replay": ReplayError(
            "Refresh token reuse detected", code="JWT_REFRESH_TOKEN_REUSED"
        ),
        "claims": ClaimValidationError(
            "Invalid token type", additional_info={"token": "abc"}
        ),
        "blocked": BlockedError("IP address is temporarily blocked"),
        "config": ConfigurationError("JWT secret is not configured"),
        "keygen": KeyGenerationError("RSA key generation failed"),
        "cache": CacheUnavailableError("Shared cache is unavailable"),
        "core": CoreException("Something odd"),
    }

    @app.get("/raise/{name}")
    async def raise_error(name: str) -> None:
        raise errors[name]

    @app.get("/items/{item_id}")
    async def get_item(item_id: int) -> dict[str, int]:
        return {"item_id": item_id}

    return app


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("name", "status", "error", "code"),
    [
        ("expired", 401, "Unauthorized", "JWT_TOKEN_EXPIRED"),
        ("replay", 401, "Unauthorized", "JWT_REFRESH_TOKEN_REUSED"),
        ("claims", 401, "Unauthorized", "JWT_INVALID_CLAIM"),
        ("blocked", 403, "Blocked", "SECURITY_BLOCKED"),
        ("config", 500, "Configuration error", "JWT_CONFIGURATION_ERROR"),
        ("keygen", 500, "Signing key error", "JWT_KEY_GENERATION_FAILED"),
        ("cache", 500, "Infrastructure error", "CACHE_UNAVAILABLE"),
        ("core", 400, "Bad request", "CORE_ERROR"),
    ],
)
async def test_errors_map_to_status_and_body(
    raising_app: FastAPI,
    async_client: httpx.AsyncClient,
    captured: list[BaseException],
    name: str,
    status: int,
    error: str,
    code: str,
) -> None:
    response = await async_client.get(f"/raise/{name}")

    assert response.status_code == status
    body = response.json()
    assert body["error"] == error
    assert body["code"] == code
    assert set(body) == {"error", "message", "code"}
    assert bool(captured) is (status == 500)


@pytest.mark.asyncio
async def test_additional_info_is_logged_masked_and_not_returned(
    raising_app: FastAPI,
    async_client: httpx.AsyncClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.DEBUG, logger="response_logger_test"):
        response = await async_client.get("/raise/claims")

    assert "abc" not in response.text
    assert "token=***" in caplog.text
    assert "GET /raise/claims" in caplog.text


@pytest.mark.asyncio
async def test_request_validation_error(
    raising_app: FastAPI, async_client: httpx.AsyncClient
) -> None:
    response = await async_client.get("/items/not-a-number")

    assert response.status_code == 422
    assert response.json()["detail"][0]["loc"] == ["path", "item_id"]


def test_format_log_message() -> None:
    request = build_request(path="/v1/token", headers={"X-Request-ID": "req-1"})

    message = handlers.format_log_message(
        request,
        "Unauthorized",
        "bad   token\nvalue",
        {"password": "p", "user_id": 3},
        code="JWT_SIGNATURE_INVALID",
    )

    assert message == (
        "[req-1] [Unauthorized] GET /v1/token | bad token value "
        "(JWT_SIGNATURE_INVALID) | Additional info: password=***, user_id=3"
    )


def test_format_log_message_truncates() -> None:
    message = handlers.format_log_message(build_request(), "Bad request", "x" * 600)

    assert message.endswith("x" * 497 + "...")


def test_format_error_response_defaults() -> None:
    assert handlers.format_error_response("Forbidden", None) == {
        "error": "Forbidden",
        "message": "No additional details available",
        "code": None,
    }
