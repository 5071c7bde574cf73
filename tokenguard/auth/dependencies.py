from fastapi import Depends, Request, Security
from fastapi.security.api_key import APIKeyHeader

from loggers import get_logger
from tokenguard.core.errors.exceptions import BlockedError, UnauthorizedException
from tokenguard.main.components import Components
from tokenguard.main.dependencies import get_components
from tokenguard.security.request_context import RequestContext
from tokenguard.tokens.claims import ClaimsManager

logger = get_logger(__name__)

access_token_header = APIKeyHeader(
    name="Authorization", scheme_name="access-token", auto_error=False
)


def strip_bearer(token: str | None) -> str:
    if not token:
        raise UnauthorizedException(
            "Authentication token not found", code="JWT_EMPTY_TOKEN"
        )
    if token.lower().startswith("bearer "):
        token = token[7:]
    return token.strip()


async def get_request_context(
    request: Request, components: Components = Depends(get_components)
) -> RequestContext:
    return RequestContext.from_request(
        request, trust_proxy_headers=components.config.app.TRUST_PROXY_HEADERS
    )


async def get_current_claims(
    token: str | None = Security(access_token_header),
    context: RequestContext = Depends(get_request_context),
    components: Components = Depends(get_components),
) -> ClaimsManager:
    """
    Validate the bearer access token of the request.

    Blocked IPs are refused before the token is looked at, blocked users once
    the token names them. Every attempt is recorded with breach detection.

    Returns:
        ClaimsManager: Claims of the validated access token

    Raises:
        BlockedError: The IP or the user is blocked
        TokenException: The token is missing or invalid
    """
    breach = components.breach
    if await breach.is_ip_blocked(context.ip):
        raise BlockedError(
            "IP address is temporarily blocked", additional_info={"ip": context.ip}
        )

    try:
        claims = await components.tokens.validate_auth_token(strip_bearer(token))
    except UnauthorizedException as exc:
        result = await breach.record_auth_attempt(
            context, success=False, reason=exc.code
        )
        if result.blocked:
            logger.warning(
                "Refusing %s after repeated authentication failures", context.ip
            )
            raise BlockedError(
                "IP address is temporarily blocked",
                additional_info={"ip": context.ip},
            ) from exc
        raise

    user_id = claims.get_claim("user_id", claims.get_subject())
    if await breach.is_user_blocked(user_id):
        raise BlockedError(
            "User is temporarily blocked", additional_info={"user_id": user_id}
        )
    await breach.record_auth_attempt(context, user_id=user_id, success=True)
    return claims
