from typing import cast

from fastapi import Request

from tokenguard.main.components import Components


async def get_components(request: Request) -> Components:
    """
    Provide the token components wired by the application lifespan.
    """
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise RuntimeError(
            "Token components are not initialized. Ensure startup lifecycle ran."
        )
    return cast(Components, components)
