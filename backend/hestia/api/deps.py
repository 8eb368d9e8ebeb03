"""
FastAPI dependencies shared by the v1 routers
"""
from fastapi import Depends, Request

from hestia.container import ServiceContainer
from hestia.core.auth import get_current_principal
from hestia.core.permissions import Principal


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def get_actor_principal(
    token: str,
    container: ServiceContainer = Depends(get_container),
) -> Principal:
    """Resolve the portal token in the path into an actor-scoped principal."""
    return await container.actors.resolve_token(token)


__all__ = ["get_container", "get_actor_principal", "get_current_principal"]
