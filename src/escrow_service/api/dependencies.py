from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, Header, Request

from escrow_service.application.engines import Engines
from escrow_service.logging import bind_actor, clear_actor


def get_engines(request: Request) -> Engines:
    engines: Engines = request.app.state.engines
    return engines


async def actor_context(
    x_actor_id: Annotated[str, Header(min_length=1)],
    x_actor_role: Annotated[str, Header()] = "admin",
) -> AsyncIterator[str]:
    """Caller identity as asserted by the upstream authorization layer."""
    bind_actor(x_actor_id, x_actor_role)
    try:
        yield x_actor_id
    finally:
        clear_actor()


EnginesDep = Annotated[Engines, Depends(get_engines)]
ActorDep = Annotated[str, Depends(actor_context)]
