from fastapi import Depends, Header, HTTPException, Request

from flux.engine import OrderEngine
from flux.errors import NotFoundError
from flux.models import Session


def get_engine(request: Request) -> OrderEngine:
    return request.app.state.engine


async def current_session(
    x_user_id: str = Header(..., description="Acting user, resolved by the identity service upstream"),
    engine: OrderEngine = Depends(get_engine),
) -> Session:
    """Profile is loaded on every request so entitlement is never stale."""
    try:
        return await engine.load_session(x_user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail="Unknown user")
