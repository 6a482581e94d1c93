from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from flux.config import settings
from flux.deps import current_session, get_engine
from flux.dispatch import replay_redis_dlq
from flux.engine import OrderEngine, check_actor
from flux.models import Order, Profile, Session
from flux.order_state import OrderStatus, Role
from flux.redis_client import get_redis
from flux.sqs_client import replay_dlq_to_main

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/orders")
async def list_orders(
    status: OrderStatus | None = Query(default=None),
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> list[Order]:
    return await engine.admin_list_orders(session, status)


@router.put("/profiles/{user_id}")
async def upsert_profile(
    user_id: str,
    body: Profile,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> Profile:
    """Mirror a profile from the identity service (role, city, credits_valid_until)."""
    return await engine.admin_upsert_profile(session, body.model_copy(update={"user_id": user_id}))


@router.post("/dlq/replay")
async def dlq_replay(
    limit: int = Query(default=100, ge=1, le=1000),
    session: Session = Depends(current_session),
) -> JSONResponse:
    """
    Replay code dispatch jobs from the DLQ (SQS when configured, else Redis) to the main queue.
    Returns number of messages replayed.
    """
    check_actor(session, Role.ADMIN)
    if settings.sqs_queue_url:
        replayed = await replay_dlq_to_main(limit=limit)
    else:
        replayed = await replay_redis_dlq(await get_redis(), limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
