from fastapi import APIRouter, Depends

from flux.deps import current_session, get_engine
from flux.engine import OrderEngine
from flux.models import Session

router = APIRouter(tags=["profiles"])


@router.get("/me")
async def me(
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> dict:
    """Who the caller is and whether they can currently create or accept orders."""
    return {
        "user_id": session.user_id,
        "role": session.role.value,
        "name": session.name,
        "city": session.city,
        "state": session.state,
        "credits_valid_until": session.credits_valid_until,
        "has_entitlement": session.has_entitlement(engine.clock()),
    }


@router.get("/users/{user_id}/ratings")
async def user_ratings(
    user_id: str,
    _session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> dict:
    ratings, average = await engine.ratings_for(user_id)
    return {"user_id": user_id, "average": average, "count": len(ratings), "ratings": ratings}
