from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from flux.deps import current_session, get_engine
from flux.engine import OrderEngine
from flux.models import (
    AcceptResult,
    DeliveryCodeView,
    Order,
    OrderDraft,
    Rating,
    Session,
    SosReport,
)
from flux.order_state import OrderStatus

router = APIRouter(prefix="/orders", tags=["orders"])


class SosBody(BaseModel):
    description: str = Field(..., description="What went wrong with the delivery")


class RatingBody(BaseModel):
    stars: int = Field(..., ge=1, le=5)
    comment: str | None = None


@router.post("", status_code=201)
async def create_order(
    body: OrderDraft,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> Order:
    """Company creates an order in `pending`. Codes are generated later, on acceptance."""
    order = await engine.create_order(session, body)
    return order.view_for(session)


@router.get("")
async def my_orders(
    status: OrderStatus | None = Query(default=None),
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> list[Order]:
    return await engine.list_my_orders(session, status)


@router.get("/available")
async def available_orders(
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> list[Order]:
    """Pending orders in the driver's city."""
    return await engine.list_available_orders(session)


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> Order:
    return await engine.get_order(session, order_id)


@router.post("/{order_id}/accept")
async def accept_order(
    order_id: str,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> AcceptResult:
    """
    Driver takes a pending order. 409 if someone else got it first or the
    driver already has an order in progress; 402 without active credits.
    """
    return await engine.accept_order(session, order_id)


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> Order:
    order = await engine.cancel_order(session, order_id)
    return order.view_for(session)


@router.post("/{order_id}/driver-complete")
async def complete_by_driver(
    order_id: str,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> Order:
    order = await engine.complete_by_driver(session, order_id)
    return order.view_for(session)


@router.post("/{order_id}/confirm")
async def confirm_completion(
    order_id: str,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> Order:
    order = await engine.confirm_completion(session, order_id)
    return order.view_for(session)


@router.get("/{order_id}/codes")
async def delivery_codes(
    order_id: str,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> list[DeliveryCodeView]:
    return await engine.delivery_codes(session, order_id)


@router.post("/{order_id}/sos")
async def report_problem(
    order_id: str,
    body: SosBody,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> SosReport:
    return await engine.report_problem(session, order_id, body.description)


@router.post("/{order_id}/rating", status_code=201)
async def rate_order(
    order_id: str,
    body: RatingBody,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> Rating:
    return await engine.rate_order(session, order_id, body.stars, body.comment)
