from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from flux.deps import current_session, get_engine
from flux.engine import OrderEngine
from flux.models import Delivery, Session, ValidationResult

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


class ValidateCodeBody(BaseModel):
    code: str = Field(..., description="Code the customer gave the driver")


@router.post("/{delivery_id}/validate")
async def validate_code(
    delivery_id: str,
    body: ValidateCodeBody,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> ValidationResult:
    """
    200 with ok=false on a wrong code (attempts_remaining tells how many are left).
    423 once the attempt cap is reached.
    """
    return await engine.validate_delivery_code(session, delivery_id, body.code)


@router.post("/{delivery_id}/code-sent")
async def mark_code_sent(
    delivery_id: str,
    session: Session = Depends(current_session),
    engine: OrderEngine = Depends(get_engine),
) -> dict:
    delivery: Delivery = await engine.mark_code_sent(session, delivery_id)
    return {"delivery_id": delivery.id, "code_sent_at": delivery.code_sent_at}
