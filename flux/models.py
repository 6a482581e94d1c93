"""
Domain records shared by the engine, the stores and the HTTP layer.
"""
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flux.order_state import OrderStatus, Role

CENTS = Decimal("0.01")

# Preset price tiers offered when creating a delivery (custom prices are also allowed)
PRICE_TIERS = (Decimal("3"), Decimal("6"), Decimal("9"), Decimal("12"), Decimal("15"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def as_utc(value: datetime | None) -> datetime | None:
    """Naive timestamps are taken as UTC so they compare with aware ones."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_order_code(order_id: str) -> str:
    """Short readable code like #A015, derived from the first hex digits of the id."""
    if not order_id or len(order_id) < 8:
        return "#????"
    num = int(order_id.replace("-", "")[:4], 16)
    return f"#{chr(65 + num % 26)}{num % 1000:03d}"


class PackageType(str, Enum):
    ENVELOPE = "envelope"
    BAG = "bag"
    SMALL_BOX = "small_box"
    LARGE_BOX = "large_box"
    OTHER = "other"


class Profile(BaseModel):
    """User record owned by the identity service; cached in our store for lookups."""

    user_id: str
    role: Role
    name: str = ""
    phone: str | None = None
    city: str | None = None
    state: str | None = None
    credits_valid_until: datetime | None = None

    @field_validator("credits_valid_until")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)


class Session(BaseModel):
    """Acting user for one request. Built from a freshly loaded profile."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role
    name: str = ""
    phone: str | None = None
    city: str | None = None
    state: str | None = None
    credits_valid_until: datetime | None = None

    @field_validator("credits_valid_until")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)

    @classmethod
    def from_profile(cls, profile: Profile) -> "Session":
        return cls(**profile.model_dump())

    def has_entitlement(self, now: datetime) -> bool:
        return self.credits_valid_until is not None and self.credits_valid_until > now


class DeliveryDraft(BaseModel):
    pickup_address: str
    dropoff_address: str
    package_type: PackageType = PackageType.OTHER
    suggested_price: Decimal
    notes: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None

    @field_validator("suggested_price", mode="before")
    @classmethod
    def _money(cls, v):
        try:
            amount = Decimal(str(v)) if v is not None else None
        except InvalidOperation:
            amount = None
        if amount is None or not amount.is_finite():
            raise ValueError("Enter a valid price")
        return to_money(amount)


class OrderDraft(BaseModel):
    deliveries: list[DeliveryDraft]


class Delivery(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    pickup_address: str
    dropoff_address: str
    package_type: PackageType
    suggested_price: Decimal
    notes: str | None = None
    customer_name: str
    customer_phone: str
    delivery_code: str | None = None
    code_hash: str | None = None
    code_sent_at: datetime | None = None
    validated_at: datetime | None = None
    validated_by: str | None = None
    validation_attempts: int = 0
    last_attempt_by: str | None = None
    last_attempt_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_validated(self) -> bool:
        return self.validated_at is not None

    def attempts_remaining(self, max_attempts: int) -> int:
        return max(max_attempts - self.validation_attempts, 0)

    def is_locked(self, max_attempts: int) -> bool:
        return not self.is_validated and self.validation_attempts >= max_attempts


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    company_user_id: str
    driver_user_id: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    total_value: Decimal
    state: str | None = None
    city: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    accepted_at: datetime | None = None
    driver_completed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    deliveries: list[Delivery] = Field(default_factory=list)

    @property
    def short_code(self) -> str:
        return format_order_code(self.id)

    def pending_validations(self) -> int:
        return sum(1 for d in self.deliveries if not d.is_validated)

    def all_validated(self) -> bool:
        return self.pending_validations() == 0

    def delivery(self, delivery_id: str) -> Delivery | None:
        return next((d for d in self.deliveries if d.id == delivery_id), None)

    def view_for(self, session: Session) -> "Order":
        """
        Copy safe to hand to `session`. The hash never leaves the engine; the
        plaintext code is only shown to the owning company and admins.
        """
        show_code = session.role == Role.ADMIN or session.user_id == self.company_user_id
        deliveries = [
            d.model_copy(update={
                "code_hash": None,
                "delivery_code": d.delivery_code if show_code else None,
            })
            for d in self.deliveries
        ]
        return self.model_copy(update={"deliveries": deliveries})


class AcceptResult(BaseModel):
    order: Order
    codes_generated: int
    dispatched: list[str] = Field(default_factory=list)
    dispatch_failures: dict[str, str] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    ok: bool
    attempts_remaining: int
    delivery_id: str
    validated_at: datetime | None = None
    pending_validations: int | None = None


class DeliveryCodeView(BaseModel):
    delivery_id: str
    order_id: str
    order_code: str
    customer_name: str
    customer_phone: str
    dropoff_address: str
    code: str | None
    code_sent_at: datetime | None = None
    validated_at: datetime | None = None
    validation_attempts: int = 0
    whatsapp_url: str | None = None


class OrderChangeFilter(BaseModel):
    company_user_id: str | None = None
    driver_user_id: str | None = None
    status: OrderStatus | None = None
    city: str | None = None
    event_type: Literal["INSERT", "UPDATE"] | None = None


class OrderChangeEvent(BaseModel):
    event_type: Literal["INSERT", "UPDATE"]
    order_id: str
    company_user_id: str
    driver_user_id: str | None = None
    status: OrderStatus
    old_status: OrderStatus | None = None
    city: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_order(cls, event_type, order: Order, old_status: OrderStatus | None = None) -> "OrderChangeEvent":
        return cls(
            event_type=event_type,
            order_id=order.id,
            company_user_id=order.company_user_id,
            driver_user_id=order.driver_user_id,
            status=order.status,
            old_status=old_status,
            city=order.city,
            occurred_at=order.updated_at,
        )

    def matches(self, flt: OrderChangeFilter) -> bool:
        if flt.event_type and self.event_type != flt.event_type:
            return False
        if flt.company_user_id and self.company_user_id != flt.company_user_id:
            return False
        if flt.driver_user_id and self.driver_user_id != flt.driver_user_id:
            return False
        if flt.status and self.status != flt.status:
            return False
        if flt.city and self.city != flt.city:
            return False
        return True


class Rating(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    from_user_id: str
    to_user_id: str
    stars: int = Field(ge=1, le=5)
    comment: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class SosReport(BaseModel):
    order_id: str
    order_code: str
    whatsapp_url: str
