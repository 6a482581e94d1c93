"""
Persistence contract used by the engine, plus an in-process implementation.

Every mutual-exclusion rule (one driver per order, one accepted order per
driver, all codes validated before driver completion, the attempt cap) is
enforced here as a conditional write, never only by the caller's pre-checks.
"""
import asyncio
from datetime import datetime
from typing import Protocol

from flux import codes
from flux.errors import (
    ActiveOrderExistsError,
    AlreadyValidatedError,
    CodeNotSetError,
    CodesAlreadyGeneratedError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OrderUnavailableError,
    ValidationLockedError,
    ValidationPendingError,
)
from flux.models import Delivery, Order, Profile, Rating
from flux.order_state import OrderStatus, codes_expected, get_transition


class OrderStore(Protocol):
    async def get_profile(self, user_id: str) -> Profile | None: ...

    async def upsert_profile(self, profile: Profile) -> Profile: ...

    async def create_order(self, order: Order) -> Order: ...

    async def get_order(self, order_id: str) -> Order | None: ...

    async def get_delivery(self, delivery_id: str) -> Delivery | None: ...

    async def list_orders(
        self,
        *,
        company_user_id: str | None = None,
        driver_user_id: str | None = None,
        status: OrderStatus | None = None,
        city: str | None = None,
    ) -> list[Order]: ...

    async def has_active_order(self, driver_user_id: str) -> bool: ...

    async def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        *,
        at: datetime,
        driver_user_id: str | None = None,
        delivery_codes: dict[str, tuple[str, str]] | None = None,
    ) -> Order:
        """
        Compare-and-set on status. `delivery_codes` maps delivery id -> (plaintext, hash) and is
        written in the same step as the acceptance; a delivery that already has a
        code is never overwritten.
        """
        ...

    async def record_validation_attempt(
        self,
        delivery_id: str,
        candidate_hash: str,
        driver_user_id: str,
        *,
        max_attempts: int,
        at: datetime,
    ) -> tuple[bool, Delivery]: ...

    async def mark_code_sent(self, delivery_id: str, at: datetime) -> Delivery: ...

    async def add_rating(self, rating: Rating) -> Rating: ...

    async def list_ratings(self, to_user_id: str) -> list[Rating]: ...

    async def close(self) -> None: ...


def transition_conflict(current: OrderStatus, expected: OrderStatus, target: OrderStatus) -> ConflictError:
    """Error for a conditional write whose expected status no longer holds."""
    if expected == OrderStatus.PENDING and target == OrderStatus.ACCEPTED:
        return OrderUnavailableError()
    return InvalidTransitionError(current, target)


def check_delivery_codes(
    expected: OrderStatus,
    target: OrderStatus,
    deliveries: list,
    delivery_codes: dict[str, tuple[str, str]] | None,
) -> None:
    """
    Codes come with the transition into the assigned statuses and only then.
    `deliveries` is the current rows of the order (anything with `id` and `code_hash`).
    """
    generating = codes_expected(target) and not codes_expected(expected)
    if not generating:
        if delivery_codes:
            raise InvalidTransitionError(message="Codes are generated only when a driver accepts the order")
        return
    if any(d.code_hash is not None for d in deliveries):
        raise CodesAlreadyGeneratedError()
    if not delivery_codes or any(d.id not in delivery_codes for d in deliveries):
        raise ConflictError("A code is required for every delivery of the order")


class MemoryStore:
    """
    Single-process store. A lock serialises writers the way row locks do in
    Postgres; records are copied in and out so callers never share state.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._profiles: dict[str, Profile] = {}
        self._orders: dict[str, Order] = {}
        self._delivery_index: dict[str, str] = {}  # delivery_id -> order_id
        self._ratings: list[Rating] = []

    async def get_profile(self, user_id: str) -> Profile | None:
        profile = self._profiles.get(user_id)
        return profile.model_copy() if profile else None

    async def upsert_profile(self, profile: Profile) -> Profile:
        async with self._lock:
            self._profiles[profile.user_id] = profile.model_copy()
        return profile

    async def create_order(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise ConflictError("Order already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            for d in order.deliveries:
                self._delivery_index[d.id] = order.id
        return order.model_copy(deep=True)

    async def get_order(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        order_id = self._delivery_index.get(delivery_id)
        if order_id is None:
            return None
        delivery = self._orders[order_id].delivery(delivery_id)
        return delivery.model_copy() if delivery else None

    async def list_orders(
        self,
        *,
        company_user_id: str | None = None,
        driver_user_id: str | None = None,
        status: OrderStatus | None = None,
        city: str | None = None,
    ) -> list[Order]:
        result = []
        for order in self._orders.values():
            if company_user_id and order.company_user_id != company_user_id:
                continue
            if driver_user_id and order.driver_user_id != driver_user_id:
                continue
            if status and order.status != status:
                continue
            if city and order.city != city:
                continue
            result.append(order.model_copy(deep=True))
        result.sort(key=lambda o: o.created_at, reverse=True)
        return result

    async def has_active_order(self, driver_user_id: str) -> bool:
        return self._driver_has_active(driver_user_id)

    def _driver_has_active(self, driver_user_id: str, exclude: str | None = None) -> bool:
        return any(
            o.driver_user_id == driver_user_id and o.status == OrderStatus.ACCEPTED and o.id != exclude
            for o in self._orders.values()
        )

    async def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        *,
        at: datetime,
        driver_user_id: str | None = None,
        delivery_codes: dict[str, tuple[str, str]] | None = None,
    ) -> Order:
        transition = get_transition(expected, target)
        if transition is None:
            raise InvalidTransitionError(expected, target)
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFoundError("Order not found")
            if order.status != expected:
                raise transition_conflict(order.status, expected, target)

            update = {"status": target, "updated_at": at, transition.timestamp_field: at}
            if target == OrderStatus.ACCEPTED:
                if not driver_user_id:
                    raise ForbiddenError("A driver is required to accept an order")
                if self._driver_has_active(driver_user_id, exclude=order_id):
                    raise ActiveOrderExistsError()
                update["driver_user_id"] = driver_user_id
            elif driver_user_id and order.driver_user_id != driver_user_id:
                raise OrderUnavailableError("This order is assigned to another driver")
            if target == OrderStatus.DRIVER_COMPLETED and not order.all_validated():
                raise ValidationPendingError(order.pending_validations())

            check_delivery_codes(expected, target, order.deliveries, delivery_codes)
            if delivery_codes:
                update["deliveries"] = [
                    d.model_copy(update={"delivery_code": delivery_codes[d.id][0], "code_hash": delivery_codes[d.id][1]})
                    for d in order.deliveries
                ]

            updated = order.model_copy(update=update, deep=True)
            self._orders[order_id] = updated
        return updated.model_copy(deep=True)

    async def record_validation_attempt(
        self,
        delivery_id: str,
        candidate_hash: str,
        driver_user_id: str,
        *,
        max_attempts: int,
        at: datetime,
    ) -> tuple[bool, Delivery]:
        async with self._lock:
            order_id = self._delivery_index.get(delivery_id)
            if order_id is None:
                raise NotFoundError("Delivery not found")
            order = self._orders[order_id]
            delivery = order.delivery(delivery_id)
            if order.driver_user_id != driver_user_id:
                raise ForbiddenError("You are not the driver of this order")
            if order.status != OrderStatus.ACCEPTED:
                raise InvalidTransitionError(message="This order is not in progress")
            if delivery.is_validated:
                raise AlreadyValidatedError()
            if delivery.code_hash is None:
                raise CodeNotSetError()
            if delivery.validation_attempts >= max_attempts:
                raise ValidationLockedError()

            update = {"last_attempt_by": driver_user_id, "last_attempt_at": at}
            matched = codes.hashes_match(candidate_hash, delivery.code_hash)
            if matched:
                update.update(validated_at=at, validated_by=driver_user_id)
            else:
                update["validation_attempts"] = delivery.validation_attempts + 1
            updated = delivery.model_copy(update=update)
            self._replace_delivery(order, updated)
        return matched, updated.model_copy()

    async def mark_code_sent(self, delivery_id: str, at: datetime) -> Delivery:
        async with self._lock:
            order_id = self._delivery_index.get(delivery_id)
            if order_id is None:
                raise NotFoundError("Delivery not found")
            order = self._orders[order_id]
            updated = order.delivery(delivery_id).model_copy(update={"code_sent_at": at})
            self._replace_delivery(order, updated)
        return updated.model_copy()

    def _replace_delivery(self, order: Order, delivery: Delivery) -> None:
        deliveries = [delivery if d.id == delivery.id else d for d in order.deliveries]
        self._orders[order.id] = order.model_copy(update={"deliveries": deliveries})

    async def add_rating(self, rating: Rating) -> Rating:
        async with self._lock:
            if any(r.order_id == rating.order_id and r.from_user_id == rating.from_user_id for r in self._ratings):
                raise ConflictError("You already rated this order")
            self._ratings.append(rating.model_copy())
        return rating

    async def list_ratings(self, to_user_id: str) -> list[Rating]:
        return [r.model_copy() for r in self._ratings if r.to_user_id == to_user_id]

    async def close(self) -> None:
        return None
