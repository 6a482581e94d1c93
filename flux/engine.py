"""
Order lifecycle and delivery-code validation.

Every operation takes the acting Session explicitly; the guards below are
plain functions of (session, order, now) so they can be checked in isolation.
The store re-validates each guard as a conditional write; the engine's checks
are only the fast path.
"""
import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from decimal import Decimal

from flux import codes
from flux.config import settings
from flux.dispatch import CodeDispatcher, DispatchJob
from flux.errors import (
    ActiveOrderExistsError,
    EntitlementError,
    FluxError,
    ForbiddenError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    OrderUnavailableError,
    TransportError,
    ValidationLockedError,
    ValidationPendingError,
)
from flux.messaging import (
    MessagingGateway,
    delivery_code_message,
    sos_message,
    support_whatsapp_url,
    whatsapp_url,
)
from flux.metrics import (
    code_dispatch_failed_total,
    code_validations_total,
    codes_dispatched_total,
    order_transitions_rejected_total,
    order_transitions_total,
    orders_created_total,
)
from flux.models import (
    AcceptResult,
    Delivery,
    DeliveryCodeView,
    Order,
    OrderChangeEvent,
    OrderChangeFilter,
    OrderDraft,
    Profile,
    Rating,
    Session,
    SosReport,
    ValidationResult,
    new_id,
    to_money,
    utcnow,
)
from flux.order_state import OrderStatus, Role, get_transition, is_active
from flux.realtime import ChangePublisher
from flux.store import OrderStore

logger = logging.getLogger(__name__)

MIN_ADDRESS_LENGTH = 5
MAX_ADDRESS_LENGTH = 500
MAX_NOTES_LENGTH = 500
MIN_PRICE = Decimal("0")
MAX_PRICE = Decimal("10000")
MAX_TOTAL_VALUE = Decimal("100000")
MIN_PHONE_DIGITS = 8
MAX_DESCRIPTION_LENGTH = 1000


def check_actor(session: Session, role: Role) -> None:
    if session.role != role:
        raise ForbiddenError(f"Only a {role.value} can do this")


def check_entitlement(session: Session, now: datetime) -> None:
    if not session.has_entitlement(now):
        raise EntitlementError(redirect=settings.subscription_url)


def check_transition(current: OrderStatus, target: OrderStatus, role: Role) -> None:
    transition = get_transition(current, target)
    if transition is None:
        raise InvalidTransitionError(current, target)
    if transition.actor != role:
        raise ForbiddenError(f"Only a {transition.actor.value} can move an order to {target.value}")


def check_company_owner(session: Session, order: Order) -> None:
    if session.role != Role.COMPANY or order.company_user_id != session.user_id:
        raise ForbiddenError("This order belongs to another company")


def check_assigned_driver(session: Session, order: Order) -> None:
    if session.role != Role.DRIVER or order.driver_user_id != session.user_id:
        raise ForbiddenError("You are not the driver of this order")


def can_view(session: Session, order: Order) -> bool:
    if session.role == Role.ADMIN or order.company_user_id == session.user_id:
        return True
    if session.role == Role.DRIVER:
        if order.driver_user_id == session.user_id:
            return True
        return order.status == OrderStatus.PENDING and bool(session.city) and order.city == session.city
    return False


def _clean_text(value: str | None) -> str:
    return (value or "").strip()


def build_deliveries(order_id: str, draft: OrderDraft) -> list[Delivery]:
    """Validate a draft and turn it into delivery records. Raises InvalidInputError on the first problem."""
    if not draft.deliveries:
        raise InvalidInputError("Add at least one delivery")
    deliveries = []
    for n, d in enumerate(draft.deliveries, start=1):
        pickup = _clean_text(d.pickup_address)
        dropoff = _clean_text(d.dropoff_address)
        notes = _clean_text(d.notes) or None
        name = _clean_text(d.customer_name)
        phone = "".join(ch for ch in (d.customer_phone or "") if ch.isdigit())

        if len(pickup) < MIN_ADDRESS_LENGTH:
            raise InvalidInputError(f"Delivery {n}: pickup address too short (minimum {MIN_ADDRESS_LENGTH} characters)")
        if len(pickup) > MAX_ADDRESS_LENGTH:
            raise InvalidInputError(f"Delivery {n}: pickup address too long (maximum {MAX_ADDRESS_LENGTH} characters)")
        if len(dropoff) < MIN_ADDRESS_LENGTH:
            raise InvalidInputError(f"Delivery {n}: dropoff address too short (minimum {MIN_ADDRESS_LENGTH} characters)")
        if len(dropoff) > MAX_ADDRESS_LENGTH:
            raise InvalidInputError(f"Delivery {n}: dropoff address too long (maximum {MAX_ADDRESS_LENGTH} characters)")
        if notes and len(notes) > MAX_NOTES_LENGTH:
            raise InvalidInputError(f"Delivery {n}: notes too long (maximum {MAX_NOTES_LENGTH} characters)")
        if not MIN_PRICE <= d.suggested_price <= MAX_PRICE:
            raise InvalidInputError(f"Delivery {n}: price must be between R${MIN_PRICE} and R${MAX_PRICE}")
        if not name:
            raise InvalidInputError(f"Delivery {n}: customer name is required")
        if len(phone) < MIN_PHONE_DIGITS:
            raise InvalidInputError(f"Delivery {n}: customer phone is required")

        deliveries.append(Delivery(
            order_id=order_id,
            pickup_address=pickup,
            dropoff_address=dropoff,
            package_type=d.package_type,
            suggested_price=to_money(d.suggested_price),
            notes=notes,
            customer_name=name,
            customer_phone=phone,
        ))
    return deliveries


class OrderEngine:
    def __init__(
        self,
        store: OrderStore,
        dispatcher: CodeDispatcher,
        publisher: ChangePublisher,
        gateway: MessagingGateway,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_validation_attempts: int | None = None,
        code_factory: Callable[[], str] = codes.generate_code,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.gateway = gateway
        self.clock = clock
        self.max_validation_attempts = max_validation_attempts or settings.max_validation_attempts
        self.code_factory = code_factory

    async def load_session(self, user_id: str) -> Session:
        profile = await self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Unknown user")
        return Session.from_profile(profile)

    async def _get_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def _publish(self, event_type: str, order: Order, old_status: OrderStatus | None = None) -> None:
        try:
            await self.publisher.publish(OrderChangeEvent.from_order(event_type, order, old_status))
        except Exception:
            # the write is already committed; subscribers catch up on their next fetch
            logger.exception("Failed to publish %s for order_id=%s", event_type, order.id)

    async def _transition(
        self,
        session: Session,
        order: Order,
        target: OrderStatus,
        *,
        driver_user_id: str | None = None,
        codes_by_delivery: dict[str, tuple[str, str]] | None = None,
    ) -> Order:
        try:
            check_transition(order.status, target, session.role)
            updated = await self.store.transition_order(
                order.id,
                order.status,
                target,
                at=self.clock(),
                driver_user_id=driver_user_id,
                delivery_codes=codes_by_delivery,
            )
        except FluxError as e:
            order_transitions_rejected_total.labels(target_status=target.value, reason=e.code).inc()
            logger.info("Rejected %s -> %s for order_id=%s by user_id=%s: %s",
                        order.status.value, target.value, order.id, session.user_id, e.message)
            raise
        order_transitions_total.labels(from_status=order.status.value, to_status=target.value).inc()
        logger.info("Order %s (%s) %s -> %s by user_id=%s",
                    order.id, order.short_code, order.status.value, target.value, session.user_id)
        await self._publish("UPDATE", updated, old_status=order.status)
        return updated

    # company

    async def create_order(self, session: Session, draft: OrderDraft) -> Order:
        check_actor(session, Role.COMPANY)
        check_entitlement(session, self.clock())
        if not _clean_text(session.city):
            raise InvalidInputError("Complete your company profile (city) before creating orders")

        order_id = new_id()
        deliveries = build_deliveries(order_id, draft)
        total = to_money(sum((d.suggested_price for d in deliveries), Decimal("0")))
        if total > MAX_TOTAL_VALUE:
            raise InvalidInputError(f"Order total must be at most R${MAX_TOTAL_VALUE}")

        now = self.clock()
        order = Order(
            id=order_id,
            company_user_id=session.user_id,
            status=OrderStatus.PENDING,
            total_value=total,
            state=session.state or settings.default_order_state,
            city=_clean_text(session.city),
            created_at=now,
            updated_at=now,
            deliveries=deliveries,
        )
        order = await self.store.create_order(order)
        orders_created_total.inc()
        logger.info("Order %s (%s) created by company user_id=%s: %d deliveries, total=%s",
                    order.id, order.short_code, session.user_id, len(deliveries), order.total_value)
        await self._publish("INSERT", order)
        return order

    async def cancel_order(self, session: Session, order_id: str) -> Order:
        order = await self._get_order(order_id)
        check_company_owner(session, order)
        return await self._transition(session, order, OrderStatus.CANCELLED)

    async def confirm_completion(self, session: Session, order_id: str) -> Order:
        """driver_completed -> completed. Frees the driver's active-order slot."""
        order = await self._get_order(order_id)
        check_company_owner(session, order)
        return await self._transition(session, order, OrderStatus.COMPLETED)

    async def delivery_codes(self, session: Session, order_id: str) -> list[DeliveryCodeView]:
        """Plaintext codes for the owning company (or an admin). Same value on every read."""
        order = await self._get_order(order_id)
        if session.role != Role.ADMIN:
            check_company_owner(session, order)
        views = []
        for d in order.deliveries:
            url = None
            if d.delivery_code:
                url = whatsapp_url(d.customer_phone, delivery_code_message(order.short_code, d.customer_name, d.delivery_code))
            views.append(DeliveryCodeView(
                delivery_id=d.id,
                order_id=order.id,
                order_code=order.short_code,
                customer_name=d.customer_name,
                customer_phone=d.customer_phone,
                dropoff_address=d.dropoff_address,
                code=d.delivery_code,
                code_sent_at=d.code_sent_at,
                validated_at=d.validated_at,
                validation_attempts=d.validation_attempts,
                whatsapp_url=url,
            ))
        return views

    async def mark_code_sent(self, session: Session, delivery_id: str) -> Delivery:
        """The company relayed the code itself (e.g. over WhatsApp)."""
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery not found")
        order = await self._get_order(delivery.order_id)
        check_company_owner(session, order)
        if delivery.delivery_code is None:
            raise InvalidTransitionError(message="The code for this delivery has not been generated yet")
        return await self.store.mark_code_sent(delivery_id, self.clock())

    # driver

    async def list_available_orders(self, session: Session) -> list[Order]:
        check_actor(session, Role.DRIVER)
        city = _clean_text(session.city)
        if not city:
            return []
        orders = await self.store.list_orders(status=OrderStatus.PENDING, city=city)
        return [o.view_for(session) for o in orders]

    def generate_delivery_codes(self, order: Order) -> tuple[dict[str, str], dict[str, tuple[str, str]]]:
        """Fresh (plaintext, hash) per delivery. Persisted only together with the acceptance."""
        plain = {d.id: self.code_factory() for d in order.deliveries}
        return plain, {delivery_id: (code, codes.hash_code(code)) for delivery_id, code in plain.items()}

    async def accept_order(self, session: Session, order_id: str) -> AcceptResult:
        check_actor(session, Role.DRIVER)
        now = self.clock()
        try:
            check_entitlement(session, now)
            if await self.store.has_active_order(session.user_id):
                raise ActiveOrderExistsError()
            order = await self._get_order(order_id)
            if order.status != OrderStatus.PENDING:
                raise OrderUnavailableError()
        except FluxError as e:
            order_transitions_rejected_total.labels(target_status=OrderStatus.ACCEPTED.value, reason=e.code).inc()
            raise

        plain, hashed = self.generate_delivery_codes(order)
        accepted = await self._transition(
            session,
            order,
            OrderStatus.ACCEPTED,
            driver_user_id=session.user_id,
            codes_by_delivery=hashed,
        )
        result = AcceptResult(order=accepted.view_for(session), codes_generated=len(plain))
        for d in accepted.deliveries:
            await self._dispatch_code(accepted, d, plain[d.id], result)
        if result.dispatch_failures:
            logger.warning("Order %s accepted but %d code(s) could not be dispatched",
                           accepted.id, len(result.dispatch_failures))
        return result

    async def _dispatch_code(self, order: Order, delivery: Delivery, code: str, result: AcceptResult) -> None:
        """Best effort: a failed dispatch is reported, never undoes the acceptance."""
        job = DispatchJob(
            delivery_id=delivery.id,
            order_id=order.id,
            order_code=order.short_code,
            customer_name=delivery.customer_name,
            phone=delivery.customer_phone,
            code=code,
        )
        try:
            await self.dispatcher.dispatch(job)
            await self.store.mark_code_sent(delivery.id, self.clock())
        except Exception as e:
            code_dispatch_failed_total.inc()
            logger.exception("Code dispatch failed for delivery_id=%s (order_id=%s)", delivery.id, order.id)
            result.dispatch_failures[delivery.id] = str(e) or e.__class__.__name__
            return
        codes_dispatched_total.inc()
        result.dispatched.append(delivery.id)

    async def validate_delivery_code(self, session: Session, delivery_id: str, candidate: str) -> ValidationResult:
        check_actor(session, Role.DRIVER)
        try:
            normalized = codes.check_format(candidate)
            matched, delivery = await self.store.record_validation_attempt(
                delivery_id,
                codes.hash_code(normalized),
                session.user_id,
                max_attempts=self.max_validation_attempts,
                at=self.clock(),
            )
        except ValidationLockedError:
            code_validations_total.labels(outcome="locked").inc()
            logger.warning("Validation refused for delivery_id=%s by driver user_id=%s: attempt cap reached",
                           delivery_id, session.user_id)
            raise
        except FluxError:
            code_validations_total.labels(outcome="rejected").inc()
            raise

        remaining = delivery.attempts_remaining(self.max_validation_attempts)
        if matched:
            code_validations_total.labels(outcome="ok").inc()
            logger.info("Delivery %s validated by driver user_id=%s", delivery_id, session.user_id)
        else:
            code_validations_total.labels(outcome="mismatch").inc()
            logger.info("Wrong code for delivery_id=%s by driver user_id=%s (attempt %d, %d left)",
                        delivery_id, session.user_id, delivery.validation_attempts, remaining)

        # the attempt is committed; a failed re-read must not turn it into an error
        try:
            order = await self._get_order(delivery.order_id)
            pending = order.pending_validations()
        except TransportError:
            logger.warning("Could not reload order_id=%s after validating delivery_id=%s",
                           delivery.order_id, delivery_id)
            pending = None
        return ValidationResult(
            ok=matched,
            attempts_remaining=remaining,
            delivery_id=delivery_id,
            validated_at=delivery.validated_at,
            pending_validations=pending,
        )

    async def complete_by_driver(self, session: Session, order_id: str) -> Order:
        """accepted -> driver_completed, only once every delivery code was validated."""
        order = await self._get_order(order_id)
        check_assigned_driver(session, order)
        if is_active(order.status) and not order.all_validated():
            pending = order.pending_validations()
            order_transitions_rejected_total.labels(
                target_status=OrderStatus.DRIVER_COMPLETED.value, reason=ValidationPendingError.code,
            ).inc()
            raise ValidationPendingError(pending)
        return await self._transition(session, order, OrderStatus.DRIVER_COMPLETED, driver_user_id=session.user_id)

    async def report_problem(self, session: Session, order_id: str, description: str) -> SosReport:
        """SOS from the driver of an in-progress order. Goes to the company's phone when known, else support."""
        order = await self._get_order(order_id)
        check_assigned_driver(session, order)
        if not is_active(order.status):
            raise InvalidTransitionError(message="SOS is only available for orders in progress")
        description = _clean_text(description)
        if not description:
            raise InvalidInputError("Describe the problem")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvalidInputError(f"Description too long (maximum {MAX_DESCRIPTION_LENGTH} characters)")

        company = await self.store.get_profile(order.company_user_id)
        company_phone = company.phone if company and company.phone else None
        text = sos_message(session.name or session.user_id, order.short_code, description)
        try:
            await self.gateway.notify_support(text, company_phone)
        except Exception:
            logger.exception("SOS notification failed for order_id=%s", order.id)
        logger.warning("SOS for order %s (%s) from driver user_id=%s", order.id, order.short_code, session.user_id)
        url = whatsapp_url(company_phone, text) if company_phone else support_whatsapp_url(text)
        return SosReport(order_id=order.id, order_code=order.short_code, whatsapp_url=url)

    # shared

    async def get_order(self, session: Session, order_id: str) -> Order:
        order = await self._get_order(order_id)
        if not can_view(session, order):
            raise ForbiddenError("You cannot see this order")
        return order.view_for(session)

    async def list_my_orders(self, session: Session, status: OrderStatus | None = None) -> list[Order]:
        if session.role == Role.COMPANY:
            orders = await self.store.list_orders(company_user_id=session.user_id, status=status)
        elif session.role == Role.DRIVER:
            orders = await self.store.list_orders(driver_user_id=session.user_id, status=status)
        else:
            orders = await self.store.list_orders(status=status)
        return [o.view_for(session) for o in orders]

    async def rate_order(self, session: Session, order_id: str, stars: int, comment: str | None = None) -> Rating:
        order = await self._get_order(order_id)
        if order.status != OrderStatus.COMPLETED:
            raise InvalidTransitionError(message="Only completed orders can be rated")
        if session.role == Role.COMPANY and order.company_user_id == session.user_id:
            to_user_id = order.driver_user_id
        elif session.role == Role.DRIVER and order.driver_user_id == session.user_id:
            to_user_id = order.company_user_id
        else:
            raise ForbiddenError("You did not take part in this order")
        if not 1 <= stars <= 5:
            raise InvalidInputError("Rating must be between 1 and 5 stars")
        rating = Rating(
            order_id=order.id,
            from_user_id=session.user_id,
            to_user_id=to_user_id,
            stars=stars,
            comment=_clean_text(comment) or None,
            created_at=self.clock(),
        )
        return await self.store.add_rating(rating)

    async def ratings_for(self, user_id: str) -> tuple[list[Rating], float | None]:
        ratings = await self.store.list_ratings(user_id)
        average = round(sum(r.stars for r in ratings) / len(ratings), 1) if ratings else None
        return ratings, average

    def subscribe_to_order_changes(
        self, session: Session, flt: OrderChangeFilter | None = None,
    ) -> AsyncIterator[OrderChangeEvent]:
        """
        Change stream scoped to what the session may see: companies get their
        own orders, drivers their assigned orders or pending orders in their city.
        """
        flt = flt or OrderChangeFilter()
        if session.role == Role.COMPANY:
            flt = flt.model_copy(update={"company_user_id": session.user_id})
        elif session.role == Role.DRIVER:
            if flt.status == OrderStatus.PENDING and session.city:
                flt = flt.model_copy(update={"city": session.city, "driver_user_id": None})
            else:
                flt = flt.model_copy(update={"driver_user_id": session.user_id})
        return self.publisher.subscribe(flt)

    # admin

    async def admin_list_orders(self, session: Session, status: OrderStatus | None = None) -> list[Order]:
        check_actor(session, Role.ADMIN)
        return [o.view_for(session) for o in await self.store.list_orders(status=status)]

    async def admin_upsert_profile(self, session: Session, profile: Profile) -> Profile:
        check_actor(session, Role.ADMIN)
        saved = await self.store.upsert_profile(profile)
        logger.info("Profile %s (%s) saved by admin user_id=%s", profile.user_id, profile.role.value, session.user_id)
        return saved
