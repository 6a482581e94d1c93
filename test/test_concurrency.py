"""
Racing sessions against shared state. The store's conditional writes decide;
the engine's pre-checks are only a fast path.
"""
import asyncio

import pytest

from conftest import START, add_user, order_draft
from flux import codes
from flux.errors import (
    ActiveOrderExistsError,
    CodesAlreadyGeneratedError,
    ConflictError,
    InvalidTransitionError,
    OrderUnavailableError,
    ValidationPendingError,
)
from flux.order_state import ASSIGNED_STATUSES, OrderStatus, Role
from flux.store import check_delivery_codes


def _codes_for(order, code="123456"):
    return {d.id: (code, codes.hash_code(code)) for d in order.deliveries}


async def test_two_drivers_race_for_one_order(engine, store, company, driver_a, driver_b):
    order = await engine.create_order(company, order_draft("6.00", "9.00"))

    results = await asyncio.gather(
        engine.accept_order(driver_a, order.id),
        engine.accept_order(driver_b, order.id),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], OrderUnavailableError)

    stored = await store.get_order(order.id)
    assert stored.driver_user_id == winners[0].order.driver_user_id
    # codes were written exactly once, by the winner
    assert all(d.code_hash is not None for d in stored.deliveries)


async def test_many_drivers_race(engine, store, company):
    order = await engine.create_order(company, order_draft("6.00"))
    drivers = [await add_user(store, f"driver-{n}", Role.DRIVER) for n in range(8)]

    results = await asyncio.gather(
        *(engine.accept_order(d, order.id) for d in drivers),
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))


async def test_one_driver_races_for_two_orders(engine, store, company, driver_a):
    first = await engine.create_order(company, order_draft("6.00"))
    second = await engine.create_order(company, order_draft("9.00"))

    results = await asyncio.gather(
        engine.accept_order(driver_a, first.id),
        engine.accept_order(driver_a, second.id),
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert any(isinstance(r, ActiveOrderExistsError) for r in results)
    active = await store.list_orders(driver_user_id=driver_a.user_id, status=OrderStatus.ACCEPTED)
    assert len(active) == 1


async def test_store_rejects_stale_expected_status(store, engine, company):
    order = await engine.create_order(company, order_draft("6.00"))
    await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.ACCEPTED,
                                 at=START, driver_user_id="driver-a", delivery_codes=_codes_for(order))

    with pytest.raises(OrderUnavailableError):
        await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.ACCEPTED,
                                     at=START, driver_user_id="driver-b", delivery_codes=_codes_for(order))
    with pytest.raises(InvalidTransitionError):
        await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED, at=START)


async def test_store_enforces_single_active_order(store, engine, company):
    first = await engine.create_order(company, order_draft("6.00"))
    second = await engine.create_order(company, order_draft("9.00"))
    await store.transition_order(first.id, OrderStatus.PENDING, OrderStatus.ACCEPTED,
                                 at=START, driver_user_id="driver-a", delivery_codes=_codes_for(first))

    with pytest.raises(ActiveOrderExistsError):
        await store.transition_order(second.id, OrderStatus.PENDING, OrderStatus.ACCEPTED,
                                     at=START, driver_user_id="driver-a", delivery_codes=_codes_for(second))
    assert (await store.get_order(second.id)).status == OrderStatus.PENDING


async def test_store_requires_codes_with_acceptance(store, engine, company):
    order = await engine.create_order(company, order_draft("6.00", "9.00"))
    partial = dict(list(_codes_for(order).items())[:1])

    with pytest.raises(ConflictError):
        await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.ACCEPTED,
                                     at=START, driver_user_id="driver-a", delivery_codes=partial)

    stored = await store.get_order(order.id)
    assert stored.status == OrderStatus.PENDING
    assert all(d.code_hash is None for d in stored.deliveries)


async def test_codes_are_never_regenerated(store, engine, company):
    order = await engine.create_order(company, order_draft("6.00"))
    await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.ACCEPTED,
                                 at=START, driver_user_id="driver-a", delivery_codes=_codes_for(order, "111111"))
    await store.record_validation_attempt(order.deliveries[0].id, codes.hash_code("111111"), "driver-a",
                                          max_attempts=5, at=START)

    with pytest.raises(InvalidTransitionError):
        await store.transition_order(order.id, OrderStatus.ACCEPTED, OrderStatus.DRIVER_COMPLETED,
                                     at=START, driver_user_id="driver-a", delivery_codes=_codes_for(order, "222222"))

    assert (await store.get_order(order.id)).deliveries[0].delivery_code == "111111"


def test_codes_already_generated_is_reported():
    class Row:
        id = "d1"
        code_hash = "abc"

    with pytest.raises(CodesAlreadyGeneratedError):
        check_delivery_codes(OrderStatus.PENDING, OrderStatus.ACCEPTED, [Row()], {"d1": ("1", "h")})


async def test_store_blocks_driver_completed_with_pending_codes(store, engine, company):
    order = await engine.create_order(company, order_draft("6.00"))
    await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.ACCEPTED,
                                 at=START, driver_user_id="driver-a", delivery_codes=_codes_for(order))

    with pytest.raises(ValidationPendingError):
        await store.transition_order(order.id, OrderStatus.ACCEPTED, OrderStatus.DRIVER_COMPLETED,
                                     at=START, driver_user_id="driver-a")


async def test_driver_iff_assigned_status(engine, store, company, driver_a):
    pending = await engine.create_order(company, order_draft("6.00"))
    cancelled = await engine.create_order(company, order_draft("6.00"))
    accepted = await engine.create_order(company, order_draft("6.00"))
    await engine.cancel_order(company, cancelled.id)
    await engine.accept_order(driver_a, accepted.id)

    for order in await store.list_orders():
        assert (order.driver_user_id is not None) == (order.status in ASSIGNED_STATUSES)
    assert {o.id for o in await store.list_orders()} == {pending.id, cancelled.id, accepted.id}
