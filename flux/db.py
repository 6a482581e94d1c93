"""
Async Postgres store: profiles, orders, order_deliveries, ratings.
Every state change runs in one transaction that locks the order (or delivery)
row first, re-checks the expected status, then writes. The partial unique
index on (driver_user_id) WHERE status = 'accepted' is the final word on the
single-active-order rule when two sessions race.
"""
import asyncio
import logging
from datetime import datetime
from typing import NamedTuple

import asyncpg
from asyncpg.exceptions import PostgresConnectionError, UniqueViolationError

from flux import codes
from flux.config import settings
from flux.errors import (
    ActiveOrderExistsError,
    AlreadyValidatedError,
    CodeNotSetError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OrderUnavailableError,
    TransportError,
    ValidationLockedError,
    ValidationPendingError,
)
from flux.models import Delivery, Order, Profile, Rating
from flux.order_state import ASSIGNED_STATUSES, OrderStatus, get_transition
from flux.store import check_delivery_codes, transition_conflict

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None

_CONNECTION_ERRORS = (PostgresConnectionError, ConnectionError, OSError, asyncio.TimeoutError)

# Columns a transition is allowed to stamp
_TIMESTAMP_COLUMNS = {"accepted_at", "driver_completed_at", "completed_at", "cancelled_at"}

_ORDER_COLUMNS = """
    id, company_user_id, driver_user_id, status, total_value, state, city,
    created_at, updated_at, accepted_at, driver_completed_at, completed_at, cancelled_at
"""


class _CodeRow(NamedTuple):
    id: str
    code_hash: str | None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    assigned = ", ".join(f"'{s.value}'" for s in ASSIGNED_STATUSES)
    statuses = ", ".join(f"'{s.value}'" for s in OrderStatus)
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                user_id VARCHAR(64) PRIMARY KEY,
                role VARCHAR(20) NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                phone VARCHAR(32),
                city TEXT,
                state VARCHAR(8),
                credits_valid_until TIMESTAMPTZ
            );
        """)
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                company_user_id VARCHAR(64) NOT NULL,
                driver_user_id VARCHAR(64),
                status VARCHAR(20) NOT NULL CHECK (status IN ({statuses})),
                total_value NUMERIC(12, 2) NOT NULL,
                state VARCHAR(8),
                city TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                accepted_at TIMESTAMPTZ,
                driver_completed_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ,
                CONSTRAINT orders_driver_matches_status
                    CHECK ((driver_user_id IS NOT NULL) = (status IN ({assigned})))
            );
        """)
        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_one_active_per_driver
            ON orders(driver_user_id) WHERE status = 'accepted';
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_status_city ON orders(status, city);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_company ON orders(company_user_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_deliveries (
                id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                pickup_address VARCHAR(500) NOT NULL,
                dropoff_address VARCHAR(500) NOT NULL,
                package_type VARCHAR(20) NOT NULL,
                suggested_price NUMERIC(10, 2) NOT NULL,
                notes VARCHAR(500),
                customer_name TEXT NOT NULL,
                customer_phone VARCHAR(32) NOT NULL,
                delivery_code VARCHAR(16),
                code_hash VARCHAR(64),
                code_sent_at TIMESTAMPTZ,
                validated_at TIMESTAMPTZ,
                validated_by VARCHAR(64),
                validation_attempts INT NOT NULL DEFAULT 0,
                last_attempt_by VARCHAR(64),
                last_attempt_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_deliveries_order_id ON order_deliveries(order_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS ratings (
                id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                from_user_id VARCHAR(64) NOT NULL,
                to_user_id VARCHAR(64) NOT NULL,
                stars INT NOT NULL CHECK (stars BETWEEN 1 AND 5),
                comment TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                UNIQUE(order_id, from_user_id)
            );
        """)


def _delivery_from_row(row) -> Delivery:
    return Delivery(**dict(row))


def _order_from_row(row, deliveries: list[Delivery]) -> Order:
    return Order(**dict(row), deliveries=deliveries)


async def _read_with_retry(fn, *args):
    """Idempotent read with bounded exponential backoff on connection errors."""
    attempts = max(settings.read_retry_attempts, 1)
    for attempt in range(attempts):
        try:
            return await fn(*args)
        except _CONNECTION_ERRORS as e:
            if attempt + 1 >= attempts:
                logger.error("Read %s failed after %d attempts: %s", fn.__name__, attempts, e)
                raise TransportError() from e
            delay = settings.read_retry_base_delay * (2 ** attempt)
            logger.warning("Read %s failed (attempt %d/%d), retrying in %.2fs: %s",
                           fn.__name__, attempt + 1, attempts, delay, e)
            await asyncio.sleep(delay)


class PostgresStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _write(self, fn, *args):
        """Writes are not retried: a dropped connection surfaces as TransportError."""
        try:
            return await fn(*args)
        except _CONNECTION_ERRORS as e:
            logger.error("Write %s failed: %s", fn.__name__, e)
            raise TransportError() from e

    # profiles

    async def get_profile(self, user_id: str) -> Profile | None:
        return await _read_with_retry(self._get_profile, user_id)

    async def _get_profile(self, user_id: str) -> Profile | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM profiles WHERE user_id = $1;", user_id)
        return Profile(**dict(row)) if row else None

    async def upsert_profile(self, profile: Profile) -> Profile:
        return await self._write(self._upsert_profile, profile)

    async def _upsert_profile(self, profile: Profile) -> Profile:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO profiles (user_id, role, name, phone, city, state, credits_valid_until)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (user_id) DO UPDATE SET
                    role = EXCLUDED.role, name = EXCLUDED.name, phone = EXCLUDED.phone,
                    city = EXCLUDED.city, state = EXCLUDED.state,
                    credits_valid_until = EXCLUDED.credits_valid_until;
                """,
                profile.user_id,
                profile.role.value,
                profile.name,
                profile.phone,
                profile.city,
                profile.state,
                profile.credits_valid_until,
            )
        return profile

    # orders

    async def create_order(self, order: Order) -> Order:
        return await self._write(self._create_order, order)

    async def _create_order(self, order: Order) -> Order:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                try:
                    await conn.execute(
                        """
                        INSERT INTO orders (id, company_user_id, status, total_value, state, city, created_at, updated_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8);
                        """,
                        order.id,
                        order.company_user_id,
                        order.status.value,
                        order.total_value,
                        order.state,
                        order.city,
                        order.created_at,
                        order.updated_at,
                    )
                except UniqueViolationError:
                    raise ConflictError("Order already exists")
                await conn.executemany(
                    """
                    INSERT INTO order_deliveries (
                        id, order_id, pickup_address, dropoff_address, package_type,
                        suggested_price, notes, customer_name, customer_phone, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10);
                    """,
                    [
                        (
                            d.id, order.id, d.pickup_address, d.dropoff_address, d.package_type.value,
                            d.suggested_price, d.notes, d.customer_name, d.customer_phone, d.created_at,
                        )
                        for d in order.deliveries
                    ],
                )
        return order

    async def get_order(self, order_id: str) -> Order | None:
        return await _read_with_retry(self._get_order, order_id)

    async def _get_order(self, order_id: str) -> Order | None:
        async with self.pool.acquire() as conn:
            return await self._fetch_order(conn, order_id)

    async def _fetch_order(self, conn, order_id: str) -> Order | None:
        row = await conn.fetchrow(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = $1;", order_id)
        if row is None:
            return None
        rows = await conn.fetch(
            "SELECT * FROM order_deliveries WHERE order_id = $1 ORDER BY created_at, id;",
            order_id,
        )
        return _order_from_row(row, [_delivery_from_row(r) for r in rows])

    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        return await _read_with_retry(self._get_delivery, delivery_id)

    async def _get_delivery(self, delivery_id: str) -> Delivery | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM order_deliveries WHERE id = $1;", delivery_id)
        return _delivery_from_row(row) if row else None

    async def list_orders(
        self,
        *,
        company_user_id: str | None = None,
        driver_user_id: str | None = None,
        status: OrderStatus | None = None,
        city: str | None = None,
    ) -> list[Order]:
        return await _read_with_retry(self._list_orders, company_user_id, driver_user_id, status, city)

    async def _list_orders(self, company_user_id, driver_user_id, status, city) -> list[Order]:
        clauses, args = [], []
        for column, value in (
            ("company_user_id", company_user_id),
            ("driver_user_id", driver_user_id),
            ("status", status.value if status else None),
            ("city", city),
        ):
            if value is not None:
                args.append(value)
                clauses.append(f"{column} = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_ORDER_COLUMNS} FROM orders {where} ORDER BY created_at DESC;",
                *args,
            )
            if not rows:
                return []
            delivery_rows = await conn.fetch(
                "SELECT * FROM order_deliveries WHERE order_id = ANY($1::varchar[]) ORDER BY created_at, id;",
                [r["id"] for r in rows],
            )
        by_order: dict[str, list[Delivery]] = {}
        for r in delivery_rows:
            by_order.setdefault(r["order_id"], []).append(_delivery_from_row(r))
        return [_order_from_row(r, by_order.get(r["id"], [])) for r in rows]

    async def has_active_order(self, driver_user_id: str) -> bool:
        return await _read_with_retry(self._has_active_order, driver_user_id)

    async def _has_active_order(self, driver_user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT 1 FROM orders WHERE driver_user_id = $1 AND status = $2 LIMIT 1;",
                driver_user_id,
                OrderStatus.ACCEPTED.value,
            )
        return row is not None

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
        return await self._write(self._transition_order, order_id, expected, target, at, driver_user_id, delivery_codes)

    async def _transition_order(self, order_id, expected, target, at, driver_user_id, delivery_codes) -> Order:
        transition = get_transition(expected, target)
        if transition is None:
            raise InvalidTransitionError(expected, target)
        stamp = transition.timestamp_field
        if stamp not in _TIMESTAMP_COLUMNS:
            raise ValueError(f"unknown timestamp column {stamp}")

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT status, driver_user_id FROM orders WHERE id = $1 FOR UPDATE;",
                    order_id,
                )
                if row is None:
                    raise NotFoundError("Order not found")
                current = OrderStatus(row["status"])
                if current != expected:
                    raise transition_conflict(current, expected, target)

                code_rows = await conn.fetch(
                    "SELECT id, code_hash FROM order_deliveries WHERE order_id = $1 FOR UPDATE;",
                    order_id,
                )
                check_delivery_codes(
                    expected, target, [_CodeRow(r["id"], r["code_hash"]) for r in code_rows], delivery_codes,
                )
                if delivery_codes:
                    await conn.executemany(
                        """
                        UPDATE order_deliveries SET delivery_code = $1, code_hash = $2
                        WHERE id = $3 AND code_hash IS NULL;
                        """,
                        [(delivery_codes[r["id"]][0], delivery_codes[r["id"]][1], r["id"]) for r in code_rows],
                    )

                if target == OrderStatus.ACCEPTED:
                    if not driver_user_id:
                        raise ForbiddenError("A driver is required to accept an order")
                    try:
                        await conn.execute(
                            f"""
                            UPDATE orders SET status = $1, driver_user_id = $2, updated_at = $3, {stamp} = $3
                            WHERE id = $4 AND status = $5 AND driver_user_id IS NULL;
                            """,
                            target.value,
                            driver_user_id,
                            at,
                            order_id,
                            expected.value,
                        )
                    except UniqueViolationError:
                        raise ActiveOrderExistsError()
                else:
                    if driver_user_id and row["driver_user_id"] != driver_user_id:
                        raise OrderUnavailableError("This order is assigned to another driver")
                    if target == OrderStatus.DRIVER_COMPLETED:
                        pending = await conn.fetchval(
                            "SELECT COUNT(*) FROM order_deliveries WHERE order_id = $1 AND validated_at IS NULL;",
                            order_id,
                        )
                        if pending:
                            raise ValidationPendingError(pending)
                    await conn.execute(
                        f"""
                        UPDATE orders SET status = $1, updated_at = $2, {stamp} = $2
                        WHERE id = $3 AND status = $4;
                        """,
                        target.value,
                        at,
                        order_id,
                        expected.value,
                    )
                return await self._fetch_order(conn, order_id)

    async def record_validation_attempt(
        self,
        delivery_id: str,
        candidate_hash: str,
        driver_user_id: str,
        *,
        max_attempts: int,
        at: datetime,
    ) -> tuple[bool, Delivery]:
        return await self._write(
            self._record_validation_attempt, delivery_id, candidate_hash, driver_user_id, max_attempts, at
        )

    async def _record_validation_attempt(self, delivery_id, candidate_hash, driver_user_id, max_attempts, at):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT d.code_hash, d.validated_at, d.validation_attempts, o.status, o.driver_user_id
                    FROM order_deliveries d JOIN orders o ON o.id = d.order_id
                    WHERE d.id = $1
                    FOR UPDATE OF d;
                    """,
                    delivery_id,
                )
                if row is None:
                    raise NotFoundError("Delivery not found")
                if row["driver_user_id"] != driver_user_id:
                    raise ForbiddenError("You are not the driver of this order")
                if row["status"] != OrderStatus.ACCEPTED.value:
                    raise InvalidTransitionError(message="This order is not in progress")
                if row["validated_at"] is not None:
                    raise AlreadyValidatedError()
                if row["code_hash"] is None:
                    raise CodeNotSetError()
                if row["validation_attempts"] >= max_attempts:
                    raise ValidationLockedError()

                matched = codes.hashes_match(candidate_hash, row["code_hash"])
                if matched:
                    updated = await conn.fetchrow(
                        """
                        UPDATE order_deliveries
                        SET validated_at = $1, validated_by = $2, last_attempt_at = $1, last_attempt_by = $2
                        WHERE id = $3 AND validated_at IS NULL
                        RETURNING *;
                        """,
                        at,
                        driver_user_id,
                        delivery_id,
                    )
                else:
                    updated = await conn.fetchrow(
                        """
                        UPDATE order_deliveries
                        SET validation_attempts = validation_attempts + 1, last_attempt_at = $1, last_attempt_by = $2
                        WHERE id = $3
                        RETURNING *;
                        """,
                        at,
                        driver_user_id,
                        delivery_id,
                    )
        return matched, _delivery_from_row(updated)

    async def mark_code_sent(self, delivery_id: str, at: datetime) -> Delivery:
        return await self._write(self._mark_code_sent, delivery_id, at)

    async def _mark_code_sent(self, delivery_id: str, at: datetime) -> Delivery:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE order_deliveries SET code_sent_at = $1 WHERE id = $2 RETURNING *;",
                at,
                delivery_id,
            )
        if row is None:
            raise NotFoundError("Delivery not found")
        return _delivery_from_row(row)

    # ratings

    async def add_rating(self, rating: Rating) -> Rating:
        return await self._write(self._add_rating, rating)

    async def _add_rating(self, rating: Rating) -> Rating:
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO ratings (id, order_id, from_user_id, to_user_id, stars, comment, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7);
                    """,
                    rating.id,
                    rating.order_id,
                    rating.from_user_id,
                    rating.to_user_id,
                    rating.stars,
                    rating.comment,
                    rating.created_at,
                )
            except UniqueViolationError:
                raise ConflictError("You already rated this order")
        return rating

    async def list_ratings(self, to_user_id: str) -> list[Rating]:
        return await _read_with_retry(self._list_ratings, to_user_id)

    async def _list_ratings(self, to_user_id: str) -> list[Rating]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM ratings WHERE to_user_id = $1 ORDER BY created_at DESC;",
                to_user_id,
            )
        return [Rating(**dict(r)) for r in rows]

    async def close(self) -> None:
        await close_pool()
