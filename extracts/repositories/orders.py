"""Repository for extract orders."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog

from extracts.core.resilience import with_db_retry
from extracts.errors import OrderNotFound
from extracts.schemas import OrderStatus

logger = structlog.get_logger(__name__)

# Columns update() may touch
UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "external_order_number",
        "operator_id",
        "is_complete",
        "last_error",
        "registration_started_at",
        "registered_at",
        "completed_at",
        "last_checked_at",
        "artifact_path",
    }
)


@dataclass
class Order:
    """An extract order. Read fresh for each job; never cached."""

    id: int
    owner_id: int
    cadastral_number: str
    status: str
    external_order_number: Optional[str] = None
    operator_id: Optional[int] = None
    is_complete: bool = False
    last_error: Optional[str] = None
    registration_started_at: Optional[datetime] = None
    registered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    artifact_path: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderRepository:
    """Repository for order operations.

    Missing rows raise OrderNotFound; connectivity failures surface as
    RepositoryUnavailable from with_db_retry.
    """

    def __init__(self, pool):
        self._pool = pool

    def _row_to_order(self, row) -> Order:
        """Convert database row to Order."""
        return Order(
            id=row["id"],
            owner_id=row["owner_id"],
            cadastral_number=row["cadastral_number"],
            status=row["status"],
            external_order_number=row["external_order_number"],
            operator_id=row["operator_id"],
            is_complete=row["is_complete"],
            last_error=row["last_error"],
            registration_started_at=row["registration_started_at"],
            registered_at=row["registered_at"],
            completed_at=row["completed_at"],
            last_checked_at=row["last_checked_at"],
            artifact_path=row["artifact_path"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def find_by_id(self, order_id: int) -> Order:
        """Get a live order. Raises OrderNotFound."""
        query = "SELECT * FROM orders WHERE id = $1 AND deleted_at IS NULL"
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, order_id))
        if not row:
            raise OrderNotFound(order_id)
        return self._row_to_order(row)

    async def find_all(self, limit: int = 100, offset: int = 0) -> list[Order]:
        query = """
            SELECT * FROM orders
            WHERE deleted_at IS NULL
            ORDER BY created_at DESC
            LIMIT $1 OFFSET $2
        """
        rows = await with_db_retry(self._pool, lambda conn: conn.fetch(query, limit, offset))
        return [self._row_to_order(row) for row in rows]

    async def find_by_owner(self, owner_id: int) -> list[Order]:
        query = """
            SELECT * FROM orders
            WHERE owner_id = $1 AND deleted_at IS NULL
            ORDER BY created_at DESC
        """
        rows = await with_db_retry(self._pool, lambda conn: conn.fetch(query, owner_id))
        return [self._row_to_order(row) for row in rows]

    async def list_registered(self, limit: int = 500) -> list[Order]:
        """Orders placed on the portal whose artifact is not downloaded yet.

        Least recently checked first.
        """
        query = """
            SELECT * FROM orders
            WHERE external_order_number IS NOT NULL
              AND is_complete = false
              AND deleted_at IS NULL
            ORDER BY last_checked_at NULLS FIRST, registered_at
            LIMIT $1
        """
        rows = await with_db_retry(self._pool, lambda conn: conn.fetch(query, limit))
        return [self._row_to_order(row) for row in rows]

    async def create(
        self, owner_id: int, cadastral_number: str, status: str = OrderStatus.QUEUED
    ) -> Order:
        query = """
            INSERT INTO orders (owner_id, cadastral_number, status)
            VALUES ($1, $2, $3)
            RETURNING *
        """
        row = await with_db_retry(
            self._pool, lambda conn: conn.fetchrow(query, owner_id, cadastral_number, status)
        )
        order = self._row_to_order(row)
        logger.info("order_created", order_id=order.id, cadastral_number=cadastral_number)
        return order

    async def create_many(
        self, owner_id: int, cadastral_numbers: list[str], status: str = OrderStatus.QUEUED
    ) -> list[Order]:
        """Insert several orders in one transaction."""
        query = """
            INSERT INTO orders (owner_id, cadastral_number, status)
            SELECT $1, unnest($2::text[]), $3
            RETURNING *
        """

        async def _insert(conn):
            async with conn.transaction():
                return await conn.fetch(query, owner_id, cadastral_numbers, status)

        rows = await with_db_retry(self._pool, _insert)
        orders = [self._row_to_order(row) for row in rows]
        logger.info("orders_created", owner_id=owner_id, count=len(orders))
        return orders

    async def update(self, order_id: int, **fields: Any) -> Order:
        """Partial update. Raises OrderNotFound, ValueError on unknown columns."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update order fields: {sorted(unknown)}")
        if not fields:
            return await self.find_by_id(order_id)

        columns = list(fields)
        assignments = ", ".join(f"{col} = ${i + 2}" for i, col in enumerate(columns))
        query = f"""
            UPDATE orders SET {assignments}, updated_at = now()
            WHERE id = $1 AND deleted_at IS NULL
            RETURNING *
        """
        values = [fields[col] for col in columns]
        row = await with_db_retry(
            self._pool, lambda conn: conn.fetchrow(query, order_id, *values)
        )
        if not row:
            raise OrderNotFound(order_id)
        logger.debug("order_updated", order_id=order_id, fields=columns)
        return self._row_to_order(row)

    async def soft_delete(self, order_id: int) -> None:
        query = """
            UPDATE orders SET deleted_at = now(), updated_at = now()
            WHERE id = $1 AND deleted_at IS NULL
            RETURNING id
        """
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, order_id))
        if not row:
            raise OrderNotFound(order_id)
        logger.info("order_deleted", order_id=order_id)
