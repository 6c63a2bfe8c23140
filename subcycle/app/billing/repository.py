"""PostgreSQL persistence for plans and subscriptions."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..errors import ConflictError, PersistenceError
from .models import Plan, Subscription, SubscriptionFilter, SubscriptionStatus
from .stores import PlanStore, SubscriptionStore

ConnectionFactory = Callable[[], PgConnection]

_UPDATABLE_SUBSCRIPTION_COLUMNS = frozenset(
    {
        "status",
        "next_payment",
        "last_payment",
        "failed_payments",
        "total_payments",
    }
)


def connection_factory(db_config: Mapping[str, Any]) -> ConnectionFactory:
    """Return a callable opening a new psycopg2 connection for ``db_config``."""

    def _connect() -> PgConnection:
        return psycopg2.connect(**db_config)

    return _connect


@contextmanager
def managed_connection(
    factory: Optional[ConnectionFactory],
    conn: Optional[PgConnection] = None,
) -> Iterator[Tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    if factory is None:
        raise PersistenceError("No database connection factory configured")

    try:
        connection = factory()
    except psycopg2.Error as exc:
        raise PersistenceError(f"Could not connect to database: {exc}") from exc
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_plan(row: dict) -> Plan:
    return Plan(
        creator_id=row["creator_id"],
        plan_id=row["plan_id"],
        name=row.get("name") or "",
        price=int(row["price"]),
        currency=row.get("currency") or "SOL",
        interval_seconds=int(row["interval_seconds"]),
        max_subscribers=row.get("max_subscribers"),
        current_subscribers=int(row.get("current_subscribers") or 0),
        is_active=bool(row["is_active"]),
        metadata_uri=row.get("metadata_uri"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        subscriber_id=row["subscriber_id"],
        creator_id=row["creator_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        next_payment=int(row["next_payment"]),
        last_payment=row.get("last_payment"),
        failed_payments=int(row.get("failed_payments") or 0),
        total_payments=int(row.get("total_payments") or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class _PostgresRepository:
    def __init__(
        self,
        *,
        factory: Optional[ConnectionFactory] = None,
        conn: Optional[PgConnection] = None,
    ) -> None:
        self._factory = factory
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._factory, self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except psycopg2.Error as exc:
                if managed:
                    connection.rollback()
                raise PersistenceError(f"Database operation failed: {exc}") from exc
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()


class PostgresSubscriptionStore(_PostgresRepository, SubscriptionStore):
    """Subscription rows in ``billing_subscriptions``."""

    def find_due_active(self, now: int, limit: int) -> Sequence[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE status = %s AND next_payment <= %s
                ORDER BY next_payment ASC, subscription_id ASC
                LIMIT %s
                """,
                (SubscriptionStatus.ACTIVE.value, now, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_active(self, subscriber_id: str, creator_id: str, plan_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE subscriber_id = %s AND creator_id = %s AND plan_id = %s
                  AND status IN (%s, %s)
                LIMIT 1
                """,
                (
                    subscriber_id,
                    creator_id,
                    plan_id,
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.PAUSED.value,
                ),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def insert(self, subscription: Subscription) -> Subscription:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscriptions (
                    subscription_id,
                    subscriber_id,
                    creator_id,
                    plan_id,
                    status,
                    next_payment,
                    last_payment,
                    failed_payments,
                    total_payments
                )
                VALUES (%(subscription_id)s, %(subscriber_id)s, %(creator_id)s, %(plan_id)s,
                        %(status)s, %(next_payment)s, %(last_payment)s,
                        %(failed_payments)s, %(total_payments)s)
                ON CONFLICT (subscription_id) DO NOTHING
                RETURNING *
                """,
                {
                    "subscription_id": subscription.subscription_id,
                    "subscriber_id": subscription.subscriber_id,
                    "creator_id": subscription.creator_id,
                    "plan_id": subscription.plan_id,
                    "status": subscription.status.value,
                    "next_payment": subscription.next_payment,
                    "last_payment": subscription.last_payment,
                    "failed_payments": subscription.failed_payments,
                    "total_payments": subscription.total_payments,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise ConflictError(f"Subscription {subscription.subscription_id} already exists")
            return _row_to_subscription(row)

    def update(
        self,
        subscription_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> Optional[Subscription]:
        unknown = set(fields) - _UPDATABLE_SUBSCRIPTION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update subscription columns: {sorted(unknown)}")
        if not fields:
            return self.get(subscription_id)

        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column))
            for column in sorted(fields)
        ]
        assignments.append(sql.SQL("updated_at = NOW()"))
        query = sql.SQL("UPDATE billing_subscriptions SET {} WHERE subscription_id = {}").format(
            sql.SQL(", ").join(assignments),
            sql.Placeholder("subscription_id"),
        )
        params = {
            column: value.value if isinstance(value, SubscriptionStatus) else value
            for column, value in fields.items()
        }
        params["subscription_id"] = subscription_id
        if expected_status is not None:
            query = sql.SQL("{} AND status = {}").format(query, sql.Placeholder("expected_status"))
            params["expected_status"] = expected_status.value
        query = sql.SQL("{} RETURNING *").format(query)

        with self._cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def count(self, filter: SubscriptionFilter) -> int:
        clauses = []
        params: list[Any] = []
        if filter.status is not None:
            clauses.append("status = %s")
            params.append(filter.status.value)
        if filter.due_before is not None:
            clauses.append("next_payment <= %s")
            params.append(filter.due_before)
        if filter.min_failed_payments is not None:
            clauses.append("failed_payments >= %s")
            params.append(filter.min_failed_payments)
        if filter.updated_since is not None:
            clauses.append("updated_at >= %s")
            params.append(filter.updated_since)
        where = " AND ".join(clauses) if clauses else "TRUE"

        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total FROM billing_subscriptions WHERE {where}", params)
            row = cursor.fetchone()
            return int(row["total"]) if row else 0


class PostgresPlanStore(_PostgresRepository, PlanStore):
    """Plan rows in ``billing_plans``."""

    def get(self, creator_id: str, plan_id: str) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_plans
                WHERE creator_id = %s AND plan_id = %s
                LIMIT 1
                """,
                (creator_id, plan_id),
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def save(self, plan: Plan) -> Plan:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_plans (
                    creator_id,
                    plan_id,
                    name,
                    price,
                    currency,
                    interval_seconds,
                    max_subscribers,
                    current_subscribers,
                    is_active,
                    metadata_uri
                )
                VALUES (%(creator_id)s, %(plan_id)s, %(name)s, %(price)s, %(currency)s,
                        %(interval_seconds)s, %(max_subscribers)s, %(current_subscribers)s,
                        %(is_active)s, %(metadata_uri)s)
                ON CONFLICT (creator_id, plan_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    price = EXCLUDED.price,
                    currency = EXCLUDED.currency,
                    interval_seconds = EXCLUDED.interval_seconds,
                    max_subscribers = EXCLUDED.max_subscribers,
                    is_active = EXCLUDED.is_active,
                    metadata_uri = EXCLUDED.metadata_uri,
                    updated_at = NOW()
                WHERE EXCLUDED.max_subscribers IS NULL
                   OR billing_plans.current_subscribers <= EXCLUDED.max_subscribers
                RETURNING *
                """,
                {
                    "creator_id": plan.creator_id,
                    "plan_id": plan.plan_id,
                    "name": plan.name,
                    "price": plan.price,
                    "currency": plan.currency,
                    "interval_seconds": plan.interval_seconds,
                    "max_subscribers": plan.max_subscribers,
                    "current_subscribers": plan.current_subscribers,
                    "is_active": plan.is_active,
                    "metadata_uri": plan.metadata_uri,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise ConflictError(
                    f"Plan {plan.creator_id}/{plan.plan_id} has more subscribers than max_subscribers allows"
                )
            return _row_to_plan(row)

    def adjust_subscribers(self, creator_id: str, plan_id: str, delta: int) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_plans
                SET current_subscribers = current_subscribers + %(delta)s,
                    updated_at = NOW()
                WHERE creator_id = %(creator_id)s AND plan_id = %(plan_id)s
                  AND current_subscribers + %(delta)s >= 0
                  AND (max_subscribers IS NULL OR current_subscribers + %(delta)s <= max_subscribers)
                RETURNING *
                """,
                {"creator_id": creator_id, "plan_id": plan_id, "delta": delta},
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None


__all__ = [
    "PostgresPlanStore",
    "PostgresSubscriptionStore",
    "connection_factory",
    "managed_connection",
]
