"""SQLite-backed webhook repository.

Each row keeps the full model as JSON in ``data`` next to the columns used
for filtering. Counters and the delivery status are real columns so they
can be updated atomically with a single UPDATE; deliveries also carry a
row version that guards status compare-and-set against stale reads.
"""

import sqlite3
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

from .exceptions import SubscriptionNotFoundError
from .models import (
    DeliveryStatus,
    InboundEvent,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookSubscription,
    utcnow,
)
from .repository import WebhookRepository

logger = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """UTC ISO string; comparable as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class SqliteWebhookRepository(WebhookRepository):
    """Webhook repository persisted in a SQLite database file."""

    def __init__(self, db_path: str = "data/webhooks.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_endpoints (
                    id TEXT PRIMARY KEY,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    deleted_at TEXT,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_subscriptions (
                    id TEXT PRIMARY KEY,
                    endpoint_id TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    delivery_count INTEGER NOT NULL DEFAULT 0,
                    last_delivery_at TEXT,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_deliveries (
                    id TEXT PRIMARY KEY,
                    endpoint_id TEXT,
                    event TEXT NOT NULL,
                    status TEXT NOT NULL,
                    next_attempt_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_events (
                    id TEXT PRIMARY KEY,
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)

            columns = {row["name"] for row in conn.execute("PRAGMA table_info(webhook_deliveries)")}
            if "version" not in columns:
                conn.execute("ALTER TABLE webhook_deliveries ADD COLUMN version INTEGER NOT NULL DEFAULT 0")

            conn.execute("CREATE INDEX IF NOT EXISTS idx_sub_endpoint ON webhook_subscriptions(endpoint_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_delivery_status ON webhook_deliveries(status, next_attempt_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_delivery_endpoint ON webhook_deliveries(endpoint_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_event_source ON webhook_events(source)")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _subscription(row: sqlite3.Row) -> WebhookSubscription:
        subscription = WebhookSubscription.model_validate_json(row["data"])
        subscription.delivery_count = row["delivery_count"]
        if row["last_delivery_at"]:
            subscription.last_delivery_at = datetime.fromisoformat(row["last_delivery_at"])
        return subscription

    @staticmethod
    def _delivery(row: sqlite3.Row) -> WebhookDelivery:
        delivery = WebhookDelivery.model_validate_json(row["data"])
        delivery.status = DeliveryStatus(row["status"])
        return delivery

    @staticmethod
    def _limit(sql: str, params: list, limit: Optional[int]) -> str:
        if limit is not None:
            params.append(limit)
            return sql + " LIMIT ?"
        return sql

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def save_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        with self._get_conn() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO webhook_endpoints (id, is_active, deleted_at, created_at, data)
                VALUES (?, ?, ?, ?, ?)
            """, (
                endpoint.id,
                1 if endpoint.is_active else 0,
                _ts(endpoint.deleted_at),
                _ts(endpoint.created_at),
                endpoint.model_dump_json(),
            ))
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT data FROM webhook_endpoints WHERE id = ?", (endpoint_id,)
            ).fetchone()
        return WebhookEndpoint.model_validate_json(row["data"]) if row else None

    async def list_endpoints(
        self,
        active_only: bool = False,
        include_deleted: bool = False,
    ) -> List[WebhookEndpoint]:
        sql = "SELECT data FROM webhook_endpoints WHERE 1 = 1"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY created_at"
        with self._get_conn() as conn:
            rows = conn.execute(sql).fetchall()
        return [WebhookEndpoint.model_validate_json(row["data"]) for row in rows]

    async def purge_endpoint(self, endpoint_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM webhook_endpoints WHERE id = ?", (endpoint_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def save_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        with self._get_conn() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO webhook_subscriptions
                (id, endpoint_id, is_active, delivery_count, last_delivery_at, created_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                subscription.id,
                subscription.endpoint_id,
                1 if subscription.is_active else 0,
                subscription.delivery_count,
                _ts(subscription.last_delivery_at),
                _ts(subscription.created_at),
                subscription.model_dump_json(),
            ))
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
        return self._subscription(row) if row else None

    async def list_subscriptions(
        self,
        endpoint_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[WebhookSubscription]:
        sql = "SELECT * FROM webhook_subscriptions WHERE 1 = 1"
        params: list = []
        if endpoint_id is not None:
            sql += " AND endpoint_id = ?"
            params.append(endpoint_id)
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY created_at"
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._subscription(row) for row in rows]

    async def delete_subscription(self, subscription_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM webhook_subscriptions WHERE id = ?", (subscription_id,))
            return cursor.rowcount > 0

    async def increment_delivery_count(self, subscription_id: str) -> int:
        with self._get_conn() as conn:
            cursor = conn.execute("""
                UPDATE webhook_subscriptions
                SET delivery_count = delivery_count + 1, last_delivery_at = ?
                WHERE id = ?
            """, (_ts(utcnow()), subscription_id))
            if cursor.rowcount == 0:
                raise SubscriptionNotFoundError(subscription_id)
            row = conn.execute(
                "SELECT delivery_count FROM webhook_subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
        return row["delivery_count"]

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    async def save_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        delivery.updated_at = utcnow()
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO webhook_deliveries
                (id, endpoint_id, event, status, next_attempt_at, created_at, updated_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    endpoint_id = excluded.endpoint_id,
                    event = excluded.event,
                    status = excluded.status,
                    next_attempt_at = excluded.next_attempt_at,
                    updated_at = excluded.updated_at,
                    data = excluded.data,
                    version = webhook_deliveries.version + 1
            """, (
                delivery.id,
                delivery.endpoint_id,
                delivery.event,
                delivery.status.value,
                _ts(delivery.next_attempt_at),
                _ts(delivery.created_at),
                _ts(delivery.updated_at),
                delivery.model_dump_json(),
            ))
        return delivery

    def _fetch_delivery(self, delivery_id: str) -> Tuple[Optional[WebhookDelivery], int]:
        """Delivery and the row version it was read at."""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT status, data, version FROM webhook_deliveries WHERE id = ?", (delivery_id,)
            ).fetchone()
        if row is None:
            return None, 0
        return self._delivery(row), row["version"]

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return self._fetch_delivery(delivery_id)[0]

    async def list_deliveries(
        self,
        status: Optional[DeliveryStatus] = None,
        endpoint_id: Optional[str] = None,
        event: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[WebhookDelivery]:
        sql = "SELECT status, data FROM webhook_deliveries WHERE 1 = 1"
        params: list = []
        if status is not None:
            sql += " AND status = ?"
            params.append(DeliveryStatus(status).value)
        if endpoint_id is not None:
            sql += " AND endpoint_id = ?"
            params.append(endpoint_id)
        if event is not None:
            sql += " AND event = ?"
            params.append(event)
        sql = self._limit(sql + " ORDER BY created_at DESC", params, limit)
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._delivery(row) for row in rows]

    async def compare_and_set_status(
        self,
        delivery_id: str,
        expected: Iterable[DeliveryStatus],
        new_status: DeliveryStatus,
        **changes: Any,
    ) -> Optional[WebhookDelivery]:
        expected = tuple(expected)
        current, version = self._fetch_delivery(delivery_id)
        if current is None or current.status not in expected:
            return None

        updated = current.model_copy(update={**changes, "status": new_status, "updated_at": utcnow()})
        with self._get_conn() as conn:
            # Guarded on the row version we read; any write in between makes this a no-op
            cursor = conn.execute("""
                UPDATE webhook_deliveries
                SET status = ?, next_attempt_at = ?, updated_at = ?, data = ?, version = version + 1
                WHERE id = ? AND version = ?
            """, (
                new_status.value,
                _ts(updated.next_attempt_at),
                _ts(updated.updated_at),
                updated.model_dump_json(),
                delivery_id,
                version,
            ))
            if cursor.rowcount == 0:
                logger.debug(f"Lost status race for delivery {delivery_id}")
                return None
        return updated

    async def find_due_retries(self, now: datetime, limit: int = 100) -> List[WebhookDelivery]:
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT status, data FROM webhook_deliveries
                WHERE status = ? AND next_attempt_at IS NOT NULL AND next_attempt_at <= ?
                ORDER BY next_attempt_at
                LIMIT ?
            """, (DeliveryStatus.RETRYING.value, _ts(now), limit)).fetchall()
        deliveries = [self._delivery(row) for row in rows]
        return [d for d in deliveries if d.attempt <= d.max_attempts]

    async def find_failed_since(self, since: datetime, limit: int = 100) -> List[WebhookDelivery]:
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT status, data FROM webhook_deliveries
                WHERE status = ? AND updated_at >= ?
                ORDER BY updated_at
                LIMIT ?
            """, (DeliveryStatus.FAILED.value, _ts(since), limit)).fetchall()
        return [self._delivery(row) for row in rows]

    async def find_stale_in_progress(self, before: datetime, limit: int = 100) -> List[WebhookDelivery]:
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT status, data FROM webhook_deliveries
                WHERE status = ? AND updated_at < ?
                ORDER BY updated_at
                LIMIT ?
            """, (DeliveryStatus.IN_PROGRESS.value, _ts(before), limit)).fetchall()
        return [self._delivery(row) for row in rows]

    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM webhook_deliveries WHERE created_at < ?", (_ts(cutoff),))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def save_event(self, event: InboundEvent) -> InboundEvent:
        with self._get_conn() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO webhook_events (id, source, created_at, data)
                VALUES (?, ?, ?, ?)
            """, (event.id, event.source, _ts(event.created_at), event.model_dump_json()))
        return event

    async def get_event(self, event_id: str) -> Optional[InboundEvent]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT data FROM webhook_events WHERE id = ?", (event_id,)).fetchone()
        return InboundEvent.model_validate_json(row["data"]) if row else None

    async def list_events(
        self,
        source: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[InboundEvent]:
        sql = "SELECT data FROM webhook_events"
        params: list = []
        if source is not None:
            sql += " WHERE source = ?"
            params.append(source)
        sql = self._limit(sql + " ORDER BY created_at DESC", params, limit)
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [InboundEvent.model_validate_json(row["data"]) for row in rows]

    async def delete_events_before(self, cutoff: datetime) -> int:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM webhook_events WHERE created_at < ?", (_ts(cutoff),))
            return cursor.rowcount
