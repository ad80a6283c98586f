"""
Repository pattern for data access.

Handles database operations for events, pricing rules, budgets and alerts.
"""

import json
import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import Any, List, Optional, Sequence

from ..errors import DuplicateBudgetError
from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    ApiCallEvent,
    BillingCycle,
    Budget,
    CallStatus,
    PricingRule,
    PricingTier,
)
from .query import AggregateRow, Aggregation, EventQuery, GroupField

_EVENT_COLUMNS = """
    id, timestamp, provider, endpoint, feature, method, request_count,
    input_tokens, output_tokens, response_time_ms, status, status_code,
    calculated_cost, request_body, error_message, owner_id
"""

_ALERT_COLUMNS = """
    id, type, severity, provider, title, message, metadata, is_read,
    is_resolved, resolved_at, resolved_by, created_at
"""

_BUDGET_COLUMNS = """
    id, provider, period, monthly_limit, alert_threshold, current_spend, is_active
"""

_PRICING_COLUMNS = """
    provider, cost_per_unit, free_tier_limit, tier_pricing, billing_cycle,
    is_active, input_cost_per_1k, output_cost_per_1k, currency, description
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    api_call_event is an append-only ledger: rows are never updated.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS api_call_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                provider TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                feature TEXT NOT NULL,
                method TEXT NOT NULL DEFAULT 'POST',
                request_count INTEGER NOT NULL DEFAULT 1,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                response_time_ms INTEGER NOT NULL,
                status TEXT NOT NULL,
                status_code INTEGER,
                calculated_cost REAL NOT NULL DEFAULT 0,
                request_body TEXT,
                error_message TEXT,
                owner_id TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_event_timestamp
                ON api_call_event (timestamp);
            CREATE INDEX IF NOT EXISTS idx_event_provider_timestamp
                ON api_call_event (provider, timestamp);
            CREATE INDEX IF NOT EXISTS idx_event_feature_timestamp
                ON api_call_event (feature, timestamp);

            CREATE TABLE IF NOT EXISTS pricing_rule (
                provider TEXT PRIMARY KEY,
                cost_per_unit REAL NOT NULL,
                free_tier_limit INTEGER NOT NULL DEFAULT 0,
                tier_pricing TEXT NOT NULL DEFAULT '[]',
                billing_cycle TEXT NOT NULL DEFAULT 'per-request',
                is_active INTEGER NOT NULL DEFAULT 1,
                input_cost_per_1k REAL,
                output_cost_per_1k REAL,
                currency TEXT NOT NULL DEFAULT 'USD',
                description TEXT
            );

            CREATE TABLE IF NOT EXISTS budget (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider TEXT NOT NULL,
                period TEXT NOT NULL,
                monthly_limit REAL NOT NULL,
                alert_threshold REAL NOT NULL DEFAULT 80,
                current_spend REAL NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                UNIQUE (provider, period)
            );

            CREATE TABLE IF NOT EXISTS alert (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                severity TEXT NOT NULL,
                provider TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                is_read INTEGER NOT NULL DEFAULT 0,
                is_resolved INTEGER NOT NULL DEFAULT 0,
                resolved_at TEXT,
                resolved_by TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_alert_open
                ON alert (type, provider, is_resolved, created_at);
        """)
        conn.commit()
    finally:
        conn.close()


def encode_request_body(body: Any) -> Optional[str]:
    """Canonical JSON so identical payloads compare equal in GROUP BY."""
    if body is None:
        return None
    return json.dumps(body, sort_keys=True, separators=(",", ":"))


def _row_to_event(row: Sequence[Any]) -> ApiCallEvent:
    return ApiCallEvent(
        id=row[0],
        timestamp=from_db_timestamp(row[1]),
        provider=row[2],
        endpoint=row[3],
        feature=row[4],
        method=row[5],
        request_count=row[6],
        input_tokens=row[7],
        output_tokens=row[8],
        response_time_ms=row[9],
        status=CallStatus(row[10]),
        status_code=row[11],
        calculated_cost=row[12],
        request_body=json.loads(row[13]) if row[13] is not None else None,
        error_message=row[14],
        owner_id=row[15],
    )


class EventRepository:
    """Append-only access to the api_call_event ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, event: ApiCallEvent) -> ApiCallEvent:
        """Insert a single event and return it with its assigned id."""
        conn = get_connection(self.db_path)
        try:
            cursor = self._insert(conn, event)
            conn.commit()
            return _with_id(event, cursor.lastrowid)
        finally:
            conn.close()

    def insert_many(self, events: List[ApiCallEvent]) -> List[ApiCallEvent]:
        """Insert multiple events atomically."""
        if not events:
            return []

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            stored = [_with_id(e, self._insert(conn, e).lastrowid) for e in events]
            conn.commit()
            return stored
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _insert(conn: sqlite3.Connection, event: ApiCallEvent) -> sqlite3.Cursor:
        return conn.execute("""
            INSERT INTO api_call_event
            (timestamp, provider, endpoint, feature, method, request_count,
             input_tokens, output_tokens, response_time_ms, status, status_code,
             calculated_cost, request_body, error_message, owner_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            to_db_timestamp(event.timestamp),
            event.provider,
            event.endpoint,
            event.feature,
            event.method,
            event.request_count,
            event.input_tokens,
            event.output_tokens,
            event.response_time_ms,
            event.status.value,
            event.status_code,
            event.calculated_cost,
            encode_request_body(event.request_body),
            event.error_message,
            event.owner_id,
        ))

    def sum_requests(self, query: EventQuery) -> int:
        """Total request_count of matching events, regardless of status unless filtered."""
        where, params = query.where_clause()
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT COALESCE(SUM(request_count), 0) FROM api_call_event{where}",
                params,
            ).fetchone()
            return int(row[0])
        finally:
            conn.close()

    def sum_cost(self, query: EventQuery) -> float:
        where, params = query.where_clause()
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT COALESCE(SUM(calculated_cost), 0) FROM api_call_event{where}",
                params,
            ).fetchone()
            return float(row[0])
        finally:
            conn.close()

    def count(self, query: EventQuery) -> int:
        """Number of event records (not requests) matching the query."""
        where, params = query.where_clause()
        conn = get_connection(self.db_path)
        try:
            return conn.execute(
                f"SELECT COUNT(*) FROM api_call_event{where}", params
            ).fetchone()[0]
        finally:
            conn.close()

    def aggregate(self, query: EventQuery, aggregation: Aggregation) -> List[AggregateRow]:
        """Run a grouped aggregation over matching events."""
        sql, params = aggregation.build_sql(query)
        key_width = len(aggregation.group_by)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        return [
            AggregateRow(
                key=tuple(row[:key_width]),
                bucket=row[key_width],
                total_cost=float(row[key_width + 1]),
                total_requests=int(row[key_width + 2]),
                success_requests=int(row[key_width + 3]),
                failed_requests=int(row[key_width + 4]),
                avg_response_time=float(row[key_width + 5]),
                record_count=int(row[key_width + 6]),
            )
            for row in rows
        ]

    def fetch(
        self,
        query: EventQuery,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ApiCallEvent]:
        """Fetch matching events, newest first."""
        where, params = query.where_clause()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM api_call_event{where}"
                " ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            )
            return [_row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def distinct(self, field: GroupField) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT DISTINCT {field.value} FROM api_call_event"
                f" WHERE {field.value} IS NOT NULL ORDER BY {field.value}"
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()


def _with_id(event: ApiCallEvent, event_id: int) -> ApiCallEvent:
    return replace(event, id=event_id)


def _row_to_pricing_rule(row: Sequence[Any]) -> PricingRule:
    return PricingRule(
        provider=row[0],
        cost_per_unit=row[1],
        free_tier_limit=row[2],
        tier_pricing=[
            PricingTier(start=t["start"], end=t["end"], cost_per_unit=t["cost_per_unit"])
            for t in json.loads(row[3])
        ],
        billing_cycle=BillingCycle(row[4]),
        is_active=bool(row[5]),
        input_cost_per_1k=row[6],
        output_cost_per_1k=row[7],
        currency=row[8],
        description=row[9],
    )


class PricingRepository:
    """Pricing catalog: one rule per provider."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def upsert(self, rule: PricingRule) -> None:
        """Create or replace the rule for rule.provider."""
        tiers = json.dumps([
            {"start": t.start, "end": t.end, "cost_per_unit": t.cost_per_unit}
            for t in rule.tier_pricing
        ])
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO pricing_rule ({_PRICING_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider) DO UPDATE SET
                    cost_per_unit = excluded.cost_per_unit,
                    free_tier_limit = excluded.free_tier_limit,
                    tier_pricing = excluded.tier_pricing,
                    billing_cycle = excluded.billing_cycle,
                    is_active = excluded.is_active,
                    input_cost_per_1k = excluded.input_cost_per_1k,
                    output_cost_per_1k = excluded.output_cost_per_1k,
                    currency = excluded.currency,
                    description = excluded.description
            """, (
                rule.provider,
                rule.cost_per_unit,
                rule.free_tier_limit,
                tiers,
                rule.billing_cycle.value,
                int(rule.is_active),
                rule.input_cost_per_1k,
                rule.output_cost_per_1k,
                rule.currency,
                rule.description,
            ))
            conn.commit()
        finally:
            conn.close()

    def get(self, provider: str) -> Optional[PricingRule]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_PRICING_COLUMNS} FROM pricing_rule WHERE provider = ?",
                (provider,),
            ).fetchone()
            return _row_to_pricing_rule(row) if row else None
        finally:
            conn.close()

    def get_active(self, provider: str) -> Optional[PricingRule]:
        """Inactive rules are treated as missing."""
        rule = self.get(provider)
        if rule is None or not rule.is_active:
            return None
        return rule

    def list_all(self) -> List[PricingRule]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_PRICING_COLUMNS} FROM pricing_rule ORDER BY provider"
            )
            return [_row_to_pricing_rule(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def set_active(self, provider: str, is_active: bool) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE pricing_rule SET is_active = ? WHERE provider = ?",
                (int(is_active), provider),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete(self, provider: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM pricing_rule WHERE provider = ?", (provider,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


def _row_to_budget(row: Sequence[Any]) -> Budget:
    return Budget(
        id=row[0],
        provider=row[1],
        period=row[2],
        monthly_limit=row[3],
        alert_threshold=row[4],
        current_spend=row[5],
        is_active=bool(row[6]),
    )


class BudgetRepository:
    """Budgets, unique on (provider, period)."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create(self, budget: Budget) -> Budget:
        """Insert a budget.

        Raises:
            DuplicateBudgetError: If a budget exists for the provider and period
        """
        conn = get_connection(self.db_path)
        try:
            try:
                cursor = conn.execute("""
                    INSERT INTO budget
                    (provider, period, monthly_limit, alert_threshold, current_spend, is_active)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    budget.provider,
                    budget.period,
                    budget.monthly_limit,
                    budget.alert_threshold,
                    budget.current_spend,
                    int(budget.is_active),
                ))
            except sqlite3.IntegrityError as e:
                raise DuplicateBudgetError(budget.provider, budget.period) from e
            conn.commit()
            return replace(budget, id=cursor.lastrowid)
        finally:
            conn.close()

    def list_all(self) -> List[Budget]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_BUDGET_COLUMNS} FROM budget ORDER BY provider, period"
            )
            return [_row_to_budget(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_active(self, period: str) -> List[Budget]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_BUDGET_COLUMNS} FROM budget"
                " WHERE is_active = 1 AND period = ? ORDER BY provider",
                (period,),
            )
            return [_row_to_budget(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get(self, provider: str, period: str) -> Optional[Budget]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_BUDGET_COLUMNS} FROM budget WHERE provider = ? AND period = ?",
                (provider, period),
            ).fetchone()
            return _row_to_budget(row) if row else None
        finally:
            conn.close()

    def get_by_id(self, budget_id: int) -> Optional[Budget]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_BUDGET_COLUMNS} FROM budget WHERE id = ?",
                (budget_id,),
            ).fetchone()
            return _row_to_budget(row) if row else None
        finally:
            conn.close()

    def update(self, budget: Budget) -> bool:
        """Write the limit, threshold and active flag of an existing budget.

        Returns:
            False if no budget has budget.id
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE budget
                SET monthly_limit = ?, alert_threshold = ?, is_active = ?
                WHERE id = ?
            """, (
                budget.monthly_limit,
                budget.alert_threshold,
                int(budget.is_active),
                budget.id,
            ))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def update_spend(self, budget_id: int, current_spend: float) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE budget SET current_spend = ? WHERE id = ?",
                (current_spend, budget_id),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, budget_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM budget WHERE id = ?", (budget_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


def _row_to_alert(row: Sequence[Any]) -> Alert:
    return Alert(
        id=row[0],
        type=AlertType(row[1]),
        severity=AlertSeverity(row[2]),
        provider=row[3],
        title=row[4],
        message=row[5],
        metadata=json.loads(row[6]),
        is_read=bool(row[7]),
        is_resolved=bool(row[8]),
        resolved_at=from_db_timestamp(row[9]),
        resolved_by=row[10],
        created_at=from_db_timestamp(row[11]),
    )


class AlertRepository:
    """Alerts raised by the anomaly detector."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create(self, alert: Alert) -> Alert:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO alert
                (type, severity, provider, title, message, metadata, is_read,
                 is_resolved, resolved_at, resolved_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                alert.type.value,
                alert.severity.value,
                alert.provider,
                alert.title,
                alert.message,
                json.dumps(alert.metadata, sort_keys=True),
                int(alert.is_read),
                int(alert.is_resolved),
                to_db_timestamp(alert.resolved_at) if alert.resolved_at else None,
                alert.resolved_by,
                to_db_timestamp(alert.created_at),
            ))
            conn.commit()
            return replace(alert, id=cursor.lastrowid)
        finally:
            conn.close()

    def get(self, alert_id: int) -> Optional[Alert]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alert WHERE id = ?", (alert_id,)
            ).fetchone()
            return _row_to_alert(row) if row else None
        finally:
            conn.close()

    def find_open(
        self,
        alert_type: AlertType,
        provider: str,
        created_since: Optional[datetime] = None,
        period: Optional[str] = None,
    ) -> Optional[Alert]:
        """Find an unresolved alert of the given type for a provider.

        Args:
            alert_type: Alert type to match
            provider: Provider to match
            created_since: Only consider alerts created at or after this instant
            period: Only consider alerts whose metadata records this period

        Returns:
            The most recent matching alert, or None
        """
        conditions = ["type = ?", "provider = ?", "is_resolved = 0"]
        params: List[Any] = [alert_type.value, provider]
        if created_since is not None:
            conditions.append("created_at >= ?")
            params.append(to_db_timestamp(created_since))
        if period is not None:
            conditions.append("json_extract(metadata, '$.period') = ?")
            params.append(period)

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alert WHERE "
                + " AND ".join(conditions)
                + " ORDER BY created_at DESC LIMIT 1",
                params,
            ).fetchone()
            return _row_to_alert(row) if row else None
        finally:
            conn.close()

    def list(
        self,
        is_read: Optional[bool] = None,
        is_resolved: Optional[bool] = None,
        alert_type: Optional[AlertType] = None,
        severity: Optional[AlertSeverity] = None,
        limit: int = 100,
    ) -> List[Alert]:
        """List alerts newest first with optional filters."""
        conditions = []
        params: List[Any] = []
        if is_read is not None:
            conditions.append("is_read = ?")
            params.append(int(is_read))
        if is_resolved is not None:
            conditions.append("is_resolved = ?")
            params.append(int(is_resolved))
        if alert_type is not None:
            conditions.append("type = ?")
            params.append(alert_type.value)
        if severity is not None:
            conditions.append("severity = ?")
            params.append(severity.value)

        query = f"SELECT {_ALERT_COLUMNS} FROM alert"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_alert(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def mark_read(self, alert_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("UPDATE alert SET is_read = 1 WHERE id = ?", (alert_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def resolve(self, alert_id: int, resolved_at: datetime, resolved_by: Optional[str]) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE alert SET is_resolved = 1, resolved_at = ?, resolved_by = ? WHERE id = ?",
                (to_db_timestamp(resolved_at), resolved_by, alert_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete(self, alert_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM alert WHERE id = ?", (alert_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()
