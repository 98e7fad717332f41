"""
Repository pattern for data access.

Handles database operations for the usage ledger, shop budgets and
commerce usage counters. Every write that must be consistent with another
write happens inside a single SQLite transaction.
"""

import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import Budget, CommerceUsage, OperationType, UsageLedgerEntry


def _ts(value: datetime) -> str:
    """Serialise a timestamp so stored values sort lexicographically."""
    return value.isoformat(timespec="microseconds")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the engine tables if they don't exist.

    usage_ledger_entry is an append-only ledger. No UPDATE is ever
    performed on it; DELETE only happens through the administrative
    bulk clear.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS usage_ledger_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                shop_id TEXT NOT NULL,
                conversation_id TEXT,
                operation_type TEXT NOT NULL,
                model_name TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                input_cost REAL NOT NULL,
                output_cost REAL NOT NULL,
                cost REAL NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS idx_ledger_shop_time
                ON usage_ledger_entry (shop_id, timestamp);

            CREATE TABLE IF NOT EXISTS shop_budget (
                shop_id TEXT PRIMARY KEY,
                daily_budget REAL NOT NULL,
                monthly_budget REAL NOT NULL,
                daily_spent REAL NOT NULL DEFAULT 0,
                monthly_spent REAL NOT NULL DEFAULT 0,
                daily_reset_date TEXT NOT NULL,
                monthly_reset_date TEXT NOT NULL,
                alert_threshold REAL NOT NULL,
                daily_alert_sent INTEGER NOT NULL DEFAULT 0,
                monthly_alert_sent INTEGER NOT NULL DEFAULT 0,
                auto_optimization_enabled INTEGER NOT NULL DEFAULT 1,
                fallback_model TEXT NOT NULL,
                is_budget_exceeded INTEGER NOT NULL DEFAULT 0,
                last_exceeded_at TEXT
            );

            CREATE TABLE IF NOT EXISTS commerce_usage (
                shop_id TEXT PRIMARY KEY,
                count INTEGER NOT NULL DEFAULT 0,
                cycle_reset_date TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


_LEDGER_INSERT = """
    INSERT INTO usage_ledger_entry
    (timestamp, shop_id, conversation_id, operation_type, model_name,
     input_tokens, output_tokens, total_tokens, input_cost, output_cost,
     cost, metadata)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

# Column references on the right-hand side see the pre-update row, so the
# exceeded check compares the new totals against the budgets.
_CHARGE_BUDGET = """
    UPDATE shop_budget SET
        daily_spent = daily_spent + :cost,
        monthly_spent = monthly_spent + :cost,
        is_budget_exceeded = CASE
            WHEN daily_spent + :cost > daily_budget
              OR monthly_spent + :cost > monthly_budget THEN 1
            ELSE is_budget_exceeded END,
        last_exceeded_at = CASE
            WHEN is_budget_exceeded = 0
             AND (daily_spent + :cost > daily_budget
                  OR monthly_spent + :cost > monthly_budget) THEN :now
            ELSE last_exceeded_at END
    WHERE shop_id = :shop_id
"""


def _row_to_entry(row: sqlite3.Row) -> UsageLedgerEntry:
    return UsageLedgerEntry(
        shop_id=row["shop_id"],
        conversation_id=row["conversation_id"],
        operation_type=OperationType(row["operation_type"]),
        model_name=row["model_name"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        input_cost=row["input_cost"],
        output_cost=row["output_cost"],
        cost=row["cost"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _row_to_budget(row: sqlite3.Row) -> Budget:
    return Budget(
        shop_id=row["shop_id"],
        daily_budget=row["daily_budget"],
        monthly_budget=row["monthly_budget"],
        daily_spent=row["daily_spent"],
        monthly_spent=row["monthly_spent"],
        daily_reset_date=datetime.fromisoformat(row["daily_reset_date"]),
        monthly_reset_date=datetime.fromisoformat(row["monthly_reset_date"]),
        alert_threshold=row["alert_threshold"],
        daily_alert_sent=bool(row["daily_alert_sent"]),
        monthly_alert_sent=bool(row["monthly_alert_sent"]),
        auto_optimization_enabled=bool(row["auto_optimization_enabled"]),
        fallback_model=row["fallback_model"],
        is_budget_exceeded=bool(row["is_budget_exceeded"]),
        last_exceeded_at=(
            datetime.fromisoformat(row["last_exceeded_at"]) if row["last_exceeded_at"] else None
        ),
    )


class LedgerRepository:
    """Append-only access to the usage ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append_and_charge(self, entry: UsageLedgerEntry) -> Optional[Budget]:
        """Insert a ledger entry and add its cost to the shop's spend counters.

        Both writes share one transaction, so the cached daily/monthly
        counters always equal the sum of ledger entries in their period.

        Args:
            entry: The usage entry to record

        Returns:
            The shop's budget after the charge, or None if the shop has no budget row
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(_LEDGER_INSERT, (
                _ts(entry.timestamp),
                entry.shop_id,
                entry.conversation_id,
                entry.operation_type.value,
                entry.model_name,
                entry.input_tokens,
                entry.output_tokens,
                entry.total_tokens,
                entry.input_cost,
                entry.output_cost,
                entry.cost,
                json.dumps(entry.metadata, sort_keys=True),
            ))
            conn.execute(_CHARGE_BUDGET, {
                "cost": entry.cost,
                "now": _ts(entry.timestamp),
                "shop_id": entry.shop_id,
            })
            row = conn.execute(
                "SELECT * FROM shop_budget WHERE shop_id = ?", (entry.shop_id,)
            ).fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return _row_to_budget(row) if row else None

    def get_entries(
        self,
        shop_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        operation_type: Optional[OperationType] = None,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[UsageLedgerEntry]:
        """Get ledger entries with optional filtering.

        Args:
            shop_id: Optional filter for a specific shop
            start: Optional inclusive lower bound on timestamp
            end: Optional inclusive upper bound on timestamp
            operation_type: Optional filter for an operation type
            limit: Maximum number of entries to return
            newest_first: Sort order by timestamp

        Returns:
            List of ledger entries
        """
        query = "SELECT * FROM usage_ledger_entry"
        conditions, params = self._filters(shop_id, start, end, operation_type)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp {0}, id {0}".format("DESC" if newest_first else "ASC")
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_entry(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def total_cost(
        self,
        shop_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> float:
        """Sum of entry costs for a shop within a time window."""
        conditions, params = self._filters(shop_id, start, end, None)
        query = "SELECT ROUND(COALESCE(SUM(cost), 0), 6) FROM usage_ledger_entry WHERE " + " AND ".join(conditions)
        conn = get_connection(self.db_path)
        try:
            return float(conn.execute(query, params).fetchone()[0])
        finally:
            conn.close()

    def get_usage_stats(
        self,
        shop_id: Optional[str] = None,
        operation_type: Optional[OperationType] = None,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> Dict[str, float]:
        """Get usage statistics for the specified time period.

        Args:
            shop_id: Optional filter for a specific shop
            operation_type: Optional filter for an operation type
            days: Number of days to include in the statistics
            now: Reference time (defaults to the current time)

        Returns:
            Dictionary containing usage statistics
        """
        cutoff = (now or datetime.now()) - timedelta(days=days)
        conditions, params = self._filters(shop_id, cutoff, None, operation_type)
        query = """
            SELECT
                COUNT(*) AS total_requests,
                SUM(cost) AS total_cost,
                AVG(cost) AS avg_cost,
                SUM(input_tokens) AS input_tokens,
                SUM(output_tokens) AS output_tokens,
                SUM(total_tokens) AS total_tokens
            FROM usage_ledger_entry
            WHERE """ + " AND ".join(conditions)

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(query, params).fetchone()
            return {
                "total_requests": row["total_requests"] or 0,
                "total_cost": float(row["total_cost"] or 0),
                "avg_cost": float(row["avg_cost"] or 0),
                "input_tokens": row["input_tokens"] or 0,
                "output_tokens": row["output_tokens"] or 0,
                "total_tokens": row["total_tokens"] or 0,
            }
        finally:
            conn.close()

    def average_per_operation(self, operation_type: OperationType) -> Dict[str, float]:
        """Average tokens and cost per call for one operation type."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT COUNT(*) AS count,
                       AVG(input_tokens) AS avg_input,
                       AVG(output_tokens) AS avg_output,
                       AVG(total_tokens) AS avg_total,
                       AVG(cost) AS avg_cost
                FROM usage_ledger_entry
                WHERE operation_type = ?
            """, (operation_type.value,)).fetchone()
        finally:
            conn.close()
        if not row["count"]:
            return {"avg_input": 0, "avg_output": 0, "avg_total": 0, "avg_cost": 0.0, "count": 0}
        return {
            "avg_input": round(row["avg_input"]),
            "avg_output": round(row["avg_output"]),
            "avg_total": round(row["avg_total"]),
            "avg_cost": float(row["avg_cost"]),
            "count": row["count"],
        }

    def clear(self, shop_id: Optional[str] = None) -> int:
        """Administrative bulk clear of ledger entries.

        Args:
            shop_id: Only clear this shop's entries when given

        Returns:
            Number of deleted entries
        """
        conn = get_connection(self.db_path)
        try:
            if shop_id is None:
                cursor = conn.execute("DELETE FROM usage_ledger_entry")
            else:
                cursor = conn.execute("DELETE FROM usage_ledger_entry WHERE shop_id = ?", (shop_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    @staticmethod
    def _filters(shop_id, start, end, operation_type):
        conditions: List[str] = []
        params: List[Any] = []
        if shop_id is not None:
            conditions.append("shop_id = ?")
            params.append(shop_id)
        if start is not None:
            conditions.append("timestamp >= ?")
            params.append(_ts(start))
        if end is not None:
            conditions.append("timestamp <= ?")
            params.append(_ts(end))
        if operation_type is not None:
            conditions.append("operation_type = ?")
            params.append(operation_type.value)
        if not conditions:
            conditions.append("1 = 1")
        return conditions, params


class BudgetRepository:
    """Per-shop budget rows. Spend only grows through LedgerRepository.append_and_charge."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, shop_id: str) -> Optional[Budget]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM shop_budget WHERE shop_id = ?", (shop_id,)).fetchone()
            return _row_to_budget(row) if row else None
        finally:
            conn.close()

    def get_or_create(self, template: Budget) -> Budget:
        """Return the shop's budget, inserting the template first if none exists."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR IGNORE INTO shop_budget
                (shop_id, daily_budget, monthly_budget, daily_spent, monthly_spent,
                 daily_reset_date, monthly_reset_date, alert_threshold,
                 auto_optimization_enabled, fallback_model)
                VALUES (?, ?, ?, 0, 0, ?, ?, ?, ?, ?)
            """, (
                template.shop_id,
                template.daily_budget,
                template.monthly_budget,
                _ts(template.daily_reset_date),
                _ts(template.monthly_reset_date),
                template.alert_threshold,
                int(template.auto_optimization_enabled),
                template.fallback_model,
            ))
            conn.commit()
            row = conn.execute(
                "SELECT * FROM shop_budget WHERE shop_id = ?", (template.shop_id,)
            ).fetchone()
            return _row_to_budget(row)
        finally:
            conn.close()

    def list_all(self) -> List[Budget]:
        """All budgets, biggest monthly spenders first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT * FROM shop_budget ORDER BY monthly_spent DESC").fetchall()
            return [_row_to_budget(row) for row in rows]
        finally:
            conn.close()

    _UPDATABLE = {
        "daily_budget", "monthly_budget", "alert_threshold",
        "auto_optimization_enabled", "fallback_model",
    }

    def update_limits(self, shop_id: str, **changes: Any) -> Optional[Budget]:
        """Update configurable budget fields; spend counters are not updatable here."""
        unknown = set(changes) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update budget fields: {sorted(unknown)}")
        if not changes:
            return self.get(shop_id)

        assignments = ", ".join(f"{name} = ?" for name in sorted(changes))
        params = [
            int(changes[name]) if isinstance(changes[name], bool) else changes[name]
            for name in sorted(changes)
        ]
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"UPDATE shop_budget SET {assignments} WHERE shop_id = ?", params + [shop_id])
            conn.commit()
        finally:
            conn.close()
        return self.get(shop_id)

    def mark_alert_sent(self, shop_id: str, period: str) -> bool:
        """Set a period's alert flag; True only for the caller that flipped it."""
        if period not in ("daily", "monthly"):
            raise ValueError(f"Unknown budget period: {period}")
        column = f"{period}_alert_sent"
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE shop_budget SET {column} = 1 WHERE shop_id = ? AND {column} = 0",
                (shop_id,),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def reset_daily(self, now: datetime) -> int:
        """Daily rollover for every shop. The exceeded flag survives if the month is still over."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE shop_budget SET
                    daily_spent = 0,
                    daily_alert_sent = 0,
                    daily_reset_date = ?,
                    is_budget_exceeded = CASE
                        WHEN monthly_spent > monthly_budget THEN 1 ELSE 0 END
            """, (_ts(now),))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def reset_monthly(self, now: datetime) -> int:
        """Monthly rollover for every shop. The exceeded flag survives if today is still over."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE shop_budget SET
                    monthly_spent = 0,
                    monthly_alert_sent = 0,
                    monthly_reset_date = ?,
                    is_budget_exceeded = CASE
                        WHEN daily_spent > daily_budget THEN 1 ELSE 0 END
            """, (_ts(now),))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def set_spent(self, shop_id: str, daily_spent: float, monthly_spent: float) -> None:
        """Overwrite spend counters; used only by ledger reconciliation."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE shop_budget SET daily_spent = ?, monthly_spent = ? WHERE shop_id = ?",
                (daily_spent, monthly_spent, shop_id),
            )
            conn.commit()
        finally:
            conn.close()


class CommerceUsageRepository:
    """Monthly counters of autonomously created orders and bookings."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_or_create(self, shop_id: str, now: datetime) -> CommerceUsage:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR IGNORE INTO commerce_usage (shop_id, count, cycle_reset_date) VALUES (?, 0, ?)",
                (shop_id, _ts(now)),
            )
            conn.commit()
            row = conn.execute(
                "SELECT shop_id, count, cycle_reset_date FROM commerce_usage WHERE shop_id = ?",
                (shop_id,),
            ).fetchone()
        finally:
            conn.close()
        return CommerceUsage(
            shop_id=row["shop_id"],
            count=row["count"],
            cycle_reset_date=datetime.fromisoformat(row["cycle_reset_date"]),
        )

    def increment(self, shop_id: str, now: datetime) -> CommerceUsage:
        """Atomically count one autonomous sale, starting a new cycle on month change."""
        stamp = _ts(now)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO commerce_usage (shop_id, count, cycle_reset_date)
                VALUES (?, 1, ?)
                ON CONFLICT(shop_id) DO UPDATE SET
                    count = CASE
                        WHEN substr(cycle_reset_date, 1, 7) = substr(excluded.cycle_reset_date, 1, 7)
                        THEN count + 1 ELSE 1 END,
                    cycle_reset_date = CASE
                        WHEN substr(cycle_reset_date, 1, 7) = substr(excluded.cycle_reset_date, 1, 7)
                        THEN cycle_reset_date ELSE excluded.cycle_reset_date END
            """, (shop_id, stamp))
            conn.commit()
            row = conn.execute(
                "SELECT shop_id, count, cycle_reset_date FROM commerce_usage WHERE shop_id = ?",
                (shop_id,),
            ).fetchone()
        finally:
            conn.close()
        return CommerceUsage(
            shop_id=row["shop_id"],
            count=row["count"],
            cycle_reset_date=datetime.fromisoformat(row["cycle_reset_date"]),
        )

    def set(self, usage: CommerceUsage) -> None:
        """Store a counter as-is (administrative seeding)."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO commerce_usage (shop_id, count, cycle_reset_date) VALUES (?, ?, ?)
                ON CONFLICT(shop_id) DO UPDATE SET
                    count = excluded.count, cycle_reset_date = excluded.cycle_reset_date
            """, (usage.shop_id, usage.count, _ts(usage.cycle_reset_date)))
            conn.commit()
        finally:
            conn.close()
