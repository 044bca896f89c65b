"""PostgreSQL storage backend for workflow executions, node results, and usage.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for the opaque per-node results.
- Upsert: INSERT ... ON CONFLICT ... DO UPDATE, one atomic statement.
- Row factory: returns query rows as dict-like objects instead of tuples.

Quota and credits are the only state shared across requests. Both change
through single atomic statements so concurrent runs of one user cannot both
pass a limit check.
"""

from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import CreditCharge, ExecutionRecord, NodeResultInput, NodeResultRecord


class DispatchStorage(Protocol):
    def migrate(self) -> None: ...

    def create_execution(
        self,
        *,
        user_id: str | None,
        workflow_id: str | None,
        workflow_name: str,
        archetype: str,
        started_at: datetime,
        completed_at: datetime,
        result_summary: str,
        nodes_executed: int,
    ) -> ExecutionRecord: ...

    def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    def insert_node_results(self, execution_id: str, results: list[NodeResultInput]) -> int: ...

    def list_node_results(self, execution_id: str) -> list[NodeResultRecord]: ...

    def count_executions(self, user_id: str, start: datetime, end: datetime) -> int: ...

    def monthly_usage(self, user_id: str, start: datetime, end: datetime) -> int: ...

    def reserve_execution_slot(
        self, user_id: str, start: datetime, end: datetime, limit: int
    ) -> int | None: ...

    def release_execution_slot(self, user_id: str, start: datetime) -> None: ...

    def get_active_subscription_tier(self, user_id: str) -> str | None: ...

    def get_profile_tier(self, user_id: str) -> str | None: ...

    def consume_credits(
        self,
        user_id: str,
        amount: float,
        *,
        allocation: float,
        workflow_id: str | None,
        details: dict[str, Any],
    ) -> CreditCharge: ...


class PostgresDispatchStorage:
    """Thread-safe PostgreSQL-backed storage."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        # Lazy import helper keeps error message clear if psycopg is missing.
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()
        self.migrate()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_runs (
                    run_id UUID PRIMARY KEY,
                    user_id TEXT,
                    workflow_id TEXT,
                    workflow_name TEXT NOT NULL DEFAULT '',
                    archetype TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'completed',
                    result_summary TEXT NOT NULL DEFAULT '',
                    nodes_executed INTEGER NOT NULL DEFAULT 0,
                    started_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_workflow_runs_user_created
                ON workflow_runs(user_id, created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_node_results (
                    id BIGSERIAL PRIMARY KEY,
                    workflow_execution_id UUID NOT NULL
                        REFERENCES workflow_runs(run_id) ON DELETE CASCADE,
                    node_id VARCHAR(128) NOT NULL,
                    node_name VARCHAR(256) NOT NULL,
                    result JSONB NOT NULL,
                    matched BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_workflow_node_results_execution_id
                ON workflow_node_results(workflow_execution_id)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS monthly_execution_usage (
                    user_id TEXT NOT NULL,
                    period_start DATE NOT NULL,
                    executions INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (user_id, period_start)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    user_id TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_profiles (
                    user_id TEXT PRIMARY KEY,
                    subscription_tier TEXT
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_credits (
                    user_id TEXT PRIMARY KEY,
                    credits_balance NUMERIC(10, 2) NOT NULL,
                    monthly_allocation NUMERIC(10, 2) NOT NULL,
                    bonus_credits NUMERIC(10, 2) NOT NULL DEFAULT 0,
                    credits_used_this_month NUMERIC(10, 2) NOT NULL DEFAULT 0,
                    month_reset_date TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credit_transactions (
                    id BIGSERIAL PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    amount NUMERIC(10, 2) NOT NULL,
                    balance_after NUMERIC(10, 2) NOT NULL,
                    workflow_id TEXT,
                    action_type TEXT NOT NULL,
                    details JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.commit()

    def create_execution(
        self,
        *,
        user_id: str | None,
        workflow_id: str | None,
        workflow_name: str,
        archetype: str,
        started_at: datetime,
        completed_at: datetime,
        result_summary: str,
        nodes_executed: int,
    ) -> ExecutionRecord:
        """Insert one completed execution row; rows are never updated afterwards."""
        record = ExecutionRecord(
            execution_id=str(uuid.uuid4()),
            user_id=user_id,
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            archetype=archetype,
            status="completed",
            started_at=started_at,
            completed_at=completed_at,
            result_summary=result_summary,
            nodes_executed=nodes_executed,
            created_at=datetime.now(tz=UTC),
        )
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_runs (
                    run_id,
                    user_id,
                    workflow_id,
                    workflow_name,
                    archetype,
                    status,
                    result_summary,
                    nodes_executed,
                    started_at,
                    completed_at,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.execution_id,
                    record.user_id,
                    record.workflow_id,
                    record.workflow_name,
                    record.archetype,
                    record.status,
                    record.result_summary,
                    record.nodes_executed,
                    record.started_at,
                    record.completed_at,
                    record.created_at,
                ),
            )
            conn.commit()
        return record

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_runs WHERE run_id::text = %s",
                (execution_id,),
            ).fetchone()
        if row is None:
            return None
        return ExecutionRecord(
            execution_id=str(row["run_id"]),
            user_id=row["user_id"],
            workflow_id=row["workflow_id"],
            workflow_name=row["workflow_name"],
            archetype=row["archetype"],
            status=row["status"],
            started_at=self._parse_datetime(row["started_at"]),
            completed_at=self._parse_datetime(row["completed_at"]),
            result_summary=row["result_summary"],
            nodes_executed=row["nodes_executed"],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def insert_node_results(self, execution_id: str, results: list[NodeResultInput]) -> int:
        """Bulk-insert per-node results for one execution."""
        if not results:
            return 0
        now = datetime.now(tz=UTC)
        rows = [
            (
                execution_id,
                item.node_id[:128],
                item.node_name[:256],
                self._json_wrapper(item.result),
                item.matched,
                now,
                now,
            )
            for item in results
        ]
        with self._lock, self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO workflow_node_results (
                        workflow_execution_id,
                        node_id,
                        node_name,
                        result,
                        matched,
                        created_at,
                        updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    rows,
                )
            conn.commit()
        return len(rows)

    def list_node_results(self, execution_id: str) -> list[NodeResultRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workflow_node_results
                WHERE workflow_execution_id::text = %s
                ORDER BY created_at ASC, id ASC
                """,
                (execution_id,),
            ).fetchall()
        return [
            NodeResultRecord(
                id=row["id"],
                execution_id=str(row["workflow_execution_id"]),
                node_id=row["node_id"],
                node_name=row["node_name"],
                result=self._parse_json_object(row["result"]),
                matched=row["matched"],
                created_at=self._parse_datetime(row["created_at"]),
                updated_at=self._parse_datetime(row["updated_at"]),
            )
            for row in rows
        ]

    def count_executions(self, user_id: str, start: datetime, end: datetime) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM workflow_runs
                WHERE user_id = %s AND created_at >= %s AND created_at < %s
                """,
                (user_id, start, end),
            ).fetchone()
        return int(row["total"]) if row else 0

    def monthly_usage(self, user_id: str, start: datetime, end: datetime) -> int:
        """Executions used this window: reserved slots or stored runs, whichever is larger."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT GREATEST(
                    COALESCE((
                        SELECT executions FROM monthly_execution_usage
                        WHERE user_id = %(user_id)s AND period_start = %(period)s
                    ), 0),
                    (
                        SELECT COUNT(*) FROM workflow_runs
                        WHERE user_id = %(user_id)s
                          AND created_at >= %(start)s AND created_at < %(end)s
                    )
                ) AS used
                """,
                {"user_id": user_id, "period": start.date(), "start": start, "end": end},
            ).fetchone()
        return int(row["used"]) if row else 0

    def reserve_execution_slot(
        self, user_id: str, start: datetime, end: datetime, limit: int
    ) -> int | None:
        """Atomically take one execution slot if the user is under `limit`.

        The first reservation of a month seeds the counter from stored runs.
        Returns the new used count, or None when the limit is already reached.
        """
        params = {
            "user_id": user_id,
            "period": start.date(),
            "start": start,
            "end": end,
            "limit": limit,
        }
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO monthly_execution_usage (user_id, period_start, executions, updated_at)
                SELECT %(user_id)s, %(period)s, COUNT(*) + 1, now()
                FROM workflow_runs
                WHERE user_id = %(user_id)s
                  AND created_at >= %(start)s AND created_at < %(end)s
                HAVING COUNT(*) < %(limit)s
                ON CONFLICT (user_id, period_start) DO UPDATE
                SET executions = monthly_execution_usage.executions + 1,
                    updated_at = now()
                WHERE monthly_execution_usage.executions < %(limit)s
                RETURNING executions
                """,
                params,
            ).fetchone()
            conn.commit()
        return int(row["executions"]) if row else None

    def release_execution_slot(self, user_id: str, start: datetime) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE monthly_execution_usage
                SET executions = GREATEST(executions - 1, 0), updated_at = now()
                WHERE user_id = %s AND period_start = %s
                """,
                (user_id, start.date()),
            )
            conn.commit()

    def get_active_subscription_tier(self, user_id: str) -> str | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT tier FROM subscriptions
                WHERE user_id = %s AND status = 'active'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return row["tier"] if row else None

    def get_profile_tier(self, user_id: str) -> str | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT subscription_tier FROM user_profiles WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return row["subscription_tier"] if row else None

    def consume_credits(
        self,
        user_id: str,
        amount: float,
        *,
        allocation: float,
        workflow_id: str | None,
        details: dict[str, Any],
    ) -> CreditCharge:
        """Deduct credits only if the balance covers them, and log the transaction."""
        now = datetime.now(tz=UTC)
        next_reset = _next_month_start(now)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_credits (
                    user_id, credits_balance, monthly_allocation, month_reset_date
                ) VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (user_id, allocation, allocation, next_reset),
            )
            # Monthly reset happens lazily on first use after the reset date.
            conn.execute(
                """
                UPDATE user_credits
                SET credits_balance = monthly_allocation + bonus_credits,
                    credits_used_this_month = 0,
                    month_reset_date = %s,
                    updated_at = %s
                WHERE user_id = %s AND month_reset_date <= %s
                """,
                (next_reset, now, user_id, now),
            )
            row = conn.execute(
                """
                UPDATE user_credits
                SET credits_balance = credits_balance - %(amount)s,
                    credits_used_this_month = credits_used_this_month + %(amount)s,
                    updated_at = %(now)s
                WHERE user_id = %(user_id)s AND credits_balance >= %(amount)s
                RETURNING credits_balance
                """,
                {"amount": amount, "now": now, "user_id": user_id},
            ).fetchone()
            if row is None:
                conn.commit()
                return CreditCharge(success=False, amount=amount, reason="insufficient_credits")
            balance = float(row["credits_balance"])
            conn.execute(
                """
                INSERT INTO credit_transactions (
                    user_id, amount, balance_after, workflow_id, action_type, details, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user_id,
                    -amount,
                    balance,
                    workflow_id,
                    "workflow_run",
                    self._json_wrapper(details),
                    now,
                ),
            )
            conn.commit()
        return CreditCharge(success=True, amount=amount, new_balance=balance)

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        """Parse JSON-like value into dict; fall back to empty dict."""
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        """Parse datetime value from database driver output."""
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")


def _next_month_start(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=UTC)
    return datetime(now.year, now.month + 1, 1, tzinfo=UTC)
