"""In-memory storage backend for tests and local runs without PostgreSQL."""

from __future__ import annotations

import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from .models import CreditCharge, ExecutionRecord, NodeResultInput, NodeResultRecord


class InMemoryDispatchStorage:
    """Simple in-memory implementation matching PostgresDispatchStorage behavior."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executions: dict[str, ExecutionRecord] = {}
        self._node_results: list[NodeResultRecord] = []
        self._usage: dict[tuple[str, str], int] = {}
        self._subscription_tiers: dict[str, str] = {}
        self._profile_tiers: dict[str, str] = {}
        self._credits: dict[str, dict[str, Any]] = {}
        self.credit_transactions: list[dict[str, Any]] = []
        self._next_result_id = 1

    def migrate(self) -> None:
        return None

    # Seeding helpers used by tests.
    def set_subscription_tier(self, user_id: str, tier: str) -> None:
        self._subscription_tiers[user_id] = tier

    def set_profile_tier(self, user_id: str, tier: str) -> None:
        self._profile_tiers[user_id] = tier

    def set_credit_balance(self, user_id: str, balance: float) -> None:
        with self._lock:
            account = self._credits.setdefault(user_id, _new_account(balance))
            account["balance"] = balance

    def credit_balance(self, user_id: str) -> float | None:
        account = self._credits.get(user_id)
        return account["balance"] if account else None

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
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self._executions[record.execution_id] = record
        return record

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return self._executions.get(execution_id)

    def list_executions(self) -> list[ExecutionRecord]:
        return list(self._executions.values())

    def insert_node_results(self, execution_id: str, results: list[NodeResultInput]) -> int:
        if execution_id not in self._executions:
            raise KeyError(f"Execution {execution_id} does not exist")
        now = datetime.now(UTC)
        with self._lock:
            for item in results:
                self._node_results.append(
                    NodeResultRecord(
                        id=self._next_result_id,
                        execution_id=execution_id,
                        node_id=item.node_id,
                        node_name=item.node_name,
                        result=dict(item.result),
                        matched=item.matched,
                        created_at=now,
                        updated_at=now,
                    )
                )
                self._next_result_id += 1
        return len(results)

    def list_node_results(self, execution_id: str) -> list[NodeResultRecord]:
        return [item for item in self._node_results if item.execution_id == execution_id]

    def count_executions(self, user_id: str, start: datetime, end: datetime) -> int:
        return sum(
            1
            for record in self._executions.values()
            if record.user_id == user_id and start <= record.created_at < end
        )

    def monthly_usage(self, user_id: str, start: datetime, end: datetime) -> int:
        counter = self._usage.get((user_id, start.date().isoformat()), 0)
        return max(counter, self.count_executions(user_id, start, end))

    def reserve_execution_slot(
        self, user_id: str, start: datetime, end: datetime, limit: int
    ) -> int | None:
        key = (user_id, start.date().isoformat())
        with self._lock:
            if key in self._usage:
                current = self._usage[key]
            else:
                current = self.count_executions(user_id, start, end)
            if current >= limit:
                return None
            self._usage[key] = current + 1
            return current + 1

    def release_execution_slot(self, user_id: str, start: datetime) -> None:
        key = (user_id, start.date().isoformat())
        with self._lock:
            if key in self._usage:
                self._usage[key] = max(self._usage[key] - 1, 0)

    def get_active_subscription_tier(self, user_id: str) -> str | None:
        return self._subscription_tiers.get(user_id)

    def get_profile_tier(self, user_id: str) -> str | None:
        return self._profile_tiers.get(user_id)

    def consume_credits(
        self,
        user_id: str,
        amount: float,
        *,
        allocation: float,
        workflow_id: str | None,
        details: dict[str, Any],
    ) -> CreditCharge:
        now = datetime.now(UTC)
        with self._lock:
            account = self._credits.setdefault(user_id, _new_account(allocation))
            if account["reset"] <= now:
                account.update(balance=account["allocation"], used=0.0, reset=_next_month_start())
            if account["balance"] < amount:
                return CreditCharge(success=False, amount=amount, reason="insufficient_credits")
            account["balance"] -= amount
            account["used"] += amount
            self.credit_transactions.append(
                {
                    "user_id": user_id,
                    "amount": -amount,
                    "balance_after": account["balance"],
                    "workflow_id": workflow_id,
                    "action_type": "workflow_run",
                    "details": dict(details),
                    "created_at": now,
                }
            )
            return CreditCharge(success=True, amount=amount, new_balance=account["balance"])


def _next_month_start() -> datetime:
    now = datetime.now(UTC)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=UTC)
    return datetime(now.year, now.month + 1, 1, tzinfo=UTC)


def _new_account(allocation: float) -> dict[str, Any]:
    return {
        "balance": allocation,
        "allocation": allocation,
        "used": 0.0,
        "reset": _next_month_start(),
    }
