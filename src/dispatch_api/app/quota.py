"""Monthly execution quota and credit charging per subscription tier."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .models import CreditCharge, QuotaDecision
from .storage import DispatchStorage

logger = logging.getLogger(__name__)

DEFAULT_TIER = "free"
UNLIMITED = -1

# Workflow executions per calendar month.
TIER_WORKFLOW_LIMITS: dict[str, int] = {
    "free": 3,
    "researcher": UNLIMITED,
    "clinical": UNLIMITED,
}

# Credits granted at each monthly reset.
TIER_CREDIT_ALLOCATIONS: dict[str, float] = {
    "free": 50.0,
    "researcher": 500.0,
    "clinical": 2000.0,
}


@dataclass(frozen=True)
class MonthWindow:
    start: datetime
    end: datetime


def month_window(now: datetime) -> MonthWindow:
    """Return `[first day of month, first day of next month)` in UTC."""
    now = now.astimezone(UTC)
    start = datetime(now.year, now.month, 1, tzinfo=UTC)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=UTC)
    return MonthWindow(start=start, end=end)


def workflow_limit_for(tier: str) -> int:
    return TIER_WORKFLOW_LIMITS.get(tier, TIER_WORKFLOW_LIMITS[DEFAULT_TIER])


def credits_for_run(node_count: int) -> int:
    return max(1, node_count)


class QuotaGuard:
    """Gate runs behind the tier's monthly limit and charge credits afterwards."""

    def __init__(
        self,
        storage: DispatchStorage,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.storage = storage
        self._clock = clock or (lambda: datetime.now(UTC))

    def resolve_tier(self, user_id: str) -> str:
        """Active subscription first, then profile; `free` when neither answers."""
        try:
            tier = self.storage.get_active_subscription_tier(user_id)
            if not tier:
                tier = self.storage.get_profile_tier(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("quota event=tier_lookup_failed user_id=%s reason=%s", user_id, exc)
            return DEFAULT_TIER
        return tier or DEFAULT_TIER

    def check(self, user_id: str) -> QuotaDecision:
        """Read-only view of the caller's quota for the current month."""
        tier = self.resolve_tier(user_id)
        limit = workflow_limit_for(tier)
        if limit == UNLIMITED:
            return QuotaDecision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, tier=tier)
        window = month_window(self._clock())
        try:
            used = self.storage.monthly_usage(user_id, window.start, window.end)
        except Exception as exc:  # noqa: BLE001
            logger.warning("quota event=usage_lookup_failed user_id=%s reason=%s", user_id, exc)
            return QuotaDecision(allowed=True, remaining=limit, limit=limit, tier=tier)
        remaining = max(limit - used, 0)
        if used >= limit:
            return self._denied(tier, limit, used)
        return QuotaDecision(allowed=True, remaining=remaining, limit=limit, used=used, tier=tier)

    def reserve(self, user_id: str) -> QuotaDecision:
        """Take one execution slot atomically, or deny when the month is used up."""
        tier = self.resolve_tier(user_id)
        limit = workflow_limit_for(tier)
        if limit == UNLIMITED:
            return QuotaDecision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, tier=tier)
        window = month_window(self._clock())
        try:
            used = self.storage.reserve_execution_slot(user_id, window.start, window.end, limit)
        except Exception as exc:  # noqa: BLE001
            # Usage tracking unavailable: the run is allowed, as when no counter exists.
            logger.warning("quota event=reserve_failed user_id=%s reason=%s", user_id, exc)
            return QuotaDecision(allowed=True, remaining=limit, limit=limit, tier=tier)
        if used is None:
            logger.info("quota event=denied user_id=%s tier=%s limit=%d", user_id, tier, limit)
            return self._denied(tier, limit, limit)
        logger.info(
            "quota event=reserved user_id=%s tier=%s used=%d limit=%d", user_id, tier, used, limit
        )
        return QuotaDecision(
            allowed=True,
            remaining=max(limit - used, 0),
            limit=limit,
            used=used,
            tier=tier,
            reserved=True,
        )

    def release(self, user_id: str, decision: QuotaDecision) -> None:
        """Give back a slot taken by `reserve` when the run produced no answer."""
        # Unlimited tiers and fail-open decisions never incremented a counter.
        if not decision.reserved:
            return
        window = month_window(self._clock())
        try:
            self.storage.release_execution_slot(user_id, window.start)
        except Exception:  # noqa: BLE001
            logger.exception("quota event=release_failed user_id=%s", user_id)

    def charge(
        self,
        user_id: str,
        credits: float,
        *,
        tier: str = DEFAULT_TIER,
        workflow_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> CreditCharge:
        """Best-effort credit deduction; failures are reported, never raised."""
        allocation = TIER_CREDIT_ALLOCATIONS.get(tier, TIER_CREDIT_ALLOCATIONS[DEFAULT_TIER])
        try:
            charge = self.storage.consume_credits(
                user_id,
                credits,
                allocation=allocation,
                workflow_id=workflow_id,
                details=details or {},
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("quota event=credit_charge_failed user_id=%s", user_id)
            return CreditCharge(success=False, amount=credits, reason=str(exc))
        if not charge.success:
            logger.warning(
                "quota event=credit_charge_declined user_id=%s amount=%s reason=%s",
                user_id,
                credits,
                charge.reason,
            )
        return charge

    @staticmethod
    def _denied(tier: str, limit: int, used: int) -> QuotaDecision:
        return QuotaDecision(
            allowed=False,
            remaining=0,
            limit=limit,
            used=used,
            tier=tier,
            reason=(
                f"You've used all {limit} workflow executions this month. "
                "Upgrade to Researcher for unlimited executions."
            ),
        )
