"""
Budget admission control and cost optimization.

Enforcement order for one request:
1. Admission - reject when the shop's budget is exhausted or would be crossed
2. Optimization - degrade model and context size as spend approaches the budget
3. Alerting - after spend is recorded, warn once per period past the alert threshold
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from shopbot_engine.config.loader import BudgetConfig, OptimizationConfig
from shopbot_engine.storage.models import Budget
from shopbot_engine.storage.repository import BudgetRepository

logger = logging.getLogger(__name__)


class OptimizationAction(Enum):
    """Degradations available as spend grows, in order of severity."""
    REDUCE_CONTEXT = "reduce_context"
    SWITCH_MODEL = "switch_model"
    BLOCK_REQUESTS = "block_requests"


@dataclass(frozen=True)
class OptimizationRule:
    trigger_threshold: float
    action: OptimizationAction
    target_model: Optional[str] = None
    max_history_messages: Optional[int] = None


@dataclass(frozen=True)
class OptimizationDecision:
    """What the request should actually use after optimization."""
    model_name: str
    max_history_messages: Optional[int] = None
    rules: List[OptimizationRule] = field(default_factory=list)
    block_recommended: bool = False
    message: Optional[str] = None

    def trim_history(self, history: list) -> list:
        if self.max_history_messages is not None and len(history) > self.max_history_messages:
            return history[-self.max_history_messages:]
        return history


@dataclass(frozen=True)
class AdmissionDecision:
    shop_id: str
    allowed: bool
    budget: Budget
    reason: Optional[str] = None
    reserved_cost: float = 0.0


@dataclass(frozen=True)
class BudgetStatus:
    daily_percent_used: float
    monthly_percent_used: float
    daily_remaining: float
    monthly_remaining: float
    can_make_request: bool
    estimated_requests_remaining: int
    should_optimize: bool


@dataclass(frozen=True)
class BudgetAlert:
    shop_id: str
    period: str  # "daily" or "monthly"
    percent_used: float
    threshold: float
    spent: float
    budget: float

    @property
    def message(self) -> str:
        return (
            f"{self.period.capitalize()} AI spend for shop {self.shop_id} at "
            f"{self.percent_used:.1f}% of budget (${self.spent:.4f}/${self.budget:.2f})"
        )


AlertListener = Callable[[BudgetAlert], None]


class BudgetGovernor:
    """Per-shop spend admission, optimization rules and alerting.

    Admission holds a per-shop lock while checking and reserving the
    estimated cost, so concurrent requests for one shop cannot both pass
    when only one fits. Reservations live in memory until release().
    The budget read inside the lock runs in a worker thread so a busy
    database does not stall other shops.
    """

    def __init__(
        self,
        budgets: BudgetRepository,
        budget_config: BudgetConfig,
        optimization_config: OptimizationConfig,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.budgets = budgets
        self.budget_config = budget_config
        self.optimization_config = optimization_config
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._pending: Dict[str, float] = {}
        self._alert_listeners: List[AlertListener] = []

    def get_budget(self, shop_id: str) -> Budget:
        """Load the shop's budget, creating it with configured defaults on first access."""
        now = self.clock()
        return self.budgets.get_or_create(Budget(
            shop_id=shop_id,
            daily_budget=self.budget_config.daily,
            monthly_budget=self.budget_config.monthly,
            daily_spent=0.0,
            monthly_spent=0.0,
            daily_reset_date=now,
            monthly_reset_date=now,
            alert_threshold=self.budget_config.alert_threshold,
            auto_optimization_enabled=self.budget_config.auto_optimization,
            fallback_model=self.budget_config.fallback_model,
        ))

    async def admit(self, shop_id: str, estimated_cost: Optional[float] = None) -> AdmissionDecision:
        """Check whether the shop can afford one more provider call.

        Args:
            shop_id: Shop making the request
            estimated_cost: Expected cost; defaults to the configured average per request

        Returns:
            AdmissionDecision; when allowed, the estimate stays reserved until release()
        """
        if estimated_cost is None:
            estimated_cost = self.budget_config.estimated_cost_per_request

        # A shop's lock is dropped once no caller holds or awaits it.
        lock = self._locks.get(shop_id)
        if lock is None:
            lock = self._locks[shop_id] = asyncio.Lock()
        self._lock_users[shop_id] = self._lock_users.get(shop_id, 0) + 1
        try:
            async with lock:
                return await self._admit_locked(shop_id, estimated_cost)
        finally:
            self._lock_users[shop_id] -= 1
            if not self._lock_users[shop_id]:
                del self._lock_users[shop_id]
                del self._locks[shop_id]

    async def _admit_locked(self, shop_id: str, estimated_cost: float) -> AdmissionDecision:
        budget = await asyncio.to_thread(self.get_budget, shop_id)
        pending = self._pending.get(shop_id, 0.0)

        reason = None
        if budget.is_budget_exceeded:
            reason = "Budget exceeded. Please increase your daily or monthly budget."
        elif budget.daily_spent + pending + estimated_cost > budget.daily_budget:
            reason = f"Daily budget of ${budget.daily_budget:.2f} would be exceeded."
        elif budget.monthly_spent + pending + estimated_cost > budget.monthly_budget:
            reason = f"Monthly budget of ${budget.monthly_budget:.2f} would be exceeded."

        if reason is not None:
            logger.info("Admission rejected for shop %s: %s", shop_id, reason)
            return AdmissionDecision(shop_id=shop_id, allowed=False, budget=budget, reason=reason)

        self._pending[shop_id] = pending + estimated_cost
        return AdmissionDecision(
            shop_id=shop_id, allowed=True, budget=budget, reserved_cost=estimated_cost
        )

    def release(self, decision: AdmissionDecision) -> None:
        """Drop the reservation made by admit()."""
        if not decision.allowed or decision.reserved_cost <= 0:
            return
        remaining = self._pending.get(decision.shop_id, 0.0) - decision.reserved_cost
        if remaining <= 1e-12:
            self._pending.pop(decision.shop_id, None)
        else:
            self._pending[decision.shop_id] = remaining

    def recommendations(self, budget: Budget) -> List[OptimizationRule]:
        """Rules for the highest threshold tier the budget has reached."""
        cfg = self.optimization_config
        percent_used = budget.percent_used

        if percent_used >= cfg.block_threshold:
            return [OptimizationRule(cfg.block_threshold, OptimizationAction.BLOCK_REQUESTS)]
        if percent_used >= cfg.switch_model_threshold:
            return [
                OptimizationRule(
                    cfg.switch_model_threshold,
                    OptimizationAction.SWITCH_MODEL,
                    target_model=budget.fallback_model,
                ),
                OptimizationRule(
                    cfg.switch_model_threshold,
                    OptimizationAction.REDUCE_CONTEXT,
                    max_history_messages=cfg.tight_history_cap,
                ),
            ]
        if percent_used >= cfg.reduce_context_threshold:
            return [
                OptimizationRule(
                    cfg.reduce_context_threshold,
                    OptimizationAction.REDUCE_CONTEXT,
                    max_history_messages=cfg.loose_history_cap,
                ),
            ]
        return []

    def optimize(self, shop_id: str, current_model: str, history_length: int) -> OptimizationDecision:
        """Apply the matching optimization tier to an admitted request.

        Never blocks: at the top tier it only flags that blocking is
        recommended, since admission already rejects genuine overage.

        Args:
            shop_id: Shop making the request
            current_model: Model the request would use
            history_length: Number of history turns the request would send

        Returns:
            OptimizationDecision with the model and history cap to use
        """
        budget = self.get_budget(shop_id)
        if not budget.auto_optimization_enabled:
            return OptimizationDecision(model_name=current_model)

        rules = self.recommendations(budget)
        if not rules:
            return OptimizationDecision(model_name=current_model)

        percent_used = budget.percent_used
        if rules[0].action == OptimizationAction.BLOCK_REQUESTS:
            logger.warning(
                "Shop %s at %.1f%% of budget; blocking recommended", shop_id, percent_used
            )
            return OptimizationDecision(
                model_name=current_model,
                rules=rules,
                block_recommended=True,
                message=f"Budget at {percent_used:.1f}%; blocking recommended",
            )

        model_name = current_model
        max_history = None
        notes = []
        for rule in rules:
            if rule.action == OptimizationAction.SWITCH_MODEL and rule.target_model:
                if rule.target_model != current_model:
                    notes.append(f"switched to {rule.target_model}")
                model_name = rule.target_model
            elif rule.action == OptimizationAction.REDUCE_CONTEXT and rule.max_history_messages:
                if history_length > rule.max_history_messages:
                    max_history = rule.max_history_messages
                    notes.append(f"reduced context to {rule.max_history_messages} messages")

        message = None
        if notes:
            message = f"Budget at {percent_used:.1f}%: " + ", ".join(notes)
            logger.info("Cost optimization for shop %s: %s", shop_id, message)

        return OptimizationDecision(
            model_name=model_name,
            max_history_messages=max_history,
            rules=rules,
            message=message,
        )

    def status(self, shop_id: str) -> BudgetStatus:
        """Current spend, remaining budget and request headroom for a shop."""
        budget = self.get_budget(shop_id)
        daily_remaining = max(0.0, budget.daily_budget - budget.daily_spent)
        monthly_remaining = max(0.0, budget.monthly_budget - budget.monthly_spent)
        min_remaining = min(daily_remaining, monthly_remaining)

        return BudgetStatus(
            daily_percent_used=budget.daily_percent_used,
            monthly_percent_used=budget.monthly_percent_used,
            daily_remaining=daily_remaining,
            monthly_remaining=monthly_remaining,
            can_make_request=(
                not budget.is_budget_exceeded
                and budget.daily_spent < budget.daily_budget
                and budget.monthly_spent < budget.monthly_budget
            ),
            estimated_requests_remaining=math.floor(
                min_remaining / self.budget_config.estimated_cost_per_request
            ),
            should_optimize=(
                budget.auto_optimization_enabled
                and budget.percent_used >= budget.alert_threshold
            ),
        )

    def on_alert(self, listener: AlertListener) -> None:
        """Register a callback for budget alerts; it may run on a storage worker thread."""
        self._alert_listeners.append(listener)

    def check_alerts(self, budget: Budget) -> List[BudgetAlert]:
        """Emit at most one alert per period once spend crosses the alert threshold.

        The per-period flag is set here, on first emission, and cleared by
        the rollover job.
        """
        alerts = []
        periods = (
            ("daily", budget.daily_percent_used, budget.daily_alert_sent,
             budget.daily_spent, budget.daily_budget),
            ("monthly", budget.monthly_percent_used, budget.monthly_alert_sent,
             budget.monthly_spent, budget.monthly_budget),
        )
        for period, percent, already_sent, spent, limit in periods:
            if already_sent or percent < budget.alert_threshold:
                continue
            if not self.budgets.mark_alert_sent(budget.shop_id, period):
                continue
            alert = BudgetAlert(
                shop_id=budget.shop_id,
                period=period,
                percent_used=percent,
                threshold=budget.alert_threshold,
                spent=spent,
                budget=limit,
            )
            logger.warning("Budget alert: %s", alert.message)
            for listener in self._alert_listeners:
                try:
                    listener(alert)
                except Exception:
                    logger.exception("Budget alert listener failed for shop %s", budget.shop_id)
            alerts.append(alert)
        return alerts

    def update_budget(self, shop_id: str, **changes) -> Budget:
        """Change limits, alert threshold, auto-optimization or fallback model."""
        self.get_budget(shop_id)
        return self.budgets.update_limits(shop_id, **changes)

    def list_budgets(self) -> List[Budget]:
        return self.budgets.list_all()

    def rollover_daily(self, now: Optional[datetime] = None) -> int:
        """Scheduled daily reset; returns the number of shops reset."""
        count = self.budgets.reset_daily(now or self.clock())
        logger.info("Daily budget rollover reset %d shops", count)
        return count

    def rollover_monthly(self, now: Optional[datetime] = None) -> int:
        """Scheduled monthly reset; returns the number of shops reset."""
        count = self.budgets.reset_monthly(now or self.clock())
        logger.info("Monthly budget rollover reset %d shops", count)
        return count
