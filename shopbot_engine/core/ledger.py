"""
Usage ledger.

Records token and cost accounting for every completed provider call and
keeps each shop's budget counters in step with the recorded entries.
"""

import csv
import io
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from shopbot_engine.config.loader import DEFAULT_TOKEN_LIMITS, TokenLimit
from shopbot_engine.storage.models import Budget, OperationType, UsageLedgerEntry
from shopbot_engine.storage.repository import LedgerRepository

from .budget import BudgetGovernor
from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "Timestamp",
    "Shop ID",
    "Conversation ID",
    "Operation Type",
    "Model Name",
    "Input Tokens",
    "Output Tokens",
    "Total Tokens",
    "Input Cost (USD)",
    "Output Cost (USD)",
    "Total Cost (USD)",
]


class UsageLedger:
    """Write path for usage entries plus the administrative read/clear surface."""

    def __init__(
        self,
        repository: LedgerRepository,
        governor: BudgetGovernor,
        token_limits: Optional[Dict[str, TokenLimit]] = None,
        pricing: PricingTable = PRICING_TABLE,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.governor = governor
        self.token_limits = token_limits if token_limits is not None else dict(DEFAULT_TOKEN_LIMITS)
        self.pricing = pricing
        self.clock = clock

    def record(
        self,
        shop_id: str,
        operation_type: OperationType,
        model_name: str,
        usage: TokenUsage,
        conversation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageLedgerEntry:
        """Append one entry for a completed provider call and charge the shop.

        Args:
            shop_id: Shop the call was made for
            operation_type: Kind of call
            model_name: Model that served the call
            usage: Token counts reported by the provider
            conversation_id: Conversation the call belongs to, if any
            metadata: Diagnostic details (message, history and knowledge sizes)

        Returns:
            The recorded entry
        """
        # The budget row must exist before the first charge so its counters
        # and reset dates start in step with the ledger.
        self.governor.get_budget(shop_id)

        cost = calculate_cost(model_name, usage, self.pricing)
        entry = UsageLedgerEntry(
            shop_id=shop_id,
            conversation_id=conversation_id,
            operation_type=operation_type,
            model_name=model_name,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            input_cost=cost.input_cost,
            output_cost=cost.output_cost,
            cost=cost.total_cost,
            timestamp=self.clock(),
            metadata=dict(metadata or {}),
        )

        budget = self.repository.append_and_charge(entry)

        logger.info(
            "%s usage for shop %s: model=%s input=%d output=%d cost=$%.6f",
            operation_type.value, shop_id, model_name,
            usage.input_tokens, usage.output_tokens, cost.total_cost,
        )
        self._check_token_limits(operation_type, usage)
        if budget is not None:
            self.governor.check_alerts(budget)
        return entry

    def _check_token_limits(self, operation_type: OperationType, usage: TokenUsage) -> None:
        limit = self.token_limits.get(operation_type.value) or self.token_limits.get("chat_message")
        if limit is None:
            return
        if usage.input_tokens > limit.max_input:
            logger.warning(
                "Input tokens (%d) exceed limit of %d for %s",
                usage.input_tokens, limit.max_input, operation_type.value,
            )
        elif usage.output_tokens > limit.max_output:
            logger.warning(
                "Output tokens (%d) exceed limit of %d for %s",
                usage.output_tokens, limit.max_output, operation_type.value,
            )
        elif usage.total_tokens > limit.max_total:
            logger.warning(
                "Total tokens (%d) exceed limit of %d for %s",
                usage.total_tokens, limit.max_total, operation_type.value,
            )

    def reconcile(self, shop_id: str) -> Budget:
        """Recompute a shop's spend counters from ledger totals in the current periods."""
        budget = self.governor.get_budget(shop_id)
        daily = self.repository.total_cost(shop_id, start=budget.daily_reset_date)
        monthly = self.repository.total_cost(shop_id, start=budget.monthly_reset_date)
        if abs(daily - budget.daily_spent) > 1e-6 or abs(monthly - budget.monthly_spent) > 1e-6:
            logger.warning(
                "Reconciled shop %s: daily %.6f -> %.6f, monthly %.6f -> %.6f",
                shop_id, budget.daily_spent, daily, budget.monthly_spent, monthly,
            )
        self.governor.budgets.set_spent(shop_id, daily, monthly)
        return self.governor.get_budget(shop_id)

    def export_rows(
        self,
        shop_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Ledger entries as structured rows, oldest first."""
        entries = self.repository.get_entries(
            shop_id=shop_id, start=start, end=end, newest_first=False
        )
        return [
            {
                "timestamp": e.timestamp.isoformat(),
                "shop_id": e.shop_id,
                "conversation_id": e.conversation_id,
                "operation_type": e.operation_type.value,
                "model_name": e.model_name,
                "input_tokens": e.input_tokens,
                "output_tokens": e.output_tokens,
                "total_tokens": e.total_tokens,
                "input_cost": e.input_cost,
                "output_cost": e.output_cost,
                "cost": e.cost,
                "metadata": e.metadata,
            }
            for e in entries
        ]

    def export_csv(self, rows: List[Dict[str, Any]]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for row in rows:
            writer.writerow([
                row["timestamp"],
                row["shop_id"],
                row["conversation_id"] or "",
                row["operation_type"],
                row["model_name"],
                row["input_tokens"],
                row["output_tokens"],
                row["total_tokens"],
                f"{row['input_cost']:.6f}",
                f"{row['output_cost']:.6f}",
                f"{row['cost']:.6f}",
            ])
        return buffer.getvalue()

    def clear(self, shop_id: Optional[str] = None) -> int:
        """Administrative bulk clear; returns the number of deleted entries.

        The affected shops' spend counters are reconciled afterwards so they
        keep matching the ledger. The sticky exceeded flag is left for rollover.
        """
        deleted = self.repository.clear(shop_id)
        logger.warning("Cleared %d ledger entries (shop=%s)", deleted, shop_id or "all")

        if shop_id is None:
            shop_ids = [b.shop_id for b in self.governor.list_budgets()]
        else:
            shop_ids = [shop_id] if self.governor.budgets.get(shop_id) is not None else []
        for affected in shop_ids:
            self.reconcile(affected)
        return deleted
