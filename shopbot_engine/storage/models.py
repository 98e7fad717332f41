"""
Data models for storage layer.

Defines the persisted records: usage ledger entries, shop budgets and
conversational-commerce usage counters.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class OperationType(Enum):
    """Kinds of provider call recorded in the ledger."""
    CHAT_MESSAGE = "chat_message"
    PRODUCT_DESCRIPTION = "product_description"
    PHOTO_STUDIO = "photo_studio"
    SUGGESTION = "suggestion"


@dataclass(frozen=True)
class UsageLedgerEntry:
    """Immutable record of one completed provider call.

    Append-only entries form the auditable ledger behind budget enforcement
    and billing. Once written, these records must never be modified.
    """
    shop_id: str
    operation_type: OperationType
    model_name: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    cost: float
    timestamp: datetime
    conversation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class Budget:
    """Spend limits and period counters for one shop."""
    shop_id: str
    daily_budget: float
    monthly_budget: float
    daily_spent: float
    monthly_spent: float
    daily_reset_date: datetime
    monthly_reset_date: datetime
    alert_threshold: float  # Percentage (0-100)
    auto_optimization_enabled: bool
    fallback_model: str
    is_budget_exceeded: bool = False
    daily_alert_sent: bool = False
    monthly_alert_sent: bool = False
    last_exceeded_at: Optional[datetime] = None

    @property
    def daily_percent_used(self) -> float:
        return (self.daily_spent / self.daily_budget) * 100 if self.daily_budget > 0 else 100.0

    @property
    def monthly_percent_used(self) -> float:
        return (self.monthly_spent / self.monthly_budget) * 100 if self.monthly_budget > 0 else 100.0

    @property
    def percent_used(self) -> float:
        """The tighter of the two periods."""
        return max(self.daily_percent_used, self.monthly_percent_used)


@dataclass(frozen=True)
class CommerceUsage:
    """Autonomous orders created in the billing cycle starting at cycle_reset_date."""
    shop_id: str
    count: int
    cycle_reset_date: datetime

    def effective_count(self, now: datetime) -> int:
        """Count for the current month; a stale cycle reads as zero without a write."""
        if (self.cycle_reset_date.year, self.cycle_reset_date.month) == (now.year, now.month):
            return self.count
        return 0
