"""
Conversational-commerce gating.

Decides whether the assistant may create orders and bookings on its own
this turn, based on the shop's plan entitlement and monthly usage.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from shopbot_engine.config.loader import CommerceConfig
from shopbot_engine.storage.models import CommerceUsage

logger = logging.getLogger(__name__)

UPGRADE_MESSAGE = (
    "Congratulations, your AI has made {limit} sales for you this month! "
    "To continue making automated sales, please upgrade to {next_plan} Plan."
)


class CommerceMode(Enum):
    AUTONOMOUS = "autonomous"  # Model may call the order/booking tools
    ASSISTED = "assisted"  # Model collects details for a human
    QUOTA_EXCEEDED = "quota_exceeded"  # Engine answers without calling the provider


@dataclass(frozen=True)
class CommerceDecision:
    mode: CommerceMode
    effective_count: int = 0
    limit: Optional[int] = None
    message: Optional[str] = None


class CommerceGate:
    """Evaluates plan entitlements against the monthly usage counter."""

    def __init__(self, config: CommerceConfig):
        self.config = config

    def evaluate(self, plan_id: str, usage: Optional[CommerceUsage], now: datetime) -> CommerceDecision:
        """Decide the commerce mode for one turn.

        Args:
            plan_id: The shop's subscription plan
            usage: Current usage counter, if any
            now: Reference time for cycle detection

        Returns:
            CommerceDecision; QUOTA_EXCEEDED carries the upgrade message
        """
        if plan_id in self.config.assisted_only_plans:
            return CommerceDecision(mode=CommerceMode.ASSISTED)

        entitlement = self.config.plans.get(plan_id)
        if entitlement is None or not entitlement.enabled:
            return CommerceDecision(mode=CommerceMode.ASSISTED)

        if entitlement.limit is None:
            return CommerceDecision(mode=CommerceMode.AUTONOMOUS)

        effective_count = usage.effective_count(now) if usage is not None else 0
        if effective_count >= entitlement.limit:
            logger.info(
                "Commerce quota reached for plan %s: %d/%d", plan_id, effective_count, entitlement.limit
            )
            return CommerceDecision(
                mode=CommerceMode.QUOTA_EXCEEDED,
                effective_count=effective_count,
                limit=entitlement.limit,
                message=self.upgrade_message(plan_id, entitlement.limit),
            )

        return CommerceDecision(
            mode=CommerceMode.AUTONOMOUS,
            effective_count=effective_count,
            limit=entitlement.limit,
        )

    def upgrade_message(self, plan_id: str, limit: int) -> str:
        next_plan = self.config.upgrade_targets.get(plan_id, self.config.default_upgrade_target)
        return UPGRADE_MESSAGE.format(limit=limit, next_plan=next_plan)
