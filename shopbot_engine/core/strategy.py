"""
Sales strategy resolution.

Maps a shop's commerce configuration to the channel the assistant steers
customers towards.
"""

from enum import Enum


class SalesStrategy(Enum):
    OMNICHANNEL = "omnichannel"
    ONLINE_ONLY = "online_only"
    PHYSICAL_ONLY = "physical_only"
    INFORMATIONAL_ONLY = "informational_only"

    @property
    def sells_online(self) -> bool:
        return self in (SalesStrategy.OMNICHANNEL, SalesStrategy.ONLINE_ONLY)


def resolve_strategy(
    order_flow_enabled: bool,
    booking_flow_enabled: bool,
    has_physical_locations: bool,
) -> SalesStrategy:
    """Resolve the sales strategy for a shop.

    Pure and total: every combination of inputs maps to exactly one strategy.

    Args:
        order_flow_enabled: Whether online ordering is switched on
        booking_flow_enabled: Whether online booking is switched on
        has_physical_locations: Whether the knowledge base lists at least one store

    Returns:
        The SalesStrategy for the shop
    """
    has_online_flows = order_flow_enabled or booking_flow_enabled

    if has_online_flows and has_physical_locations:
        return SalesStrategy.OMNICHANNEL
    if has_online_flows:
        return SalesStrategy.ONLINE_ONLY
    if has_physical_locations:
        return SalesStrategy.PHYSICAL_ONLY
    return SalesStrategy.INFORMATIONAL_ONLY
