"""
Shop-side inputs consumed by the engine.

These records are owned by the shop configuration subsystem; the engine
only reads them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol


class SectionType(Enum):
    TEXT = "text"
    LOCATION_LIST = "location_list"


@dataclass(frozen=True)
class PhysicalLocation:
    name: str
    address_line1: str
    city: str
    state_region: str
    phone: Optional[str] = None
    operating_hours: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class KnowledgeSection:
    """One user-defined knowledge base section."""
    title: str
    content: str = ""
    type: SectionType = SectionType.TEXT
    locations: List[PhysicalLocation] = field(default_factory=list)


@dataclass(frozen=True)
class KnowledgeBase:
    sections: List[KnowledgeSection] = field(default_factory=list)
    product_data: str = ""

    @property
    def location_sections(self) -> List[KnowledgeSection]:
        return [
            s for s in self.sections
            if s.type == SectionType.LOCATION_LIST and s.locations
        ]

    @property
    def has_physical_locations(self) -> bool:
        """True iff any section is a location list with at least one entry."""
        return bool(self.location_sections)


@dataclass(frozen=True)
class PaymentMethod:
    name: str
    instructions: str
    requires_proof: bool = False
    enabled: bool = True


@dataclass(frozen=True)
class ShopAIProfile:
    """Assistant persona and preferences configured by the shop owner."""
    persona: str
    language: str
    tone: str
    response_delay: float = 0.0
    model_tier: Optional[str] = None


@dataclass(frozen=True)
class ShopSettings:
    """Subscription and flow toggles read from the shop configuration."""
    shop_id: str
    plan_id: str
    order_flow_enabled: bool = False
    booking_flow_enabled: bool = False


class ShopConfigReader(Protocol):
    """Read access to shop configuration."""

    async def get_shop(self, shop_id: str) -> ShopSettings:
        ...
