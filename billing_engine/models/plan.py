"""
billing_engine/models/plan.py

Plan catalog entry.

Plans are immutable once published. Retiring a plan flips ``is_active``
so it leaves the subscribable set but stays resolvable for existing
subscribers.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


PERIOD_DAYS = {
    BillingPeriod.MONTHLY: 30,
    BillingPeriod.YEARLY: 365,
}

PERIOD_MONTHS = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.YEARLY: 12,
}


class Plan(BaseModel):
    """
    A subscribable plan.

    ``price`` is in integer minor units (cents) per billing period.
    ``upgrades_to`` / ``downgrades_to`` declare catalog adjacency.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    description: str = ""
    price: int = Field(ge=0)
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    trial_days: int = Field(default=0, ge=0)
    features: List[str] = Field(default_factory=list)
    upgrades_to: FrozenSet[str] = frozenset()
    downgrades_to: FrozenSet[str] = frozenset()
    is_active: bool = True
    is_popular: bool = False
    sort_order: int = 0
    max_users: Optional[int] = Field(default=None, ge=1)
    gateway_ids: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @property
    def period_days(self) -> int:
        return PERIOD_DAYS[self.billing_period]

    @property
    def period_months(self) -> int:
        return PERIOD_MONTHS[self.billing_period]

    @property
    def daily_price(self) -> float:
        """Price normalized per day, used to compare across billing periods."""
        return self.price / self.period_days

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def gateway_id(self, gateway: str) -> Optional[str]:
        return self.gateway_ids.get(gateway)
