"""
billing_engine/features/plans/catalog.py

Read-only plan registry.

Handles:
- Default catalog (free, basic, professional, enterprise; monthly + yearly)
- Loading a catalog from JSON (admin-managed configuration)
- Adjacency checks for upgrades and downgrades
- Atomic reload on change notification (CatalogSource)
"""

import json
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from billing_engine.core.errors import CatalogCorruptionError, NotFoundError
from billing_engine.models.plan import Plan

logger = logging.getLogger("billing_engine.catalog")


DEFAULT_PLANS = {
    "free": {
        "name": "Free",
        "description": "Try the product with limited features",
        "price": 0,
        "billing_period": "monthly",
        "trial_days": 0,
        "features": ["Up to 5 projects", "Basic support", "1GB storage"],
        "upgrades_to": ["basic", "professional", "enterprise"],
        "sort_order": 1,
        "max_users": 1,
    },
    "basic": {
        "name": "Basic",
        "description": "Perfect for individuals and small teams",
        "price": 999,
        "billing_period": "monthly",
        "trial_days": 7,
        "features": ["Up to 25 projects", "Priority support", "10GB storage", "Basic analytics"],
        "upgrades_to": ["professional", "enterprise", "basic-yearly"],
        "downgrades_to": ["free"],
        "gateway_ids": {"stripe": "price_basic_monthly"},
        "sort_order": 2,
    },
    "basic-yearly": {
        "name": "Basic (Yearly)",
        "description": "Basic plan billed annually",
        "price": 9590,
        "billing_period": "yearly",
        "trial_days": 7,
        "features": ["Up to 25 projects", "Priority support", "10GB storage", "Basic analytics", "2 months free"],
        "upgrades_to": ["professional-yearly"],
        "downgrades_to": ["basic"],
        "gateway_ids": {"stripe": "price_basic_yearly"},
        "sort_order": 3,
    },
    "professional": {
        "name": "Professional",
        "description": "For growing businesses and teams",
        "price": 2999,
        "billing_period": "monthly",
        "trial_days": 7,
        "features": ["Unlimited projects", "Priority support", "100GB storage", "Advanced analytics", "API access"],
        "upgrades_to": ["enterprise", "professional-yearly"],
        "downgrades_to": ["basic", "free"],
        "gateway_ids": {"stripe": "price_pro_monthly"},
        "is_popular": True,
        "sort_order": 4,
    },
    "professional-yearly": {
        "name": "Professional (Yearly)",
        "description": "Professional plan billed annually",
        "price": 28790,
        "billing_period": "yearly",
        "trial_days": 7,
        "features": ["Unlimited projects", "Priority support", "100GB storage", "Advanced analytics", "API access", "2 months free"],
        "downgrades_to": ["basic-yearly", "professional"],
        "gateway_ids": {"stripe": "price_pro_yearly"},
        "sort_order": 5,
    },
    "enterprise": {
        "name": "Enterprise",
        "description": "Dedicated support and unlimited seats",
        "price": 9999,
        "billing_period": "monthly",
        "trial_days": 14,
        "features": ["Unlimited projects", "Dedicated support", "1TB storage", "Advanced analytics", "API access", "SSO"],
        "downgrades_to": ["professional", "basic"],
        "gateway_ids": {"stripe": "price_enterprise_monthly"},
        "sort_order": 6,
    },
}


class ChangeDirection(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class PlanCatalog:
    """
    Immutable plan registry.

    Construction validates adjacency: every upgrade/downgrade target must
    resolve, otherwise the catalog is corrupt and cannot be used.
    """

    def __init__(self, plans: Iterable[Plan]):
        self._plans: Dict[str, Plan] = {}
        for plan in plans:
            if plan.plan_id in self._plans:
                raise CatalogCorruptionError(f"Duplicate plan id in catalog: {plan.plan_id}")
            self._plans[plan.plan_id] = plan
        self._validate()

    def _validate(self) -> None:
        for plan in self._plans.values():
            for target in plan.upgrades_to | plan.downgrades_to:
                if target not in self._plans:
                    raise CatalogCorruptionError(
                        f"Plan {plan.plan_id} references unknown plan {target}"
                    )
                if target == plan.plan_id:
                    raise CatalogCorruptionError(f"Plan {plan.plan_id} is adjacent to itself")

    @classmethod
    def from_dict(cls, data: Dict[str, dict]) -> "PlanCatalog":
        plans = [Plan(plan_id=plan_id, **config) for plan_id, config in data.items()]
        return cls(plans)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "PlanCatalog":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(raw, list):
            return cls(Plan(**item) for item in raw)
        return cls.from_dict(raw)

    @classmethod
    def default(cls) -> "PlanCatalog":
        return cls.from_dict(DEFAULT_PLANS)

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self._plans

    def __len__(self) -> int:
        return len(self._plans)

    def find(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def get(self, plan_id: str) -> Plan:
        """Resolve a plan by id, retired plans included."""
        plan = self._plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Unknown plan: {plan_id}")
        return plan

    def resolve_held(self, plan_id: str) -> Plan:
        """Resolve a plan a subscription already holds.

        A held plan that no longer resolves means the catalog lost a
        published plan, which is corruption rather than a caller error.
        """
        plan = self._plans.get(plan_id)
        if plan is None:
            logger.error("catalog.missing_held_plan", extra={"plan_id": plan_id})
            raise CatalogCorruptionError(f"Subscribed plan {plan_id} missing from catalog")
        return plan

    def all(self) -> List[Plan]:
        return sorted(self._plans.values(), key=lambda p: (p.sort_order, p.price))

    def subscribable(self) -> List[Plan]:
        return [p for p in self.all() if p.is_active]

    def classify_change(self, current: Plan, target: Plan) -> Optional[ChangeDirection]:
        """
        Decide whether current -> target is an upgrade, a downgrade, or neither.

        Declared adjacency wins. A target on a different billing period that
        is not declared either way is classified by normalized daily price.
        """
        if current.plan_id == target.plan_id:
            return None
        if target.plan_id in current.upgrades_to:
            return ChangeDirection.UPGRADE
        if target.plan_id in current.downgrades_to:
            return ChangeDirection.DOWNGRADE
        if current.billing_period != target.billing_period:
            if target.daily_price > current.daily_price:
                return ChangeDirection.UPGRADE
            if target.daily_price < current.daily_price:
                return ChangeDirection.DOWNGRADE
        return None

    def can_upgrade(self, current: Plan, target: Plan) -> bool:
        return self.classify_change(current, target) == ChangeDirection.UPGRADE

    def can_downgrade(self, current: Plan, target: Plan) -> bool:
        return self.classify_change(current, target) == ChangeDirection.DOWNGRADE


class CatalogSource:
    """Holds the live catalog; reload swaps it atomically.

    Commands read ``current`` once and use that snapshot for the whole
    transition.
    """

    def __init__(self, catalog: Optional[PlanCatalog] = None, path: Optional[str] = None):
        self._path = path
        self._lock = threading.Lock()
        self._catalog = catalog or self._load()

    def _load(self) -> PlanCatalog:
        if self._path:
            return PlanCatalog.from_json(self._path)
        return PlanCatalog.default()

    @property
    def current(self) -> PlanCatalog:
        return self._catalog

    def reload(self, catalog: Optional[PlanCatalog] = None) -> PlanCatalog:
        fresh = catalog or self._load()
        with self._lock:
            self._catalog = fresh
        logger.info("catalog.reloaded", extra={"plans": len(fresh)})
        return fresh
