"""Plan catalog routes."""
from typing import List

from fastapi import APIRouter, Depends, Query

from billing_engine.api.deps import get_catalog
from billing_engine.core.errors import NotFoundError
from billing_engine.features.plans.catalog import PlanCatalog
from billing_engine.models.plan import Plan


router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("", response_model=List[Plan])
def list_plans(
    include_retired: bool = Query(False),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Subscribable plans in display order (retired ones on request)."""
    return catalog.all() if include_retired else catalog.subscribable()


@router.get("/{plan_id}", response_model=Plan)
def get_plan(plan_id: str, catalog: PlanCatalog = Depends(get_catalog)):
    plan = catalog.find(plan_id)
    if plan is None:
        raise NotFoundError(f"Plan {plan_id} not found")
    return plan
