"""
Subscription API routes.

- POST /api/subscriptions                    Subscribe a user to a plan
- GET  /api/subscriptions/{id}               Raw subscription record
- GET  /api/subscriptions/{id}/events        Billing history
- POST /api/subscriptions/{id}/upgrade       Immediate, prorated
- POST /api/subscriptions/{id}/downgrade     Scheduled for period end
- POST /api/subscriptions/{id}/cancel        Period end (default) or immediate
- POST /api/subscriptions/{id}/resume        Undo a cancellation before it ends
- GET  /api/users/{user_id}/subscription     Details view for the billing page

Rejected commands surface through the AppError handler
({"error": {code, message, request_id}}).
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from billing_engine.core.errors import NotFoundError
from billing_engine.features.subscriptions.projections import SubscriptionDetails
from billing_engine.features.subscriptions.service import CommandResult, SubscriptionService
from billing_engine.api.deps import get_subscription_service
from billing_engine.models.billing import BillingEvent
from billing_engine.models.subscription import Subscription


router = APIRouter(tags=["subscriptions"])


class SubscribeRequest(BaseModel):
    user_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    quantity: int = 1
    payment_method_ref: Optional[str] = None


class PlanChangeRequest(BaseModel):
    plan_id: str = Field(min_length=1)


class CancelRequest(BaseModel):
    immediate: bool = False


class CommandResponse(BaseModel):
    """Committed command: resulting subscription and what it recorded."""
    subscription: Subscription
    events: List[str]
    charged_amount: Optional[int] = None


def _respond(result: CommandResult) -> CommandResponse:
    subscription = result.unwrap()
    return CommandResponse(
        subscription=subscription,
        events=[e.kind.value for e in result.events],
        charged_amount=result.charged_amount,
    )


@router.post("/subscriptions", response_model=CommandResponse, status_code=201)
def create_subscription(body: SubscribeRequest, service: SubscriptionService = Depends(get_subscription_service)):
    """
    Subscribe a user.

    Errors:
        404: Unknown plan
        409: User already holds an open subscription
        422: Plan retired
        400: Quantity out of range
    """
    return _respond(service.subscribe(
        body.user_id,
        body.plan_id,
        quantity=body.quantity,
        payment_method_ref=body.payment_method_ref,
    ))


@router.get("/subscriptions/{subscription_id}", response_model=Subscription)
def get_subscription(subscription_id: str, service: SubscriptionService = Depends(get_subscription_service)):
    sub = service.get(subscription_id)
    if sub is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return sub


@router.get("/subscriptions/{subscription_id}/events", response_model=List[BillingEvent])
def list_events(
    subscription_id: str,
    since: Optional[datetime] = Query(None),
    service: SubscriptionService = Depends(get_subscription_service),
):
    if service.get(subscription_id) is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return service.events(subscription_id, since=since)


@router.post("/subscriptions/{subscription_id}/upgrade", response_model=CommandResponse)
def upgrade(subscription_id: str, body: PlanChangeRequest, service: SubscriptionService = Depends(get_subscription_service)):
    return _respond(service.request_upgrade(subscription_id, body.plan_id))


@router.post("/subscriptions/{subscription_id}/downgrade", response_model=CommandResponse)
def downgrade(subscription_id: str, body: PlanChangeRequest, service: SubscriptionService = Depends(get_subscription_service)):
    return _respond(service.request_downgrade(subscription_id, body.plan_id))


@router.post("/subscriptions/{subscription_id}/cancel", response_model=CommandResponse)
def cancel(
    subscription_id: str,
    body: Optional[CancelRequest] = None,
    service: SubscriptionService = Depends(get_subscription_service),
):
    immediate = body.immediate if body else False
    return _respond(service.cancel(subscription_id, immediate=immediate))


@router.post("/subscriptions/{subscription_id}/resume", response_model=CommandResponse)
def resume(subscription_id: str, service: SubscriptionService = Depends(get_subscription_service)):
    return _respond(service.resume(subscription_id))


@router.get("/users/{user_id}/subscription", response_model=SubscriptionDetails)
def user_subscription(user_id: str, service: SubscriptionService = Depends(get_subscription_service)):
    """Details view; status "none" when the user never subscribed."""
    return service.details(user_id)
