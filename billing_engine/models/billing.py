"""
Billing event model.

Events are immutable and append-only; the ordered events of a
subscription are its authoritative history.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.models.subscription import SubscriptionStatus


class EventKind(str, Enum):
    CREATED = "created"
    TRIAL_STARTED = "trial_started"
    TRIAL_CONVERTED = "trial_converted"
    ACTIVATED = "activated"
    RENEWED = "renewed"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    CANCELED = "canceled"
    RESUMED = "resumed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    EXPIRED = "expired"


# Kinds after which a subscription no longer exists commercially
ENDING_KINDS = frozenset({EventKind.CANCELED, EventKind.EXPIRED})


class BillingEvent(BaseModel):
    """One entry in the billing event log.

    ``plan_id``, ``status`` and ``quantity`` describe the subscription as it
    stands after the event, so the read side can replay state at any instant
    without touching the subscription store.
    """
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: f"evt_{uuid4().hex}")
    subscription_id: str
    user_id: str
    kind: EventKind
    timestamp: datetime
    amount: Optional[int] = Field(default=None, ge=0)
    plan_id: str
    status: SubscriptionStatus
    quantity: int = Field(default=1, ge=1)
    sequence: int = 0
    dedup_key: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
