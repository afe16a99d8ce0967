"""
coachmeter/models/subscription.py

Subscription models: one billing relationship between a child and a plan.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from coachmeter.models.alerts import RiskFlags
from coachmeter.models.plan import BillingType


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class PeriodType(str, Enum):
    WEEK = "week"
    MONTH = "month"


# active <-> paused, either -> ended; nothing leaves ended
ALLOWED_TRANSITIONS = {
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAUSED, SubscriptionStatus.ENDED},
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.ENDED},
    SubscriptionStatus.ENDED: set(),
}


class Subscription(BaseModel):
    """
    Subscription row.

    Invariants:
    - current_period_end > current_period_start (window is half-open)
    - sessions_used_in_period resets to 0 on rollover
    - total_sessions_used never decreases
    """
    model_config = ConfigDict(frozen=True)

    id: str
    child_id: str
    plan_id: str
    start_date: date
    end_date: Optional[date] = None
    status: SubscriptionStatus
    sessions_per_period: int
    period_type: PeriodType
    current_period_start: datetime
    current_period_end: datetime
    sessions_used_in_period: int = 0
    total_sessions_used: int = 0
    last_session_date: Optional[date] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SubscriptionView(Subscription):
    """Subscription joined with plan/child names and read-time alerts."""
    plan_name: str
    billing_type: BillingType
    child_name: str
    alerts: RiskFlags
    sessions_remaining: int
    usage_percent: float
    term_progress_percent: Optional[float] = None


class SubscriptionCreate(BaseModel):
    child_id: str
    plan_id: str
    start_date: date
    sessions_per_period: Optional[int] = None
    period_type: Optional[str] = None
    end_date: Optional[date] = None
    admin_notes: Optional[str] = None


class SubscriptionPatch(BaseModel):
    """Partial update. Only fields explicitly sent are applied."""
    status: Optional[str] = None
    sessions_per_period: Optional[int] = None
    end_date: Optional[date] = None
    admin_notes: Optional[str] = None


class SubscriptionFilter(BaseModel):
    status: Optional[str] = None
    billing_type: Optional[str] = None
    child_id: Optional[str] = None
    ending_soon: bool = False
    low_usage: bool = False


class DashboardStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    active: int
    ending_soon: int
    low_usage: int
    over_limit: int
    periods_reset: int = 0
