"""
coachmeter/models/plan.py

Plan model: reusable billing templates referenced by subscriptions.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class BillingType(str, Enum):
    FIXED = "fixed"
    RECURRING = "recurring"


class Plan(BaseModel):
    """
    Plan is a billing template.

    - fixed: a term of `default_duration_weeks`, never rolled over
    - recurring: a per-period quota of `default_sessions_per_period`

    Only the field matching the billing type is stored; the other is None.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    billing_type: BillingType
    default_sessions_per_period: Optional[int] = None
    default_duration_weeks: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime


class PlanInput(BaseModel):
    """Create/update payload. Validated by the plan service, not by pydantic."""
    name: str = ""
    billing_type: str = ""
    default_sessions_per_period: Optional[int] = None
    default_duration_weeks: Optional[int] = None
    notes: Optional[str] = None
