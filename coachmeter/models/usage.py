"""
coachmeter/models/usage.py

Session logging results and history rows.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str


class LogSessionResult(BaseModel):
    """
    Outcome of logging one session.

    success=True with over_limit=True is a soft warning: the write happened.
    success=False is a hard rejection: nothing was written.
    """
    model_config = ConfigDict(frozen=True)

    success: bool
    over_limit: Optional[bool] = None
    sessions_used_in_period: Optional[int] = None
    sessions_per_period: Optional[int] = None
    total_sessions_used: Optional[int] = None
    error: Optional[ErrorInfo] = None


class SessionLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    subscription_id: str
    logged_at: datetime
    period_start: datetime
    over_limit: bool
    notes: Optional[str] = None


class LogSessionRequest(BaseModel):
    notes: Optional[str] = None


class RolloverReport(BaseModel):
    """Result of one advance_expired_periods pass."""
    model_config = ConfigDict(frozen=True)

    count: int
    failed_ids: List[str] = []
    ran_at: datetime
