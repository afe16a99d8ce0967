"""
coachmeter/models/alerts.py

Read-time risk flags. Never persisted.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class RiskFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    ending_soon: bool = False
    days_until_end: Optional[int] = None
    low_usage: bool = False
    period_progress: Optional[float] = None
    over_limit: bool = False

    @property
    def has_alerts(self) -> bool:
        return self.ending_soon or self.low_usage or self.over_limit
