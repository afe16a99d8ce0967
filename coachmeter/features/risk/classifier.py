"""
Risk classifier: derives dashboard alert flags from a subscription.

Pure: no I/O, no clock reads. Same inputs, same flags.
"""

from datetime import datetime
from typing import Optional

from coachmeter.core.clock import ensure_utc
from coachmeter.core.config import settings
from coachmeter.models.alerts import RiskFlags
from coachmeter.models.plan import BillingType
from coachmeter.models.subscription import Subscription, SubscriptionStatus


def days_until_end(subscription: Subscription, now: datetime) -> Optional[int]:
    if subscription.end_date is None:
        return None
    return (subscription.end_date - ensure_utc(now).date()).days


def period_progress(subscription: Subscription, now: datetime) -> float:
    """Fraction of the current period elapsed, clamped to [0, 1]."""
    start = ensure_utc(subscription.current_period_start)
    end = ensure_utc(subscription.current_period_end)
    length = end - start
    if length.total_seconds() <= 0:
        return 1.0
    progress = (ensure_utc(now) - start) / length
    return min(1.0, max(0.0, progress))


def classify(
    subscription: Subscription,
    billing_type: BillingType,
    now: datetime,
    *,
    ending_soon_days: Optional[int] = None,
    low_usage_threshold: Optional[float] = None,
) -> RiskFlags:
    """
    Compute alert flags for one subscription at `now`.

    - ending_soon: fixed, active, has an end date 0..ending_soon_days away
    - low_usage: recurring, active, at least halfway through the period, none used
    - over_limit: more sessions used this period than the quota (any status/type)
    """
    window = settings.ENDING_SOON_DAYS if ending_soon_days is None else ending_soon_days
    threshold = settings.LOW_USAGE_PROGRESS_THRESHOLD if low_usage_threshold is None else low_usage_threshold
    billing_type = BillingType(billing_type)
    is_active = subscription.status == SubscriptionStatus.ACTIVE

    days_left = None
    ending_soon = False
    if billing_type == BillingType.FIXED:
        days_left = days_until_end(subscription, now)
        ending_soon = is_active and days_left is not None and 0 <= days_left <= window

    progress = None
    low_usage = False
    if billing_type == BillingType.RECURRING:
        progress = period_progress(subscription, now)
        low_usage = is_active and progress >= threshold and subscription.sessions_used_in_period == 0

    return RiskFlags(
        ending_soon=ending_soon,
        days_until_end=days_left,
        low_usage=low_usage,
        period_progress=progress,
        over_limit=subscription.sessions_used_in_period > subscription.sessions_per_period,
    )
