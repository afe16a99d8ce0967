"""
coachmeter/features/periods/service.py

Period manager.

Handles:
- Initial period window at enrollment
- Period arithmetic (weeks, calendar months)
- Batch rollover of expired recurring periods (idempotent, row-independent)

Windows are half-open: [current_period_start, current_period_end).
"""

import calendar
import logging
from datetime import date, datetime, timedelta
from typing import List, Tuple
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from coachmeter.core.clock import ensure_utc, start_of_day
from coachmeter.core.database import get_db_session, coaching_plans, coaching_subscriptions
from coachmeter.core.errors import ValidationError
from coachmeter.models.plan import BillingType
from coachmeter.models.subscription import PeriodType, SubscriptionStatus
from coachmeter.models.usage import RolloverReport

logger = logging.getLogger("coachmeter.periods")

ONE_WEEK = timedelta(weeks=1)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_periods(value: datetime, period_type: PeriodType, count: int) -> datetime:
    period_type = PeriodType(period_type)
    if period_type == PeriodType.WEEK:
        return value + ONE_WEEK * count
    return _add_months(value, count)


def initial_period(start_date: date, period_type: PeriodType) -> Tuple[datetime, datetime]:
    """
    Period window for a new subscription.

    Month periods are calendar-aligned (first of the month containing
    start_date); week periods start on start_date.
    """
    try:
        period_type = PeriodType(period_type)
    except ValueError:
        raise ValidationError("period_type must be 'week' or 'month'")

    if period_type == PeriodType.MONTH:
        start = start_of_day(start_date.replace(day=1))
    else:
        start = start_of_day(start_date)
    return start, add_periods(start, period_type, 1)


def periods_to_advance(period_end: datetime, now: datetime, period_type: PeriodType) -> int:
    """
    Smallest k >= 1 such that add_periods(period_end, k) > now.

    Equals ceil((now - period_end) / period) except when now lands exactly on a
    boundary, where one more period keeps now inside the new window.
    """
    period_type = PeriodType(period_type)
    if period_type == PeriodType.WEEK:
        k = (now - period_end) // ONE_WEEK + 1
    else:
        k = (now.year - period_end.year) * 12 + (now.month - period_end.month)
        while _add_months(period_end, k) <= now:
            k += 1
        while k > 1 and _add_months(period_end, k - 1) > now:
            k -= 1
    return max(1, k)


def _expired_candidates(now: datetime) -> List:
    with get_db_session() as session:
        return session.execute(
            select(
                coaching_subscriptions.c.id,
                coaching_subscriptions.c.period_type,
                coaching_subscriptions.c.current_period_start,
                coaching_subscriptions.c.current_period_end,
            )
            .select_from(
                coaching_subscriptions.join(
                    coaching_plans, coaching_plans.c.id == coaching_subscriptions.c.plan_id
                )
            )
            .where(coaching_plans.c.billing_type == BillingType.RECURRING.value)
            .where(coaching_subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .where(coaching_subscriptions.c.current_period_end <= now)
            .order_by(coaching_subscriptions.c.current_period_end)
        ).all()


def _advance_one(row, now: datetime) -> bool:
    """
    Roll one subscription forward in its own transaction.

    Compare-and-swap on the previous period end: if another runner already
    advanced the row, or it was paused meanwhile, nothing is written.
    """
    old_start = ensure_utc(row.current_period_start)
    old_end = ensure_utc(row.current_period_end)
    k = periods_to_advance(old_end, now, row.period_type)

    with get_db_session() as session:
        result = session.execute(
            update(coaching_subscriptions)
            .where(coaching_subscriptions.c.id == row.id)
            .where(coaching_subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .where(coaching_subscriptions.c.current_period_end == old_end)
            .values(
                current_period_start=add_periods(old_start, row.period_type, k),
                current_period_end=add_periods(old_end, row.period_type, k),
                sessions_used_in_period=0,
                updated_at=now,
            )
        )
        advanced = result.rowcount == 1

    if advanced:
        logger.info(
            "period.rollover",
            extra={"subscription_id": row.id, "count": k},
        )
    return advanced


def advance_expired_periods(now: datetime) -> RolloverReport:
    """
    Advance every active recurring subscription whose period has ended.

    Each row moves forward by as many whole periods as needed to contain
    `now`, with sessions_used_in_period reset to 0 and total_sessions_used
    untouched. Running it again with the same `now` is a no-op.

    A storage failure on one row is logged and reported in failed_ids;
    the remaining rows are still processed.
    """
    now = ensure_utc(now)
    advanced = 0
    failed: List[str] = []

    for row in _expired_candidates(now):
        try:
            if _advance_one(row, now):
                advanced += 1
        except SQLAlchemyError:
            logger.error(
                "period.rollover_failed",
                exc_info=True,
                extra={"subscription_id": row.id, "error_code": "storage_error"},
            )
            failed.append(row.id)

    if advanced or failed:
        logger.info("period.rollover_complete", extra={"count": advanced, "event_type": "rollover"})
    return RolloverReport(count=advanced, failed_ids=failed, ran_at=now)
