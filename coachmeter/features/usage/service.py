"""
coachmeter/features/usage/service.py

Usage ledger.

Handles:
- log_session: atomic per-row increment of period and lifetime counters
- Catch-up rollover when a session lands after the stored period has ended
- Session history (append-only, written in the same transaction)

Over-quota sessions are recorded and flagged, never blocked.
"""

import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import SQLAlchemyError

from coachmeter.core.clock import ensure_utc
from coachmeter.core.database import (
    get_db_session,
    coaching_plans,
    coaching_session_logs,
    coaching_subscriptions,
)
from coachmeter.core.errors import AppError, ConflictError, InvalidStateError, NotFoundError
from coachmeter.features.periods.service import add_periods, periods_to_advance
from coachmeter.models.plan import BillingType
from coachmeter.models.subscription import SubscriptionStatus
from coachmeter.models.usage import ErrorInfo, LogSessionResult, SessionLog

logger = logging.getLogger("coachmeter.usage")

subs = coaching_subscriptions.c

# Re-reads allowed when a concurrent rollover moves the period under us
MAX_ATTEMPTS = 3

RETURNED = (
    subs.sessions_used_in_period,
    subs.sessions_per_period,
    subs.total_sessions_used,
    subs.current_period_start,
)


def _in_current_period(now: datetime):
    """Row's stored period still contains `now`, or the plan has no periods to roll."""
    billing_type = (
        select(coaching_plans.c.billing_type)
        .where(coaching_plans.c.id == subs.plan_id)
        .scalar_subquery()
    )
    return (subs.current_period_end > now) | (billing_type != BillingType.RECURRING.value)


def _increment(session, subscription_id: str, now: datetime):
    return session.execute(
        update(coaching_subscriptions)
        .where(subs.id == subscription_id)
        .where(subs.status == SubscriptionStatus.ACTIVE.value)
        .where(_in_current_period(now))
        .values(
            sessions_used_in_period=subs.sessions_used_in_period + 1,
            total_sessions_used=subs.total_sessions_used + 1,
            last_session_date=now.date(),
            updated_at=now,
        )
        .returning(*RETURNED)
    ).first()


def _rollover_and_increment(session, current, now: datetime):
    """
    Advance an expired recurring period to the one containing `now` and
    count the session as its first.

    Conditional on the period end that was read; returns None when a
    concurrent rollover got there first.
    """
    old_start = ensure_utc(current.current_period_start)
    old_end = ensure_utc(current.current_period_end)
    k = periods_to_advance(old_end, now, current.period_type)
    row = session.execute(
        update(coaching_subscriptions)
        .where(subs.id == current.id)
        .where(subs.status == SubscriptionStatus.ACTIVE.value)
        .where(subs.current_period_end == old_end)
        .values(
            current_period_start=add_periods(old_start, current.period_type, k),
            current_period_end=add_periods(old_end, current.period_type, k),
            sessions_used_in_period=1,
            total_sessions_used=subs.total_sessions_used + 1,
            last_session_date=now.date(),
            updated_at=now,
        )
        .returning(*RETURNED)
    ).first()
    if row is not None:
        logger.info("period.rollover", extra={"subscription_id": current.id, "count": k})
    return row


def _current_row(session, subscription_id: str):
    return session.execute(
        select(
            subs.id,
            subs.status,
            subs.period_type,
            subs.current_period_start,
            subs.current_period_end,
        ).where(subs.id == subscription_id)
    ).first()


def _count_session(session, subscription_id: str, now: datetime):
    """
    Increment the counters of an active subscription.

    The common case is one conditional UPDATE. When the stored recurring
    period has already ended, the row is rolled forward and incremented in
    the same statement so the session counts against the period it
    happened in.
    """
    for _ in range(MAX_ATTEMPTS):
        row = _increment(session, subscription_id, now)
        if row is not None:
            return row

        current = _current_row(session, subscription_id)
        if current is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if current.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidStateError(f"Cannot log a session on a {current.status} subscription")

        row = _rollover_and_increment(session, current, now)
        if row is not None:
            return row

    raise ConflictError("Subscription period changed concurrently; retry")


def log_session(subscription_id: str, notes: Optional[str] = None, *, now: datetime) -> LogSessionResult:
    """
    Record one coaching session.

    Counters change only through conditional UPDATE ... RETURNING statements
    on an active row, so concurrent loggers never lose an increment. A
    session logged after the stored period ended but before the rollover
    job ran first advances the period, then counts in the new one.
    over_limit is evaluated after the increment.

    Never raises: failures come back as success=False with an error code
    (not_found, invalid_state, conflict, storage_error) and leave counters
    unchanged.
    """
    now = ensure_utc(now)
    try:
        with get_db_session() as session:
            row = _count_session(session, subscription_id, now)

            over_limit = row.sessions_used_in_period > row.sessions_per_period
            session.execute(
                insert(coaching_session_logs).values(
                    subscription_id=subscription_id,
                    logged_at=now,
                    period_start=row.current_period_start,
                    over_limit=over_limit,
                    notes=notes or None,
                )
            )
    except AppError as exc:
        logger.warning(
            "session.rejected",
            extra={"subscription_id": subscription_id, "error_code": exc.code},
        )
        return LogSessionResult(success=False, error=ErrorInfo(code=exc.code, message=exc.message))
    except SQLAlchemyError:
        logger.error(
            "session.failed",
            exc_info=True,
            extra={"subscription_id": subscription_id, "error_code": "storage_error"},
        )
        return LogSessionResult(
            success=False,
            error=ErrorInfo(code="storage_error", message="Failed to log session"),
        )

    logger.info(
        "session.logged",
        extra={"subscription_id": subscription_id, "count": row.sessions_used_in_period},
    )
    return LogSessionResult(
        success=True,
        over_limit=over_limit,
        sessions_used_in_period=row.sessions_used_in_period,
        sessions_per_period=row.sessions_per_period,
        total_sessions_used=row.total_sessions_used,
    )


def list_session_logs(subscription_id: str) -> List[SessionLog]:
    """Session history for a subscription, newest first."""
    with get_db_session() as session:
        exists = session.execute(
            select(subs.id).where(subs.id == subscription_id)
        ).first()
        if not exists:
            raise NotFoundError(f"Subscription {subscription_id} not found")

        rows = session.execute(
            select(coaching_session_logs)
            .where(coaching_session_logs.c.subscription_id == subscription_id)
            .order_by(coaching_session_logs.c.logged_at.desc(), coaching_session_logs.c.id.desc())
        ).all()

        return [
            SessionLog(
                id=row.id,
                subscription_id=row.subscription_id,
                logged_at=ensure_utc(row.logged_at),
                period_start=ensure_utc(row.period_start),
                over_limit=row.over_limit,
                notes=row.notes,
            )
            for row in rows
        ]
