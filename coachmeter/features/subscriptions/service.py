"""
coachmeter/features/subscriptions/service.py

Subscription store.

Handles:
- Enrollment (plan defaults resolved into the row, initial period window)
- Manual edits with the status state machine enforced
- Joined, classified listings for dashboards
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4
from sqlalchemy import select, insert, update

from coachmeter.core.clock import ensure_utc
from coachmeter.core.config import settings
from coachmeter.core.database import get_db_session, children, coaching_plans, coaching_subscriptions
from coachmeter.core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from coachmeter.features.periods.service import advance_expired_periods, initial_period
from coachmeter.features.risk.classifier import classify
from coachmeter.models.plan import BillingType
from coachmeter.models.subscription import (
    ALLOWED_TRANSITIONS,
    DashboardStats,
    PeriodType,
    Subscription,
    SubscriptionCreate,
    SubscriptionFilter,
    SubscriptionPatch,
    SubscriptionStatus,
    SubscriptionView,
)

logger = logging.getLogger("coachmeter.subscriptions")


def row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        child_id=row.child_id,
        plan_id=row.plan_id,
        start_date=row.start_date,
        end_date=row.end_date,
        status=SubscriptionStatus(row.status),
        sessions_per_period=row.sessions_per_period,
        period_type=PeriodType(row.period_type),
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        sessions_used_in_period=row.sessions_used_in_period,
        total_sessions_used=row.total_sessions_used,
        last_session_date=row.last_session_date,
        admin_notes=row.admin_notes,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _validate_quota(value: Optional[int]) -> int:
    high = settings.MAX_SESSIONS_PER_PERIOD
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= high:
        raise ValidationError(f"sessions_per_period must be between 1 and {high}")
    return value


def _parse_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"{field} must be one of: {', '.join(e.value for e in enum_cls)}")


def create_subscription(data: SubscriptionCreate, *, now: datetime) -> Subscription:
    """
    Enroll a child into a plan.

    Plan defaults fill the quota (recurring) and end date (fixed); explicit
    values win. Counters start at 0 and status at active.

    Raises:
        ValidationError: bad quota, period type or end date
        NotFoundError: plan or child missing
    """
    now = ensure_utc(now)
    subscription_id = str(uuid4())
    period_type = _parse_enum(PeriodType, data.period_type or settings.DEFAULT_PERIOD_TYPE, "period_type")

    with get_db_session() as session:
        # Share-lock the plan so a concurrent delete_plan waits for this insert
        plan_row = session.execute(
            select(coaching_plans)
            .where(coaching_plans.c.id == data.plan_id)
            .with_for_update(read=True)
        ).first()
        if not plan_row:
            raise NotFoundError(f"Plan {data.plan_id} not found")

        child_row = session.execute(
            select(children.c.id).where(children.c.id == data.child_id)
        ).first()
        if not child_row:
            raise NotFoundError(f"Child {data.child_id} not found")

        billing_type = BillingType(plan_row.billing_type)
        quota = data.sessions_per_period
        if quota is None:
            quota = plan_row.default_sessions_per_period or settings.DEFAULT_SESSIONS_PER_PERIOD
        quota = _validate_quota(quota)

        end_date = None
        if billing_type == BillingType.FIXED:
            end_date = data.end_date
            if end_date is None and plan_row.default_duration_weeks:
                end_date = data.start_date + timedelta(weeks=plan_row.default_duration_weeks)
            if end_date is not None and end_date < data.start_date:
                raise ValidationError("end_date cannot be before start_date")

        period_start, period_end = initial_period(data.start_date, period_type)
        values = dict(
            id=subscription_id,
            child_id=data.child_id,
            plan_id=data.plan_id,
            start_date=data.start_date,
            end_date=end_date,
            status=SubscriptionStatus.ACTIVE.value,
            sessions_per_period=quota,
            period_type=period_type.value,
            current_period_start=period_start,
            current_period_end=period_end,
            sessions_used_in_period=0,
            total_sessions_used=0,
            last_session_date=None,
            admin_notes=data.admin_notes or None,
            created_at=now,
            updated_at=now,
        )
        session.execute(insert(coaching_subscriptions).values(**values))

    logger.info(
        "subscription.created",
        extra={"subscription_id": subscription_id, "plan_id": data.plan_id, "child_id": data.child_id},
    )
    return Subscription(**values)


def get_subscription(subscription_id: str) -> Subscription:
    with get_db_session() as session:
        row = session.execute(
            select(coaching_subscriptions).where(coaching_subscriptions.c.id == subscription_id)
        ).first()
    if not row:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return row_to_subscription(row)


def update_subscription(subscription_id: str, patch: SubscriptionPatch, *, now: datetime) -> Subscription:
    """
    Apply a manual edit: status, quota, end date (fixed plans only), notes.

    Status follows active <-> paused, active/paused -> ended; ended is final.
    The write is conditional on the status read, so a concurrent status
    change surfaces as ConflictError instead of being overwritten.
    """
    changes = patch.model_dump(exclude_unset=True)
    now = ensure_utc(now)

    with get_db_session() as session:
        row = session.execute(
            select(coaching_subscriptions, coaching_plans.c.billing_type.label("billing_type"))
            .select_from(
                coaching_subscriptions.join(
                    coaching_plans, coaching_plans.c.id == coaching_subscriptions.c.plan_id
                )
            )
            .where(coaching_subscriptions.c.id == subscription_id)
            .with_for_update(of=coaching_subscriptions)
        ).first()
        if not row:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if not changes:
            return row_to_subscription(row)

        current = SubscriptionStatus(row.status)
        values = {}

        if "status" in changes:
            target = _parse_enum(SubscriptionStatus, changes["status"], "status")
            if target != current and target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStateError(
                    f"Cannot change status from {current.value} to {target.value}"
                )
            values["status"] = target.value

        if "sessions_per_period" in changes:
            values["sessions_per_period"] = _validate_quota(changes["sessions_per_period"])

        if "end_date" in changes:
            end_date = changes["end_date"]
            if end_date is not None:
                if BillingType(row.billing_type) != BillingType.FIXED:
                    raise ValidationError("end_date can only be set on fixed-term subscriptions")
                if end_date < row.start_date:
                    raise ValidationError("end_date cannot be before start_date")
            values["end_date"] = end_date

        if "admin_notes" in changes:
            values["admin_notes"] = changes["admin_notes"] or None

        values["updated_at"] = now
        result = session.execute(
            update(coaching_subscriptions)
            .where(coaching_subscriptions.c.id == subscription_id)
            .where(coaching_subscriptions.c.status == current.value)
            .values(**values)
        )
        if result.rowcount == 0:
            raise ConflictError("Subscription status changed concurrently; reload and retry")

        updated = session.execute(
            select(coaching_subscriptions).where(coaching_subscriptions.c.id == subscription_id)
        ).first()

    if "status" in values and values["status"] != current.value:
        logger.info(
            "subscription.status_changed",
            extra={"subscription_id": subscription_id, "status": values["status"]},
        )
    return row_to_subscription(updated)


def _joined_select():
    return (
        select(
            coaching_subscriptions,
            coaching_plans.c.name.label("plan_name"),
            coaching_plans.c.billing_type.label("billing_type"),
            children.c.name.label("child_name"),
        )
        .select_from(
            coaching_subscriptions
            .join(coaching_plans, coaching_plans.c.id == coaching_subscriptions.c.plan_id)
            .outerjoin(children, children.c.id == coaching_subscriptions.c.child_id)
        )
    )


def _term_progress_percent(subscription: Subscription, now: datetime) -> Optional[float]:
    if subscription.end_date is None:
        return None
    total = (subscription.end_date - subscription.start_date).days
    if total <= 0:
        return 100.0
    elapsed = (now.date() - subscription.start_date).days
    return min(max(elapsed / total * 100, 0.0), 100.0)


def build_view(row, now: datetime) -> SubscriptionView:
    subscription = row_to_subscription(row)
    billing_type = BillingType(row.billing_type)
    used = subscription.sessions_used_in_period
    quota = subscription.sessions_per_period
    return SubscriptionView(
        **subscription.model_dump(),
        plan_name=row.plan_name or "Unknown",
        billing_type=billing_type,
        child_name=row.child_name or "Unknown",
        alerts=classify(subscription, billing_type, now),
        sessions_remaining=max(0, quota - used),
        usage_percent=min(used / quota * 100, 100.0),
        term_progress_percent=(
            _term_progress_percent(subscription, now) if billing_type == BillingType.FIXED else None
        ),
    )


def list_subscriptions(filters: Optional[SubscriptionFilter], now: datetime) -> List[SubscriptionView]:
    """
    List subscriptions newest first, joined with plan and child names.

    status / billing_type / child_id filter in SQL; ending_soon and low_usage
    filter on the classifier's flags at `now`.
    """
    now = ensure_utc(now)
    filters = filters or SubscriptionFilter()
    query = _joined_select()

    if filters.status:
        status = _parse_enum(SubscriptionStatus, filters.status, "status")
        query = query.where(coaching_subscriptions.c.status == status.value)
    if filters.billing_type:
        billing_type = _parse_enum(BillingType, filters.billing_type, "billing_type")
        query = query.where(coaching_plans.c.billing_type == billing_type.value)
    if filters.child_id:
        query = query.where(coaching_subscriptions.c.child_id == filters.child_id)

    with get_db_session() as session:
        rows = session.execute(
            query.order_by(coaching_subscriptions.c.created_at.desc(), coaching_subscriptions.c.id)
        ).all()

    views = [build_view(row, now) for row in rows]
    if filters.ending_soon:
        views = [v for v in views if v.alerts.ending_soon]
    if filters.low_usage:
        views = [v for v in views if v.alerts.low_usage]
    return views


def get_subscription_view(subscription_id: str, now: datetime) -> SubscriptionView:
    now = ensure_utc(now)
    with get_db_session() as session:
        row = session.execute(
            _joined_select().where(coaching_subscriptions.c.id == subscription_id)
        ).first()
    if not row:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return build_view(row, now)


def get_active_subscription_for_child(child_id: str, now: datetime) -> Optional[SubscriptionView]:
    """The child's most recent active subscription, if any."""
    views = list_subscriptions(
        SubscriptionFilter(child_id=child_id, status=SubscriptionStatus.ACTIVE.value), now
    )
    return views[0] if views else None


def summarize(views: List[SubscriptionView], periods_reset: int = 0) -> DashboardStats:
    return DashboardStats(
        active=sum(1 for v in views if v.status == SubscriptionStatus.ACTIVE),
        ending_soon=sum(1 for v in views if v.alerts.ending_soon),
        low_usage=sum(1 for v in views if v.alerts.low_usage),
        over_limit=sum(1 for v in views if v.alerts.over_limit),
        periods_reset=periods_reset,
    )


def load_dashboard(now: datetime, *, rollover: Optional[bool] = None):
    """
    Dashboard load: optional opportunistic rollover, then the full listing
    and its summary counts.
    """
    run_rollover = settings.ROLLOVER_ON_DASHBOARD_LOAD if rollover is None else rollover
    periods_reset = 0
    if run_rollover:
        periods_reset = advance_expired_periods(now).count
    views = list_subscriptions(None, now)
    return summarize(views, periods_reset), views
