"""
coachmeter/features/plans/service.py

Plan catalog service.

Handles:
- Plan validation and normalization (fixed vs recurring fields)
- Plan CRUD
- Referential guard: a plan in use by any subscription cannot be deleted
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4
from sqlalchemy import select, insert, update, delete, func
from sqlalchemy.exc import IntegrityError

from coachmeter.core.clock import ensure_utc
from coachmeter.core.config import settings
from coachmeter.core.database import get_db_session, coaching_plans, coaching_subscriptions
from coachmeter.core.errors import NotFoundError, ReferentialIntegrityError, ValidationError
from coachmeter.models.plan import BillingType, Plan, PlanInput

logger = logging.getLogger("coachmeter.plans")


def _row_to_plan(row) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        billing_type=BillingType(row.billing_type),
        default_sessions_per_period=row.default_sessions_per_period,
        default_duration_weeks=row.default_duration_weeks,
        notes=row.notes,
        created_at=ensure_utc(row.created_at),
    )


def _in_range(value: Optional[int], low: int, high: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and low <= value <= high


def validate_plan_input(data: PlanInput) -> dict:
    """
    Validate a plan payload and return the column values to store.

    Raises:
        ValidationError: empty name, unknown billing type, or a missing or
            out-of-range field for the billing type
    """
    name = (data.name or "").strip()
    if not name:
        raise ValidationError("Plan name is required")

    try:
        billing_type = BillingType(data.billing_type)
    except ValueError:
        raise ValidationError(f"billing_type must be one of: {', '.join(t.value for t in BillingType)}")

    values = {
        "name": name,
        "billing_type": billing_type.value,
        "default_sessions_per_period": None,
        "default_duration_weeks": None,
        "notes": data.notes or None,
    }

    if billing_type == BillingType.RECURRING:
        high = settings.MAX_SESSIONS_PER_PERIOD
        if not _in_range(data.default_sessions_per_period, 1, high):
            raise ValidationError(f"Recurring plans need default_sessions_per_period between 1 and {high}")
        values["default_sessions_per_period"] = data.default_sessions_per_period
    else:
        high = settings.MAX_DURATION_WEEKS
        if not _in_range(data.default_duration_weeks, 1, high):
            raise ValidationError(f"Fixed plans need default_duration_weeks between 1 and {high}")
        values["default_duration_weeks"] = data.default_duration_weeks

    return values


def create_plan(data: PlanInput, *, now: datetime) -> Plan:
    values = validate_plan_input(data)
    now = ensure_utc(now)
    plan_id = str(uuid4())

    with get_db_session() as session:
        session.execute(
            insert(coaching_plans).values(id=plan_id, created_at=now, updated_at=now, **values)
        )

    logger.info("plan.created", extra={"plan_id": plan_id})
    return Plan(id=plan_id, created_at=now, **values)


def get_plan(plan_id: str) -> Optional[Plan]:
    """Get plan by ID."""
    with get_db_session() as session:
        row = session.execute(
            select(coaching_plans).where(coaching_plans.c.id == plan_id)
        ).first()
        if not row:
            return None
        return _row_to_plan(row)


def list_plans() -> List[Plan]:
    with get_db_session() as session:
        rows = session.execute(
            select(coaching_plans).order_by(coaching_plans.c.name)
        ).all()
        return [_row_to_plan(row) for row in rows]


def update_plan(plan_id: str, data: PlanInput, *, now: datetime) -> Plan:
    """
    Replace a plan's fields.

    Existing subscriptions keep the quota and dates they were created with.
    """
    values = validate_plan_input(data)
    now = ensure_utc(now)

    with get_db_session() as session:
        result = session.execute(
            update(coaching_plans)
            .where(coaching_plans.c.id == plan_id)
            .values(updated_at=now, **values)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Plan {plan_id} not found")
        row = session.execute(
            select(coaching_plans).where(coaching_plans.c.id == plan_id)
        ).first()

    logger.info("plan.updated", extra={"plan_id": plan_id})
    return _row_to_plan(row)


def delete_plan(plan_id: str) -> None:
    """
    Delete a plan that no subscription references.

    The plan row is locked for the check-then-delete so a concurrent
    enrollment (which share-locks the plan) cannot slip in between. The
    RESTRICT foreign key is the backstop on engines without row locks.

    Raises:
        NotFoundError: plan does not exist
        ReferentialIntegrityError: plan is referenced by a subscription
    """
    try:
        with get_db_session() as session:
            row = session.execute(
                select(coaching_plans.c.id)
                .where(coaching_plans.c.id == plan_id)
                .with_for_update()
            ).first()
            if not row:
                raise NotFoundError(f"Plan {plan_id} not found")

            references = session.execute(
                select(func.count())
                .select_from(coaching_subscriptions)
                .where(coaching_subscriptions.c.plan_id == plan_id)
            ).scalar() or 0
            if references:
                logger.warning("plan.delete_blocked", extra={"plan_id": plan_id, "count": references})
                raise ReferentialIntegrityError(
                    f"Cannot delete plan - it's being used by {references} subscription(s)"
                )

            session.execute(delete(coaching_plans).where(coaching_plans.c.id == plan_id))
    except IntegrityError:
        logger.warning("plan.delete_blocked", extra={"plan_id": plan_id})
        raise ReferentialIntegrityError("Cannot delete plan - it's being used by subscriptions")

    logger.info("plan.deleted", extra={"plan_id": plan_id})
