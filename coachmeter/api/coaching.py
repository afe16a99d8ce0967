"""
coachmeter/api/coaching.py
Coaching subscription API: plans, subscriptions, session logging, rollover.
"""

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from typing import Optional

from coachmeter.core.clock import parse_now
from coachmeter.core.errors import NotFoundError
from coachmeter.features.children.service import child_exists, register_child
from coachmeter.features.periods.service import advance_expired_periods
from coachmeter.features.plans.service import create_plan, delete_plan, list_plans, update_plan
from coachmeter.features.risk.classifier import classify
from coachmeter.features.subscriptions.service import (
    create_subscription,
    get_active_subscription_for_child,
    get_subscription_view,
    list_subscriptions,
    load_dashboard,
    update_subscription,
)
from coachmeter.features.usage.service import list_session_logs, log_session
from coachmeter.models.child import ChildRegister
from coachmeter.models.plan import PlanInput
from coachmeter.models.subscription import SubscriptionCreate, SubscriptionFilter, SubscriptionPatch
from coachmeter.models.usage import LogSessionRequest

router = APIRouter(prefix="/v1/coaching", tags=["coaching"])

NOW_QUERY = Query(None, description="Fixed timestamp for deterministic testing (ISO format)")

# log_session reports failures in its body; map them onto HTTP statuses
LOG_SESSION_STATUS = {
    "not_found": 404,
    "invalid_state": 409,
    "conflict": 409,
    "storage_error": 500,
}


@router.get("/plans")
async def list_plans_endpoint():
    plans = list_plans()
    return {
        "data": [p.model_dump(mode="json") for p in plans],
        "count": len(plans),
    }


@router.post("/plans", status_code=201)
async def create_plan_endpoint(request: PlanInput, now: Optional[str] = NOW_QUERY):
    plan = create_plan(request, now=parse_now(now))
    return {"data": plan.model_dump(mode="json")}


@router.put("/plans/{plan_id}")
async def update_plan_endpoint(plan_id: str, request: PlanInput, now: Optional[str] = NOW_QUERY):
    plan = update_plan(plan_id, request, now=parse_now(now))
    return {"data": plan.model_dump(mode="json")}


@router.delete("/plans/{plan_id}")
async def delete_plan_endpoint(plan_id: str):
    """Delete plan (409 while any subscription references it)"""
    delete_plan(plan_id)
    return {"data": {"id": plan_id, "deleted": True}}


@router.put("/children/{child_id}")
async def register_child_endpoint(child_id: str, request: ChildRegister, now: Optional[str] = NOW_QUERY):
    child = register_child(child_id, request.name, now=parse_now(now))
    return {"data": child.model_dump(mode="json")}


@router.get("/children/{child_id}/subscription")
async def child_subscription_endpoint(child_id: str, now: Optional[str] = NOW_QUERY):
    """The child's current active subscription, or null"""
    now_dt = parse_now(now)
    if not child_exists(child_id):
        raise NotFoundError(f"Child {child_id} not found")
    view = get_active_subscription_for_child(child_id, now_dt)
    return {"data": view.model_dump(mode="json") if view else None}


@router.get("/subscriptions")
async def list_subscriptions_endpoint(
    status: Optional[str] = None,
    billing_type: Optional[str] = None,
    child_id: Optional[str] = None,
    ending_soon: bool = False,
    low_usage: bool = False,
    now: Optional[str] = NOW_QUERY,
):
    now_dt = parse_now(now)
    filters = SubscriptionFilter(
        status=status,
        billing_type=billing_type,
        child_id=child_id,
        ending_soon=ending_soon,
        low_usage=low_usage,
    )
    views = list_subscriptions(filters, now_dt)
    return {
        "data": [v.model_dump(mode="json") for v in views],
        "count": len(views),
    }


@router.post("/subscriptions", status_code=201)
async def create_subscription_endpoint(request: SubscriptionCreate, now: Optional[str] = NOW_QUERY):
    subscription = create_subscription(request, now=parse_now(now))
    return {"data": subscription.model_dump(mode="json")}


@router.get("/subscriptions/{subscription_id}")
async def get_subscription_endpoint(subscription_id: str, now: Optional[str] = NOW_QUERY):
    view = get_subscription_view(subscription_id, parse_now(now))
    return {"data": view.model_dump(mode="json")}


@router.patch("/subscriptions/{subscription_id}")
async def update_subscription_endpoint(
    subscription_id: str, request: SubscriptionPatch, now: Optional[str] = NOW_QUERY
):
    subscription = update_subscription(subscription_id, request, now=parse_now(now))
    return {"data": subscription.model_dump(mode="json")}


@router.get("/subscriptions/{subscription_id}/alerts")
async def subscription_alerts_endpoint(subscription_id: str, now: Optional[str] = NOW_QUERY):
    now_dt = parse_now(now)
    view = get_subscription_view(subscription_id, now_dt)
    flags = classify(view, view.billing_type, now_dt)
    return {"data": {**flags.model_dump(mode="json"), "has_alerts": flags.has_alerts}}


@router.post("/subscriptions/{subscription_id}/sessions")
async def log_session_endpoint(
    subscription_id: str,
    request: Optional[LogSessionRequest] = None,
    now: Optional[str] = NOW_QUERY,
):
    """
    Log one coaching session.

    200 with over_limit=true is a warning; the session was recorded.
    404/409 mean nothing was written.
    """
    now_dt = parse_now(now)
    result = log_session(subscription_id, request.notes if request else None, now=now_dt)
    status_code = 200
    if not result.success:
        status_code = LOG_SESSION_STATUS.get(result.error.code, 500)
    return JSONResponse(status_code=status_code, content={"data": result.model_dump(mode="json")})


@router.get("/subscriptions/{subscription_id}/sessions")
async def list_sessions_endpoint(subscription_id: str):
    logs = list_session_logs(subscription_id)
    return {
        "data": [entry.model_dump(mode="json") for entry in logs],
        "count": len(logs),
    }


@router.post("/periods/rollover")
async def rollover_endpoint(now: Optional[str] = NOW_QUERY):
    """Advance every expired recurring period (idempotent for a given now)"""
    report = advance_expired_periods(parse_now(now))
    return {"data": report.model_dump(mode="json")}


@router.get("/dashboard")
async def dashboard_endpoint(
    now: Optional[str] = NOW_QUERY,
    rollover: Optional[bool] = Query(None, description="Override ROLLOVER_ON_DASHBOARD_LOAD"),
):
    stats, views = load_dashboard(parse_now(now), rollover=rollover)
    return {
        "data": {
            "stats": stats.model_dump(mode="json"),
            "subscriptions": [v.model_dump(mode="json") for v in views],
        }
    }
