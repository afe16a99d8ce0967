"""
Tests for the usage ledger: log_session counters, over-limit warnings,
state gating and session history.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

import coachmeter.features.usage.service as usage_service
from coachmeter.features.periods.service import advance_expired_periods
from coachmeter.core.errors import NotFoundError
from coachmeter.features.subscriptions.service import create_subscription, get_subscription, update_subscription
from coachmeter.features.usage.service import list_session_logs, log_session
from coachmeter.models.subscription import SubscriptionCreate, SubscriptionPatch

NOW = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)


def _enroll(child, plan, start_date, **overrides):
    return create_subscription(
        SubscriptionCreate(child_id=child.id, plan_id=plan.id, start_date=start_date, **overrides),
        now=NOW,
    )


def test_over_limit_boundary(child, recurring_plan, today, now):
    sub = _enroll(child, recurring_plan, today, sessions_per_period=2)

    flags = [log_session(sub.id, now=now).over_limit for _ in range(4)]

    assert flags == [False, False, True, True]


def test_monthly_plan_scenario(child, recurring_plan, today, now):
    sub = _enroll(child, recurring_plan, today)
    assert sub.sessions_per_period == 4

    results = [log_session(sub.id, now=now + timedelta(minutes=i)) for i in range(5)]

    assert all(r.success for r in results)
    assert results[3].over_limit is False
    assert results[4].over_limit is True
    assert results[4].sessions_used_in_period == 5
    assert results[4].sessions_per_period == 4
    assert get_subscription(sub.id).total_sessions_used == 5


def test_total_equals_successful_calls(child, recurring_plan, today, now):
    sub = _enroll(child, recurring_plan, today)
    totals = []
    for i in range(6):
        result = log_session(sub.id, now=now + timedelta(hours=i))
        totals.append(result.total_sessions_used)

    assert totals == sorted(totals)
    assert totals[-1] == 6


def test_log_session_records_last_session_date(child, recurring_plan, today, now):
    sub = _enroll(child, recurring_plan, today)
    log_session(sub.id, now=now)

    assert get_subscription(sub.id).last_session_date == now.date()


def test_paused_and_ended_subscriptions_reject_logging(child, recurring_plan, today, now):
    paused = _enroll(child, recurring_plan, today)
    log_session(paused.id, now=now)
    update_subscription(paused.id, SubscriptionPatch(status="paused"), now=NOW)

    ended = _enroll(child, recurring_plan, today)
    update_subscription(ended.id, SubscriptionPatch(status="ended"), now=NOW)

    for sub_id, expected_used in ((paused.id, 1), (ended.id, 0)):
        result = log_session(sub_id, now=now)
        assert result.success is False
        assert result.error.code == "invalid_state"
        stored = get_subscription(sub_id)
        assert stored.sessions_used_in_period == expected_used
        assert stored.total_sessions_used == expected_used
        assert len(list_session_logs(sub_id)) == expected_used


def test_resumed_subscription_accepts_logging(child, recurring_plan, today, now):
    sub = _enroll(child, recurring_plan, today)
    update_subscription(sub.id, SubscriptionPatch(status="paused"), now=NOW)
    update_subscription(sub.id, SubscriptionPatch(status="active"), now=NOW)

    assert log_session(sub.id, now=now).success is True


def test_unknown_subscription_is_not_found(now):
    result = log_session("missing-id", now=now)

    assert result.success is False
    assert result.error.code == "not_found"


def test_storage_failure_is_reported_not_raised(child, recurring_plan, today, now, monkeypatch):
    sub = _enroll(child, recurring_plan, today)

    def broken_session(*args, **kwargs):
        raise OperationalError("UPDATE coaching_subscriptions", {}, Exception("disk I/O error"))

    monkeypatch.setattr(usage_service, "get_db_session", broken_session)
    result = log_session(sub.id, now=now)

    assert result.success is False
    assert result.error.code == "storage_error"
    assert get_subscription(sub.id).total_sessions_used == 0


def test_session_history_newest_first(child, recurring_plan, today, now):
    sub = _enroll(child, recurring_plan, today, sessions_per_period=1)
    log_session(sub.id, "Intro call", now=now)
    log_session(sub.id, "Follow-up", now=now + timedelta(days=2))

    logs = list_session_logs(sub.id)

    assert [entry.notes for entry in logs] == ["Follow-up", "Intro call"]
    assert [entry.over_limit for entry in logs] == [True, False]
    assert logs[0].logged_at == now + timedelta(days=2)
    assert all(entry.period_start == sub.current_period_start for entry in logs)


def test_session_history_for_missing_subscription_raises(now):
    with pytest.raises(NotFoundError):
        list_session_logs("missing-id")


def test_concurrent_logging_loses_no_increments(child, recurring_plan, today, now):
    sub = _enroll(child, recurring_plan, today)
    workers, per_worker = 4, 5

    def log_many(_):
        return [log_session(sub.id, now=now).success for _ in range(per_worker)]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = [ok for batch in pool.map(log_many, range(workers)) for ok in batch]

    assert all(outcomes)
    stored = get_subscription(sub.id)
    assert stored.total_sessions_used == workers * per_worker
    assert stored.sessions_used_in_period == workers * per_worker
    assert len(list_session_logs(sub.id)) == workers * per_worker


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_session_after_period_end_counts_in_new_period(child, recurring_plan):
    sub = _enroll(child, recurring_plan, date(2026, 2, 3))
    assert sub.current_period_end == utc(2026, 3, 1)
    for _ in range(4):
        log_session(sub.id, now=utc(2026, 2, 10))

    result = log_session(sub.id, "March check-in", now=utc(2026, 3, 5))

    assert result.success is True
    assert result.over_limit is False
    assert result.sessions_used_in_period == 1
    assert result.total_sessions_used == 5
    stored = get_subscription(sub.id)
    assert stored.current_period_start == utc(2026, 3, 1)
    assert stored.current_period_end == utc(2026, 4, 1)
    assert list_session_logs(sub.id)[0].period_start == utc(2026, 3, 1)

    report = advance_expired_periods(utc(2026, 3, 5))

    assert report.count == 0
    stored = get_subscription(sub.id)
    assert stored.sessions_used_in_period == 1
    assert stored.total_sessions_used == 5


def test_session_after_resume_skips_missed_periods(child, recurring_plan):
    sub = _enroll(child, recurring_plan, date(2026, 1, 5), period_type="week")
    log_session(sub.id, now=utc(2026, 1, 6))
    update_subscription(sub.id, SubscriptionPatch(status="paused"), now=utc(2026, 1, 7))
    update_subscription(sub.id, SubscriptionPatch(status="active"), now=utc(2026, 2, 3))

    result = log_session(sub.id, now=utc(2026, 2, 3, 9))

    assert result.sessions_used_in_period == 1
    assert result.total_sessions_used == 2
    stored = get_subscription(sub.id)
    assert stored.current_period_start == utc(2026, 2, 2)
    assert stored.current_period_end == utc(2026, 2, 9)


def test_fixed_subscription_period_is_not_rolled_by_logging(child, fixed_plan, force_subscription):
    sub = _enroll(child, fixed_plan, date(2026, 1, 5))
    force_subscription(sub.id, sessions_used_in_period=2)

    result = log_session(sub.id, now=utc(2026, 3, 5))

    assert result.sessions_used_in_period == 3
    assert get_subscription(sub.id).current_period_end == utc(2026, 2, 1)


def test_lost_rollover_race_is_reported(child, recurring_plan, monkeypatch):
    sub = _enroll(child, recurring_plan, date(2026, 2, 3))
    monkeypatch.setattr(usage_service, "_rollover_and_increment", lambda session, current, now: None)

    result = log_session(sub.id, now=utc(2026, 3, 5))

    assert result.success is False
    assert result.error.code == "conflict"
    stored = get_subscription(sub.id)
    assert stored.total_sessions_used == 0
    assert list_session_logs(sub.id) == []
