"""
Tests for the risk classifier (pure, no database).
"""

from datetime import date, datetime, timedelta, timezone

from coachmeter.features.risk.classifier import classify, days_until_end, period_progress
from coachmeter.models.plan import BillingType
from coachmeter.models.subscription import PeriodType, Subscription, SubscriptionStatus

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2026, 3, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 3, 31, tzinfo=timezone.utc)  # 30-day window


def make_subscription(**overrides) -> Subscription:
    fields = dict(
        id="sub-1",
        child_id="child-1",
        plan_id="plan-1",
        start_date=date(2026, 1, 1),
        end_date=None,
        status=SubscriptionStatus.ACTIVE,
        sessions_per_period=2,
        period_type=PeriodType.MONTH,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
        sessions_used_in_period=0,
        total_sessions_used=0,
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Subscription(**fields)


def test_ending_soon_boundary():
    at_14 = make_subscription(end_date=NOW.date() + timedelta(days=14))
    at_15 = make_subscription(end_date=NOW.date() + timedelta(days=15))

    assert classify(at_14, BillingType.FIXED, NOW).ending_soon is True
    assert classify(at_14, BillingType.FIXED, NOW).days_until_end == 14
    assert classify(at_15, BillingType.FIXED, NOW).ending_soon is False


def test_ending_soon_includes_today_but_not_past():
    today = make_subscription(end_date=NOW.date())
    past = make_subscription(end_date=NOW.date() - timedelta(days=1))

    assert classify(today, BillingType.FIXED, NOW).ending_soon is True
    assert classify(past, BillingType.FIXED, NOW).ending_soon is False
    assert classify(past, BillingType.FIXED, NOW).days_until_end == -1


def test_ending_soon_requires_active_fixed():
    end = NOW.date() + timedelta(days=3)
    paused = make_subscription(end_date=end, status=SubscriptionStatus.PAUSED)
    recurring = make_subscription(end_date=end)

    assert classify(paused, BillingType.FIXED, NOW).ending_soon is False
    flags = classify(recurring, BillingType.RECURRING, NOW)
    assert flags.ending_soon is False
    assert flags.days_until_end is None


def test_low_usage_boundary():
    sub = make_subscription()
    halfway = PERIOD_START + timedelta(days=15)
    just_before = PERIOD_START + timedelta(days=14, hours=16, minutes=48)  # 0.49

    assert period_progress(sub, halfway) == 0.5
    assert classify(sub, BillingType.RECURRING, halfway).low_usage is True
    assert classify(sub, BillingType.RECURRING, just_before).low_usage is False


def test_low_usage_needs_zero_sessions_and_active_recurring():
    halfway = PERIOD_START + timedelta(days=20)
    used = make_subscription(sessions_used_in_period=1)
    paused = make_subscription(status=SubscriptionStatus.PAUSED)
    fixed = make_subscription(end_date=date(2026, 6, 1))

    assert classify(used, BillingType.RECURRING, halfway).low_usage is False
    assert classify(paused, BillingType.RECURRING, halfway).low_usage is False
    fixed_flags = classify(fixed, BillingType.FIXED, halfway)
    assert fixed_flags.low_usage is False
    assert fixed_flags.period_progress is None


def test_over_limit_regardless_of_status_or_type():
    for status in SubscriptionStatus:
        sub = make_subscription(status=status, sessions_used_in_period=3)
        assert classify(sub, BillingType.RECURRING, NOW).over_limit is True
        assert classify(sub, BillingType.FIXED, NOW).over_limit is True

    at_quota = make_subscription(sessions_used_in_period=2)
    assert classify(at_quota, BillingType.RECURRING, NOW).over_limit is False


def test_period_progress_is_clamped():
    sub = make_subscription()

    assert period_progress(sub, PERIOD_START - timedelta(days=3)) == 0.0
    assert period_progress(sub, PERIOD_END + timedelta(days=3)) == 1.0


def test_naive_timestamps_are_treated_as_utc():
    sub = make_subscription(
        current_period_start=PERIOD_START.replace(tzinfo=None),
        current_period_end=PERIOD_END.replace(tzinfo=None),
    )

    assert period_progress(sub, PERIOD_START + timedelta(days=15)) == 0.5


def test_classification_is_deterministic():
    sub = make_subscription(end_date=NOW.date() + timedelta(days=5))

    assert classify(sub, BillingType.FIXED, NOW) == classify(sub, BillingType.FIXED, NOW)


def test_thresholds_can_be_overridden():
    sub = make_subscription(end_date=NOW.date() + timedelta(days=20))
    early = PERIOD_START + timedelta(days=9)

    assert classify(sub, BillingType.FIXED, NOW, ending_soon_days=30).ending_soon is True
    assert classify(make_subscription(), BillingType.RECURRING, early, low_usage_threshold=0.25).low_usage is True


def test_days_until_end_none_without_end_date():
    assert days_until_end(make_subscription(), NOW) is None


def test_has_alerts():
    quiet = classify(make_subscription(sessions_used_in_period=1), BillingType.RECURRING, NOW)
    noisy = classify(make_subscription(sessions_used_in_period=5), BillingType.RECURRING, NOW)

    assert quiet.has_alerts is False
    assert noisy.has_alerts is True
