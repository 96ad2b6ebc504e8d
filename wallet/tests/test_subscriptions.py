"""
Unit Tests for the Subscription Service

Tests cover:
1. End date calculation per plan duration
2. Balance checks and debits
3. Single active subscription per user
4. Cancellation
"""

import pytest
from datetime import datetime, timedelta, timezone

from wallet.errors import InsufficientBalanceError, NotFoundError, PlanNotFoundError
from wallet.models import EntryReason, PlanDuration
from wallet.storage import InMemoryStorage
from wallet.subscriptions import SubscriptionService, add_months, compute_end_date


WEEKLY_PLAN_ID = 1
MONTHLY_PLAN_ID = 2
YEARLY_PLAN_ID = 3

NEW_YEAR = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def setup_user(balance: int = 50_000, now: datetime = NEW_YEAR):
    clock = FakeClock(now)
    storage = InMemoryStorage(clock=clock)
    user = storage.add_user("fan", "Fan")
    if balance:
        storage.credit(user.id, balance, EntryReason.TOP_UP)
    return storage, SubscriptionService(storage), user, clock


class TestEndDate:
    """Tests for end date math."""

    def test_weekly_plan_adds_seven_days(self):
        """Test that a weekly plan bought at new year ends a week later."""
        assert compute_end_date(NEW_YEAR, PlanDuration.WEEKLY) == datetime(2024, 1, 8, tzinfo=timezone.utc)

    def test_monthly_plan_adds_calendar_month(self):
        """Test that a monthly plan ends on the same day next month."""
        start = datetime(2024, 3, 15, 12, 30, tzinfo=timezone.utc)
        assert compute_end_date(start, PlanDuration.MONTHLY) == datetime(2024, 4, 15, 12, 30, tzinfo=timezone.utc)

    def test_month_end_is_clamped(self):
        """Test that adding a month to January 31st lands on the last day of February."""
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
        assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)

    def test_yearly_plan_crosses_december(self):
        """Test that yearly plans roll the year and handle leap days."""
        assert compute_end_date(datetime(2024, 12, 10), PlanDuration.YEARLY) == datetime(2025, 12, 10)
        assert compute_end_date(datetime(2024, 2, 29), PlanDuration.YEARLY) == datetime(2025, 2, 28)


class TestSubscribe:
    """Tests for subscribing to a plan."""

    def test_subscribe_debits_price_and_creates_row(self):
        """Test a successful weekly subscription."""
        storage, service, user, _ = setup_user(balance=1000)

        subscription = service.subscribe(user.id, WEEKLY_PLAN_ID)

        assert subscription.is_active is True
        assert subscription.start_date == NEW_YEAR
        assert subscription.end_date == datetime(2024, 1, 8, tzinfo=timezone.utc)
        assert storage.get_user(user.id).wallet_balance == 1000 - 799

        entry = storage.list_ledger_entries(user.id)[0]
        assert entry.reason == EntryReason.SUBSCRIPTION
        assert entry.reference_id == subscription.id

    def test_insufficient_balance_creates_nothing(self):
        """Test that 500 cents cannot buy the 2499 monthly plan."""
        storage, service, user, _ = setup_user(balance=500)

        with pytest.raises(InsufficientBalanceError):
            service.subscribe(user.id, MONTHLY_PLAN_ID)

        assert service.list_subscriptions(user.id) == []
        assert storage.get_user(user.id).wallet_balance == 500

    def test_unknown_plan(self):
        """Test that subscribing to a missing plan fails."""
        storage, service, user, _ = setup_user()

        with pytest.raises(PlanNotFoundError):
            service.subscribe(user.id, 99)

    def test_resubscribe_replaces_previous(self):
        """Test that only the latest subscription stays active."""
        storage, service, user, _ = setup_user()

        first = service.subscribe(user.id, WEEKLY_PLAN_ID)
        second = service.subscribe(user.id, YEARLY_PLAN_ID)

        active = [s for s in service.list_subscriptions(user.id) if s.is_active]
        assert [s.id for s in active] == [second.id]
        assert storage.get_subscription(first.id).is_active is False


class TestActiveSubscription:
    """Tests for the active subscription lookup."""

    def test_active_subscription_includes_plan(self):
        """Test that the active lookup returns the subscription and its plan."""
        storage, service, user, _ = setup_user()
        subscription = service.subscribe(user.id, MONTHLY_PLAN_ID)

        response = service.active_subscription(user.id)

        assert response.subscribed is True
        assert response.subscription.id == subscription.id
        assert response.plan.name == "Monthly Plan"

    def test_expired_subscription(self):
        """Test that a subscription stops counting once its end date passes."""
        storage, service, user, clock = setup_user()
        service.subscribe(user.id, WEEKLY_PLAN_ID)

        clock.now = NEW_YEAR + timedelta(days=8)

        assert service.active_subscription(user.id).subscribed is False

    def test_no_subscription(self):
        """Test a user who never subscribed."""
        storage, service, user, _ = setup_user()

        response = service.active_subscription(user.id)

        assert response.subscribed is False
        assert response.plan is None


class TestCancelSubscription:
    """Tests for cancelling."""

    def test_cancel_deactivates(self):
        """Test that a cancelled subscription is no longer active."""
        storage, service, user, _ = setup_user()
        subscription = service.subscribe(user.id, WEEKLY_PLAN_ID)

        cancelled = service.cancel_subscription(user.id, subscription.id)

        assert cancelled.is_active is False
        assert service.active_subscription(user.id).subscribed is False

    def test_cannot_cancel_someone_elses(self):
        """Test that users only see their own subscriptions."""
        storage, service, user, _ = setup_user()
        subscription = service.subscribe(user.id, WEEKLY_PLAN_ID)
        other = storage.add_user("other", "Other")

        with pytest.raises(NotFoundError):
            service.cancel_subscription(other.id, subscription.id)
