import calendar
import logging
from datetime import datetime, timedelta

from .errors import InsufficientBalanceError, NotFoundError, PlanNotFoundError
from .models import (
    ActiveSubscriptionResponse,
    EntryReason,
    PlanDuration,
    Subscription,
    SubscriptionPlan,
)
from .storage import Repository

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole calendar months, clamping to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_end_date(start: datetime, duration: PlanDuration) -> datetime:
    if duration == PlanDuration.WEEKLY:
        return start + timedelta(days=7)
    if duration == PlanDuration.MONTHLY:
        return add_months(start, 1)
    if duration == PlanDuration.YEARLY:
        return add_months(start, 12)
    raise ValueError(f"Unknown plan duration: {duration}")


class SubscriptionService:
    def __init__(self, storage: Repository):
        self.storage = storage

    def list_plans(self) -> list[SubscriptionPlan]:
        return self.storage.list_plans()

    def get_plan(self, plan_id: int) -> SubscriptionPlan:
        plan = self.storage.get_plan(plan_id)
        if not plan:
            raise PlanNotFoundError(f"Subscription plan {plan_id} not found")
        return plan

    def subscribe(self, user_id: int, plan_id: int) -> Subscription:
        plan = self.get_plan(plan_id)

        with self.storage.lock_users(user_id):
            user = self.storage.get_user(user_id)
            if not user:
                raise NotFoundError(f"User {user_id} not found")
            if user.wallet_balance < plan.price:
                logger.warning("User %s cannot afford plan %s (balance %s, price %s)",
                               user_id, plan.id, user.wallet_balance, plan.price)
                raise InsufficientBalanceError(user_id, user.wallet_balance, plan.price)

            start = self.storage.now()
            subscription = self.storage.add_subscription(
                user_id=user_id,
                plan_id=plan.id,
                start_date=start,
                end_date=compute_end_date(start, plan.duration),
            )
            self.storage.debit(user_id, plan.price, EntryReason.SUBSCRIPTION,
                               reference_id=subscription.id)

        logger.info("User %s subscribed to %s until %s", user_id, plan.name, subscription.end_date)
        return subscription

    def active_subscription(self, user_id: int) -> ActiveSubscriptionResponse:
        subscription = self.storage.get_active_subscription(user_id, self.storage.now())
        if not subscription:
            return ActiveSubscriptionResponse(subscribed=False)
        return ActiveSubscriptionResponse(
            subscribed=True,
            subscription=subscription,
            plan=self.storage.get_plan(subscription.plan_id),
        )

    def list_subscriptions(self, user_id: int) -> list[Subscription]:
        return self.storage.list_subscriptions(user_id)

    def cancel_subscription(self, user_id: int, subscription_id: int) -> Subscription:
        subscription = self.storage.get_subscription(subscription_id)
        if not subscription or subscription.user_id != user_id:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if not subscription.is_active:
            return subscription
        cancelled = self.storage.deactivate_subscription(subscription_id)
        logger.info("User %s cancelled subscription %s", user_id, subscription_id)
        return cancelled
