import logging
from typing import Optional

from .errors import NotFoundError, UnauthorizedError
from .models import (
    AdminStats,
    LedgerHistoryResponse,
    RegisterUserRequest,
    Role,
    UpdateProfileRequest,
    User,
    WalletBalance,
)
from .storage import Repository

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, storage: Repository, admin_username: str = "admin"):
        self.storage = storage
        self.admin_username = admin_username

    def register_user(self, request: RegisterUserRequest) -> User:
        username = request.username.strip()
        role = Role.ADMIN if username.lower() == self.admin_username.lower() else Role.USER
        user = self.storage.add_user(username=username, name=request.name, bio=request.bio, role=role)
        logger.info("Registered user %s (%s) as %s", user.id, user.username, user.role.value)
        return user

    def get_user(self, user_id: int) -> User:
        user = self.storage.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_admin(self) -> Optional[User]:
        return self.storage.get_user_by_username(self.admin_username)

    def verify_user(self, user_id: int) -> User:
        self.get_user(user_id)
        user = self.storage.update_user(user_id, is_verified=True)
        logger.info("User %s verified", user_id)
        return user

    def update_profile(self, actor_id: int, user_id: int, request: UpdateProfileRequest) -> User:
        actor = self.get_user(actor_id)
        self.get_user(user_id)
        if actor.id != user_id and not actor.is_admin:
            raise UnauthorizedError("You can only edit your own profile")
        if request.role is not None and not actor.is_admin:
            raise UnauthorizedError("Only admin can change roles")

        changes = request.model_dump(exclude_none=True)
        if not changes:
            return self.get_user(user_id)
        user = self.storage.update_user(user_id, **changes)
        logger.info("User %s updated profile of %s: %s", actor_id, user_id, sorted(changes))
        return user

    def get_balance(self, user_id: int) -> WalletBalance:
        return WalletBalance(balance=self.get_user(user_id).wallet_balance)

    def get_ledger_history(self, user_id: int, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        user = self.get_user(user_id)
        entries = self.storage.list_ledger_entries(user_id)
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=user.wallet_balance,
        )

    def admin_stats(self) -> AdminStats:
        now = self.storage.now()
        subscriptions = self.storage.list_subscriptions()
        subscribers = {s.user_id for s in subscriptions if s.is_active and s.end_date > now}

        plan_prices = {plan.id: plan.price for plan in self.storage.list_plans()}
        earnings = sum(plan_prices.get(s.plan_id, 0) for s in subscriptions)
        earnings += sum(tip.amount for tip in self.storage.list_tips())
        earnings += sum(p.amount for p in self.storage.list_purchases())

        return AdminStats(
            total_users=self.storage.count_users(),
            total_posts=len(self.storage.list_posts()),
            total_subscribers=len(subscribers),
            total_earnings=earnings,
        )
