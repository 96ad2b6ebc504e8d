import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from itertools import count
from typing import Callable, Iterator, Optional

from .errors import (
    DuplicateUsernameError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    EntryReason,
    EntryType,
    LedgerEntry,
    Message,
    PaymentRequest,
    PaymentRequestStatus,
    PlanDuration,
    Post,
    PurchasedContent,
    Role,
    Subscription,
    SubscriptionPlan,
    Tip,
    User,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_PLANS = [
    {
        "name": "Weekly Plan", "duration": PlanDuration.WEEKLY, "price": 799,
        "features": ["Access to all premium content", "Direct messaging",
                     "Weekly exclusive updates", "Cancel anytime"],
    },
    {
        "name": "Monthly Plan", "duration": PlanDuration.MONTHLY, "price": 2499,
        "features": ["Access to all premium content", "Direct messaging",
                     "Monthly exclusive updates", "22% savings compared to weekly",
                     "Cancel anytime"],
    },
    {
        "name": "Yearly Plan", "duration": PlanDuration.YEARLY, "price": 19999,
        "features": ["Access to all premium content", "Direct messaging",
                     "Yearly exclusive updates", "33% savings compared to monthly",
                     "Cancel anytime"],
    },
]


class Repository(ABC):
    """Everything the services need from a datastore.

    Balance state is only ever changed through ``credit``, ``debit``,
    ``transfer`` and ``resolve_payment_request``. A database-backed
    implementation is expected to run each of those in one transaction.
    """

    @abstractmethod
    def now(self) -> datetime:...

    @abstractmethod
    @contextmanager
    def lock_users(self, *user_ids: int) -> Iterator[None]:...

    # Users
    @abstractmethod
    def add_user(self, username: str, name: str, bio: str = "", role: Role = Role.USER) -> User:...

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]:...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]:...

    @abstractmethod
    def update_user(self, user_id: int, **changes) -> User:...

    @abstractmethod
    def count_users(self) -> int:...

    # Balances
    @abstractmethod
    def credit(self, user_id: int, amount: int, reason: EntryReason,
               reference_id: Optional[int] = None) -> User:...

    @abstractmethod
    def debit(self, user_id: int, amount: int, reason: EntryReason,
              reference_id: Optional[int] = None) -> User:...

    @abstractmethod
    def transfer(self, from_id: int, to_id: int, amount: int, reason: EntryReason,
                 reference_id: Optional[int] = None) -> tuple[User, User]:...

    @abstractmethod
    def list_ledger_entries(self, user_id: int) -> list[LedgerEntry]:...

    # Posts and messages
    @abstractmethod
    def add_post(self, user_id: int, content: str, media_url: str = "",
                 is_premium: bool = False, premium_price: int = 0) -> Post:...

    @abstractmethod
    def get_post(self, post_id: int) -> Optional[Post]:...

    @abstractmethod
    def list_posts(self, user_id: Optional[int] = None) -> list[Post]:...

    @abstractmethod
    def delete_post(self, post_id: int) -> bool:...

    @abstractmethod
    def add_message(self, sender_id: int, receiver_id: int, content: str,
                    is_ppv: bool = False, ppv_price: int = 0) -> Message:...

    @abstractmethod
    def get_message(self, message_id: int) -> Optional[Message]:...

    @abstractmethod
    def list_conversation(self, user_id: int, other_user_id: int) -> list[Message]:...

    @abstractmethod
    def list_messages(self, user_id: int) -> list[Message]:...

    @abstractmethod
    def mark_message_unlocked(self, message_id: int) -> Message:...

    # Purchases and tips
    @abstractmethod
    def add_purchase(self, user_id: int, amount: int, post_id: Optional[int] = None,
                     message_id: Optional[int] = None) -> PurchasedContent:...

    @abstractmethod
    def has_purchased(self, user_id: int, post_id: Optional[int] = None,
                      message_id: Optional[int] = None) -> bool:...

    @abstractmethod
    def list_purchases(self, user_id: Optional[int] = None) -> list[PurchasedContent]:...

    @abstractmethod
    def add_tip(self, sender_id: int, receiver_id: int, amount: int,
                post_id: Optional[int] = None, message_id: Optional[int] = None) -> Tip:...

    @abstractmethod
    def list_tips(self, receiver_id: Optional[int] = None) -> list[Tip]:...

    # Plans and subscriptions
    @abstractmethod
    def add_plan(self, name: str, duration: PlanDuration, price: int,
                 features: Optional[list[str]] = None) -> SubscriptionPlan:...

    @abstractmethod
    def get_plan(self, plan_id: int) -> Optional[SubscriptionPlan]:...

    @abstractmethod
    def list_plans(self) -> list[SubscriptionPlan]:...

    @abstractmethod
    def add_subscription(self, user_id: int, plan_id: int, start_date: datetime,
                         end_date: datetime) -> Subscription:...

    @abstractmethod
    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:...

    @abstractmethod
    def list_subscriptions(self, user_id: Optional[int] = None) -> list[Subscription]:...

    @abstractmethod
    def get_active_subscription(self, user_id: int, at: datetime) -> Optional[Subscription]:...

    @abstractmethod
    def deactivate_subscription(self, subscription_id: int) -> Subscription:...

    # Payment requests
    @abstractmethod
    def add_payment_request(self, user_id: int, amount: int, payment_method: str) -> PaymentRequest:...

    @abstractmethod
    def get_payment_request(self, request_id: int) -> Optional[PaymentRequest]:...

    @abstractmethod
    def list_payment_requests(self, user_id: Optional[int] = None,
                              status: Optional[PaymentRequestStatus] = None) -> list[PaymentRequest]:...

    @abstractmethod
    def resolve_payment_request(self, request_id: int,
                                status: PaymentRequestStatus) -> PaymentRequest:...


class InMemoryStorage(Repository):
    def __init__(self, clock: Optional[Clock] = None, seed_plans: bool = True):
        self.users: dict[int, dict] = {}
        self.posts: dict[int, dict] = {}
        self.messages: dict[int, dict] = {}
        self.purchases: dict[int, dict] = {}
        self.tips: dict[int, dict] = {}
        self.plans: dict[int, dict] = {}
        self.subscriptions: dict[int, dict] = {}
        self.payment_requests: dict[int, dict] = {}
        self.ledger_entries: dict[int, dict] = {}

        self._clock = clock or utcnow
        self._counters: dict[str, count] = {}
        self._registry_lock = threading.Lock()
        self._user_locks: dict[int, threading.RLock] = {}

        if seed_plans:
            self._seed_plans()

    def _seed_plans(self):
        for plan in DEFAULT_PLANS:
            self.add_plan(**plan)

    def now(self) -> datetime:
        return self._clock()

    def _next_id(self, table: str) -> int:
        with self._registry_lock:
            counter = self._counters.setdefault(table, count(1))
            return next(counter)

    def _lock_for(self, user_id: int) -> threading.RLock:
        with self._registry_lock:
            if user_id not in self.users:
                raise NotFoundError(f"User {user_id} not found")
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.RLock()
            return lock

    @contextmanager
    def lock_users(self, *user_ids: int) -> Iterator[None]:
        # Ascending id order so two callers never wait on each other crosswise.
        locks = [self._lock_for(uid) for uid in sorted(set(user_ids))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    # Users

    def add_user(self, username: str, name: str, bio: str = "", role: Role = Role.USER) -> User:
        with self._registry_lock:
            if self._find_username(username) is not None:
                raise DuplicateUsernameError(f"Username {username!r} is already taken")
            user_id = next(self._counters.setdefault("users", count(1)))
            user_data = {
                "id": user_id,
                "username": username,
                "name": name,
                "bio": bio,
                "role": role,
                "wallet_balance": 0,
                "is_verified": False,
                "created_at": self.now(),
            }
            self.users[user_id] = user_data
        return User(**user_data)

    def _find_username(self, username: str) -> Optional[dict]:
        wanted = username.lower()
        for user in self.users.values():
            if user["username"].lower() == wanted:
                return user
        return None

    def _require_user(self, user_id: int) -> dict:
        user_data = self.users.get(user_id)
        if not user_data:
            raise NotFoundError(f"User {user_id} not found")
        return user_data

    def get_user(self, user_id: int) -> Optional[User]:
        user_data = self.users.get(user_id)
        return User(**user_data) if user_data else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        user_data = self._find_username(username)
        return User(**user_data) if user_data else None

    def update_user(self, user_id: int, **changes) -> User:
        if "wallet_balance" in changes:
            raise ValidationError("Wallet balance can only change through ledger operations")
        if "id" in changes or "username" in changes:
            raise ValidationError("User id and username cannot be changed")
        with self.lock_users(user_id):
            user_data = self._require_user(user_id)
            user_data.update(changes)
            return User(**user_data)

    def count_users(self) -> int:
        return len(self.users)

    # Balances

    @staticmethod
    def _check_amount(amount: int):
        if amount < 0:
            raise ValidationError(f"Amount must not be negative, got {amount}")

    def _record_entry(self, user_data: dict, entry_type: EntryType, amount: int,
                      reason: EntryReason, reference_id: Optional[int],
                      counterparty_id: Optional[int] = None) -> dict:
        entry_id = self._next_id("ledger_entries")
        entry_data = {
            "id": entry_id,
            "user_id": user_data["id"],
            "entry_type": entry_type,
            "amount": amount,
            "balance_after": user_data["wallet_balance"],
            "reason": reason,
            "reference_id": reference_id,
            "counterparty_id": counterparty_id,
            "created_at": self.now(),
        }
        self.ledger_entries[entry_id] = entry_data
        return entry_data

    def credit(self, user_id: int, amount: int, reason: EntryReason,
               reference_id: Optional[int] = None) -> User:
        self._check_amount(amount)
        with self.lock_users(user_id):
            user_data = self._require_user(user_id)
            user_data["wallet_balance"] += amount
            self._record_entry(user_data, EntryType.CREDIT, amount, reason, reference_id)
            logger.info("Credited %s to user %s (%s), balance now %s",
                        amount, user_id, reason.value, user_data["wallet_balance"])
            return User(**user_data)

    def debit(self, user_id: int, amount: int, reason: EntryReason,
              reference_id: Optional[int] = None) -> User:
        self._check_amount(amount)
        with self.lock_users(user_id):
            user_data = self._require_user(user_id)
            if user_data["wallet_balance"] < amount:
                logger.warning("Debit of %s refused for user %s: balance %s",
                               amount, user_id, user_data["wallet_balance"])
                raise InsufficientBalanceError(user_id, user_data["wallet_balance"], amount)
            user_data["wallet_balance"] -= amount
            self._record_entry(user_data, EntryType.DEBIT, amount, reason, reference_id)
            logger.info("Debited %s from user %s (%s), balance now %s",
                        amount, user_id, reason.value, user_data["wallet_balance"])
            return User(**user_data)

    def transfer(self, from_id: int, to_id: int, amount: int, reason: EntryReason,
                 reference_id: Optional[int] = None) -> tuple[User, User]:
        self._check_amount(amount)
        if from_id == to_id:
            raise ValidationError("Cannot transfer funds to the same account")
        with self.lock_users(from_id, to_id):
            sender = self._require_user(from_id)
            receiver = self._require_user(to_id)
            if sender["wallet_balance"] < amount:
                logger.warning("Transfer of %s from user %s to %s refused: balance %s",
                               amount, from_id, to_id, sender["wallet_balance"])
                raise InsufficientBalanceError(from_id, sender["wallet_balance"], amount)
            sender["wallet_balance"] -= amount
            receiver["wallet_balance"] += amount
            self._record_entry(sender, EntryType.DEBIT, amount, reason, reference_id, to_id)
            self._record_entry(receiver, EntryType.CREDIT, amount, reason, reference_id, from_id)
            logger.info("Transferred %s from user %s to %s (%s)",
                        amount, from_id, to_id, reason.value)
            return User(**sender), User(**receiver)

    def list_ledger_entries(self, user_id: int) -> list[LedgerEntry]:
        entries = [
            LedgerEntry(**e) for e in self.ledger_entries.values()
            if e["user_id"] == user_id
        ]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return entries

    # Posts and messages

    def add_post(self, user_id: int, content: str, media_url: str = "",
                 is_premium: bool = False, premium_price: int = 0) -> Post:
        self._check_amount(premium_price)
        post_id = self._next_id("posts")
        post_data = {
            "id": post_id,
            "user_id": user_id,
            "content": content,
            "media_url": media_url,
            "is_premium": is_premium,
            "premium_price": premium_price if is_premium else 0,
            "created_at": self.now(),
        }
        self.posts[post_id] = post_data
        return Post(**post_data)

    def get_post(self, post_id: int) -> Optional[Post]:
        post_data = self.posts.get(post_id)
        return Post(**post_data) if post_data else None

    def list_posts(self, user_id: Optional[int] = None) -> list[Post]:
        posts = [
            Post(**p) for p in self.posts.values()
            if user_id is None or p["user_id"] == user_id
        ]
        posts.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return posts

    def delete_post(self, post_id: int) -> bool:
        return self.posts.pop(post_id, None) is not None

    def add_message(self, sender_id: int, receiver_id: int, content: str,
                    is_ppv: bool = False, ppv_price: int = 0) -> Message:
        self._check_amount(ppv_price)
        message_id = self._next_id("messages")
        message_data = {
            "id": message_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "is_ppv": is_ppv,
            "ppv_price": ppv_price if is_ppv else 0,
            "is_unlocked": not is_ppv,
            "created_at": self.now(),
        }
        self.messages[message_id] = message_data
        return Message(**message_data)

    def get_message(self, message_id: int) -> Optional[Message]:
        message_data = self.messages.get(message_id)
        return Message(**message_data) if message_data else None

    def list_conversation(self, user_id: int, other_user_id: int) -> list[Message]:
        pair = {user_id, other_user_id}
        messages = [
            Message(**m) for m in self.messages.values()
            if {m["sender_id"], m["receiver_id"]} == pair
        ]
        messages.sort(key=lambda m: (m.created_at, m.id))
        return messages

    def list_messages(self, user_id: int) -> list[Message]:
        messages = [
            Message(**m) for m in self.messages.values()
            if user_id in (m["sender_id"], m["receiver_id"])
        ]
        messages.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return messages

    def mark_message_unlocked(self, message_id: int) -> Message:
        message_data = self.messages.get(message_id)
        if not message_data:
            raise NotFoundError(f"Message {message_id} not found")
        message_data["is_unlocked"] = True
        return Message(**message_data)

    # Purchases and tips

    def add_purchase(self, user_id: int, amount: int, post_id: Optional[int] = None,
                     message_id: Optional[int] = None) -> PurchasedContent:
        if (post_id is None) == (message_id is None):
            raise ValidationError("A purchase references exactly one post or message")
        self._check_amount(amount)
        purchase_id = self._next_id("purchases")
        purchase_data = {
            "id": purchase_id,
            "user_id": user_id,
            "post_id": post_id,
            "message_id": message_id,
            "amount": amount,
            "created_at": self.now(),
        }
        self.purchases[purchase_id] = purchase_data
        return PurchasedContent(**purchase_data)

    def has_purchased(self, user_id: int, post_id: Optional[int] = None,
                      message_id: Optional[int] = None) -> bool:
        for purchase in self.purchases.values():
            if purchase["user_id"] != user_id:
                continue
            if post_id is not None and purchase["post_id"] == post_id:
                return True
            if message_id is not None and purchase["message_id"] == message_id:
                return True
        return False

    def list_purchases(self, user_id: Optional[int] = None) -> list[PurchasedContent]:
        purchases = [
            PurchasedContent(**p) for p in self.purchases.values()
            if user_id is None or p["user_id"] == user_id
        ]
        purchases.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return purchases

    def add_tip(self, sender_id: int, receiver_id: int, amount: int,
                post_id: Optional[int] = None, message_id: Optional[int] = None) -> Tip:
        tip_id = self._next_id("tips")
        tip_data = {
            "id": tip_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "amount": amount,
            "post_id": post_id,
            "message_id": message_id,
            "created_at": self.now(),
        }
        self.tips[tip_id] = tip_data
        return Tip(**tip_data)

    def list_tips(self, receiver_id: Optional[int] = None) -> list[Tip]:
        tips = [
            Tip(**t) for t in self.tips.values()
            if receiver_id is None or t["receiver_id"] == receiver_id
        ]
        tips.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return tips

    # Plans and subscriptions

    def add_plan(self, name: str, duration: PlanDuration, price: int,
                 features: Optional[list[str]] = None) -> SubscriptionPlan:
        plan_id = self._next_id("plans")
        plan_data = {
            "id": plan_id,
            "name": name,
            "duration": PlanDuration(duration),
            "price": price,
            "features": list(features or []),
        }
        self.plans[plan_id] = plan_data
        return SubscriptionPlan(**plan_data)

    def get_plan(self, plan_id: int) -> Optional[SubscriptionPlan]:
        plan_data = self.plans.get(plan_id)
        return SubscriptionPlan(**plan_data) if plan_data else None

    def list_plans(self) -> list[SubscriptionPlan]:
        return [SubscriptionPlan(**p) for p in self.plans.values()]

    def add_subscription(self, user_id: int, plan_id: int, start_date: datetime,
                         end_date: datetime) -> Subscription:
        # At most one active row per user: a new subscription replaces the old one.
        with self.lock_users(user_id):
            for sub in self.subscriptions.values():
                if sub["user_id"] == user_id and sub["is_active"]:
                    sub["is_active"] = False
                    logger.info("Subscription %s of user %s replaced", sub["id"], user_id)
            subscription_id = self._next_id("subscriptions")
            subscription_data = {
                "id": subscription_id,
                "user_id": user_id,
                "plan_id": plan_id,
                "start_date": start_date,
                "end_date": end_date,
                "is_active": True,
            }
            self.subscriptions[subscription_id] = subscription_data
            return Subscription(**subscription_data)

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        subscription_data = self.subscriptions.get(subscription_id)
        return Subscription(**subscription_data) if subscription_data else None

    def list_subscriptions(self, user_id: Optional[int] = None) -> list[Subscription]:
        subscriptions = [
            Subscription(**s) for s in self.subscriptions.values()
            if user_id is None or s["user_id"] == user_id
        ]
        subscriptions.sort(key=lambda s: (s.start_date, s.id), reverse=True)
        return subscriptions

    def get_active_subscription(self, user_id: int, at: datetime) -> Optional[Subscription]:
        candidates = [
            s for s in self.list_subscriptions(user_id)
            if s.is_active and s.end_date > at
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: (s.end_date, s.id))

    def deactivate_subscription(self, subscription_id: int) -> Subscription:
        subscription_data = self.subscriptions.get(subscription_id)
        if not subscription_data:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        subscription_data["is_active"] = False
        return Subscription(**subscription_data)

    # Payment requests

    def add_payment_request(self, user_id: int, amount: int, payment_method: str) -> PaymentRequest:
        request_id = self._next_id("payment_requests")
        now = self.now()
        request_data = {
            "id": request_id,
            "user_id": user_id,
            "amount": amount,
            "payment_method": payment_method,
            "status": PaymentRequestStatus.PENDING,
            "created_at": now,
            "updated_at": now,
        }
        self.payment_requests[request_id] = request_data
        return PaymentRequest(**request_data)

    def get_payment_request(self, request_id: int) -> Optional[PaymentRequest]:
        request_data = self.payment_requests.get(request_id)
        return PaymentRequest(**request_data) if request_data else None

    def list_payment_requests(self, user_id: Optional[int] = None,
                              status: Optional[PaymentRequestStatus] = None) -> list[PaymentRequest]:
        return [
            PaymentRequest(**r) for r in self.payment_requests.values()
            if (user_id is None or r["user_id"] == user_id)
            and (status is None or r["status"] == status)
        ]

    def resolve_payment_request(self, request_id: int,
                                status: PaymentRequestStatus) -> PaymentRequest:
        if status == PaymentRequestStatus.PENDING:
            raise InvalidStateTransitionError("A payment request cannot be moved back to pending")
        request_data = self.payment_requests.get(request_id)
        if not request_data:
            raise NotFoundError(f"Payment request {request_id} not found")

        with self.lock_users(request_data["user_id"]):
            request = PaymentRequest(**request_data)
            if not request.can_resolve():
                raise InvalidStateTransitionError(
                    f"Payment request {request_id} is already {request.status.value}"
                )
            if status == PaymentRequestStatus.APPROVED:
                self.credit(request.user_id, request.amount, EntryReason.TOP_UP,
                            reference_id=request_id)
            request_data["status"] = status
            request_data["updated_at"] = self.now()
            return PaymentRequest(**request_data)
