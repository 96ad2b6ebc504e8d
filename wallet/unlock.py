"""Unlocking premium posts and pay-per-view messages.

A ``PurchasedContent`` row is the unlock receipt: once it exists the buyer
keeps access and later unlock calls succeed without charging again. The
receipt check, the debit, the credit and the message flag flip all happen
while the store holds the buyer's and the payee's locks.
"""
import logging
from typing import Optional

from .errors import InsufficientBalanceError, NotFoundError, ValidationError
from .models import EntryReason, Message, Post, UnlockResponse, User
from .storage import Repository

logger = logging.getLogger(__name__)


class UnlockService:
    def __init__(self, storage: Repository, admin_username: str = "admin"):
        self.storage = storage
        self.admin_username = admin_username

    def unlock_post(self, buyer_id: int, post_id: int) -> UnlockResponse:
        post = self._get_premium_post(post_id)
        if post.user_id == buyer_id:
            return UnlockResponse(message="Content already unlocked")

        author = self._require_user(post.user_id)
        self._require_user(buyer_id)
        with self.storage.lock_users(buyer_id, author.id):
            if self.storage.has_purchased(buyer_id, post_id=post.id):
                return UnlockResponse(message="Content already unlocked")

            buyer = self._require_user(buyer_id)
            self._ensure_funds(buyer, post.premium_price)
            purchase = self.storage.add_purchase(buyer.id, post.premium_price, post_id=post.id)
            self.storage.transfer(buyer.id, author.id, post.premium_price,
                                  EntryReason.UNLOCK_POST, reference_id=purchase.id)

        logger.info("User %s unlocked post %s for %s", buyer_id, post.id, post.premium_price)
        return UnlockResponse(message="Content unlocked", purchase=purchase)

    def unlock_message(self, buyer_id: int, message_id: int) -> UnlockResponse:
        message = self._get_ppv_message(buyer_id, message_id)
        platform = self._platform_account()
        if platform.id == buyer_id:
            self.storage.mark_message_unlocked(message.id)
            return UnlockResponse(message="Message already unlocked")

        with self.storage.lock_users(buyer_id, platform.id):
            if self.storage.has_purchased(buyer_id, message_id=message.id):
                self.storage.mark_message_unlocked(message.id)
                return UnlockResponse(message="Message already unlocked")

            buyer = self._require_user(buyer_id)
            self._ensure_funds(buyer, message.ppv_price)
            purchase = self.storage.add_purchase(buyer.id, message.ppv_price, message_id=message.id)
            self.storage.transfer(buyer.id, platform.id, message.ppv_price,
                                  EntryReason.UNLOCK_MESSAGE, reference_id=purchase.id)
            self.storage.mark_message_unlocked(message.id)

        logger.info("User %s unlocked message %s for %s", buyer_id, message.id, message.ppv_price)
        return UnlockResponse(message="Message unlocked", purchase=purchase)

    def has_purchased(self, user_id: int, post_id: Optional[int] = None,
                      message_id: Optional[int] = None) -> bool:
        if post_id is None and message_id is None:
            raise ValidationError("Either post_id or message_id is required")
        return self.storage.has_purchased(user_id, post_id=post_id, message_id=message_id)

    def _get_premium_post(self, post_id: int) -> Post:
        post = self.storage.get_post(post_id)
        if not post:
            raise NotFoundError(f"Post {post_id} not found")
        if not post.is_premium:
            raise ValidationError("Post is not premium content")
        return post

    def _get_ppv_message(self, buyer_id: int, message_id: int) -> Message:
        message = self.storage.get_message(message_id)
        # Only the receiver may buy a message; everyone else gets a 404.
        if not message or message.receiver_id != buyer_id:
            raise NotFoundError(f"Message {message_id} not found")
        if not message.is_ppv:
            raise ValidationError("Message is not pay-per-view")
        return message

    def _platform_account(self) -> User:
        platform = self.storage.get_user_by_username(self.admin_username)
        if not platform:
            raise NotFoundError("Platform account not found")
        return platform

    def _require_user(self, user_id: int) -> User:
        user = self.storage.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    @staticmethod
    def _ensure_funds(buyer: User, price: int):
        if buyer.wallet_balance < price:
            logger.warning("User %s cannot afford %s (balance %s)",
                           buyer.id, price, buyer.wallet_balance)
            raise InsufficientBalanceError(buyer.id, buyer.wallet_balance, price)
