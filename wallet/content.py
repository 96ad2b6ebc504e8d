import logging
from typing import Optional

from .errors import NotFoundError, UnauthorizedError
from .models import Conversation, CreatePostRequest, Message, Post, SendMessageRequest, User
from .storage import Repository

logger = logging.getLogger(__name__)


class ContentService:
    def __init__(self, storage: Repository):
        self.storage = storage

    def _require_user(self, user_id: int, label: str = "User") -> User:
        user = self.storage.get_user(user_id)
        if not user:
            raise NotFoundError(f"{label} {user_id} not found")
        return user

    def create_post(self, user_id: int, request: CreatePostRequest) -> Post:
        self._require_user(user_id)
        post = self.storage.add_post(
            user_id=user_id,
            content=request.content,
            media_url=request.media_url,
            is_premium=request.is_premium,
            premium_price=request.premium_price,
        )
        logger.info("User %s created post %s (premium=%s)", user_id, post.id, post.is_premium)
        return post

    def list_posts(self, user_id: Optional[int] = None) -> list[Post]:
        if user_id is not None:
            self._require_user(user_id)
        return self.storage.list_posts(user_id)

    def get_post(self, post_id: int) -> Post:
        post = self.storage.get_post(post_id)
        if not post:
            raise NotFoundError(f"Post {post_id} not found")
        return post

    def delete_post(self, user_id: int, post_id: int) -> None:
        post = self.get_post(post_id)
        user = self._require_user(user_id)
        if post.user_id != user.id and not user.is_admin:
            raise UnauthorizedError("Only the post owner or an admin can delete a post")
        self.storage.delete_post(post_id)
        logger.info("Post %s deleted by user %s", post_id, user_id)

    def send_message(self, sender_id: int, request: SendMessageRequest) -> Message:
        sender = self._require_user(sender_id)
        receiver = self._require_user(request.receiver_id, label="Recipient")

        if receiver.is_admin and not sender.is_admin:
            if not self.storage.get_active_subscription(sender.id, self.storage.now()):
                raise UnauthorizedError("You must be subscribed to message the creator")

        if request.is_ppv and not sender.is_admin:
            raise UnauthorizedError("Only admin can send PPV messages")

        message = self.storage.add_message(
            sender_id=sender.id,
            receiver_id=receiver.id,
            content=request.content,
            is_ppv=request.is_ppv,
            ppv_price=request.ppv_price,
        )
        logger.info("Message %s sent from %s to %s (ppv=%s)",
                    message.id, sender.id, receiver.id, message.is_ppv)
        return message

    def get_conversation(self, user_id: int, other_user_id: int) -> list[Message]:
        return self.storage.list_conversation(user_id, other_user_id)

    def list_conversations(self, user_id: int) -> list[Conversation]:
        """One row per counterpart, most recently active conversation first."""
        self._require_user(user_id)
        conversations: dict[int, Conversation] = {}
        # Newest first, so the first message seen for a counterpart is its last one.
        for message in self.storage.list_messages(user_id):
            other_id = message.receiver_id if message.sender_id == user_id else message.sender_id
            if other_id in conversations:
                continue
            other = self.storage.get_user(other_id)
            if other:
                conversations[other_id] = Conversation(user=other, last_message=message)
        return list(conversations.values())
