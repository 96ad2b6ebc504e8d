import logging

from .errors import InsufficientBalanceError, NotFoundError, UnauthorizedError, ValidationError
from .models import EntryReason, Tip, TipRequest
from .storage import Repository

logger = logging.getLogger(__name__)


class TipService:
    def __init__(self, storage: Repository):
        self.storage = storage

    def send_tip(self, sender_id: int, request: TipRequest) -> Tip:
        receiver = self.storage.get_user(request.receiver_id)
        if not receiver:
            raise NotFoundError(f"Recipient {request.receiver_id} not found")
        if receiver.id == sender_id:
            raise ValidationError("You cannot tip yourself")
        if request.post_id is not None and not self.storage.get_post(request.post_id):
            raise NotFoundError(f"Post {request.post_id} not found")
        if request.message_id is not None and not self.storage.get_message(request.message_id):
            raise NotFoundError(f"Message {request.message_id} not found")

        if not self.storage.get_user(sender_id):
            raise NotFoundError(f"User {sender_id} not found")

        with self.storage.lock_users(sender_id, receiver.id):
            sender = self.storage.get_user(sender_id)
            if not sender.is_verified:
                logger.warning("Unverified user %s tried to tip %s", sender_id, receiver.id)
                raise UnauthorizedError("Only verified users can send tips")
            if sender.wallet_balance < request.amount:
                logger.warning("User %s cannot afford tip of %s (balance %s)",
                               sender_id, request.amount, sender.wallet_balance)
                raise InsufficientBalanceError(sender_id, sender.wallet_balance, request.amount)

            tip = self.storage.add_tip(
                sender_id=sender_id,
                receiver_id=receiver.id,
                amount=request.amount,
                post_id=request.post_id,
                message_id=request.message_id,
            )
            self.storage.transfer(sender_id, receiver.id, request.amount,
                                  EntryReason.TIP, reference_id=tip.id)

        logger.info("Tip %s: %s from user %s to %s", tip.id, tip.amount, sender_id, receiver.id)
        return tip

    def tips_received(self, receiver_id: int) -> list[Tip]:
        return self.storage.list_tips(receiver_id)
