import logging

from .errors import InvalidStateTransitionError, NotFoundError, ValidationError
from .models import PaymentRequest, PaymentRequestStatus, TopUpRequest
from .storage import Repository

logger = logging.getLogger(__name__)


class PaymentRequestService:
    def __init__(self, storage: Repository):
        self.storage = storage

    def request_top_up(self, user_id: int, request: TopUpRequest) -> PaymentRequest:
        if request.amount <= 0:
            raise ValidationError("Amount must be greater than 0")
        method = request.payment_method.strip()
        if not method:
            raise ValidationError("Payment method is required")
        if not self.storage.get_user(user_id):
            raise NotFoundError(f"User {user_id} not found")

        payment_request = self.storage.add_payment_request(user_id, request.amount, method)
        logger.info("User %s requested top-up %s of %s via %s",
                    user_id, payment_request.id, request.amount, method)
        return payment_request

    def resolve_request(self, request_id: int, status: PaymentRequestStatus) -> PaymentRequest:
        if status not in (PaymentRequestStatus.APPROVED, PaymentRequestStatus.REJECTED):
            raise ValidationError("Invalid status")
        try:
            payment_request = self.storage.resolve_payment_request(request_id, status)
        except InvalidStateTransitionError:
            logger.warning("Payment request %s was already resolved", request_id)
            raise
        logger.info("Payment request %s %s", request_id, status.value)
        return payment_request

    def list_for_user(self, user_id: int) -> list[PaymentRequest]:
        requests = self.storage.list_payment_requests(user_id=user_id)
        requests.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return requests

    def list_pending(self) -> list[PaymentRequest]:
        requests = self.storage.list_payment_requests(status=PaymentRequestStatus.PENDING)
        requests.sort(key=lambda r: (r.created_at, r.id))
        return requests
