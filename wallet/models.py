from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class PlanDuration(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class EntryReason(str, Enum):
    UNLOCK_POST = "unlock_post"
    UNLOCK_MESSAGE = "unlock_message"
    TIP = "tip"
    SUBSCRIPTION = "subscription"
    TOP_UP = "top_up"


class User(BaseModel):
    id: int
    username: str
    name: str
    bio: str = ""
    role: Role = Role.USER
    wallet_balance: int = Field(default=0, ge=0)
    is_verified: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Post(BaseModel):
    id: int
    user_id: int
    content: str
    media_url: str = ""
    is_premium: bool = False
    premium_price: int = Field(default=0, ge=0)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Message(BaseModel):
    id: int
    sender_id: int
    receiver_id: int
    content: str
    is_ppv: bool = False
    ppv_price: int = Field(default=0, ge=0)
    is_unlocked: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PurchasedContent(BaseModel):
    id: int
    user_id: int
    post_id: Optional[int] = None
    message_id: Optional[int] = None
    amount: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Tip(BaseModel):
    id: int
    sender_id: int
    receiver_id: int
    amount: int
    post_id: Optional[int] = None
    message_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubscriptionPlan(BaseModel):
    id: int
    name: str
    duration: PlanDuration
    price: int
    features: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class Subscription(BaseModel):
    id: int
    user_id: int
    plan_id: int
    start_date: datetime
    end_date: datetime
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class PaymentRequest(BaseModel):
    id: int
    user_id: int
    amount: int
    payment_method: str
    status: PaymentRequestStatus = PaymentRequestStatus.PENDING
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_resolve(self) -> bool:
        return self.status == PaymentRequestStatus.PENDING


class LedgerEntry(BaseModel):
    id: int
    user_id: int
    entry_type: EntryType
    amount: int
    balance_after: int
    reason: EntryReason
    reference_id: Optional[int] = None
    counterparty_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RegisterUserRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1)
    bio: str = ""


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    bio: Optional[str] = None
    role: Optional[Role] = None


class CreatePostRequest(BaseModel):
    content: str
    media_url: str = ""
    is_premium: bool = False
    premium_price: int = Field(default=0, ge=0)


class SendMessageRequest(BaseModel):
    receiver_id: int
    content: str
    is_ppv: bool = False
    ppv_price: int = Field(default=0, ge=0)


class TipRequest(BaseModel):
    receiver_id: int
    amount: int = Field(..., gt=0, description="Tip amount in cents")
    post_id: Optional[int] = None
    message_id: Optional[int] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"receiver_id": 1, "amount": 500, "post_id": 3}
    })

    @model_validator(mode="after")
    def _single_context(self) -> "TipRequest":
        if self.post_id is not None and self.message_id is not None:
            raise ValueError("A tip can reference a post or a message, not both")
        return self


class SubscribeRequest(BaseModel):
    plan_id: int


class TopUpRequest(BaseModel):
    amount: int = Field(..., description="Requested top-up in cents")
    payment_method: str

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 5000, "payment_method": "bank_transfer"}
    })


class ResolvePaymentRequest(BaseModel):
    status: PaymentRequestStatus


class UnlockResponse(BaseModel):
    message: str
    purchase: Optional[PurchasedContent] = None


class WalletBalance(BaseModel):
    balance: int


class LedgerHistoryResponse(BaseModel):
    user_id: int
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class ActiveSubscriptionResponse(BaseModel):
    subscribed: bool
    subscription: Optional[Subscription] = None
    plan: Optional[SubscriptionPlan] = None


class PurchaseCheck(BaseModel):
    purchased: bool


class AdminStats(BaseModel):
    total_users: int
    total_posts: int
    total_subscribers: int
    total_earnings: int


class Conversation(BaseModel):
    user: User
    last_message: Message
