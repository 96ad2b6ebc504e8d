import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounts import AccountService
from .config import Settings, get_settings
from .content import ContentService
from .errors import (
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    UnauthenticatedError,
    UnauthorizedError,
    ValidationError,
    WalletServiceError,
)
from .models import (
    ActiveSubscriptionResponse,
    AdminStats,
    Conversation,
    CreatePostRequest,
    LedgerHistoryResponse,
    Message,
    PaymentRequest,
    Post,
    PurchaseCheck,
    RegisterUserRequest,
    ResolvePaymentRequest,
    SendMessageRequest,
    SubscribeRequest,
    Subscription,
    SubscriptionPlan,
    Tip,
    TipRequest,
    TopUpRequest,
    UnlockResponse,
    UpdateProfileRequest,
    User,
    WalletBalance,
)
from .payments import PaymentRequestService
from .storage import InMemoryStorage, Repository
from .subscriptions import SubscriptionService
from .tips import TipService
from .unlock import UnlockService

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    UnauthenticatedError: status.HTTP_401_UNAUTHORIZED,
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InsufficientBalanceError: status.HTTP_400_BAD_REQUEST,
    InvalidStateTransitionError: status.HTTP_400_BAD_REQUEST,
}


def status_code_for(exc: WalletServiceError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return status.HTTP_400_BAD_REQUEST


async def wallet_error_handler(request: Request, exc: WalletServiceError) -> JSONResponse:
    status_code = status_code_for(exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": exc.kind},
        headers=headers,
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Invalid request")
    logger.warning("Rejected request to %s: %s on field %s", request.url.path, message, field)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": f"Invalid value for '{field}': {message}", "error": ValidationError.kind},
    )


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def get_content(request: Request) -> ContentService:
    return request.app.state.content


def get_unlocks(request: Request) -> UnlockService:
    return request.app.state.unlocks


def get_tips(request: Request) -> TipService:
    return request.app.state.tips


def get_subscriptions(request: Request) -> SubscriptionService:
    return request.app.state.subscriptions


def get_payments(request: Request) -> PaymentRequestService:
    return request.app.state.payments


def get_current_user(request: Request, accounts: AccountService = Depends(get_accounts)) -> User:
    header = request.app.state.settings.user_header
    raw_user_id = request.headers.get(header)
    if not raw_user_id:
        raise UnauthenticatedError("Not authenticated")
    try:
        user_id = int(raw_user_id)
    except ValueError:
        raise UnauthenticatedError(f"Malformed {header} header")
    user = accounts.storage.get_user(user_id)
    if not user:
        raise UnauthenticatedError("Not authenticated")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise UnauthorizedError("Admin access required")
    return user


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "creator-wallet"}


# Users

@router.post("/api/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest,
                  accounts: AccountService = Depends(get_accounts)) -> User:
    return accounts.register_user(request)


@router.get("/api/users/{user_id}", response_model=User, tags=["Users"])
def get_user(user_id: int, accounts: AccountService = Depends(get_accounts)) -> User:
    return accounts.get_user(user_id)


@router.put("/api/users/{user_id}", response_model=User, tags=["Users"])
def update_profile(user_id: int, request: UpdateProfileRequest, user: User = Depends(get_current_user),
                   accounts: AccountService = Depends(get_accounts)) -> User:
    return accounts.update_profile(user.id, user_id, request)


@router.get("/api/users/{user_id}/posts", response_model=list[Post], tags=["Users"])
def get_user_posts(user_id: int, content: ContentService = Depends(get_content)) -> list[Post]:
    return content.list_posts(user_id)


@router.put("/api/verify-user/{user_id}", response_model=User, tags=["Admin"])
def verify_user(user_id: int, admin: User = Depends(require_admin),
                accounts: AccountService = Depends(get_accounts)) -> User:
    return accounts.verify_user(user_id)


# Posts

@router.get("/api/posts", response_model=list[Post], tags=["Posts"])
def list_posts(content: ContentService = Depends(get_content)) -> list[Post]:
    return content.list_posts()


@router.get("/api/posts/{post_id}", response_model=Post, tags=["Posts"])
def get_post(post_id: int, content: ContentService = Depends(get_content)) -> Post:
    return content.get_post(post_id)


@router.post("/api/posts", response_model=Post, status_code=status.HTTP_201_CREATED, tags=["Posts"])
def create_post(request: CreatePostRequest, user: User = Depends(get_current_user),
                content: ContentService = Depends(get_content)) -> Post:
    return content.create_post(user.id, request)


@router.delete("/api/posts/{post_id}", tags=["Posts"])
def delete_post(post_id: int, user: User = Depends(get_current_user),
                content: ContentService = Depends(get_content)):
    content.delete_post(user.id, post_id)
    return {"message": "Post deleted"}


@router.post("/api/posts/{post_id}/unlock", response_model=UnlockResponse, tags=["Posts"])
def unlock_post(post_id: int, user: User = Depends(get_current_user),
                unlocks: UnlockService = Depends(get_unlocks)) -> UnlockResponse:
    return unlocks.unlock_post(user.id, post_id)


# Messages

@router.post("/api/messages", response_model=Message, status_code=status.HTTP_201_CREATED, tags=["Messages"])
def send_message(request: SendMessageRequest, user: User = Depends(get_current_user),
                 content: ContentService = Depends(get_content)) -> Message:
    return content.send_message(user.id, request)


@router.get("/api/conversations", response_model=list[Conversation], tags=["Messages"])
def list_conversations(user: User = Depends(get_current_user),
                       content: ContentService = Depends(get_content)) -> list[Conversation]:
    return content.list_conversations(user.id)


@router.get("/api/messages/{other_user_id}", response_model=list[Message], tags=["Messages"])
def get_conversation(other_user_id: int, user: User = Depends(get_current_user),
                     content: ContentService = Depends(get_content)) -> list[Message]:
    return content.get_conversation(user.id, other_user_id)


@router.post("/api/messages/{message_id}/unlock", response_model=UnlockResponse, tags=["Messages"])
def unlock_message(message_id: int, user: User = Depends(get_current_user),
                   unlocks: UnlockService = Depends(get_unlocks)) -> UnlockResponse:
    return unlocks.unlock_message(user.id, message_id)


@router.get("/api/purchased-content", response_model=PurchaseCheck, tags=["Posts"])
def check_purchased(post_id: Optional[int] = None, message_id: Optional[int] = None,
                    user: User = Depends(get_current_user),
                    unlocks: UnlockService = Depends(get_unlocks)) -> PurchaseCheck:
    return PurchaseCheck(purchased=unlocks.has_purchased(user.id, post_id=post_id, message_id=message_id))


# Tips

@router.post("/api/tips", response_model=Tip, status_code=status.HTTP_201_CREATED, tags=["Tips"])
def send_tip(request: TipRequest, user: User = Depends(get_current_user),
             tips: TipService = Depends(get_tips)) -> Tip:
    return tips.send_tip(user.id, request)


@router.get("/api/tips/received", response_model=list[Tip], tags=["Tips"])
def tips_received(user: User = Depends(get_current_user),
                  tips: TipService = Depends(get_tips)) -> list[Tip]:
    return tips.tips_received(user.id)


# Subscriptions

@router.get("/api/subscription-plans", response_model=list[SubscriptionPlan], tags=["Subscriptions"])
def list_plans(subscriptions: SubscriptionService = Depends(get_subscriptions)) -> list[SubscriptionPlan]:
    return subscriptions.list_plans()


@router.post("/api/subscribe", response_model=Subscription, status_code=status.HTTP_201_CREATED,
             tags=["Subscriptions"])
def subscribe(request: SubscribeRequest, user: User = Depends(get_current_user),
              subscriptions: SubscriptionService = Depends(get_subscriptions)) -> Subscription:
    return subscriptions.subscribe(user.id, request.plan_id)


@router.get("/api/subscriptions", response_model=list[Subscription], tags=["Subscriptions"])
def list_subscriptions(user: User = Depends(get_current_user),
                       subscriptions: SubscriptionService = Depends(get_subscriptions)) -> list[Subscription]:
    return subscriptions.list_subscriptions(user.id)


@router.post("/api/subscriptions/{subscription_id}/cancel", response_model=Subscription,
             tags=["Subscriptions"])
def cancel_subscription(subscription_id: int, user: User = Depends(get_current_user),
                        subscriptions: SubscriptionService = Depends(get_subscriptions)) -> Subscription:
    return subscriptions.cancel_subscription(user.id, subscription_id)


@router.get("/api/active-subscription", response_model=ActiveSubscriptionResponse, tags=["Subscriptions"])
def active_subscription(user: User = Depends(get_current_user),
                        subscriptions: SubscriptionService = Depends(get_subscriptions)) -> ActiveSubscriptionResponse:
    return subscriptions.active_subscription(user.id)


# Payment requests

@router.post("/api/payment-requests", response_model=PaymentRequest, status_code=status.HTTP_201_CREATED,
             tags=["Payments"])
def request_top_up(request: TopUpRequest, user: User = Depends(get_current_user),
                   payments: PaymentRequestService = Depends(get_payments)) -> PaymentRequest:
    return payments.request_top_up(user.id, request)


@router.get("/api/payment-requests", response_model=list[PaymentRequest], tags=["Payments"])
def list_payment_requests(user: User = Depends(get_current_user),
                          payments: PaymentRequestService = Depends(get_payments)) -> list[PaymentRequest]:
    return payments.list_for_user(user.id)


@router.get("/api/admin/payment-requests", response_model=list[PaymentRequest], tags=["Admin"])
def list_pending_payment_requests(admin: User = Depends(require_admin),
                                  payments: PaymentRequestService = Depends(get_payments)) -> list[PaymentRequest]:
    return payments.list_pending()


@router.put("/api/admin/payment-requests/{request_id}", response_model=PaymentRequest, tags=["Admin"])
def resolve_payment_request(request_id: int, request: ResolvePaymentRequest,
                            admin: User = Depends(require_admin),
                            payments: PaymentRequestService = Depends(get_payments)) -> PaymentRequest:
    return payments.resolve_request(request_id, request.status)


# Wallet

@router.get("/api/wallet", response_model=WalletBalance, tags=["Wallet"])
def get_wallet(user: User = Depends(get_current_user),
               accounts: AccountService = Depends(get_accounts)) -> WalletBalance:
    return accounts.get_balance(user.id)


@router.get("/api/wallet/transactions", response_model=LedgerHistoryResponse, tags=["Wallet"])
def get_wallet_transactions(limit: int = 50, offset: int = 0,
                            user: User = Depends(get_current_user),
                            accounts: AccountService = Depends(get_accounts)) -> LedgerHistoryResponse:
    return accounts.get_ledger_history(user.id, limit, offset)


@router.get("/api/admin/stats", response_model=AdminStats, tags=["Admin"])
def admin_stats(admin: User = Depends(require_admin),
                accounts: AccountService = Depends(get_accounts)) -> AdminStats:
    return accounts.admin_stats()


def create_app(settings: Optional[Settings] = None, storage: Optional[Repository] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)
    storage = storage or InMemoryStorage(seed_plans=settings.seed_plans)

    app = FastAPI(
        title=settings.app_name,
        description="Wallet, tipping, subscriptions and pay-per-view unlocks for a creator platform",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.storage = storage
    app.state.accounts = AccountService(storage, settings.admin_username)
    app.state.content = ContentService(storage)
    app.state.unlocks = UnlockService(storage, settings.admin_username)
    app.state.tips = TipService(storage)
    app.state.subscriptions = SubscriptionService(storage)
    app.state.payments = PaymentRequestService(storage)

    app.add_exception_handler(WalletServiceError, wallet_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.include_router(router)
    logger.info("%s ready", settings.app_name)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
