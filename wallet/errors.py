class WalletServiceError(Exception):
    kind = "WalletError"


class NotFoundError(WalletServiceError):
    kind = "NotFound"


class PlanNotFoundError(NotFoundError):
    kind = "PlanNotFound"


class UnauthenticatedError(WalletServiceError):
    kind = "Unauthenticated"


class UnauthorizedError(WalletServiceError):
    kind = "Unauthorized"


class ValidationError(WalletServiceError):
    kind = "ValidationError"


class DuplicateUsernameError(ValidationError):
    kind = "DuplicateUsername"


class InsufficientBalanceError(WalletServiceError):
    kind = "InsufficientBalance"

    def __init__(self, user_id: int, balance: int, required: int):
        self.user_id = user_id
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient wallet balance: user {user_id} has {balance}, needs {required}"
        )


class InvalidStateTransitionError(WalletServiceError):
    kind = "InvalidStateTransition"
