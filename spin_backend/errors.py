# errors.py
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    INSUFFICIENT_COOLDOWN = "insufficient-cooldown"
    NO_CREDITS = "no-credits"
    VERIFICATION_FAILED = "verification-failed"
    ALREADY_SETTLED = "already-settled"
    INVALID_WALLET = "invalid-wallet"
    INTERNAL_ERROR = "internal-error"


class SpinServiceError(Exception):
    reason = FailureReason.INTERNAL_ERROR


class IneligibleError(SpinServiceError):
    """Cooldown still running and no spin credits left. Expected, user-facing."""

    def __init__(self, reason: FailureReason, remaining_seconds: int = 0):
        super().__init__(f"{reason.value} ({remaining_seconds}s remaining)")
        self.reason = reason
        self.remaining_seconds = remaining_seconds


class VerificationError(SpinServiceError):
    reason = FailureReason.VERIFICATION_FAILED


class SigningError(SpinServiceError):
    pass


class PersistenceError(SpinServiceError):
    pass


class DuplicateSettlementError(SpinServiceError):
    """Order for this payment reference already exists; callers treat it as a no-op."""

    reason = FailureReason.ALREADY_SETTLED

    def __init__(self, order_id: str, existing_wallet: Optional[str] = None):
        super().__init__(f"order {order_id} already settled")
        self.order_id = order_id
        self.existing_wallet = existing_wallet


class InvalidWalletError(SpinServiceError, ValueError):
    reason = FailureReason.INVALID_WALLET
