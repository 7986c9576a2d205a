from ledger.errors import (
    InsufficientBalanceError,
    LedgerError,
    PersistenceError,
    UserNotFoundError,
)
from rewards.provider import ProviderError


class RedemptionError(Exception):
    code = "redemption_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(RedemptionError):
    """Missing or malformed input; never retried."""

    code = "invalid_request"


class NotFoundError(RedemptionError):
    code = "not_found"


class CodeMismatchError(NotFoundError):
    code = "active_code_not_found"


class ActiveRewardExistsError(RedemptionError):
    """The user still holds an unused reward code."""

    code = "active_reward_exists"


class MilestoneNotReachedError(RedemptionError):
    code = "milestone_not_reached"


class MilestoneAlreadyRedeemedError(RedemptionError):
    code = "milestone_already_redeemed"


__all__ = [
    "RedemptionError",
    "InvalidRequestError",
    "NotFoundError",
    "CodeMismatchError",
    "ActiveRewardExistsError",
    "MilestoneNotReachedError",
    "MilestoneAlreadyRedeemedError",
    "LedgerError",
    "UserNotFoundError",
    "InsufficientBalanceError",
    "PersistenceError",
    "ProviderError",
]
