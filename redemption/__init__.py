"""
Points Redemption Coordinator

Turns a redemption request into a ledger debit plus a reward code issued by
the commerce platform, and reverses that effect on cancellation:
- redeem: debit -> issue -> commit code
- mark_used / cancel_redeem: local correction first, remote deactivation best effort
- referral milestones: one free-item code per threshold
"""

from .errors import (
    RedemptionError,
    InvalidRequestError,
    NotFoundError,
    CodeMismatchError,
    ActiveRewardExistsError,
    MilestoneNotReachedError,
    MilestoneAlreadyRedeemedError,
)
from .models import RedemptionState, RedeemResult, CancelResult, MilestoneResult
from .service import RedemptionCoordinator
from .milestones import MilestoneTracker
from .settings import Settings, MilestoneReward, get_settings

__all__ = [
    "RedemptionError",
    "InvalidRequestError",
    "NotFoundError",
    "CodeMismatchError",
    "ActiveRewardExistsError",
    "MilestoneNotReachedError",
    "MilestoneAlreadyRedeemedError",
    "RedemptionState",
    "RedeemResult",
    "CancelResult",
    "MilestoneResult",
    "RedemptionCoordinator",
    "MilestoneTracker",
    "Settings",
    "MilestoneReward",
    "get_settings",
]
