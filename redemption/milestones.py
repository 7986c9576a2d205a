from typing import Any, Mapping, Optional

from loguru import logger

from ledger import ActionKind, PersistenceError
from rewards import FreeItem

from .errors import (
    InvalidRequestError,
    MilestoneAlreadyRedeemedError,
    MilestoneNotReachedError,
)
from .models import MilestoneResult
from .service import RedemptionCoordinator, run_to_completion
from .settings import MilestoneReward


class MilestoneTracker:
    """One-time free-item rewards unlocked by referral count, not points.

    Shares the coordinator's issuance primitive; the milestone map on the user
    is the guard against redeeming the same threshold twice.
    """

    def __init__(self, coordinator: RedemptionCoordinator, milestones: Mapping[int, MilestoneReward]):
        self.coordinator = coordinator
        self.milestones = dict(sorted(milestones.items()))

    def list_milestones(self) -> list[tuple[int, MilestoneReward]]:
        return list(self.milestones.items())

    async def redeem_milestone(self, email: Optional[str], threshold: Any) -> MilestoneResult:
        if not email or not email.strip() or threshold is None:
            raise InvalidRequestError("Missing email or milestoneThreshold.")
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise InvalidRequestError("milestoneThreshold must be a whole number.")
        reward = self.milestones.get(threshold)
        if reward is None:
            raise InvalidRequestError(f"{threshold} is not a configured milestone.")
        return await run_to_completion(self._redeem_milestone(email.strip(), threshold, reward))

    async def _redeem_milestone(self, email: str, threshold: int, reward: MilestoneReward) -> MilestoneResult:
        store = self.coordinator.store
        user = await store.get_user(email)
        log = logger.bind(user_id=user.user_id, threshold=threshold)

        if threshold in user.milestone_redemptions:
            raise MilestoneAlreadyRedeemedError(f"Milestone {threshold} already redeemed.")
        if user.referral_count < threshold:
            raise MilestoneNotReachedError(
                f"Milestone {threshold} needs {threshold} referrals; {user.referral_count} so far."
            )

        issued = await self.coordinator.issue_reward(FreeItem(item_ref=reward.item_ref, title=reward.name))
        log = log.bind(reward_id=issued.reward_id)

        try:
            async with store.transaction(user.user_id) as tx:
                if threshold in tx.user.milestone_redemptions:
                    raise MilestoneAlreadyRedeemedError(f"Milestone {threshold} already redeemed.")
                tx.record_milestone(threshold, issued.code)
                tx.record_action(ActionKind.REDEEM_MILESTONE, 0)
        except (MilestoneAlreadyRedeemedError, PersistenceError) as exc:
            log.warning("Milestone code not recorded; withdrawing it", error=str(exc))
            await self.coordinator.deactivate_best_effort(
                issued.reward_id, reason="milestone-not-recorded", user_id=user.user_id
            )
            raise

        log.info("Milestone redeemed", reward_name=reward.name)
        return MilestoneResult(threshold=threshold, reward_name=reward.name, code=issued.code)
