"""Redemption coordinator: points debit plus an externally issued reward code.

The ledger and the commerce platform share no transaction, so each operation
is a short saga:

    redeem:        debit (local) -> issue (remote) -> commit code (local)
    cancel_redeem: credit + clear code (local) -> deactivate (remote)
    mark_used:     clear code (local) -> deactivate (remote)

Local segments run under the store's per-user transaction. Remote calls run
outside it with a bounded timeout. A failed issue leaves the debit applied and
surfaces ``ProviderError``; the caller reconciles with ``cancel_redeem``.
A user holds at most one active code: redeem is refused while one is live,
and a redeem that loses a race to another commit is refunded and its code
withdrawn.
Failed deactivations during compensation are logged and never block the
ledger correction.
"""

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

from loguru import logger

from ledger import ActionKind, LedgerStore, PersistenceError
from rewards import (
    IssuedReward,
    ProviderError,
    RewardProvider,
    RewardSpec,
    RewardSpecError,
    parse_redeem_type,
    parse_reward_spec,
)

from .errors import ActiveRewardExistsError, CodeMismatchError, InvalidRequestError
from .models import CancelResult, RedeemResult, RedemptionState

T = TypeVar("T")


def _log_detached_outcome(task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Detached redemption step failed after caller went away", error=str(exc))
    else:
        logger.info("Detached redemption step completed after caller went away")


async def run_to_completion(operation: Awaitable[T]) -> T:
    """Await ``operation`` without letting caller cancellation abort it."""
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        task.add_done_callback(_log_detached_outcome)
        raise


def _require_email(email: Optional[str]) -> str:
    if not email or not email.strip():
        raise InvalidRequestError("Missing email.")
    return email.strip()


def _require_positive(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidRequestError(f"{field} must be a positive whole number.")
    return value


class RedemptionCoordinator:
    def __init__(self, store: LedgerStore, provider: RewardProvider, provider_timeout: float = 15.0):
        self.store = store
        self.provider = provider
        self.provider_timeout = provider_timeout

    async def redeem(
        self,
        email: Optional[str],
        points_to_redeem: Any,
        redeem_type: Optional[str] = None,
        redeem_value: Optional[str] = None,
    ) -> RedeemResult:
        if not email or not points_to_redeem:
            raise InvalidRequestError("Missing email or pointsToRedeem.")
        email = _require_email(email)
        points = _require_positive(points_to_redeem, "pointsToRedeem")
        try:
            kind = parse_redeem_type(redeem_type)
            spec = parse_reward_spec(kind, redeem_value, points)
        except RewardSpecError as exc:
            raise InvalidRequestError(str(exc)) from exc

        return await run_to_completion(
            self._redeem(email, points, ActionKind.for_redeem_type(kind.value), spec)
        )

    async def _redeem(self, email: str, points: int, action: ActionKind, spec: RewardSpec) -> RedeemResult:
        user = await self.store.get_user(email)
        log = logger.bind(user_id=user.user_id, points=points, action=action.value)
        log.info("Redemption state changed", state=RedemptionState.REQUESTED.value, reward=spec.to_dict())

        async with self.store.transaction(user.user_id) as tx:
            if tx.user.has_active_reward:
                raise ActiveRewardExistsError(
                    f"{email} still holds reward code {tx.user.active_reward_code}; use or cancel it first."
                )
            balance = tx.try_debit(points)
            tx.record_action(action, -points)
        log.info("Redemption state changed", state=RedemptionState.DEBITED.value, balance=balance)

        try:
            issued = await self.issue_reward(spec)
        except ProviderError as exc:
            log.error(
                "Reward issue failed; points stay debited until cancelled",
                state=RedemptionState.DEBITED.value,
                error_code=exc.code,
                error=exc.message,
            )
            raise
        log = log.bind(reward_id=issued.reward_id)
        log.info("Redemption state changed", state=RedemptionState.ISSUED.value)

        try:
            async with self.store.transaction(user.user_id) as tx:
                # a concurrent redeem may have committed while this one was issuing
                conflict = tx.user.has_active_reward
                if conflict:
                    tx.credit(points)
                    tx.record_action(ActionKind.CANCEL_REDEEM, points)
                else:
                    tx.set_active_reward(issued.code, issued.reward_id)
                new_balance = tx.balance
        except PersistenceError:
            log.error("Could not store issued reward code", state=RedemptionState.COMPENSATING.value)
            await self.deactivate_best_effort(issued.reward_id, reason="commit-failed")
            raise

        if conflict:
            log.warning(
                "Another reward code became active first; refunded and withdrawing this one",
                state=RedemptionState.COMPENSATING.value,
                balance=new_balance,
            )
            await self.deactivate_best_effort(issued.reward_id, reason="superseded", user_id=user.user_id)
            raise ActiveRewardExistsError(f"{email} already holds an active reward code.")

        log.info("Redemption state changed", state=RedemptionState.COMMITTED.value, balance=new_balance)
        return RedeemResult(code=issued.code, reward_id=issued.reward_id, new_balance=new_balance)

    async def mark_used(self, email: Optional[str], code: Optional[str]) -> bool:
        email = _require_email(email)
        if not code or not code.strip():
            raise InvalidRequestError("Missing code.")
        return await run_to_completion(self._mark_used(email, code.strip()))

    async def _mark_used(self, email: str, code: str) -> bool:
        user = await self.store.get_user(email)

        async with self.store.transaction(user.user_id) as tx:
            if tx.user.active_reward_code != code:
                raise CodeMismatchError(f"No active reward code {code} for {email}")
            reward_id = tx.user.active_reward_id
            tx.clear_active_reward()
        logger.info("Reward code marked used", user_id=user.user_id, reward_id=reward_id)

        await self.deactivate_best_effort(reward_id, reason="used", user_id=user.user_id)
        return True

    async def cancel_redeem(self, email: Optional[str], points_to_refund: Any) -> CancelResult:
        if not email or not points_to_refund:
            raise InvalidRequestError("Missing email or pointsToRefund.")
        email = _require_email(email)
        points = _require_positive(points_to_refund, "pointsToRefund")
        return await run_to_completion(self._cancel_redeem(email, points))

    async def _cancel_redeem(self, email: str, points: int) -> CancelResult:
        user = await self.store.get_user(email)
        log = logger.bind(user_id=user.user_id, points=points)

        async with self.store.transaction(user.user_id) as tx:
            new_balance = tx.credit(points)
            tx.record_action(ActionKind.CANCEL_REDEEM, points)
            reward_id = tx.user.active_reward_id
            tx.clear_active_reward()
        log.info(
            "Redemption state changed",
            state=RedemptionState.COMPENSATING.value,
            balance=new_balance,
            reward_id=reward_id,
        )

        if reward_id is None:
            log.info("Redemption state changed", state=RedemptionState.REFUNDED.value)
            return CancelResult(new_balance=new_balance)

        if await self.deactivate_best_effort(reward_id, reason="cancelled", user_id=user.user_id):
            log.info("Redemption state changed", state=RedemptionState.REFUNDED.value, reward_id=reward_id)
            return CancelResult(new_balance=new_balance, deactivated_reward_id=reward_id)

        return CancelResult(new_balance=new_balance, state=RedemptionState.COMPENSATION_FAILED)

    async def issue_reward(self, spec: RewardSpec) -> IssuedReward:
        try:
            return await asyncio.wait_for(self.provider.issue(spec), timeout=self.provider_timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError("Reward provider timed out", code="timeout") from exc

    async def deactivate_best_effort(self, reward_id: Optional[str], reason: str, **context: Any) -> bool:
        if not reward_id:
            return True
        try:
            await asyncio.wait_for(self.provider.deactivate(reward_id), timeout=self.provider_timeout)
        except asyncio.TimeoutError:
            error_code, error = "timeout", "Reward provider timed out"
        except ProviderError as exc:
            error_code, error = exc.code, exc.message
        else:
            return True

        logger.error(
            "Reward deactivation failed; needs manual reconciliation",
            state=RedemptionState.COMPENSATION_FAILED.value,
            reward_id=reward_id,
            reason=reason,
            error_code=error_code,
            error=error,
            **context,
        )
        return False
