from contextlib import asynccontextmanager
from datetime import datetime, timezone
from itertools import count
from typing import AsyncContextManager, AsyncIterator, Protocol

from .errors import InsufficientBalanceError, UserNotFoundError
from .locks import UserLocks
from .models import LedgerEntry, User


class LedgerTransaction:
    """Mutations applied to one user row inside a single local transaction.

    Works on a private copy of the user; the owning store writes the copy and
    the pending entries back only when the transaction block exits cleanly.
    """

    def __init__(self, user: User):
        self.user = user.model_copy(deep=True)
        self.pending_actions: list[tuple[str, int]] = []

    @property
    def balance(self) -> int:
        return self.user.points

    def try_debit(self, amount: int) -> int:
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        if self.user.points < amount:
            raise InsufficientBalanceError(self.user.points, amount)
        self.user.points -= amount
        return self.user.points

    def credit(self, amount: int) -> int:
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        self.user.points += amount
        return self.user.points

    def record_action(self, kind: str, delta: int) -> None:
        self.pending_actions.append((str(getattr(kind, "value", kind)), delta))

    def set_active_reward(self, code: str, reward_id: str) -> None:
        if not code or not reward_id:
            raise ValueError("Reward code and reward id must be set together")
        self.user.active_reward_code = code
        self.user.active_reward_id = reward_id

    def clear_active_reward(self) -> None:
        self.user.active_reward_code = None
        self.user.active_reward_id = None

    def record_milestone(self, threshold: int, code: str) -> None:
        if threshold in self.user.milestone_redemptions:
            raise ValueError(f"Milestone {threshold} already recorded")
        self.user.milestone_redemptions[threshold] = code


class LedgerStore(Protocol):
    async def get_user(self, email: str) -> User: ...

    def transaction(self, user_id: int) -> AsyncContextManager[LedgerTransaction]: ...

    async def list_actions(self, user_id: int) -> list[LedgerEntry]: ...

    async def add_user(self, email: str, points: int = 0, referral_count: int = 0) -> User: ...


class InMemoryStorage:
    """Process-local ledger store used for tests and local development."""

    def __init__(self, seed: bool = False):
        self.users: dict[int, User] = {}
        self.email_index: dict[str, int] = {}
        self.ledger_entries: list[LedgerEntry] = []
        self._user_ids = count(1)
        self._entry_ids = count(1)
        self._locks = UserLocks()
        if seed:
            self._seed_data()

    def _seed_data(self):
        self._insert_user("referrer@example.com", points=500, referral_count=12)
        self._insert_user("referred@example.com", points=50, referral_count=0)

    def _insert_user(self, email: str, points: int, referral_count: int) -> User:
        if email in self.email_index:
            raise ValueError(f"User {email} already exists")
        user = User(
            user_id=next(self._user_ids),
            email=email,
            points=points,
            referral_count=referral_count,
        )
        self.users[user.user_id] = user
        self.email_index[email] = user.user_id
        return user

    async def add_user(self, email: str, points: int = 0, referral_count: int = 0) -> User:
        return self._insert_user(email, points, referral_count).model_copy(deep=True)

    async def get_user(self, email: str) -> User:
        user_id = self.email_index.get(email)
        if user_id is None:
            raise UserNotFoundError(f"User {email} not found")
        return self.users[user_id].model_copy(deep=True)

    @asynccontextmanager
    async def transaction(self, user_id: int) -> AsyncIterator[LedgerTransaction]:
        async with self._locks.hold(user_id):
            current = self.users.get(user_id)
            if current is None:
                raise UserNotFoundError(f"User {user_id} not found")
            tx = LedgerTransaction(current)
            yield tx
            now = datetime.now(timezone.utc)
            for kind, delta in tx.pending_actions:
                self.ledger_entries.append(LedgerEntry(
                    entry_id=next(self._entry_ids),
                    user_id=user_id,
                    action_kind=kind,
                    points_delta=delta,
                    created_at=now,
                ))
            self.users[user_id] = tx.user

    async def list_actions(self, user_id: int) -> list[LedgerEntry]:
        return [e for e in self.ledger_entries if e.user_id == user_id]

    def is_locked(self, user_id: int) -> bool:
        return self._locks.is_locked(user_id)
