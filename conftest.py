import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import pytest

from ledger import InMemoryStorage, LedgerTransaction, PersistenceError
from rewards import IssuedReward, ProviderError, RewardSpec, generate_code


class FakeRewardProvider:
    """Records every call; failures and delays are switched on per test."""

    def __init__(self):
        self.issue_calls: list[RewardSpec] = []
        self.deactivate_calls: list[str] = []
        self.issue_error: Optional[ProviderError] = None
        self.deactivate_error: Optional[ProviderError] = None
        self.issue_delay: float = 0

    async def issue(self, spec: RewardSpec) -> IssuedReward:
        self.issue_calls.append(spec)
        index = len(self.issue_calls)
        if self.issue_delay:
            await asyncio.sleep(self.issue_delay)
        if self.issue_error is not None:
            raise self.issue_error
        return IssuedReward(
            code=generate_code(spec),
            reward_id=f"gid://shopify/DiscountCodeNode/{index}",
        )

    async def deactivate(self, reward_id: str) -> None:
        self.deactivate_calls.append(reward_id)
        if self.deactivate_error is not None:
            raise self.deactivate_error


class FlakyStorage(InMemoryStorage):
    """In-memory store whose N-th transaction fails as if the database went away."""

    def __init__(self):
        super().__init__()
        self.fail_on: Optional[int] = None
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self, user_id: int) -> AsyncIterator[LedgerTransaction]:
        self.transactions += 1
        if self.transactions == self.fail_on:
            raise PersistenceError("Ledger database unavailable")
        async with super().transaction(user_id) as tx:
            yield tx


@pytest.fixture
def provider() -> FakeRewardProvider:
    return FakeRewardProvider()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def flaky_storage() -> FlakyStorage:
    return FlakyStorage()
