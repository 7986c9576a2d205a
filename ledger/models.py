from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class ActionKind(str, Enum):
    REDEEM_DISCOUNT = "redeem-discount"
    REDEEM_GIFT_CARD = "redeem-gift_card"
    REDEEM_MILESTONE = "redeem-milestone"
    CANCEL_REDEEM = "cancel-redeem"

    @classmethod
    def for_redeem_type(cls, redeem_type: str) -> "ActionKind":
        return cls(f"redeem-{redeem_type}")


class User(BaseModel):
    user_id: int
    email: str
    points: int = Field(default=0, ge=0)
    referral_count: int = Field(default=0, ge=0)
    active_reward_code: Optional[str] = None
    active_reward_id: Optional[str] = None
    milestone_redemptions: dict[int, str] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)

    @property
    def has_active_reward(self) -> bool:
        return self.active_reward_id is not None


class LedgerEntry(BaseModel):
    entry_id: int
    user_id: int
    action_kind: str
    points_delta: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class LedgerHistoryResponse(BaseModel):
    user_id: int
    email: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int
