from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class RedemptionState(str, Enum):
    REQUESTED = "REQUESTED"
    DEBITED = "DEBITED"
    ISSUED = "ISSUED"
    COMMITTED = "COMMITTED"
    COMPENSATING = "COMPENSATING"
    REFUNDED = "REFUNDED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"


class RedeemResult(BaseModel):
    code: str
    reward_id: str
    new_balance: int
    state: RedemptionState = RedemptionState.COMMITTED


class CancelResult(BaseModel):
    new_balance: int
    deactivated_reward_id: Optional[str] = None
    state: RedemptionState = RedemptionState.REFUNDED


class MilestoneResult(BaseModel):
    threshold: int
    reward_name: str
    code: str


class RedeemRequest(BaseModel):
    email: Optional[str] = None
    points_to_redeem: Optional[int] = Field(default=None, alias="pointsToRedeem")
    redeem_type: Optional[str] = Field(default=None, alias="redeemType")
    redeem_value: Optional[str] = Field(default=None, alias="redeemValue")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "email": "user@example.com",
            "pointsToRedeem": 30,
            "redeemType": "discount",
            "redeemValue": "10CAD"
        }
    })


class RedeemResponse(BaseModel):
    message: str = "Redeemed points successfully."
    discount_code: str = Field(serialization_alias="discountCode")
    new_points: int = Field(serialization_alias="newPoints")


class MarkUsedRequest(BaseModel):
    email: Optional[str] = None
    code: Optional[str] = None


class MarkUsedResponse(BaseModel):
    ok: bool = True


class CancelRedeemRequest(BaseModel):
    email: Optional[str] = None
    points_to_refund: Optional[int] = Field(default=None, alias="pointsToRefund")

    model_config = ConfigDict(populate_by_name=True)


class CancelRedeemResponse(BaseModel):
    new_points: int = Field(serialization_alias="newPoints")


class MilestoneRequest(BaseModel):
    email: Optional[str] = None
    milestone_threshold: Optional[int] = Field(default=None, alias="milestoneThreshold")

    model_config = ConfigDict(populate_by_name=True)


class MilestoneResponse(BaseModel):
    reward_name: str = Field(serialization_alias="rewardName")
    code: str


class MilestoneInfo(BaseModel):
    threshold: int
    reward_name: str = Field(serialization_alias="rewardName")
