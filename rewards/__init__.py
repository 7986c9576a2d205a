"""
Reward Provider Package

Reward specs (fixed amount, percentage, free item, dynamic, gift card),
code generation, and the commerce-platform client that issues and
deactivates reward codes.
"""

from .specs import (
    RewardSpec,
    RewardSpecError,
    RewardFamily,
    RedeemType,
    FixedAmount,
    Percentage,
    FreeItem,
    Dynamic,
    GiftCard,
    parse_redeem_type,
    parse_reward_spec,
    generate_code,
)
from .provider import (
    IssuedReward,
    ProviderError,
    RewardProvider,
    ShopifyRewardProvider,
)

__all__ = [
    "RewardSpec",
    "RewardSpecError",
    "RewardFamily",
    "RedeemType",
    "FixedAmount",
    "Percentage",
    "FreeItem",
    "Dynamic",
    "GiftCard",
    "parse_redeem_type",
    "parse_reward_spec",
    "generate_code",
    "IssuedReward",
    "ProviderError",
    "RewardProvider",
    "ShopifyRewardProvider",
]
