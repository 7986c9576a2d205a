import re
import secrets
import string
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Union

POINTS_PER_CURRENCY_UNIT = 100
CENTS = Decimal("0.01")

_LEADING_NUMBER = re.compile(r"^\s*(\d+(?:\.\d+)?)")
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class RewardSpecError(ValueError):
    pass


class RewardFamily(str, Enum):
    MONETARY = "POINTS"
    FREE_ITEM = "FREE"
    GIFT_CARD = "GIFT"


class RedeemType(str, Enum):
    DISCOUNT = "discount"
    GIFT_CARD = "gift_card"


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _money_label(value: Decimal) -> str:
    text = f"{_money(value):f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text.replace(".", "_")


@dataclass(frozen=True)
class FixedAmount:
    amount: Decimal
    family = RewardFamily.MONETARY

    @property
    def label(self) -> str:
        return f"{_money_label(self.amount)}OFF"

    def to_dict(self) -> dict:
        return {"type": "fixed_amount", "amount": str(_money(self.amount))}


@dataclass(frozen=True)
class Percentage:
    percent: Decimal
    family = RewardFamily.MONETARY

    @property
    def label(self) -> str:
        return f"{_money_label(self.percent)}PCT"

    @property
    def fraction(self) -> Decimal:
        return self.percent / Decimal(100)

    def to_dict(self) -> dict:
        return {"type": "percentage", "percent": str(self.percent)}


@dataclass(frozen=True)
class FreeItem:
    item_ref: str
    title: str = "Free item"
    family = RewardFamily.FREE_ITEM

    @property
    def label(self) -> str:
        return "ITEM"

    @property
    def is_variant(self) -> bool:
        return "/ProductVariant/" in self.item_ref

    def to_dict(self) -> dict:
        return {"type": "free_item", "item_ref": self.item_ref, "title": self.title}


@dataclass(frozen=True)
class Dynamic:
    """Discount worth the redeemed points: 100 points buys one currency unit."""

    points_redeemed: int
    family = RewardFamily.MONETARY

    @property
    def amount(self) -> Decimal:
        return _money(Decimal(self.points_redeemed) / Decimal(POINTS_PER_CURRENCY_UNIT))

    @property
    def label(self) -> str:
        return f"{_money_label(self.amount)}OFF"

    def to_dict(self) -> dict:
        return {"type": "dynamic", "points_redeemed": self.points_redeemed, "amount": str(self.amount)}


@dataclass(frozen=True)
class GiftCard:
    amount: Decimal
    family = RewardFamily.GIFT_CARD

    @property
    def label(self) -> str:
        return _money_label(self.amount).replace("_", "")

    def to_dict(self) -> dict:
        return {"type": "gift_card", "amount": str(_money(self.amount))}


RewardSpec = Union[FixedAmount, Percentage, FreeItem, Dynamic, GiftCard]


def _parse_amount(value: str) -> Decimal:
    match = _LEADING_NUMBER.match(value)
    if not match:
        raise RewardSpecError(f"Cannot read an amount from {value!r}")
    try:
        amount = Decimal(match.group(1))
    except InvalidOperation as exc:
        raise RewardSpecError(f"Cannot read an amount from {value!r}") from exc
    if _money(amount) <= 0:
        raise RewardSpecError("Reward amount must be positive")
    return _money(amount)


def parse_redeem_type(redeem_type: Optional[str]) -> RedeemType:
    if not redeem_type:
        return RedeemType.DISCOUNT
    try:
        return RedeemType(redeem_type.strip().lower())
    except ValueError as exc:
        raise RewardSpecError(f"Unsupported redeem type {redeem_type!r}") from exc


def parse_reward_spec(redeem_type: RedeemType, redeem_value: Optional[str], points: int) -> RewardSpec:
    """Turn the caller's redeem type/value pair into a reward spec.

    Discount values: ``"dynamic"`` (worth the redeemed points), ``"15%"``
    (percentage) or a leading amount such as ``"10CAD"`` / ``"10OFF"``.
    Gift card values: a leading amount or ``"dynamic"``.
    """
    value = (redeem_value or "").strip()
    if not value:
        raise RewardSpecError("Missing redeemValue")

    if value.lower() == "dynamic":
        dynamic = Dynamic(points_redeemed=points)
        if dynamic.amount <= 0:
            raise RewardSpecError("Not enough points for a dynamic reward")
        if redeem_type == RedeemType.GIFT_CARD:
            return GiftCard(amount=dynamic.amount)
        return dynamic

    if redeem_type == RedeemType.GIFT_CARD:
        return GiftCard(amount=_parse_amount(value))

    if value.endswith("%"):
        percent = _parse_amount(value[:-1])
        if percent > 100:
            raise RewardSpecError("Percentage discount cannot exceed 100%")
        return Percentage(percent=percent)

    return FixedAmount(amount=_parse_amount(value))


def random_suffix(length: int = 5) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def generate_code(spec: RewardSpec, suffix_length: int = 5) -> str:
    """Family prefix plus a random suffix, e.g. ``POINTS-10OFF-7KQ2M``.

    Gift card codes are letters and digits only, so they drop the separators.
    """
    if spec.family == RewardFamily.GIFT_CARD:
        return f"{spec.family.value}{spec.label}{random_suffix(suffix_length + 3)}"
    return f"{spec.family.value}-{spec.label}-{random_suffix(suffix_length)}"
