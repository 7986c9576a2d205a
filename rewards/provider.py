"""Reward codes on the commerce platform (Shopify Admin GraphQL API).

Discount codes are issued single-use and once per customer. Free-item codes
do not stack with other product or order discounts; monetary codes do.
Shopify has no revoke for discount codes, so deactivation moves the code's
``endsAt`` to its ``startsAt`` plus a short grace interval.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Protocol

import httpx
from loguru import logger

from .specs import (
    Dynamic,
    FixedAmount,
    FreeItem,
    GiftCard,
    Percentage,
    RewardFamily,
    RewardSpec,
    generate_code,
)

DISCOUNT_CODE_CREATE = """
mutation discountCodeBasicCreate($basicCodeDiscount: DiscountCodeBasicInput!) {
  discountCodeBasicCreate(basicCodeDiscount: $basicCodeDiscount) {
    codeDiscountNode {
      id
      codeDiscount {
        ... on DiscountCodeBasic {
          title
          codes(first: 1) { nodes { code } }
        }
      }
    }
    userErrors { field code message }
  }
}
"""

DISCOUNT_CODE_WINDOW = """
query codeDiscountWindow($id: ID!) {
  codeDiscountNode(id: $id) {
    id
    codeDiscount {
      ... on DiscountCodeBasic { startsAt endsAt }
    }
  }
}
"""

DISCOUNT_CODE_UPDATE = """
mutation discountCodeBasicUpdate($id: ID!, $basicCodeDiscount: DiscountCodeBasicInput!) {
  discountCodeBasicUpdate(id: $id, basicCodeDiscount: $basicCodeDiscount) {
    codeDiscountNode { id }
    userErrors { field code message }
  }
}
"""

GIFT_CARD_CREATE = """
mutation giftCardCreate($input: GiftCardCreateInput!) {
  giftCardCreate(input: $input) {
    giftCard { id }
    giftCardCode
    userErrors { field code message }
  }
}
"""

GIFT_CARD_STATE = """
query giftCardState($id: ID!) {
  giftCard(id: $id) { id enabled deactivatedAt }
}
"""

GIFT_CARD_DEACTIVATE = """
mutation giftCardDeactivate($id: ID!) {
  giftCardDeactivate(id: $id) {
    giftCard { id enabled }
    userErrors { field code message }
  }
}
"""

GIFT_CARD_GID = "gid://shopify/GiftCard/"


class ProviderError(Exception):
    """Issuing or deactivating a reward code failed on the platform side."""

    def __init__(self, message: str, code: str = "provider_unavailable"):
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass(frozen=True)
class IssuedReward:
    code: str
    reward_id: str


class RewardProvider(Protocol):
    async def issue(self, spec: RewardSpec) -> IssuedReward: ...

    async def deactivate(self, reward_id: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decimal_str(value: Decimal) -> str:
    return f"{value:.2f}"


def _combines_with(spec: RewardSpec) -> dict:
    if spec.family == RewardFamily.FREE_ITEM:
        return {"orderDiscounts": False, "productDiscounts": False, "shippingDiscounts": True}
    return {"orderDiscounts": True, "productDiscounts": True, "shippingDiscounts": True}


def _customer_gets(spec: RewardSpec) -> dict:
    if isinstance(spec, Percentage):
        return {"value": {"percentage": float(spec.fraction)}, "items": {"all": True}}
    if isinstance(spec, (FixedAmount, Dynamic)):
        return {
            "value": {"discountAmount": {"amount": _decimal_str(spec.amount), "appliesOnEachItem": False}},
            "items": {"all": True},
        }
    if isinstance(spec, FreeItem):
        key = "productVariantsToAdd" if spec.is_variant else "productsToAdd"
        return {"value": {"percentage": 1.0}, "items": {"products": {key: [spec.item_ref]}}}
    raise TypeError(f"{type(spec).__name__} is not a discount reward")


def build_discount_input(spec: RewardSpec, code: str, starts_at: datetime) -> dict:
    return {
        "title": code if not isinstance(spec, FreeItem) else f"{spec.title} ({code})",
        "code": code,
        "startsAt": _iso(starts_at),
        "usageLimit": 1,
        "appliesOncePerCustomer": True,
        "customerSelection": {"all": True},
        "customerGets": _customer_gets(spec),
        "combinesWith": _combines_with(spec),
    }


def build_gift_card_input(spec: GiftCard, code: str) -> dict:
    return {
        "initialValue": _decimal_str(spec.amount),
        "code": code,
        "note": "Issued for redeemed loyalty points",
    }


class ShopifyRewardProvider:
    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = "2024-10",
        timeout_seconds: float = 10.0,
        deactivation_grace: timedelta = timedelta(seconds=60),
        code_suffix_length: int = 5,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.endpoint = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"
        self.deactivation_grace = deactivation_grace
        self.code_suffix_length = code_suffix_length
        self._clock = clock
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._headers = {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    async def issue(self, spec: RewardSpec) -> IssuedReward:
        code = generate_code(spec, self.code_suffix_length)
        if isinstance(spec, GiftCard):
            return await self._issue_gift_card(spec, code)

        data = await self._execute(
            DISCOUNT_CODE_CREATE,
            {"basicCodeDiscount": build_discount_input(spec, code, self._clock())},
        )
        payload = data.get("discountCodeBasicCreate") or {}
        self._raise_user_errors(payload, "discountCodeBasicCreate")

        node = payload.get("codeDiscountNode") or {}
        nodes = ((node.get("codeDiscount") or {}).get("codes") or {}).get("nodes") or []
        code = nodes[0].get("code") if nodes else None
        if not node.get("id") or not code:
            raise ProviderError("Discount code response is missing the created code")

        issued = IssuedReward(code=code, reward_id=node["id"])
        logger.info(
            "Issued discount code",
            reward_id=issued.reward_id,
            code=issued.code,
            reward=spec.to_dict(),
        )
        return issued

    async def _issue_gift_card(self, spec: GiftCard, code: str) -> IssuedReward:
        data = await self._execute(GIFT_CARD_CREATE, {"input": build_gift_card_input(spec, code)})
        payload = data.get("giftCardCreate") or {}
        self._raise_user_errors(payload, "giftCardCreate")

        card = payload.get("giftCard") or {}
        if not card.get("id"):
            raise ProviderError("Gift card response is missing the created card")

        issued = IssuedReward(code=payload.get("giftCardCode") or code, reward_id=card["id"])
        logger.info("Issued gift card", reward_id=issued.reward_id, reward=spec.to_dict())
        return issued

    async def deactivate(self, reward_id: str) -> None:
        if reward_id.startswith(GIFT_CARD_GID):
            await self._deactivate_gift_card(reward_id)
            return

        data = await self._execute(DISCOUNT_CODE_WINDOW, {"id": reward_id})
        node = data.get("codeDiscountNode")
        if not node:
            logger.warning("Discount code not found; treating as already deactivated", reward_id=reward_id)
            return

        window = node.get("codeDiscount") or {}
        starts_at = _parse_datetime(window.get("startsAt"))
        if starts_at is None:
            raise ProviderError(f"Discount {reward_id} has no start time")
        ends_at = _parse_datetime(window.get("endsAt"))
        target = starts_at + self.deactivation_grace

        if ends_at is not None and ends_at <= max(target, self._clock()):
            logger.info("Discount code already ended", reward_id=reward_id, ends_at=_iso(ends_at))
            return

        data = await self._execute(
            DISCOUNT_CODE_UPDATE,
            {"id": reward_id, "basicCodeDiscount": {"endsAt": _iso(target)}},
        )
        self._raise_user_errors(data.get("discountCodeBasicUpdate") or {}, "discountCodeBasicUpdate")
        logger.info("Deactivated discount code", reward_id=reward_id, ends_at=_iso(target))

    async def _deactivate_gift_card(self, reward_id: str) -> None:
        data = await self._execute(GIFT_CARD_STATE, {"id": reward_id})
        card = data.get("giftCard")
        if not card or not card.get("enabled", True) or card.get("deactivatedAt"):
            logger.info("Gift card already deactivated", reward_id=reward_id)
            return

        data = await self._execute(GIFT_CARD_DEACTIVATE, {"id": reward_id})
        self._raise_user_errors(data.get("giftCardDeactivate") or {}, "giftCardDeactivate")
        logger.info("Deactivated gift card", reward_id=reward_id)

    async def _execute(self, query: str, variables: dict) -> dict:
        try:
            response = await self._client.post(
                self.endpoint,
                json={"query": query, "variables": variables},
                headers=self._headers,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError("Reward provider timed out", code="timeout") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Reward provider request failed: {exc}") from exc

        if response.status_code == 429:
            raise ProviderError("Reward provider rate limit reached", code="rate_limited")
        if response.status_code >= 500:
            raise ProviderError(f"Reward provider returned {response.status_code}")
        if response.status_code >= 400:
            raise ProviderError(
                f"Reward provider rejected the request ({response.status_code})",
                code="provider_rejected",
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError("Reward provider returned malformed JSON") from exc
        if not isinstance(body, dict):
            raise ProviderError("Reward provider returned malformed JSON")

        errors = body.get("errors")
        if errors:
            logger.error("GraphQL errors from reward provider", errors=errors)
            throttled = any(
                (error.get("extensions") or {}).get("code") == "THROTTLED"
                for error in errors
                if isinstance(error, dict)
            )
            if throttled:
                raise ProviderError("Reward provider rate limit reached", code="rate_limited")
            raise ProviderError("Reward provider rejected the request", code="provider_rejected")

        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderError("Reward provider response has no data")
        return data

    @staticmethod
    def _raise_user_errors(payload: dict, operation: str) -> None:
        user_errors = payload.get("userErrors") or []
        if user_errors:
            logger.warning("Reward provider user errors", operation=operation, user_errors=user_errors)
            raise ProviderError(user_errors[0].get("message") or f"{operation} failed", code="provider_rejected")
