"""
Tests for the Shopify reward provider against a mocked Admin GraphQL endpoint.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from rewards import (
    Dynamic,
    FixedAmount,
    FreeItem,
    GiftCard,
    Percentage,
    ProviderError,
    ShopifyRewardProvider,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
DISCOUNT_ID = "gid://shopify/DiscountCodeNode/42"
GIFT_CARD_ID = "gid://shopify/GiftCard/7"


class RecordingEndpoint:
    """Mock transport handler that answers by GraphQL operation name."""

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request, body))
        for operation, response in self.responses.items():
            if operation in body["query"]:
                if callable(response):
                    return response(body)
                return response
        raise AssertionError(f"Unexpected query: {body['query']}")

    def operations(self):
        return [next(op for op in self.responses if op in body["query"]) for _, body in self.requests]


def make_provider(endpoint: RecordingEndpoint) -> ShopifyRewardProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return ShopifyRewardProvider(
        shop_domain="test-shop.myshopify.com",
        access_token="shpat_test",
        client=client,
        clock=lambda: NOW,
    )


def created_discount(body):
    code = body["variables"]["basicCodeDiscount"]["code"]
    return httpx.Response(200, json={"data": {"discountCodeBasicCreate": {
        "codeDiscountNode": {
            "id": DISCOUNT_ID,
            "codeDiscount": {"title": code, "codes": {"nodes": [{"code": code}]}},
        },
        "userErrors": [],
    }}})


def discount_window(starts_at, ends_at=None):
    return httpx.Response(200, json={"data": {"codeDiscountNode": {
        "id": DISCOUNT_ID,
        "codeDiscount": {"startsAt": starts_at, "endsAt": ends_at},
    }}})


def updated_discount(body):
    return httpx.Response(200, json={"data": {"discountCodeBasicUpdate": {
        "codeDiscountNode": {"id": DISCOUNT_ID}, "userErrors": [],
    }}})


class TestIssue:
    """Issuing discount codes and gift cards."""

    @pytest.mark.asyncio
    async def test_fixed_amount_request_shape(self):
        """Test a monetary discount is single-use, once per customer, stackable."""
        endpoint = RecordingEndpoint({"discountCodeBasicCreate": created_discount})
        provider = make_provider(endpoint)

        issued = await provider.issue(FixedAmount(amount=Decimal("10")))

        request, body = endpoint.requests[0]
        assert request.url == "https://test-shop.myshopify.com/admin/api/2024-10/graphql.json"
        assert request.headers["X-Shopify-Access-Token"] == "shpat_test"

        discount = body["variables"]["basicCodeDiscount"]
        assert discount["code"].startswith("POINTS-10OFF-")
        assert discount["usageLimit"] == 1
        assert discount["appliesOncePerCustomer"] is True
        assert discount["startsAt"] == "2026-10-18T12:00:00Z"
        assert discount["customerGets"]["value"]["discountAmount"]["amount"] == "10.00"
        assert discount["combinesWith"] == {
            "orderDiscounts": True, "productDiscounts": True, "shippingDiscounts": True,
        }

        assert issued.code == discount["code"]
        assert issued.reward_id == DISCOUNT_ID

    @pytest.mark.asyncio
    async def test_percentage_and_dynamic_values(self):
        """Test percentage is sent as a fraction and dynamic as points / 100."""
        endpoint = RecordingEndpoint({"discountCodeBasicCreate": created_discount})
        provider = make_provider(endpoint)

        await provider.issue(Percentage(percent=Decimal("15")))
        await provider.issue(Dynamic(points_redeemed=1234))

        percentage = endpoint.requests[0][1]["variables"]["basicCodeDiscount"]["customerGets"]["value"]
        dynamic = endpoint.requests[1][1]["variables"]["basicCodeDiscount"]["customerGets"]["value"]
        assert percentage == {"percentage": 0.15}
        assert dynamic["discountAmount"]["amount"] == "12.34"

    @pytest.mark.asyncio
    async def test_free_item_does_not_stack(self):
        """Test a free-item code targets the product and refuses other discounts."""
        endpoint = RecordingEndpoint({"discountCodeBasicCreate": created_discount})
        provider = make_provider(endpoint)

        issued = await provider.issue(FreeItem(item_ref="gid://shopify/Product/1002", title="Free Candle"))

        discount = endpoint.requests[0][1]["variables"]["basicCodeDiscount"]
        assert discount["code"].startswith("FREE-ITEM-")
        assert discount["title"].startswith("Free Candle")
        assert discount["customerGets"]["value"] == {"percentage": 1.0}
        assert discount["customerGets"]["items"] == {"products": {"productsToAdd": ["gid://shopify/Product/1002"]}}
        assert discount["combinesWith"]["orderDiscounts"] is False
        assert discount["combinesWith"]["productDiscounts"] is False
        assert issued.code == discount["code"]

    @pytest.mark.asyncio
    async def test_gift_card(self):
        """Test gift cards go through giftCardCreate."""
        def created_card(body):
            return httpx.Response(200, json={"data": {"giftCardCreate": {
                "giftCard": {"id": GIFT_CARD_ID},
                "giftCardCode": body["variables"]["input"]["code"].lower(),
                "userErrors": [],
            }}})

        endpoint = RecordingEndpoint({"giftCardCreate": created_card})
        provider = make_provider(endpoint)

        issued = await provider.issue(GiftCard(amount=Decimal("25")))

        card_input = endpoint.requests[0][1]["variables"]["input"]
        assert card_input["initialValue"] == "25.00"
        assert issued.reward_id == GIFT_CARD_ID
        assert issued.code == card_input["code"].lower()

    @pytest.mark.asyncio
    async def test_user_errors_raise_rejection(self):
        endpoint = RecordingEndpoint({"discountCodeBasicCreate": httpx.Response(200, json={"data": {
            "discountCodeBasicCreate": {
                "codeDiscountNode": None,
                "userErrors": [{"field": ["code"], "code": "TAKEN", "message": "Code must be unique"}],
            }
        }})})
        provider = make_provider(endpoint)

        with pytest.raises(ProviderError) as exc_info:
            await provider.issue(FixedAmount(amount=Decimal("10")))

        assert exc_info.value.code == "provider_rejected"
        assert exc_info.value.message == "Code must be unique"

    @pytest.mark.asyncio
    async def test_throttled_and_http_errors(self):
        """Test rate limiting and server failures map to stable codes."""
        throttled = RecordingEndpoint({"discountCodeBasicCreate": httpx.Response(200, json={
            "errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}],
        })})
        too_many = RecordingEndpoint({"discountCodeBasicCreate": httpx.Response(429)})
        broken = RecordingEndpoint({"discountCodeBasicCreate": httpx.Response(503)})

        for endpoint, expected in ((throttled, "rate_limited"), (too_many, "rate_limited"), (broken, "provider_unavailable")):
            with pytest.raises(ProviderError) as exc_info:
                await make_provider(endpoint).issue(FixedAmount(amount=Decimal("10")))
            assert exc_info.value.code == expected

    @pytest.mark.asyncio
    async def test_transport_timeout(self):
        def timeout(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(timeout))
        provider = ShopifyRewardProvider("test-shop.myshopify.com", "shpat_test", client=client)

        with pytest.raises(ProviderError) as exc_info:
            await provider.issue(FixedAmount(amount=Decimal("10")))

        assert exc_info.value.code == "timeout"


class TestDeactivate:
    """Deactivation reads the start time, then moves the end time."""

    @pytest.mark.asyncio
    async def test_sets_end_to_start_plus_grace(self):
        endpoint = RecordingEndpoint({
            "codeDiscountWindow": discount_window("2026-10-18T11:59:30Z"),
            "discountCodeBasicUpdate": updated_discount,
        })
        provider = make_provider(endpoint)

        await provider.deactivate(DISCOUNT_ID)

        assert endpoint.operations() == ["codeDiscountWindow", "discountCodeBasicUpdate"]
        update = endpoint.requests[1][1]["variables"]
        assert update["id"] == DISCOUNT_ID
        assert update["basicCodeDiscount"] == {"endsAt": "2026-10-18T12:00:30Z"}

    @pytest.mark.asyncio
    async def test_already_ended_is_noop(self):
        """Test repeated deactivation does not write again."""
        past_end = (NOW - timedelta(hours=1)).isoformat()
        endpoint = RecordingEndpoint({
            "codeDiscountWindow": discount_window("2026-10-17T09:00:00Z", past_end),
            "discountCodeBasicUpdate": updated_discount,
        })
        provider = make_provider(endpoint)

        await provider.deactivate(DISCOUNT_ID)

        assert endpoint.operations() == ["codeDiscountWindow"]

    @pytest.mark.asyncio
    async def test_missing_discount_is_noop(self):
        endpoint = RecordingEndpoint({
            "codeDiscountWindow": httpx.Response(200, json={"data": {"codeDiscountNode": None}}),
        })

        await make_provider(endpoint).deactivate(DISCOUNT_ID)

        assert endpoint.operations() == ["codeDiscountWindow"]

    @pytest.mark.asyncio
    async def test_update_failure_raises(self):
        endpoint = RecordingEndpoint({
            "codeDiscountWindow": discount_window("2026-10-18T11:59:30Z"),
            "discountCodeBasicUpdate": httpx.Response(502),
        })

        with pytest.raises(ProviderError):
            await make_provider(endpoint).deactivate(DISCOUNT_ID)

    @pytest.mark.asyncio
    async def test_gift_card_deactivation(self):
        endpoint = RecordingEndpoint({
            "giftCardState": httpx.Response(200, json={"data": {"giftCard": {
                "id": GIFT_CARD_ID, "enabled": True, "deactivatedAt": None,
            }}}),
            "giftCardDeactivate": httpx.Response(200, json={"data": {"giftCardDeactivate": {
                "giftCard": {"id": GIFT_CARD_ID, "enabled": False}, "userErrors": [],
            }}}),
        })
        provider = make_provider(endpoint)

        await provider.deactivate(GIFT_CARD_ID)

        assert endpoint.operations() == ["giftCardState", "giftCardDeactivate"]

    @pytest.mark.asyncio
    async def test_disabled_gift_card_is_noop(self):
        endpoint = RecordingEndpoint({
            "giftCardState": httpx.Response(200, json={"data": {"giftCard": {
                "id": GIFT_CARD_ID, "enabled": False, "deactivatedAt": "2026-10-18T10:00:00Z",
            }}}),
        })

        await make_provider(endpoint).deactivate(GIFT_CARD_ID)

        assert endpoint.operations() == ["giftCardState"]
