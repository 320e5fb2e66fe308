from __future__ import annotations

from typing import Any, Dict, List

import pytest

import bulk_pricing
from apple_store import SubscriptionPrices
from bulk_pricing import (
    BulkPricingRequest,
    PricePointTarget,
    PricingValidationError,
    apply_bulk_pricing,
    apply_google_bulk_pricing,
    apply_subscription_bulk_pricing,
    clear_scheduled_prices,
    prepare_app_store_pricing,
    prepare_google_pricing,
    resolve_subscription_price_points,
)
from ndjson_stream import create_ndjson_stream
from rate_limit import RateLimitError, RateLimitOptions
from tests.fakes import (
    FakeAppleClient,
    FakeGoogleClient,
    api_error,
    collect_events,
    conflict_error,
    make_tiers,
    scheduled_price,
)

RATES = {"USD": 1.0, "EUR": 0.92, "JPY": 150.0, "RUB": 90.0}


@pytest.fixture(autouse=True)
def fast_batches(monkeypatch):
    fast = RateLimitOptions(concurrency=3, delay_between_batches=0, max_retries=0, retry_base_delay=0)
    for name in (
        "RESOLVE_OPTIONS",
        "SUBSCRIPTION_RESOLVE_OPTIONS",
        "DELETE_OPTIONS",
        "SUBMIT_OPTIONS",
        "SUBSCRIPTION_SUBMIT_OPTIONS",
    ):
        monkeypatch.setattr(bulk_pricing, name, fast)


def direct_request(territories, **kwargs) -> BulkPricingRequest:
    params = {"strategy": "direct", "rounding_mode": "charm", **kwargs}
    return BulkPricingRequest(9.99, territories, **params)


async def run(operation, *args, **kwargs) -> List[Dict[str, Any]]:
    async def producer(writer):
        await operation(*args, writer, **kwargs)

    return await collect_events(create_ndjson_stream().run(producer))


def phases(events) -> List[str]:
    return [event["phase"] for event in events if event["type"] == "progress"]


class TestPrepare:
    def test_app_store_codes_are_normalized_and_unsupported_dropped(self) -> None:
        prepared = prepare_app_store_pricing(
            direct_request(["us", "DEU", "BGD", "USA"]), exchange_rates=RATES
        )
        assert [target.territory_code for target in prepared.targets] == ["USA", "DEU"]
        assert [entry.to_dict() for entry in prepared.skipped] == [
            {"territory": "BGD", "reason": "territory is not supported for in-app purchases"}
        ]

    @pytest.mark.parametrize(
        "request_",
        [
            direct_request(["DEU"]),
            direct_request(["USA", "XYZ"]),
            direct_request([]),
            BulkPricingRequest(0, ["USA"]),
            BulkPricingRequest(9.99, ["USA"], strategy="custom"),
            BulkPricingRequest(9.99, ["USA"], rounding_mode="ceil"),
        ],
    )
    def test_app_store_rejects_invalid_requests(self, request_) -> None:
        with pytest.raises(PricingValidationError):
            prepare_app_store_pricing(request_, exchange_rates=RATES)

    def test_google_skips_regions_without_billing(self) -> None:
        prepared = prepare_google_pricing(
            direct_request(["US", "DEU", "CN"], base_territory="US"), exchange_rates=RATES
        )
        assert [target.territory_code for target in prepared.targets] == ["US", "DE"]
        assert [entry.territory for entry in prepared.skipped] == ["CN"]
        assert prepared.base_territory == "US"

    def test_google_requires_base_region(self) -> None:
        with pytest.raises(PricingValidationError):
            prepare_google_pricing(direct_request(["DE"], base_territory="US"), exchange_rates=RATES)


class TestApplyBulkPricing:
    @pytest.mark.asyncio
    async def test_resolves_and_submits_schedule(self) -> None:
        client = FakeAppleClient(
            {
                "USA": make_tiers("6444", "USA", ["9.99", "10.99"]),
                "DEU": make_tiers("6444", "DEU", ["8.99", "9.99"]),
            }
        )

        events = await run(
            apply_bulk_pricing, client, "6444", direct_request(["USA", "DEU", "BGD"]), exchange_rates=RATES
        )

        done = events[-1]
        assert done["type"] == "done"
        assert done["data"]["updated"] == 2
        assert {entry["territory"] for entry in done["data"]["resolved"]} == {"USA", "DEU"}
        assert done["data"]["skipped"][0]["territory"] == "BGD"
        assert phases(events) == ["resolve", "resolve", "submit"]
        [schedule] = client.schedules
        assert schedule["base_territory"] == "USA"
        assert [price.territory for price in schedule["prices"]] == ["USA", "DEU"]

    @pytest.mark.asyncio
    async def test_validation_error_is_the_only_event(self) -> None:
        client = FakeAppleClient()
        events = await run(apply_bulk_pricing, client, "6444", direct_request(["DEU"]), exchange_rates=RATES)

        assert len(events) == 1
        assert events[0]["type"] == "error"
        assert client.price_point_calls == []

    @pytest.mark.asyncio
    async def test_nothing_resolved_does_not_submit(self) -> None:
        client = FakeAppleClient({"USA": [], "DEU": []})
        events = await run(
            apply_bulk_pricing, client, "6444", direct_request(["USA", "DEU"]), exchange_rates=RATES
        )

        assert events[-1] == {"type": "error", "error": "가격 포인트를 찾은 테리토리가 없어 가격을 변경하지 않았습니다."}
        assert client.schedules == []

    @pytest.mark.asyncio
    async def test_missing_base_price_does_not_submit(self) -> None:
        client = FakeAppleClient({"DEU": make_tiers("6444", "DEU", ["8.99"])})
        events = await run(
            apply_bulk_pricing, client, "6444", direct_request(["USA", "DEU"]), exchange_rates=RATES
        )

        assert events[-1]["type"] == "error"
        assert "USA" in events[-1]["error"]
        assert client.schedules == []

    @pytest.mark.asyncio
    async def test_submit_failure_reports_counts(self) -> None:
        client = FakeAppleClient(
            {"USA": make_tiers("6444", "USA", ["9.99"])}, submit_error=api_error(500, "server down")
        )
        events = await run(apply_bulk_pricing, client, "6444", direct_request(["USA"]), exchange_rates=RATES)

        error = events[-1]
        assert error["type"] == "error"
        assert error["error"].startswith("가격 일정 제출에 실패했습니다")
        assert "server down" in error["error"]
        assert (error["completed"], error["total"]) == (0, 1)


def subscription_client(**kwargs) -> FakeAppleClient:
    return FakeAppleClient(
        {
            "USA": make_tiers("sub-1", "USA", ["9.99", "12.99"], layout="subscription"),
            "DEU": make_tiers("sub-1", "DEU", ["8.99", "9.99"], layout="subscription"),
        },
        **kwargs,
    )


class TestSubscriptionBulkPricing:
    @pytest.mark.asyncio
    async def test_deletes_scheduled_then_creates_prices(self) -> None:
        client = subscription_client(
            subscription_prices=SubscriptionPrices(
                scheduled={
                    "USA": scheduled_price("USA", "sp-usa"),
                    "DEU": scheduled_price("DEU", "sp-deu"),
                    "JPN": scheduled_price("JPN", "sp-jpn"),
                }
            ),
            delete_errors={"sp-deu": conflict_error()},
        )

        events = await run(
            apply_subscription_bulk_pricing,
            client,
            "sub-1",
            direct_request(["USA", "DEU"], start_date="2030-01-01"),
            exchange_rates=RATES,
        )

        done = events[-1]
        assert done["type"] == "done"
        assert client.deleted == ["sp-usa"]
        assert sorted(done["data"]["deleted"], key=lambda entry: entry["territory"]) == [
            {"territory": "DEU", "deleted": False, "reason": "[STATE_ERROR] The price cannot be deleted"},
            {"territory": "USA", "deleted": True},
        ]
        assert done["data"]["updated"] == 2
        assert {entry["start_date"] for entry in client.created} == {"2030-01-01"}
        assert list(dict.fromkeys(phases(events))) == ["resolve", "delete", "submit"]

    @pytest.mark.asyncio
    async def test_keeps_scheduled_prices_when_nothing_resolves(self) -> None:
        client = FakeAppleClient(
            subscription_prices=SubscriptionPrices(scheduled={"USA": scheduled_price("USA", "sp-usa")}),
        )

        events = await run(
            apply_subscription_bulk_pricing,
            client,
            "sub-1",
            direct_request(["USA", "DEU"], start_date="2030-01-01"),
            exchange_rates=RATES,
        )

        assert events[-1] == {"type": "error", "error": "가격 포인트를 찾은 테리토리가 없어 가격을 변경하지 않았습니다."}
        assert client.deleted == []
        assert client.created == []

    @pytest.mark.asyncio
    async def test_keeps_scheduled_prices_when_base_territory_is_unresolved(self) -> None:
        client = FakeAppleClient(
            {"DEU": make_tiers("sub-1", "DEU", ["8.99"], layout="subscription")},
            subscription_prices=SubscriptionPrices(
                scheduled={"USA": scheduled_price("USA", "sp-usa"), "DEU": scheduled_price("DEU", "sp-deu")}
            ),
        )

        events = await run(
            apply_subscription_bulk_pricing,
            client,
            "sub-1",
            direct_request(["USA", "DEU"], start_date="2030-01-01"),
            exchange_rates=RATES,
        )

        assert events[-1]["type"] == "error"
        assert "USA" in events[-1]["error"]
        assert client.deleted == []

    @pytest.mark.asyncio
    async def test_immediate_update_leaves_scheduled_prices_alone(self) -> None:
        client = subscription_client(
            subscription_prices=SubscriptionPrices(scheduled={"USA": scheduled_price("USA", "sp-usa")}),
        )

        events = await run(
            apply_subscription_bulk_pricing,
            client,
            "sub-1",
            direct_request(["USA"]),
            exchange_rates=RATES,
        )

        done = events[-1]
        assert done["type"] == "done"
        assert client.deleted == []
        assert done["data"]["deleted"] == []
        assert [entry["start_date"] for entry in client.created] == [None]
        assert "delete" not in phases(events)

    @pytest.mark.asyncio
    async def test_only_resolved_territories_lose_their_scheduled_price(self) -> None:
        client = subscription_client(
            subscription_prices=SubscriptionPrices(
                scheduled={"USA": scheduled_price("USA", "sp-usa"), "JPN": scheduled_price("JPN", "sp-jpn")}
            ),
        )

        events = await run(
            apply_subscription_bulk_pricing,
            client,
            "sub-1",
            direct_request(["USA", "JPN"], start_date="2030-01-01"),
            exchange_rates=RATES,
        )

        done = events[-1]
        assert done["type"] == "done"
        assert [entry["territory"] for entry in done["data"]["skipped"]] == ["JPN"]
        assert client.deleted == ["sp-usa"]

    @pytest.mark.asyncio
    async def test_resolve_failure_stops_before_submitting(self) -> None:
        client = subscription_client(point_errors={"DEU": api_error(400, "bad territory")})

        events = await run(
            apply_subscription_bulk_pricing,
            client,
            "sub-1",
            direct_request(["USA", "DEU"]),
            exchange_rates=RATES,
        )

        error = events[-1]
        assert error["type"] == "error"
        assert error["error"].startswith("가격 포인트 조회에 실패했습니다")
        assert (error["completed"], error["total"]) == (1, 2)
        assert client.created == []

    @pytest.mark.asyncio
    async def test_price_point_preview_does_not_submit(self) -> None:
        client = subscription_client()
        targets = [PricePointTarget("USA", 10.5, "USD"), PricePointTarget("JPN", 1500, "JPY")]

        events = await run(resolve_subscription_price_points, client, "sub-1", targets)

        data = events[-1]["data"]
        assert [entry["territory"] for entry in data["resolved"]] == ["USA"]
        assert data["resolved"][0]["customerPrice"] == "9.99"
        assert data["skipped"] == [{"territory": "JPN", "reason": "no price points for JPY"}]
        assert client.created == []


class TestClearScheduledPrices:
    @pytest.mark.asyncio
    async def test_conflicts_are_skipped_not_fatal(self) -> None:
        client = FakeAppleClient(
            subscription_prices=SubscriptionPrices(
                scheduled={"USA": scheduled_price("USA", "sp-usa"), "DEU": scheduled_price("DEU", "sp-deu")}
            ),
            delete_errors={"sp-deu": conflict_error()},
        )

        result = await clear_scheduled_prices(client, "sub-1")

        assert [entry["territory"] for entry in result.deleted] == ["USA"]
        assert [entry["territory"] for entry in result.skipped] == ["DEU"]
        assert result.remaining_scheduled == 1
        payload = result.to_dict()
        assert payload["deletedCount"] == 1
        assert payload["skippedCount"] == 1
        assert "1건" in payload["message"]

    @pytest.mark.asyncio
    async def test_filters_by_territory(self) -> None:
        client = FakeAppleClient(
            subscription_prices=SubscriptionPrices(
                scheduled={"USA": scheduled_price("USA", "sp-usa"), "DEU": scheduled_price("DEU", "sp-deu")}
            )
        )

        result = await clear_scheduled_prices(client, "sub-1", ["de"])

        assert client.deleted == ["sp-deu"]
        assert result.remaining_scheduled == 1

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self) -> None:
        result = await clear_scheduled_prices(FakeAppleClient(), "sub-1")
        assert result.to_dict()["message"] == "삭제할 예약 가격이 없습니다."

    @pytest.mark.asyncio
    async def test_other_errors_abort(self) -> None:
        client = FakeAppleClient(
            subscription_prices=SubscriptionPrices(scheduled={"USA": scheduled_price("USA", "sp-usa")}),
            delete_errors={"sp-usa": api_error(403, "forbidden")},
        )

        with pytest.raises(RateLimitError) as excinfo:
            await clear_scheduled_prices(client, "sub-1")
        assert excinfo.value.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_territory(self) -> None:
        with pytest.raises(PricingValidationError):
            await clear_scheduled_prices(FakeAppleClient(), "sub-1", ["XYZ"])

    def update_base_plan_prices(self, product_id, base_plan_id, prices, *, exchange_rates=None):
        self.calls.append(
            {"product_id": product_id, "base_plan_id": base_plan_id, "prices": dict(prices), "rates": exchange_rates}
        )
        return self._result(prices)


class TestGoogleBulkPricing:
    @pytest.mark.asyncio
    async def test_onetime_product_drops_rejected_regions(self) -> None:
        client = FakeGoogleClient(dropped=["RU"])

        events = await run(
            apply_google_bulk_pricing,
            client,
            "coins_100",
            direct_request(["US", "DE", "RU", "CN"], base_territory="US"),
            exchange_rates=RATES,
        )

        data = events[-1]["data"]
        assert [entry["territory"] for entry in data["resolved"]] == ["US", "DE"]
        assert {entry["territory"]: entry["reason"] for entry in data["skipped"]} == {
            "CN": "region is not billable on Google Play",
            "RU": "region rejected as not billable",
        }
        assert data["updated"] == 2
        [call] = client.calls
        assert call["sku"] == "coins_100"
        assert call["prices"]["DE"].currency_code == "EUR"

    @pytest.mark.asyncio
    async def test_base_plan_passes_exchange_rates(self) -> None:
        client = FakeGoogleClient(filled=["BR", "MX"])

        events = await run(
            apply_google_bulk_pricing,
            client,
            "premium",
            direct_request(["US"], base_territory="US"),
            base_plan_id="monthly",
            exchange_rates=RATES,
        )

        assert events[-1]["data"]["filledRegions"] == ["BR", "MX"]
        assert client.calls[0]["base_plan_id"] == "monthly"
        assert client.calls[0]["rates"] == RATES

    @pytest.mark.asyncio
    async def test_platform_error_becomes_error_event(self) -> None:
        client = FakeGoogleClient(error=RuntimeError("Google API 오류(403): forbidden"))

        events = await run(
            apply_google_bulk_pricing,
            client,
            "coins_100",
            direct_request(["US"], base_territory="US"),
            exchange_rates=RATES,
        )

        assert events[-1]["type"] == "error"
        assert "Google API 오류(403)" in events[-1]["error"]
