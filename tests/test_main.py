from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

import bulk_pricing
import main
from apple_store import AppleStoreConfigError, SubscriptionPrices
from exchange_rates import NoApiKeyError
from price_tiers import TierCache
from rate_limit import RateLimitOptions
from tests.fakes import (
    FakeAppleClient,
    FakeClock,
    FakeGoogleClient,
    api_error,
    make_tiers,
    scheduled_price,
)
from world_bank import WorldBankError

RATES = {"USD": 1.0, "EUR": 0.92}


class FakeRatesClient:
    def __init__(self, rates=None, error: Exception = None) -> None:
        self.rates = rates
        self.error = error

    def rates_or_none(self):
        return self.rates

    def get_rates(self, *, force_refresh: bool = False):
        raise self.error


class FakePPPClient:
    def __init__(self, error: Exception = None) -> None:
        self.error = error

    def entries_or_none(self):
        return None

    def get_ppp_data(self, *, force_refresh: bool = False):
        raise self.error


@pytest.fixture(autouse=True)
def fast_batches(monkeypatch):
    fast = RateLimitOptions(concurrency=3, delay_between_batches=0, max_retries=0, retry_base_delay=0)
    for name in ("RESOLVE_OPTIONS", "SUBMIT_OPTIONS", "DELETE_OPTIONS"):
        monkeypatch.setattr(bulk_pricing, name, fast)


@pytest.fixture
def apple():
    client = FakeAppleClient(
        {
            "USA": make_tiers("6444", "USA", ["9.99"]),
            "DEU": make_tiers("6444", "DEU", ["8.99"]),
        }
    )
    main.app.dependency_overrides[main.get_apple_client] = lambda: client
    yield client
    main.app.dependency_overrides.pop(main.get_apple_client, None)


@pytest.fixture
def api():
    overrides = {
        main.get_exchange_rates_client: lambda: FakeRatesClient(RATES, NoApiKeyError("no key")),
        main.get_ppp_client: lambda: FakePPPClient(WorldBankError("offline")),
        main.get_tier_cache: lambda: TierCache(60, clock=FakeClock()),
    }
    main.app.dependency_overrides.update(overrides)
    yield TestClient(main.app)
    for dependency in overrides:
        main.app.dependency_overrides.pop(dependency, None)


def ndjson(response) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in response.text.splitlines() if line]


def test_health(api) -> None:
    assert api.get("/health").json() == {"status": "ok"}


class TestCalculate:
    def test_returns_items_in_request_order(self, api) -> None:
        response = api.post(
            "/api/pricing/calculate",
            json={"base_price": 9.99, "territories": ["usa", "DEU"], "strategy": "direct"},
        )

        assert response.status_code == 200
        items = response.json()["items"]
        assert [item["territory"] for item in items] == ["USA", "DEU"]
        assert items[1]["roundedAmount"] == 8.99
        assert items[1]["price"] == {"currencyCode": "EUR", "units": "8", "nanos": 990000000}

    def test_custom_strategy_requires_multiplier(self, api) -> None:
        response = api.post(
            "/api/pricing/calculate",
            json={"base_price": 9.99, "territories": ["USA"], "strategy": "custom"},
        )
        assert response.status_code == 422

    def test_non_positive_base_price(self, api) -> None:
        response = api.post("/api/pricing/calculate", json={"base_price": 0, "territories": ["USA"]})
        assert response.status_code == 422


def test_exchange_rates_fall_back_to_static_table(api) -> None:
    body = api.get("/api/exchange-rates").json()
    assert body["source"] == "fallback"
    assert body["rates"]["EUR"] == main.FALLBACK_EXCHANGE_RATES["EUR"]


def test_ppp_falls_back_to_static_index(api) -> None:
    body = api.get("/api/ppp").json()
    assert body["metadata"]["fallback"] is True
    assert body["data"]["US"]["source"] == "static"


class TestAppleEndpoints:
    def test_inapp_bulk_streams_progress_and_result(self, api, apple) -> None:
        response = api.post(
            "/api/apple/inapp/6444/prices/bulk",
            json={"base_price": 9.99, "territories": ["USA", "DEU"], "strategy": "direct"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = ndjson(response)
        assert events[0]["type"] == "progress"
        assert events[-1]["type"] == "done"
        assert events[-1]["data"]["updated"] == 2
        assert len(apple.schedules) == 1

    def test_inapp_bulk_rejects_missing_base_before_streaming(self, api, apple) -> None:
        response = api.post(
            "/api/apple/inapp/6444/prices/bulk",
            json={"base_price": 9.99, "territories": ["DEU"], "strategy": "direct"},
        )

        assert response.status_code == 400
        assert apple.price_point_calls == []

    def test_price_points_batch_rejects_unknown_territory(self, api, apple) -> None:
        response = api.post(
            "/api/apple/subscriptions/sub-1/price-points/batch",
            json={"territories": {"XYZ": {"target_price": 4.99}}},
        )
        assert response.status_code == 400

    def test_clear_scheduled(self, api, apple) -> None:
        apple.subscription_prices = SubscriptionPrices(scheduled={"USA": scheduled_price("USA", "sp-usa")})

        body = api.post("/api/apple/subscriptions/sub-1/clear-scheduled", json={}).json()

        assert body["deletedCount"] == 1
        assert body["remainingScheduled"] == 0

    def test_clear_scheduled_failure_reports_progress(self, api, apple) -> None:
        apple.subscription_prices = SubscriptionPrices(scheduled={"USA": scheduled_price("USA", "sp-usa")})
        apple.delete_errors = {"sp-usa": api_error(403, "forbidden")}

        response = api.post("/api/apple/subscriptions/sub-1/clear-scheduled")

        assert response.status_code == 403
        body = response.json()
        assert body["successCount"] == 0
        assert body["totalCount"] == 1
        assert body["originalError"] == "[403] forbidden"

    def test_missing_configuration_is_503(self, api, monkeypatch) -> None:
        class Unconfigured:
            @classmethod
            def from_env(cls):
                raise AppleStoreConfigError("환경 변수 'APP_STORE_ISSUER_ID'이(가) 설정되어 있지 않습니다.")

        monkeypatch.setattr(main, "AppleStoreClient", Unconfigured)
        monkeypatch.setattr(main, "_apple_client", None)

        response = api.post("/api/apple/subscriptions/sub-1/clear-scheduled")

        assert response.status_code == 503
        assert "APP_STORE_ISSUER_ID" in response.json()["detail"]


class TestGoogleEndpoints:
    @pytest.fixture
    def google(self):
        client = FakeGoogleClient(dropped=["DE"])
        main.app.dependency_overrides[main.get_google_client] = lambda: client
        yield client
        main.app.dependency_overrides.pop(main.get_google_client, None)

    def test_inapp_bulk(self, api, google) -> None:
        response = api.post(
            "/api/google/inapp/coins_100/prices/bulk",
            json={"base_price": 9.99, "territories": ["us", "de"], "strategy": "direct"},
        )

        done = ndjson(response)[-1]
        assert done["type"] == "done"
        assert [entry["territory"] for entry in done["data"]["resolved"]] == ["US"]
        assert google.calls[0]["sku"] == "coins_100"

    def test_base_plan_bulk(self, api, google) -> None:
        response = api.post(
            "/api/google/subscriptions/premium/base-plans/monthly/prices/bulk",
            json={"base_price": 9.99, "territories": ["US"], "strategy": "direct"},
        )

        assert ndjson(response)[-1]["type"] == "done"
        assert google.calls[0]["base_plan_id"] == "monthly"
        assert google.calls[0]["rates"] == RATES

    def test_google_base_region_is_required(self, api, google) -> None:
        response = api.post(
            "/api/google/inapp/coins_100/prices/bulk",
            json={"base_price": 9.99, "territories": ["DE"], "strategy": "direct"},
        )
        assert response.status_code == 400
        assert google.calls == []
