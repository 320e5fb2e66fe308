from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest
from googleapiclient.errors import HttpError

from google_play import (
    GooglePlayApiError,
    GooglePlayClient,
    GooglePlayConfigError,
    PriceUpdateResult,
)
from pricing import Money
from territories import GOOGLE_PLAY_REGION_CURRENCIES


class FakeHttpResponse(dict):
    def __init__(self, status: int, reason: str) -> None:
        super().__init__({"status": str(status)})
        self.status = status
        self.reason = reason


def http_error(status: int, message: str) -> HttpError:
    content = json.dumps({"error": {"code": status, "message": message}}).encode("utf-8")
    return HttpError(FakeHttpResponse(status, "Bad Request"), content)


class FakeRequest:
    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome

    def execute(self) -> Any:
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeCollection:
    def __init__(self, service: "FakeService", name: str) -> None:
        self.service = service
        self.name = name

    def _call(self, method: str, kwargs: Dict[str, Any]) -> FakeRequest:
        self.service.calls.append((f"{self.name}.{method}", kwargs))
        return FakeRequest(self.service.outcomes[f"{self.name}.{method}"].pop(0))

    def get(self, **kwargs: Any) -> FakeRequest:
        return self._call("get", kwargs)

    def patch(self, **kwargs: Any) -> FakeRequest:
        return self._call("patch", kwargs)


class FakeMonetization:
    def __init__(self, service: "FakeService") -> None:
        self.service = service

    def onetimeproducts(self) -> FakeCollection:
        return FakeCollection(self.service, "onetimeproducts")

    def subscriptions(self) -> FakeCollection:
        return FakeCollection(self.service, "subscriptions")


class FakeService:
    """Mimics the discovery client chain ``service.monetization().<collection>().<method>()``."""

    def __init__(self, **outcomes: List[Any]) -> None:
        self.outcomes = {key.replace("_", "."): list(value) for key, value in outcomes.items()}
        self.calls: List[Any] = []

    def monetization(self) -> FakeMonetization:
        return FakeMonetization(self)

    def patches(self) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name.endswith(".patch")]


def usd(amount: str) -> Money:
    units, _, cents = amount.partition(".")
    return Money("USD", units, int(cents.ljust(2, "0")) * 10_000_000 if cents else 0)


def onetime_product() -> Dict[str, Any]:
    return {
        "productId": "coins_100",
        "purchaseOptions": [
            {
                "purchaseOptionId": "default",
                "regionalPricingAndAvailabilityConfigs": [
                    {"regionCode": "US", "availability": "AVAILABLE", "price": {"currencyCode": "USD", "units": "1"}},
                    {
                        "regionCode": "JP",
                        "availability": "NO_LONGER_AVAILABLE",
                        "price": {"currencyCode": "JPY", "units": "150"},
                    },
                ],
            }
        ],
    }


def subscription(regional_configs) -> Dict[str, Any]:
    return {
        "productId": "premium",
        "basePlans": [{"basePlanId": "monthly", "regionalConfigs": regional_configs}],
        "regionsVersion": {"version": "2024/01"},
    }


class TestOnetimeProducts:
    def test_non_billable_region_is_dropped_and_retried(self) -> None:
        service = FakeService(
            onetimeproducts_get=[onetime_product()],
            onetimeproducts_patch=[http_error(400, "Region RU not billable"), {}],
        )
        client = GooglePlayClient(service, "com.example.app", regions_version="2025/03")
        prices = {"US": usd("4.99"), "DE": Money("EUR", "4", 990_000_000), "RU": Money("RUB", "399")}

        result = client.update_onetime_product_prices("coins_100", prices)

        assert result == PriceUpdateResult(updated_regions=["DE", "US"], dropped_regions=["RU"])
        first, second = service.patches()
        assert first["updateMask"] == "purchaseOptions"
        assert first["regionsVersion_version"] == "2025/03"
        configs = second["body"]["purchaseOptions"][0]["regionalPricingAndAvailabilityConfigs"]
        assert [config["regionCode"] for config in configs] == ["US", "DE", "JP"]
        assert configs[0]["price"] == {"currencyCode": "USD", "units": "4", "nanos": 990_000_000}
        assert configs[2]["availability"] == "NO_LONGER_AVAILABLE"

    def test_base_region_rejection_is_raised(self) -> None:
        service = FakeService(
            onetimeproducts_get=[onetime_product()],
            onetimeproducts_patch=[http_error(400, "Region US not billable")],
        )
        client = GooglePlayClient(service, "com.example.app")

        with pytest.raises(GooglePlayApiError) as excinfo:
            client.update_onetime_product_prices("coins_100", {"US": usd("4.99")})

        assert excinfo.value.status_code == 400
        assert excinfo.value.non_billable_region == "US"

    def test_other_errors_keep_status(self) -> None:
        service = FakeService(onetimeproducts_get=[http_error(404, "Product not found")])
        client = GooglePlayClient(service, "com.example.app")

        with pytest.raises(GooglePlayApiError) as excinfo:
            client.update_onetime_product_prices("missing", {"US": usd("4.99")})

        assert excinfo.value.status_code == 404
        assert str(excinfo.value).startswith("Google API 오류(onetimeproducts.get)")

    def test_product_without_purchase_options(self) -> None:
        service = FakeService(onetimeproducts_get=[{"productId": "coins_100"}])
        client = GooglePlayClient(service, "com.example.app")

        with pytest.raises(GooglePlayApiError) as excinfo:
            client.update_onetime_product_prices("coins_100", {"US": usd("4.99")})
        assert excinfo.value.status_code == 400


class TestBasePlans:
    def test_missing_regions_are_filled_from_us_price(self) -> None:
        service = FakeService(
            subscriptions_get=[subscription([{"regionCode": "US", "price": {"currencyCode": "USD", "units": "9", "nanos": 990000000}}])],
            subscriptions_patch=[{}],
        )
        client = GooglePlayClient(service, "com.example.app")

        result = client.update_base_plan_prices(
            "premium", "monthly", {"DE": Money("EUR", "8", 990_000_000)}, exchange_rates={"EUR": 0.92}
        )

        expected_filled = sorted(set(GOOGLE_PLAY_REGION_CURRENCIES) - {"US", "DE"})
        assert result.filled_regions == expected_filled
        assert result.updated_regions == ["DE"]
        [patch] = service.patches()
        assert patch["updateMask"] == "basePlans"
        assert patch["regionsVersion_version"] == "2024/01"
        configs = {config["regionCode"]: config for config in patch["body"]["basePlans"][0]["regionalConfigs"]}
        assert set(configs) == set(GOOGLE_PLAY_REGION_CURRENCIES)
        assert all(config["newSubscriberAvailability"] for config in configs.values())
        assert configs["DE"]["price"] == {"currencyCode": "EUR", "units": "8", "nanos": 990_000_000}

    def test_rejected_region_is_excluded_on_retry(self) -> None:
        service = FakeService(
            subscriptions_get=[subscription([])],
            subscriptions_patch=[http_error(400, "Region BY not billable"), {}],
        )
        client = GooglePlayClient(service, "com.example.app")

        result = client.update_base_plan_prices("premium", "monthly", {"US": usd("9.99")})

        assert result.dropped_regions == ["BY"]
        second = service.patches()[1]
        regions = {config["regionCode"] for config in second["body"]["basePlans"][0]["regionalConfigs"]}
        assert "BY" not in regions
        assert "US" in regions

    def test_unknown_base_plan(self) -> None:
        service = FakeService(subscriptions_get=[subscription([])])
        client = GooglePlayClient(service, "com.example.app")

        with pytest.raises(GooglePlayApiError) as excinfo:
            client.update_base_plan_prices("premium", "yearly", {"US": usd("9.99")})
        assert excinfo.value.status_code == 404

    def test_us_price_is_required(self) -> None:
        service = FakeService(subscriptions_get=[subscription([])])
        client = GooglePlayClient(service, "com.example.app")

        with pytest.raises(GooglePlayApiError) as excinfo:
            client.update_base_plan_prices("premium", "monthly", {"DE": Money("EUR", "8")})
        assert excinfo.value.status_code == 400
        assert service.patches() == []


def test_from_env_requires_package_name(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_PLAY_PACKAGE_NAME", raising=False)
    with pytest.raises(GooglePlayConfigError):
        GooglePlayClient.from_env()


def test_from_env_requires_credentials(monkeypatch) -> None:
    monkeypatch.setenv("GOOGLE_PLAY_PACKAGE_NAME", "com.example.app")
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
    with pytest.raises(GooglePlayConfigError):
        GooglePlayClient.from_env()
