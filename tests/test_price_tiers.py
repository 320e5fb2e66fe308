from __future__ import annotations

from decimal import Decimal

import pytest

from price_tiers import (
    PricePointId,
    PriceTier,
    TierCache,
    find_closest_tier,
    group_by_currency,
    resolve_prices,
    resolve_prices_from_api,
    to_decimal_price,
)
from pricing import calculate_regional_price
from rate_limit import RateLimitOptions
from tests.fakes import FakeAppleClient, FakeClock, make_tiers

FAST = RateLimitOptions(concurrency=3, delay_between_batches=0, max_retries=0, retry_base_delay=0)
RATES = {"USD": 1.0, "EUR": 0.92, "JPY": 150.0, "KRW": 1300.0, "GBP": 0.8}


def targets_for(*codes: str):
    return [calculate_regional_price(9.99, code, "direct", "charm", exchange_rates=RATES) for code in codes]


class TestPricePointId:
    def test_encode_is_unpadded_base64_json(self) -> None:
        encoded = PricePointId("6444", "USA", "10001").encode()
        assert "=" not in encoded
        assert PricePointId.decode(encoded) == PricePointId("6444", "USA", "10001")

    def test_subscription_layout(self) -> None:
        encoded = PricePointId("sub-1", "DEU", "10020", layout="subscription").encode()
        decoded = PricePointId.decode(encoded)
        assert decoded.layout == "subscription"
        assert decoded.source_id == "sub-1"

    def test_for_territory_only_changes_territory(self) -> None:
        original = PricePointId("6444", "DEU", "10005")
        assert original.for_territory("fra") == PricePointId("6444", "FRA", "10005")

    @pytest.mark.parametrize("value", ["", "not base64!", "WzEsMl0", "eyJzIjoiMSJ9"])
    def test_decode_rejects_malformed_ids(self, value: str) -> None:
        with pytest.raises(ValueError):
            PricePointId.decode(value)

    def test_unknown_layout(self) -> None:
        with pytest.raises(ValueError):
            PricePointId("1", "USA", "1", layout="bundle")


class TestFindClosestTier:
    tiers = [
        PriceTier("c", Decimal("1.99")),
        PriceTier("a", Decimal("0.99")),
        PriceTier("b", Decimal("1.49")),
    ]

    def test_picks_closest_price(self) -> None:
        assert find_closest_tier(1.6, self.tiers).id == "b"
        assert find_closest_tier("5", self.tiers).id == "c"

    def test_tie_keeps_first_occurrence(self) -> None:
        assert find_closest_tier(1.24, self.tiers).id == "a"
        assert find_closest_tier(1.24, list(reversed(self.tiers))).id == "b"
        assert find_closest_tier(1.74, self.tiers).id == "c"
        assert find_closest_tier(1.74, list(reversed(self.tiers))).id == "b"

    def test_empty_or_invalid_input(self) -> None:
        assert find_closest_tier(1.0, []) is None
        assert find_closest_tier(None, self.tiers) is None
        assert to_decimal_price("abc") is None


def test_group_by_currency_keeps_first_seen_order() -> None:
    groups = group_by_currency(targets_for("DEU", "USA", "FRA"))
    assert list(groups) == ["EUR", "USD"]
    assert [target.territory_code for target in groups["EUR"]] == ["DEU", "FRA"]


class TestTierCache:
    def test_entries_expire(self) -> None:
        clock = FakeClock()
        cache = TierCache(60, clock=clock)
        cache.store("eur", make_tiers("6444", "DEU", ["0.99"]))

        assert cache.has_data()
        assert cache.currencies() == ["EUR"]
        clock.advance(61)
        assert cache.tiers_for("EUR") is None
        assert not cache.has_data()

    def test_empty_tables_are_not_stored(self) -> None:
        cache = TierCache(60, clock=FakeClock())
        cache.store("KRW", [])
        assert not cache.has_data()


@pytest.mark.asyncio
async def test_live_resolution_skips_currency_without_tiers() -> None:
    client = FakeAppleClient(
        {
            "USA": make_tiers("6444", "USA", ["0.99", "9.99", "10.99"]),
            "DEU": make_tiers("6444", "DEU", ["7.99", "8.99", "9.99"]),
            "JPN": make_tiers("6444", "JPN", ["1400", "1500", "1600"]),
            "KOR": [],
            "GBR": make_tiers("6444", "GBR", ["7.99", "8.99"]),
        }
    )
    cache = TierCache(60, clock=FakeClock())

    resolution = await resolve_prices_from_api(
        client, "6444", targets_for("USA", "DEU", "JPN", "KOR", "GBR"), tier_cache=cache, options=FAST
    )

    resolved = {entry.territory: entry for entry in resolution.resolved}
    assert set(resolved) == {"USA", "DEU", "JPN", "GBR"}
    assert resolved["USA"].customer_price == Decimal("9.99")
    assert resolved["DEU"].customer_price == Decimal("8.99")
    assert resolved["JPN"].customer_price == Decimal("1500")
    assert resolved["GBR"].customer_price == Decimal("7.99")
    assert [entry.to_dict() for entry in resolution.skipped] == [
        {"territory": "KOR", "reason": "no price points for KRW"}
    ]
    assert cache.currencies() == ["EUR", "GBP", "JPY", "USD"]


@pytest.mark.asyncio
async def test_live_resolution_fetches_once_per_currency() -> None:
    client = FakeAppleClient({"DEU": make_tiers("6444", "DEU", ["8.99", "9.99"])})
    progress = []

    resolution = await resolve_prices_from_api(
        client, "6444", targets_for("DEU", "FRA"), options=FAST, on_progress=progress.append
    )

    assert client.price_point_calls == ["DEU"]
    assert len(progress) == 1
    fra = next(entry for entry in resolution.resolved if entry.territory == "FRA")
    assert PricePointId.decode(fra.price_point_id) == PricePointId("6444", "FRA", "10001")


@pytest.mark.asyncio
async def test_cached_resolution_builds_ids_from_source_id() -> None:
    cache = TierCache(60, clock=FakeClock())
    cache.store("EUR", make_tiers("6444", "DEU", ["7.99", "8.99", "9.99"]))
    client = FakeAppleClient(source_id="src-9")

    resolution = await resolve_prices(client, "6444", targets_for("DEU", "FRA"), tier_cache=cache, options=FAST)

    assert client.price_point_calls == []
    assert client.source_id_calls == 1
    by_territory = {entry.territory: entry for entry in resolution.resolved}
    assert PricePointId.decode(by_territory["FRA"].price_point_id) == PricePointId("src-9", "FRA", "10002")
    assert resolution.skipped == []


@pytest.mark.asyncio
async def test_currencies_missing_from_warm_cache_are_fetched_live() -> None:
    client = FakeAppleClient(
        {
            "USA": make_tiers("6444", "USA", ["9.99", "10.99"]),
            "DEU": make_tiers("6444", "DEU", ["8.99", "9.99"]),
            "JPN": make_tiers("6444", "JPN", ["1400", "1500"]),
        }
    )
    cache = TierCache(60, clock=FakeClock())
    await resolve_prices(client, "6444", targets_for("USA", "DEU"), tier_cache=cache, options=FAST)
    assert sorted(client.price_point_calls) == ["DEU", "USA"]

    resolution = await resolve_prices(
        client, "6444", targets_for("USA", "JPN", "DEU"), tier_cache=cache, options=FAST
    )

    assert client.price_point_calls[2:] == ["JPN"]
    assert [entry.territory for entry in resolution.resolved] == ["USA", "JPN", "DEU"]
    assert resolution.skipped == []
    assert cache.currencies() == ["EUR", "JPY", "USD"]


@pytest.mark.asyncio
async def test_tier_without_reference_is_skipped_on_both_paths() -> None:
    tiers = [PriceTier(PricePointId("6444", "DEU", "10001").encode(), Decimal("8.99"))]
    client = FakeAppleClient({"DEU": tiers})
    cache = TierCache(60, clock=FakeClock())

    live = await resolve_prices(client, "6444", targets_for("DEU"), tier_cache=cache, options=FAST)
    cached = await resolve_prices(client, "6444", targets_for("DEU"), tier_cache=cache, options=FAST)

    assert client.price_point_calls == ["DEU"]
    assert live.resolved == cached.resolved == []
    assert live.skipped == cached.skipped


@pytest.mark.asyncio
async def test_resolve_prices_goes_live_when_cache_is_empty() -> None:
    client = FakeAppleClient({"USA": make_tiers("6444", "USA", ["9.99"])})
    cache = TierCache(60, clock=FakeClock())

    resolution = await resolve_prices(client, "6444", targets_for("USA"), tier_cache=cache, options=FAST)

    assert client.price_point_calls == ["USA"]
    assert len(resolution.resolved) == 1
    assert cache.has_data()
