import asyncio
import base64
import binascii
import json
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from lookup_cache import TTLCache
from pricing import CalculatedPrice
from rate_limit import BatchProgress, RateLimitedBatch, RateLimitOptions, execute_with_rate_limit

logger = logging.getLogger(__name__)

PRICE_TIER_CACHE_TTL = int(os.getenv("PRICE_TIER_CACHE_TTL", "3600"))

# Field keys inside the base64 JSON price point identifiers.
#   in-app purchase: {"s": <iap id>, "t": <territory>, "p": <tier>}
#   subscription:    {"a": <subscription id>, "c": <territory>, "p": <tier>}
_ID_LAYOUTS = {
    "iap": ("s", "t", "p"),
    "subscription": ("a", "c", "p"),
}


@dataclass(frozen=True)
class PricePointId:
    source_id: str
    territory: str
    tier: str
    layout: str = "iap"

    def __post_init__(self) -> None:
        if self.layout not in _ID_LAYOUTS:
            raise ValueError(f"unknown price point id layout: {self.layout}")

    def encode(self) -> str:
        source_key, territory_key, tier_key = _ID_LAYOUTS[self.layout]
        payload = json.dumps(
            {source_key: self.source_id, territory_key: self.territory, tier_key: self.tier},
            separators=(",", ":"),
        )
        return base64.b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")

    def for_territory(self, territory: str) -> "PricePointId":
        return PricePointId(self.source_id, territory.upper(), self.tier, self.layout)

    @classmethod
    def decode(cls, value: str, layout: Optional[str] = None) -> "PricePointId":
        """Decode an identifier; ``layout=None`` accepts either layout."""
        if not value:
            raise ValueError("empty price point id")
        padded = value + "=" * (-len(value) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_"))
            data = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"price point id is not base64 JSON: {value}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"price point id is not a JSON object: {value}")

        layouts = [layout] if layout else list(_ID_LAYOUTS)
        for name in layouts:
            source_key, territory_key, tier_key = _ID_LAYOUTS[name]
            if all(data.get(key) not in (None, "") for key in (source_key, territory_key, tier_key)):
                return cls(
                    source_id=str(data[source_key]),
                    territory=str(data[territory_key]).upper(),
                    tier=str(data[tier_key]),
                    layout=name,
                )
        raise ValueError(f"price point id is missing fields: {value}")


@dataclass(frozen=True)
class PriceTier:
    id: str
    customer_price: Decimal
    proceeds: Optional[Decimal] = None
    tier: Optional[str] = None
    territory: Optional[str] = None
    currency_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customerPrice": str(self.customer_price),
            "proceeds": str(self.proceeds) if self.proceeds is not None else None,
            "tier": self.tier,
            "territory": self.territory,
            "currency": self.currency_code,
        }


def to_decimal_price(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        return None


def find_closest_tier(target: Any, tiers: Iterable[PriceTier]) -> Optional[PriceTier]:
    """Return the tier whose customer price is closest to ``target``.

    Ties keep the first tier in ``tiers`` order.
    """
    target_value = to_decimal_price(target)
    if target_value is None:
        return None

    best: Optional[PriceTier] = None
    best_diff: Optional[Decimal] = None
    for tier in tiers:
        diff = abs(tier.customer_price - target_value)
        if best_diff is None or diff < best_diff:
            best, best_diff = tier, diff
    return best


class TierCache:
    """Per-currency tier tables shared across requests."""

    def __init__(self, ttl: float = PRICE_TIER_CACHE_TTL, *, clock: Callable[[], float] = time.time) -> None:
        self._cache: TTLCache[List[PriceTier]] = TTLCache(ttl, clock=clock)

    def store(self, currency_code: str, tiers: Sequence[PriceTier]) -> None:
        if tiers:
            self._cache.set(currency_code.upper(), list(tiers))

    def tiers_for(self, currency_code: str) -> Optional[List[PriceTier]]:
        return self._cache.get((currency_code or "").upper())

    def has_data(self) -> bool:
        return bool(self._cache.live_keys())

    def currencies(self) -> List[str]:
        return sorted(self._cache.live_keys())

    def invalidate(self, currency_code: Optional[str] = None) -> None:
        self._cache.invalidate(currency_code.upper() if currency_code else None)


@dataclass(frozen=True)
class ResolvedPrice:
    territory: str
    currency_code: str
    target_amount: float
    price_point_id: str
    customer_price: Decimal
    tier: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "territory": self.territory,
            "currency": self.currency_code,
            "targetPrice": self.target_amount,
            "pricePointId": self.price_point_id,
            "customerPrice": str(self.customer_price),
            "tier": self.tier,
        }


@dataclass(frozen=True)
class SkippedTerritory:
    territory: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"territory": self.territory, "reason": self.reason}


@dataclass
class TierResolution:
    resolved: List[ResolvedPrice] = field(default_factory=list)
    skipped: List[SkippedTerritory] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolved": [entry.to_dict() for entry in self.resolved],
            "skipped": [entry.to_dict() for entry in self.skipped],
        }


def _resolved(target: CalculatedPrice, tier: PriceTier, price_point_id: str) -> ResolvedPrice:
    return ResolvedPrice(
        territory=target.territory_code,
        currency_code=target.currency_code,
        target_amount=target.rounded_amount,
        price_point_id=price_point_id,
        customer_price=tier.customer_price,
        tier=tier.tier,
    )


def group_by_currency(targets: Iterable[CalculatedPrice]) -> "OrderedDict[str, List[CalculatedPrice]]":
    groups: "OrderedDict[str, List[CalculatedPrice]]" = OrderedDict()
    for target in targets:
        groups.setdefault(target.currency_code.upper(), []).append(target)
    return groups


async def resolve_prices_with_cache(
    client: Any,
    product_ref: str,
    targets: Sequence[CalculatedPrice],
    tier_cache: TierCache,
    options: Optional[RateLimitOptions] = None,
) -> TierResolution:
    """Match every target against cached tier tables.

    Only the product's source id is fetched; identifiers for each territory are
    built from it and the cached tier reference.
    """
    [source_id] = await execute_with_rate_limit(
        [lambda: asyncio.to_thread(client.get_iap_source_id, product_ref)], options
    )
    resolution = TierResolution()
    for target in targets:
        tiers = tier_cache.tiers_for(target.currency_code)
        if not tiers:
            resolution.skipped.append(
                SkippedTerritory(target.territory_code, f"no cached tier data for {target.currency_code}")
            )
            continue
        tier = find_closest_tier(target.rounded_amount, tiers)
        if tier is None or not tier.tier:
            resolution.skipped.append(SkippedTerritory(target.territory_code, "no matching price point"))
            continue
        price_point_id = PricePointId(source_id, target.territory_code, tier.tier).encode()
        resolution.resolved.append(_resolved(target, tier, price_point_id))

    logger.info(
        "Resolved %d price points from cache for %s (%d skipped)",
        len(resolution.resolved),
        product_ref,
        len(resolution.skipped),
    )
    return resolution


def _retarget(tier: PriceTier, territory: str, representative: str) -> Optional[str]:
    if territory == representative:
        return tier.id
    try:
        return PricePointId.decode(tier.id).for_territory(territory).encode()
    except ValueError:
        return None


async def resolve_prices_from_api(
    client: Any,
    product_ref: str,
    targets: Sequence[CalculatedPrice],
    *,
    tier_cache: Optional[TierCache] = None,
    options: Optional[RateLimitOptions] = None,
    on_progress: Optional[Callable[[BatchProgress], None]] = None,
) -> TierResolution:
    """Fetch live tiers once per currency and match each territory in that currency."""
    groups = group_by_currency(targets)
    currencies = list(groups)
    representatives = [groups[currency][0].territory_code for currency in currencies]

    def _fetch(territory: str):
        return lambda: asyncio.to_thread(client.list_iap_price_points, product_ref, territory)

    batch: RateLimitedBatch[List[PriceTier]] = RateLimitedBatch(
        [_fetch(territory) for territory in representatives], options
    )
    async for event in batch:
        if on_progress is not None:
            on_progress(event)
    fetched = batch.results

    resolution = TierResolution()
    for currency, representative, tiers in zip(currencies, representatives, fetched):
        group = groups[currency]
        if not tiers:
            for target in group:
                resolution.skipped.append(SkippedTerritory(target.territory_code, f"no price points for {currency}"))
            continue
        if tier_cache is not None:
            tier_cache.store(currency, tiers)
        for target in group:
            tier = find_closest_tier(target.rounded_amount, tiers)
            # The cached path needs the tier reference, so skip here too.
            if tier is None or not tier.tier:
                resolution.skipped.append(SkippedTerritory(target.territory_code, "no matching price point"))
                continue
            price_point_id = _retarget(tier, target.territory_code, representative)
            if price_point_id is None:
                resolution.skipped.append(
                    SkippedTerritory(target.territory_code, "price point id cannot be applied to this territory")
                )
                continue
            resolution.resolved.append(_resolved(target, tier, price_point_id))

    logger.info(
        "Resolved %d price points for %s with %d live lookups (%d skipped)",
        len(resolution.resolved),
        product_ref,
        len(representatives),
        len(resolution.skipped),
    )
    return resolution


async def resolve_prices(
    client: Any,
    product_ref: str,
    targets: Sequence[CalculatedPrice],
    *,
    tier_cache: Optional[TierCache] = None,
    options: Optional[RateLimitOptions] = None,
    on_progress: Optional[Callable[[BatchProgress], None]] = None,
) -> TierResolution:
    """Resolve cached currencies in memory and fetch the rest live.

    When both paths run, their entries are merged back into ``targets`` order.
    """
    if tier_cache is None or not tier_cache.has_data():
        return await resolve_prices_from_api(
            client,
            product_ref,
            targets,
            tier_cache=tier_cache,
            options=options,
            on_progress=on_progress,
        )

    cached = [target for target in targets if tier_cache.tiers_for(target.currency_code)]
    missing = [target for target in targets if not tier_cache.tiers_for(target.currency_code)]
    parts: List[TierResolution] = []
    if cached:
        parts.append(await resolve_prices_with_cache(client, product_ref, cached, tier_cache, options))
        if on_progress is not None:
            on_progress(BatchProgress(completed=len(cached), total=len(cached), index=len(cached) - 1))
    if missing:
        logger.info(
            "Tier cache has no data for %s; fetching live",
            ", ".join(sorted({target.currency_code.upper() for target in missing})),
        )
        parts.append(
            await resolve_prices_from_api(
                client,
                product_ref,
                missing,
                tier_cache=tier_cache,
                options=options,
                on_progress=on_progress,
            )
        )

    position = {target.territory_code: index for index, target in enumerate(targets)}
    return TierResolution(
        resolved=sorted(
            (entry for part in parts for entry in part.resolved), key=lambda entry: position[entry.territory]
        ),
        skipped=sorted(
            (entry for part in parts for entry in part.skipped), key=lambda entry: position[entry.territory]
        ),
    )
