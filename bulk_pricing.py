"""Bulk price updates across territories for both storefronts.

Each ``apply_*`` coroutine reports through an :class:`~ndjson_stream.NdjsonWriter`
and always ends the stream with exactly one ``done`` or ``error`` event. Platform
calls are blocking and go through ``asyncio.to_thread`` inside rate-limited
batches, so a failing call stops the remaining windows and the error event
carries how many calls finished first.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from apple_store import AppleStoreApiError, SubscriptionPrice
from conversion_indexes import PPPEntry
from ndjson_stream import NdjsonWriter
from price_tiers import (
    PriceTier,
    ResolvedPrice,
    SkippedTerritory,
    TierCache,
    TierResolution,
    find_closest_tier,
    resolve_prices,
)
from pricing import (
    PRICING_STRATEGIES,
    ROUNDING_MODES,
    CalculatedPrice,
    calculate_bulk_prices,
)
from rate_limit import RateLimitError, RateLimitOptions, execute_with_rate_limit
from territories import (
    UNSUPPORTED_IAP_TERRITORIES,
    get_territory,
    is_google_play_region,
    to_alpha2,
    to_alpha3,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_TERRITORY = "USA"

RESOLVE_OPTIONS = RateLimitOptions(concurrency=3, delay_between_batches=0.3)
SUBSCRIPTION_RESOLVE_OPTIONS = RateLimitOptions(concurrency=3, delay_between_batches=0.3, retry_base_delay=2.0)
DELETE_OPTIONS = RateLimitOptions(concurrency=3, delay_between_batches=0.35, max_retries=5, retry_base_delay=2.0)
SUBMIT_OPTIONS = RateLimitOptions(concurrency=1, delay_between_batches=0.0, retry_base_delay=2.0)
SUBSCRIPTION_SUBMIT_OPTIONS = RateLimitOptions(concurrency=2, delay_between_batches=0.5)


class PricingValidationError(ValueError):
    """Rejected input, raised before any platform call is made."""


@dataclass(frozen=True)
class BulkPricingRequest:
    base_amount: float
    territories: Sequence[str]
    strategy: str = "ppp"
    rounding_mode: str = "charm"
    custom_multiplier: Optional[float] = None
    base_territory: str = DEFAULT_BASE_TERRITORY
    start_date: Optional[str] = None
    currency_overrides: Optional[Mapping[str, str]] = None


@dataclass
class PreparedPricing:
    targets: List[CalculatedPrice]
    skipped: List[SkippedTerritory] = field(default_factory=list)
    base_territory: str = DEFAULT_BASE_TERRITORY


@dataclass(frozen=True)
class PricePointTarget:
    territory: str
    target_amount: float
    currency_code: str

    @classmethod
    def from_calculated(cls, price: CalculatedPrice) -> "PricePointTarget":
        return cls(price.territory_code, price.rounded_amount, price.currency_code)


@dataclass
class ClearScheduledResult:
    deleted: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    remaining_scheduled: int = 0

    @property
    def message(self) -> str:
        if not self.deleted and not self.skipped:
            return "삭제할 예약 가격이 없습니다."
        if self.skipped:
            return (
                f"예약 가격 {len(self.deleted)}건을 삭제했고, "
                f"{len(self.skipped)}건은 더 이상 삭제할 수 없어 건너뛰었습니다."
            )
        return f"예약 가격 {len(self.deleted)}건을 삭제했습니다."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "deletedCount": len(self.deleted),
            "skippedCount": len(self.skipped),
            "remainingScheduled": self.remaining_scheduled,
            "results": self.deleted + self.skipped,
        }


def _error_detail(exc: BaseException) -> str:
    detail = getattr(exc, "detail", None)
    return detail or str(exc) or exc.__class__.__name__


def partial_failure_message(action: str, exc: RateLimitError) -> str:
    return (
        f"{action}에 실패했습니다: 전체 {exc.total_count}건 중 {exc.success_count}건 완료 후 중단되었습니다. "
        f"({_error_detail(exc.original_error)})"
    )


def _progress(writer: NdjsonWriter, phase: str) -> Callable[[int, int], None]:
    return lambda completed, total: writer.progress(completed, total, phase=phase)


def _validate_common(request: BulkPricingRequest) -> None:
    if request.base_amount is None or request.base_amount <= 0:
        raise PricingValidationError("기준 가격은 0보다 커야 합니다.")
    if request.strategy not in PRICING_STRATEGIES:
        raise PricingValidationError(f"지원하지 않는 가격 전략입니다: {request.strategy}")
    if request.rounding_mode not in ROUNDING_MODES:
        raise PricingValidationError(f"지원하지 않는 반올림 방식입니다: {request.rounding_mode}")
    if request.strategy == "custom" and (request.custom_multiplier is None or request.custom_multiplier <= 0):
        raise PricingValidationError("custom 전략에는 0보다 큰 배수가 필요합니다.")
    if not request.territories:
        raise PricingValidationError("테리토리를 하나 이상 지정해야 합니다.")


def _dedupe(codes: Sequence[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for code in codes:
        seen.setdefault(code, None)
    return list(seen)


def _calculate(
    request: BulkPricingRequest,
    codes: Sequence[str],
    ppp_data: Optional[Mapping[str, PPPEntry]],
    exchange_rates: Optional[Mapping[str, float]],
) -> List[CalculatedPrice]:
    try:
        return calculate_bulk_prices(
            request.base_amount,
            codes,
            request.strategy,
            request.rounding_mode,
            request.custom_multiplier,
            ppp_data,
            request.currency_overrides,
            exchange_rates,
        )
    except ValueError as exc:
        raise PricingValidationError(str(exc)) from exc


def prepare_app_store_pricing(
    request: BulkPricingRequest,
    *,
    ppp_data: Optional[Mapping[str, PPPEntry]] = None,
    exchange_rates: Optional[Mapping[str, float]] = None,
    drop_unsupported: bool = True,
) -> PreparedPricing:
    """Validate a request and compute per-territory targets with 3-letter codes."""
    _validate_common(request)
    codes: List[str] = []
    for raw in request.territories:
        code = to_alpha3((raw or "").strip())
        if code is None:
            raise PricingValidationError(f"알 수 없는 테리토리 코드입니다: {raw}")
        codes.append(code)
    codes = _dedupe(codes)

    base = to_alpha3(request.base_territory or DEFAULT_BASE_TERRITORY)
    if base is None:
        raise PricingValidationError(f"알 수 없는 기준 테리토리입니다: {request.base_territory}")
    if base not in codes:
        raise PricingValidationError(f"기준 테리토리 {base}의 가격이 요청에 포함되어야 합니다.")

    skipped: List[SkippedTerritory] = []
    if drop_unsupported:
        for code in codes:
            if code in UNSUPPORTED_IAP_TERRITORIES:
                logger.info("Skipping territory %s: not supported for in-app purchases", code)
                skipped.append(SkippedTerritory(code, "territory is not supported for in-app purchases"))
        codes = [code for code in codes if code not in UNSUPPORTED_IAP_TERRITORIES]

    targets = _calculate(request, codes, ppp_data, exchange_rates)
    return PreparedPricing(targets=targets, skipped=skipped, base_territory=base)


def prepare_google_pricing(
    request: BulkPricingRequest,
    *,
    ppp_data: Optional[Mapping[str, PPPEntry]] = None,
    exchange_rates: Optional[Mapping[str, float]] = None,
) -> PreparedPricing:
    """Validate a request and compute per-region targets with 2-letter codes."""
    _validate_common(request)
    codes: List[str] = []
    for raw in request.territories:
        code = (raw or "").strip().upper()
        if get_territory(code) is None and not is_google_play_region(code):
            raise PricingValidationError(f"알 수 없는 지역 코드입니다: {raw}")
        codes.append(to_alpha2(code))
    codes = _dedupe(codes)

    base = to_alpha2((request.base_territory or DEFAULT_BASE_TERRITORY).strip().upper())
    if base not in codes:
        raise PricingValidationError(f"기준 지역 {base}의 가격이 요청에 포함되어야 합니다.")

    skipped: List[SkippedTerritory] = []
    billable: List[str] = []
    for code in codes:
        if is_google_play_region(code):
            billable.append(code)
        else:
            logger.info("Skipping region %s: not billable on Google Play", code)
            skipped.append(SkippedTerritory(code, "region is not billable on Google Play"))
    if base not in billable:
        raise PricingValidationError(f"기준 지역 {base}은(는) Google Play 청구 지역이 아닙니다.")

    targets = _calculate(request, billable, ppp_data, exchange_rates)
    return PreparedPricing(targets=targets, skipped=skipped, base_territory=base)


def _summary(resolution: TierResolution, extra_skipped: Sequence[SkippedTerritory]) -> Dict[str, Any]:
    return {
        "resolved": [entry.to_dict() for entry in resolution.resolved],
        "skipped": [entry.to_dict() for entry in list(extra_skipped) + resolution.skipped],
    }


# -- App Store in-app purchases -------------------------------------------


async def apply_bulk_pricing(
    client: Any,
    iap_id: str,
    request: BulkPricingRequest,
    writer: NdjsonWriter,
    *,
    tier_cache: Optional[TierCache] = None,
    ppp_data: Optional[Mapping[str, PPPEntry]] = None,
    exchange_rates: Optional[Mapping[str, float]] = None,
) -> None:
    try:
        prepared = prepare_app_store_pricing(request, ppp_data=ppp_data, exchange_rates=exchange_rates)
    except PricingValidationError as exc:
        writer.error(str(exc))
        return

    logger.info("Bulk pricing IAP %s across %d territories", iap_id, len(prepared.targets))
    try:
        resolution = await resolve_prices(
            client,
            iap_id,
            prepared.targets,
            tier_cache=tier_cache,
            options=RESOLVE_OPTIONS,
            on_progress=lambda event: writer.progress(event.completed, event.total, phase="resolve"),
        )
    except RateLimitError as exc:
        writer.error(partial_failure_message("가격 포인트 조회", exc), exc.success_count, exc.total_count)
        return

    summary = _summary(resolution, prepared.skipped)
    if not resolution.resolved:
        writer.error("가격 포인트를 찾은 테리토리가 없어 가격을 변경하지 않았습니다.")
        return
    if not any(price.territory == prepared.base_territory for price in resolution.resolved):
        writer.error(f"기준 테리토리 {prepared.base_territory}의 가격 포인트를 찾지 못했습니다.")
        return

    resolved = resolution.resolved
    try:
        await execute_with_rate_limit(
            [
                lambda: asyncio.to_thread(
                    client.update_iap_price_schedule, iap_id, resolved, prepared.base_territory
                )
            ],
            SUBMIT_OPTIONS,
            on_progress=_progress(writer, "submit"),
        )
    except RateLimitError as exc:
        writer.error(partial_failure_message("가격 일정 제출", exc), 0, len(resolved))
        return

    summary["updated"] = len(resolved)
    logger.info("Updated IAP %s prices in %d territories", iap_id, len(resolved))
    writer.done(summary)


# -- App Store subscriptions ----------------------------------------------


async def _resolve_subscription_targets(
    client: Any,
    subscription_id: str,
    targets: Sequence[PricePointTarget],
    on_progress: Callable[[int, int], None],
) -> TierResolution:
    def _fetch(target: PricePointTarget):
        return lambda: asyncio.to_thread(client.list_subscription_price_points, subscription_id, target.territory)

    fetched: List[List[PriceTier]] = await execute_with_rate_limit(
        [_fetch(target) for target in targets],
        SUBSCRIPTION_RESOLVE_OPTIONS,
        on_progress=on_progress,
    )

    resolution = TierResolution()
    for target, tiers in zip(targets, fetched):
        if not tiers:
            resolution.skipped.append(
                SkippedTerritory(target.territory, f"no price points for {target.currency_code}")
            )
            continue
        tier = find_closest_tier(target.target_amount, tiers)
        if tier is None:
            resolution.skipped.append(SkippedTerritory(target.territory, "no matching price point"))
            continue
        resolution.resolved.append(
            ResolvedPrice(
                territory=target.territory,
                currency_code=target.currency_code,
                target_amount=target.target_amount,
                price_point_id=tier.id,
                customer_price=tier.customer_price,
                tier=tier.tier,
            )
        )
    return resolution


async def _delete_scheduled(
    client: Any,
    scheduled: Sequence[SubscriptionPrice],
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    def _delete(price: SubscriptionPrice):
        async def task() -> Dict[str, Any]:
            try:
                await asyncio.to_thread(client.delete_subscription_price, price.subscription_price_id)
            except AppleStoreApiError as exc:
                if exc.status_code != 409:
                    raise
                # Prices about to take effect can no longer be deleted.
                logger.info("Scheduled price for %s is no longer deletable: %s", price.territory, exc.detail)
                return {"territory": price.territory, "deleted": False, "reason": exc.detail}
            return {"territory": price.territory, "deleted": True}

        return task

    results = await execute_with_rate_limit(
        [_delete(price) for price in scheduled], DELETE_OPTIONS, on_progress=on_progress
    )
    deleted = [result for result in results if result["deleted"]]
    skipped = [result for result in results if not result["deleted"]]
    return deleted, skipped


async def apply_subscription_bulk_pricing(
    client: Any,
    subscription_id: str,
    request: BulkPricingRequest,
    writer: NdjsonWriter,
    *,
    ppp_data: Optional[Mapping[str, PPPEntry]] = None,
    exchange_rates: Optional[Mapping[str, float]] = None,
) -> None:
    try:
        prepared = prepare_app_store_pricing(
            request, ppp_data=ppp_data, exchange_rates=exchange_rates, drop_unsupported=False
        )
    except PricingValidationError as exc:
        writer.error(str(exc))
        return

    territories = {target.territory_code for target in prepared.targets}
    logger.info("Bulk pricing subscription %s across %d territories", subscription_id, len(territories))

    try:
        resolution = await _resolve_subscription_targets(
            client,
            subscription_id,
            [PricePointTarget.from_calculated(target) for target in prepared.targets],
            _progress(writer, "resolve"),
        )
    except RateLimitError as exc:
        writer.error(partial_failure_message("가격 포인트 조회", exc), exc.success_count, exc.total_count)
        return

    summary = _summary(resolution, prepared.skipped)
    if not resolution.resolved:
        writer.error("가격 포인트를 찾은 테리토리가 없어 가격을 변경하지 않았습니다.")
        return
    if not any(price.territory == prepared.base_territory for price in resolution.resolved):
        writer.error(f"기준 테리토리 {prepared.base_territory}의 가격 포인트를 찾지 못했습니다.")
        return

    deleted: List[Dict[str, Any]] = []
    not_deleted: List[Dict[str, Any]] = []
    if request.start_date:
        # A new future price replaces the one already scheduled for the same territory.
        replacing = {price.territory for price in resolution.resolved}
        existing = await asyncio.to_thread(client.list_subscription_prices, subscription_id)
        scheduled = [price for code, price in existing.scheduled.items() if code in replacing]
        try:
            deleted, not_deleted = await _delete_scheduled(client, scheduled, _progress(writer, "delete"))
        except RateLimitError as exc:
            writer.error(partial_failure_message("예약 가격 삭제", exc), exc.success_count, exc.total_count)
            return

    def _submit(price: ResolvedPrice):
        return lambda: asyncio.to_thread(
            client.create_subscription_price,
            subscription_id,
            price.price_point_id,
            price.territory,
            request.start_date,
        )

    try:
        await execute_with_rate_limit(
            [_submit(price) for price in resolution.resolved],
            SUBSCRIPTION_SUBMIT_OPTIONS,
            on_progress=_progress(writer, "submit"),
        )
    except RateLimitError as exc:
        writer.error(partial_failure_message("구독 가격 변경", exc), exc.success_count, exc.total_count)
        return

    summary["deleted"] = deleted + not_deleted
    summary["updated"] = len(resolution.resolved)
    logger.info(
        "Updated subscription %s prices in %d territories (%d scheduled prices deleted)",
        subscription_id,
        len(resolution.resolved),
        len(deleted),
    )
    writer.done(summary)


async def resolve_subscription_price_points(
    client: Any,
    subscription_id: str,
    targets: Sequence[PricePointTarget],
    writer: NdjsonWriter,
) -> None:
    """Closest subscription price point per territory, without submitting anything."""
    if not targets:
        writer.error("테리토리를 하나 이상 지정해야 합니다.")
        return
    try:
        resolution = await _resolve_subscription_targets(
            client, subscription_id, targets, _progress(writer, "resolve")
        )
    except RateLimitError as exc:
        writer.error(partial_failure_message("가격 포인트 조회", exc), exc.success_count, exc.total_count)
        return
    writer.done(resolution.to_dict())


async def clear_scheduled_prices(
    client: Any,
    subscription_id: str,
    territories: Optional[Sequence[str]] = None,
) -> ClearScheduledResult:
    """Delete future-dated prices of a subscription.

    Raises :class:`RateLimitError` when a deletion fails for any reason other
    than the price already being too close to its start date.
    """
    wanted = None
    if territories:
        wanted = set()
        for raw in territories:
            code = to_alpha3(raw)
            if code is None:
                raise PricingValidationError(f"알 수 없는 테리토리 코드입니다: {raw}")
            wanted.add(code)

    existing = await asyncio.to_thread(client.list_subscription_prices, subscription_id)
    scheduled = [
        price for code, price in existing.scheduled.items() if wanted is None or code in wanted
    ]
    if not scheduled:
        return ClearScheduledResult(remaining_scheduled=len(existing.scheduled))

    deleted, skipped = await _delete_scheduled(client, scheduled)
    remaining = await asyncio.to_thread(client.list_subscription_prices, subscription_id)
    logger.info(
        "Cleared %d scheduled prices for subscription %s (%d skipped)", len(deleted), subscription_id, len(skipped)
    )
    return ClearScheduledResult(deleted=deleted, skipped=skipped, remaining_scheduled=len(remaining.scheduled))


# -- Google Play ------------------------------------------------------------


async def apply_google_bulk_pricing(
    client: Any,
    product_id: str,
    request: BulkPricingRequest,
    writer: NdjsonWriter,
    *,
    base_plan_id: Optional[str] = None,
    ppp_data: Optional[Mapping[str, PPPEntry]] = None,
    exchange_rates: Optional[Mapping[str, float]] = None,
) -> None:
    """Price a one-time product, or a subscription base plan when ``base_plan_id`` is given."""
    try:
        prepared = prepare_google_pricing(request, ppp_data=ppp_data, exchange_rates=exchange_rates)
    except PricingValidationError as exc:
        writer.error(str(exc))
        return

    prices = {target.territory_code: target.price for target in prepared.targets}

    async def submit():
        if base_plan_id:
            return await asyncio.to_thread(
                client.update_base_plan_prices, product_id, base_plan_id, prices, exchange_rates=exchange_rates
            )
        return await asyncio.to_thread(client.update_onetime_product_prices, product_id, prices)

    logger.info(
        "Bulk pricing Google Play product %s%s across %d regions",
        product_id,
        f"/{base_plan_id}" if base_plan_id else "",
        len(prices),
    )

    try:
        [result] = await execute_with_rate_limit([submit], SUBMIT_OPTIONS, on_progress=_progress(writer, "submit"))
    except RateLimitError as exc:
        writer.error(partial_failure_message("Google Play 가격 변경", exc), 0, len(prices))
        return

    dropped = set(result.dropped_regions)
    resolved = [target.to_dict() for target in prepared.targets if target.territory_code not in dropped]
    skipped = [entry.to_dict() for entry in prepared.skipped]
    skipped.extend(
        SkippedTerritory(region, "region rejected as not billable").to_dict() for region in result.dropped_regions
    )
    if not resolved:
        writer.error("가격을 적용할 수 있는 지역이 없습니다.")
        return
    writer.done(
        {
            "resolved": resolved,
            "skipped": skipped,
            "updated": len(resolved),
            "filledRegions": result.filled_regions,
        }
    )
