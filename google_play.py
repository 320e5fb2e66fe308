import copy
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from pricing import Money, calculate_bulk_prices
from territories import GOOGLE_PLAY_REGION_CURRENCIES

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
GOOGLE_PLAY_REGIONS_VERSION = os.getenv("GOOGLE_PLAY_REGIONS_VERSION", "2025/03")
BASE_REGION = "US"


class GooglePlayConfigError(RuntimeError):
    """Raised when the Google Play service account or package is not configured."""


class GooglePlayApiError(RuntimeError):
    """An Android Publisher API failure, carrying the HTTP status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, detail: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    @property
    def non_billable_region(self) -> Optional[str]:
        return _extract_non_billable_region(f"{self.detail} {self}")


@dataclass
class PriceUpdateResult:
    updated_regions: List[str] = field(default_factory=list)
    dropped_regions: List[str] = field(default_factory=list)
    filled_regions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updatedRegions": self.updated_regions,
            "droppedRegions": self.dropped_regions,
            "filledRegions": self.filled_regions,
        }


def _get_package_name() -> str:
    package_name = os.getenv("GOOGLE_PLAY_PACKAGE_NAME")
    if not package_name:
        raise GooglePlayConfigError("GOOGLE_PLAY_PACKAGE_NAME 환경 변수가 설정되어 있지 않습니다.")
    logger.debug("Using package name: %s", package_name)
    return package_name


def _get_credentials() -> Credentials:
    credentials_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    if not credentials_path:
        raise GooglePlayConfigError("GOOGLE_APPLICATION_CREDENTIALS 환경 변수가 설정되어 있지 않습니다.")
    logger.debug("Loading credentials from: %s", credentials_path)
    try:
        return Credentials.from_service_account_file(credentials_path, scopes=[ANDROID_PUBLISHER_SCOPE])
    except (OSError, ValueError) as exc:
        raise GooglePlayConfigError(f"서비스 계정 키를 읽을 수 없습니다: {exc}") from exc


def _extract_non_billable_region(message: str) -> Optional[str]:
    match = re.search(r"Region\s+([A-Z]{2})\s+not\s+billable", message, re.IGNORECASE)
    if match:
        return match.group(1).upper()
    return None


def _http_error_detail(exc: HttpError) -> str:
    fragments: List[str] = []
    content = getattr(exc, "content", None)
    if isinstance(content, bytes):
        fragments.append(content.decode("utf-8", errors="ignore"))
    elif isinstance(content, str):
        fragments.append(content)
    if exc.resp is not None and getattr(exc.resp, "reason", None):
        fragments.append(str(exc.resp.reason))
    return " ".join(fragment for fragment in fragments if fragment)


def _wrap_http_error(exc: HttpError, operation: str) -> GooglePlayApiError:
    status = getattr(exc.resp, "status", None) if exc.resp is not None else None
    try:
        status_code: Optional[int] = int(status) if status is not None else None
    except (TypeError, ValueError):
        status_code = None
    return GooglePlayApiError(
        f"Google API 오류({operation}): {exc}",
        status_code=status_code,
        detail=_http_error_detail(exc),
    )


def _money_payload(money: Money) -> Dict[str, Any]:
    payload = money.to_api_dict()
    payload.setdefault("nanos", 0)
    return payload


class GooglePlayClient:
    """Android Publisher monetization calls for one package.

    Calls are blocking; async callers run them with ``asyncio.to_thread``.
    """

    def __init__(self, service: Any, package_name: str, *, regions_version: str = GOOGLE_PLAY_REGIONS_VERSION) -> None:
        self.service = service
        self.package_name = package_name
        self.regions_version = regions_version

    @classmethod
    def from_env(cls) -> "GooglePlayClient":
        package_name = _get_package_name()
        creds = _get_credentials()
        logger.info("Initializing Google Play Android Publisher service client")
        service = build("androidpublisher", "v3", credentials=creds, cache_discovery=False)
        return cls(service, package_name)

    def _execute(self, request: Any, operation: str) -> Dict[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as exc:
            logger.exception("Google API error during %s", operation)
            raise _wrap_http_error(exc, operation) from exc

    # -- one-time products ----------------------------------------------

    def get_onetime_product(self, sku: str) -> Dict[str, Any]:
        request = self.service.monetization().onetimeproducts().get(packageName=self.package_name, productId=sku)
        return self._execute(request, "onetimeproducts.get")

    def update_onetime_product_prices(self, sku: str, prices: Mapping[str, Money]) -> PriceUpdateResult:
        """Set regional prices of the first purchase option, keeping regions not in ``prices``."""
        product = self.get_onetime_product(sku)
        purchase_options = product.get("purchaseOptions") or []
        if not purchase_options:
            raise GooglePlayApiError(f"상품 {sku}에 구매 옵션이 없습니다.", status_code=400)
        version = (product.get("regionsVersion") or {}).get("version") or self.regions_version

        pending = {region.upper(): money for region, money in prices.items()}
        result = PriceUpdateResult()
        while True:
            body = copy.deepcopy(product)
            option = body["purchaseOptions"][0]
            existing = {
                config.get("regionCode"): config
                for config in option.get("regionalPricingAndAvailabilityConfigs") or []
                if config.get("regionCode")
            }
            configs: List[Dict[str, Any]] = []
            for region, money in pending.items():
                availability = (existing.get(region) or {}).get("availability") or "AVAILABLE"
                configs.append({"regionCode": region, "availability": availability, "price": _money_payload(money)})
            for region, config in existing.items():
                if region not in pending and region not in result.dropped_regions:
                    configs.append(config)
            option["regionalPricingAndAvailabilityConfigs"] = configs

            request = self.service.monetization().onetimeproducts().patch(
                packageName=self.package_name,
                productId=sku,
                body=body,
                updateMask="purchaseOptions",
                **{"regionsVersion_version": version},
            )
            try:
                logger.info("Updating %d regional prices for one-time product %s", len(pending), sku)
                self._execute(request, "onetimeproducts.patch")
            except GooglePlayApiError as exc:
                region = exc.non_billable_region
                if not region or region not in pending or region == BASE_REGION:
                    raise
                logger.info("Removing non-billable region '%s' from %s and retrying", region, sku)
                pending.pop(region)
                result.dropped_regions.append(region)
                continue
            result.updated_regions = sorted(pending)
            return result

    # -- subscriptions --------------------------------------------------

    def get_subscription(self, product_id: str) -> Dict[str, Any]:
        request = self.service.monetization().subscriptions().get(packageName=self.package_name, productId=product_id)
        return self._execute(request, "subscriptions.get")

    def update_base_plan_prices(
        self,
        product_id: str,
        base_plan_id: str,
        prices: Mapping[str, Money],
        *,
        exchange_rates: Optional[Mapping[str, float]] = None,
    ) -> PriceUpdateResult:
        """Merge ``prices`` into a base plan's regional configs and patch the subscription.

        Every billable region must be priced once offers exist, so regions
        without a price are filled from the US price by direct conversion.
        """
        subscription = self.get_subscription(product_id)
        base_plans = subscription.get("basePlans") or []
        if not any(plan.get("basePlanId") == base_plan_id for plan in base_plans):
            raise GooglePlayApiError(
                f"구독 {product_id}에서 기본 요금제 {base_plan_id}를 찾을 수 없습니다.", status_code=404
            )
        version = (subscription.get("regionsVersion") or {}).get("version") or self.regions_version

        result = PriceUpdateResult()
        excluded: Set[str] = set()
        while True:
            body = copy.deepcopy(subscription)
            plan = next(item for item in body["basePlans"] if item.get("basePlanId") == base_plan_id)
            configs = self._merge_regional_configs(plan, prices, excluded, exchange_rates, result)
            plan["regionalConfigs"] = configs

            request = self.service.monetization().subscriptions().patch(
                packageName=self.package_name,
                productId=product_id,
                body=body,
                updateMask="basePlans",
                **{"regionsVersion_version": version},
            )
            try:
                logger.info(
                    "Updating base plan %s/%s with %d regional configs", product_id, base_plan_id, len(configs)
                )
                self._execute(request, "subscriptions.patch")
            except GooglePlayApiError as exc:
                region = exc.non_billable_region
                if not region or region in excluded or region == BASE_REGION:
                    raise
                logger.info("Removing non-billable region '%s' from %s and retrying", region, base_plan_id)
                excluded.add(region)
                result.dropped_regions.append(region)
                continue
            result.updated_regions = sorted(
                region for region in prices if region.upper() not in excluded
            )
            return result

    def _merge_regional_configs(
        self,
        plan: Dict[str, Any],
        prices: Mapping[str, Money],
        excluded: Set[str],
        exchange_rates: Optional[Mapping[str, float]],
        result: PriceUpdateResult,
    ) -> List[Dict[str, Any]]:
        merged: Dict[str, Dict[str, Any]] = {}
        for config in plan.get("regionalConfigs") or []:
            region = config.get("regionCode")
            if region:
                merged[region] = dict(config, newSubscriberAvailability=True)
        for region, money in prices.items():
            region = region.upper()
            merged[region] = {
                "regionCode": region,
                "price": _money_payload(money),
                "newSubscriberAvailability": True,
            }

        base = merged.get(BASE_REGION)
        if base is None:
            raise GooglePlayApiError(
                f"기본 요금제 {plan.get('basePlanId')}에 US 가격이 없어 지역 가격을 계산할 수 없습니다.",
                status_code=400,
            )
        missing = [region for region in GOOGLE_PLAY_REGION_CURRENCIES if region not in merged and region not in excluded]
        if missing:
            base_amount = Money.from_api_dict(base["price"]).to_float()
            for calculated in calculate_bulk_prices(
                base_amount, missing, "direct", "charm", exchange_rates=exchange_rates
            ):
                merged[calculated.territory_code] = {
                    "regionCode": calculated.territory_code,
                    "price": _money_payload(calculated.price),
                    "newSubscriberAvailability": True,
                }
            result.filled_regions = sorted(missing)

        return [config for region, config in merged.items() if region not in excluded]
