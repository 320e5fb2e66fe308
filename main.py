import asyncio
import logging
import os
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from apple_store import AppleStoreClient, AppleStoreConfigError
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
from conversion_indexes import FALLBACK_EXCHANGE_RATES
from exchange_rates import ExchangeRateFetchError, ExchangeRatesClient, NoApiKeyError
from google_play import GooglePlayClient, GooglePlayConfigError
from ndjson_stream import NDJSON_HEADERS, NDJSON_MEDIA_TYPE, NdjsonWriter, create_ndjson_stream
from price_tiers import TierCache
from pricing import calculate_bulk_prices
from rate_limit import RateLimitError
from territories import billing_currency, to_alpha3
from world_bank import PPPDataClient, WorldBankError, merge_with_static

load_dotenv()


class DailyLogFileHandler(logging.Handler):
    def __init__(self, directory: Path, encoding: str = "utf-8"):
        super().__init__()
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self.encoding = encoding
        self._current_date: Optional[date] = None
        self._stream: Optional[Any] = None
        self._lock = threading.Lock()

    def _log_path_for(self, date_obj: date) -> Path:
        return self.directory / f"pricing_{date_obj.strftime('%Y-%m-%d')}.log"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            today = datetime.now().date()
            with self._lock:
                if today != self._current_date:
                    self._current_date = today
                    if self._stream:
                        self._stream.close()
                    self._stream = open(self._log_path_for(today), "a", encoding=self.encoding)
                if self._stream:
                    self._stream.write(msg + "\n")
                    self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        try:
            with self._lock:
                if self._stream:
                    self._stream.close()
                    self._stream = None
        finally:
            super().close()


log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, log_level_name, logging.INFO))
root_logger.handlers.clear()
formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")

stream_handler = logging.StreamHandler()
stream_handler.setFormatter(formatter)
root_logger.addHandler(stream_handler)

log_directory = Path(os.getenv("LOG_DIR") or Path(__file__).resolve().parent / "logs")
file_handler = DailyLogFileHandler(log_directory)
file_handler.setFormatter(formatter)
root_logger.addHandler(file_handler)

logger = logging.getLogger(__name__)


def _parse_origins(value: Optional[str]) -> List[str]:
    if not value:
        return ["*"]
    origins = [item.strip() for item in value.split(",") if item.strip()]
    return origins or ["*"]


app = FastAPI(title="storefront-pricing")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_origins(os.getenv("ALLOWED_ORIGINS")),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _run_in_thread(func, /, *args, **kwargs):
    return await asyncio.to_thread(func, *args, **kwargs)


# Process-wide collaborators; endpoints receive them through dependencies.
TIER_CACHE = TierCache()
EXCHANGE_RATES_CLIENT = ExchangeRatesClient()
PPP_CLIENT = PPPDataClient()

_CLIENT_LOCK = threading.Lock()
_apple_client: Optional[AppleStoreClient] = None
_google_client: Optional[GooglePlayClient] = None


def get_apple_client() -> AppleStoreClient:
    global _apple_client
    with _CLIENT_LOCK:
        if _apple_client is None:
            try:
                _apple_client = AppleStoreClient.from_env()
            except AppleStoreConfigError as exc:
                logger.error("Apple Store configuration error: %s", exc)
                raise HTTPException(status_code=503, detail=str(exc)) from exc
        return _apple_client


def get_google_client() -> GooglePlayClient:
    global _google_client
    with _CLIENT_LOCK:
        if _google_client is None:
            try:
                _google_client = GooglePlayClient.from_env()
            except GooglePlayConfigError as exc:
                logger.error("Google Play configuration error: %s", exc)
                raise HTTPException(status_code=503, detail=str(exc)) from exc
        return _google_client


def get_tier_cache() -> TierCache:
    return TIER_CACHE


def get_exchange_rates_client() -> ExchangeRatesClient:
    return EXCHANGE_RATES_CLIENT


def get_ppp_client() -> PPPDataClient:
    return PPP_CLIENT


Strategy = Literal["direct", "ppp", "bigmac", "custom"]
RoundingMode = Literal["charm", "whole", "none"]


class PricingCalculateRequest(BaseModel):
    base_price: float = Field(..., gt=0)
    territories: List[str] = Field(..., min_length=1)
    strategy: Strategy = "ppp"
    rounding_mode: RoundingMode = "charm"
    custom_multiplier: Optional[float] = Field(default=None, gt=0)
    custom_multipliers: Optional[Dict[str, float]] = None
    currency_overrides: Optional[Dict[str, str]] = None

    @model_validator(mode="after")
    def ensure_custom_multiplier(self):
        if self.strategy == "custom" and self.custom_multiplier is None and not self.custom_multipliers:
            raise ValueError("custom 전략에는 배수를 입력해야 합니다.")
        return self


class BulkPricingPayload(BaseModel):
    base_price: float = Field(..., gt=0)
    territories: List[str] = Field(..., min_length=1)
    strategy: Strategy = "ppp"
    rounding_mode: RoundingMode = "charm"
    custom_multiplier: Optional[float] = Field(default=None, gt=0)
    base_territory: Optional[str] = None
    start_date: Optional[date] = None
    currency_overrides: Optional[Dict[str, str]] = None

    @model_validator(mode="after")
    def ensure_custom_multiplier(self):
        if self.strategy == "custom" and self.custom_multiplier is None:
            raise ValueError("custom 전략에는 배수를 입력해야 합니다.")
        return self

    def to_request(self, default_base: str) -> BulkPricingRequest:
        return BulkPricingRequest(
            base_amount=self.base_price,
            territories=[code.strip().upper() for code in self.territories],
            strategy=self.strategy,
            rounding_mode=self.rounding_mode,
            custom_multiplier=self.custom_multiplier,
            base_territory=(self.base_territory or default_base).strip().upper(),
            start_date=self.start_date.isoformat() if self.start_date else None,
            currency_overrides=self.currency_overrides,
        )


class PricePointTargetPayload(BaseModel):
    target_price: float = Field(..., gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class PricePointBatchRequest(BaseModel):
    territories: Dict[str, PricePointTargetPayload]

    @field_validator("territories")
    @classmethod
    def ensure_territories(cls, value: Dict[str, PricePointTargetPayload]) -> Dict[str, PricePointTargetPayload]:
        if not value:
            raise ValueError("테리토리를 하나 이상 지정해야 합니다.")
        return value


class ClearScheduledRequest(BaseModel):
    territories: Optional[List[str]] = None


def _ndjson_response(producer: Callable[[NdjsonWriter], Awaitable[Any]]) -> StreamingResponse:
    stream = create_ndjson_stream().run(producer)
    return StreamingResponse(stream, media_type=NDJSON_MEDIA_TYPE, headers=NDJSON_HEADERS)


async def _reference_data(
    strategy: str, rates_client: ExchangeRatesClient, ppp_client: PPPDataClient
) -> Dict[str, Any]:
    exchange_rates = await _run_in_thread(rates_client.rates_or_none)
    ppp_data = await _run_in_thread(ppp_client.entries_or_none) if strategy == "ppp" else None
    return {"exchange_rates": exchange_rates, "ppp_data": ppp_data}


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.post("/api/pricing/calculate")
async def api_calculate_prices(
    payload: PricingCalculateRequest,
    rates_client: ExchangeRatesClient = Depends(get_exchange_rates_client),
    ppp_client: PPPDataClient = Depends(get_ppp_client),
):
    try:
        reference = await _reference_data(payload.strategy, rates_client, ppp_client)
        prices = calculate_bulk_prices(
            payload.base_price,
            [code.strip().upper() for code in payload.territories],
            payload.strategy,
            payload.rounding_mode,
            payload.custom_multiplier,
            reference["ppp_data"],
            payload.currency_overrides,
            reference["exchange_rates"],
            custom_multipliers=payload.custom_multipliers,
        )
        return {"status": "ok", "items": [price.to_dict() for price in prices]}
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to calculate regional prices")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.get("/api/exchange-rates")
async def api_exchange_rates(
    refresh: bool = Query(False),
    rates_client: ExchangeRatesClient = Depends(get_exchange_rates_client),
):
    try:
        rates = await _run_in_thread(rates_client.get_rates, force_refresh=refresh)
        return {"status": "ok", "source": "openexchangerates", **rates.to_dict()}
    except NoApiKeyError as exc:
        logger.info("Exchange rate API key missing, serving fallback rates")
        return {"status": "ok", "source": "fallback", "base": "USD", "rates": FALLBACK_EXCHANGE_RATES, "error": str(exc)}
    except ExchangeRateFetchError as exc:
        logger.warning("Exchange rate fetch failed, serving fallback rates: %s", exc)
        return {"status": "ok", "source": "fallback", "base": "USD", "rates": FALLBACK_EXCHANGE_RATES, "error": str(exc)}


@app.get("/api/ppp")
async def api_ppp(
    refresh: bool = Query(False),
    ppp_client: PPPDataClient = Depends(get_ppp_client),
):
    try:
        data = await _run_in_thread(ppp_client.get_ppp_data, force_refresh=refresh)
    except WorldBankError as exc:
        logger.warning("World Bank PPP fetch failed, serving static index: %s", exc)
        merged = merge_with_static(None)
        return {
            "status": "ok",
            "data": merged,
            "metadata": {"baseYear": None, "worldBankRegions": 0, "totalRegions": len(merged), "fallback": True, "error": str(exc)},
        }
    merged = merge_with_static(data)
    return {
        "status": "ok",
        "data": merged,
        "metadata": {
            "baseYear": data.base_year,
            "fetchedAt": datetime.fromtimestamp(data.fetched_at).isoformat(),
            "worldBankRegions": len(data.entries),
            "totalRegions": len(merged),
            "stale": data.stale,
        },
    }


@app.post("/api/apple/inapp/{iap_id}/prices/bulk")
async def api_apple_inapp_bulk_pricing(
    iap_id: str,
    payload: BulkPricingPayload,
    client: AppleStoreClient = Depends(get_apple_client),
    tier_cache: TierCache = Depends(get_tier_cache),
    rates_client: ExchangeRatesClient = Depends(get_exchange_rates_client),
    ppp_client: PPPDataClient = Depends(get_ppp_client),
):
    request = payload.to_request("USA")
    reference = await _reference_data(request.strategy, rates_client, ppp_client)
    try:
        prepare_app_store_pricing(request, **reference)
    except PricingValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return _ndjson_response(
        lambda writer: apply_bulk_pricing(client, iap_id, request, writer, tier_cache=tier_cache, **reference)
    )


@app.post("/api/apple/subscriptions/{subscription_id}/prices/bulk")
async def api_apple_subscription_bulk_pricing(
    subscription_id: str,
    payload: BulkPricingPayload,
    client: AppleStoreClient = Depends(get_apple_client),
    rates_client: ExchangeRatesClient = Depends(get_exchange_rates_client),
    ppp_client: PPPDataClient = Depends(get_ppp_client),
):
    request = payload.to_request("USA")
    reference = await _reference_data(request.strategy, rates_client, ppp_client)
    try:
        prepare_app_store_pricing(request, drop_unsupported=False, **reference)
    except PricingValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return _ndjson_response(
        lambda writer: apply_subscription_bulk_pricing(client, subscription_id, request, writer, **reference)
    )


@app.post("/api/apple/subscriptions/{subscription_id}/price-points/batch")
async def api_apple_subscription_price_points(
    subscription_id: str,
    payload: PricePointBatchRequest,
    client: AppleStoreClient = Depends(get_apple_client),
):
    targets: List[PricePointTarget] = []
    for code, target in payload.territories.items():
        territory = to_alpha3(code)
        if territory is None:
            raise HTTPException(status_code=400, detail=f"알 수 없는 테리토리 코드입니다: {code}")
        currency = (target.currency or billing_currency(territory)).upper()
        targets.append(PricePointTarget(territory, target.target_price, currency))

    return _ndjson_response(
        lambda writer: resolve_subscription_price_points(client, subscription_id, targets, writer)
    )


@app.post("/api/apple/subscriptions/{subscription_id}/clear-scheduled")
async def api_apple_clear_scheduled(
    subscription_id: str,
    payload: Optional[ClearScheduledRequest] = None,
    client: AppleStoreClient = Depends(get_apple_client),
):
    territories = payload.territories if payload else None
    try:
        result = await clear_scheduled_prices(client, subscription_id, territories)
        return {"status": "ok", **result.to_dict()}
    except PricingValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RateLimitError as exc:
        logger.error("Clearing scheduled prices for %s stopped: %s", subscription_id, exc)
        status_code = exc.status_code if exc.status_code and exc.status_code >= 400 else 500
        body = exc.to_dict()
        body["error"] = (
            f"예약 가격 삭제에 실패했습니다: 전체 {exc.total_count}건 중 {exc.success_count}건 삭제 후 중단되었습니다."
        )
        body["originalError"] = getattr(exc.original_error, "detail", None) or str(exc.original_error)
        return JSONResponse(status_code=status_code, content=body)
    except AppleStoreConfigError as exc:
        logger.error("Apple Store configuration error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to clear scheduled prices")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/api/google/inapp/{sku}/prices/bulk")
async def api_google_inapp_bulk_pricing(
    sku: str,
    payload: BulkPricingPayload,
    client: GooglePlayClient = Depends(get_google_client),
    rates_client: ExchangeRatesClient = Depends(get_exchange_rates_client),
    ppp_client: PPPDataClient = Depends(get_ppp_client),
):
    request = payload.to_request("US")
    reference = await _reference_data(request.strategy, rates_client, ppp_client)
    try:
        prepare_google_pricing(request, **reference)
    except PricingValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return _ndjson_response(lambda writer: apply_google_bulk_pricing(client, sku, request, writer, **reference))


@app.post("/api/google/subscriptions/{product_id}/base-plans/{base_plan_id}/prices/bulk")
async def api_google_base_plan_bulk_pricing(
    product_id: str,
    base_plan_id: str,
    payload: BulkPricingPayload,
    client: GooglePlayClient = Depends(get_google_client),
    rates_client: ExchangeRatesClient = Depends(get_exchange_rates_client),
    ppp_client: PPPDataClient = Depends(get_ppp_client),
):
    request = payload.to_request("US")
    reference = await _reference_data(request.strategy, rates_client, ppp_client)
    try:
        prepare_google_pricing(request, **reference)
    except PricingValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return _ndjson_response(
        lambda writer: apply_google_bulk_pricing(
            client, product_id, request, writer, base_plan_id=base_plan_id, **reference
        )
    )
