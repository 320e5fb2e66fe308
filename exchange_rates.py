import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from lookup_cache import TTLCache

logger = logging.getLogger(__name__)

OPEN_EXCHANGE_RATES_URL = "https://openexchangerates.org/api/latest.json"
EXCHANGE_RATE_CACHE_TTL = int(os.getenv("EXCHANGE_RATE_CACHE_TTL", str(6 * 60 * 60)))
_REQUEST_TIMEOUT = 15
_CACHE_KEY = "latest"


class NoApiKeyError(RuntimeError):
    """Raised when no Open Exchange Rates app id is configured."""


class ExchangeRateFetchError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ExchangeRates:
    base: str
    timestamp: int
    rates: Dict[str, float] = field(default_factory=dict)
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"base": self.base, "timestamp": self.timestamp, "rates": self.rates, "stale": self.stale}


class ExchangeRatesClient:
    """USD-based rates from Open Exchange Rates, cached between requests.

    When a refresh fails and an expired value is still held, the expired value
    is returned with ``stale=True``.
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        ttl: float = EXCHANGE_RATE_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app_id = app_id if app_id is not None else os.getenv("OPEN_EXCHANGE_RATES_APP_ID", "").strip()
        self.session = session or requests.Session()
        self._cache: TTLCache[ExchangeRates] = TTLCache(ttl, clock=clock)

    def _fetch(self) -> ExchangeRates:
        try:
            response = self.session.get(
                OPEN_EXCHANGE_RATES_URL, params={"app_id": self.app_id}, timeout=_REQUEST_TIMEOUT
            )
        except requests.exceptions.RequestException as exc:
            raise ExchangeRateFetchError(f"환율 정보를 가져오지 못했습니다: {exc}") from exc
        if response.status_code >= 400:
            raise ExchangeRateFetchError(
                f"환율 API 오류 {response.status_code}: {(response.text or '').strip()}",
                status_code=response.status_code,
            )
        payload = response.json()
        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict) or not rates:
            raise ExchangeRateFetchError("환율 API 응답에 rates 항목이 없습니다.")
        return ExchangeRates(
            base=str(payload.get("base") or "USD"),
            timestamp=int(payload.get("timestamp") or 0),
            rates={code.upper(): float(value) for code, value in rates.items() if isinstance(value, (int, float))},
        )

    def get_rates(self, *, force_refresh: bool = False) -> ExchangeRates:
        if not self.app_id:
            raise NoApiKeyError("OPEN_EXCHANGE_RATES_APP_ID 환경 변수가 설정되어 있지 않습니다.")

        if not force_refresh:
            cached = self._cache.get(_CACHE_KEY)
            if cached is not None:
                return cached

        try:
            rates = self._fetch()
        except ExchangeRateFetchError as exc:
            stale = self._cache.get_stale(_CACHE_KEY)
            if stale is None:
                raise
            logger.warning("Exchange rate refresh failed, serving stale rates: %s", exc)
            return ExchangeRates(stale.base, stale.timestamp, stale.rates, stale=True)

        self._cache.set(_CACHE_KEY, rates)
        logger.info("Fetched %d exchange rates (timestamp=%s)", len(rates.rates), rates.timestamp)
        return rates

    def rates_or_none(self) -> Optional[Dict[str, float]]:
        """Rate table for the calculator; ``None`` lets it use the built-in fallback table."""
        try:
            return self.get_rates().rates
        except NoApiKeyError:
            return None
        except ExchangeRateFetchError as exc:
            logger.warning("Using fallback exchange rates: %s", exc)
            return None

    def invalidate(self) -> None:
        self._cache.invalidate()
