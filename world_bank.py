import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from conversion_indexes import (
    BIG_MAC_INDEX,
    DEFAULT_BIG_MAC_MULTIPLIER,
    PRICING_INDEX,
    PPPEntry,
    get_pricing_index_entry,
)
from lookup_cache import TTLCache
from territories import alpha3_to_alpha2, is_google_play_region

logger = logging.getLogger(__name__)

# PA.NUS.PPP: PPP conversion factor, GDP (local currency units per international $)
WORLD_BANK_PPP_URL = "https://api.worldbank.org/v2/country/all/indicator/PA.NUS.PPP"
PPP_CACHE_TTL = int(os.getenv("PPP_CACHE_TTL", str(24 * 60 * 60)))
MIN_PPP_MULTIPLIER = 0.1
MAX_PPP_MULTIPLIER = 2.0
_REQUEST_TIMEOUT = 30
_CACHE_KEY = "ppp"


class WorldBankError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class PPPData:
    entries: Dict[str, PPPEntry]
    base_year: Optional[int]
    fetched_at: float
    stale: bool = False

    def multipliers(self) -> Dict[str, float]:
        return {code: entry.ppp_multiplier for code, entry in self.entries.items()}


@dataclass(frozen=True)
class _Record:
    region_code: str
    factor: float
    year: Optional[int] = None


def _parse_records(payload: Any) -> List[_Record]:
    if not isinstance(payload, list) or len(payload) < 2:
        raise WorldBankError("World Bank API 응답 형식이 올바르지 않습니다.")
    records = payload[1]
    if not isinstance(records, list):
        raise WorldBankError("World Bank API 데이터 형식이 올바르지 않습니다.")

    parsed: List[_Record] = []
    for record in records:
        if not isinstance(record, dict) or record.get("value") is None:
            continue
        region_code = alpha3_to_alpha2(str(record.get("countryiso3code") or ""))
        if not region_code or not is_google_play_region(region_code):
            continue
        try:
            factor = float(record["value"])
        except (TypeError, ValueError):
            continue
        if factor <= 0:
            continue
        try:
            year: Optional[int] = int(str(record.get("date")))
        except ValueError:
            year = None
        parsed.append(_Record(region_code, factor, year))
    return parsed


def build_ppp_entries(records: List[_Record]) -> Dict[str, PPPEntry]:
    """Turn raw conversion factors into per-region entries relative to the US."""
    us = next((record for record in records if record.region_code == "US"), None)
    if us is None:
        raise WorldBankError("World Bank 데이터에 미국 PPP 값이 없습니다.")

    entries: Dict[str, PPPEntry] = {}
    for record in records:
        multiplier = max(MIN_PPP_MULTIPLIER, min(MAX_PPP_MULTIPLIER, us.factor / record.factor))
        factor = record.factor
        if record.region_code == "US":
            multiplier, factor = 1.0, 1.0
        entries[record.region_code] = PPPEntry(
            region_code=record.region_code,
            ppp_multiplier=multiplier,
            min_price=get_pricing_index_entry(record.region_code).min_price,
            ppp_conversion_factor=factor,
            year=record.year,
            source="world-bank",
        )
    return entries


class PPPDataClient:
    """World Bank PPP conversion factors, cached for a day with a stale fallback."""

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        ttl: float = PPP_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session = session or requests.Session()
        self._clock = clock
        self._cache: TTLCache[PPPData] = TTLCache(ttl, clock=clock)

    def _fetch(self) -> PPPData:
        try:
            response = self.session.get(
                WORLD_BANK_PPP_URL,
                params={"format": "json", "per_page": 300, "mrnev": 1},
                timeout=_REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as exc:
            raise WorldBankError(f"World Bank API 요청에 실패했습니다: {exc}") from exc
        if response.status_code >= 400:
            raise WorldBankError(f"World Bank API 오류 {response.status_code}", status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            raise WorldBankError("World Bank API 응답을 JSON으로 해석할 수 없습니다.") from exc

        entries = build_ppp_entries(_parse_records(payload))
        return PPPData(entries=entries, base_year=entries["US"].year, fetched_at=self._clock())

    def get_ppp_data(self, *, force_refresh: bool = False) -> PPPData:
        if not force_refresh:
            cached = self._cache.get(_CACHE_KEY)
            if cached is not None:
                return cached

        try:
            data = self._fetch()
        except WorldBankError as exc:
            stale = self._cache.get_stale(_CACHE_KEY)
            if stale is None:
                raise
            logger.warning("PPP refresh failed, serving stale data: %s", exc)
            return PPPData(stale.entries, stale.base_year, stale.fetched_at, stale=True)

        self._cache.set(_CACHE_KEY, data)
        logger.info("Fetched PPP factors for %d regions (base year %s)", len(data.entries), data.base_year)
        return data

    def entries_or_none(self) -> Optional[Dict[str, PPPEntry]]:
        try:
            return self.get_ppp_data().entries
        except WorldBankError as exc:
            logger.warning("Using static PPP index: %s", exc)
            return None

    def invalidate(self) -> None:
        self._cache.invalidate()


def merge_with_static(data: Optional[PPPData]) -> Dict[str, Dict[str, Any]]:
    """Static pricing index overlaid with live World Bank multipliers."""
    merged: Dict[str, Dict[str, Any]] = {}
    for code, entry in PRICING_INDEX.items():
        merged[code] = {
            "pppMultiplier": entry.ppp_multiplier,
            "bigMacMultiplier": BIG_MAC_INDEX.get(code, DEFAULT_BIG_MAC_MULTIPLIER),
            "minPrice": entry.min_price,
            "suggestedRounding": entry.suggested_rounding,
            "source": "static",
        }
    for code, live in (data.entries if data else {}).items():
        row = merged.setdefault(
            code,
            {
                "bigMacMultiplier": BIG_MAC_INDEX.get(code, DEFAULT_BIG_MAC_MULTIPLIER),
                "minPrice": live.min_price,
                "suggestedRounding": get_pricing_index_entry(code).suggested_rounding,
            },
        )
        row.update(
            pppMultiplier=live.ppp_multiplier,
            pppConversionFactor=live.ppp_conversion_factor,
            source="world-bank",
        )
    return merged
