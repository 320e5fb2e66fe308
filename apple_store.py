"""App Store Connect API client used by the bulk pricing flows."""

from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlparse

import jwt
import requests

from price_tiers import PricePointId, PriceTier, ResolvedPrice, to_decimal_price
from territories import UNSUPPORTED_IAP_TERRITORIES, to_alpha3

logger = logging.getLogger(__name__)

_APPLE_API_BASE = os.getenv("APP_STORE_API_BASE_URL", "https://api.appstoreconnect.apple.com")
_APPLE_API_TIMEOUT = int(os.getenv("APPLE_API_TIMEOUT", "30"))
_TOKEN_LIFETIME = 19 * 60  # Apple rejects tokens living longer than 20 minutes
_PAGE_LIMIT = 200


class AppleStoreConfigError(RuntimeError):
    """Raised when required Apple configuration is missing or rejected."""


class AppleStoreApiError(RuntimeError):
    """Represents an error response returned by the Apple API."""

    def __init__(
        self,
        status_code: int,
        body_text: str,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.status_code = status_code
        self.body_text = body_text
        self.errors = errors or []
        super().__init__(self._build_message())

    @property
    def detail(self) -> str:
        return _summarize_api_errors(self.errors) or self.body_text or ""

    def _build_message(self) -> str:
        if self.errors:
            summary = _summarize_api_errors(self.errors)
            if summary:
                return f"Apple API 오류 {self.status_code}: {summary}"
        if self.body_text:
            return f"Apple API 오류 {self.status_code}: {self.body_text}"
        return f"Apple API 오류 {self.status_code}"


def _normalize_error_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key in ("id", "status", "code", "title", "detail"):
        value = entry.get(key)
        if value is None:
            continue
        if isinstance(value, (str, int)):
            normalized[key] = str(value)
        else:
            normalized[key] = json.dumps(value, ensure_ascii=False, sort_keys=True)
    return normalized


def _summarize_api_errors(errors: Iterable[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for entry in errors:
        if not isinstance(entry, dict):
            continue
        normalized = _normalize_error_entry(entry)
        code = normalized.get("code") or normalized.get("status")
        detail = normalized.get("detail") or normalized.get("title")
        if code or detail:
            parts.append(" ".join(filter(None, [f"[{code}]" if code else "", detail])))
    return "; ".join(parts)


def _format_authorization_error(body_text: str) -> str:
    guidance = (
        "Apple API 인증에 실패했습니다. Issuer ID, Key ID, 비공개 키 파일을 다시 확인하고 "
        "서버의 시스템 시간이 정확한지 검증해 주세요."
    )
    if not body_text:
        return guidance
    try:
        payload = json.loads(body_text)
    except json.JSONDecodeError:
        return f"{guidance} 원본 오류: {body_text}"

    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list) and errors:
        entry = errors[0] or {}
        code = entry.get("code") or entry.get("status")
        detail = entry.get("detail") or entry.get("title")
        if code or detail:
            suffix = " ".join(filter(None, [f"[{code}]" if code else "", detail]))
            return f"{guidance} {suffix}".strip()
    return f"{guidance} 원본 오류: {body_text}"


def _extract_cursor(next_link: Optional[str]) -> Optional[str]:
    if not next_link:
        return None

    parsed = urlparse(next_link)
    query = parse_qs(parsed.query or "")
    for key in ("page[cursor]", "cursor"):
        values = query.get(key)
        if values:
            return values[0]
    if "page%5Bcursor%5D=" in next_link:
        return next_link.split("page%5Bcursor%5D=", 1)[1].split("&", 1)[0]
    return None


def _index_included(included: Iterable[Dict[str, Any]], resource_type: str) -> Dict[str, Dict[str, Any]]:
    mapping: Dict[str, Dict[str, Any]] = {}
    for entry in included:
        if not isinstance(entry, dict) or entry.get("type") != resource_type:
            continue
        entry_id = entry.get("id")
        if isinstance(entry_id, str):
            mapping[entry_id] = entry
    return mapping


def _relationship_id(entry: Dict[str, Any], name: str) -> Optional[str]:
    relationships = entry.get("relationships") or {}
    data = (relationships.get(name) or {}).get("data") or {}
    value = data.get("id")
    return value if isinstance(value, str) else None


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if value is None:
        raise AppleStoreConfigError(f"환경 변수 '{name}'이(가) 설정되어 있지 않습니다.")
    value = value.strip()
    if not value:
        raise AppleStoreConfigError(f"환경 변수 '{name}'이(가) 비어 있습니다.")
    return value


_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_KEY_ID_RE = re.compile(r"^[A-Z0-9]{10}$")


def _require_uuid_env(name: str) -> str:
    value = _require_env(name)
    if not _UUID_RE.match(value):
        raise AppleStoreConfigError(
            f"환경 변수 '{name}' 값이 올바른 Issuer ID 형식(UUID)인지 확인해 주세요."
        )
    return value


def _require_key_id_env(name: str) -> str:
    value = _require_env(name)
    if not _KEY_ID_RE.match(value.upper()):
        raise AppleStoreConfigError(
            f"환경 변수 '{name}' 값이 올바른 Key ID 형식(대문자 영숫자 10자)인지 확인해 주세요."
        )
    return value.upper()


def _normalize_private_key(contents: str) -> str:
    contents = contents.lstrip("﻿").strip().replace("\\n", "\n")
    if "-----BEGIN" not in contents or "PRIVATE KEY-----" not in contents:
        raise AppleStoreConfigError(
            "Apple API 비공개 키 형식이 올바르지 않습니다. App Store Connect에서 내려받은 .p8 파일인지 확인해 주세요."
        )
    return contents + ("\n" if not contents.endswith("\n") else "")


def _load_private_key() -> str:
    inline = os.getenv("APP_STORE_PRIVATE_KEY", "").strip()
    if inline:
        return _normalize_private_key(inline)

    path = _require_env("APP_STORE_PRIVATE_KEY_PATH")
    try:
        with open(path, "r", encoding="utf-8") as fp:
            contents = fp.read()
    except OSError as exc:
        raise AppleStoreConfigError(
            f"APP_STORE_PRIVATE_KEY_PATH에서 키를 읽을 수 없습니다: {exc}"
        ) from exc
    return _normalize_private_key(contents)


@dataclass(frozen=True)
class AppleCredentials:
    issuer_id: str
    key_id: str
    private_key: str = field(repr=False)

    @classmethod
    def from_env(cls) -> "AppleCredentials":
        return cls(
            issuer_id=_require_uuid_env("APP_STORE_ISSUER_ID"),
            key_id=_require_key_id_env("APP_STORE_KEY_ID"),
            private_key=_load_private_key(),
        )


@dataclass(frozen=True)
class SubscriptionPrice:
    subscription_price_id: str
    territory: str
    start_date: Optional[str]
    price_point_id: Optional[str] = None
    customer_price: Optional[str] = None
    currency: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriptionPriceId": self.subscription_price_id,
            "territory": self.territory,
            "startDate": self.start_date,
            "pricePointId": self.price_point_id,
            "customerPrice": self.customer_price,
            "currency": self.currency,
        }


@dataclass
class SubscriptionPrices:
    current: Dict[str, SubscriptionPrice] = field(default_factory=dict)
    scheduled: Dict[str, SubscriptionPrice] = field(default_factory=dict)


class AppleStoreClient:
    """Thin App Store Connect client bound to one set of credentials.

    Calls are blocking; async callers run them with ``asyncio.to_thread``.
    """

    def __init__(
        self,
        credentials: AppleCredentials,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = _APPLE_API_BASE,
        timeout: float = _APPLE_API_TIMEOUT,
    ) -> None:
        self.credentials = credentials
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token_lock = threading.Lock()
        self._token_cache: Optional[Tuple[str, int]] = None

    @classmethod
    def from_env(cls) -> "AppleStoreClient":
        return cls(AppleCredentials.from_env())

    # -- authentication -------------------------------------------------

    def generate_jwt(self, *, force_refresh: bool = False) -> str:
        """Return a cached ES256 token, generating a new one when near expiry."""
        if force_refresh:
            self.invalidate_token()

        now = int(time.time())
        with self._token_lock:
            cached = self._token_cache
            if cached and now < cached[1] - 30:
                return cached[0]

            issued_at = now - 10  # small clock skew allowance
            expires_at = issued_at + _TOKEN_LIFETIME
            payload = {
                "iss": self.credentials.issuer_id,
                "iat": issued_at,
                "exp": expires_at,
                "aud": "appstoreconnect-v1",
            }
            try:
                token = jwt.encode(
                    payload,
                    self.credentials.private_key,
                    algorithm="ES256",
                    headers={"kid": self.credentials.key_id, "typ": "JWT"},
                )
            except (ValueError, TypeError, jwt.PyJWTError) as exc:
                raise AppleStoreConfigError(
                    "JWT를 생성하는 데 실패했습니다. 비공개 키가 ES256(P-256) 키인지 확인해 주세요."
                ) from exc
            self._token_cache = (token, expires_at)
            return token

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token_cache = None

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.generate_jwt()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # -- transport ------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not path.startswith("/"):
            path = "/" + path
        if not path.startswith(("/v1/", "/v2/")):
            path = "/v1" + path
        url = self.base_url + path
        logger.debug("Apple API Request %s %s params=%s", method, url, params)

        try:
            response = self.session.request(
                method,
                url,
                headers=self._auth_headers(),
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.error("Request error on %s %s: %s", method, url, exc)
            raise

        if response.status_code >= 400:
            body_text = (response.text or "").strip()
            errors: List[Dict[str, Any]] = []
            if body_text:
                try:
                    payload = response.json()
                except ValueError:
                    payload = None
                if isinstance(payload, dict) and isinstance(payload.get("errors"), list):
                    errors = [entry for entry in payload["errors"] if isinstance(entry, dict)]

            summary = _summarize_api_errors(errors) if errors else body_text
            # 409 on scheduled price deletion is expected and handled upstream
            log_level = logging.INFO if response.status_code == 409 else logging.ERROR
            logger.log(
                log_level,
                "Apple API error %s: %s | URL: %s",
                response.status_code,
                summary or "No response body",
                url,
            )
            if response.status_code == 401:
                self.invalidate_token()
                raise AppleStoreConfigError(_format_authorization_error(body_text))
            raise AppleStoreApiError(response.status_code, body_text, errors)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _paginate(self, path: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        cursor: Optional[str] = None
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            response = self._request("GET", path, params=page_params)
            yield response
            cursor = _extract_cursor((response.get("links") or {}).get("next"))
            if not cursor or not response.get("data"):
                return

    # -- in-app purchases -----------------------------------------------

    def list_iap_price_points(self, iap_id: str, territory: str) -> List[PriceTier]:
        """All price points of one in-app purchase in one territory."""
        normalized_territory = (territory or "USA").strip().upper()
        tiers: List[PriceTier] = []
        params = {
            "filter[territory]": normalized_territory,
            "include": "territory",
            "limit": _PAGE_LIMIT,
        }
        for page in self._paginate(f"/v2/inAppPurchases/{iap_id}/pricePoints", params):
            territory_map = _index_included(page.get("included") or [], "territories")
            for entry in page.get("data") or []:
                tier = _parse_price_point(entry, territory_map, normalized_territory, "iap")
                if tier is not None:
                    tiers.append(tier)

        logger.info(
            "Fetched %d price points for IAP %s in territory %s", len(tiers), iap_id, normalized_territory
        )
        return tiers

    def get_iap_source_id(self, iap_id: str) -> str:
        """Source id embedded in the product's price point identifiers.

        Costs one request for a single USA price point; falls back to ``iap_id``.
        """
        response = self._request(
            "GET",
            f"/v2/inAppPurchases/{iap_id}/pricePoints",
            params={"filter[territory]": "USA", "limit": 1},
        )
        for entry in response.get("data") or []:
            entry_id = entry.get("id")
            if not isinstance(entry_id, str):
                continue
            try:
                return PricePointId.decode(entry_id, "iap").source_id
            except ValueError:
                logger.debug("Price point id %s is not decodable", entry_id)
        return str(iap_id)

    def update_iap_price_schedule(
        self,
        iap_id: str,
        prices: Sequence[ResolvedPrice],
        base_territory: str = "USA",
    ) -> Optional[str]:
        """Replace the manual price schedule of an in-app purchase."""
        base = base_territory.upper()
        supported = [price for price in prices if price.territory not in UNSUPPORTED_IAP_TERRITORIES]
        dropped = [price.territory for price in prices if price.territory in UNSUPPORTED_IAP_TERRITORIES]
        if dropped:
            logger.info("Skipping unsupported territories for IAP %s: %s", iap_id, ", ".join(dropped))
        if not any(price.territory == base for price in supported):
            raise ValueError(f"기준 테리토리 {base}의 가격이 없어 가격 일정을 만들 수 없습니다.")

        included: List[Dict[str, Any]] = []
        relationships: List[Dict[str, str]] = []
        for index, price in enumerate(supported):
            local_id = f"${{price-{index}}}"
            relationships.append({"type": "inAppPurchasePrices", "id": local_id})
            included.append(
                {
                    "type": "inAppPurchasePrices",
                    "id": local_id,
                    "attributes": {"startDate": None},
                    "relationships": {
                        "inAppPurchasePricePoint": {
                            "data": {"type": "inAppPurchasePricePoints", "id": price.price_point_id}
                        },
                    },
                }
            )

        payload: Dict[str, Any] = {
            "data": {
                "type": "inAppPurchasePriceSchedules",
                "relationships": {
                    "inAppPurchase": {"data": {"type": "inAppPurchases", "id": iap_id}},
                    "baseTerritory": {"data": {"type": "territories", "id": base}},
                    "manualPrices": {"data": relationships},
                },
            },
            "included": included,
        }
        logger.info(
            "Creating price schedule for IAP %s with %d manual prices (base territory: %s)",
            iap_id,
            len(relationships),
            base,
        )
        response = self._request("POST", "/v1/inAppPurchasePriceSchedules", json=payload)
        return (response.get("data") or {}).get("id")

    # -- subscriptions --------------------------------------------------

    def list_subscription_price_points(self, subscription_id: str, territory: str) -> List[PriceTier]:
        normalized_territory = (territory or "USA").strip().upper()
        tiers: List[PriceTier] = []
        params = {
            "filter[territory]": normalized_territory,
            "include": "territory",
            "limit": _PAGE_LIMIT,
            "fields[subscriptionPricePoints]": "customerPrice,proceeds,territory",
        }
        for page in self._paginate(f"/v1/subscriptions/{subscription_id}/pricePoints", params):
            territory_map = _index_included(page.get("included") or [], "territories")
            for entry in page.get("data") or []:
                tier = _parse_price_point(entry, territory_map, normalized_territory, "subscription")
                if tier is not None:
                    tiers.append(tier)
        return tiers

    def list_subscription_prices(
        self, subscription_id: str, *, today: Optional[_dt.date] = None
    ) -> SubscriptionPrices:
        """Current and future-dated prices of a subscription, keyed by territory."""
        today_text = (today or _dt.datetime.now(_dt.timezone.utc).date()).isoformat()
        params = {
            "include": "subscriptionPricePoint,territory",
            "limit": _PAGE_LIMIT,
            "fields[subscriptionPrices]": "startDate,preserved,subscriptionPricePoint,territory",
            "fields[subscriptionPricePoints]": "customerPrice,proceeds",
            "fields[territories]": "currency",
        }
        prices = SubscriptionPrices()
        for page in self._paginate(f"/v1/subscriptions/{subscription_id}/prices", params):
            included = page.get("included") or []
            point_map = _index_included(included, "subscriptionPricePoints")
            territory_map = _index_included(included, "territories")
            for entry in page.get("data") or []:
                price = _parse_subscription_price(entry, point_map, territory_map)
                if price is None:
                    continue
                if price.start_date and price.start_date > today_text:
                    existing = prices.scheduled.get(price.territory)
                    if existing is None or (existing.start_date or "") < price.start_date:
                        prices.scheduled[price.territory] = price
                    continue
                existing = prices.current.get(price.territory)
                if existing is None or (existing.start_date or "") <= (price.start_date or ""):
                    prices.current[price.territory] = price
        return prices

    def create_subscription_price(
        self,
        subscription_id: str,
        price_point_id: str,
        territory: str,
        start_date: Optional[str] = None,
    ) -> Optional[str]:
        payload = {
            "data": {
                "type": "subscriptionPrices",
                "attributes": {"startDate": start_date, "preserveCurrentPrice": False},
                "relationships": {
                    "subscription": {"data": {"type": "subscriptions", "id": subscription_id}},
                    "subscriptionPricePoint": {
                        "data": {"type": "subscriptionPricePoints", "id": price_point_id}
                    },
                    "territory": {"data": {"type": "territories", "id": territory.upper()}},
                },
            }
        }
        response = self._request("POST", "/v1/subscriptionPrices", json=payload)
        return (response.get("data") or {}).get("id")

    def delete_subscription_price(self, subscription_price_id: str) -> None:
        self._request("DELETE", f"/v1/subscriptionPrices/{subscription_price_id}")


def _territory_from_id(entry_id: str, layout: str) -> Optional[str]:
    try:
        decoded = PricePointId.decode(entry_id, layout)
    except ValueError:
        return None
    return to_alpha3(decoded.territory) or decoded.territory


def _parse_price_point(
    entry: Dict[str, Any],
    territory_map: Dict[str, Dict[str, Any]],
    default_territory: str,
    layout: str,
) -> Optional[PriceTier]:
    entry_id = entry.get("id")
    attributes = entry.get("attributes") or {}
    customer_price = to_decimal_price(attributes.get("customerPrice"))
    if not isinstance(entry_id, str) or customer_price is None:
        return None

    territory_id = _relationship_id(entry, "territory") or default_territory
    currency = attributes.get("currency")
    if not currency:
        currency = ((territory_map.get(territory_id) or {}).get("attributes") or {}).get("currency")

    tier_ref = attributes.get("priceTier")
    if not tier_ref:
        try:
            tier_ref = PricePointId.decode(entry_id, layout).tier
        except ValueError:
            tier_ref = None

    return PriceTier(
        id=entry_id,
        customer_price=customer_price,
        proceeds=to_decimal_price(attributes.get("proceeds")),
        tier=tier_ref,
        territory=territory_id,
        currency_code=currency,
    )


def _parse_subscription_price(
    entry: Dict[str, Any],
    point_map: Dict[str, Dict[str, Any]],
    territory_map: Dict[str, Dict[str, Any]],
) -> Optional[SubscriptionPrice]:
    entry_id = entry.get("id")
    if not isinstance(entry_id, str):
        return None
    territory = _relationship_id(entry, "territory") or _territory_from_id(entry_id, "subscription")
    if not territory:
        logger.debug("Subscription price %s has no territory", entry_id)
        return None

    point_id = _relationship_id(entry, "subscriptionPricePoint")
    point_attributes = ((point_map.get(point_id) or {}).get("attributes") or {}) if point_id else {}
    territory_attributes = (territory_map.get(territory) or {}).get("attributes") or {}
    return SubscriptionPrice(
        subscription_price_id=entry_id,
        territory=territory.upper(),
        start_date=(entry.get("attributes") or {}).get("startDate"),
        price_point_id=point_id,
        customer_price=point_attributes.get("customerPrice"),
        currency=territory_attributes.get("currency"),
    )
