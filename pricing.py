import logging
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from conversion_indexes import (
    FALLBACK_EXCHANGE_RATES,
    PPPEntry,
    get_big_mac_multiplier,
    get_local_currency,
    get_pricing_index_entry,
)
from territories import billing_currency, to_alpha2

logger = logging.getLogger(__name__)

PRICING_STRATEGIES = ("direct", "ppp", "bigmac", "custom")
ROUNDING_MODES = ("charm", "whole", "none")
PRICE_OPERATIONS = ("fixed", "percentage", "round")

# Used in place of the PPP price when that price, converted back to USD through
# the local currency, ends up above the base price (hyperinflated currencies).
AFFORDABILITY_MULTIPLIER = 0.25

NO_DECIMAL_CURRENCIES = frozenset(
    {
        "JPY", "KRW", "VND", "IDR", "CLP", "PYG", "HUF", "COP",
        "UGX", "TZS", "KZT", "MNT", "IQD", "XOF", "XAF",
    }
)
CFA_FRANC_CURRENCIES = frozenset({"XOF", "XAF"})

_NANOS_PER_UNIT = 1_000_000_000
_NANOS_PER_CENT = 10_000_000
_CENT = Decimal("0.01")

Number = Union[int, float, Decimal]


@dataclass(frozen=True)
class Money:
    """Exact decimal amount: ``units + nanos / 1e9`` in ``currency_code``."""

    currency_code: str
    units: str = "0"
    nanos: int = 0

    def __post_init__(self) -> None:
        try:
            units = int(self.units)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"units 값이 올바르지 않습니다: {self.units!r}") from exc
        if not -999_999_999 <= self.nanos <= 999_999_999:
            raise ValueError(f"nanos 값이 범위를 벗어났습니다: {self.nanos}")
        if units and self.nanos and (units > 0) != (self.nanos > 0):
            raise ValueError("units와 nanos의 부호가 일치해야 합니다.")

    def to_decimal(self) -> Decimal:
        return Decimal(int(self.units)) + Decimal(self.nanos) / _NANOS_PER_UNIT

    def to_float(self) -> float:
        return float(self.to_decimal())

    def to_api_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"currencyCode": self.currency_code, "units": self.units}
        if self.nanos:
            payload["nanos"] = self.nanos
        return payload

    @classmethod
    def from_api_dict(cls, payload: Mapping[str, Any]) -> "Money":
        currency = payload.get("currencyCode")
        if not currency:
            raise ValueError("currencyCode가 없습니다.")
        return cls(
            currency_code=str(currency),
            units=str(payload.get("units") or "0"),
            nanos=int(payload.get("nanos") or 0),
        )


def _to_decimal(amount: Number) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        # str() keeps the shortest repr of a float, so 9.19 stays 9.19
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"금액 형식이 올바르지 않습니다: {amount!r}") from exc


def money_from_amount(amount: Number, currency_code: str) -> Money:
    """Convert a float amount to Money, rounding to whole cents first."""
    cents = _to_decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP)
    total_nanos = int(cents * 100) * _NANOS_PER_CENT
    sign = -1 if total_nanos < 0 else 1
    units, nanos = divmod(abs(total_nanos), _NANOS_PER_UNIT)
    return Money(currency_code=currency_code, units=str(sign * units), nanos=sign * nanos)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _nearest_charm_whole(amount: float) -> float:
    # Charm endings for currencies without a minor unit: any integer below 100,
    # x9 between 99 and 999, x90 from 1090 upward. Ties go to the lower price.
    candidates = (
        min(max(_round_half_up(amount), 1), 99),
        min(max(_round_half_up((amount + 1) / 10), 10), 100) * 10 - 1,
        max(_round_half_up((amount + 10) / 100), 11) * 100 - 10,
    )
    return float(min(candidates, key=lambda candidate: (abs(candidate - amount), candidate)))


def apply_rounding(amount: float, mode: str, currency_code: str) -> float:
    if mode not in ROUNDING_MODES:
        raise ValueError(f"지원하지 않는 반올림 방식입니다: {mode}")

    if mode == "none":
        return float(_to_decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP))

    currency = (currency_code or "").upper()
    if currency in CFA_FRANC_CURRENCIES:
        return float(_round_half_up(amount / 100) * 100)

    if currency in NO_DECIMAL_CURRENCIES:
        if mode == "charm":
            return _nearest_charm_whole(amount)
        if amount >= 1000:
            return float(_round_half_up(amount / 100) * 100)
        if amount >= 100:
            return float(_round_half_up(amount / 10) * 10)
        return float(_round_half_up(amount))

    if mode == "whole":
        return float(_round_half_up(amount))

    closest_99 = round(_round_half_up(amount + 0.01) - 0.01, 2)
    return max(closest_99, 0.99)


def get_exchange_rate(currency_code: str, exchange_rates: Optional[Mapping[str, float]] = None) -> float:
    """Units of ``currency_code`` per USD: live table first, then the static fallback."""
    currency = (currency_code or "").upper()
    if exchange_rates and currency in exchange_rates:
        return float(exchange_rates[currency])
    fallback = FALLBACK_EXCHANGE_RATES.get(currency)
    if fallback is None:
        logger.warning("No exchange rate found for %s, defaulting to 1.0 (USD parity)", currency)
        return 1.0
    return fallback


def has_exchange_rate(currency_code: str, exchange_rates: Optional[Mapping[str, float]] = None) -> bool:
    currency = (currency_code or "").upper()
    return bool(exchange_rates and currency in exchange_rates) or currency in FALLBACK_EXCHANGE_RATES


@dataclass(frozen=True)
class CalculatedPrice:
    territory_code: str
    currency_code: str
    raw_amount: float
    rounded_amount: float
    strategy: str
    multiplier: float
    multiplier_source: str
    exchange_rate: float
    adjusted_usd_price: float
    price: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            "territory": self.territory_code,
            "currency": self.currency_code,
            "rawAmount": self.raw_amount,
            "roundedAmount": self.rounded_amount,
            "strategy": self.strategy,
            "multiplier": self.multiplier,
            "multiplierSource": self.multiplier_source,
            "exchangeRate": self.exchange_rate,
            "adjustedUsdPrice": self.adjusted_usd_price,
            "price": self.price.to_api_dict(),
        }


def _resolve_currency(code: str, alpha2: str, currency_overrides: Optional[Mapping[str, str]]) -> str:
    if currency_overrides:
        override = currency_overrides.get(code) or currency_overrides.get(alpha2)
        if override:
            return override.upper()
    return billing_currency(code)


def calculate_regional_price(
    base_amount: float,
    territory_code: str,
    strategy: str = "ppp",
    rounding_mode: str = "charm",
    custom_multiplier: Optional[float] = None,
    ppp_data: Optional[Mapping[str, PPPEntry]] = None,
    currency_overrides: Optional[Mapping[str, str]] = None,
    exchange_rates: Optional[Mapping[str, float]] = None,
    *,
    affordability_multiplier: float = AFFORDABILITY_MULTIPLIER,
) -> CalculatedPrice:
    """Convert a USD base price into the billing currency of one territory.

    ``territory_code`` may be a 3-letter App Store territory or a 2-letter
    Google Play region; the code alphabet decides which storefront's billing
    currency applies unless ``currency_overrides`` names one.
    """
    if strategy not in PRICING_STRATEGIES:
        raise ValueError(f"지원하지 않는 가격 전략입니다: {strategy}")
    if rounding_mode not in ROUNDING_MODES:
        raise ValueError(f"지원하지 않는 반올림 방식입니다: {rounding_mode}")
    if base_amount is None or base_amount <= 0:
        raise ValueError("기준 가격은 0보다 커야 합니다.")

    code = (territory_code or "").strip().upper()
    alpha2 = to_alpha2(code)
    currency = _resolve_currency(code, alpha2, currency_overrides)
    exchange_rate = get_exchange_rate(currency, exchange_rates)
    index_entry = get_pricing_index_entry(alpha2)
    ppp_entry = ppp_data.get(alpha2) if ppp_data else None
    static_multiplier = ppp_entry.ppp_multiplier if ppp_entry else index_entry.ppp_multiplier
    local_currency = get_local_currency(alpha2)

    if strategy == "direct":
        multiplier, source = 1.0, "direct"
        raw_amount = base_amount * exchange_rate
    elif strategy == "ppp":
        factor = ppp_entry.ppp_conversion_factor if ppp_entry else None
        if not factor:
            multiplier, source = static_multiplier, "static"
            raw_amount = base_amount * multiplier * exchange_rate
        elif currency == local_currency:
            raw_amount = base_amount * factor
            multiplier, source = factor / exchange_rate, "world-bank"
        elif not has_exchange_rate(local_currency, exchange_rates):
            logger.warning(
                "Missing exchange rate for %s (%s), using static multiplier", local_currency, code
            )
            multiplier, source = static_multiplier, "static"
            raw_amount = base_amount * multiplier * exchange_rate
        else:
            ppp_usd = base_amount * factor / get_exchange_rate(local_currency, exchange_rates)
            if ppp_usd > base_amount:
                logger.info(
                    "PPP price for %s exceeds base (%.2f > %.2f), using affordability multiplier",
                    code,
                    ppp_usd,
                    base_amount,
                )
                multiplier, source = affordability_multiplier, "static"
                raw_amount = base_amount * multiplier * exchange_rate
            else:
                multiplier, source = ppp_usd / base_amount, "world-bank"
                raw_amount = ppp_usd * exchange_rate
    elif strategy == "bigmac":
        multiplier, source = get_big_mac_multiplier(alpha2), "big-mac"
        raw_amount = base_amount * multiplier * exchange_rate
    else:
        if custom_multiplier is None or custom_multiplier <= 0:
            raise ValueError("custom 전략에는 0보다 큰 배수가 필요합니다.")
        multiplier, source = float(custom_multiplier), "custom"
        raw_amount = base_amount * multiplier * exchange_rate

    rounded = apply_rounding(raw_amount, rounding_mode, currency)

    # Floor prices are defined in the local currency.
    min_price = ppp_entry.min_price if ppp_entry else index_entry.min_price
    if currency != local_currency:
        min_price = min_price / get_exchange_rate(local_currency, exchange_rates) * exchange_rate
    min_price = apply_rounding(min_price, "none", currency)
    final_amount = max(rounded, min_price)

    return CalculatedPrice(
        territory_code=code,
        currency_code=currency,
        raw_amount=raw_amount,
        rounded_amount=final_amount,
        strategy=strategy,
        multiplier=multiplier,
        multiplier_source=source,
        exchange_rate=exchange_rate,
        adjusted_usd_price=raw_amount / exchange_rate if exchange_rate else raw_amount,
        price=money_from_amount(final_amount, currency),
    )


def calculate_bulk_prices(
    base_amount: float,
    territory_codes: Iterable[str],
    strategy: str = "ppp",
    rounding_mode: str = "charm",
    custom_multiplier: Optional[float] = None,
    ppp_data: Optional[Mapping[str, PPPEntry]] = None,
    currency_overrides: Optional[Mapping[str, str]] = None,
    exchange_rates: Optional[Mapping[str, float]] = None,
    *,
    custom_multipliers: Optional[Mapping[str, float]] = None,
) -> List[CalculatedPrice]:
    prices: List[CalculatedPrice] = []
    for code in territory_codes:
        multiplier = custom_multiplier
        if custom_multipliers and code in custom_multipliers:
            multiplier = custom_multipliers[code]
        prices.append(
            calculate_regional_price(
                base_amount,
                code,
                strategy,
                rounding_mode,
                multiplier,
                ppp_data,
                currency_overrides,
                exchange_rates,
            )
        )
    return prices


def calculate_new_price(current: Money, operation: str, value: Optional[float] = None) -> Money:
    """Apply a manual price edit.

    ``fixed`` sets the price to ``value``, ``percentage`` changes it by
    ``value`` percent and ``round`` keeps the whole part and replaces the
    fraction with ``value`` (default .99). Results never go below zero.
    """
    current_amount = current.to_decimal()
    if operation == "fixed":
        new_amount = _to_decimal(value) if value is not None else current_amount
    elif operation == "percentage":
        new_amount = current_amount * (1 + _to_decimal(value or 0) / 100)
    elif operation == "round":
        ending = _to_decimal(value) if value is not None else Decimal("0.99")
        new_amount = Decimal(math.floor(current_amount)) + ending
    else:
        raise ValueError(f"지원하지 않는 가격 변경 방식입니다: {operation}")

    new_amount = max(new_amount, Decimal(0))
    total_nanos = int((new_amount * _NANOS_PER_UNIT).to_integral_value(rounding=ROUND_HALF_UP))
    units, nanos = divmod(total_nanos, _NANOS_PER_UNIT)
    return Money(currency_code=current.currency_code, units=str(units), nanos=nanos)
