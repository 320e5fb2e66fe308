from dataclasses import dataclass
from typing import Dict, NamedTuple, Optional


class PricingIndexEntry(NamedTuple):
    ppp_multiplier: float
    min_price: float  # in the region's local currency
    suggested_rounding: float


@dataclass(frozen=True)
class PPPEntry:
    """Purchasing-power data for one region.

    ``ppp_conversion_factor`` is local currency units per international dollar
    (World Bank PA.NUS.PPP); it is ``None`` when only the static multiplier is known.
    """

    region_code: str
    ppp_multiplier: float
    min_price: float
    ppp_conversion_factor: Optional[float] = None
    year: Optional[int] = None
    source: str = "static"

    def to_dict(self) -> Dict[str, object]:
        return {
            "regionCode": self.region_code,
            "pppMultiplier": self.ppp_multiplier,
            "pppConversionFactor": self.ppp_conversion_factor,
            "minPrice": self.min_price,
            "year": self.year,
            "source": self.source,
        }


# Static purchasing-power multipliers relative to the US (1.0), used when live
# World Bank data is unavailable. Keyed by 2-letter region code.
PRICING_INDEX: Dict[str, PricingIndexEntry] = {
    # North America
    "US": PricingIndexEntry(1.0, 0.99, 0.99),
    "CA": PricingIndexEntry(0.85, 0.99, 0.99),
    "MX": PricingIndexEntry(0.57, 10, 0),

    # Western Europe
    "GB": PricingIndexEntry(0.91, 0.79, 0.99),
    "DE": PricingIndexEntry(0.83, 0.99, 0.99),
    "FR": PricingIndexEntry(0.81, 0.99, 0.99),
    "IT": PricingIndexEntry(0.71, 0.99, 0.99),
    "ES": PricingIndexEntry(0.67, 0.99, 0.99),
    "NL": PricingIndexEntry(0.87, 0.99, 0.99),
    "BE": PricingIndexEntry(0.84, 0.99, 0.99),
    "AT": PricingIndexEntry(0.84, 0.99, 0.99),
    "CH": PricingIndexEntry(1.23, 0.99, 0.00),
    "IE": PricingIndexEntry(0.88, 0.99, 0.99),
    "PT": PricingIndexEntry(0.61, 0.99, 0.99),
    "LU": PricingIndexEntry(0.97, 0.99, 0.99),
    "MC": PricingIndexEntry(0.81, 0.99, 0.99),
    "SM": PricingIndexEntry(0.84, 0.99, 0.99),
    "VA": PricingIndexEntry(0.81, 0.99, 0.99),
    "LI": PricingIndexEntry(1.23, 0.99, 0.00),

    # Northern Europe
    "SE": PricingIndexEntry(0.96, 9, 0),
    "NO": PricingIndexEntry(0.95, 9, 0),
    "DK": PricingIndexEntry(0.96, 6, 0),
    "FI": PricingIndexEntry(0.90, 0.99, 0.99),
    "IS": PricingIndexEntry(1.16, 0.99, 0.99),

    # Eastern Europe
    "PL": PricingIndexEntry(0.55, 2, 0.99),
    "CZ": PricingIndexEntry(0.63, 19, 0),
    "HU": PricingIndexEntry(0.55, 299, 0),
    "RO": PricingIndexEntry(0.44, 4, 0.99),
    "BG": PricingIndexEntry(0.46, 0.99, 0.99),
    "SK": PricingIndexEntry(0.60, 0.99, 0.99),
    "SI": PricingIndexEntry(0.65, 0.99, 0.99),
    "HR": PricingIndexEntry(0.53, 0.99, 0.99),
    "RS": PricingIndexEntry(0.46, 99, 0),
    "BA": PricingIndexEntry(0.44, 0.99, 0.99),
    "MK": PricingIndexEntry(0.38, 0.99, 0.99),
    "AL": PricingIndexEntry(0.48, 0.99, 0.99),
    "MD": PricingIndexEntry(0.43, 0.99, 0.99),

    # Baltic States
    "EE": PricingIndexEntry(0.69, 0.99, 0.99),
    "LV": PricingIndexEntry(0.59, 0.99, 0.99),
    "LT": PricingIndexEntry(0.58, 0.99, 0.99),

    # CIS & Eastern
    "RU": PricingIndexEntry(0.38, 59, 0),
    "UA": PricingIndexEntry(0.27, 19, 0),
    "BY": PricingIndexEntry(0.29, 0.99, 0.99),
    "KZ": PricingIndexEntry(0.32, 399, 0),
    "UZ": PricingIndexEntry(0.28, 0.99, 0.99),
    "KG": PricingIndexEntry(0.30, 0.99, 0.99),
    "TJ": PricingIndexEntry(0.29, 0.99, 0.99),
    "TM": PricingIndexEntry(0.43, 0.99, 0.99),
    "AM": PricingIndexEntry(0.39, 0.99, 0.99),
    "AZ": PricingIndexEntry(0.29, 0.99, 0.99),
    "GE": PricingIndexEntry(0.33, 2, 0.99),

    # Middle East
    "IL": PricingIndexEntry(1.13, 3, 0.90),
    "AE": PricingIndexEntry(0.63, 3, 0.99),
    "SA": PricingIndexEntry(0.49, 3, 0.99),
    "QA": PricingIndexEntry(0.61, 3, 0.99),
    "KW": PricingIndexEntry(0.63, 0.99, 0.99),
    "BH": PricingIndexEntry(0.44, 0.99, 0.99),
    "OM": PricingIndexEntry(0.49, 0.99, 0.99),
    "JO": PricingIndexEntry(0.43, 0.50, 0.99),
    "LB": PricingIndexEntry(0.27, 0.99, 0.99),
    "IQ": PricingIndexEntry(0.42, 999, 0),
    "YE": PricingIndexEntry(0.39, 0.99, 0.99),

    # Asia Pacific - Developed
    "JP": PricingIndexEntry(0.61, 100, 0),
    "KR": PricingIndexEntry(0.56, 1000, 0),
    "AU": PricingIndexEntry(0.96, 0.99, 0.99),
    "NZ": PricingIndexEntry(0.88, 0.99, 0.99),
    "SG": PricingIndexEntry(0.63, 0.98, 0.98),
    "HK": PricingIndexEntry(0.72, 8, 0),
    "TW": PricingIndexEntry(0.60, 30, 0),
    "MO": PricingIndexEntry(0.57, 8, 0),

    # Asia Pacific - Emerging
    "IN": PricingIndexEntry(0.22, 10, 0),
    "ID": PricingIndexEntry(0.28, 10000, 0),
    "MY": PricingIndexEntry(0.36, 3, 0.90),
    "TH": PricingIndexEntry(0.33, 29, 0),
    "VN": PricingIndexEntry(0.27, 20000, 0),
    "PH": PricingIndexEntry(0.33, 49, 0),
    "PK": PricingIndexEntry(0.24, 150, 0),
    "BD": PricingIndexEntry(0.24, 80, 0),
    "LK": PricingIndexEntry(0.28, 199, 0),
    "NP": PricingIndexEntry(0.23, 0.99, 0.99),
    "MM": PricingIndexEntry(0.23, 1000, 0),
    "KH": PricingIndexEntry(0.33, 0.99, 0.99),
    "LA": PricingIndexEntry(0.20, 0.99, 0.99),
    "MN": PricingIndexEntry(0.34, 2500, 0),
    "MV": PricingIndexEntry(0.51, 0.99, 0.99),

    # Latin America
    "BR": PricingIndexEntry(0.48, 4, 0.90),
    "AR": PricingIndexEntry(0.29, 0.99, 0.99),  # billed in USD
    "CL": PricingIndexEntry(0.51, 500, 0),
    "CO": PricingIndexEntry(0.39, 2900, 0),
    "PE": PricingIndexEntry(0.53, 3, 0.90),
    "EC": PricingIndexEntry(0.43, 0.99, 0.99),
    "VE": PricingIndexEntry(0.10, 0.99, 0.99),
    "BO": PricingIndexEntry(0.34, 6, 0.90),
    "PY": PricingIndexEntry(0.39, 5000, 0),
    "UY": PricingIndexEntry(0.70, 0.99, 0.99),

    # Central America & Caribbean
    "GT": PricingIndexEntry(0.43, 0.99, 0.99),
    "CR": PricingIndexEntry(0.62, 500, 0),
    "PA": PricingIndexEntry(0.46, 0.99, 0.99),
    "SV": PricingIndexEntry(0.42, 0.99, 0.99),
    "HN": PricingIndexEntry(0.43, 0.99, 0.99),
    "NI": PricingIndexEntry(0.33, 0.99, 0.99),
    "BZ": PricingIndexEntry(0.54, 0.99, 0.99),
    "DO": PricingIndexEntry(0.37, 0.99, 0.99),
    "JM": PricingIndexEntry(0.60, 0.99, 0.99),
    "TT": PricingIndexEntry(0.52, 0.99, 0.99),
    "HT": PricingIndexEntry(0.68, 0.99, 0.99),
    "BS": PricingIndexEntry(0.96, 0.99, 0.99),
    "BB": PricingIndexEntry(1.07, 0.99, 0.99),
    "AG": PricingIndexEntry(0.71, 0.99, 0.99),
    "DM": PricingIndexEntry(0.49, 0.99, 0.99),
    "GD": PricingIndexEntry(0.58, 0.99, 0.99),
    "KN": PricingIndexEntry(0.69, 0.99, 0.99),
    "LC": PricingIndexEntry(0.51, 0.99, 0.99),
    "AW": PricingIndexEntry(0.78, 0.99, 0.99),
    "KY": PricingIndexEntry(1.12, 0.99, 0.99),
    "VG": PricingIndexEntry(1.02, 0.99, 0.99),
    "TC": PricingIndexEntry(0.99, 0.99, 0.99),
    "BM": PricingIndexEntry(1.15, 0.99, 0.99),
    "SR": PricingIndexEntry(0.28, 0.99, 0.99),

    # Africa - North
    "EG": PricingIndexEntry(0.13, 19, 0.99),
    "MA": PricingIndexEntry(0.44, 9, 0.00),
    "DZ": PricingIndexEntry(0.34, 99, 0),
    "TN": PricingIndexEntry(0.32, 0.99, 0.99),
    "LY": PricingIndexEntry(0.35, 0.99, 0.99),

    # Africa - Sub-Saharan
    "ZA": PricingIndexEntry(0.46, 9, 0.99),
    "NG": PricingIndexEntry(0.13, 200, 0),
    "KE": PricingIndexEntry(0.34, 99, 0),
    "GH": PricingIndexEntry(0.39, 5, 0.99),
    "TZ": PricingIndexEntry(0.29, 2000, 0),
    "UG": PricingIndexEntry(0.35, 0.99, 0.99),
    "RW": PricingIndexEntry(0.24, 0.99, 0.99),
    "ET": PricingIndexEntry(0.18, 0.99, 0.99),
    "SN": PricingIndexEntry(0.38, 500, 0),
    "CI": PricingIndexEntry(0.39, 500, 0),
    "CM": PricingIndexEntry(0.36, 500, 0),
    "AO": PricingIndexEntry(0.29, 0.99, 0.99),
    "MZ": PricingIndexEntry(0.39, 0.99, 0.99),
    "ZM": PricingIndexEntry(0.37, 0.99, 0.99),
    "ZW": PricingIndexEntry(0.33, 0.99, 0.99),
    "BW": PricingIndexEntry(0.37, 0.99, 0.99),
    "NA": PricingIndexEntry(0.43, 0.99, 0.99),
    "MU": PricingIndexEntry(0.39, 0.99, 0.99),
    "SC": PricingIndexEntry(0.53, 0.99, 0.99),
    "ML": PricingIndexEntry(0.36, 0.99, 0.99),
    "BF": PricingIndexEntry(0.37, 0.99, 0.99),
    "NE": PricingIndexEntry(0.39, 0.99, 0.99),
    "TD": PricingIndexEntry(0.39, 0.99, 0.99),
    "CF": PricingIndexEntry(0.45, 0.99, 0.99),
    "CD": PricingIndexEntry(0.45, 0.99, 0.99),
    "CG": PricingIndexEntry(0.39, 0.99, 0.99),
    "GA": PricingIndexEntry(0.42, 0.99, 0.99),
    "BJ": PricingIndexEntry(0.37, 0.99, 0.99),
    "TG": PricingIndexEntry(0.37, 0.99, 0.99),
    "GN": PricingIndexEntry(0.36, 0.99, 0.99),
    "GW": PricingIndexEntry(0.36, 0.99, 0.99),
    "SL": PricingIndexEntry(0.10, 0.99, 0.99),
    "LR": PricingIndexEntry(0.10, 0.99, 0.99),
    "GM": PricingIndexEntry(0.23, 0.99, 0.99),
    "CV": PricingIndexEntry(0.51, 0.99, 0.99),
    "ER": PricingIndexEntry(0.33, 0.99, 0.99),
    "DJ": PricingIndexEntry(0.45, 0.99, 0.99),
    "SO": PricingIndexEntry(2.00, 0.99, 0.99),
    "KM": PricingIndexEntry(0.46, 0.99, 0.99),

    # Oceania & Pacific
    "FJ": PricingIndexEntry(0.43, 0.99, 0.99),
    "PG": PricingIndexEntry(0.56, 0.99, 0.99),
    "WS": PricingIndexEntry(0.63, 0.99, 0.99),
    "TO": PricingIndexEntry(0.72, 0.99, 0.99),
    "VU": PricingIndexEntry(0.95, 0.99, 0.99),
    "SB": PricingIndexEntry(0.73, 0.99, 0.99),
    "FM": PricingIndexEntry(0.96, 0.99, 0.99),

    # Turkey
    "TR": PricingIndexEntry(0.26, 19, 0.99),

    # Mediterranean Islands
    "CY": PricingIndexEntry(0.68, 0.99, 0.99),
    "MT": PricingIndexEntry(0.68, 0.99, 0.99),
    "GI": PricingIndexEntry(0.91, 0.99, 0.99),
    "GR": PricingIndexEntry(0.61, 0.99, 0.99),
}

DEFAULT_PRICING_INDEX_ENTRY = PricingIndexEntry(0.5, 0.99, 0.99)

# Cost-of-goods index multipliers relative to the US (The Economist Big Mac index).
BIG_MAC_INDEX: Dict[str, float] = {
    # Higher than US
    "CH": 1.38,
    "AR": 1.20,
    "UY": 1.19,
    "NO": 1.15,
    "CR": 1.02,

    # US baseline
    "US": 1.00,

    # Lower than US
    "GB": 0.99,
    "SE": 0.98,
    "DK": 0.95,
    "CA": 0.94,
    "LB": 0.93,
    "TR": 0.92,
    "PL": 0.90,
    "CO": 0.89,
    "SG": 0.89,
    "SA": 0.87,
    "AE": 0.85,
    "AU": 0.84,
    "NZ": 0.82,
    "IL": 0.81,
    "MX": 0.79,
    "CZ": 0.79,
    "CL": 0.79,
    "KW": 0.78,
    "PE": 0.78,
    "BH": 0.78,
    "NI": 0.77,
    "VE": 0.77,
    "HN": 0.71,
    "QA": 0.71,
    "BR": 0.70,
    "TH": 0.69,
    "GT": 0.69,
    "OM": 0.69,
    "KR": 0.66,
    "PK": 0.65,
    "AZ": 0.63,
    "HU": 0.63,
    "JO": 0.61,
    "CN": 0.61,
    "MD": 0.61,
    "RO": 0.59,
    "JP": 0.54,
    "HK": 0.53,
    "VN": 0.52,
    "MY": 0.52,
    "PH": 0.50,
    "UA": 0.49,
    "ZA": 0.48,
    "EG": 0.46,
    "IN": 0.45,
    "ID": 0.44,
    "TW": 0.41,
}

DEFAULT_BIG_MAC_MULTIPLIER = 0.70

# The currency each region actually uses day to day. World Bank PPP factors are
# expressed in these units, which can differ from the storefront billing currency.
LOCAL_CURRENCIES: Dict[str, str] = {
    # Americas
    "US": "USD", "CA": "CAD", "MX": "MXN", "BR": "BRL", "AR": "ARS", "CL": "CLP", "CO": "COP", "PE": "PEN",
    "VE": "VES", "EC": "USD", "UY": "UYU", "PY": "PYG", "BO": "BOB", "CR": "CRC", "PA": "USD", "GT": "GTQ",
    "HN": "HNL", "SV": "USD", "NI": "NIO", "DO": "DOP", "JM": "JMD", "TT": "TTD", "BS": "BSD", "BB": "BBD",
    "BZ": "BZD", "GY": "GYD", "SR": "SRD", "HT": "HTG",
    # Caribbean (East Caribbean Dollar countries)
    "AG": "XCD", "DM": "XCD", "GD": "XCD", "KN": "XCD", "LC": "XCD", "VC": "XCD",
    # Caribbean/Atlantic (other)
    "VG": "USD", "KY": "KYD", "TC": "USD", "AW": "AWG", "BM": "BMD",
    # Europe
    "GB": "GBP", "DE": "EUR", "FR": "EUR", "IT": "EUR", "ES": "EUR", "NL": "EUR", "BE": "EUR", "AT": "EUR",
    "CH": "CHF", "SE": "SEK", "NO": "NOK", "DK": "DKK", "FI": "EUR", "PL": "PLN", "CZ": "CZK", "HU": "HUF",
    "RO": "RON", "BG": "BGN", "HR": "EUR", "SK": "EUR", "SI": "EUR", "LT": "EUR", "LV": "EUR", "EE": "EUR",
    "IE": "EUR", "PT": "EUR", "GR": "EUR", "LU": "EUR", "MT": "EUR", "CY": "EUR", "IS": "ISK",
    "RS": "RSD", "BA": "BAM", "MK": "MKD", "AL": "ALL", "ME": "EUR", "XK": "EUR", "MD": "MDL",
    "UA": "UAH", "BY": "BYN", "RU": "RUB",
    # European microstates
    "MC": "EUR", "LI": "CHF", "SM": "EUR", "VA": "EUR", "GI": "GIP",
    # Middle East
    "IL": "ILS", "AE": "AED", "SA": "SAR", "QA": "QAR", "KW": "KWD", "BH": "BHD", "OM": "OMR",
    "JO": "JOD", "LB": "LBP", "IQ": "IQD", "YE": "YER", "TR": "TRY",
    # Asia
    "JP": "JPY", "KR": "KRW", "CN": "CNY", "HK": "HKD", "TW": "TWD", "SG": "SGD", "MY": "MYR",
    "TH": "THB", "ID": "IDR", "PH": "PHP", "VN": "VND", "IN": "INR", "PK": "PKR", "BD": "BDT",
    "LK": "LKR", "NP": "NPR", "MM": "MMK", "KH": "KHR", "LA": "LAK", "MN": "MNT", "KZ": "KZT",
    "UZ": "UZS", "TM": "TMT", "KG": "KGS", "TJ": "TJS", "AZ": "AZN", "GE": "GEL", "AM": "AMD",
    "MO": "MOP", "BN": "BND", "BT": "BTN", "MV": "MVR", "AF": "AFN",
    # Oceania
    "AU": "AUD", "NZ": "NZD", "FJ": "FJD", "PG": "PGK", "SB": "SBD", "VU": "VUV", "WS": "WST",
    "TO": "TOP", "PW": "USD", "FM": "USD",
    # Africa
    "ZA": "ZAR", "EG": "EGP", "NG": "NGN", "KE": "KES", "GH": "GHS", "TZ": "TZS", "UG": "UGX",
    "ET": "ETB", "MA": "MAD", "DZ": "DZD", "TN": "TND", "LY": "LYD", "SD": "SDG", "AO": "AOA",
    "MZ": "MZN", "ZM": "ZMW", "ZW": "ZWL", "BW": "BWP", "NA": "NAD", "SZ": "SZL", "LS": "LSL",
    "MW": "MWK", "RW": "RWF", "BI": "BIF", "MG": "MGA", "MU": "MUR", "SC": "SCR", "CM": "XAF",
    "CI": "XOF", "SN": "XOF", "GN": "GNF", "ML": "XOF", "BF": "XOF", "NE": "XOF", "TG": "XOF",
    "BJ": "XOF", "GA": "XAF", "CG": "XAF", "CD": "CDF", "TD": "XAF", "CF": "XAF", "GQ": "XAF",
    "GM": "GMD", "GW": "XOF", "LR": "LRD", "SL": "SLL", "CV": "CVE", "ST": "STN", "MR": "MRU",
    "DJ": "DJF", "ER": "ERN", "SO": "SOS", "SS": "SSP", "KM": "KMF",
}

# Units of currency per 1 USD, used when no live rate is available.
FALLBACK_EXCHANGE_RATES: Dict[str, float] = {
    "USD": 1.0,
    "AED": 3.6725, "ALL": 92.5, "AMD": 387.0, "AOA": 912.0, "ARS": 1180.0,
    "AUD": 1.53, "AWG": 1.79, "AZN": 1.70, "BAM": 1.67, "BBD": 2.0,
    "BDT": 122.0, "BGN": 1.67, "BHD": 0.376, "BMD": 1.0, "BND": 1.29,
    "BOB": 6.91, "BRL": 5.45, "BSD": 1.0, "BTN": 85.6, "BWP": 13.4,
    "BYN": 3.27, "BZD": 2.0, "CAD": 1.37, "CDF": 2870.0, "CHF": 0.80,
    "CLP": 935.0, "CNY": 7.18, "COP": 4050.0, "CRC": 505.0, "CVE": 94.2,
    "CZK": 21.2, "DKK": 6.37, "DOP": 60.5, "DZD": 130.0, "EGP": 49.5,
    "ETB": 135.0, "EUR": 0.854, "FJD": 2.25, "GBP": 0.74, "GEL": 2.71,
    "GHS": 10.4, "GMD": 71.5, "GTQ": 7.68, "GYD": 209.0, "HKD": 7.85,
    "HNL": 26.2, "HTG": 131.0, "HUF": 340.0, "IDR": 16300.0, "ILS": 3.37,
    "INR": 85.6, "IQD": 1310.0, "ISK": 122.0, "JMD": 160.0, "JOD": 0.709,
    "JPY": 145.0, "KES": 129.0, "KGS": 87.4, "KHR": 4010.0, "KMF": 420.0,
    "KRW": 1365.0, "KWD": 0.305, "KYD": 0.833, "KZT": 520.0, "LAK": 21600.0,
    "LBP": 89500.0, "LKR": 300.0, "LRD": 200.0, "LYD": 5.42, "MAD": 9.0,
    "MDL": 16.9, "MGA": 4450.0, "MKD": 52.6, "MMK": 2100.0, "MNT": 3580.0,
    "MOP": 8.08, "MRU": 39.7, "MUR": 45.4, "MVR": 15.4, "MWK": 1735.0,
    "MXN": 18.9, "MYR": 4.23, "MZN": 63.9, "NAD": 17.8, "NGN": 1530.0,
    "NIO": 36.8, "NOK": 10.1, "NPR": 137.0, "NZD": 1.66, "OMR": 0.385,
    "PAB": 1.0, "PEN": 3.57, "PGK": 4.12, "PHP": 56.5, "PKR": 283.0,
    "PLN": 3.64, "PYG": 7980.0, "QAR": 3.64, "RON": 4.34, "RSD": 100.0,
    "RUB": 78.5, "RWF": 1440.0, "SAR": 3.75, "SBD": 8.33, "SCR": 14.6,
    "SEK": 9.55, "SGD": 1.28, "SLL": 22700.0, "SRD": 37.5, "STN": 20.9,
    "SZL": 17.8, "THB": 32.5, "TJS": 9.8, "TMT": 3.5, "TND": 2.93,
    "TOP": 2.36, "TRY": 39.9, "TTD": 6.78, "TWD": 29.4, "TZS": 2640.0,
    "UAH": 41.6, "UGX": 3590.0, "UYU": 40.2, "UZS": 12600.0, "VES": 110.0,
    "VND": 26100.0, "VUV": 119.0, "WST": 2.73, "XAF": 560.0, "XCD": 2.70,
    "XOF": 560.0, "YER": 241.0, "ZAR": 17.8, "ZMW": 23.6,
}


def get_pricing_index_entry(region_code: str) -> PricingIndexEntry:
    return PRICING_INDEX.get((region_code or "").upper(), DEFAULT_PRICING_INDEX_ENTRY)


def get_big_mac_multiplier(region_code: str) -> float:
    return BIG_MAC_INDEX.get((region_code or "").upper(), DEFAULT_BIG_MAC_MULTIPLIER)


def get_local_currency(region_code: str) -> str:
    return LOCAL_CURRENCIES.get((region_code or "").upper(), "USD")
