import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Territory:
    alpha3: str
    alpha2: str
    display_name: str
    currency_code: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "alpha3": self.alpha3,
            "alpha2": self.alpha2,
            "name": self.display_name,
            "currency": self.currency_code,
        }


# App Store territories (3-letter codes) with their App Store billing currency.
TERRITORIES: List[Territory] = [
    Territory("AFG", "AF", "Afghanistan", "USD"),
    Territory("ALB", "AL", "Albania", "ALL"),
    Territory("DZA", "DZ", "Algeria", "DZD"),
    Territory("AGO", "AO", "Angola", "AOA"),
    Territory("AIA", "AI", "Anguilla", "USD"),
    Territory("ATG", "AG", "Antigua and Barbuda", "USD"),
    Territory("ARG", "AR", "Argentina", "ARS"),
    Territory("ARM", "AM", "Armenia", "AMD"),
    Territory("AUS", "AU", "Australia", "AUD"),
    Territory("AUT", "AT", "Austria", "EUR"),
    Territory("AZE", "AZ", "Azerbaijan", "AZN"),
    Territory("BHS", "BS", "Bahamas", "USD"),
    Territory("BHR", "BH", "Bahrain", "BHD"),
    Territory("BGD", "BD", "Bangladesh", "BDT"),
    Territory("BRB", "BB", "Barbados", "BBD"),
    Territory("BLR", "BY", "Belarus", "BYN"),
    Territory("BEL", "BE", "Belgium", "EUR"),
    Territory("BLZ", "BZ", "Belize", "BZD"),
    Territory("BEN", "BJ", "Benin", "XOF"),
    Territory("BMU", "BM", "Bermuda", "USD"),
    Territory("BTN", "BT", "Bhutan", "BTN"),
    Territory("BOL", "BO", "Bolivia", "BOB"),
    Territory("BIH", "BA", "Bosnia and Herzegovina", "BAM"),
    Territory("BWA", "BW", "Botswana", "BWP"),
    Territory("BRA", "BR", "Brazil", "BRL"),
    Territory("VGB", "VG", "British Virgin Islands", "USD"),
    Territory("BRN", "BN", "Brunei", "BND"),
    Territory("BGR", "BG", "Bulgaria", "BGN"),
    Territory("BFA", "BF", "Burkina Faso", "XOF"),
    Territory("KHM", "KH", "Cambodia", "KHR"),
    Territory("CMR", "CM", "Cameroon", "XAF"),
    Territory("CAN", "CA", "Canada", "CAD"),
    Territory("CPV", "CV", "Cape Verde", "CVE"),
    Territory("CYM", "KY", "Cayman Islands", "KYD"),
    Territory("TCD", "TD", "Chad", "XAF"),
    Territory("CHL", "CL", "Chile", "CLP"),
    Territory("CHN", "CN", "China mainland", "CNY"),
    Territory("COL", "CO", "Colombia", "COP"),
    Territory("COG", "CG", "Congo (Republic)", "XAF"),
    Territory("COD", "CD", "Congo (DRC)", "CDF"),
    Territory("CRI", "CR", "Costa Rica", "CRC"),
    Territory("CIV", "CI", "Côte d'Ivoire", "XOF"),
    Territory("HRV", "HR", "Croatia", "EUR"),
    Territory("CYP", "CY", "Cyprus", "EUR"),
    Territory("CZE", "CZ", "Czech Republic", "CZK"),
    Territory("DNK", "DK", "Denmark", "DKK"),
    Territory("DMA", "DM", "Dominica", "XCD"),
    Territory("DOM", "DO", "Dominican Republic", "DOP"),
    Territory("ECU", "EC", "Ecuador", "USD"),
    Territory("EGY", "EG", "Egypt", "EGP"),
    Territory("SLV", "SV", "El Salvador", "USD"),
    Territory("EST", "EE", "Estonia", "EUR"),
    Territory("SWZ", "SZ", "Eswatini", "SZL"),
    Territory("FJI", "FJ", "Fiji", "FJD"),
    Territory("FIN", "FI", "Finland", "EUR"),
    Territory("FRA", "FR", "France", "EUR"),
    Territory("GAB", "GA", "Gabon", "XAF"),
    Territory("GMB", "GM", "Gambia", "GMD"),
    Territory("GEO", "GE", "Georgia", "GEL"),
    Territory("DEU", "DE", "Germany", "EUR"),
    Territory("GHA", "GH", "Ghana", "GHS"),
    Territory("GRC", "GR", "Greece", "EUR"),
    Territory("GRD", "GD", "Grenada", "XCD"),
    Territory("GTM", "GT", "Guatemala", "GTQ"),
    Territory("GNB", "GW", "Guinea-Bissau", "XOF"),
    Territory("GUY", "GY", "Guyana", "GYD"),
    Territory("HND", "HN", "Honduras", "HNL"),
    Territory("HKG", "HK", "Hong Kong", "HKD"),
    Territory("HUN", "HU", "Hungary", "HUF"),
    Territory("ISL", "IS", "Iceland", "ISK"),
    Territory("IND", "IN", "India", "INR"),
    Territory("IDN", "ID", "Indonesia", "IDR"),
    Territory("IRQ", "IQ", "Iraq", "IQD"),
    Territory("IRL", "IE", "Ireland", "EUR"),
    Territory("ISR", "IL", "Israel", "ILS"),
    Territory("ITA", "IT", "Italy", "EUR"),
    Territory("JAM", "JM", "Jamaica", "JMD"),
    Territory("JPN", "JP", "Japan", "JPY"),
    Territory("JOR", "JO", "Jordan", "JOD"),
    Territory("KAZ", "KZ", "Kazakhstan", "KZT"),
    Territory("KEN", "KE", "Kenya", "KES"),
    Territory("KOR", "KR", "South Korea", "KRW"),
    Territory("XKS", "XK", "Kosovo", "EUR"),
    Territory("KWT", "KW", "Kuwait", "KWD"),
    Territory("KGZ", "KG", "Kyrgyzstan", "KGS"),
    Territory("LAO", "LA", "Laos", "LAK"),
    Territory("LVA", "LV", "Latvia", "EUR"),
    Territory("LBN", "LB", "Lebanon", "LBP"),
    Territory("LBR", "LR", "Liberia", "LRD"),
    Territory("LBY", "LY", "Libya", "LYD"),
    Territory("LTU", "LT", "Lithuania", "EUR"),
    Territory("LUX", "LU", "Luxembourg", "EUR"),
    Territory("MAC", "MO", "Macao", "MOP"),
    Territory("MKD", "MK", "North Macedonia", "MKD"),
    Territory("MDG", "MG", "Madagascar", "MGA"),
    Territory("MWI", "MW", "Malawi", "MWK"),
    Territory("MYS", "MY", "Malaysia", "MYR"),
    Territory("MDV", "MV", "Maldives", "MVR"),
    Territory("MLI", "ML", "Mali", "XOF"),
    Territory("MLT", "MT", "Malta", "EUR"),
    Territory("MRT", "MR", "Mauritania", "MRU"),
    Territory("MUS", "MU", "Mauritius", "MUR"),
    Territory("MEX", "MX", "Mexico", "MXN"),
    Territory("FSM", "FM", "Micronesia", "USD"),
    Territory("MDA", "MD", "Moldova", "MDL"),
    Territory("MCO", "MC", "Monaco", "EUR"),
    Territory("MNG", "MN", "Mongolia", "MNT"),
    Territory("MNE", "ME", "Montenegro", "EUR"),
    Territory("MSR", "MS", "Montserrat", "USD"),
    Territory("MAR", "MA", "Morocco", "MAD"),
    Territory("MOZ", "MZ", "Mozambique", "MZN"),
    Territory("MMR", "MM", "Myanmar", "MMK"),
    Territory("NAM", "NA", "Namibia", "NAD"),
    Territory("NRU", "NR", "Nauru", "USD"),
    Territory("NPL", "NP", "Nepal", "NPR"),
    Territory("NLD", "NL", "Netherlands", "EUR"),
    Territory("NZL", "NZ", "New Zealand", "NZD"),
    Territory("NIC", "NI", "Nicaragua", "NIO"),
    Territory("NER", "NE", "Niger", "XOF"),
    Territory("NGA", "NG", "Nigeria", "NGN"),
    Territory("NOR", "NO", "Norway", "NOK"),
    Territory("OMN", "OM", "Oman", "OMR"),
    Territory("PAK", "PK", "Pakistan", "PKR"),
    Territory("PLW", "PW", "Palau", "USD"),
    Territory("PAN", "PA", "Panama", "PAB"),
    Territory("PNG", "PG", "Papua New Guinea", "PGK"),
    Territory("PRY", "PY", "Paraguay", "PYG"),
    Territory("PER", "PE", "Peru", "PEN"),
    Territory("PHL", "PH", "Philippines", "PHP"),
    Territory("POL", "PL", "Poland", "PLN"),
    Territory("PRT", "PT", "Portugal", "EUR"),
    Territory("QAT", "QA", "Qatar", "QAR"),
    Territory("ROU", "RO", "Romania", "RON"),
    Territory("RUS", "RU", "Russia", "RUB"),
    Territory("RWA", "RW", "Rwanda", "RWF"),
    Territory("KNA", "KN", "Saint Kitts and Nevis", "XCD"),
    Territory("LCA", "LC", "Saint Lucia", "XCD"),
    Territory("VCT", "VC", "Saint Vincent and the Grenadines", "XCD"),
    Territory("WSM", "WS", "Samoa", "WST"),
    Territory("STP", "ST", "São Tomé and Príncipe", "STN"),
    Territory("SAU", "SA", "Saudi Arabia", "SAR"),
    Territory("SEN", "SN", "Senegal", "XOF"),
    Territory("SRB", "RS", "Serbia", "RSD"),
    Territory("SYC", "SC", "Seychelles", "SCR"),
    Territory("SLE", "SL", "Sierra Leone", "SLL"),
    Territory("SGP", "SG", "Singapore", "SGD"),
    Territory("SVK", "SK", "Slovakia", "EUR"),
    Territory("SVN", "SI", "Slovenia", "EUR"),
    Territory("SLB", "SB", "Solomon Islands", "SBD"),
    Territory("ZAF", "ZA", "South Africa", "ZAR"),
    Territory("ESP", "ES", "Spain", "EUR"),
    Territory("LKA", "LK", "Sri Lanka", "LKR"),
    Territory("SUR", "SR", "Suriname", "SRD"),
    Territory("SWE", "SE", "Sweden", "SEK"),
    Territory("CHE", "CH", "Switzerland", "CHF"),
    Territory("TWN", "TW", "Taiwan", "TWD"),
    Territory("TJK", "TJ", "Tajikistan", "TJS"),
    Territory("TZA", "TZ", "Tanzania", "TZS"),
    Territory("THA", "TH", "Thailand", "THB"),
    Territory("TON", "TO", "Tonga", "TOP"),
    Territory("TTO", "TT", "Trinidad and Tobago", "TTD"),
    Territory("TUN", "TN", "Tunisia", "TND"),
    Territory("TUR", "TR", "Turkey", "TRY"),
    Territory("TKM", "TM", "Turkmenistan", "TMT"),
    Territory("TCA", "TC", "Turks and Caicos Islands", "USD"),
    Territory("UGA", "UG", "Uganda", "UGX"),
    Territory("UKR", "UA", "Ukraine", "UAH"),
    Territory("ARE", "AE", "United Arab Emirates", "AED"),
    Territory("GBR", "GB", "United Kingdom", "GBP"),
    Territory("USA", "US", "United States", "USD"),
    Territory("URY", "UY", "Uruguay", "UYU"),
    Territory("UZB", "UZ", "Uzbekistan", "UZS"),
    Territory("VUT", "VU", "Vanuatu", "VUV"),
    Territory("VEN", "VE", "Venezuela", "USD"),
    Territory("VNM", "VN", "Vietnam", "VND"),
    Territory("YEM", "YE", "Yemen", "YER"),
    Territory("ZMB", "ZM", "Zambia", "ZMW"),
    Territory("ZWE", "ZW", "Zimbabwe", "USD"),
]

# Rejected by the App Store price schedule endpoint with a 500.
UNSUPPORTED_IAP_TERRITORIES: FrozenSet[str] = frozenset({"BGD", "MCO", "WSM"})

# Google Play billing currency per region. Many regions are billed in USD or EUR
# rather than in the local currency.
GOOGLE_PLAY_REGION_CURRENCIES: Dict[str, str] = {
    "AE": "AED",
    "AG": "USD",
    "AL": "USD",
    "AM": "USD",
    "AO": "USD",
    "AR": "USD",
    "AT": "EUR",
    "AU": "AUD",
    "AW": "USD",
    "AZ": "USD",
    "BA": "USD",
    "BD": "BDT",
    "BE": "EUR",
    "BF": "EUR",
    "BG": "EUR",
    "BH": "USD",
    "BJ": "EUR",
    "BM": "USD",
    "BO": "BOB",
    "BR": "BRL",
    "BS": "USD",
    "BW": "USD",
    "BY": "USD",
    "BZ": "USD",
    "CA": "CAD",
    "CD": "USD",
    "CF": "EUR",
    "CG": "USD",
    "CH": "CHF",
    "CI": "XOF",
    "CL": "CLP",
    "CM": "XAF",
    "CO": "COP",
    "CR": "CRC",
    "CV": "USD",
    "CY": "EUR",
    "CZ": "CZK",
    "DE": "EUR",
    "DJ": "USD",
    "DK": "DKK",
    "DM": "USD",
    "DO": "USD",
    "DZ": "DZD",
    "EC": "USD",
    "EE": "EUR",
    "EG": "EGP",
    "ER": "USD",
    "ES": "EUR",
    "FI": "EUR",
    "FJ": "USD",
    "FM": "USD",
    "FR": "EUR",
    "GA": "EUR",
    "GB": "GBP",
    "GD": "USD",
    "GE": "GEL",
    "GH": "GHS",
    "GI": "GBP",
    "GM": "USD",
    "GN": "USD",
    "GR": "EUR",
    "GT": "USD",
    "GW": "EUR",
    "HK": "HKD",
    "HN": "USD",
    "HR": "EUR",
    "HT": "USD",
    "HU": "HUF",
    "ID": "IDR",
    "IE": "EUR",
    "IL": "ILS",
    "IN": "INR",
    "IQ": "IQD",
    "IS": "EUR",
    "IT": "EUR",
    "JM": "USD",
    "JO": "JOD",
    "JP": "JPY",
    "KE": "KES",
    "KG": "USD",
    "KH": "USD",
    "KM": "USD",
    "KN": "USD",
    "KR": "KRW",
    "KW": "USD",
    "KY": "USD",
    "KZ": "KZT",
    "LA": "USD",
    "LB": "USD",
    "LC": "USD",
    "LI": "CHF",
    "LK": "LKR",
    "LR": "USD",
    "LT": "EUR",
    "LU": "EUR",
    "LV": "EUR",
    "LY": "USD",
    "MA": "MAD",
    "MC": "EUR",
    "MD": "USD",
    "MK": "USD",
    "ML": "EUR",
    "MM": "MMK",
    "MN": "MNT",
    "MO": "MOP",
    "MT": "EUR",
    "MU": "USD",
    "MV": "USD",
    "MX": "MXN",
    "MY": "MYR",
    "MZ": "USD",
    "NA": "USD",
    "NE": "EUR",
    "NG": "NGN",
    "NI": "USD",
    "NL": "EUR",
    "NO": "NOK",
    "NP": "USD",
    "NZ": "NZD",
    "OM": "USD",
    "PA": "USD",
    "PE": "PEN",
    "PG": "USD",
    "PH": "PHP",
    "PK": "PKR",
    "PL": "PLN",
    "PT": "EUR",
    "PY": "PYG",
    "QA": "QAR",
    "RO": "RON",
    "RS": "RSD",
    "RU": "RUB",
    "RW": "USD",
    "SA": "SAR",
    "SB": "USD",
    "SC": "USD",
    "SE": "SEK",
    "SG": "SGD",
    "SI": "EUR",
    "SK": "EUR",
    "SL": "USD",
    "SM": "EUR",
    "SN": "XOF",
    "SO": "USD",
    "SR": "USD",
    "SV": "USD",
    "TC": "USD",
    "TD": "USD",
    "TG": "EUR",
    "TH": "THB",
    "TJ": "USD",
    "TM": "USD",
    "TN": "USD",
    "TO": "USD",
    "TR": "TRY",
    "TT": "USD",
    "TW": "TWD",
    "TZ": "TZS",
    "UA": "UAH",
    "UG": "USD",
    "US": "USD",
    "UY": "USD",
    "UZ": "USD",
    "VA": "EUR",
    "VE": "USD",
    "VG": "USD",
    "VN": "VND",
    "VU": "USD",
    "WS": "USD",
    "YE": "USD",
    "ZA": "ZAR",
    "ZM": "USD",
    "ZW": "USD",
}

_BY_ALPHA3: Dict[str, Territory] = {territory.alpha3: territory for territory in TERRITORIES}
_BY_ALPHA2: Dict[str, Territory] = {territory.alpha2: territory for territory in TERRITORIES}


def get_territory(code: str) -> Optional[Territory]:
    """Look up a territory by either its 2-letter or 3-letter code."""
    if not code:
        return None
    normalized = code.strip().upper()
    if len(normalized) == 3:
        return _BY_ALPHA3.get(normalized)
    if len(normalized) == 2:
        return _BY_ALPHA2.get(normalized)
    return None


def alpha2_to_alpha3(alpha2: str) -> Optional[str]:
    territory = _BY_ALPHA2.get((alpha2 or "").upper())
    return territory.alpha3 if territory else None


def alpha3_to_alpha2(alpha3: str) -> Optional[str]:
    territory = _BY_ALPHA3.get((alpha3 or "").upper())
    return territory.alpha2 if territory else None


def to_alpha2(code: str) -> str:
    """Return the 2-letter form of ``code``; unknown codes are returned uppercased."""
    normalized = (code or "").strip().upper()
    if len(normalized) == 3:
        return alpha3_to_alpha2(normalized) or normalized
    return normalized


def to_alpha3(code: str) -> Optional[str]:
    normalized = (code or "").strip().upper()
    if len(normalized) == 3:
        return normalized if normalized in _BY_ALPHA3 else None
    if len(normalized) == 2:
        return alpha2_to_alpha3(normalized)
    return None


def is_iap_supported(alpha3: str) -> bool:
    return (alpha3 or "").upper() not in UNSUPPORTED_IAP_TERRITORIES


def is_google_play_region(alpha2: str) -> bool:
    return (alpha2 or "").upper() in GOOGLE_PLAY_REGION_CURRENCIES


def billing_currency(code: str) -> str:
    """Currency a storefront bills ``code`` in.

    3-letter codes are App Store territories, 2-letter codes are Google Play
    regions. Unknown codes bill in USD.
    """
    normalized = (code or "").strip().upper()
    if len(normalized) == 2 and normalized in GOOGLE_PLAY_REGION_CURRENCIES:
        return GOOGLE_PLAY_REGION_CURRENCIES[normalized]
    territory = get_territory(normalized)
    if territory is None:
        logger.debug("Unknown territory %s, billing in USD", code)
        return "USD"
    return territory.currency_code


def territories_for_currency(currency_code: str) -> List[Territory]:
    currency = (currency_code or "").upper()
    return [territory for territory in TERRITORIES if territory.currency_code == currency]
