from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from settlement import models

US_COUNTRY_CODE = "US"
US_WITHHOLDING_WITHOUT_TAX_ID = 24
DEFAULT_WITHHOLDING_PERCENTAGE = 30

# Residents are never paid out; their obligations are retained.
SANCTIONED_COUNTRY_CODES = frozenset({"BY", "CU", "IR", "KP", "RU", "SY"})

# Treaty rates; countries not listed fall back to DEFAULT_WITHHOLDING_PERCENTAGE.
COUNTRY_WITHHOLDING: dict[str, int] = {
    "GE": 30, "AZ": 30, "AM": 30, "UZ": 30, "TM": 30, "TJ": 30, "MD": 30, "KG": 30,
    "TT": 25, "PH": 25, "IL": 25, "IN": 25,
    "TR": 20, "TN": 20,
    "VN": 15, "EG": 15, "VE": 15, "GB": 15, "UA": 15, "TH": 15, "CH": 15, "SE": 15,
    "LK": 15, "ES": 15, "KR": 15, "ZA": 15, "SI": 15, "SK": 15, "PT": 15, "PL": 15,
    "PK": 15, "NO": 15, "NZ": 15, "NL": 15, "MA": 15, "MT": 15, "LU": 15, "LT": 15,
    "LV": 15, "KZ": 15, "JM": 15, "IT": 15, "IE": 15, "ID": 15, "IS": 15, "HU": 15,
    "GR": 15, "DE": 15, "FR": 15, "FI": 15, "EE": 15, "DK": 15, "CZ": 15, "CY": 15,
    "CA": 15, "BE": 15, "BB": 15, "BD": 15, "AT": 15, "AU": 15, "HR": 15,
    "RO": 10, "MX": 10, "JP": 10, "CN": 10, "BG": 10,
}  # fmt: skip


@dataclass(frozen=True)
class JurisdictionPolicy:
    country_code: str | None
    disallowed: bool
    withholding_percentage: int
    reason_code: str | None = None


def policy_for(payee: models.Payee) -> JurisdictionPolicy:
    country = (payee.country_code or "").strip().upper() or None

    if country in SANCTIONED_COUNTRY_CODES:
        return JurisdictionPolicy(
            country_code=country,
            disallowed=True,
            withholding_percentage=0,
            reason_code=models.RetainedReason.ofac_sanctioned_country.value,
        )

    if country == US_COUNTRY_CODE:
        pct = 0 if payee.tax_id_verified else US_WITHHOLDING_WITHOUT_TAX_ID
    else:
        pct = COUNTRY_WITHHOLDING.get(country or "", DEFAULT_WITHHOLDING_PERCENTAGE)

    return JurisdictionPolicy(country_code=country, disallowed=False, withholding_percentage=pct)


def withholding_cents(amount_cents: int, percentage: int) -> int:
    value = Decimal(int(amount_cents)) * Decimal(int(percentage)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
