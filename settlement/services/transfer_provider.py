"""
Transfer provider HTTP client.

Every outbound call has a typed request and a typed response. Calls are
blocking and not retried here; callers persist their own attempt record before
calling out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import requests

from settlement.config import settings
from settlement.core.errors import ProviderError

logger = logging.getLogger("settlement.provider")

SOURCE_CURRENCY = "USD"
PAY_IN_BALANCE = "BALANCE"
FUNDING_COMPLETED = "COMPLETED"


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class ExchangeRate:
    source: str
    target: str
    rate: Decimal


@dataclass(frozen=True)
class RecipientAccount:
    id: str
    active: bool
    currency: str | None = None


@dataclass(frozen=True)
class QuoteRequest:
    profile_id: str
    recipient_id: str
    target_currency: str
    target_amount: Decimal
    source_currency: str = SOURCE_CURRENCY
    preferred_pay_in: str = PAY_IN_BALANCE

    def to_payload(self) -> dict[str, Any]:
        return {
            "sourceAmount": None,
            "targetAmount": float(self.target_amount),
            "sourceCurrency": self.source_currency,
            "targetAccount": self.recipient_id,
            "targetCurrency": self.target_currency,
            "profileId": self.profile_id,
            "preferredPayIn": self.preferred_pay_in,
        }


@dataclass(frozen=True)
class Quote:
    id: str
    target_currency: str | None
    # Provider fee for the BALANCE pay-in option, in source-currency cents.
    fee_cents: int | None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "Quote | None":
        quote_id = data.get("id")
        if not quote_id:
            return None
        fee_cents = None
        for option in data.get("paymentOptions") or []:
            if option.get("payIn") == PAY_IN_BALANCE:
                total = _decimal((option.get("fee") or {}).get("total"))
                if total is not None:
                    fee_cents = int(total * 100)
                break
        return cls(id=str(quote_id), target_currency=data.get("targetCurrency"), fee_cents=fee_cents)


@dataclass(frozen=True)
class TransferRequest:
    quote_id: str
    recipient_id: str
    customer_transaction_id: str
    reference: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "targetAccount": self.recipient_id,
            "quoteUuid": self.quote_id,
            "customerTransactionId": self.customer_transaction_id,
            "details": {
                "transferPurpose": "verification.transfers.purpose.pay.other",
                "sourceOfFunds": "verification.source.of.funds.other",
                "reference": self.reference,
            },
        }


@dataclass(frozen=True)
class Transfer:
    id: str
    status: str | None = None
    rate: Decimal | None = None
    source_value: Decimal | None = None
    target_value: Decimal | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "Transfer | None":
        transfer_id = data.get("id")
        if not transfer_id:
            return None
        return cls(
            id=str(transfer_id),
            status=data.get("status"),
            rate=_decimal(data.get("rate")),
            source_value=_decimal(data.get("sourceValue")),
            target_value=_decimal(data.get("targetValue")),
        )


@dataclass(frozen=True)
class FundRequest:
    transfer_id: str
    type: str = PAY_IN_BALANCE

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class FundResult:
    status: str | None
    error_code: str | None = None

    @property
    def completed(self) -> bool:
        return self.status == FUNDING_COMPLETED


@dataclass(frozen=True)
class DeliveryEstimate:
    estimated_delivery_date: datetime | None


@dataclass(frozen=True)
class Balance:
    currency: str
    amount: Decimal


class TransferProviderClient:
    """Bearer-authenticated JSON client for the payout provider."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        profile_id: str | None = None,
        timeout_seconds: float | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = (base_url or settings.transfer_provider_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.transfer_provider_api_key
        self.profile_id = str(
            profile_id if profile_id is not None else settings.transfer_provider_profile_id
        )
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.transfer_provider_timeout_seconds
        )
        self.session = session or requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        *,
        step: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if json is not None:
            headers["Content-Type"] = "application/json"
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning("provider_request_failed", extra={"step": step, "error": str(e)})
            raise ProviderError(f"{step} request failed: {e}", step=step) from e

        if resp.status_code >= 400:
            logger.warning(
                "provider_error_response",
                extra={"step": step, "status_code": resp.status_code, "body": resp.text[:300]},
            )
            raise ProviderError(
                f"{step} failed with HTTP {resp.status_code}",
                step=step,
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{step} returned a non-JSON body", step=step) from e

    def get_exchange_rate(self, *, target_currency: str, source_currency: str = SOURCE_CURRENCY) -> ExchangeRate:
        data = self._request(
            "GET",
            "/v1/rates",
            step="exchange_rate",
            params={"source": source_currency, "target": target_currency},
        )
        first = data[0] if isinstance(data, list) and data else {}
        rate = _decimal(first.get("rate"))
        if rate is None:
            raise ProviderError("exchange rate missing from response", step="exchange_rate")
        return ExchangeRate(source=source_currency, target=target_currency, rate=rate)

    def get_recipient_account(self, *, recipient_id: str) -> RecipientAccount:
        data = self._request("GET", f"/v1/accounts/{recipient_id}", step="recipient")
        return RecipientAccount(
            id=str(data.get("id", recipient_id)),
            active=bool(data.get("active")),
            currency=data.get("currency"),
        )

    def create_quote(self, request: QuoteRequest) -> Quote | None:
        data = self._request(
            "POST",
            f"/v3/profiles/{request.profile_id}/quotes",
            step="quote",
            json=request.to_payload(),
        )
        return Quote.from_response(data or {})

    def create_transfer(self, request: TransferRequest) -> Transfer | None:
        data = self._request("POST", "/v1/transfers", step="transfer", json=request.to_payload())
        return Transfer.from_response(data or {})

    def fund_transfer(self, request: FundRequest) -> FundResult:
        data = self._request(
            "POST",
            f"/v3/profiles/{self.profile_id}/transfers/{request.transfer_id}/payments",
            step="fund",
            json=request.to_payload(),
        )
        data = data or {}
        return FundResult(status=data.get("status"), error_code=data.get("errorCode"))

    def get_transfer(self, *, transfer_id: str) -> Transfer | None:
        data = self._request("GET", f"/v1/transfers/{transfer_id}", step="get_transfer")
        return Transfer.from_response(data or {})

    def delivery_estimate(self, *, transfer_id: str) -> DeliveryEstimate:
        data = self._request(
            "GET", f"/v1/delivery-estimates/{transfer_id}", step="delivery_estimate"
        )
        return DeliveryEstimate(
            estimated_delivery_date=_parse_datetime((data or {}).get("estimatedDeliveryDate"))
        )

    def get_balances(self) -> list[Balance]:
        data = self._request(
            "GET",
            f"/v4/profiles/{self.profile_id}/balances",
            step="balances",
            params={"types": "STANDARD"},
        )
        balances: list[Balance] = []
        for row in data or []:
            amount = row.get("amount") or {}
            value = _decimal(amount.get("value"))
            if value is None:
                continue
            balances.append(Balance(currency=str(amount.get("currency") or row.get("currency")), amount=value))
        return balances

    def available_balance_cents(self, currency: str = SOURCE_CURRENCY) -> int:
        total = sum((b.amount for b in self.get_balances() if b.currency == currency), Decimal("0"))
        return int(total * 100)
