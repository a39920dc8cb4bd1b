# ruff: noqa: E402

import os
from datetime import date, datetime
from decimal import Decimal

# Set environment variables BEFORE any settlement imports; settings load at import time.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from settlement import models
from settlement.api import deps
from settlement.core.errors import ProviderError
from settlement.database import Base
from settlement.main import app
from settlement.services.lock_manager import LockManager
from settlement.services.obligation_creation import (
    create_buyback_obligation,
    create_dividend_obligation,
    create_invoice_obligation,
)
from settlement.services.obligation_state import approve
from settlement.services.transfer_provider import (
    DeliveryEstimate,
    ExchangeRate,
    FundResult,
    Quote,
    RecipientAccount,
    Transfer,
)

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    future=True,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_test_database():
    """Fresh schema per test; dependency overrides restored afterwards."""
    original = dict(app.dependency_overrides)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    try:
        yield
    finally:
        app.dependency_overrides = original
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def redis_client():
    # Private server per test; held locks must not leak across tests.
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def lock_manager(redis_client):
    return LockManager(
        redis_client, ttl_ms=5_000, retry_count=3, retry_delay_ms=1, retry_jitter_ms=0
    )


class FakeProvider:
    """In-memory stand-in for TransferProviderClient.

    ``fail_step`` makes the named call raise a ProviderError the way the HTTP
    client does on a 5xx.
    """

    def __init__(
        self,
        *,
        profile_id: str = "4242",
        balance_cents: int = 10_000_000,
        account_active: bool = True,
        fail_step: str | None = None,
        fund_status: str = "COMPLETED",
        fund_error_code: str | None = None,
        fee_cents: int = 123,
        rate: Decimal = Decimal("1"),
        target_value: Decimal | None = Decimal("100.00"),
    ):
        self.profile_id = profile_id
        self.balance_cents = balance_cents
        self.account_active = account_active
        self.fail_step = fail_step
        self.fund_status = fund_status
        self.fund_error_code = fund_error_code
        self.fee_cents = fee_cents
        self.rate = rate
        self.target_value = target_value
        self.calls: list[str] = []
        self.quotes = []
        self.transfers = []

    def _step(self, step: str) -> None:
        self.calls.append(step)
        if self.fail_step == step:
            raise ProviderError(f"{step} failed with HTTP 500", step=step, status_code=500)

    def get_exchange_rate(self, *, target_currency, source_currency="USD"):
        self._step("exchange_rate")
        return ExchangeRate(source=source_currency, target=target_currency, rate=self.rate)

    def get_recipient_account(self, *, recipient_id):
        self._step("recipient")
        return RecipientAccount(id=recipient_id, active=self.account_active)

    def create_quote(self, request):
        self._step("quote")
        self.quotes.append(request)
        return Quote(
            id=f"quote-{len(self.quotes)}",
            target_currency=request.target_currency,
            fee_cents=self.fee_cents,
        )

    def create_transfer(self, request):
        self._step("transfer")
        self.transfers.append(request)
        return Transfer(
            id=f"tr-{len(self.transfers)}", status="incoming_payment_waiting", rate=self.rate
        )

    def fund_transfer(self, request):
        self._step("fund")
        return FundResult(status=self.fund_status, error_code=self.fund_error_code)

    def get_transfer(self, *, transfer_id):
        self._step("get_transfer")
        return Transfer(
            id=transfer_id,
            status="outgoing_payment_sent",
            rate=self.rate,
            source_value=self.target_value,
            target_value=self.target_value,
        )

    def delivery_estimate(self, *, transfer_id):
        self._step("delivery_estimate")
        return DeliveryEstimate(estimated_delivery_date=datetime(2026, 10, 21, 12, 0))

    def available_balance_cents(self, currency="USD"):
        self._step("balances")
        return self.balance_cents


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_provider():
    return FakeProvider


class Seeder:
    """Row factories for the settlement domain."""

    def __init__(self, db):
        self.db = db
        self._approver = 100

    def company(self, *, required_approvals=1, is_trusted=False, active=True, equity=False):
        company = models.Company(
            name="Acme",
            required_approvals=required_approvals,
            is_trusted=is_trusted,
            active=active,
            equity_compensation_enabled=equity,
        )
        self.db.add(company)
        self.db.commit()
        self.db.refresh(company)
        return company

    def payee(
        self,
        company,
        *,
        country_code="US",
        tax_confirmed=True,
        tax_id_verified=True,
        recipient=True,
        currency="USD",
        minimum_dividend_payment_cents=1000,
    ):
        payee = models.Payee(
            company_id=company.id,
            name="Jane Contractor",
            email="jane@example.com",
            country_code=country_code,
            tax_information_confirmed_at=datetime.utcnow() if tax_confirmed else None,
            tax_id_verified=tax_id_verified,
            minimum_dividend_payment_cents=minimum_dividend_payment_cents,
        )
        self.db.add(payee)
        self.db.flush()
        if recipient:
            self.db.add(
                models.Recipient(
                    payee_id=payee.id,
                    provider_recipient_id=f"acct-{payee.id}",
                    currency=currency,
                    last_four_digits="6789",
                )
            )
        self.db.commit()
        self.db.refresh(payee)
        return payee

    def election(self, payee, *, year=2026, pct=50, locked=True):
        election = models.EquityElection(
            payee_id=payee.id, year=year, equity_percentage=pct, locked=locked
        )
        self.db.add(election)
        self.db.commit()
        self.db.refresh(payee)
        return election

    def approve(self, obligation, times=1):
        for _ in range(times):
            self._approver += 1
            approve(self.db, obligation, approver_id=self._approver)
        return obligation

    def invoice(
        self,
        payee,
        *,
        gross_cents=10_000,
        invoice_date=date(2026, 10, 1),
        share_price_cents=None,
        approvals=1,
    ):
        obligation = create_invoice_obligation(
            self.db,
            payee=payee,
            gross_cents=gross_cents,
            invoice_date=invoice_date,
            share_price_cents=share_price_cents,
        )
        return self.approve(obligation, approvals)

    def dividend(self, payee, *, gross_cents=50_000, issued_on=date(2026, 10, 1), approvals=1):
        obligation = create_dividend_obligation(
            self.db, payee=payee, gross_cents=gross_cents, issued_on=issued_on
        )
        return self.approve(obligation, approvals)

    def buyback(self, payee, *, gross_cents=50_000, issued_on=date(2026, 10, 1), approvals=1):
        obligation = create_buyback_obligation(
            self.db, payee=payee, gross_cents=gross_cents, issued_on=issued_on
        )
        return self.approve(obligation, approvals)


@pytest.fixture
def seed(db_session):
    return Seeder(db_session)


@pytest.fixture
def client(lock_manager, provider):
    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_lock_manager] = lambda: lock_manager
    app.dependency_overrides[deps.get_transfer_provider] = lambda: provider
    return TestClient(app)
