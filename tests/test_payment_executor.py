from datetime import date
from decimal import Decimal

import pytest

from settlement import models
from settlement.core.errors import (
    InsufficientBalanceError,
    InvariantViolation,
    ProviderError,
    RecipientInactiveError,
)
from settlement.services.batch_aggregator import aggregate_company_batch, mark_batch_paid
from settlement.services.obligation_state import claim_for_payment
from settlement.services.payment_executor import (
    NotPayableReason,
    OutcomeStatus,
    execute_payment,
)


def _charged_invoice(db, seed, lock_manager, *, company=None, payee=None, **invoice_kwargs):
    company = company or seed.company()
    payee = payee or seed.payee(company)
    obligation = seed.invoice(payee, **invoice_kwargs)
    batch = aggregate_company_batch(db, company_id=company.id, lock_manager=lock_manager)
    mark_batch_paid(db, batch)
    db.refresh(obligation)
    return obligation


def test_happy_path_ends_in_processing(db_session, seed, lock_manager, provider):
    obligation = _charged_invoice(db_session, seed, lock_manager, gross_cents=10_000)

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.PROCESSING
    payment = outcome.payment
    assert payment.status == models.PaymentStatus.processing
    assert payment.kind == models.ObligationKind.invoice
    assert payment.batch_id == obligation.batch_id
    assert payment.provider_profile_id == provider.profile_id
    assert payment.quote_id == "quote-1"
    assert payment.transfer_id == "tr-1"
    assert payment.principal_cents == 10_000
    assert payment.fee_cents == 123
    assert payment.total_transaction_cents == 10_123
    assert payment.recipient_last4 == "6789"
    assert payment.obligation_ids == [obligation.id]
    assert provider.calls == ["balances", "recipient", "quote", "transfer", "fund"]

    # The provider sees our idempotency key and reference.
    transfer_request = provider.transfers[0]
    assert transfer_request.customer_transaction_id == payment.processor_reference
    assert transfer_request.reference == f"PMT{payment.id}"
    assert provider.quotes[0].target_amount == Decimal("100.00")

    db_session.refresh(obligation)
    assert obligation.status == models.ObligationStatus.processing
    assert obligation.paid_at is None
    assert obligation.active_payment_id == payment.id


def test_foreign_currency_uses_exchange_rate(db_session, seed, lock_manager, make_provider):
    company = seed.company()
    payee = seed.payee(company, currency="EUR")
    obligation = _charged_invoice(
        db_session, seed, lock_manager, company=company, payee=payee, gross_cents=10_000
    )
    provider = make_provider(rate=Decimal("0.9"))

    execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert "exchange_rate" in provider.calls
    assert provider.quotes[0].target_currency == "EUR"
    assert provider.quotes[0].target_amount == Decimal("90.00")


def test_quote_failure_marks_payment_failed_and_retry_creates_new_payment(
    db_session, seed, lock_manager, make_provider
):
    obligation = _charged_invoice(db_session, seed, lock_manager)
    provider = make_provider(fail_step="quote")

    with pytest.raises(ProviderError) as exc_info:
        execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert exc_info.value.step == "quote"
    failed_payment = db_session.query(models.Payment).one()
    assert exc_info.value.payment_id == failed_payment.id
    assert failed_payment.status == models.PaymentStatus.failed
    assert failed_payment.transfer_id is None
    assert failed_payment.error
    db_session.refresh(obligation)
    assert obligation.status == models.ObligationStatus.failed
    assert obligation.active_payment_id is None
    # Still linked to the charged batch; the company is not charged twice.
    assert obligation.batch_id is not None
    assert "transfer" not in provider.calls

    provider.fail_step = None
    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.PROCESSING
    assert outcome.payment.id != failed_payment.id
    assert db_session.query(models.Payment).count() == 2
    db_session.refresh(failed_payment)
    assert failed_payment.status == models.PaymentStatus.failed


def test_transfer_failure_keeps_quote_details(db_session, seed, lock_manager, make_provider):
    obligation = _charged_invoice(db_session, seed, lock_manager)
    provider = make_provider(fail_step="transfer")

    with pytest.raises(ProviderError):
        execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    payment = db_session.query(models.Payment).one()
    assert payment.status == models.PaymentStatus.failed
    assert payment.quote_id == "quote-1"
    assert payment.fee_cents == 123
    assert payment.transfer_id is None
    db_session.refresh(obligation)
    assert obligation.status == models.ObligationStatus.failed


def test_fund_rejected_for_insufficient_balance(db_session, seed, lock_manager, make_provider):
    obligation = _charged_invoice(db_session, seed, lock_manager)
    provider = make_provider(
        fund_status="REJECTED", fund_error_code="balance.payment-option-unavailable"
    )

    with pytest.raises(InsufficientBalanceError):
        execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    payment = db_session.query(models.Payment).one()
    assert payment.status == models.PaymentStatus.failed
    assert payment.transfer_id == "tr-1"
    db_session.refresh(obligation)
    assert obligation.status == models.ObligationStatus.failed
    assert db_session.query(models.AuditLog).filter_by(action="payment.failed").count() == 1


def test_fund_rejected_for_other_reason(db_session, seed, lock_manager, make_provider):
    obligation = _charged_invoice(db_session, seed, lock_manager)
    provider = make_provider(fund_status="REJECTED")

    with pytest.raises(ProviderError) as exc_info:
        execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert not isinstance(exc_info.value, InsufficientBalanceError)
    assert exc_info.value.step == "fund"


def test_inactive_recipient_is_invalidated_and_payee_notified(db_session, seed, lock_manager, make_provider):
    obligation = _charged_invoice(db_session, seed, lock_manager)
    provider = make_provider(account_active=False)

    with pytest.raises(RecipientInactiveError):
        execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    recipient = db_session.query(models.Recipient).one()
    assert recipient.deleted_at is not None
    notification = db_session.query(models.Notification).one()
    assert notification.kind == models.NotificationKind.recipient_invalid
    assert notification.payee_id == obligation.payee_id
    payment = db_session.query(models.Payment).one()
    assert payment.status == models.PaymentStatus.failed
    assert "quote" not in provider.calls

    # With the recipient gone the next attempt short-circuits before any Payment.
    retry = execute_payment(db_session, obligation_ids=[obligation.id], provider=make_provider())
    assert retry.status == OutcomeStatus.NOT_PAYABLE
    assert retry.reason_code == NotPayableReason.RECIPIENT_MISSING
    assert db_session.query(models.Payment).count() == 1


def test_insufficient_platform_balance_creates_no_payment(db_session, seed, lock_manager, make_provider):
    obligation = _charged_invoice(db_session, seed, lock_manager, gross_cents=10_000)
    provider = make_provider(balance_cents=9_999)

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.NOT_PAYABLE
    assert outcome.reason_code == NotPayableReason.INSUFFICIENT_PLATFORM_BALANCE
    assert db_session.query(models.Payment).count() == 0
    assert provider.calls == ["balances"]


def test_uncharged_batch_blocks_untrusted_company(db_session, seed, lock_manager, provider):
    company = seed.company(is_trusted=False)
    payee = seed.payee(company)
    obligation = seed.invoice(payee)
    aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)
    db_session.refresh(obligation)

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.NOT_PAYABLE
    assert outcome.reason_code == NotPayableReason.BATCH_NOT_CHARGED
    assert provider.calls == []


def test_trusted_company_pays_once_batch_is_sent(db_session, seed, lock_manager, provider):
    company = seed.company(is_trusted=True)
    payee = seed.payee(company)
    obligation = seed.invoice(payee)
    aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)
    db_session.refresh(obligation)

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.PROCESSING


def test_missing_tax_information_is_not_payable(db_session, seed, lock_manager, provider):
    company = seed.company()
    payee = seed.payee(company, tax_confirmed=False)
    obligation = seed.dividend(payee)

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.NOT_PAYABLE
    assert outcome.reason_code == "tax_information_missing"
    assert db_session.query(models.Payment).count() == 0


def test_sanctioned_payee_is_retained_not_raised(db_session, seed, provider):
    company = seed.company()
    payee = seed.payee(company, country_code="IR")
    obligation = seed.dividend(payee, gross_cents=50_000)

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.RETAINED
    assert outcome.reason_code == models.RetainedReason.ofac_sanctioned_country.value
    db_session.refresh(obligation)
    assert obligation.status == models.ObligationStatus.retained
    assert obligation.retained_reason == models.RetainedReason.ofac_sanctioned_country
    assert db_session.query(models.Payment).count() == 0
    assert provider.calls == []


def test_small_dividend_is_retained_below_minimum(db_session, seed, provider):
    company = seed.company()
    payee = seed.payee(company, minimum_dividend_payment_cents=2_000)
    obligation = seed.dividend(payee, gross_cents=1_500)

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.RETAINED
    db_session.refresh(obligation)
    assert obligation.retained_reason == models.RetainedReason.below_minimum_payment_threshold


def test_retained_dividends_pay_out_once_combined_above_minimum(db_session, seed, provider):
    company = seed.company()
    payee = seed.payee(company)
    small = seed.dividend(payee, gross_cents=600)
    execute_payment(db_session, obligation_ids=[small.id], provider=provider)
    db_session.refresh(small)
    assert small.status == models.ObligationStatus.retained

    other = seed.dividend(payee, gross_cents=600)
    outcome = execute_payment(db_session, obligation_ids=[small.id, other.id], provider=provider)

    assert outcome.status == OutcomeStatus.PROCESSING
    assert outcome.payment.principal_cents == 1_200
    assert sorted(outcome.payment.obligation_ids) == sorted([small.id, other.id])
    assert outcome.payment.batch_id is None
    db_session.refresh(small)
    assert small.status == models.ObligationStatus.processing
    assert small.retained_reason is None


def test_equity_only_invoice_is_paid_without_transfer(db_session, seed, lock_manager, provider):
    company = seed.company(equity=True)
    payee = seed.payee(company)
    seed.election(payee, year=2026, pct=100, locked=True)
    obligation = _charged_invoice(
        db_session,
        seed,
        lock_manager,
        company=company,
        payee=payee,
        gross_cents=10_000,
        invoice_date=date(2026, 5, 1),
        share_price_cents=100,
    )
    assert obligation.cash_amount_cents == 0

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.PAID
    assert outcome.payment is None
    db_session.refresh(obligation)
    assert obligation.status == models.ObligationStatus.paid
    assert obligation.paid_at is not None
    assert db_session.query(models.Payment).count() == 0


def test_payment_covers_one_payee(db_session, seed, provider):
    company = seed.company()
    first = seed.dividend(seed.payee(company))
    second = seed.dividend(seed.payee(company))

    with pytest.raises(InvariantViolation):
        execute_payment(db_session, obligation_ids=[first.id, second.id], provider=provider)


def test_buyback_payment(db_session, seed, provider):
    company = seed.company()
    payee = seed.payee(company)
    obligation = seed.buyback(payee, gross_cents=25_000)

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.PROCESSING
    assert outcome.payment.kind == models.ObligationKind.equity_buyback
    assert outcome.payment.principal_cents == 25_000


def test_overlapping_run_does_not_transfer_twice(
    db_session, seed, lock_manager, make_provider, session_factory
):
    obligation = _charged_invoice(db_session, seed, lock_manager)

    class OverlappingProvider(make_provider):
        overlapping_outcome = None

        def create_quote(self, request):
            if self.overlapping_outcome is None:
                other = session_factory()
                try:
                    self.overlapping_outcome = execute_payment(
                        other, obligation_ids=[obligation.id], provider=self
                    )
                finally:
                    other.close()
            return super().create_quote(request)

    provider = OverlappingProvider()

    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.PROCESSING
    assert provider.overlapping_outcome.status == OutcomeStatus.NOT_PAYABLE
    assert provider.overlapping_outcome.reason_code == NotPayableReason.PAYMENT_IN_FLIGHT
    assert provider.overlapping_outcome.payment is None
    assert db_session.query(models.Payment).count() == 1
    assert len(provider.transfers) == 1
    assert provider.calls.count("fund") == 1


def test_rerun_after_crash_does_not_start_second_transfer(
    db_session, seed, lock_manager, make_provider
):
    obligation = _charged_invoice(db_session, seed, lock_manager)

    class CrashingProvider(make_provider):
        def create_quote(self, request):
            raise RuntimeError("worker killed")

    with pytest.raises(RuntimeError):
        execute_payment(db_session, obligation_ids=[obligation.id], provider=CrashingProvider())

    stuck = db_session.query(models.Payment).one()
    assert stuck.status == models.PaymentStatus.initialized

    provider = make_provider()
    outcome = execute_payment(db_session, obligation_ids=[obligation.id], provider=provider)

    assert outcome.status == OutcomeStatus.NOT_PAYABLE
    assert outcome.reason_code == NotPayableReason.PAYMENT_IN_FLIGHT
    assert db_session.query(models.Payment).count() == 1
    assert provider.transfers == []


def test_claim_skips_rows_held_by_another_payment(db_session, seed):
    company = seed.company()
    payee = seed.payee(company)
    held = seed.dividend(payee)
    free = seed.dividend(payee)

    first = claim_for_payment(db_session, [held.id], payment_id=1)
    second = claim_for_payment(db_session, [held.id, free.id], payment_id=2)
    db_session.commit()

    assert first.rowcount == 1
    assert second.rowcount == 1
    db_session.refresh(held)
    db_session.refresh(free)
    assert held.active_payment_id == 1
    assert free.active_payment_id == 2
    assert held.status == models.ObligationStatus.payment_pending
