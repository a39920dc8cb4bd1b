import threading
from datetime import date, datetime

import pytest

from settlement import models
from settlement.core.errors import CompanyInactiveError, LockTimeoutError, NotFoundError
from settlement.services import batch_aggregator
from settlement.services.batch_aggregator import (
    aggregate_company_batch,
    batch_is_charged,
    mark_batch_failed,
    mark_batch_paid,
)
from settlement.services.lock_manager import KEY_PREFIX, LockManager, batch_lock_key


def test_batch_totals_reconcile_to_members(db_session, seed, lock_manager):
    company = seed.company()
    payee_a = seed.payee(company)
    payee_b = seed.payee(company)
    first = seed.invoice(payee_a, gross_cents=10_000, invoice_date=date(2026, 9, 3))
    second = seed.invoice(payee_b, gross_cents=20_000, invoice_date=date(2026, 9, 17))

    batch = aggregate_company_batch(
        db_session, company_id=company.id, lock_manager=lock_manager, invoice_date=date(2026, 10, 1)
    )

    assert batch is not None
    assert batch.status == models.BatchStatus.sent
    assert batch.principal_cents == 30_000
    assert batch.fee_cents == 200 + 350
    assert batch.total_cents == batch.principal_cents + batch.fee_cents
    assert batch.period_start == date(2026, 9, 3)
    assert batch.period_end == date(2026, 9, 17)
    assert batch.invoice_date == date(2026, 10, 1)
    assert sorted(batch.obligation_ids) == sorted([first.id, second.id])
    assert sum(o.cash_amount_cents for o in batch.obligations) == batch.principal_cents

    for obligation in (first, second):
        db_session.refresh(obligation)
        assert obligation.batch_id == batch.id
        assert obligation.status == models.ObligationStatus.payment_pending

    assert db_session.query(models.AuditLog).filter_by(action="batch.created").count() == 1


def test_equity_is_never_charged_to_the_company(db_session, seed, lock_manager):
    company = seed.company(equity=True)
    payee = seed.payee(company)
    seed.election(payee, year=2026, pct=60)
    seed.invoice(
        payee, gross_cents=72037, invoice_date=date(2026, 4, 30), share_price_cents=234
    )

    batch = aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    assert batch.principal_cents == 28815
    assert batch.fee_cents == 1131


def test_inactive_company_is_fatal_and_creates_no_batch(db_session, seed, lock_manager, redis_client):
    company = seed.company()
    payee = seed.payee(company)
    seed.invoice(payee)
    company.active = False
    db_session.commit()

    with pytest.raises(CompanyInactiveError):
        aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    assert db_session.query(models.Batch).count() == 0
    assert redis_client.get(KEY_PREFIX + batch_lock_key(company.id)) is None


def test_unknown_company(db_session, lock_manager):
    with pytest.raises(NotFoundError):
        aggregate_company_batch(db_session, company_id=999, lock_manager=lock_manager)


def test_selection_skips_ineligible_obligations(db_session, seed, lock_manager):
    company = seed.company(required_approvals=2)
    other_company = seed.company()
    payee = seed.payee(company)
    outsider = seed.payee(other_company)

    eligible = seed.invoice(payee, approvals=2)
    partial = seed.invoice(payee, approvals=1)
    seed.invoice(payee, approvals=0)
    rejected = seed.invoice(payee, approvals=2)
    rejected.status = models.ObligationStatus.rejected
    dividend = seed.dividend(payee, approvals=2)
    foreign = seed.invoice(outsider)
    db_session.commit()

    batch = aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    assert batch.obligation_ids == [eligible.id]
    for skipped in (partial, rejected, dividend, foreign):
        db_session.refresh(skipped)
        assert skipped.batch_id is None


def test_failed_invoices_are_retried_and_paid_uncharged_are_linked(db_session, seed, lock_manager):
    company = seed.company()
    payee = seed.payee(company)
    failed = seed.invoice(payee, gross_cents=5_000)
    failed.status = models.ObligationStatus.failed
    paid = seed.invoice(payee, gross_cents=7_000)
    paid.status = models.ObligationStatus.paid
    paid.paid_at = datetime(2026, 9, 30)
    db_session.commit()

    batch = aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    assert sorted(batch.obligation_ids) == sorted([failed.id, paid.id])
    assert batch.principal_cents == 12_000
    db_session.refresh(failed)
    db_session.refresh(paid)
    assert failed.status == models.ObligationStatus.payment_pending
    assert paid.status == models.ObligationStatus.paid
    assert paid.batch_id == batch.id


def test_explicit_ids_are_intersected_with_eligibility(db_session, seed, lock_manager):
    company = seed.company()
    payee = seed.payee(company)
    wanted = seed.invoice(payee)
    not_wanted = seed.invoice(payee)
    unapproved = seed.invoice(payee, approvals=0)

    batch = aggregate_company_batch(
        db_session,
        company_id=company.id,
        lock_manager=lock_manager,
        obligation_ids=[wanted.id, unapproved.id],
    )

    assert batch.obligation_ids == [wanted.id]
    db_session.refresh(not_wanted)
    assert not_wanted.batch_id is None


def test_nothing_to_do_returns_none(db_session, seed, lock_manager, redis_client):
    company = seed.company()
    seed.payee(company)

    assert aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager) is None
    assert db_session.query(models.Batch).count() == 0
    assert redis_client.get(KEY_PREFIX + batch_lock_key(company.id)) is None


def test_second_run_does_not_double_charge(db_session, seed, lock_manager):
    company = seed.company()
    payee = seed.payee(company)
    seed.invoice(payee)

    first = aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)
    second = aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    assert first is not None
    assert second is None
    assert db_session.query(models.Batch).count() == 1


def test_held_lock_blocks_concurrent_aggregation(db_session, seed, lock_manager):
    company = seed.company()
    payee = seed.payee(company)
    obligation = seed.invoice(payee)
    lock_manager.acquire(batch_lock_key(company.id))

    with pytest.raises(LockTimeoutError):
        aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    assert db_session.query(models.Batch).count() == 0
    db_session.refresh(obligation)
    assert obligation.batch_id is None


def test_failure_mid_aggregation_links_nothing(db_session, seed, lock_manager, monkeypatch):
    company = seed.company()
    payee = seed.payee(company)
    obligation = seed.invoice(payee)

    def _explode(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(batch_aggregator, "mark_chargeable", _explode)

    with pytest.raises(RuntimeError):
        aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    assert db_session.query(models.Batch).count() == 0
    assert db_session.query(models.batch_obligations).count() == 0
    db_session.refresh(obligation)
    assert obligation.batch_id is None
    assert obligation.status == models.ObligationStatus.approved


def test_mark_batch_paid_is_idempotent(db_session, seed, lock_manager):
    company = seed.company()
    payee = seed.payee(company)
    seed.invoice(payee)
    batch = aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    mark_batch_paid(db_session, batch, paid_at=datetime(2026, 10, 2, 8, 0))
    mark_batch_paid(db_session, batch, paid_at=datetime(2026, 10, 3, 8, 0))

    assert batch.status == models.BatchStatus.paid
    assert batch.paid_at.replace(tzinfo=None) == datetime(2026, 10, 2, 8, 0)
    assert db_session.query(models.AuditLog).filter_by(action="batch.paid").count() == 1


def test_failed_batch_releases_members_for_the_next_run(db_session, seed, lock_manager):
    company = seed.company()
    payee = seed.payee(company)
    obligation = seed.invoice(payee)
    batch = aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)

    mark_batch_failed(db_session, batch)

    assert batch.status == models.BatchStatus.failed
    db_session.refresh(obligation)
    assert obligation.status == models.ObligationStatus.failed
    assert obligation.batch_id is None
    # Membership history is kept.
    assert batch.obligation_ids == [obligation.id]

    retry = aggregate_company_batch(db_session, company_id=company.id, lock_manager=lock_manager)
    assert retry.id != batch.id
    assert retry.obligation_ids == [obligation.id]


def test_batch_is_charged_depends_on_trust():
    sent = models.Batch(status=models.BatchStatus.sent)
    paid = models.Batch(status=models.BatchStatus.paid)

    assert batch_is_charged(sent, trusted=True) is True
    assert batch_is_charged(sent, trusted=False) is False
    assert batch_is_charged(paid, trusted=False) is True
    assert batch_is_charged(None, trusted=True) is False


def test_concurrent_runs_link_each_obligation_once(db_session, seed, redis_client, session_factory):
    company = seed.company()
    payee = seed.payee(company)
    ids = [seed.invoice(payee).id for _ in range(3)]
    locks = LockManager(redis_client, retry_count=200, retry_delay_ms=5, retry_jitter_ms=5)
    start = threading.Barrier(2)
    outcomes = []

    def _run():
        db = session_factory()
        try:
            start.wait()
            batch = aggregate_company_batch(db, company_id=company.id, lock_manager=locks)
            outcomes.append(batch.id if batch is not None else None)
        except LockTimeoutError:
            outcomes.append("timeout")
        finally:
            db.close()

    workers = [threading.Thread(target=_run) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    assert len(outcomes) == 2
    assert db_session.query(models.Batch).count() == 1
    batch = db_session.query(models.Batch).one()
    assert outcomes.count(batch.id) == 1
    assert sorted(batch.obligation_ids) == sorted(ids)
    assert db_session.query(models.batch_obligations).count() == len(ids)
