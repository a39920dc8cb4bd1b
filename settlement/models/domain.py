# ruff: noqa: E501
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from settlement.database import Base


def _external_id() -> str:
    return str(uuid.uuid4())


class ObligationKind(PyEnum):
    invoice = "invoice"
    dividend = "dividend"
    equity_buyback = "equity_buyback"


class ObligationStatus(PyEnum):
    received = "received"
    # "approved" covers both partial and full approval; see approval_count.
    approved = "approved"
    rejected = "rejected"
    payment_pending = "payment_pending"
    processing = "processing"
    paid = "paid"
    failed = "failed"
    retained = "retained"


class RetainedReason(PyEnum):
    ofac_sanctioned_country = "ofac_sanctioned_country"
    below_minimum_payment_threshold = "below_minimum_payment_threshold"


class BatchStatus(PyEnum):
    sent = "sent"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"


class PaymentStatus(PyEnum):
    initialized = "initialized"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"
    refunded = "refunded"


class TransferBucket(PyEnum):
    success = "success"
    failure = "failure"
    intermediate = "intermediate"


class NotificationKind(PyEnum):
    payment_sent = "payment_sent"
    payment_failed = "payment_failed"
    recipient_invalid = "recipient_invalid"


OPEN_OBLIGATION_STATES = {
    ObligationStatus.received,
    ObligationStatus.approved,
    ObligationStatus.failed,
}
PAID_OR_PAYING_STATES = {
    ObligationStatus.payment_pending,
    ObligationStatus.processing,
    ObligationStatus.paid,
}
TERMINAL_OBLIGATION_STATES = {ObligationStatus.rejected, ObligationStatus.paid}


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload_json: Mapped[str | None] = mapped_column(Text)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Trusted companies may have contractors paid before their batch charge settles.
    is_trusted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    required_approvals: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    equity_compensation_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    payees = relationship("Payee", back_populates="company")

    @validates("required_approvals")
    def _validate_required_approvals(self, _key, value):
        if value is None or int(value) < 1:
            raise ValueError("required_approvals must be >= 1")
        return int(value)


class Payee(Base):
    __tablename__ = "payees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    country_code: Mapped[str | None] = mapped_column(String(2))
    tax_information_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    tax_id_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    minimum_dividend_payment_cents: Mapped[int] = mapped_column(
        BigInteger, default=1000, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    company = relationship("Company", back_populates="payees")
    equity_elections = relationship(
        "EquityElection", back_populates="payee", cascade="all, delete-orphan"
    )
    recipients = relationship("Recipient", back_populates="payee", cascade="all, delete-orphan")

    def equity_election_for(self, year: int) -> "EquityElection | None":
        for election in self.equity_elections or []:
            if election.year == int(year):
                return election
        return None

    def recipient_for(self, kind: ObligationKind) -> "Recipient | None":
        live = [r for r in (self.recipients or []) if r.deleted_at is None]
        if kind == ObligationKind.invoice:
            live = [r for r in live if r.used_for_invoices]
        else:
            live = [r for r in live if r.used_for_dividends]
        return live[-1] if live else None


class EquityElection(Base):
    """A payee's elected equity percentage for one calendar year."""

    __tablename__ = "equity_elections"
    __table_args__ = (UniqueConstraint("payee_id", "year", name="uq_equity_elections_payee_year"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payee_id: Mapped[int] = mapped_column(ForeignKey("payees.id"), nullable=False, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    equity_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    payee = relationship("Payee", back_populates="equity_elections")

    @validates("equity_percentage")
    def _validate_percentage(self, _key, value):
        if value is None or not 0 <= int(value) <= 100:
            raise ValueError("equity_percentage must be between 0 and 100")
        return int(value)


class Recipient(Base):
    """Bank or wallet account registered with the transfer provider."""

    __tablename__ = "recipients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payee_id: Mapped[int] = mapped_column(ForeignKey("payees.id"), nullable=False, index=True)
    provider_recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    last_four_digits: Mapped[str | None] = mapped_column(String(4))
    used_for_invoices: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    used_for_dividends: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    payee = relationship("Payee", back_populates="recipients")


batch_obligations = Table(
    "batch_obligations",
    Base.metadata,
    Column("batch_id", ForeignKey("batches.id"), primary_key=True),
    Column("obligation_id", ForeignKey("obligations.id"), primary_key=True),
)

payment_obligations = Table(
    "payment_obligations",
    Base.metadata,
    Column("payment_id", ForeignKey("payments.id"), primary_key=True),
    Column("obligation_id", ForeignKey("obligations.id"), primary_key=True),
)


class Obligation(Base):
    """A payable amount owed by a company to one payee.

    Invoices, dividends and equity buybacks share this table and the same
    state machine; ``kind`` selects the kind-specific rules.
    """

    __tablename__ = "obligations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, default=_external_id
    )
    kind: Mapped[ObligationKind] = mapped_column(
        Enum(ObligationKind, native_enum=False), nullable=False, index=True
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    payee_id: Mapped[int] = mapped_column(ForeignKey("payees.id"), nullable=False, index=True)
    obligation_date: Mapped[date] = mapped_column(Date, nullable=False)

    gross_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cash_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    equity_amount_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    equity_units: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    equity_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    withheld_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    fee_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    status: Mapped[ObligationStatus] = mapped_column(
        Enum(ObligationStatus, native_enum=False),
        default=ObligationStatus.received,
        nullable=False,
        index=True,
    )
    approval_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    required_approvals: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    retained_reason: Mapped[RetainedReason | None] = mapped_column(
        Enum(RetainedReason, native_enum=False), nullable=True
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Live batch link; batch_obligations keeps the full membership history.
    batch_id: Mapped[int | None] = mapped_column(ForeignKey("batches.id"), nullable=True, index=True)
    # Payment currently moving these funds; cleared once that payment settles or fails.
    active_payment_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    company = relationship("Company", lazy="joined")
    payee = relationship("Payee", lazy="joined")
    batch = relationship("Batch", foreign_keys=[batch_id], viewonly=True)
    approvals = relationship(
        "ObligationApproval", back_populates="obligation", cascade="all, delete-orphan"
    )

    @validates("gross_amount_cents", "cash_amount_cents", "equity_amount_cents", "equity_units")
    def _validate_non_negative(self, key, value):
        if value is None or int(value) < 0:
            raise ValueError(f"{key} must be >= 0")
        return int(value)

    @property
    def payout_amount_cents(self) -> int:
        return int(self.cash_amount_cents) - int(self.withheld_cents or 0)

    @property
    def fully_approved(self) -> bool:
        return int(self.approval_count or 0) >= int(self.required_approvals or 1)


class ObligationApproval(Base):
    __tablename__ = "obligation_approvals"
    __table_args__ = (
        UniqueConstraint("obligation_id", "approver_id", name="uq_obligation_approvals_approver"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    obligation_id: Mapped[int] = mapped_column(
        ForeignKey("obligations.id"), nullable=False, index=True
    )
    # Approver identity lives in the (out of scope) user directory.
    approver_id: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    obligation = relationship("Obligation", back_populates="approvals")


class Batch(Base):
    """Company-level consolidated charge covering many payee obligations."""

    __tablename__ = "batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, default=_external_id
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    principal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, native_enum=False), default=BatchStatus.sent, nullable=False
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    company = relationship("Company")
    obligations = relationship("Obligation", secondary=batch_obligations, lazy="selectin")
    payments = relationship("Payment", back_populates="batch")

    @property
    def obligation_ids(self) -> list[int]:
        return [o.id for o in self.obligations or []]


class Payment(Base):
    """One money-movement attempt against the transfer provider.

    A failed attempt is retained for audit; a retry is a new row.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, default=_external_id
    )
    kind: Mapped[ObligationKind] = mapped_column(
        Enum(ObligationKind, native_enum=False), nullable=False
    )
    batch_id: Mapped[int | None] = mapped_column(ForeignKey("batches.id"), nullable=True, index=True)
    payee_id: Mapped[int] = mapped_column(ForeignKey("payees.id"), nullable=False, index=True)
    recipient_id: Mapped[int | None] = mapped_column(ForeignKey("recipients.id"), nullable=True)

    # Idempotency key sent to the provider as the customer transaction id.
    processor_reference: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, default=_external_id
    )
    provider_profile_id: Mapped[str | None] = mapped_column(String(64), index=True)
    quote_id: Mapped[str | None] = mapped_column(String(64))
    transfer_id: Mapped[str | None] = mapped_column(String(64), index=True)
    transfer_status: Mapped[str | None] = mapped_column(String(64))
    transfer_bucket: Mapped[TransferBucket | None] = mapped_column(
        Enum(TransferBucket, native_enum=False), nullable=True
    )
    transfer_currency: Mapped[str | None] = mapped_column(String(3))
    conversion_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    transfer_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    transfer_estimate: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    recipient_last4: Mapped[str | None] = mapped_column(String(4))

    principal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    total_transaction_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False),
        default=PaymentStatus.initialized,
        nullable=False,
        index=True,
    )
    error: Mapped[str | None] = mapped_column(Text)
    succeeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    batch = relationship("Batch", back_populates="payments")
    payee = relationship("Payee")
    recipient = relationship("Recipient")
    obligations = relationship("Obligation", secondary=payment_obligations, lazy="selectin")

    @property
    def transfer_reference(self) -> str:
        return f"PMT{self.id}"

    @property
    def obligation_ids(self) -> list[int]:
        return [o.id for o in self.obligations or []]


class Notification(Base):
    """Outbox row for fire-and-forget payee notifications."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[NotificationKind] = mapped_column(
        Enum(NotificationKind, native_enum=False), nullable=False, index=True
    )
    payee_id: Mapped[int] = mapped_column(ForeignKey("payees.id"), nullable=False, index=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
