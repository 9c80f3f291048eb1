"""SQLAlchemy ORM models for approvals, payments, batches and the event outbox"""

from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class ApprovalRuleRecord(Base):
    """Immutable version of a payor's amount-tier rule"""

    __tablename__ = "approval_rule"
    __table_args__ = (UniqueConstraint("payor_id", "version", name="uq_approval_rule_payor_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    payor_id = Column(Text, nullable=False, index=True)
    version = Column(Integer, nullable=False)
    tiers = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PayorAccountRecord(Base):
    """Verified bank account a payor pays from"""

    __tablename__ = "payor_account"

    payor_id = Column(Text, primary_key=True)
    bank_account_ref = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class InvoiceApprovalRecord(Base):
    """Approval chain for one invoice"""

    __tablename__ = "invoice_approval"

    id = Column(Text, primary_key=True)
    invoice_id = Column(Text, nullable=False, unique=True)
    payor_id = Column(Text, nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    rule_version = Column(Integer, nullable=False)
    chain = Column(JSON, nullable=False)
    status = Column(Text, nullable=False)
    current_slot = Column(Integer, nullable=True)
    withdrawn_by = Column(Text, nullable=True)
    withdrawal_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False)

    actions = relationship(
        "ApproverActionRecord",
        back_populates="approval",
        cascade="all, delete-orphan",
        order_by="ApproverActionRecord.position",
    )

    __mapper_args__ = {"version_id_col": version}


class ApproverActionRecord(Base):
    """Approver decision; one per approver per chain"""

    __tablename__ = "approval_action"
    __table_args__ = (UniqueConstraint("approval_id", "approver_id", name="uq_approval_action_approver"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    approval_id = Column(Text, ForeignKey("invoice_approval.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)
    approver_id = Column(Text, nullable=False)
    decision = Column(Text, nullable=False)
    slot_index = Column(Integer, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    approval = relationship("InvoiceApprovalRecord", back_populates="actions")


class PaymentRecord(Base):
    """Originated payment instruction"""

    __tablename__ = "payment"
    # One payment per attempt per approval: makes origination and resubmission idempotent
    __table_args__ = (UniqueConstraint("invoice_approval_id", "attempt", name="uq_payment_approval_attempt"),)

    id = Column(Text, primary_key=True)
    invoice_id = Column(Text, nullable=False, index=True)
    invoice_approval_id = Column(Text, nullable=False)
    payor_id = Column(Text, nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    effective_date = Column(Date, nullable=False)
    bank_account_ref = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    supersedes_payment_id = Column(Text, ForeignKey("payment.id"), nullable=True, unique=True)
    return_reason_code = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False)

    history = relationship(
        "PaymentTransitionRecord",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentTransitionRecord.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}


class PaymentTransitionRecord(Base):
    """Append-only payment status history"""

    __tablename__ = "payment_transition"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Text, ForeignKey("payment.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=False)
    at = Column(DateTime(timezone=True), nullable=False)
    reason_code = Column(Text, nullable=True)

    payment = relationship("PaymentRecord", back_populates="history")


class PaymentBatchRecord(Base):
    """Batch of payments submitted together"""

    __tablename__ = "payment_batch"

    id = Column(Text, primary_key=True)
    payor_id = Column(Text, nullable=False, index=True)
    effective_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False)
    # "<payor_id>|<effective_date>" while open, NULL afterwards: one open batch per key
    open_key = Column(Text, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    external_reference = Column(Text, nullable=True)
    submission_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)

    members = relationship(
        "PaymentBatchMemberRecord",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="PaymentBatchMemberRecord.position",
    )

    __mapper_args__ = {"version_id_col": version}


class PaymentBatchMemberRecord(Base):
    """Batch membership; a payment appears in at most one batch"""

    __tablename__ = "payment_batch_member"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(Text, ForeignKey("payment_batch.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = Column(Text, nullable=False, unique=True)
    position = Column(Integer, nullable=False)

    batch = relationship("PaymentBatchRecord", back_populates="members")


class DomainEventRecord(Base):
    """Outbox of domain events awaiting at-least-once delivery"""

    __tablename__ = "domain_event"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Text, nullable=False, unique=True)
    event_type = Column(Text, nullable=False, index=True)
    aggregate_id = Column(Text, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(Text, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
