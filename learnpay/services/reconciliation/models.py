"""Reconciliation database models.

This DB is the source of truth for obligations, their append-only payment
ledger, gateway payment intents, and the service-local outbox.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, event, func
from sqlalchemy.orm import Mapped, mapped_column

from learnpay.common.db import Base, JSONPayload


class Obligation(Base):
    """Money owed for one payable item: a course purchase or a fee installment.

    `due_amount_minor` and `status` are caches of `derive_obligation_status`,
    rewritten together with `amount_paid_minor` on every mutation.
    """

    __tablename__ = "obligations"
    __table_args__ = (
        Index("ix_obligations_learner_status", "learner_id", "status"),
        Index("ix_obligations_learner_due_date", "learner_id", "due_date"),
        CheckConstraint(
            "amount_paid_minor >= 0 AND amount_paid_minor <= total_amount_minor", name="ck_obligations_paid_range"
        ),
        CheckConstraint("amount_paid_minor + due_amount_minor = total_amount_minor", name="ck_obligations_conservation"),
    )

    obligation_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    kind: Mapped[str] = mapped_column(String, index=True)
    learner_id: Mapped[str] = mapped_column(String, index=True)
    course_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    total_amount_minor: Mapped[int] = mapped_column(Integer)
    amount_paid_minor: Mapped[int] = mapped_column(Integer, default=0)
    due_amount_minor: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String, default="")
    plan_type: Mapped[str | None] = mapped_column(String, nullable=True)
    installment_number: Mapped[int] = mapped_column(Integer, default=1)
    total_installments: Mapped[int] = mapped_column(Integer, default=1)
    plan_total_minor: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discount_minor: Mapped[int] = mapped_column(Integer, default=0)
    center_name: Mapped[str] = mapped_column(String, default="")
    notes: Mapped[str] = mapped_column(String, default="")
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LedgerEntry(Base):
    """Immutable record of one payment applied to an obligation."""

    __tablename__ = "ledger_entries"
    __table_args__ = (CheckConstraint("amount_minor > 0", name="ck_ledger_entries_positive"),)

    entry_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    obligation_id: Mapped[str] = mapped_column(ForeignKey("obligations.obligation_id"), index=True)
    amount_minor: Mapped[int] = mapped_column(Integer)
    channel: Mapped[str] = mapped_column(String)
    reference: Mapped[str] = mapped_column(String, default="")
    note: Mapped[str] = mapped_column(String, default="")
    remote_order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    remote_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recorded_by: Mapped[str] = mapped_column(String)
    receipt_number: Mapped[str] = mapped_column(String, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


@event.listens_for(LedgerEntry, "before_update")
@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_mutation(mapper, connection, target) -> None:
    raise ValueError(f"ledger_entries is append-only; entry {target.entry_id} cannot change")


class PaymentIntent(Base):
    """Local correlation between a remote gateway order and an obligation."""

    __tablename__ = "payment_intents"
    __table_args__ = (Index("ix_payment_intents_obligation_status", "obligation_id", "status"),)

    intent_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    obligation_id: Mapped[str] = mapped_column(ForeignKey("obligations.obligation_id"), index=True)
    learner_id: Mapped[str] = mapped_column(String, index=True)
    amount_minor: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    remote_order_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    status: Mapped[str] = mapped_column(String, default="created", index=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    remote_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    signature: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONPayload)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
