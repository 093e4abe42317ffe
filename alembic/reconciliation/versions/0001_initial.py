"""initial reconciliation schema

Revision ID: 0001_reconciliation
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_reconciliation"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "learners",
        sa.Column("learner_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("learner_id"),
    )
    op.create_index("ix_learners_email", "learners", ["email"])
    op.create_index("ix_learners_role", "learners", ["role"])

    op.create_table(
        "courses",
        sa.Column("course_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("price_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("course_id"),
    )
    op.create_index("ix_courses_creator_id", "courses", ["creator_id"])

    op.create_table(
        "learner_courses",
        sa.Column("learner_id", sa.String(), nullable=False),
        sa.Column("course_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("learner_id", "course_id"),
    )
    op.create_index("ix_learner_courses_course_id", "learner_courses", ["course_id"])

    op.create_table(
        "course_learners",
        sa.Column("course_id", sa.String(), nullable=False),
        sa.Column("learner_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("course_id", "learner_id"),
    )
    op.create_index("ix_course_learners_learner_id", "course_learners", ["learner_id"])

    op.create_table(
        "obligations",
        sa.Column("obligation_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("learner_id", sa.String(), nullable=False),
        sa.Column("course_id", sa.String(), nullable=True),
        sa.Column("total_amount_minor", sa.Integer(), nullable=False),
        sa.Column("amount_paid_minor", sa.Integer(), nullable=False),
        sa.Column("due_amount_minor", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("plan_type", sa.String(), nullable=True),
        sa.Column("installment_number", sa.Integer(), nullable=False),
        sa.Column("total_installments", sa.Integer(), nullable=False),
        sa.Column("plan_total_minor", sa.Integer(), nullable=True),
        sa.Column("discount_minor", sa.Integer(), nullable=False),
        sa.Column("center_name", sa.String(), nullable=False),
        sa.Column("notes", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount_paid_minor >= 0 AND amount_paid_minor <= total_amount_minor", name="ck_obligations_paid_range"),
        sa.CheckConstraint("amount_paid_minor + due_amount_minor = total_amount_minor", name="ck_obligations_conservation"),
        sa.PrimaryKeyConstraint("obligation_id"),
    )
    op.create_index("ix_obligations_kind", "obligations", ["kind"])
    op.create_index("ix_obligations_learner_id", "obligations", ["learner_id"])
    op.create_index("ix_obligations_course_id", "obligations", ["course_id"])
    op.create_index("ix_obligations_status", "obligations", ["status"])
    op.create_index("ix_obligations_learner_status", "obligations", ["learner_id", "status"])
    op.create_index("ix_obligations_learner_due_date", "obligations", ["learner_id", "due_date"])

    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("obligation_id", sa.String(), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("reference", sa.String(), nullable=False),
        sa.Column("note", sa.String(), nullable=False),
        sa.Column("remote_order_id", sa.String(), nullable=True),
        sa.Column("remote_payment_id", sa.String(), nullable=True),
        sa.Column("recorded_by", sa.String(), nullable=False),
        sa.Column("receipt_number", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount_minor > 0", name="ck_ledger_entries_positive"),
        sa.ForeignKeyConstraint(["obligation_id"], ["obligations.obligation_id"]),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("receipt_number", name="uq_ledger_entries_receipt_number"),
    )
    op.create_index("ix_ledger_entries_obligation_id", "ledger_entries", ["obligation_id"])
    op.create_index("ix_ledger_entries_remote_order_id", "ledger_entries", ["remote_order_id"])

    op.create_table(
        "payment_intents",
        sa.Column("intent_id", sa.String(), nullable=False),
        sa.Column("obligation_id", sa.String(), nullable=False),
        sa.Column("learner_id", sa.String(), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("remote_order_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("remote_payment_id", sa.String(), nullable=True),
        sa.Column("signature", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["obligation_id"], ["obligations.obligation_id"]),
        sa.PrimaryKeyConstraint("intent_id"),
    )
    op.create_index("ix_payment_intents_obligation_id", "payment_intents", ["obligation_id"])
    op.create_index("ix_payment_intents_learner_id", "payment_intents", ["learner_id"])
    op.create_index("ix_payment_intents_remote_order_id", "payment_intents", ["remote_order_id"], unique=True)
    op.create_index("ix_payment_intents_status", "payment_intents", ["status"])
    op.create_index("ix_payment_intents_obligation_status", "payment_intents", ["obligation_id", "status"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])
    op.create_index(
        "ix_outbox_events_pending_created",
        "outbox_events",
        ["created_at"],
        postgresql_where=sa.text("status = 'PENDING'"),
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_pending_created", table_name="outbox_events")
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_payment_intents_obligation_status", table_name="payment_intents")
    op.drop_index("ix_payment_intents_status", table_name="payment_intents")
    op.drop_index("ix_payment_intents_remote_order_id", table_name="payment_intents")
    op.drop_index("ix_payment_intents_learner_id", table_name="payment_intents")
    op.drop_index("ix_payment_intents_obligation_id", table_name="payment_intents")
    op.drop_table("payment_intents")
    op.drop_index("ix_ledger_entries_remote_order_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_obligation_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_obligations_learner_due_date", table_name="obligations")
    op.drop_index("ix_obligations_learner_status", table_name="obligations")
    op.drop_index("ix_obligations_status", table_name="obligations")
    op.drop_index("ix_obligations_course_id", table_name="obligations")
    op.drop_index("ix_obligations_learner_id", table_name="obligations")
    op.drop_index("ix_obligations_kind", table_name="obligations")
    op.drop_table("obligations")
    op.drop_index("ix_course_learners_learner_id", table_name="course_learners")
    op.drop_table("course_learners")
    op.drop_index("ix_learner_courses_course_id", table_name="learner_courses")
    op.drop_table("learner_courses")
    op.drop_index("ix_courses_creator_id", table_name="courses")
    op.drop_table("courses")
    op.drop_index("ix_learners_role", table_name="learners")
    op.drop_index("ix_learners_email", table_name="learners")
    op.drop_table("learners")
