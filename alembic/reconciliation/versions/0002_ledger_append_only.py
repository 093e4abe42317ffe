"""make ledger_entries append-only at the database level

Receipts are issued per ledger entry, so rows may never change or vanish
once written. Covers row-level UPDATE/DELETE and table-level TRUNCATE.

Revision ID: 0002_ledger_append_only
Revises: 0001_reconciliation
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_ledger_append_only"
down_revision = "0001_reconciliation"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION learnpay_ledger_entries_append_only()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF TG_LEVEL = 'ROW' THEN
                RAISE EXCEPTION 'ledger entry % (receipt %) cannot be changed by %',
                    OLD.entry_id, OLD.receipt_number, TG_OP
                    USING ERRCODE = 'integrity_constraint_violation';
            END IF;
            RAISE EXCEPTION 'ledger_entries cannot be truncated'
                USING ERRCODE = 'integrity_constraint_violation';
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_append_only
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW
        EXECUTE FUNCTION learnpay_ledger_entries_append_only();
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_no_truncate
        BEFORE TRUNCATE ON ledger_entries
        FOR EACH STATEMENT
        EXECUTE FUNCTION learnpay_ledger_entries_append_only();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_no_truncate ON ledger_entries;")
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_append_only ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS learnpay_ledger_entries_append_only();")
