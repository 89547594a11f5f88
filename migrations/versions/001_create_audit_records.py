"""Create audit_records table

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "audit_records",
        sa.Column("record_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("step_id", sa.String(255), nullable=False),
        sa.Column("attempt", sa.Integer, nullable=False),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("record_type", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("case_id", "step_id", "attempt", name="uq_audit_records_key"),
    )

    op.create_index("idx_audit_records_case_sequence", "audit_records", ["case_id", "sequence"])
    op.create_index("idx_audit_records_type", "audit_records", ["record_type"])

    # Append-only: reject updates and deletes at the database level
    op.execute(
        """
        CREATE OR REPLACE FUNCTION audit_records_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_records is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER audit_records_no_modify
        BEFORE UPDATE OR DELETE ON audit_records
        FOR EACH ROW EXECUTE FUNCTION audit_records_immutable();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS audit_records_no_modify ON audit_records")
    op.execute("DROP FUNCTION IF EXISTS audit_records_immutable()")
    op.drop_table("audit_records")
