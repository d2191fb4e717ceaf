"""Add the moderation audit trail

Revision ID: 0001_moderation_records
Revises: 0000_initial_schema
Create Date: 2026-10-02
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_moderation_records"
down_revision = "0000_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # No foreign key to events: records must survive the event being deleted.
    op.create_table(
        "moderation_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("prior_status", sa.String(length=20), nullable=False),
        sa.Column("new_status", sa.String(length=20), nullable=False),
        sa.Column("reviewer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_moderation_records_event_id", "moderation_records", ["event_id"], unique=False)
    op.create_index("ix_moderation_records_reviewer_id", "moderation_records", ["reviewer_id"], unique=False)
    op.create_index("ix_moderation_records_created_at", "moderation_records", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_moderation_records_created_at", table_name="moderation_records")
    op.drop_index("ix_moderation_records_reviewer_id", table_name="moderation_records")
    op.drop_index("ix_moderation_records_event_id", table_name="moderation_records")
    op.drop_table("moderation_records")
