"""init
Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "phone_numbers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("phone", sa.String(length=30), nullable=False),
        sa.Column("access_code", sa.String(length=32), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_domain", sa.String(length=255), nullable=True),
        sa.Column("source_url", sa.String(length=1000), nullable=True),
    )
    op.create_index("ix_phone_numbers_phone", "phone_numbers", ["phone"])
    op.create_index("ix_phone_numbers_is_used", "phone_numbers", ["is_used"])

    op.create_table(
        "relay_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("short_id", sa.String(length=16), nullable=False),
        sa.Column(
            "credential_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("phone_numbers.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=40), nullable=False, server_default="pending"),
        sa.Column("sms_code", sa.String(length=32), nullable=True),
    )
    op.create_index("ix_relay_requests_short_id", "relay_requests", ["short_id"], unique=True)
    op.create_index("ix_relay_requests_credential_id", "relay_requests", ["credential_id"])
    op.create_index("ix_relay_requests_status", "relay_requests", ["status"])

    op.create_table(
        "relay_status_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_status", sa.String(length=40), nullable=True),
        sa.Column("to_status", sa.String(length=40), nullable=False),
        sa.Column("actor", sa.String(length=200), nullable=False),
        sa.Column("comment", sa.String(length=400), nullable=True),
    )
    op.create_index("ix_relay_status_history_request_id", "relay_status_history", ["request_id"])

    op.create_table(
        "activation_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="scheduled"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_activation_jobs_request_id", "activation_jobs", ["request_id"])
    op.create_index("ix_activation_jobs_due_at", "activation_jobs", ["due_at"])
    op.create_index("ix_activation_jobs_state", "activation_jobs", ["state"])

def downgrade():
    op.drop_table("activation_jobs")
    op.drop_table("relay_status_history")
    op.drop_table("relay_requests")
    op.drop_table("phone_numbers")
