"""Create audit_logs and audit_log_tags tables.

Revision ID: 001_audit_logs
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001_audit_logs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("action", sa.VARCHAR(50), nullable=False),
        sa.Column("status", sa.VARCHAR(20), nullable=False),
        sa.Column("priority", sa.VARCHAR(20), nullable=False, server_default="MEDIUM"),
        sa.Column("user_id", sa.VARCHAR(64), nullable=True),
        sa.Column("user_email", sa.VARCHAR(255), nullable=True),
        sa.Column("user_role", sa.VARCHAR(50), nullable=True),
        sa.Column("session_id", sa.VARCHAR(128), nullable=True),
        sa.Column("resource_type", sa.VARCHAR(20), nullable=True),
        sa.Column("resource_id", sa.VARCHAR(64), nullable=True),
        sa.Column("resource_name", sa.VARCHAR(255), nullable=True),
        sa.Column("method", sa.VARCHAR(10), nullable=True),
        sa.Column("endpoint", sa.TEXT, nullable=True),
        sa.Column("ip_address", sa.VARCHAR(64), nullable=True),
        sa.Column("user_agent", sa.VARCHAR(500), nullable=True),
        sa.Column("old_data", JSONB, nullable=True),
        sa.Column("new_data", JSONB, nullable=True),
        sa.Column("changes", JSONB, nullable=True),
        sa.Column("patch", JSONB, nullable=True),
        sa.Column("status_code", sa.INTEGER, nullable=True),
        sa.Column("error_message", sa.TEXT, nullable=True),
        sa.Column("error_stack", sa.TEXT, nullable=True),
        sa.Column("duration_ms", sa.FLOAT, nullable=True),
        sa.Column("request_bytes", sa.BIGINT, nullable=True),
        sa.Column("response_bytes", sa.BIGINT, nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        # CHECK constraints for enum values
        sa.CheckConstraint(
            "status IN ('SUCCESS', 'FAILURE', 'PENDING', 'ERROR', 'WARNING', 'INFO')",
            name="ck_audit_logs_status",
        ),
        sa.CheckConstraint(
            "priority IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')",
            name="ck_audit_logs_priority",
        ),
        sa.CheckConstraint(
            "resource_type IS NULL OR resource_type IN ('USER', 'LAND', 'LISTING', "
            "'TRANSACTION', 'SESSION', 'SYSTEM', 'FILE', 'API')",
            name="ck_audit_logs_resource_type",
        ),
        # Oversized snapshots are replaced by hash references before insert
        sa.CheckConstraint(
            "old_data IS NULL OR octet_length(old_data::text) <= 32768",
            name="ck_audit_logs_old_data_size",
        ),
        sa.CheckConstraint(
            "new_data IS NULL OR octet_length(new_data::text) <= 32768",
            name="ck_audit_logs_new_data_size",
        ),
    )

    op.create_table(
        "audit_log_tags",
        sa.Column("id", sa.INTEGER, primary_key=True, autoincrement=True),
        sa.Column(
            "audit_log_id",
            UUID(as_uuid=True),
            sa.ForeignKey("audit_logs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.INTEGER, nullable=False, server_default="0"),
        sa.Column("tag", sa.VARCHAR(50), nullable=False),
    )

    # Indexes for common query patterns
    op.create_index(
        "ix_audit_logs_user_id_timestamp",
        "audit_logs",
        ["user_id", sa.text("timestamp DESC")],
    )
    op.create_index(
        "ix_audit_logs_action_timestamp",
        "audit_logs",
        ["action", sa.text("timestamp DESC")],
    )
    op.create_index(
        "ix_audit_logs_resource",
        "audit_logs",
        ["resource_type", "resource_id"],
    )
    op.create_index(
        "ix_audit_logs_status_timestamp",
        "audit_logs",
        ["status", sa.text("timestamp DESC")],
    )
    op.create_index(
        "ix_audit_logs_timestamp",
        "audit_logs",
        [sa.text("timestamp DESC")],
    )
    op.create_index(
        "ix_audit_logs_session_id",
        "audit_logs",
        ["session_id"],
    )
    op.create_index(
        "ix_audit_logs_ip_timestamp",
        "audit_logs",
        ["ip_address", sa.text("timestamp DESC")],
    )
    op.create_index(
        "ix_audit_logs_priority_timestamp",
        "audit_logs",
        ["priority", sa.text("timestamp DESC")],
    )
    op.create_index(
        "ix_audit_log_tags_audit_log_id",
        "audit_log_tags",
        ["audit_log_id"],
    )
    op.create_index(
        "ix_audit_log_tags_tag",
        "audit_log_tags",
        ["tag"],
    )


def downgrade() -> None:
    op.drop_index("ix_audit_log_tags_tag", table_name="audit_log_tags")
    op.drop_index("ix_audit_log_tags_audit_log_id", table_name="audit_log_tags")
    op.drop_index("ix_audit_logs_priority_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ip_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_session_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_status_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_resource", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_id_timestamp", table_name="audit_logs")
    op.drop_table("audit_log_tags")
    op.drop_table("audit_logs")
