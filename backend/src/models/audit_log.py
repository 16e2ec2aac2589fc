"""Audit log persistence models.

audit_logs holds one append-mostly row per AuditEvent. Tags live in
audit_log_tags so that tag-membership filters work the same way on
PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class AuditLogRecord(Base):
    """Persistent audit event.

    Rows are written once by the audit store adapter and never updated;
    the only deletion path is retention cleanup.
    """

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    action: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20))
    priority: Mapped[str] = mapped_column(String(20), default="MEDIUM")

    # Actor
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Resource
    resource_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resource_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Request
    method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    endpoint: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Change set
    old_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    changes: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    patch: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)

    # Outcome
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Metrics
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    request_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    response_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # "metadata" is reserved on declarative classes
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    tag_rows: Mapped[list["AuditLogTag"]] = relationship(
        back_populates="audit_log",
        cascade="all, delete-orphan",
        order_by="AuditLogTag.position",
        lazy="selectin",
    )

    @property
    def tags(self) -> list[str]:
        return [row.tag for row in self.tag_rows]


class AuditLogTag(Base):
    """One tag of an audit event, in derivation order."""

    __tablename__ = "audit_log_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_log_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("audit_logs.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    tag: Mapped[str] = mapped_column(String(50), index=True)

    audit_log: Mapped[AuditLogRecord] = relationship(back_populates="tag_rows")


Index("ix_audit_logs_user_id_timestamp", AuditLogRecord.user_id, AuditLogRecord.timestamp.desc())
Index("ix_audit_logs_action_timestamp", AuditLogRecord.action, AuditLogRecord.timestamp.desc())
Index("ix_audit_logs_resource", AuditLogRecord.resource_type, AuditLogRecord.resource_id)
Index("ix_audit_logs_status_timestamp", AuditLogRecord.status, AuditLogRecord.timestamp.desc())
Index("ix_audit_logs_timestamp", AuditLogRecord.timestamp.desc())
Index("ix_audit_logs_session_id", AuditLogRecord.session_id)
Index("ix_audit_logs_ip_timestamp", AuditLogRecord.ip_address, AuditLogRecord.timestamp.desc())
Index("ix_audit_logs_priority_timestamp", AuditLogRecord.priority, AuditLogRecord.timestamp.desc())
