from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, PrimaryKeyConstraint, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite test databases portable.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class PreviewSession(Base):
    __tablename__ = "preview_sessions"
    __table_args__ = (
        Index("ix_preview_sessions_status_expires_at", "status", "expires_at"),
        Index("ix_preview_sessions_user_status", "user_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    project_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    # Provisioner instance id; only set while the session is active or terminating.
    container_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Last instance id the session ever held, retained for teardown and audit.
    last_container_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Machine name used for lookup when the recorded instance id is stale.
    container_name: Mapped[str | None] = mapped_column(String, nullable=True)
    container_url: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    resource_tier: Mapped[str] = mapped_column(String, default="free")
    device_type: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Snapshot of the tier limits applied at provisioning time.
    resource_limits: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProjectFile(Base):
    __tablename__ = "project_files"
    __table_args__ = (PrimaryKeyConstraint("project_id", "path", name="pk_project_files"),)

    project_id: Mapped[str] = mapped_column(String)
    path: Mapped[str] = mapped_column(String)
    # Null content marks a tombstone; the row is kept for audit and replay.
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    # SHA-256 hex digest of the UTF-8 content; null for tombstones.
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    file_type: Mapped[str] = mapped_column(String, default="text")
    version: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FileRevision(Base):
    __tablename__ = "file_revisions"
    __table_args__ = (
        PrimaryKeyConstraint("project_id", "path", "version", name="pk_file_revisions"),
    )

    project_id: Mapped[str] = mapped_column(String)
    path: Mapped[str] = mapped_column(String)
    version: Mapped[int] = mapped_column(Integer)
    # create, update or delete
    action: Mapped[str] = mapped_column(String)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
