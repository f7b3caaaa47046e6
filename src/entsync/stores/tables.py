"""SQLAlchemy ORM tables for the sync run log."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class Base(DeclarativeBase):
    pass


# ── Runs ────────────────────────────────────────────────
class SyncRunRow(Base):
    __tablename__ = "sync_run"

    run_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_uuid: Mapped[str] = mapped_column(String(36), unique=True)
    run_command: Mapped[str] = mapped_column(Text, default="")
    run_arguments: Mapped[list] = mapped_column(JSON, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    exit_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    warning_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)


# ── Providers ───────────────────────────────────────────
class SyncProviderRow(Base):
    __tablename__ = "sync_provider"

    provider_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_hash: Mapped[str] = mapped_column(String(64), unique=True)
    provider_class: Mapped[str] = mapped_column(Text)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    last_seen: Mapped[datetime] = mapped_column(DateTime, default=_now)


# ── Entity types ────────────────────────────────────────
class SyncEntityTypeRow(Base):
    __tablename__ = "sync_entity_type"

    entity_type_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type_class: Mapped[str] = mapped_column(Text, unique=True)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    last_seen: Mapped[datetime] = mapped_column(DateTime, default=_now)


class SyncEntityTypeStateRow(Base):
    __tablename__ = "sync_entity_type_state"

    provider_id: Mapped[int] = mapped_column(ForeignKey("sync_provider.provider_id"), primary_key=True)
    entity_type_id: Mapped[int] = mapped_column(ForeignKey("sync_entity_type.entity_type_id"), primary_key=True)
    last_seen: Mapped[datetime] = mapped_column(DateTime, default=_now)
    last_sync: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


# ── Entities ────────────────────────────────────────────
class SyncEntityRow(Base):
    __tablename__ = "sync_entity"

    provider_id: Mapped[int] = mapped_column(ForeignKey("sync_provider.provider_id"), primary_key=True)
    entity_type_id: Mapped[int] = mapped_column(ForeignKey("sync_entity_type.entity_type_id"), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    is_dirty: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    last_seen: Mapped[datetime] = mapped_column(DateTime, default=_now)
    last_sync: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    entity_data: Mapped[dict] = mapped_column(JSON, default=dict)


# ── Namespaces ──────────────────────────────────────────
class SyncEntityNamespaceRow(Base):
    __tablename__ = "sync_entity_namespace"

    entity_namespace_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_namespace_prefix: Mapped[str] = mapped_column(String(100), unique=True)
    base_uri: Mapped[str] = mapped_column(Text)
    module_namespace: Mapped[str] = mapped_column(Text)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    last_seen: Mapped[datetime] = mapped_column(DateTime, default=_now)
