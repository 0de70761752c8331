"""SQLModel table definitions for the service desk data layer."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class EquipmentTable(SQLModel, table=True):
    """Physical assets identified by a scannable code."""

    __tablename__ = "equipment"

    id: str = Field(primary_key=True, index=True)
    code: str = Field(sa_column=Column(String(32), nullable=False, unique=True))
    name: str = Field(sa_column=Column(String(200), nullable=False))
    equipment_type: str = Field(sa_column=Column(String(100), nullable=False))
    location: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    status: str = Field(sa_column=Column(String(50), nullable=False))
    status_override: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    last_service_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    service_interval_days: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    next_service_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketTable(SQLModel, table=True):
    """Maintenance requests; ``status`` and ``version`` guard conditional updates."""

    __tablename__ = "tickets"
    __table_args__ = (Index("ix_tickets_equipment_status", "equipment_id", "status"),)

    id: str = Field(primary_key=True, index=True)
    ticket_number: str = Field(sa_column=Column(String(32), nullable=False, unique=True))
    equipment_id: str = Field(
        sa_column=Column(String(36), ForeignKey("equipment.id"), nullable=False)
    )
    raised_by: str = Field(sa_column=Column(String(255), nullable=False))
    assigned_to: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(50), nullable=False))
    issue_type: str = Field(sa_column=Column(String(100), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    reopen_count: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class TicketTimelineTable(SQLModel, table=True):
    """Append-only status history, ordered by ``position`` within a ticket."""

    __tablename__ = "ticket_timeline"
    __table_args__ = (Index("ux_ticket_timeline_position", "ticket_id", "position", unique=True),)

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False)
    )
    position: int = Field(sa_column=Column(Integer, nullable=False))
    status: str = Field(sa_column=Column(String(50), nullable=False))
    actor_id: str = Field(sa_column=Column(String(255), nullable=False))
    notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    timestamp: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class ServiceReportTable(SQLModel, table=True):
    """Engineer completion reports and their verification outcome."""

    __tablename__ = "service_reports"

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    engineer_id: str = Field(sa_column=Column(String(255), nullable=False))
    work_description: str = Field(sa_column=Column(Text, nullable=False))
    time_spent: int = Field(sa_column=Column(Integer, nullable=False))
    parts_replaced: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    verification_status: str = Field(sa_column=Column(String(20), nullable=False))
    verified_by: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    rejection_reason: str | None = Field(default=None, sa_column=Column(String(500), nullable=True))
    submitted_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    verified_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class TicketCommentTable(SQLModel, table=True):
    """Free-form discussion attached to a ticket."""

    __tablename__ = "ticket_comments"

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    author_id: str = Field(sa_column=Column(String(255), nullable=False))
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class UserTable(SQLModel, table=True):
    """Directory mirror of identity-provider accounts and their roles."""

    __tablename__ = "users"

    id: str = Field(primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(100), nullable=False))
    email: str | None = Field(default=None, sa_column=Column(String(255), nullable=True, unique=True))
    role: str = Field(sa_column=Column(String(20), nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False))


class NotificationTable(SQLModel, table=True):
    """In-app notification inbox."""

    __tablename__ = "notifications"

    id: str = Field(primary_key=True, index=True)
    recipient_id: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    kind: str = Field(sa_column=Column(String(50), nullable=False))
    title: str = Field(sa_column=Column(String(200), nullable=False))
    message: str = Field(sa_column=Column(Text, nullable=False))
    link: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    read: bool = Field(default=False, sa_column=Column(Boolean, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
