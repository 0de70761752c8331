from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Sequence


class Role(str, Enum):
    """Roles supplied by the identity provider."""

    USER = "user"
    ENGINEER = "engineer"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"


class TicketStatus(str, Enum):
    """Canonical states of the ticket lifecycle."""

    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PENDING_VERIFICATION = "pending_verification"
    CLOSED = "closed"
    REJECTED = "rejected"
    REOPENED = "reopened"


# Statuses that keep the referenced equipment out of service.
ACTIVE_TICKET_STATUSES: frozenset[TicketStatus] = frozenset(
    {
        TicketStatus.OPEN,
        TicketStatus.ASSIGNED,
        TicketStatus.IN_PROGRESS,
        TicketStatus.PENDING_VERIFICATION,
        TicketStatus.REOPENED,
    }
)


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TicketAction(str, Enum):
    """Actions a caller may request against an existing ticket."""

    ASSIGN = "assign"
    START_SERVICE = "start_service"
    COMPLETE_SERVICE = "complete_service"
    APPROVE = "approve"
    REJECT = "reject"
    REOPEN = "reopen"


class EquipmentStatus(str, Enum):
    ACTIVE = "active"
    UNDER_SERVICE = "under_service"
    INACTIVE = "inactive"
    RETIRED = "retired"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class VerificationDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller passed explicitly into every operation."""

    id: str
    role: Role

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    """Immutable audit record of one status change."""

    status: TicketStatus
    timestamp: datetime
    actor_id: str
    notes: str | None = None


@dataclass(slots=True)
class Ticket:
    """Maintenance request raised against one piece of equipment."""

    id: str
    ticket_number: str
    equipment_id: str
    raised_by: str
    priority: TicketPriority
    status: TicketStatus
    issue_type: str
    description: str
    timeline: tuple[TimelineEntry, ...]
    created_at: datetime
    updated_at: datetime
    assigned_to: str | None = None
    reopen_count: int = 0
    closed_at: datetime | None = None
    version: int = 1


@dataclass(slots=True)
class Equipment:
    """Physical asset whose availability is derived from its open tickets."""

    id: str
    code: str
    name: str
    equipment_type: str
    status: EquipmentStatus
    created_at: datetime
    location: str | None = None
    status_override: EquipmentStatus | None = None
    last_service_date: datetime | None = None
    service_interval_days: int | None = None
    next_service_date: datetime | None = None


@dataclass(frozen=True, slots=True)
class PartReplaced:
    name: str
    quantity: int
    cost: float | None = None


@dataclass(slots=True)
class ServiceReport:
    """Technician's record of completed work, subject to verification."""

    id: str
    ticket_id: str
    engineer_id: str
    work_description: str
    time_spent: int
    submitted_at: datetime
    verification_status: VerificationStatus = VerificationStatus.PENDING
    parts_replaced: tuple[PartReplaced, ...] = ()
    verified_by: str | None = None
    verified_at: datetime | None = None
    rejection_reason: str | None = None


@dataclass(frozen=True, slots=True)
class ServiceReportDraft:
    """Report content as submitted by the engineer, before persistence."""

    work_description: str
    time_spent: int
    parts_replaced: Sequence[PartReplaced] = ()


@dataclass(slots=True)
class Comment:
    id: str
    ticket_id: str
    author_id: str
    message: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class TransitionPayload:
    """Optional inputs accompanying a transition request."""

    assigned_to: str | None = None
    notes: str | None = None
    reason: str | None = None
    report: ServiceReportDraft | None = None


@dataclass(slots=True)
class TicketSnapshot:
    """State observed by ``load_for_update``: the basis of a conditional write."""

    ticket: Ticket
    equipment: Equipment
    pending_report: ServiceReport | None = None


@dataclass(slots=True)
class TicketAggregate:
    """Container bundling the ticket with its comments and service reports."""

    ticket: Ticket
    comments: Sequence[Comment] = field(default_factory=list)
    reports: Sequence[ServiceReport] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class MaintenanceDue:
    """Equipment whose preventive service falls due within a queried window."""

    equipment: Equipment
    due_date: datetime
    days_until_due: int

    @property
    def is_overdue(self) -> bool:
        return self.days_until_due < 0
