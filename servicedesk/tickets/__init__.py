"""Ticket lifecycle domain models and services."""

from .comments import CommentThread
from .equipment import EquipmentRegistry
from .errors import (
    CapacityError,
    ConflictError,
    Forbidden,
    InvalidTransition,
    NotFound,
    StoreError,
    TicketError,
    ValidationError,
)
from .lifecycle import TicketLifecycle, TransitionResult
from .models import (
    Actor,
    Equipment,
    EquipmentStatus,
    Role,
    ServiceReport,
    ServiceReportDraft,
    Ticket,
    TicketAction,
    TicketStatus,
    TransitionPayload,
)
from .state import TicketStateMachine
from .store import InMemoryTicketStore
from .verification import ServiceVerificationWorkflow

__all__ = [
    "Actor",
    "CapacityError",
    "CommentThread",
    "ConflictError",
    "Equipment",
    "EquipmentRegistry",
    "EquipmentStatus",
    "Forbidden",
    "InMemoryTicketStore",
    "InvalidTransition",
    "NotFound",
    "Role",
    "ServiceReport",
    "ServiceReportDraft",
    "ServiceVerificationWorkflow",
    "StoreError",
    "Ticket",
    "TicketAction",
    "TicketError",
    "TicketLifecycle",
    "TicketStateMachine",
    "TicketStatus",
    "TransitionPayload",
    "TransitionResult",
    "ValidationError",
]
