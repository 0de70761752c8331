"""Database models and engine helpers."""

from .models import (
    EquipmentTable,
    NotificationTable,
    ServiceReportTable,
    TicketCommentTable,
    TicketTable,
    TicketTimelineTable,
    UserTable,
)
from .session import create_session_factory, to_asyncpg_dsn

__all__ = [
    "EquipmentTable",
    "NotificationTable",
    "ServiceReportTable",
    "TicketCommentTable",
    "TicketTable",
    "TicketTimelineTable",
    "UserTable",
    "create_session_factory",
    "to_asyncpg_dsn",
]
