"""Service layer for persistence, catch-up and side effects."""

from .channel_service import ChannelService
from .database import DatabaseService, get_db_service, init_db_service
from .notification_service import Notifier, create_notifier
from .reconciliation_service import ReconciliationService
from .reminder_service import ReminderStore, create_reminder_store
from .watermark_service import WatermarkService

__all__ = [
    "ChannelService",
    "DatabaseService",
    "Notifier",
    "ReconciliationService",
    "ReminderStore",
    "WatermarkService",
    "create_notifier",
    "create_reminder_store",
    "get_db_service",
    "init_db_service",
]
