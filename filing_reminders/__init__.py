"""Filing Reminders - UK filing deadline reminder engine.

Deadline calculators, cycle rollover, traffic-light classification, an
idempotent reminder queue builder and the hourly batch processor, all
sharing one SQLite-backed store.
"""

from .models import (
    BuildResult,
    Client,
    ClientFilingAssignment,
    EmailTemplate,
    FilingTypeId,
    ProcessResult,
    ReminderQueueEntry,
    ReminderStatus,
    RolloverResult,
    Schedule,
    ScheduleStep,
    ScheduleType,
)
from .queue_builder import QueueBuilder
from .scheduler import process_reminders
from .store import ReminderStore

__all__ = [
    "BuildResult",
    "Client",
    "ClientFilingAssignment",
    "EmailTemplate",
    "FilingTypeId",
    "ProcessResult",
    "QueueBuilder",
    "ReminderQueueEntry",
    "ReminderStatus",
    "ReminderStore",
    "RolloverResult",
    "Schedule",
    "ScheduleStep",
    "ScheduleType",
    "process_reminders",
]
