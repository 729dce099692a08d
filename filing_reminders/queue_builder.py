"""
Filing Reminders -- Queue Builder

Expands clients, filing assignments and schedules into dated
``scheduled`` rows in the reminder queue.

Filing expansion, for every active (client, filing type) assignment:
    1. Skip paused clients and filing types whose records are in
    2. Deadline = explicit override, else the calculator
    3. Look up the active schedule for the filing type
    4. Per step: resolve template, apply the client's step override,
       send_date = deadline - delay_days snapped to the next working day
    5. Insert unless the idempotency key already exists

Custom expansion, for every active custom schedule:
    target date = fixed custom_date, or the next recurrence after today,
    then the same per-step expansion for every non-paused client not on
    the schedule's exclusion list.

Every pass is idempotent: running it twice with no data changes creates
nothing the second time.  Data gaps (missing year end, no schedule,
missing template) are counted as skips and written to the audit log, they
never raise.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, timedelta
from typing import AbstractSet, Optional, Union

from dateutil.relativedelta import relativedelta

from .bank_holidays import BankHolidayCache
from .config import BatchConfig
from .deadlines import calculate_deadline
from .models import (
    BuildResult,
    Client,
    ClientScheduleOverride,
    FilingTypeId,
    RecurrenceRule,
    ReminderQueueEntry,
    Schedule,
    ScheduleType,
    SkipReason,
    StoreError,
)
from .store import ReminderStore
from .working_days import next_working_day

logger = logging.getLogger(__name__)

HolidaySource = Union[AbstractSet[date], BankHolidayCache, None]

_RECURRENCE_MONTHS: dict[RecurrenceRule, int] = {
    RecurrenceRule.MONTHLY: 1,
    RecurrenceRule.QUARTERLY: 3,
    RecurrenceRule.ANNUALLY: 12,
}

_MAX_RECURRENCE_STEPS = 10_000


def next_custom_target_date(schedule: Schedule, today: date) -> Optional[date]:
    """Target date of a custom schedule as seen on ``today``.

    A fixed ``custom_date`` is returned while it is today or later.  A
    recurring schedule returns the first occurrence of its anchor, stepped
    by whole periods, that is strictly after ``today``.  Each occurrence is
    computed from the anchor so month-end anchors do not drift (31 Jan,
    28 Feb, 31 Mar, ...).  Returns None when no date can be computed.
    """
    if schedule.custom_date is not None:
        return schedule.custom_date if schedule.custom_date >= today else None

    if schedule.recurrence_rule is None or schedule.recurrence_anchor is None:
        return None

    months = _RECURRENCE_MONTHS[schedule.recurrence_rule]
    for k in range(_MAX_RECURRENCE_STEPS):
        candidate = schedule.recurrence_anchor + relativedelta(months=months * k)
        if candidate > today:
            return candidate
    return None


def compute_send_date(
    deadline: date,
    delay_days: int,
    holidays: AbstractSet[date] = frozenset(),
) -> date:
    """``deadline - delay_days``, moved forward off weekends and bank holidays."""
    return next_working_day(deadline - timedelta(days=delay_days), holidays)


class QueueBuilder:
    """Builds and maintains the reminder queue.

    Args:
        store: The shared persistent store.
        holidays: A set of bank holiday dates, or a BankHolidayCache that is
            asked for the current set at the start of each pass.
        config: Batch settings of the run that owns this builder.
    """

    def __init__(
        self,
        store: ReminderStore,
        holidays: HolidaySource = None,
        config: Optional[BatchConfig] = None,
    ):
        self.store = store
        self.holidays = holidays
        self.config = config or BatchConfig()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _holiday_set(self) -> AbstractSet[date]:
        if self.holidays is None:
            return frozenset()
        if isinstance(self.holidays, BankHolidayCache):
            return self.holidays.get_holidays()
        return self.holidays

    def _clients(self, client_id: Optional[str]) -> list[Client]:
        if client_id is None:
            return self.store.list_clients()
        client = self.store.get_client(client_id)
        return [client] if client else []

    def _step_overrides(
        self, client_id: Optional[str]
    ) -> dict[tuple[str, str, int], ClientScheduleOverride]:
        return {
            (o.client_id, o.schedule_id, o.step_number): o
            for o in self.store.list_schedule_overrides(client_id)
        }

    def _warn(
        self,
        action: str,
        message: str,
        client_id: Optional[str] = None,
        filing_type: Optional[FilingTypeId] = None,
        **details,
    ) -> None:
        logger.warning(message)
        self.store.log_diagnostic(
            action, message, client_id=client_id, filing_type_id=filing_type, details=details,
        )

    def _expand_steps(
        self,
        result: BuildResult,
        client: Client,
        schedule: Schedule,
        filing_type: Optional[FilingTypeId],
        target: date,
        template_ids: set[str],
        step_overrides: dict[tuple[str, str, int], ClientScheduleOverride],
        holidays: AbstractSet[date],
        warned: set,
    ) -> None:
        """Create one queue entry per schedule step for one client and target date."""
        for step in schedule.ordered_steps:
            override = step_overrides.get((client.id, schedule.id, step.step_number))
            if override is not None and override.is_skipped:
                result.skip(SkipReason.STEP_SKIPPED)
                continue

            if step.email_template_id not in template_ids:
                key = ("missing_template", schedule.id, step.step_number)
                if key not in warned:
                    warned.add(key)
                    self._warn(
                        "missing_template",
                        f"Schedule {schedule.id} step {step.step_number} references "
                        f"missing template {step.email_template_id}",
                        filing_type=filing_type,
                        schedule_id=schedule.id,
                        step_number=step.step_number,
                        template_id=step.email_template_id,
                    )
                result.skip(SkipReason.MISSING_TEMPLATE)
                continue

            delay_days = step.delay_days
            if override is not None and override.delay_days_override is not None:
                delay_days = override.delay_days_override

            entry = ReminderQueueEntry(
                client_id=client.id,
                filing_type_id=filing_type,
                template_id=schedule.id,
                step_index=step.step_number,
                deadline_date=target,
                send_date=compute_send_date(target, delay_days, holidays),
            )

            try:
                if self.store.find_entry_by_key(entry.idempotency_key) is not None:
                    result.skip(SkipReason.ALREADY_QUEUED)
                    continue
                created = self.store.insert_entry_if_absent(entry)
            except (StoreError, sqlite3.Error) as exc:
                msg = (
                    f"Failed to insert reminder for client {client.id}, "
                    f"schedule {schedule.id}, step {step.step_number}: {exc}"
                )
                logger.error(msg)
                result.errors.append(msg)
                continue

            if created:
                result.created += 1
            else:
                # Another run inserted the same key between the check and the insert.
                result.skip(SkipReason.ALREADY_QUEUED)

    # ------------------------------------------------------------------
    # Filing expansion
    # ------------------------------------------------------------------

    def build_filing_reminders(
        self,
        today: Optional[date] = None,
        client_id: Optional[str] = None,
    ) -> BuildResult:
        """Expand filing schedules for every active assignment.

        Args:
            today: Reference date for the VAT / Self Assessment cycle.
            client_id: Restrict the pass to one client.
        """
        today = today or date.today()
        result = BuildResult()

        clients = {c.id: c for c in self._clients(client_id)}
        assignments = self.store.list_assignments(client_id=client_id, active_only=True)
        if not clients or not assignments:
            return result

        deadline_overrides = {
            (o.client_id, o.filing_type_id): o
            for o in self.store.list_deadline_overrides(client_id)
        }
        step_overrides = self._step_overrides(client_id)
        template_ids = self.store.list_template_ids()
        holidays = self._holiday_set()

        schedules: dict[FilingTypeId, Optional[Schedule]] = {}
        warned: set = set()

        for assignment in assignments:
            client = clients.get(assignment.client_id)
            filing_type = assignment.filing_type_id
            if client is None:
                continue

            if client.reminders_paused:
                result.skip(SkipReason.CLIENT_PAUSED)
                continue
            if client.has_received(filing_type):
                result.skip(SkipReason.RECORDS_RECEIVED)
                continue

            override = deadline_overrides.get((client.id, filing_type))
            if override is not None:
                deadline = override.override_date
            else:
                deadline = calculate_deadline(filing_type, client, today)
            if deadline is None:
                logger.debug(
                    "No deadline for %s / %s (missing metadata)", client.id, filing_type.value
                )
                result.skip(SkipReason.MISSING_METADATA)
                continue

            if filing_type not in schedules:
                schedules[filing_type] = self.store.get_active_filing_schedule(filing_type)
            schedule = schedules[filing_type]

            if schedule is None:
                if ("no_schedule", filing_type) not in warned:
                    warned.add(("no_schedule", filing_type))
                    self._warn(
                        "missing_schedule",
                        f"No active schedule for filing type {filing_type.value}",
                        filing_type=filing_type,
                    )
                result.skip(SkipReason.NO_SCHEDULE)
                continue

            if not schedule.steps:
                if ("no_steps", schedule.id) not in warned:
                    warned.add(("no_steps", schedule.id))
                    self._warn(
                        "empty_schedule",
                        f"Schedule {schedule.id} for {filing_type.value} has no steps",
                        filing_type=filing_type,
                        schedule_id=schedule.id,
                    )
                result.skip(SkipReason.NO_STEPS)
                continue

            self._expand_steps(
                result, client, schedule, filing_type, deadline,
                template_ids, step_overrides, holidays, warned,
            )

        logger.info(
            "Filing reminders: %d created, %d skipped, %d errors",
            result.created, result.skipped, len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Custom expansion
    # ------------------------------------------------------------------

    def build_custom_reminders(
        self,
        today: Optional[date] = None,
        client_id: Optional[str] = None,
    ) -> BuildResult:
        """Expand every active custom schedule across its applicable clients."""
        today = today or date.today()
        result = BuildResult()

        schedules = self.store.list_schedules(ScheduleType.CUSTOM, active_only=True)
        clients = self._clients(client_id)
        if not schedules or not clients:
            return result

        step_overrides = self._step_overrides(client_id)
        template_ids = self.store.list_template_ids()
        holidays = self._holiday_set()
        warned: set = set()

        for schedule in schedules:
            target = next_custom_target_date(schedule, today)
            if target is None:
                self._warn(
                    "custom_schedule_no_date",
                    f"Custom schedule {schedule.id} has no upcoming target date",
                    schedule_id=schedule.id,
                )
                result.skip(SkipReason.NO_TARGET_DATE)
                continue

            if not schedule.steps:
                self._warn(
                    "empty_schedule",
                    f"Custom schedule {schedule.id} has no steps",
                    schedule_id=schedule.id,
                )
                result.skip(SkipReason.NO_STEPS)
                continue

            excluded = self.store.get_excluded_client_ids(schedule.id)
            for client in clients:
                if client.reminders_paused:
                    result.skip(SkipReason.CLIENT_PAUSED)
                    continue
                if client.id in excluded:
                    result.skip(SkipReason.EXCLUDED)
                    continue
                self._expand_steps(
                    result, client, schedule, None, target,
                    template_ids, step_overrides, holidays, warned,
                )

        logger.info(
            "Custom reminders: %d created, %d skipped, %d errors",
            result.created, result.skipped, len(result.errors),
        )
        return result

    def build_queue(self, today: Optional[date] = None) -> BuildResult:
        """Run both expansions for every client."""
        today = today or date.today()
        return self.build_filing_reminders(today).merge(self.build_custom_reminders(today))

    # ------------------------------------------------------------------
    # Targeted maintenance
    # ------------------------------------------------------------------

    def rebuild_for_client(self, client_id: str, today: Optional[date] = None) -> BuildResult:
        """Replace one client's still-scheduled reminders after a data change.

        Pending, sent, cancelled and failed rows are history and are kept.
        The delete and the re-expansion run in one store transaction.
        """
        today = today or date.today()
        with self.store.transaction():
            deleted = self.store.delete_scheduled_for_client(client_id)
            result = self.build_filing_reminders(today, client_id=client_id)
            result.merge(self.build_custom_reminders(today, client_id=client_id))
        logger.info(
            "Rebuilt queue for client %s: %d removed, %d created",
            client_id, deleted, result.created,
        )
        return result

    def cancel_for_records_received(self, client_id: str, filing_type: FilingTypeId | str) -> int:
        """Cancel the client's scheduled reminders for one filing type only."""
        filing_type = FilingTypeId.parse(filing_type)
        count = self.store.cancel_scheduled(client_id, filing_type_id=filing_type)
        logger.info(
            "Cancelled %d scheduled reminders for %s / %s (records received)",
            count, client_id, filing_type.value,
        )
        return count

    def handle_unpause(self, client_id: str, today: Optional[date] = None) -> int:
        """Cancel scheduled reminders whose send date passed while paused.

        Missed reminders are skipped, never sent late.  Future ones stay live.
        """
        today = today or date.today()
        count = self.store.cancel_scheduled(client_id, send_date_before=today)
        if count:
            self.store.log_diagnostic(
                "unpause_skipped",
                f"Skipped {count} reminders missed while paused",
                client_id=client_id,
                level="info",
                details={"count": count},
            )
        logger.info("Unpaused %s: %d missed reminders cancelled", client_id, count)
        return count
