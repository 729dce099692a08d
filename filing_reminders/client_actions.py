"""
Filing Reminders -- Staff Actions

Operations triggered by practice staff on a single client: records
received, accountant completion, pause / resume, manual rollover to the
next filing cycle, and creation of custom schedules.

Each action updates the client, keeps the reminder queue consistent with
the change, and writes an audit log entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from .deadlines import calculate_deadline
from .models import (
    Client,
    FilingTypeId,
    RolloverError,
    RolloverResult,
    Schedule,
    ScheduleType,
)
from .queue_builder import QueueBuilder
from .rollover import advance_year_end, is_annual_filing, rollover_deadline
from .store import ReminderStore

logger = logging.getLogger(__name__)


class ClientNotFoundError(LookupError):
    """No client exists with the given id."""


def _require_client(store: ReminderStore, client_id: str) -> Client:
    client = store.get_client(client_id)
    if client is None:
        raise ClientNotFoundError(f"Client {client_id!r} not found")
    return client


# ---------------------------------------------------------------------------
# Records received / completion
# ---------------------------------------------------------------------------

def mark_records_received(
    store: ReminderStore,
    client_id: str,
    filing_type: FilingTypeId | str,
    actor: str = "staff",
) -> int:
    """Flag records as received and cancel that filing's scheduled reminders.

    Idempotent.  Returns the number of reminders cancelled.
    """
    filing_type = FilingTypeId.parse(filing_type)
    with store.transaction():
        client = _require_client(store, client_id)
        store.set_filing_flags(
            client_id, client.records_received_for | {filing_type}, client.completed_for,
        )
        cancelled = store.cancel_scheduled(client_id, filing_type_id=filing_type)
        store.log_diagnostic(
            "records_received", f"Records received for {filing_type.display_name}",
            client_id=client_id, filing_type_id=filing_type, level="info",
            details={"cancelled": cancelled}, actor=actor,
        )
    logger.info("Records received: %s / %s (%d cancelled)", client_id, filing_type.value, cancelled)
    return cancelled


def unmark_records_received(
    store: ReminderStore,
    builder: QueueBuilder,
    client_id: str,
    filing_type: FilingTypeId | str,
    today: Optional[date] = None,
    actor: str = "staff",
) -> int:
    """Clear the records-received flag and put the filing's reminders back.

    Reminders cancelled by the receipt that have not reached their send
    date yet return to ``scheduled``; the client's queue is then rebuilt.
    Returns the number of scheduled reminders the rebuild produced.
    """
    today = today or date.today()
    filing_type = FilingTypeId.parse(filing_type)
    with store.transaction():
        client = _require_client(store, client_id)
        store.set_filing_flags(
            client_id,
            client.records_received_for - {filing_type},
            client.completed_for - {filing_type},
        )
        restored = store.restore_cancelled(client_id, filing_type, send_date_from=today)
        store.log_diagnostic(
            "records_unreceived",
            f"Records no longer marked received for {filing_type.display_name}",
            client_id=client_id, filing_type_id=filing_type, level="info",
            details={"restored": restored}, actor=actor,
        )
    return builder.rebuild_for_client(client_id, today).created


def mark_completed(
    store: ReminderStore,
    client_id: str,
    filing_type: FilingTypeId | str,
    completed: bool = True,
    actor: str = "staff",
) -> None:
    """Set or clear the accountant's completion flag for one filing."""
    filing_type = FilingTypeId.parse(filing_type)
    client = _require_client(store, client_id)
    if completed:
        done = client.completed_for | {filing_type}
    else:
        done = client.completed_for - {filing_type}
    store.set_filing_flags(client_id, client.records_received_for, done)
    store.log_diagnostic(
        "completed" if completed else "uncompleted",
        f"{filing_type.display_name} {'completed' if completed else 'reopened'}",
        client_id=client_id, filing_type_id=filing_type, level="info", actor=actor,
    )


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------

def set_reminders_paused(
    store: ReminderStore,
    builder: QueueBuilder,
    client_id: str,
    paused: bool,
    today: Optional[date] = None,
    actor: str = "staff",
) -> int:
    """Pause or resume a client's reminders.

    Resuming cancels every scheduled reminder whose send date passed while
    the client was paused.  Returns the number cancelled (0 when pausing).
    """
    client = _require_client(store, client_id)
    store.set_reminders_paused(client_id, paused)
    store.log_diagnostic(
        "paused" if paused else "resumed",
        "Reminders paused" if paused else "Reminders resumed",
        client_id=client_id, level="info", actor=actor,
    )
    if paused or not client.reminders_paused:
        return 0
    return builder.handle_unpause(client_id, today)


# ---------------------------------------------------------------------------
# Rollover
# ---------------------------------------------------------------------------

@dataclass
class RolloverCandidate:
    client_id: str
    client_name: str
    filing_type_id: FilingTypeId
    deadline_date: date
    days_overdue: int


def current_filing_deadline(
    store: ReminderStore,
    client: Client,
    filing_type: FilingTypeId,
    today: date,
) -> Optional[date]:
    """The deadline of the cycle the client is currently working on.

    An explicit override wins.  Annual filings come from the year end.
    VAT and Self Assessment follow the calendar, so the cycle in progress
    is the latest deadline already in the queue, falling back to the
    calculator when the queue has none.
    """
    for override in store.list_deadline_overrides(client.id):
        if override.filing_type_id is filing_type:
            return override.override_date

    if is_annual_filing(filing_type):
        return calculate_deadline(filing_type, client, today)

    entries = store.list_entries(
        client_id=client.id, filing_type_id=filing_type, order_by="deadline_date DESC",
    )
    if entries:
        return entries[0].deadline_date
    return calculate_deadline(filing_type, client, today)


def get_rollover_candidates(store: ReminderStore, today: Optional[date] = None) -> list[RolloverCandidate]:
    """Received filings whose deadline has passed, most overdue first."""
    today = today or date.today()
    active = {(a.client_id, a.filing_type_id) for a in store.list_assignments(active_only=True)}
    candidates: list[RolloverCandidate] = []

    for client in store.list_clients(paused=False):
        for filing_type in sorted(client.records_received_for, key=lambda ft: ft.value):
            if (client.id, filing_type) not in active:
                continue
            deadline = current_filing_deadline(store, client, filing_type, today)
            if deadline is None or deadline >= today:
                continue
            candidates.append(RolloverCandidate(
                client_id=client.id,
                client_name=client.company_name,
                filing_type_id=filing_type,
                deadline_date=deadline,
                days_overdue=(today - deadline).days,
            ))

    candidates.sort(key=lambda c: c.days_overdue, reverse=True)
    return candidates


def apply_rollover(
    store: ReminderStore,
    client: Client,
    filing_type: FilingTypeId,
    current_deadline: date,
    today: date,
    source: str = "batch",
) -> Optional[RolloverResult]:
    """Move one client's filing onto its next cycle.

    Records the rollover in the ledger, advances the year end for annual
    filings (only while it still points at the passing cycle), clears the
    records-received and completed flags, and drops a deadline override
    that belonged to the passing cycle.  Runs in one store transaction.

    Returns None if this cycle was already rolled over.

    Raises:
        RolloverError: The client lacks the metadata the filing type needs.
    """
    advance = False
    if is_annual_filing(filing_type) and client.year_end_date is not None:
        cycle_deadline = calculate_deadline(filing_type, client, today)
        advance = cycle_deadline is not None and cycle_deadline <= current_deadline
    if advance or not is_annual_filing(filing_type) or client.year_end_date is None:
        next_deadline = rollover_deadline(
            filing_type, client.year_end_date, client.vat_stagger_group, current_deadline,
        )
    else:
        # Another annual filing of the same year already moved the year end on.
        next_deadline = cycle_deadline

    with store.transaction():
        if not store.record_rollover(client.id, filing_type, current_deadline, next_deadline, source):
            return None

        new_year_end = client.year_end_date
        if advance:
            new_year_end = advance_year_end(client.year_end_date)
            store.set_year_end_date(client.id, new_year_end)

        store.set_filing_flags(
            client.id,
            client.records_received_for - {filing_type},
            client.completed_for - {filing_type},
        )

        for override in store.list_deadline_overrides(client.id):
            if override.filing_type_id is filing_type and override.override_date <= current_deadline:
                store.remove_deadline_override(client.id, filing_type)

    return RolloverResult(
        client_id=client.id,
        filing_type_id=filing_type,
        old_year_end=client.year_end_date,
        new_year_end=new_year_end,
        next_deadline=next_deadline,
    )


def rollover_filing(
    store: ReminderStore,
    builder: QueueBuilder,
    client_id: str,
    filing_type: FilingTypeId | str,
    today: Optional[date] = None,
) -> RolloverResult:
    """Manually roll a client's filing over to the next cycle.

    Never raises: failures come back as ``RolloverResult(success=False)``.
    """
    today = today or date.today()
    try:
        filing_type = FilingTypeId.parse(filing_type)
        client = _require_client(store, client_id)
        current = current_filing_deadline(store, client, filing_type, today)
        if current is None:
            raise RolloverError(
                f"Client {client_id} has no current deadline for {filing_type.value}"
            )

        result = apply_rollover(store, client, filing_type, current, today, source="manual")
        if result is None:
            raise RolloverError(
                f"{filing_type.value} deadline {current.isoformat()} was already rolled over"
            )

        store.delete_scheduled_for_client(client_id, filing_type)
        builder.rebuild_for_client(client_id, today)
        store.log_diagnostic(
            "rollover_filing",
            f"Rolled {filing_type.display_name} over to {result.next_deadline.isoformat()}",
            client_id=client_id, filing_type_id=filing_type, level="info", actor="staff",
            details={
                "old_year_end": result.old_year_end,
                "new_year_end": result.new_year_end,
                "is_annual": is_annual_filing(filing_type),
            },
        )
        logger.info("Rolled over %s / %s", client_id, filing_type.value)
        return result
    except (RolloverError, ClientNotFoundError) as exc:
        logger.warning("Rollover failed for %s / %s: %s", client_id, filing_type, exc)
        return RolloverResult(
            client_id=client_id,
            filing_type_id=filing_type,
            success=False,
            error=str(exc),
        )


def bulk_rollover(
    store: ReminderStore,
    builder: QueueBuilder,
    items: Iterable[tuple[str, FilingTypeId | str]],
    today: Optional[date] = None,
) -> list[RolloverResult]:
    """Roll over many (client_id, filing_type) pairs; one failure does not stop the rest."""
    return [rollover_filing(store, builder, cid, ft, today) for cid, ft in items]


# ---------------------------------------------------------------------------
# Custom schedules
# ---------------------------------------------------------------------------

def create_custom_schedule(
    store: ReminderStore,
    schedule: Schedule,
    selected_client_ids: Optional[Iterable[str]] = None,
) -> set[str]:
    """Save a new custom schedule.

    Custom schedules apply to every client unless excluded.  When an
    opt-in list is given it is stored as the complement: every current
    client not selected is excluded.  Returns the excluded client ids.

    Raises:
        ValueError: ``schedule`` is not a valid custom schedule.
    """
    if schedule.schedule_type is not ScheduleType.CUSTOM:
        raise ValueError("create_custom_schedule needs a custom schedule")

    excluded: set[str] = set()
    with store.transaction():
        store.upsert_schedule(schedule)
        if selected_client_ids is not None:
            selected = set(selected_client_ids)
            excluded = {c.id for c in store.list_clients() if c.id not in selected}
            store.set_schedule_exclusions(schedule.id, excluded)
        store.log_diagnostic(
            "custom_schedule_created", f"Custom schedule {schedule.name} created",
            level="info", details={"schedule_id": schedule.id, "excluded": sorted(excluded)},
            actor="staff",
        )
    return excluded
