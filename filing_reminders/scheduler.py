"""Filing Reminders -- Daily Batch Processor.

One idempotent run, meant to be triggered hourly by cron:

    1. Take the batch lock (abort with ``lock_held`` if another run has it)
    2. Gate on the UK local hour (global send hour or a custom schedule's)
    3. Refresh the queue (both builder expansions)
    4. Select today's scheduled reminders that are due this hour
    5. Mark them pending, stamping queued_at
    6. Resolve subject / text / HTML for each newly pending reminder
    7. Roll over filings whose reminders were sent and whose deadline passed
    8. Release the lock

Usage::

    from filing_reminders.scheduler import process_reminders

    result = process_reminders(store, cfg.batch, holidays=cache)
    print(result.to_dict())
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .client_actions import apply_rollover
from .config import BatchConfig
from .models import (
    FilingTypeId,
    ProcessResult,
    ReminderQueueEntry,
    ReminderStatus,
    RolloverError,
    Schedule,
    ScheduleType,
    StoreError,
    TemplateRenderError,
)
from .queue_builder import HolidaySource, QueueBuilder
from .store import ReminderStore
from .templates import RenderedEmail, TemplateContext, TemplateRenderer

logger = logging.getLogger(__name__)

_RENDER_WORKERS = 4


# ---------------------------------------------------------------------------
# Hour gating
# ---------------------------------------------------------------------------

def uk_local_now(now: Optional[datetime], tz_name: str) -> datetime:
    """``now`` (default: current UTC time) converted to the practice timezone.

    A naive ``now`` is taken to be UTC.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name))


def is_entry_due(
    entry: ReminderQueueEntry,
    schedules: dict[str, Schedule],
    hour: int,
    global_hour_matches: bool,
) -> bool:
    """Whether a reminder sending today belongs to this hour's run.

    Filing reminders follow the global hour.  Custom reminders follow their
    schedule's own send hour when it has one, else the global hour.
    """
    if entry.filing_type_id is not None:
        return global_hour_matches
    schedule = schedules.get(entry.template_id)
    if schedule is not None and schedule.send_hour is not None:
        return schedule.send_hour == hour
    return global_hour_matches


# ---------------------------------------------------------------------------
# Content resolution
# ---------------------------------------------------------------------------

def _render_entry(
    store: ReminderStore,
    renderer: TemplateRenderer,
    entry: ReminderQueueEntry,
    accountant_name: str,
    today: date,
) -> RenderedEmail:
    """Resolve schedule -> step -> template for one entry and render it.

    Raises:
        TemplateRenderError: Anything needed to render is missing or malformed.
    """
    schedule = store.get_schedule(entry.template_id)
    if schedule is None:
        raise TemplateRenderError(f"Schedule {entry.template_id} no longer exists")
    step = schedule.get_step(entry.step_index)
    if step is None:
        raise TemplateRenderError(
            f"Schedule {schedule.id} has no step {entry.step_index}"
        )
    template = store.get_template(step.email_template_id)
    if template is None:
        raise TemplateRenderError(f"Template {step.email_template_id} not found")

    override = store.get_email_override(entry.client_id, template.id)
    if override is not None:
        template = override.apply(template)

    client = store.get_client(entry.client_id)
    if entry.filing_type_id is not None:
        filing_label = entry.filing_type_id.display_name
    else:
        filing_label = schedule.name

    context = TemplateContext(
        client_name=client.company_name if client else "",
        deadline=entry.deadline_date,
        filing_type=filing_label,
        accountant_name=accountant_name,
    )
    return renderer.render(template.body, template.subject, context, today=today)


class _RenderJob:
    """One render on a daemon thread, so a hung render cannot block exit."""

    def __init__(self, target, *args) -> None:
        self.email: Optional[RenderedEmail] = None
        self.error: Optional[Exception] = None
        self._thread = threading.Thread(
            target=self._run, args=(target, args), name="reminder-render", daemon=True,
        )

    def _run(self, target, args) -> None:
        try:
            self.email = target(*args)
        except Exception as exc:
            self.error = exc

    def start(self) -> None:
        self._thread.start()

    def wait(self, deadline: float) -> bool:
        """Join until the monotonic ``deadline``; False if still running."""
        self._thread.join(timeout=max(0.0, deadline - time.monotonic()))
        return not self._thread.is_alive()


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, (TemplateRenderError, StoreError)):
        return str(exc)
    return f"unexpected {type(exc).__name__}: {exc}"


def resolve_pending_content(
    store: ReminderStore,
    renderer: TemplateRenderer,
    entries: list[ReminderQueueEntry],
    config: BatchConfig,
    today: date,
    result: ProcessResult,
) -> None:
    """Render and persist content for each newly pending entry.

    Renders run in groups of up to four daemon threads, and each group gets
    ``config.render_timeout_seconds``.  Any failure, timeout included, marks
    that entry failed and lands in ``result.errors`` and the audit log; the
    remaining entries are still rendered.  A timed-out thread is abandoned.
    """
    for start in range(0, len(entries), _RENDER_WORKERS):
        jobs = [
            (entry, _RenderJob(_render_entry, store, renderer, entry, config.accountant_name, today))
            for entry in entries[start:start + _RENDER_WORKERS]
        ]
        for _, job in jobs:
            job.start()
        deadline = time.monotonic() + config.render_timeout_seconds

        for entry, job in jobs:
            if not job.wait(deadline):
                _record_render_failure(
                    store, entry, result,
                    f"rendering timed out after {config.render_timeout_seconds}s",
                )
                continue
            if job.error is not None:
                _record_render_failure(store, entry, result, _failure_reason(job.error))
                continue
            try:
                email = job.email
                store.update_resolved_content(entry.id, email.subject, email.text, email.html)
                result.rendered += 1
            except Exception as exc:
                _record_render_failure(store, entry, result, _failure_reason(exc))


def _record_render_failure(
    store: ReminderStore,
    entry: ReminderQueueEntry,
    result: ProcessResult,
    reason: str,
) -> None:
    msg = f"Failed to render reminder {entry.id} for client {entry.client_id}: {reason}"
    logger.error(msg)
    result.errors.append(msg)
    try:
        store.mark_failed(entry.id, reason)
        store.log_diagnostic(
            "render_failed", msg,
            client_id=entry.client_id, filing_type_id=entry.filing_type_id, level="error",
            details={"entry_id": entry.id, "schedule_id": entry.template_id,
                     "step_index": entry.step_index},
        )
    except StoreError as exc:
        logger.error("Could not record render failure for reminder %s: %s", entry.id, exc)


# ---------------------------------------------------------------------------
# Rollover sweep
# ---------------------------------------------------------------------------

def sweep_rollovers(store: ReminderStore, today: date, result: ProcessResult) -> None:
    """Roll over every filing whose reminders went out and whose deadline passed.

    Sent filing reminders with a deadline before ``today`` are grouped by
    (client, filing type) and the most recent deadline of each group is
    rolled over.  The rollover ledger makes the sweep safe to repeat, and
    older deadlines in a group that were never rolled over are reported.
    """
    try:
        sent = store.list_entries(
            status=ReminderStatus.SENT, custom=False, deadline_before=today,
            order_by="deadline_date DESC, id ASC",
        )
    except StoreError as exc:
        msg = f"Rollover sweep could not read sent reminders: {exc}"
        logger.error(msg)
        result.errors.append(msg)
        return

    groups: dict[tuple[str, FilingTypeId], list[date]] = {}
    for entry in sent:
        deadlines = groups.setdefault((entry.client_id, entry.filing_type_id), [])
        if entry.deadline_date not in deadlines:
            deadlines.append(entry.deadline_date)

    for (client_id, filing_type), deadlines in groups.items():
        latest = deadlines[0]
        try:
            stale = [
                d for d in deadlines[1:]
                if not store.has_rollover(client_id, filing_type, d)
            ]
            if stale:
                store.log_diagnostic(
                    "stale_sent_deadlines",
                    f"{len(stale)} older sent deadline(s) for {filing_type.value} "
                    f"were never rolled over",
                    client_id=client_id, filing_type_id=filing_type,
                    details={"latest": latest, "stale": stale},
                )

            client = store.get_client(client_id)
            if client is None:
                continue
            rolled = apply_rollover(store, client, filing_type, latest, today, source="batch")
        except (RolloverError, StoreError) as exc:
            msg = f"Rollover failed for {client_id} / {filing_type.value}: {exc}"
            logger.error(msg)
            result.errors.append(msg)
            continue

        if rolled is not None:
            result.rolled_over += 1
            logger.info(
                "Rolled over %s / %s: %s -> %s",
                client_id, filing_type.value, latest, rolled.next_deadline,
            )


# ---------------------------------------------------------------------------
# Batch entry point
# ---------------------------------------------------------------------------

def process_reminders(
    store: ReminderStore,
    config: Optional[BatchConfig] = None,
    now: Optional[datetime] = None,
    holidays: HolidaySource = None,
    renderer: Optional[TemplateRenderer] = None,
) -> ProcessResult:
    """Run one batch.

    Args:
        store: Shared persistent store.
        config: Batch settings, read once for this run.
        now: Current instant (default: now, UTC).  Used for hour gating and
            as the source of "today" in the practice timezone.
        holidays: Bank holiday set or cache handed to the queue builder.
        renderer: Template renderer (default: the packaged layout).

    Returns:
        ProcessResult.  Only lock contention and a failed due-reminder query
        end the run early; everything else is collected in ``errors``.
    """
    config = config or BatchConfig()
    renderer = renderer or TemplateRenderer(accountant_name=config.accountant_name)
    result = ProcessResult()

    # ------------------------------------------------------------------
    # STEP 1: Lock
    # ------------------------------------------------------------------
    try:
        acquired = store.acquire_lock(config.lock_id, config.lock_ttl_minutes, now=now)
    except StoreError as exc:
        msg = f"Could not acquire batch lock: {exc}"
        logger.error(msg)
        result.errors.append(msg)
        return result

    if not acquired:
        logger.info("Batch lock %s held by another run, aborting", config.lock_id)
        result.lock_held = True
        result.errors.append("Lock held by another run")
        store.log_diagnostic(
            "lock_held", f"Batch lock {config.lock_id} held by another run", level="info",
        )
        return result

    try:
        # ------------------------------------------------------------------
        # STEP 2: Hour gating
        # ------------------------------------------------------------------
        local_now = uk_local_now(now, config.timezone)
        today = local_now.date()
        hour = local_now.hour

        custom_schedules = {
            s.id: s for s in store.list_schedules(ScheduleType.CUSTOM, active_only=True)
        }
        global_match = hour == config.send_hour
        custom_match = any(s.send_hour == hour for s in custom_schedules.values())

        if not global_match and not custom_match:
            logger.debug(
                "UK hour %d is not a send hour (global %d), skipping", hour, config.send_hour,
            )
            result.skipped_wrong_hour = True
            return result

        logger.info("Batch run for %s at UK hour %d", today.isoformat(), hour)

        # ------------------------------------------------------------------
        # STEP 3: Queue refresh
        # ------------------------------------------------------------------
        builder = QueueBuilder(store, holidays=holidays, config=config)
        result.build = builder.build_queue(today)
        result.errors.extend(result.build.errors)

        # ------------------------------------------------------------------
        # STEP 4: Due selection
        # ------------------------------------------------------------------
        try:
            todays = store.list_entries(status=ReminderStatus.SCHEDULED, send_date=today)
            paused = {c.id for c in store.list_clients(paused=True)}
        except StoreError as exc:
            msg = f"Failed to fetch due reminders: {exc}"
            logger.error(msg)
            result.errors.append(msg)
            return result

        # Paused clients' rows stay scheduled; resuming cancels the missed ones.
        due = [
            e for e in todays
            if e.client_id not in paused
            and is_entry_due(e, custom_schedules, hour, global_match)
        ]
        logger.info("%d reminders send today, %d due this hour", len(todays), len(due))

        # ------------------------------------------------------------------
        # STEP 5: Mark pending
        # ------------------------------------------------------------------
        if due:
            queued_at = local_now.astimezone(timezone.utc)
            result.queued = store.bulk_update_status(
                [e.id for e in due], ReminderStatus.PENDING,
                queued_at=queued_at, from_status=ReminderStatus.SCHEDULED,
            )

            # --------------------------------------------------------------
            # STEP 6: Content resolution
            # --------------------------------------------------------------
            resolve_pending_content(store, renderer, due, config, today, result)

        # ------------------------------------------------------------------
        # STEP 7: Rollover sweep
        # ------------------------------------------------------------------
        sweep_rollovers(store, today, result)

        logger.info(
            "Batch complete: %d queued, %d rendered, %d rolled over, %d errors",
            result.queued, result.rendered, result.rolled_over, len(result.errors),
        )
        return result
    finally:
        # ------------------------------------------------------------------
        # STEP 8: Lock release
        # ------------------------------------------------------------------
        try:
            store.release_lock(config.lock_id)
        except StoreError as exc:
            logger.error("Failed to release batch lock %s: %s", config.lock_id, exc)
