"""
Filing Reminders -- Persistent Store

SQLite-backed store shared by the queue builder, the batch scheduler and
the staff actions.  It holds practice data (clients, assignments,
overrides, schedules, templates), the reminder queue itself, the batch
lock row, the cached bank holidays, and an append-only audit log that
doubles as the operator-facing diagnostic sink.

Reminder lifecycle:

    SCHEDULED -> PENDING -> SENT
             |           |-> FAILED
             |-> CANCELLED

Database schema:
    clients                    - Client metadata and per-filing flags
    client_filing_assignments  - Which filing types apply to which client
    client_deadline_overrides  - Explicit deadlines replacing the calculated one
    email_templates            - Subject + structured body (JSON)
    schedules / schedule_steps - Filing and custom reminder schedules
    schedule_client_exclusions - Clients excluded from a custom schedule
    client_schedule_overrides  - Per-client step delay changes / skips
    client_email_overrides     - Per-client subject/body replacements
    reminder_queue             - Dated reminders, UNIQUE on idempotency_key
    rollovers                  - One row per completed filing-cycle rollover
    locks                      - Batch lock rows with an expiry
    bank_holidays              - Last fetched UK bank holidays
    audit_log                  - Diagnostics and staff actions

Usage:
    from filing_reminders.store import ReminderStore

    store = ReminderStore("data/reminders.db")
    store.upsert_client(client)
    created = store.insert_entry_if_absent(entry)

    with store.transaction():
        store.delete_scheduled_for_client("c1")
        ...
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from .config import PROJECT_ROOT
from .models import (
    Client,
    ClientDeadlineOverride,
    ClientEmailOverride,
    ClientFilingAssignment,
    ClientScheduleOverride,
    EmailTemplate,
    FilingTypeId,
    ReminderQueueEntry,
    ReminderStatus,
    Schedule,
    ScheduleStep,
    ScheduleType,
    StoreError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "reminders.db"

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS clients (
    id                      TEXT PRIMARY KEY,
    company_name            TEXT NOT NULL,
    client_type             TEXT NOT NULL DEFAULT 'Limited Company',
    email                   TEXT NOT NULL DEFAULT '',
    year_end_date           TEXT,                              -- ISO date
    vat_stagger_group       INTEGER CHECK (vat_stagger_group IN (1, 2, 3)),
    reminders_paused        INTEGER NOT NULL DEFAULT 0,
    records_received_for    TEXT NOT NULL DEFAULT '[]',        -- JSON array of filing type ids
    completed_for           TEXT NOT NULL DEFAULT '[]',        -- JSON array of filing type ids
    updated_at              TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS client_filing_assignments (
    client_id       TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    filing_type_id  TEXT NOT NULL,
    is_active       INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (client_id, filing_type_id)
);

CREATE TABLE IF NOT EXISTS client_deadline_overrides (
    client_id       TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    filing_type_id  TEXT NOT NULL,
    override_date   TEXT NOT NULL,
    reason          TEXT,
    created_at      TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (client_id, filing_type_id)
);

CREATE TABLE IF NOT EXISTS email_templates (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    subject     TEXT NOT NULL DEFAULT '',
    body_json   TEXT NOT NULL DEFAULT '{}',
    is_active   INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS schedules (
    id                  TEXT PRIMARY KEY,
    name                TEXT NOT NULL,
    description         TEXT NOT NULL DEFAULT '',
    schedule_type       TEXT NOT NULL DEFAULT 'filing',
    filing_type_id      TEXT,
    custom_date         TEXT,
    recurrence_rule     TEXT,
    recurrence_anchor   TEXT,
    send_hour           INTEGER CHECK (send_hour BETWEEN 0 AND 23),
    is_active           INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS schedule_steps (
    schedule_id         TEXT NOT NULL REFERENCES schedules(id) ON DELETE CASCADE,
    step_number         INTEGER NOT NULL,
    email_template_id   TEXT NOT NULL,
    delay_days          INTEGER NOT NULL,
    PRIMARY KEY (schedule_id, step_number)
);

CREATE TABLE IF NOT EXISTS schedule_client_exclusions (
    schedule_id     TEXT NOT NULL REFERENCES schedules(id) ON DELETE CASCADE,
    client_id       TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    PRIMARY KEY (schedule_id, client_id)
);

CREATE TABLE IF NOT EXISTS client_schedule_overrides (
    client_id               TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    schedule_id             TEXT NOT NULL REFERENCES schedules(id) ON DELETE CASCADE,
    step_number             INTEGER NOT NULL,
    delay_days_override     INTEGER,
    is_skipped              INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (client_id, schedule_id, step_number)
);

CREATE TABLE IF NOT EXISTS client_email_overrides (
    client_id           TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    email_template_id   TEXT NOT NULL,
    subject_override    TEXT,
    body_override_json  TEXT,
    PRIMARY KEY (client_id, email_template_id)
);

CREATE TABLE IF NOT EXISTS reminder_queue (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key     TEXT NOT NULL UNIQUE,
    client_id           TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    filing_type_id      TEXT,                                  -- NULL for custom schedules
    template_id         TEXT NOT NULL,                         -- owning schedule id
    step_index          INTEGER NOT NULL,
    deadline_date       TEXT NOT NULL,
    send_date           TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'scheduled',
    resolved_subject    TEXT,
    resolved_body       TEXT,
    html_body           TEXT,
    queued_at           TEXT,
    sent_at             TEXT,
    error_message       TEXT NOT NULL DEFAULT '',
    created_at          TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS rollovers (
    client_id       TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    filing_type_id  TEXT NOT NULL,
    from_deadline   TEXT NOT NULL,
    to_deadline     TEXT NOT NULL,
    source          TEXT NOT NULL DEFAULT 'batch',   -- batch | manual
    rolled_at       TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (client_id, filing_type_id, from_deadline)
);

CREATE TABLE IF NOT EXISTS locks (
    id              TEXT PRIMARY KEY,
    acquired_at     TEXT NOT NULL,
    expires_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bank_holidays (
    holiday_date    TEXT PRIMARY KEY,
    division        TEXT NOT NULL DEFAULT '',
    fetched_at      TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS audit_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    action          TEXT NOT NULL,
    level           TEXT NOT NULL DEFAULT 'info',
    client_id       TEXT,
    filing_type_id  TEXT,
    actor           TEXT NOT NULL DEFAULT 'system',
    message         TEXT NOT NULL DEFAULT '',
    details         TEXT NOT NULL DEFAULT '{}',
    timestamp       TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_queue_status ON reminder_queue(status);
CREATE INDEX IF NOT EXISTS idx_queue_client ON reminder_queue(client_id);
CREATE INDEX IF NOT EXISTS idx_queue_send_date ON reminder_queue(send_date);
CREATE INDEX IF NOT EXISTS idx_queue_deadline ON reminder_queue(deadline_date);
CREATE INDEX IF NOT EXISTS idx_audit_client ON audit_log(client_id);
CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action);
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _date_or_none(val: Any) -> Optional[date]:
    if not val:
        return None
    return date.fromisoformat(val)


def _datetime_or_none(val: Any) -> Optional[datetime]:
    if not val:
        return None
    return datetime.fromisoformat(val)


def _iso(val: Optional[date]) -> Optional[str]:
    return val.isoformat() if val is not None else None


def _parse_json_list(val: Any) -> list:
    if not val:
        return []
    try:
        result = json.loads(val) if isinstance(val, str) else val
        return result if isinstance(result, list) else []
    except (json.JSONDecodeError, TypeError):
        return []


def _load_body_json(val: Optional[str], owner: str) -> Any:
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as exc:
        raise StoreError(f"Corrupt body JSON on {owner}: {exc}") from exc


def _row_to_client(row: sqlite3.Row) -> Client:
    return Client(
        id=row["id"],
        company_name=row["company_name"],
        client_type=row["client_type"],
        email=row["email"],
        year_end_date=_date_or_none(row["year_end_date"]),
        vat_stagger_group=row["vat_stagger_group"],
        reminders_paused=bool(row["reminders_paused"]),
        records_received_for=set(_parse_json_list(row["records_received_for"])),
        completed_for=set(_parse_json_list(row["completed_for"])),
    )


def _filing_type_list(values: Iterable[FilingTypeId]) -> str:
    return json.dumps(sorted(ft.value for ft in values))


def _row_to_entry(row: sqlite3.Row) -> ReminderQueueEntry:
    return ReminderQueueEntry(
        id=row["id"],
        client_id=row["client_id"],
        filing_type_id=row["filing_type_id"],
        template_id=row["template_id"],
        step_index=row["step_index"],
        deadline_date=date.fromisoformat(row["deadline_date"]),
        send_date=date.fromisoformat(row["send_date"]),
        status=row["status"],
        resolved_subject=row["resolved_subject"],
        resolved_body=row["resolved_body"],
        html_body=row["html_body"],
        queued_at=_datetime_or_none(row["queued_at"]),
        sent_at=_datetime_or_none(row["sent_at"]),
        created_at=_datetime_or_none(row["created_at"]),
    )


def _row_to_schedule(row: sqlite3.Row, steps: list[ScheduleStep]) -> Schedule:
    return Schedule(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        schedule_type=row["schedule_type"],
        filing_type_id=row["filing_type_id"],
        custom_date=_date_or_none(row["custom_date"]),
        recurrence_rule=row["recurrence_rule"],
        recurrence_anchor=_date_or_none(row["recurrence_anchor"]),
        send_hour=row["send_hour"],
        is_active=bool(row["is_active"]),
        steps=steps,
    )


def _status_values(status: ReminderStatus | str | Iterable[ReminderStatus | str]) -> list[str]:
    if isinstance(status, str):
        return [ReminderStatus(status).value]
    return [ReminderStatus(s).value for s in status]


# ---------------------------------------------------------------------------
# ReminderStore -- the main public API
# ---------------------------------------------------------------------------

class ReminderStore:
    """Persistent practice data and reminder queue backed by SQLite.

    Each call opens and closes its own connection unless it runs inside
    ``transaction()``, in which case every call on the same thread shares
    one connection and commits (or rolls back) together.  The WAL journal
    lets the dashboard read while a batch run writes.
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield the open transaction's connection, or a fresh auto-committing one."""
        tx_conn = getattr(self._local, "conn", None)
        if tx_conn is not None:
            yield tx_conn
            return

        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"Store operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[ReminderStore]:
        """Run every store call in the block as one atomic unit.

        Nested use joins the outer transaction.
        """
        if getattr(self._local, "conn", None) is not None:
            yield self
            return

        conn = self._get_conn()
        self._local.conn = conn
        try:
            yield self
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"Transaction failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def upsert_client(self, client: Client) -> None:
        """Insert or fully replace a client's row."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO clients
                   (id, company_name, client_type, email, year_end_date,
                    vat_stagger_group, reminders_paused, records_received_for,
                    completed_for, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       company_name = excluded.company_name,
                       client_type = excluded.client_type,
                       email = excluded.email,
                       year_end_date = excluded.year_end_date,
                       vat_stagger_group = excluded.vat_stagger_group,
                       reminders_paused = excluded.reminders_paused,
                       records_received_for = excluded.records_received_for,
                       completed_for = excluded.completed_for,
                       updated_at = excluded.updated_at""",
                (
                    client.id,
                    client.company_name,
                    client.client_type,
                    client.email,
                    _iso(client.year_end_date),
                    client.vat_stagger_group,
                    1 if client.reminders_paused else 0,
                    _filing_type_list(client.records_received_for),
                    _filing_type_list(client.completed_for),
                    _now_iso(),
                ),
            )

    def get_client(self, client_id: str) -> Client | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
            return _row_to_client(row) if row else None

    def list_clients(self, paused: bool | None = None) -> list[Client]:
        """All clients ordered by name, optionally filtered on the pause flag."""
        sql = "SELECT * FROM clients"
        params: list[Any] = []
        if paused is not None:
            sql += " WHERE reminders_paused = ?"
            params.append(1 if paused else 0)
        sql += " ORDER BY company_name ASC, id ASC"
        with self._connect() as conn:
            return [_row_to_client(r) for r in conn.execute(sql, params).fetchall()]

    def set_reminders_paused(self, client_id: str, paused: bool) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE clients SET reminders_paused = ?, updated_at = ? WHERE id = ?",
                (1 if paused else 0, _now_iso(), client_id),
            )
            return cur.rowcount > 0

    def set_year_end_date(self, client_id: str, year_end: date | None) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE clients SET year_end_date = ?, updated_at = ? WHERE id = ?",
                (_iso(year_end), _now_iso(), client_id),
            )
            return cur.rowcount > 0

    def set_filing_flags(
        self,
        client_id: str,
        records_received_for: Iterable[FilingTypeId],
        completed_for: Iterable[FilingTypeId],
    ) -> bool:
        """Replace a client's records-received and completed sets."""
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE clients
                   SET records_received_for = ?, completed_for = ?, updated_at = ?
                   WHERE id = ?""",
                (_filing_type_list(records_received_for), _filing_type_list(completed_for),
                 _now_iso(), client_id),
            )
            return cur.rowcount > 0

    def delete_client(self, client_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM clients WHERE id = ?", (client_id,))
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Filing assignments and deadline overrides
    # ------------------------------------------------------------------

    def set_assignment(self, assignment: ClientFilingAssignment) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO client_filing_assignments (client_id, filing_type_id, is_active)
                   VALUES (?, ?, ?)
                   ON CONFLICT(client_id, filing_type_id) DO UPDATE SET
                       is_active = excluded.is_active""",
                (assignment.client_id, assignment.filing_type_id.value,
                 1 if assignment.is_active else 0),
            )

    def list_assignments(
        self,
        client_id: str | None = None,
        active_only: bool = True,
    ) -> list[ClientFilingAssignment]:
        conditions = []
        params: list[Any] = []
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if active_only:
            conditions.append("is_active = 1")
        where = " AND ".join(conditions) if conditions else "1=1"
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT * FROM client_filing_assignments WHERE {where}
                    ORDER BY client_id, filing_type_id""",
                params,
            ).fetchall()
        return [
            ClientFilingAssignment(
                client_id=r["client_id"],
                filing_type_id=r["filing_type_id"],
                is_active=bool(r["is_active"]),
            )
            for r in rows
        ]

    def set_deadline_override(self, override: ClientDeadlineOverride) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO client_deadline_overrides
                   (client_id, filing_type_id, override_date, reason, created_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(client_id, filing_type_id) DO UPDATE SET
                       override_date = excluded.override_date,
                       reason = excluded.reason""",
                (override.client_id, override.filing_type_id.value,
                 override.override_date.isoformat(), override.reason, _now_iso()),
            )

    def remove_deadline_override(self, client_id: str, filing_type_id: FilingTypeId) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM client_deadline_overrides WHERE client_id = ? AND filing_type_id = ?",
                (client_id, FilingTypeId.parse(filing_type_id).value),
            )
            return cur.rowcount > 0

    def list_deadline_overrides(self, client_id: str | None = None) -> list[ClientDeadlineOverride]:
        sql = "SELECT * FROM client_deadline_overrides"
        params: list[Any] = []
        if client_id is not None:
            sql += " WHERE client_id = ?"
            params.append(client_id)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ClientDeadlineOverride(
                client_id=r["client_id"],
                filing_type_id=r["filing_type_id"],
                override_date=date.fromisoformat(r["override_date"]),
                reason=r["reason"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Email templates
    # ------------------------------------------------------------------

    def upsert_template(self, template: EmailTemplate) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO email_templates (id, name, subject, body_json, is_active)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name,
                       subject = excluded.subject,
                       body_json = excluded.body_json,
                       is_active = excluded.is_active""",
                (template.id, template.name, template.subject,
                 json.dumps(template.body), 1 if template.is_active else 0),
            )

    def get_template(self, template_id: str) -> EmailTemplate | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_templates WHERE id = ?", (template_id,)
            ).fetchone()
        if row is None:
            return None
        return EmailTemplate(
            id=row["id"],
            name=row["name"],
            subject=row["subject"],
            body=_load_body_json(row["body_json"] or "{}", f"template {row['id']}"),
            is_active=bool(row["is_active"]),
        )

    def list_template_ids(self) -> set[str]:
        with self._connect() as conn:
            return {r["id"] for r in conn.execute("SELECT id FROM email_templates").fetchall()}

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def upsert_schedule(self, schedule: Schedule) -> None:
        """Insert or replace a schedule together with its full step list.

        Raises:
            ValueError: The schedule fails ``Schedule.validate``.
        """
        schedule.validate()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO schedules
                   (id, name, description, schedule_type, filing_type_id, custom_date,
                    recurrence_rule, recurrence_anchor, send_hour, is_active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name,
                       description = excluded.description,
                       schedule_type = excluded.schedule_type,
                       filing_type_id = excluded.filing_type_id,
                       custom_date = excluded.custom_date,
                       recurrence_rule = excluded.recurrence_rule,
                       recurrence_anchor = excluded.recurrence_anchor,
                       send_hour = excluded.send_hour,
                       is_active = excluded.is_active""",
                (
                    schedule.id,
                    schedule.name,
                    schedule.description,
                    schedule.schedule_type.value,
                    schedule.filing_type_id.value if schedule.filing_type_id else None,
                    _iso(schedule.custom_date),
                    schedule.recurrence_rule.value if schedule.recurrence_rule else None,
                    _iso(schedule.recurrence_anchor),
                    schedule.send_hour,
                    1 if schedule.is_active else 0,
                ),
            )
            conn.execute("DELETE FROM schedule_steps WHERE schedule_id = ?", (schedule.id,))
            conn.executemany(
                """INSERT INTO schedule_steps (schedule_id, step_number, email_template_id, delay_days)
                   VALUES (?, ?, ?, ?)""",
                [(schedule.id, s.step_number, s.email_template_id, s.delay_days)
                 for s in schedule.steps],
            )

    def _load_steps(self, conn: sqlite3.Connection, schedule_id: str) -> list[ScheduleStep]:
        rows = conn.execute(
            "SELECT * FROM schedule_steps WHERE schedule_id = ? ORDER BY step_number",
            (schedule_id,),
        ).fetchall()
        return [
            ScheduleStep(
                step_number=r["step_number"],
                email_template_id=r["email_template_id"],
                delay_days=r["delay_days"],
            )
            for r in rows
        ]

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,)).fetchone()
            if row is None:
                return None
            return _row_to_schedule(row, self._load_steps(conn, schedule_id))

    def list_schedules(
        self,
        schedule_type: ScheduleType | str | None = None,
        active_only: bool = False,
    ) -> list[Schedule]:
        conditions = []
        params: list[Any] = []
        if schedule_type is not None:
            conditions.append("schedule_type = ?")
            params.append(ScheduleType(schedule_type).value)
        if active_only:
            conditions.append("is_active = 1")
        where = " AND ".join(conditions) if conditions else "1=1"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM schedules WHERE {where} ORDER BY id", params
            ).fetchall()
            return [_row_to_schedule(r, self._load_steps(conn, r["id"])) for r in rows]

    def get_active_filing_schedule(self, filing_type_id: FilingTypeId) -> Schedule | None:
        """The active schedule bound to ``filing_type_id`` (lowest id wins if several)."""
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM schedules
                   WHERE schedule_type = ? AND filing_type_id = ? AND is_active = 1
                   ORDER BY id LIMIT 1""",
                (ScheduleType.FILING.value, FilingTypeId.parse(filing_type_id).value),
            ).fetchone()
            if row is None:
                return None
            return _row_to_schedule(row, self._load_steps(conn, row["id"]))

    def delete_schedule(self, schedule_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Custom schedule exclusions
    # ------------------------------------------------------------------

    def set_schedule_exclusions(self, schedule_id: str, client_ids: Iterable[str]) -> None:
        """Replace the exclusion list of a custom schedule."""
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM schedule_client_exclusions WHERE schedule_id = ?", (schedule_id,)
            )
            conn.executemany(
                "INSERT INTO schedule_client_exclusions (schedule_id, client_id) VALUES (?, ?)",
                [(schedule_id, cid) for cid in sorted(set(client_ids))],
            )

    def add_schedule_exclusion(self, schedule_id: str, client_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO schedule_client_exclusions (schedule_id, client_id)
                   VALUES (?, ?)""",
                (schedule_id, client_id),
            )

    def remove_schedule_exclusion(self, schedule_id: str, client_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM schedule_client_exclusions WHERE schedule_id = ? AND client_id = ?",
                (schedule_id, client_id),
            )

    def get_excluded_client_ids(self, schedule_id: str) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT client_id FROM schedule_client_exclusions WHERE schedule_id = ?",
                (schedule_id,),
            ).fetchall()
        return {r["client_id"] for r in rows}

    # ------------------------------------------------------------------
    # Per-client overrides
    # ------------------------------------------------------------------

    def upsert_schedule_override(self, override: ClientScheduleOverride) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO client_schedule_overrides
                   (client_id, schedule_id, step_number, delay_days_override, is_skipped)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(client_id, schedule_id, step_number) DO UPDATE SET
                       delay_days_override = excluded.delay_days_override,
                       is_skipped = excluded.is_skipped""",
                (override.client_id, override.schedule_id, override.step_number,
                 override.delay_days_override, 1 if override.is_skipped else 0),
            )

    def list_schedule_overrides(self, client_id: str | None = None) -> list[ClientScheduleOverride]:
        sql = "SELECT * FROM client_schedule_overrides"
        params: list[Any] = []
        if client_id is not None:
            sql += " WHERE client_id = ?"
            params.append(client_id)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ClientScheduleOverride(
                client_id=r["client_id"],
                schedule_id=r["schedule_id"],
                step_number=r["step_number"],
                delay_days_override=r["delay_days_override"],
                is_skipped=bool(r["is_skipped"]),
            )
            for r in rows
        ]

    def upsert_email_override(self, override: ClientEmailOverride) -> None:
        body_json = json.dumps(override.body_override) if override.body_override is not None else None
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO client_email_overrides
                   (client_id, email_template_id, subject_override, body_override_json)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(client_id, email_template_id) DO UPDATE SET
                       subject_override = excluded.subject_override,
                       body_override_json = excluded.body_override_json""",
                (override.client_id, override.email_template_id,
                 override.subject_override, body_json),
            )

    def get_email_override(self, client_id: str, template_id: str) -> ClientEmailOverride | None:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM client_email_overrides
                   WHERE client_id = ? AND email_template_id = ?""",
                (client_id, template_id),
            ).fetchone()
        if row is None:
            return None
        body = None
        if row["body_override_json"]:
            body = _load_body_json(
                row["body_override_json"], f"email override {client_id}/{template_id}",
            )
        return ClientEmailOverride(
            client_id=row["client_id"],
            email_template_id=row["email_template_id"],
            subject_override=row["subject_override"],
            body_override=body,
        )

    # ------------------------------------------------------------------
    # Reminder queue
    # ------------------------------------------------------------------

    def find_entry_by_key(self, idempotency_key: str) -> ReminderQueueEntry | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reminder_queue WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
            return _row_to_entry(row) if row else None

    def insert_entry_if_absent(self, entry: ReminderQueueEntry) -> bool:
        """Insert ``entry`` unless its idempotency key already exists.

        The UNIQUE constraint decides, so two racing batch runs cannot both
        create the same reminder.  Returns True if a row was created; the
        new row id is written back onto ``entry.id``.
        """
        created_at = _now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO reminder_queue
                   (idempotency_key, client_id, filing_type_id, template_id, step_index,
                    deadline_date, send_date, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.idempotency_key,
                    entry.client_id,
                    entry.filing_type_id.value if entry.filing_type_id else None,
                    entry.template_id,
                    entry.step_index,
                    entry.deadline_date.isoformat(),
                    entry.send_date.isoformat(),
                    entry.status.value,
                    created_at,
                ),
            )
            if cur.rowcount == 0:
                return False
            entry.id = cur.lastrowid
            entry.created_at = datetime.fromisoformat(created_at)
            return True

    def get_entry(self, entry_id: int) -> ReminderQueueEntry | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM reminder_queue WHERE id = ?", (entry_id,)).fetchone()
            return _row_to_entry(row) if row else None

    def list_entries(
        self,
        client_id: str | None = None,
        filing_type_id: FilingTypeId | str | None = None,
        status: ReminderStatus | str | Iterable[ReminderStatus | str] | None = None,
        send_date: date | None = None,
        send_date_before: date | None = None,
        deadline_before: date | None = None,
        deadline_from: date | None = None,
        template_id: str | None = None,
        custom: bool | None = None,
        order_by: str = "send_date ASC, id ASC",
    ) -> list[ReminderQueueEntry]:
        """Filter queue entries.  All arguments are optional and ANDed.

        Args:
            client_id: Exact client match.
            filing_type_id: Exact filing type match.
            status: One status or several (matched with IN).
            send_date: Entries sending on exactly this day.
            send_date_before: Entries with send_date strictly before this day.
            deadline_before: Entries with deadline_date strictly before this day.
            deadline_from: Entries with deadline_date on or after this day.
            template_id: Owning schedule id.
            custom: True for custom-schedule entries only, False for filing only.
            order_by: SQL ORDER BY clause (internal callers only).
        """
        conditions = []
        params: list[Any] = []

        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if filing_type_id is not None:
            conditions.append("filing_type_id = ?")
            params.append(FilingTypeId.parse(filing_type_id).value)
        if status is not None:
            values = _status_values(status)
            conditions.append(f"status IN ({', '.join('?' * len(values))})")
            params.extend(values)
        if send_date is not None:
            conditions.append("send_date = ?")
            params.append(send_date.isoformat())
        if send_date_before is not None:
            conditions.append("send_date < ?")
            params.append(send_date_before.isoformat())
        if deadline_before is not None:
            conditions.append("deadline_date < ?")
            params.append(deadline_before.isoformat())
        if deadline_from is not None:
            conditions.append("deadline_date >= ?")
            params.append(deadline_from.isoformat())
        if template_id is not None:
            conditions.append("template_id = ?")
            params.append(template_id)
        if custom is True:
            conditions.append("filing_type_id IS NULL")
        elif custom is False:
            conditions.append("filing_type_id IS NOT NULL")

        where = " AND ".join(conditions) if conditions else "1=1"
        sql = f"SELECT * FROM reminder_queue WHERE {where} ORDER BY {order_by}"

        with self._connect() as conn:
            return [_row_to_entry(r) for r in conn.execute(sql, params).fetchall()]

    def count_entries(self, status: ReminderStatus | str | None = None) -> int:
        with self._connect() as conn:
            if status is not None:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM reminder_queue WHERE status = ?",
                    (ReminderStatus(status).value,),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM reminder_queue").fetchone()
            return row["cnt"]

    def bulk_update_status(
        self,
        entry_ids: list[int],
        status: ReminderStatus,
        queued_at: datetime | None = None,
        from_status: ReminderStatus | None = None,
    ) -> int:
        """Set ``status`` on every id in ``entry_ids``.

        ``queued_at`` is stamped when given.  ``from_status`` restricts the
        update to rows still in that state.  Returns rows changed.
        """
        if not entry_ids:
            return 0
        sets = ["status = ?"]
        params: list[Any] = [ReminderStatus(status).value]
        if queued_at is not None:
            sets.append("queued_at = ?")
            params.append(queued_at.isoformat())
        sql = (
            f"UPDATE reminder_queue SET {', '.join(sets)} "
            f"WHERE id IN ({', '.join('?' * len(entry_ids))})"
        )
        params.extend(entry_ids)
        if from_status is not None:
            sql += " AND status = ?"
            params.append(ReminderStatus(from_status).value)
        with self._connect() as conn:
            return conn.execute(sql, params).rowcount

    def update_resolved_content(
        self,
        entry_id: int,
        subject: str,
        body_text: str,
        html_body: str,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE reminder_queue
                   SET resolved_subject = ?, resolved_body = ?, html_body = ?
                   WHERE id = ?""",
                (subject, body_text, html_body, entry_id),
            )
            return cur.rowcount > 0

    def delete_scheduled_for_client(
        self,
        client_id: str,
        filing_type_id: FilingTypeId | None = None,
    ) -> int:
        """Delete a client's still-scheduled entries; history is never touched."""
        sql = "DELETE FROM reminder_queue WHERE client_id = ? AND status = ?"
        params: list[Any] = [client_id, ReminderStatus.SCHEDULED.value]
        if filing_type_id is not None:
            sql += " AND filing_type_id = ?"
            params.append(FilingTypeId.parse(filing_type_id).value)
        with self._connect() as conn:
            return conn.execute(sql, params).rowcount

    def cancel_scheduled(
        self,
        client_id: str,
        filing_type_id: FilingTypeId | None = None,
        send_date_before: date | None = None,
    ) -> int:
        """Move a client's scheduled entries to cancelled.  Returns rows changed."""
        sql = "UPDATE reminder_queue SET status = ? WHERE client_id = ? AND status = ?"
        params: list[Any] = [
            ReminderStatus.CANCELLED.value, client_id, ReminderStatus.SCHEDULED.value,
        ]
        if filing_type_id is not None:
            sql += " AND filing_type_id = ?"
            params.append(FilingTypeId.parse(filing_type_id).value)
        if send_date_before is not None:
            sql += " AND send_date < ?"
            params.append(send_date_before.isoformat())
        with self._connect() as conn:
            return conn.execute(sql, params).rowcount

    def restore_cancelled(
        self,
        client_id: str,
        filing_type_id: FilingTypeId,
        send_date_from: date,
    ) -> int:
        """Move cancelled entries sending on or after ``send_date_from`` back to scheduled."""
        with self._connect() as conn:
            return conn.execute(
                """UPDATE reminder_queue SET status = ?
                   WHERE client_id = ? AND filing_type_id = ? AND status = ? AND send_date >= ?""",
                (
                    ReminderStatus.SCHEDULED.value,
                    client_id,
                    FilingTypeId.parse(filing_type_id).value,
                    ReminderStatus.CANCELLED.value,
                    send_date_from.isoformat(),
                ),
            ).rowcount

    def mark_sent(self, entry_id: int, sent_at: datetime | None = None) -> bool:
        """Sender write-back: pending -> sent.  Returns True if it transitioned."""
        stamp = sent_at.isoformat() if sent_at else _now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE reminder_queue SET status = ?, sent_at = ? WHERE id = ? AND status = ?",
                (ReminderStatus.SENT.value, stamp, entry_id, ReminderStatus.PENDING.value),
            )
            if cur.rowcount == 0:
                return False
            self._log_action(conn, "sent", details={"entry_id": entry_id})
            return True

    def mark_failed(self, entry_id: int, error: str) -> bool:
        """Sender write-back: pending -> failed.  Returns True if it transitioned."""
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE reminder_queue SET status = ?, error_message = ? WHERE id = ? AND status = ?",
                (ReminderStatus.FAILED.value, error, entry_id, ReminderStatus.PENDING.value),
            )
            if cur.rowcount == 0:
                return False
            self._log_action(conn, "failed", level="error", message=error,
                             details={"entry_id": entry_id})
            return True

    # ------------------------------------------------------------------
    # Rollover ledger
    # ------------------------------------------------------------------

    def record_rollover(
        self,
        client_id: str,
        filing_type_id: FilingTypeId,
        from_deadline: date,
        to_deadline: date,
        source: str = "batch",
    ) -> bool:
        """Record that a filing cycle was rolled over.

        Returns False if this (client, filing type, from_deadline) cycle was
        already rolled over, so callers can make rollover idempotent.
        """
        filing_type_id = FilingTypeId.parse(filing_type_id)
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO rollovers
                   (client_id, filing_type_id, from_deadline, to_deadline, source, rolled_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (client_id, filing_type_id.value, from_deadline.isoformat(),
                 to_deadline.isoformat(), source, _now_iso()),
            )
            if cur.rowcount == 0:
                return False
            self._log_action(
                conn, "rollover", client_id=client_id, filing_type_id=filing_type_id,
                actor=source,
                details={"from": from_deadline.isoformat(), "to": to_deadline.isoformat()},
            )
            return True

    def has_rollover(self, client_id: str, filing_type_id: FilingTypeId, from_deadline: date) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT 1 FROM rollovers
                   WHERE client_id = ? AND filing_type_id = ? AND from_deadline = ?""",
                (client_id, FilingTypeId.parse(filing_type_id).value, from_deadline.isoformat()),
            ).fetchone()
            return row is not None

    def list_rollovers(self, client_id: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM rollovers"
        params: list[Any] = []
        if client_id is not None:
            sql += " WHERE client_id = ?"
            params.append(client_id)
        sql += " ORDER BY rolled_at DESC"
        with self._connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    # ------------------------------------------------------------------
    # Batch lock
    # ------------------------------------------------------------------

    def acquire_lock(self, lock_id: str, ttl_minutes: int = 5, now: datetime | None = None) -> bool:
        """Try to take the lock row.  False if another unexpired holder has it.

        An expired row is cleared first so a crashed run cannot wedge the
        batch forever.
        """
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        expires = now + timedelta(minutes=ttl_minutes)
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM locks WHERE id = ? AND expires_at <= ?",
                (lock_id, now.isoformat()),
            )
            cur = conn.execute(
                "INSERT OR IGNORE INTO locks (id, acquired_at, expires_at) VALUES (?, ?, ?)",
                (lock_id, now.isoformat(), expires.isoformat()),
            )
            return cur.rowcount == 1

    def release_lock(self, lock_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM locks WHERE id = ?", (lock_id,))

    # ------------------------------------------------------------------
    # Bank holidays
    # ------------------------------------------------------------------

    def save_bank_holidays(self, holidays: Iterable[date], division: str = "") -> int:
        """Replace the stored bank holiday set."""
        rows = [(d.isoformat(), division, _now_iso()) for d in sorted(set(holidays))]
        with self._connect() as conn:
            conn.execute("DELETE FROM bank_holidays")
            conn.executemany(
                "INSERT INTO bank_holidays (holiday_date, division, fetched_at) VALUES (?, ?, ?)",
                rows,
            )
        return len(rows)

    def load_bank_holidays(self) -> set[date]:
        with self._connect() as conn:
            rows = conn.execute("SELECT holiday_date FROM bank_holidays").fetchall()
        return {date.fromisoformat(r["holiday_date"]) for r in rows}

    # ------------------------------------------------------------------
    # Audit log / diagnostics
    # ------------------------------------------------------------------

    def log_diagnostic(
        self,
        action: str,
        message: str = "",
        client_id: str | None = None,
        filing_type_id: FilingTypeId | None = None,
        level: str = "warning",
        details: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> None:
        """Append one entry to the audit log."""
        with self._connect() as conn:
            self._log_action(
                conn, action, level=level, message=message, client_id=client_id,
                filing_type_id=filing_type_id, details=details, actor=actor,
            )

    def list_diagnostics(
        self,
        client_id: str | None = None,
        action: str | None = None,
        level: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Audit log entries, newest first."""
        conditions = []
        params: list[Any] = []
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if action is not None:
            conditions.append("action = ?")
            params.append(action)
        if level is not None:
            conditions.append("level = ?")
            params.append(level)
        where = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log WHERE {where} ORDER BY id DESC LIMIT ?",
                params,
            ).fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["details"] = json.loads(d["details"] or "{}")
            result.append(d)
        return result

    def _log_action(
        self,
        conn: sqlite3.Connection,
        action: str,
        level: str = "info",
        message: str = "",
        client_id: str | None = None,
        filing_type_id: FilingTypeId | None = None,
        details: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> None:
        """Write an audit log entry (internal, must be within a transaction)."""
        conn.execute(
            """INSERT INTO audit_log
               (action, level, client_id, filing_type_id, actor, message, details, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                action,
                level,
                client_id,
                FilingTypeId.parse(filing_type_id).value if filing_type_id else None,
                actor,
                message,
                json.dumps(details or {}, default=str),
                _now_iso(),
            ),
        )
