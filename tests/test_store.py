"""Tests for filing_reminders.store -- SQLite persistence, queue and lock."""

import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from filing_reminders.models import (
    ClientDeadlineOverride,
    ClientFilingAssignment,
    ClientEmailOverride,
    ClientScheduleOverride,
    FilingTypeId,
    ReminderQueueEntry,
    ReminderStatus,
    StoreError,
)

VAT = FilingTypeId.VAT_RETURN
CT = FilingTypeId.CORPORATION_TAX_PAYMENT


def make_entry(client_id="acme", filing_type=CT, step=1, deadline=date(2026, 1, 1),
               send=date(2025, 12, 2), template_id="sched-ct"):
    return ReminderQueueEntry(
        client_id=client_id,
        filing_type_id=filing_type,
        template_id=template_id,
        step_index=step,
        deadline_date=deadline,
        send_date=send,
    )


# ============================================================================
# Clients, assignments, overrides
# ============================================================================

class TestClients:

    def test_round_trip(self, store, seed):
        seed.client(year_end_date=date(2025, 3, 31), vat_stagger_group=2,
                    records_received_for={VAT})
        client = store.get_client("acme")
        assert client.company_name == "Acme Ltd"
        assert client.year_end_date == date(2025, 3, 31)
        assert client.vat_stagger_group == 2
        assert client.records_received_for == {VAT}

    def test_missing_client(self, store):
        assert store.get_client("nope") is None

    def test_list_filters_paused(self, store, seed):
        seed.client("a", "Alpha")
        seed.client("b", "Beta", reminders_paused=True)
        assert [c.id for c in store.list_clients()] == ["a", "b"]
        assert [c.id for c in store.list_clients(paused=True)] == ["b"]

    def test_flag_updates(self, store, seed):
        seed.client()
        store.set_filing_flags("acme", {CT}, {CT})
        store.set_year_end_date("acme", date(2026, 3, 31))
        client = store.get_client("acme")
        assert client.completed_for == {CT}
        assert client.year_end_date == date(2026, 3, 31)

    def test_assignments(self, store, seed):
        seed.client(filing_types=(CT, VAT))
        store.set_assignment(ClientFilingAssignment("acme", VAT, is_active=False))
        active = store.list_assignments("acme")
        assert [a.filing_type_id for a in active] == [CT]
        assert len(store.list_assignments("acme", active_only=False)) == 2

    def test_deadline_overrides(self, store, seed):
        seed.client()
        store.set_deadline_override(ClientDeadlineOverride("acme", CT, date(2026, 2, 1), "HMRC agreed"))
        (override,) = store.list_deadline_overrides("acme")
        assert override.override_date == date(2026, 2, 1)
        assert store.remove_deadline_override("acme", CT)
        assert store.list_deadline_overrides("acme") == []

    def test_delete_client_cascades_queue(self, store, seed):
        seed.client()
        store.insert_entry_if_absent(make_entry())
        assert store.delete_client("acme")
        assert store.count_entries() == 0


# ============================================================================
# Schedules, templates and per-client overrides
# ============================================================================

class TestSchedules:

    def test_round_trip_with_steps(self, store, seed):
        seed.filing_schedule(CT, delays=(30, 14, 7))
        schedule = store.get_active_filing_schedule(CT)
        assert schedule.id == "sched-corporation_tax_payment"
        assert [s.delay_days for s in schedule.ordered_steps] == [30, 14, 7]

    def test_upsert_replaces_steps(self, store, seed):
        schedule = seed.filing_schedule(CT, delays=(30, 14, 7))
        schedule.steps = schedule.steps[:1]
        store.upsert_schedule(schedule)
        assert len(store.get_schedule(schedule.id).steps) == 1

    def test_upsert_validates(self, store, seed):
        schedule = seed.filing_schedule(CT)
        schedule.steps[0].delay_days = 400
        with pytest.raises(ValueError):
            store.upsert_schedule(schedule)

    def test_inactive_schedule_not_found(self, store, seed):
        schedule = seed.filing_schedule(CT)
        schedule.is_active = False
        store.upsert_schedule(schedule)
        assert store.get_active_filing_schedule(CT) is None

    def test_exclusions(self, store, seed):
        seed.client("a")
        seed.client("b")
        seed.custom_schedule(custom_date=date(2025, 12, 1))
        store.set_schedule_exclusions("newsletter", ["a", "b"])
        store.remove_schedule_exclusion("newsletter", "b")
        assert store.get_excluded_client_ids("newsletter") == {"a"}

    def test_email_override_round_trip(self, store, seed):
        seed.client()
        body = {"type": "doc", "content": []}
        store.upsert_email_override(ClientEmailOverride("acme", "t1", "Hi", body))
        override = store.get_email_override("acme", "t1")
        assert override.subject_override == "Hi"
        assert override.body_override == body
        assert store.get_email_override("acme", "t2") is None

    def test_corrupt_body_json_is_store_error(self, store, seed):
        seed.client()
        seed.template("t1")
        store.upsert_email_override(ClientEmailOverride("acme", "t1", "Hi", {"type": "doc"}))
        with sqlite3.connect(store.db_path) as conn:
            conn.execute("UPDATE email_templates SET body_json = '{not json'")
            conn.execute("UPDATE client_email_overrides SET body_override_json = '[oops'")

        with pytest.raises(StoreError, match="Corrupt body JSON"):
            store.get_template("t1")
        with pytest.raises(StoreError, match="Corrupt body JSON"):
            store.get_email_override("acme", "t1")

    def test_schedule_override_round_trip(self, store, seed):
        seed.client()
        seed.filing_schedule(CT)
        store.upsert_schedule_override(
            ClientScheduleOverride("acme", "sched-corporation_tax_payment", 2, is_skipped=True)
        )
        (override,) = store.list_schedule_overrides("acme")
        assert override.is_skipped and override.step_number == 2


# ============================================================================
# Reminder queue
# ============================================================================

class TestQueue:

    def test_insert_if_absent_is_idempotent(self, store, seed):
        seed.client()
        first = make_entry()
        assert store.insert_entry_if_absent(first)
        assert first.id is not None
        assert not store.insert_entry_if_absent(make_entry(send=date(2025, 12, 3)))
        assert store.count_entries() == 1

    def test_find_by_key(self, store, seed):
        seed.client()
        entry = make_entry()
        store.insert_entry_if_absent(entry)
        found = store.find_entry_by_key(entry.idempotency_key)
        assert found.id == entry.id
        assert found.status is ReminderStatus.SCHEDULED

    def test_list_filters(self, store, seed):
        seed.client()
        store.insert_entry_if_absent(make_entry(step=1, send=date(2025, 12, 2)))
        store.insert_entry_if_absent(make_entry(step=2, send=date(2025, 12, 18)))
        custom = make_entry(filing_type=None, template_id="newsletter", send=date(2025, 12, 18))
        store.insert_entry_if_absent(custom)

        assert len(store.list_entries(send_date=date(2025, 12, 18))) == 2
        assert len(store.list_entries(send_date_before=date(2025, 12, 18))) == 1
        assert [e.template_id for e in store.list_entries(custom=True)] == ["newsletter"]
        assert len(store.list_entries(filing_type_id=CT)) == 2
        assert len(store.list_entries(status=[ReminderStatus.SCHEDULED, ReminderStatus.SENT])) == 3

    def test_bulk_update_respects_from_status(self, store, seed):
        seed.client()
        a, b = make_entry(step=1), make_entry(step=2)
        store.insert_entry_if_absent(a)
        store.insert_entry_if_absent(b)
        store.bulk_update_status([b.id], ReminderStatus.CANCELLED)

        stamp = datetime(2025, 12, 2, 9, 0, tzinfo=timezone.utc)
        changed = store.bulk_update_status(
            [a.id, b.id], ReminderStatus.PENDING, queued_at=stamp,
            from_status=ReminderStatus.SCHEDULED,
        )
        assert changed == 1
        pending = store.get_entry(a.id)
        assert pending.status is ReminderStatus.PENDING
        assert pending.queued_at == stamp
        assert store.get_entry(b.id).status is ReminderStatus.CANCELLED

    def test_cancel_scheduled_scope(self, store, seed):
        seed.client()
        seed.client("other", "Other Ltd")
        ct = make_entry(step=1)
        vat = make_entry(filing_type=VAT, deadline=date(2025, 11, 7), send=date(2025, 10, 31))
        sent = make_entry(step=2)
        elsewhere = make_entry(client_id="other")
        for e in (ct, vat, sent, elsewhere):
            store.insert_entry_if_absent(e)
        store.bulk_update_status([sent.id], ReminderStatus.SENT)

        assert store.cancel_scheduled("acme", filing_type_id=CT) == 1
        assert store.get_entry(ct.id).status is ReminderStatus.CANCELLED
        assert store.get_entry(vat.id).status is ReminderStatus.SCHEDULED
        assert store.get_entry(sent.id).status is ReminderStatus.SENT
        assert store.get_entry(elsewhere.id).status is ReminderStatus.SCHEDULED

    def test_sender_write_back(self, store, seed):
        seed.client()
        a, b = make_entry(step=1), make_entry(step=2)
        store.insert_entry_if_absent(a)
        store.insert_entry_if_absent(b)
        assert not store.mark_sent(a.id)           # still scheduled
        store.bulk_update_status([a.id, b.id], ReminderStatus.PENDING)
        assert store.mark_sent(a.id)
        assert store.mark_failed(b.id, "mailbox full")
        assert store.get_entry(a.id).sent_at is not None
        assert store.get_entry(b.id).status is ReminderStatus.FAILED
        assert store.list_diagnostics(action="failed")[0]["message"] == "mailbox full"

    def test_resolved_content(self, store, seed):
        seed.client()
        entry = make_entry()
        store.insert_entry_if_absent(entry)
        store.update_resolved_content(entry.id, "Subj", "Text", "<p>Html</p>")
        stored = store.get_entry(entry.id)
        assert (stored.resolved_subject, stored.resolved_body, stored.html_body) == (
            "Subj", "Text", "<p>Html</p>",
        )


# ============================================================================
# Transactions
# ============================================================================

class TestTransaction:

    def test_rolls_back_on_error(self, store, seed):
        seed.client()
        store.insert_entry_if_absent(make_entry())

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.delete_scheduled_for_client("acme")
                assert store.count_entries() == 0
                raise RuntimeError("rebuild failed")

        assert store.count_entries() == 1

    def test_commits_on_success(self, store, seed):
        seed.client()
        with store.transaction():
            store.insert_entry_if_absent(make_entry(step=1))
            with store.transaction():
                store.insert_entry_if_absent(make_entry(step=2))
        assert store.count_entries() == 2

    def test_sqlite_errors_become_store_errors(self, store):
        # Foreign key: no such client
        with pytest.raises(StoreError):
            store.insert_entry_if_absent(make_entry(client_id="ghost"))


# ============================================================================
# Lock, rollover ledger, holidays, diagnostics
# ============================================================================

class TestLock:

    NOW = datetime(2025, 12, 2, 9, 0, tzinfo=timezone.utc)

    def test_second_acquire_fails(self, store):
        assert store.acquire_lock("cron", now=self.NOW)
        assert not store.acquire_lock("cron", now=self.NOW + timedelta(minutes=1))

    def test_release_allows_reacquire(self, store):
        store.acquire_lock("cron", now=self.NOW)
        store.release_lock("cron")
        assert store.acquire_lock("cron", now=self.NOW)

    def test_expired_lock_is_taken_over(self, store):
        store.acquire_lock("cron", ttl_minutes=5, now=self.NOW)
        assert store.acquire_lock("cron", now=self.NOW + timedelta(minutes=6))

    def test_independent_lock_ids(self, store):
        assert store.acquire_lock("a", now=self.NOW)
        assert store.acquire_lock("b", now=self.NOW)


class TestRolloverLedger:

    def test_record_once(self, store, seed):
        seed.client()
        assert store.record_rollover("acme", CT, date(2026, 1, 1), date(2027, 1, 1))
        assert not store.record_rollover("acme", CT, date(2026, 1, 1), date(2027, 1, 1))
        assert store.has_rollover("acme", CT, date(2026, 1, 1))
        assert len(store.list_rollovers("acme")) == 1
        (audit,) = store.list_diagnostics(action="rollover")
        assert audit["details"] == {"from": "2026-01-01", "to": "2027-01-01"}


class TestDiagnostics:

    def test_newest_first_with_filters(self, store):
        store.log_diagnostic("missing_schedule", "first", filing_type_id=VAT)
        store.log_diagnostic("missing_template", "second", details={"template_id": "t9"})
        logs = store.list_diagnostics()
        assert [d["message"] for d in logs] == ["second", "first"]
        assert logs[0]["details"] == {"template_id": "t9"}
        assert logs[1]["filing_type_id"] == "vat_return"
        assert len(store.list_diagnostics(action="missing_schedule")) == 1

    def test_bank_holidays_replace(self, store):
        store.save_bank_holidays({date(2025, 12, 25)})
        store.save_bank_holidays({date(2026, 1, 1)})
        assert store.load_bank_holidays() == {date(2026, 1, 1)}
