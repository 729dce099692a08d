"""Tests for filing_reminders.client_actions -- staff-triggered changes."""

from datetime import date

import pytest

from filing_reminders.client_actions import (
    ClientNotFoundError,
    bulk_rollover,
    create_custom_schedule,
    current_filing_deadline,
    get_rollover_candidates,
    mark_completed,
    mark_records_received,
    rollover_filing,
    set_reminders_paused,
    unmark_records_received,
)
from filing_reminders.models import (
    ClientDeadlineOverride,
    FilingTypeId,
    ReminderStatus,
    Schedule,
    ScheduleStep,
    ScheduleType,
)
from filing_reminders.queue_builder import QueueBuilder

CT = FilingTypeId.CORPORATION_TAX_PAYMENT
CH = FilingTypeId.COMPANIES_HOUSE
VAT = FilingTypeId.VAT_RETURN
SA = FilingTypeId.SELF_ASSESSMENT
TODAY = date(2025, 11, 1)
YEAR_END = date(2025, 3, 31)


@pytest.fixture
def builder(store):
    return QueueBuilder(store, holidays=set())


@pytest.fixture
def queued_client(store, seed, builder):
    seed.client(year_end_date=YEAR_END, filing_types=(CT, CH))
    seed.filing_schedule(CT)
    seed.filing_schedule(CH)
    builder.build_filing_reminders(TODAY)


# ============================================================================
# Records received / completed
# ============================================================================

class TestRecordsReceived:

    def test_mark_cancels_only_that_type(self, store, queued_client):
        cancelled = mark_records_received(store, "acme", "corporation_tax_payment")

        assert cancelled == 3
        assert store.get_client("acme").records_received_for == {CT}
        assert store.count_entries(ReminderStatus.CANCELLED) == 3
        assert len(store.list_entries(filing_type_id=CH, status=ReminderStatus.SCHEDULED)) == 3
        (diag,) = store.list_diagnostics(action="records_received")
        assert diag["actor"] == "staff"
        assert diag["details"] == {"cancelled": 3}

    def test_in_flight_reminders_untouched(self, store, queued_client):
        first = store.list_entries(filing_type_id=CT)[0]
        store.bulk_update_status([first.id], ReminderStatus.PENDING)

        assert mark_records_received(store, "acme", CT) == 2
        assert store.get_entry(first.id).status is ReminderStatus.PENDING

    def test_mark_twice_is_harmless(self, store, queued_client):
        mark_records_received(store, "acme", CT)
        assert mark_records_received(store, "acme", CT) == 0

    def test_unknown_client(self, store):
        with pytest.raises(ClientNotFoundError):
            mark_records_received(store, "ghost", CT)

    def test_unmark_rebuilds(self, store, builder, queued_client):
        mark_records_received(store, "acme", CT)
        mark_completed(store, "acme", CT)

        created = unmark_records_received(store, builder, "acme", CT, today=TODAY)

        assert created == 6
        client = store.get_client("acme")
        assert client.records_received_for == set()
        assert client.completed_for == set()
        assert len(store.list_entries(filing_type_id=CT, status=ReminderStatus.SCHEDULED)) == 3
        assert store.count_entries(ReminderStatus.CANCELLED) == 0
        (diag,) = store.list_diagnostics(action="records_unreceived")
        assert diag["details"] == {"restored": 3}

    def test_unmark_leaves_passed_reminders_cancelled(self, store, builder, queued_client):
        mark_records_received(store, "acme", CT)

        unmark_records_received(store, builder, "acme", CT, today=date(2025, 12, 10))

        ct = store.list_entries(filing_type_id=CT)
        assert [e.status for e in ct] == [
            ReminderStatus.CANCELLED, ReminderStatus.SCHEDULED, ReminderStatus.SCHEDULED,
        ]

    def test_mark_completed_and_reopen(self, store, queued_client):
        mark_completed(store, "acme", CH)
        assert store.get_client("acme").completed_for == {CH}

        mark_completed(store, "acme", CH, completed=False)
        assert store.get_client("acme").completed_for == set()
        assert [d["action"] for d in store.list_diagnostics(client_id="acme")][:2] == [
            "uncompleted", "completed",
        ]


# ============================================================================
# Pause / resume
# ============================================================================

class TestPauseResume:

    def test_pause_returns_zero(self, store, builder, queued_client):
        assert set_reminders_paused(store, builder, "acme", True, today=TODAY) == 0
        assert store.get_client("acme").reminders_paused

    def test_resume_skips_missed_reminders(self, store, builder, seed):
        seed.client(year_end_date=YEAR_END, filing_types=(CT,))
        seed.filing_schedule(CT)
        builder.build_filing_reminders(TODAY)
        set_reminders_paused(store, builder, "acme", True, today=TODAY)

        cancelled = set_reminders_paused(store, builder, "acme", False, today=date(2025, 12, 30))

        assert cancelled == 3
        assert store.count_entries(ReminderStatus.CANCELLED) == 3
        assert store.count_entries(ReminderStatus.PENDING) == 0
        assert not store.get_client("acme").reminders_paused

    def test_resume_when_not_paused_cancels_nothing(self, store, builder, queued_client):
        assert set_reminders_paused(store, builder, "acme", False, today=date(2025, 12, 30)) == 0
        assert store.count_entries(ReminderStatus.CANCELLED) == 0


# ============================================================================
# Rollover
# ============================================================================

class TestCurrentFilingDeadline:

    def test_annual_from_year_end(self, store, seed):
        client = seed.client(year_end_date=YEAR_END)
        assert current_filing_deadline(store, client, CT, TODAY) == date(2026, 1, 1)

    def test_override_wins(self, store, seed):
        client = seed.client(year_end_date=YEAR_END)
        store.set_deadline_override(ClientDeadlineOverride("acme", CT, date(2026, 3, 1)))
        assert current_filing_deadline(store, client, CT, TODAY) == date(2026, 3, 1)

    def test_calendar_filing_uses_latest_queued_deadline(self, store, seed, builder):
        client = seed.client(vat_stagger_group=1, filing_types=(VAT,))
        seed.filing_schedule(VAT, delays=(7,))
        builder.build_filing_reminders(date(2025, 6, 1))

        queued = store.list_entries(filing_type_id=VAT)[0].deadline_date
        assert current_filing_deadline(store, client, VAT, date(2025, 9, 1)) == queued

    def test_calendar_filing_without_queue_uses_calculator(self, store, seed):
        client = seed.client()
        assert current_filing_deadline(store, client, SA, date(2025, 6, 1)) == date(2026, 1, 31)


class TestRolloverCandidates:

    def test_received_and_overdue_only(self, store, seed):
        seed.client("a", "A Ltd", year_end_date=date(2024, 3, 31),
                    filing_types=(CT, CH), records_received_for={CT})
        seed.client("b", "B Ltd", year_end_date=date(2024, 12, 31),
                    filing_types=(CT,), records_received_for={CT})
        seed.client("c", "C Ltd", year_end_date=date(2024, 3, 31),
                    filing_types=(CT,), records_received_for={CT}, reminders_paused=True)
        seed.client("d", "D Ltd", year_end_date=YEAR_END,
                    filing_types=(CT,), records_received_for={CT})

        candidates = get_rollover_candidates(store, date(2025, 11, 1))

        assert [(c.client_id, c.filing_type_id) for c in candidates] == [("a", CT), ("b", CT)]
        assert candidates[0].deadline_date == date(2025, 1, 1)
        assert candidates[0].days_overdue == 304
        assert candidates[1].deadline_date == date(2025, 10, 1)

    def test_inactive_assignment_not_a_candidate(self, store, seed):
        seed.client(year_end_date=date(2024, 3, 31), records_received_for={CT})
        assert get_rollover_candidates(store, TODAY) == []


class TestRolloverFiling:

    def test_annual_rollover(self, store, builder, seed):
        seed.client(year_end_date=YEAR_END, filing_types=(CT,), records_received_for={CT},
                    completed_for={CT})
        seed.filing_schedule(CT)

        result = rollover_filing(store, builder, "acme", CT, today=date(2026, 1, 5))

        assert result.success
        assert result.old_year_end == YEAR_END
        assert result.new_year_end == date(2026, 3, 31)
        assert result.next_deadline == date(2027, 1, 1)
        client = store.get_client("acme")
        assert client.year_end_date == date(2026, 3, 31)
        assert client.records_received_for == set()
        assert client.completed_for == set()
        scheduled = store.list_entries(status=ReminderStatus.SCHEDULED)
        assert {e.deadline_date for e in scheduled} == {date(2027, 1, 1)}
        (diag,) = store.list_diagnostics(action="rollover_filing")
        assert diag["details"]["is_annual"] is True
        assert diag["details"]["new_year_end"] == "2026-03-31"

    def test_vat_rollover_keeps_year_end(self, store, builder, seed):
        seed.client(year_end_date=YEAR_END, vat_stagger_group=1, filing_types=(VAT,))
        seed.filing_schedule(VAT, delays=(7,))
        store.set_deadline_override(ClientDeadlineOverride("acme", VAT, date(2025, 5, 7)))

        result = rollover_filing(store, builder, "acme", VAT, today=date(2025, 5, 10))

        assert result.success
        assert result.next_deadline == date(2025, 8, 7)
        assert result.new_year_end == YEAR_END
        assert store.list_deadline_overrides("acme") == []

    def test_second_rollover_of_same_cycle_fails(self, store, builder, seed):
        seed.client(vat_stagger_group=1, filing_types=(VAT,))
        store.set_deadline_override(ClientDeadlineOverride("acme", VAT, date(2025, 5, 7)))
        assert rollover_filing(store, builder, "acme", VAT, today=date(2025, 5, 10)).success

        store.set_deadline_override(ClientDeadlineOverride("acme", VAT, date(2025, 5, 7)))
        again = rollover_filing(store, builder, "acme", VAT, today=date(2025, 5, 10))

        assert not again.success
        assert "already rolled over" in again.error

    def test_missing_metadata_is_a_failed_result(self, store, builder, seed):
        seed.client(filing_types=(CT,))

        result = rollover_filing(store, builder, "acme", CT, today=TODAY)

        assert not result.success
        assert result.error

    def test_unknown_client_is_a_failed_result(self, store, builder):
        result = rollover_filing(store, builder, "ghost", CT, today=TODAY)
        assert not result.success
        assert "ghost" in result.error

    def test_bulk_continues_past_failures(self, store, builder, seed):
        seed.client(year_end_date=YEAR_END, filing_types=(CT,))
        seed.client("bare", "Bare Ltd", filing_types=(CT,))

        results = bulk_rollover(
            store, builder, [("bare", CT), ("acme", "corporation_tax_payment")], today=TODAY,
        )

        assert [r.success for r in results] == [False, True]


# ============================================================================
# Custom schedules
# ============================================================================

class TestCreateCustomSchedule:

    def _schedule(self):
        return Schedule(
            id="xmas", name="Christmas Closure", schedule_type=ScheduleType.CUSTOM,
            custom_date=date(2025, 12, 19), steps=[ScheduleStep(1, "t1", 7)],
        )

    def test_opt_in_list_becomes_exclusions(self, store, seed):
        for cid in ("a", "b", "c"):
            seed.client(cid, f"{cid.upper()} Ltd")

        excluded = create_custom_schedule(store, self._schedule(), selected_client_ids=["a"])

        assert excluded == {"b", "c"}
        assert store.get_excluded_client_ids("xmas") == {"b", "c"}
        assert store.get_schedule("xmas").name == "Christmas Closure"

    def test_without_selection_applies_to_all(self, store, seed):
        seed.client()
        assert create_custom_schedule(store, self._schedule()) == set()
        assert store.get_excluded_client_ids("xmas") == set()

    def test_new_clients_are_included(self, store, seed, builder):
        seed.client("a", "A Ltd")
        seed.template("t1")
        create_custom_schedule(store, self._schedule(), selected_client_ids=["a"])
        seed.client("late", "Late Ltd")

        builder.build_custom_reminders(TODAY)

        assert {e.client_id for e in store.list_entries(custom=True)} == {"a", "late"}

    def test_rejects_filing_schedule(self, store):
        with pytest.raises(ValueError):
            create_custom_schedule(store, Schedule(id="ct", name="CT", filing_type_id=CT))

    def test_invalid_schedule_saves_nothing(self, store):
        bad = Schedule(id="bad", name="Bad", schedule_type=ScheduleType.CUSTOM)
        with pytest.raises(ValueError):
            create_custom_schedule(store, bad)
        assert store.get_schedule("bad") is None
