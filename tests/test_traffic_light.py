"""Tests for filing_reminders.traffic_light -- client urgency classification.

Covers:
- Canonical cascade ordering (grey > red > amber > green)
- Date-only comparisons (datetime input, deadline day itself)
- Seven-state dashboard view and per-filing status
- Amber band split and status summaries
"""

from datetime import date, datetime

import pytest

from filing_reminders.models import FilingTypeId
from filing_reminders.traffic_light import (
    CANONICAL_PRIORITY,
    STATUS_METADATA,
    AmberBand,
    DetailedStatus,
    FilingSnapshot,
    TrafficLight,
    amber_band,
    classify_client,
    classify_client_detailed,
    classify_filing,
    summarize_statuses,
)

TODAY = date(2025, 6, 1)
VAT = FilingTypeId.VAT_RETURN
CT = FilingTypeId.CORPORATION_TAX_PAYMENT
CH = FilingTypeId.COMPANIES_HOUSE


def overdue(ft=VAT, sent=True):
    return FilingSnapshot(ft, date(2025, 5, 7), has_been_sent=sent)


def chasing(ft=CT, days_ahead=20):
    return FilingSnapshot(ft, date.fromordinal(TODAY.toordinal() + days_ahead), has_been_sent=True)


def quiet(ft=CH, days_ahead=90):
    return FilingSnapshot(ft, date.fromordinal(TODAY.toordinal() + days_ahead), has_been_sent=False)


# ============================================================================
# Canonical Cascade
# ============================================================================

class TestClassifyClient:

    def test_pause_dominates_overdue(self):
        assert classify_client(True, set(), [overdue()], TODAY) is TrafficLight.GREY

    def test_no_filings_is_grey(self):
        assert classify_client(False, set(), [], TODAY) is TrafficLight.GREY

    def test_red_dominates_amber(self):
        assert classify_client(False, set(), [overdue(), chasing()], TODAY) is TrafficLight.RED

    def test_overdue_but_received_is_not_red(self):
        assert classify_client(False, {VAT}, [overdue()], TODAY) is TrafficLight.GREEN

    def test_amber_needs_a_sent_reminder(self):
        assert classify_client(False, set(), [chasing()], TODAY) is TrafficLight.AMBER
        assert classify_client(False, set(), [quiet()], TODAY) is TrafficLight.GREEN

    def test_amber_suppressed_by_records_received(self):
        assert classify_client(False, {CT}, [chasing()], TODAY) is TrafficLight.GREEN

    def test_deadline_today_is_not_overdue(self):
        due_today = FilingSnapshot(VAT, TODAY, has_been_sent=True)
        assert classify_client(False, set(), [due_today], TODAY) is TrafficLight.AMBER

    def test_datetime_today_uses_date_only(self):
        late_evening = datetime(2025, 6, 1, 23, 59)
        due_today = FilingSnapshot(VAT, TODAY, has_been_sent=False)
        assert classify_client(False, set(), [due_today], late_evening) is TrafficLight.GREEN

    def test_canonical_priority_order(self):
        ordered = sorted(TrafficLight, key=CANONICAL_PRIORITY.get)
        assert ordered == [TrafficLight.RED, TrafficLight.AMBER, TrafficLight.GREEN, TrafficLight.GREY]


# ============================================================================
# Dashboard Refinements
# ============================================================================

class TestClassifyClientDetailed:

    def test_paused_is_grey(self):
        assert classify_client_detailed(True, set(), set(), [overdue()], TODAY) is DetailedStatus.GREY

    def test_all_received_and_completed_is_green(self):
        filings = [overdue(), chasing()]
        assert classify_client_detailed(
            False, {VAT, CT}, {VAT, CT}, filings, TODAY
        ) is DetailedStatus.GREEN

    def test_all_received_not_completed_is_violet(self):
        assert classify_client_detailed(
            False, {VAT, CT}, {VAT}, [overdue(), chasing()], TODAY
        ) is DetailedStatus.VIOLET

    @pytest.mark.parametrize("days_ahead,expected", [
        (-1, DetailedStatus.RED),
        (0, DetailedStatus.ORANGE),
        (6, DetailedStatus.ORANGE),
        (7, DetailedStatus.AMBER),
        (27, DetailedStatus.AMBER),
        (28, DetailedStatus.BLUE),
    ])
    def test_deadline_bands(self, days_ahead, expected):
        filing = FilingSnapshot(VAT, date.fromordinal(TODAY.toordinal() + days_ahead))
        assert classify_client_detailed(False, set(), set(), [filing], TODAY) is expected


class TestClassifyFiling:

    def test_completed_beats_override(self):
        assert classify_filing(
            date(2025, 5, 1), True, True, DetailedStatus.RED, TODAY
        ) is DetailedStatus.GREEN

    def test_received_is_violet(self):
        assert classify_filing(date(2025, 5, 1), True, False, today=TODAY) is DetailedStatus.VIOLET

    def test_override_beats_deadline(self):
        assert classify_filing(
            date(2025, 5, 1), override_status=DetailedStatus.BLUE, today=TODAY
        ) is DetailedStatus.BLUE

    def test_no_deadline_is_grey(self):
        assert classify_filing(None, today=TODAY) is DetailedStatus.GREY

    def test_overdue_is_red(self):
        assert classify_filing(date(2025, 5, 31), today=TODAY) is DetailedStatus.RED


class TestAmberBand:

    def test_critical_within_a_week(self):
        assert amber_band(set(), [chasing(days_ahead=3)], TODAY) is AmberBand.CRITICAL

    def test_approaching_sent(self):
        assert amber_band(set(), [chasing(days_ahead=20)], TODAY) is AmberBand.APPROACHING_SENT

    def test_approaching_unsent(self):
        assert amber_band(set(), [quiet(days_ahead=20)], TODAY) is AmberBand.APPROACHING_UNSENT

    def test_none_when_nothing_live(self):
        assert amber_band({CT}, [chasing()], TODAY) is None


class TestMetadataAndSummary:

    def test_every_status_has_metadata(self):
        assert set(STATUS_METADATA) == set(DetailedStatus)

    def test_red_sorts_first(self):
        assert min(STATUS_METADATA.values(), key=lambda m: m.priority).status is DetailedStatus.RED

    def test_summarize(self):
        statuses = [TrafficLight.RED, TrafficLight.GREEN, TrafficLight.RED]
        assert summarize_statuses(statuses) == {"red": 2, "green": 1}
