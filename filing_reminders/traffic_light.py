"""
Filing Reminders -- Traffic-Light Classifier

Classifies a client's urgency from its filings, pause flag and
records-received set.

Canonical 4-state cascade (first match wins):
    GREY:   reminders paused, or the client has no filings
    RED:    any filing overdue (deadline before today) without records
    AMBER:  any filing with a reminder already sent, no records, not yet due
    GREEN:  everything else

The dashboard layers a finer 7-state view on the same input:
    grey > green (all received and completed) > violet (all received)
         > red > orange (< 1 week) > amber (1-4 weeks) > blue (> 4 weeks)

All comparisons are on calendar dates, so a status cannot flip part way
through a day.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import AbstractSet, Iterable, Optional, Sequence

from .models import FilingTypeId


# ---------------------------------------------------------------------------
# Status Enums
# ---------------------------------------------------------------------------

class TrafficLight(str, Enum):
    """Canonical client urgency."""
    GREY = "grey"
    RED = "red"
    AMBER = "amber"
    GREEN = "green"


class DetailedStatus(str, Enum):
    """Dashboard urgency with the extra presentational buckets."""
    GREY = "grey"
    GREEN = "green"
    VIOLET = "violet"
    RED = "red"
    ORANGE = "orange"
    AMBER = "amber"
    BLUE = "blue"


class AmberBand(str, Enum):
    """Subdivision of canonical amber used by the dashboard."""
    CRITICAL = "critical"
    APPROACHING_SENT = "approaching_sent"
    APPROACHING_UNSENT = "approaching_unsent"


# ---------------------------------------------------------------------------
# Configurable Boundaries
# ---------------------------------------------------------------------------
# Days until the deadline below which a filing falls in each band.

CRITICAL_WINDOW_DAYS: int = 7       # < 1 week: orange / critical
APPROACHING_WINDOW_DAYS: int = 28   # < 4 weeks: amber


# ---------------------------------------------------------------------------
# Status Metadata
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StatusMetadata:
    """Display label, description and sort priority of one detailed status.

    Lower ``priority`` sorts first on the dashboard.
    """
    status: DetailedStatus
    label: str
    description: str
    priority: int


STATUS_METADATA: dict[DetailedStatus, StatusMetadata] = {
    DetailedStatus.RED: StatusMetadata(
        DetailedStatus.RED, "Overdue", "Deadline passed without records", 1,
    ),
    DetailedStatus.ORANGE: StatusMetadata(
        DetailedStatus.ORANGE, "Critical", "Deadline less than a week away", 2,
    ),
    DetailedStatus.AMBER: StatusMetadata(
        DetailedStatus.AMBER, "Approaching", "Deadline one to four weeks away", 3,
    ),
    DetailedStatus.BLUE: StatusMetadata(
        DetailedStatus.BLUE, "Scheduled", "Deadline more than four weeks away", 4,
    ),
    DetailedStatus.VIOLET: StatusMetadata(
        DetailedStatus.VIOLET, "Records Received", "Waiting on the accountant", 5,
    ),
    DetailedStatus.GREEN: StatusMetadata(
        DetailedStatus.GREEN, "Completed", "All filings completed", 6,
    ),
    DetailedStatus.GREY: StatusMetadata(
        DetailedStatus.GREY, "Inactive", "Reminders paused or no filings", 7,
    ),
}

CANONICAL_PRIORITY: dict[TrafficLight, int] = {
    TrafficLight.RED: 1,
    TrafficLight.AMBER: 2,
    TrafficLight.GREEN: 3,
    TrafficLight.GREY: 4,
}


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FilingSnapshot:
    """One filing as the classifier sees it."""
    filing_type_id: FilingTypeId
    deadline_date: date
    has_been_sent: bool = False


def _normalize_today(today: Optional[date]) -> date:
    if today is None:
        return date.today()
    if isinstance(today, datetime):
        return today.date()
    return today


# ---------------------------------------------------------------------------
# Canonical Classification
# ---------------------------------------------------------------------------

def classify_client(
    reminders_paused: bool,
    records_received_for: AbstractSet[FilingTypeId],
    filings: Sequence[FilingSnapshot],
    today: Optional[date] = None,
) -> TrafficLight:
    """Classify a client with the canonical grey > red > amber > green cascade.

    Examples:
        >>> overdue = FilingSnapshot(FilingTypeId.VAT_RETURN, date(2025, 5, 7))
        >>> classify_client(True, set(), [overdue], today=date(2025, 6, 1))
        <TrafficLight.GREY: 'grey'>
        >>> classify_client(False, set(), [overdue], today=date(2025, 6, 1))
        <TrafficLight.RED: 'red'>
    """
    today = _normalize_today(today)

    if reminders_paused or not filings:
        return TrafficLight.GREY

    for filing in filings:
        if filing.deadline_date < today and filing.filing_type_id not in records_received_for:
            return TrafficLight.RED

    for filing in filings:
        if (
            filing.has_been_sent
            and filing.filing_type_id not in records_received_for
            and filing.deadline_date >= today
        ):
            return TrafficLight.AMBER

    return TrafficLight.GREEN


# ---------------------------------------------------------------------------
# Dashboard Refinements
# ---------------------------------------------------------------------------

def classify_client_detailed(
    reminders_paused: bool,
    records_received_for: AbstractSet[FilingTypeId],
    completed_for: AbstractSet[FilingTypeId],
    filings: Sequence[FilingSnapshot],
    today: Optional[date] = None,
) -> DetailedStatus:
    """Seven-bucket dashboard status; first match wins."""
    today = _normalize_today(today)

    if reminders_paused or not filings:
        return DetailedStatus.GREY

    all_received = all(f.filing_type_id in records_received_for for f in filings)
    if all_received and all(f.filing_type_id in completed_for for f in filings):
        return DetailedStatus.GREEN
    if all_received:
        return DetailedStatus.VIOLET

    outstanding = [f for f in filings if f.filing_type_id not in records_received_for]
    critical_limit = today + timedelta(days=CRITICAL_WINDOW_DAYS)
    approaching_limit = today + timedelta(days=APPROACHING_WINDOW_DAYS)

    if any(f.deadline_date < today for f in outstanding):
        return DetailedStatus.RED
    if any(today <= f.deadline_date < critical_limit for f in outstanding):
        return DetailedStatus.ORANGE
    if any(critical_limit <= f.deadline_date < approaching_limit for f in outstanding):
        return DetailedStatus.AMBER
    return DetailedStatus.BLUE


def classify_filing(
    deadline_date: Optional[date],
    is_records_received: bool = False,
    is_completed: bool = False,
    override_status: Optional[DetailedStatus] = None,
    today: Optional[date] = None,
) -> DetailedStatus:
    """Status of a single filing.

    Completion and records received outrank a manual override; the override
    outranks the deadline-based bands.  A filing with no deadline is grey.
    """
    if is_records_received and is_completed:
        return DetailedStatus.GREEN
    if is_records_received:
        return DetailedStatus.VIOLET
    if override_status is not None:
        return DetailedStatus(override_status)
    if deadline_date is None:
        return DetailedStatus.GREY

    today = _normalize_today(today)
    if deadline_date < today:
        return DetailedStatus.RED
    if deadline_date < today + timedelta(days=CRITICAL_WINDOW_DAYS):
        return DetailedStatus.ORANGE
    if deadline_date < today + timedelta(days=APPROACHING_WINDOW_DAYS):
        return DetailedStatus.AMBER
    return DetailedStatus.BLUE


def amber_band(
    records_received_for: AbstractSet[FilingTypeId],
    filings: Sequence[FilingSnapshot],
    today: Optional[date] = None,
) -> Optional[AmberBand]:
    """Split a canonical-amber client into critical / approaching bands.

    Returns None when no outstanding filing is still ahead of its deadline.
    """
    today = _normalize_today(today)
    live = [
        f for f in filings
        if f.filing_type_id not in records_received_for and f.deadline_date >= today
    ]
    if not live:
        return None

    critical_limit = today + timedelta(days=CRITICAL_WINDOW_DAYS)
    if any(f.deadline_date < critical_limit for f in live):
        return AmberBand.CRITICAL
    if any(f.has_been_sent for f in live):
        return AmberBand.APPROACHING_SENT
    return AmberBand.APPROACHING_UNSENT


def summarize_statuses(statuses: Iterable[TrafficLight | DetailedStatus]) -> dict[str, int]:
    """Count statuses by value, e.g. ``{"red": 2, "green": 5}``."""
    return dict(Counter(s.value for s in statuses))
