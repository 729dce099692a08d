"""
Filing Reminders -- Dashboard Queries

Feeds the traffic-light classifier from the store and aggregates the
numbers shown on the practice dashboard.

A filing's deadline on the dashboard is the earliest deadline among its
live reminders (scheduled, pending or sent), ignoring cycles that have
already been rolled over.  With no such reminder it falls back to the
override or calculated deadline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from .deadlines import calculate_deadline
from .models import Client, ReminderStatus
from .store import ReminderStore
from .traffic_light import (
    CANONICAL_PRIORITY,
    DetailedStatus,
    FilingSnapshot,
    TrafficLight,
    classify_client,
    classify_client_detailed,
)

logger = logging.getLogger(__name__)

_LIVE_STATUSES = (ReminderStatus.SCHEDULED, ReminderStatus.PENDING, ReminderStatus.SENT)

# Stand-in deadline for a filing with no known date; never overdue.
NO_DEADLINE = date.max


@dataclass
class ClientStatusRow:
    id: str
    company_name: str
    status: TrafficLight
    detailed_status: DetailedStatus
    next_deadline: Optional[date]
    days_until_deadline: Optional[int]


@dataclass
class DashboardMetrics:
    overdue_count: int = 0
    chasing_count: int = 0
    sent_today_count: int = 0
    paused_count: int = 0
    failed_delivery_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "overdue": self.overdue_count,
            "chasing": self.chasing_count,
            "sent_today": self.sent_today_count,
            "paused": self.paused_count,
            "failed": self.failed_delivery_count,
        }


def build_client_filings(
    store: ReminderStore,
    client: Client,
    today: Optional[date] = None,
) -> list[FilingSnapshot]:
    """One snapshot per active filing assignment of ``client``."""
    today = today or date.today()
    overrides = {o.filing_type_id: o.override_date for o in store.list_deadline_overrides(client.id)}
    live = store.list_entries(client_id=client.id, status=_LIVE_STATUSES, custom=False)

    filings: list[FilingSnapshot] = []
    for assignment in store.list_assignments(client_id=client.id, active_only=True):
        filing_type = assignment.filing_type_id
        entries = [
            e for e in live
            if e.filing_type_id is filing_type
            and not store.has_rollover(client.id, filing_type, e.deadline_date)
        ]

        if entries:
            deadline = min(e.deadline_date for e in entries)
        else:
            deadline = overrides.get(filing_type) or calculate_deadline(filing_type, client, today)

        filings.append(FilingSnapshot(
            filing_type_id=filing_type,
            deadline_date=deadline or NO_DEADLINE,
            has_been_sent=any(e.status is ReminderStatus.SENT for e in entries),
        ))
    return filings


def get_client_status_list(
    store: ReminderStore,
    today: Optional[date] = None,
) -> list[ClientStatusRow]:
    """Every client with its status, most urgent first, then by next deadline."""
    today = today or date.today()
    rows: list[ClientStatusRow] = []

    for client in store.list_clients():
        filings = build_client_filings(store, client, today)
        status = classify_client(
            client.reminders_paused, client.records_received_for, filings, today,
        )
        detailed = classify_client_detailed(
            client.reminders_paused, client.records_received_for, client.completed_for,
            filings, today,
        )
        deadlines = [f.deadline_date for f in filings if f.deadline_date != NO_DEADLINE]
        next_deadline = min(deadlines) if deadlines else None

        rows.append(ClientStatusRow(
            id=client.id,
            company_name=client.company_name,
            status=status,
            detailed_status=detailed,
            next_deadline=next_deadline,
            days_until_deadline=(next_deadline - today).days if next_deadline else None,
        ))

    rows.sort(key=lambda r: (CANONICAL_PRIORITY[r.status], r.next_deadline or NO_DEADLINE))
    return rows


def get_dashboard_metrics(store: ReminderStore, today: Optional[date] = None) -> DashboardMetrics:
    """Headline counts: overdue (red), chasing (amber), sent today, paused, failed."""
    today = today or date.today()
    metrics = DashboardMetrics()

    for row in get_client_status_list(store, today):
        if row.status is TrafficLight.RED:
            metrics.overdue_count += 1
        elif row.status is TrafficLight.AMBER:
            metrics.chasing_count += 1

    metrics.sent_today_count = sum(
        1 for e in store.list_entries(status=ReminderStatus.SENT)
        if e.sent_at is not None and e.sent_at.date() == today
    )
    metrics.paused_count = len(store.list_clients(paused=True))
    metrics.failed_delivery_count = store.count_entries(ReminderStatus.FAILED)

    logger.debug("Dashboard metrics: %s", metrics.to_dict())
    return metrics
